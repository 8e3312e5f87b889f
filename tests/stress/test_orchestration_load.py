import time

import pytest

from conductor.MANAGERS.service_orchestrator import ServiceOrchestrator
from conductor.MODELS.service_instance import ServiceState
from conductor.PARSERS.compose_parser import ComposeParser

from conftest import make_service


def test_stress_orchestration(fake_runtime, fast_settings, make_config):
    """
    Stress test by orchestrating 50 services, ten independent chains of five.
    """
    fake_runtime.start_delay = {f"service_{i}": 0.05 for i in range(50)}
    services = []
    for chain in range(10):
        for depth in range(5):
            index = chain * 5 + depth
            depends_on = {f"service_{index - 1}": None} if depth else None
            services.append(make_service(f"service_{index}", depends_on=depends_on))

    orchestrator = ServiceOrchestrator(make_config(*services), runtime=fake_runtime, settings=fast_settings)

    start_time = time.time()
    summary = orchestrator.up()
    elapsed = time.time() - start_time

    assert summary.ok
    assert len(summary.started) == 50
    # Chains run side by side: five sequential starts, not fifty.
    assert elapsed < 5 * 0.05 * 4

    order = fake_runtime.services_called("start")
    for chain in range(10):
        positions = [order.index(f"service_{chain * 5 + depth}") for depth in range(5)]
        assert positions == sorted(positions)

    status = orchestrator.ps()
    assert len(status) == 50
    assert all(s.state == ServiceState.RUNNING.value for s in status.values())

    assert orchestrator.down(timeout=0.1) == {}
    stops = fake_runtime.services_called("stop")
    for chain in range(10):
        positions = [stops.index(f"service_{chain * 5 + depth}") for depth in range(5)]
        assert positions == sorted(positions, reverse=True)


def test_wide_fan_in(fake_runtime, fast_settings, make_config):
    services = [make_service(f"leaf_{i}") for i in range(40)]
    services.append(make_service("root", depends_on={f"leaf_{i}": None for i in range(40)}))
    orchestrator = ServiceOrchestrator(make_config(*services), runtime=fake_runtime, settings=fast_settings)
    try:
        assert orchestrator.up().ok
        assert fake_runtime.services_called("start")[-1] == "root"
    finally:
        orchestrator.down(timeout=0.1)


def test_large_config_parsing():
    parser = ComposeParser(context={})

    # Generate a large compose file
    content = "services:\n"
    for i in range(1000):
        content += f"  service_{i}:\n"
        content += f"    image: image_{i}\n"
        content += f"    environment:\n"
        content += f"      - VAR_{i}=VALUE_{i}\n"
        if i:
            content += f"    depends_on: [service_{i - 1}]\n"

    start_time = time.time()
    config = parser.parse_from_string(content)
    end_time = time.time()

    assert len(config.services) == 1000
    assert config.services["service_999"].environment == {"VAR_999": "VALUE_999"}
    assert end_time - start_time < 5.0


@pytest.mark.parametrize("cycles", [20])
def test_repeated_up_down_releases_threads(fake_runtime, fast_settings, make_config, cycles):
    import threading

    config = make_config(make_service("db"), make_service("api", depends_on={"db": None}))
    baseline = threading.active_count()
    for _ in range(cycles):
        orchestrator = ServiceOrchestrator(config, runtime=fake_runtime, settings=fast_settings)
        assert orchestrator.up().ok
        assert orchestrator.down(timeout=0.1) == {}

    deadline = time.time() + 2
    while threading.active_count() > baseline and time.time() < deadline:
        time.sleep(0.05)
    assert threading.active_count() <= baseline
