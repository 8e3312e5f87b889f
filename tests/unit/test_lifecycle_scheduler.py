"""
Scenario tests for dependency-ordered startup, failure propagation and teardown.
"""
import threading
import time

import pytest

from conductor.errors import CycleError
from conductor.MANAGERS.service_orchestrator import ServiceOrchestrator
from conductor.MODELS.service_definition import HealthCheck, RestartPolicy
from conductor.MODELS.service_instance import HealthStatus, ServiceState

from conftest import fast_healthcheck, make_service


def wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def orchestrate(fake_runtime, fast_settings, sink, make_config):
    created = []

    def build(*services, **extra):
        orchestrator = ServiceOrchestrator(
            make_config(*services, **extra), runtime=fake_runtime, settings=fast_settings, sink=sink,
        )
        created.append(orchestrator)
        return orchestrator

    yield build
    for orchestrator in created:
        orchestrator.down(timeout=0.1)


class TestFailurePropagation:
    """A failed dependency skips its dependents and nothing else."""

    def test_db_never_healthy_skips_api(self, orchestrate, fake_runtime):
        fake_runtime.health["db"] = [HealthStatus.UNHEALTHY]
        orch = orchestrate(
            make_service("db", healthcheck=fast_healthcheck(retries=3)),
            make_service("api", depends_on={"db": "service_healthy"}),
        )
        summary = orch.up()

        assert not summary.ok
        assert "db" in summary.failed
        assert "healthy" in summary.failed["db"]
        assert summary.skipped == {"api": "dependency db failed"}
        api = orch.run.instance("api")
        assert api.state == ServiceState.ERRORED
        assert api.skipped
        assert not api.ever_started
        assert "api" not in fake_runtime.services_called("create")
        assert orch.run.instance("db").state == ServiceState.ERRORED

    def test_skip_is_transitive_and_branches_continue(self, orchestrate, fake_runtime, sink):
        fake_runtime.start_failures["db"] = 1
        orch = orchestrate(
            make_service("db"),
            make_service("api", depends_on={"db": None}),
            make_service("web", depends_on={"api": None}),
            make_service("cache"),
            make_service("worker", depends_on={"cache": None}),
        )
        summary = orch.up()

        assert set(summary.skipped) == {"api", "web"}
        assert set(summary.failed) == {"db"}
        assert sorted(summary.started) == ["cache", "worker"]
        assert "skipped" in sink.kinds("web")

    def test_completed_dependency(self, orchestrate, fake_runtime):
        fake_runtime.exit_on_start["migrate"] = 0
        orch = orchestrate(
            make_service("migrate"),
            make_service("api", depends_on={"migrate": "service_completed_successfully"}),
        )
        summary = orch.up()
        assert summary.ok
        assert orch.run.instance("migrate").state == ServiceState.COMPLETED
        assert orch.run.instance("api").state == ServiceState.RUNNING

    def test_failed_one_shot_skips_dependent(self, orchestrate, fake_runtime):
        fake_runtime.exit_on_start["migrate"] = 1
        orch = orchestrate(
            make_service("migrate"),
            make_service("api", depends_on={"migrate": "service_completed_successfully"}),
        )
        summary = orch.up()
        assert summary.failed == {"migrate": "exited with code 1"}
        assert "api" in summary.skipped


class TestConcurrency:
    """Independent services do not wait for each other."""

    def test_cache_and_worker_start_concurrently(self, orchestrate, fake_runtime):
        fake_runtime.start_delay = {"cache": 0.3, "worker": 0.3}
        orch = orchestrate(make_service("cache"), make_service("worker"))

        began = time.monotonic()
        summary = orch.up()
        elapsed = time.monotonic() - began

        assert summary.ok
        assert orch.run.instance("cache").state == ServiceState.RUNNING
        assert orch.run.instance("worker").state == ServiceState.RUNNING
        assert elapsed < 0.55
        assert abs(fake_runtime.start_times["cache"] - fake_runtime.start_times["worker"]) < 0.2

    def test_dependency_order_respected(self, orchestrate, fake_runtime):
        fake_runtime.start_delay = {"db": 0.1}
        orch = orchestrate(
            make_service("web", depends_on={"api": None}),
            make_service("api", depends_on={"db": None}),
            make_service("db"),
        )
        orch.up()
        assert fake_runtime.services_called("start") == ["db", "api", "web"]

    def test_healthy_gate_delays_dependent(self, orchestrate, fake_runtime):
        fake_runtime.health["db"] = [HealthStatus.STARTING] * 5 + [HealthStatus.HEALTHY]
        orch = orchestrate(
            make_service("db", healthcheck=fast_healthcheck(retries=10)),
            make_service("api", depends_on={"db": "service_healthy"}),
        )
        assert orch.up().ok
        assert orch.run.instance("db").state == ServiceState.HEALTHY
        assert fake_runtime.start_times["api"] > fake_runtime.start_times["db"]

    def test_networks_created_once_for_many_services(self, orchestrate, fake_runtime):
        fake_runtime.resource_delay = 0.02
        orch = orchestrate(*[make_service(f"svc{i}") for i in range(10)])
        assert orch.up().ok
        assert fake_runtime.network_creates == 1
        container = fake_runtime.containers["test-svc3-1"]
        assert container.networks == ["test_default"]
        assert container.labels["conductor.service"] == "svc3"


class TestRestart:
    """Restart policies with bounded backoff."""

    def test_start_failure_retried(self, orchestrate, fake_runtime, sink):
        fake_runtime.start_failures["db"] = 2
        orch = orchestrate(make_service("db", restart=RestartPolicy(condition="on-failure", max_retries=5)))
        summary = orch.up()
        assert summary.ok
        db = orch.run.instance("db")
        assert db.state == ServiceState.RUNNING
        assert db.restart_count == 2
        assert sink.kinds("db").count("restarting") == 2

    def test_retries_are_bounded(self, orchestrate, fake_runtime):
        fake_runtime.start_failures["db"] = 100
        orch = orchestrate(make_service("db", restart=RestartPolicy(condition="always", max_retries=2)))
        summary = orch.up()
        assert "db" in summary.failed
        assert fake_runtime.services_called("start_failed") == ["db"] * 3

    def test_no_policy_no_retry(self, orchestrate, fake_runtime):
        fake_runtime.start_failures["db"] = 1
        orch = orchestrate(make_service("db"))
        assert "db" in orch.up().failed
        assert fake_runtime.services_called("start_failed") == ["db"]

    def test_unexpected_exit_restarted_by_supervisor(self, orchestrate, fake_runtime):
        orch = orchestrate(make_service("web", restart=RestartPolicy(condition="always")))
        assert orch.up().ok
        fake_runtime.exit("web", 1)

        web = orch.run.instance("web")
        assert wait_for(lambda: web.restart_count == 1 and web.state == ServiceState.RUNNING)
        assert fake_runtime.services_called("start") == ["web", "web"]

    def test_clean_exit_not_restarted_on_failure_policy(self, orchestrate, fake_runtime):
        orch = orchestrate(make_service("job", restart=RestartPolicy(condition="on-failure")))
        assert orch.up().ok
        fake_runtime.exit("job", 0)

        job = orch.run.instance("job")
        assert wait_for(lambda: job.state == ServiceState.STOPPED)
        time.sleep(0.2)
        assert job.restart_count == 0
        assert orch.ps()["job"].exit_code == 0
        assert str(orch.ps()["job"]) == "exited(0)"

    def test_restart_named_service_only(self, orchestrate, fake_runtime):
        orch = orchestrate(make_service("db"), make_service("api", depends_on={"db": None}))
        orch.up()
        summary = orch.restart(["api"])
        assert summary.ok
        assert fake_runtime.services_called("start") == ["db", "api", "api"]
        assert fake_runtime.services_called("stop") == ["api"]

    def test_supervisor_restarts_service_outside_last_selection(self, orchestrate, fake_runtime):
        orch = orchestrate(
            make_service("web", healthcheck=fast_healthcheck(), restart=RestartPolicy(condition="always")),
            make_service("api"),
        )
        assert orch.up().ok
        assert orch.restart(["api"]).ok

        fake_runtime.exit("web", 1)
        web = orch.run.instance("web")
        assert wait_for(lambda: web.restart_count == 1 and web.state == ServiceState.HEALTHY)

    def test_partial_stop_keeps_others_supervised(self, orchestrate, fake_runtime):
        orch = orchestrate(make_service("web", restart=RestartPolicy(condition="always")), make_service("api"))
        assert orch.up().ok
        assert orch.stop(["api"]) == {}
        assert orch.run.instance("api").state == ServiceState.STOPPED

        fake_runtime.exit("web", 1)
        web = orch.run.instance("web")
        assert wait_for(lambda: web.restart_count == 1 and web.state == ServiceState.RUNNING)
        assert sorted(fake_runtime.services_called("start")) == ["api", "web", "web"]

    def test_stopped_service_is_not_restarted(self, orchestrate, fake_runtime):
        orch = orchestrate(make_service("web", restart=RestartPolicy(condition="always")))
        assert orch.up().ok
        orch.stop(["web"])
        time.sleep(0.2)
        assert orch.run.instance("web").state == ServiceState.STOPPED
        assert fake_runtime.services_called("start") == ["web"]

    def test_always_restarts_without_count_limit(self, orchestrate, fake_runtime):
        orch = orchestrate(make_service("web", restart=RestartPolicy(condition="always")))
        assert orch.up().ok
        web = orch.run.instance("web")
        for attempt in range(1, 6):
            fake_runtime.exit("web", 1)
            assert wait_for(lambda: web.restart_count == attempt and web.state == ServiceState.RUNNING)
        assert fake_runtime.services_called("start") == ["web"] * 6

    def test_explicit_count_bounds_supervised_restarts(self, orchestrate, fake_runtime):
        orch = orchestrate(make_service("web", restart=RestartPolicy(condition="on-failure", max_retries=1)))
        assert orch.up().ok
        web = orch.run.instance("web")
        fake_runtime.exit("web", 1)
        assert wait_for(lambda: web.restart_count == 1 and web.state == ServiceState.RUNNING)
        fake_runtime.exit("web", 1)
        assert wait_for(lambda: web.state == ServiceState.ERRORED)
        time.sleep(0.2)
        assert web.restart_count == 1


class TestTeardown:
    """Reverse-order teardown, idempotence and interruption."""

    def test_down_in_reverse_order(self, orchestrate, fake_runtime):
        orch = orchestrate(
            make_service("db"),
            make_service("api", depends_on={"db": None}),
            make_service("web", depends_on={"api": None}),
        )
        orch.up()
        assert orch.down() == {}
        assert fake_runtime.services_called("stop") == ["web", "api", "db"]
        assert all(i.state == ServiceState.STOPPED for i in orch.run.instances.values())
        assert fake_runtime.containers == {}
        assert fake_runtime.networks == {}

    def test_down_twice_is_noop(self, orchestrate, fake_runtime):
        orch = orchestrate(make_service("db"))
        orch.up()
        orch.down()
        calls = len(fake_runtime.calls)
        assert orch.down() == {}
        assert len(fake_runtime.calls) == calls

    def test_down_releases_health_probe_pool(self, orchestrate, fake_runtime):
        orch = orchestrate(make_service("db", healthcheck=fast_healthcheck()))
        assert orch.up().ok
        assert orch.health_gate._executor is not None
        orch.down()
        assert orch.health_gate._executor is None

        assert orch.up().ok
        assert orch.run.instance("db").state == ServiceState.HEALTHY

    def test_down_without_up(self, orchestrate, fake_runtime):
        orch = orchestrate(make_service("db"), make_service("api", depends_on={"db": None}))
        assert orch.down() == {}
        assert fake_runtime.calls == []

    def test_down_from_fresh_invocation(self, orchestrate, fake_runtime):
        services = (make_service("db"), make_service("api", depends_on={"db": None}))
        first = orchestrate(*services)
        first.up()
        first.scheduler.stop_supervising()

        second = orchestrate(*services)
        assert second.ps()["api"].state == "running"
        assert second.down() == {}
        assert fake_runtime.services_called("stop") == ["api", "db"]
        assert fake_runtime.containers == {}

    def test_volumes_kept_unless_purged(self, orchestrate, fake_runtime):
        from conductor.MODELS.orchestration_config import VolumeDefinition
        from conductor.MODELS.service_definition import VolumeMount

        orch = orchestrate(
            make_service("db", volumes=[VolumeMount(source="data", target="/data")]),
            volumes={"data": VolumeDefinition(key="data")},
        )
        orch.up()
        assert fake_runtime.containers["test-db-1"].mounts[0].source == "test_data"
        orch.down()
        assert "test_data" in fake_runtime.volumes
        orch.down(purge_volumes=True)
        assert fake_runtime.volumes == {}

    def test_force_kill_after_grace_period(self, orchestrate, fake_runtime, sink):
        fake_runtime.ignore_stop.add("db")
        orch = orchestrate(make_service("db"))
        orch.up()
        assert orch.down(timeout=0.05) == {}
        assert ("signal", "db", "SIGKILL") in fake_runtime.calls
        assert "killed" in sink.kinds("db")
        assert orch.run.instance("db").exit_code == 137

    def test_abort_during_health_wait(self, orchestrate, fake_runtime):
        fake_runtime.health["db"] = [HealthStatus.UNHEALTHY]
        slow = HealthCheck(test=["CMD", "true"], interval=30, timeout=1, retries=100)
        orch = orchestrate(
            make_service("db", healthcheck=slow),
            make_service("api", depends_on={"db": "service_healthy"}),
        )
        result = {}
        runner = threading.Thread(target=lambda: result.update(summary=orch.up()))
        runner.start()
        assert wait_for(lambda: orch.run.instance("db").state == ServiceState.WAITING_HEALTHY)

        orch.abort()
        runner.join(5)
        assert not runner.is_alive()
        assert result["summary"].aborted
        assert orch.run.instance("api").state == ServiceState.STOPPED
        assert "api" not in fake_runtime.services_called("create")

        assert orch.down() == {}
        assert orch.run.instance("db").state == ServiceState.STOPPED
        assert fake_runtime.services_called("stop") == ["db"]


def test_cycle_rejected_before_any_runtime_call(fake_runtime, make_config):
    config = make_config(
        make_service("a", depends_on={"b": None}),
        make_service("b", depends_on={"a": None}),
    )
    with pytest.raises(CycleError):
        ServiceOrchestrator(config, runtime=fake_runtime)
    assert fake_runtime.calls == []
    assert fake_runtime.network_creates == 0


def test_exec_and_logs(orchestrate, fake_runtime):
    orch = orchestrate(make_service("db"))
    orch.up()
    assert orch.exec("db", ["psql", "-c", "select 1"]) == 0
    assert ("exec", "db", ("psql", "-c", "select 1")) in fake_runtime.calls

    fake_runtime.containers["test-db-1"].lines.extend(["ready", "listening"])
    lines = []
    orch.logs(["db"], tail=1, echo=lines.append)
    assert lines == ["db | listening"]
