"""
Shared fixtures: an in-memory, scriptable container runtime.
"""
import threading
import time
from typing import Dict, List, Optional

import pytest

from conductor.errors import ContainerRuntimeError
from conductor.MODELS.orchestration_config import OrchestrationConfig
from conductor.MODELS.service_definition import (
    Dependency,
    DependencyCondition,
    HealthCheck,
    ServiceDefinition,
)
from conductor.MODELS.service_instance import HealthStatus
from conductor.MODELS.settings import OrchestratorSettings
from conductor.RUNTIME.base import (
    ContainerHandle,
    ContainerRuntime,
    ContainerState,
    ContainerStatus,
    HealthResult,
    ResourceInfo,
)
from conductor.UTILS.events import RecordingEventSink


class FakeContainer:
    def __init__(self, handle: ContainerHandle, spec: ServiceDefinition, environment, networks, mounts, labels):
        self.handle = handle
        self.spec = spec
        self.environment = environment
        self.networks = networks
        self.mounts = mounts
        self.labels = labels
        self.state = ContainerState.CREATED
        self.exit_code: Optional[int] = None
        self.exited = threading.Event()
        self.lines: List[str] = []


class FakeRuntime(ContainerRuntime):
    """
    Records every call and lets tests script failures, health results and exits.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self.containers: Dict[str, FakeContainer] = {}
        self.networks: Dict[str, ResourceInfo] = {}
        self.volumes: Dict[str, ResourceInfo] = {}
        self.calls: List[tuple] = []
        self.start_times: Dict[str, float] = {}
        self.create_count = 0
        self.network_creates = 0
        self.volume_creates = 0

        # scripting knobs, keyed by service name
        self.health: Dict[str, List[HealthStatus]] = {}
        self.start_failures: Dict[str, int] = {}
        self.start_delay: Dict[str, float] = {}
        self.ignore_stop: set = set()
        self.exit_on_start: Dict[str, int] = {}
        self.resource_delay = 0.0

    def _record(self, *call):
        with self._lock:
            self.calls.append(call)

    def services_called(self, op: str) -> List[str]:
        with self._lock:
            return [c[1] for c in self.calls if c[0] == op]

    def _container(self, handle: ContainerHandle) -> FakeContainer:
        with self._lock:
            container = self.containers.get(handle.name)
        if container is None:
            raise ContainerRuntimeError(f"no such container {handle.name}", service=handle.service)
        return container

    def exit(self, service: str, code: int):
        """Simulates the main process of a service exiting on its own."""
        for container in list(self.containers.values()):
            if container.handle.service == service and container.state == ContainerState.RUNNING:
                container.state = ContainerState.EXITED
                container.exit_code = code
                container.exited.set()

    # -- containers -----------------------------------------------------

    def create_container(self, name, spec, environment, networks, mounts, labels):
        with self._lock:
            self.create_count += 1
            handle = ContainerHandle(id=f"fake-{self.create_count}", name=name, service=spec.name)
            self.containers[name] = FakeContainer(handle, spec, environment, networks, mounts, labels)
        self._record("create", spec.name)
        return handle

    def start(self, handle):
        service = handle.service
        delay = self.start_delay.get(service, 0)
        if delay:
            time.sleep(delay)
        with self._lock:
            remaining = self.start_failures.get(service, 0)
            if remaining:
                self.start_failures[service] = remaining - 1
                self._record("start_failed", service)
                raise ContainerRuntimeError(f"cannot start {service}", service=service)
            container = self._container(handle)
            container.state = ContainerState.RUNNING
            container.exited.clear()
            self.start_times[service] = time.monotonic()
        self._record("start", service)
        if service in self.exit_on_start:
            self.exit(service, self.exit_on_start[service])

    def stop(self, handle, signal_name="SIGTERM"):
        self._record("stop", handle.service)
        if handle.service in self.ignore_stop:
            return
        self._terminate(handle, 0)

    def signal(self, handle, signal_name):
        self._record("signal", handle.service, signal_name)
        if signal_name == "SIGKILL":
            self._terminate(handle, 137)

    def _terminate(self, handle, code):
        container = self._container(handle)
        if container.state == ContainerState.RUNNING:
            container.state = ContainerState.EXITED
            container.exit_code = code
        container.exited.set()

    def wait(self, handle, timeout):
        container = self._container(handle)
        if container.state == ContainerState.CREATED:
            return None
        if not container.exited.wait(timeout):
            return None
        return container.exit_code

    def inspect(self, handle):
        with self._lock:
            container = self.containers.get(handle.name)
        if container is None:
            return ContainerStatus(ContainerState.MISSING)
        return ContainerStatus(container.state, container.exit_code)

    def check_health(self, handle, healthcheck):
        script = self.health.get(handle.service)
        if not script:
            return HealthResult(HealthStatus.HEALTHY)
        status = script.pop(0) if len(script) > 1 else script[0]
        return HealthResult(status, f"probe {status.value}")

    def remove(self, handle):
        self._record("remove", handle.service)
        with self._lock:
            container = self.containers.get(handle.name)
            if container is not None and container.state == ContainerState.RUNNING:
                raise ContainerRuntimeError(f"{handle.name} is running", service=handle.service)
            self.containers.pop(handle.name, None)

    def find_container(self, name):
        with self._lock:
            container = self.containers.get(name)
        return container.handle if container else None

    def logs(self, handle, follow=False, tail=None):
        lines = list(self._container(handle).lines)
        if tail is not None:
            lines = lines[-tail:] if tail > 0 else []
        yield from lines

    def exec(self, handle, command):
        if not self.inspect(handle).running:
            raise ContainerRuntimeError(f"{handle.name} is not running", service=handle.service)
        self._record("exec", handle.service, tuple(command))
        return 0

    # -- networks / volumes ---------------------------------------------

    def create_network(self, name, driver, driver_opts, labels):
        time.sleep(self.resource_delay)
        with self._lock:
            self.network_creates += 1
            info = ResourceInfo(name=name, kind="network", driver=driver, driver_opts=dict(driver_opts),
                                labels=dict(labels))
            self.networks[name] = info
        return info

    def remove_network(self, name):
        with self._lock:
            self.networks.pop(name, None)

    def list_networks(self):
        with self._lock:
            return list(self.networks.values())

    def create_volume(self, name, driver, driver_opts, labels):
        time.sleep(self.resource_delay)
        with self._lock:
            self.volume_creates += 1
            info = ResourceInfo(name=name, kind="volume", driver=driver, driver_opts=dict(driver_opts),
                                labels=dict(labels))
            self.volumes[name] = info
        return info

    def remove_volume(self, name):
        with self._lock:
            self.volumes.pop(name, None)

    def list_volumes(self):
        with self._lock:
            return list(self.volumes.values())


def make_service(name, depends_on=None, healthcheck=None, restart=None, **kwargs) -> ServiceDefinition:
    """
    Builds a ServiceDefinition; depends_on maps dependency name to a condition string.
    """
    deps = {}
    for dep, condition in (depends_on or {}).items():
        deps[dep] = Dependency(condition=DependencyCondition(condition) if condition else None)
    kwargs.setdefault("image", f"{name}:latest")
    kwargs.setdefault("command", ["run", name])
    if healthcheck is not None:
        kwargs["health_check"] = healthcheck
    if restart is not None:
        kwargs["restart_policy"] = restart
    return ServiceDefinition(name=name, depends_on=deps, **kwargs)


def fast_healthcheck(retries=3) -> HealthCheck:
    return HealthCheck(test=["CMD", "true"], interval=0.01, timeout=1, retries=retries)


@pytest.fixture
def fake_runtime():
    return FakeRuntime()


@pytest.fixture
def sink():
    return RecordingEventSink()


@pytest.fixture
def fast_settings():
    return OrchestratorSettings(
        stop_grace_period=0.2,
        monitor_interval=0.05,
        restart_backoff_initial=0.01,
        restart_backoff_max=0.05,
        default_max_restarts=3,
        poll_floor=0.01,
    )


@pytest.fixture
def make_config():
    def build(*services, project_name="test", **extra) -> OrchestrationConfig:
        return OrchestrationConfig(project_name=project_name, services={s.name: s for s in services}, **extra)
    return build
