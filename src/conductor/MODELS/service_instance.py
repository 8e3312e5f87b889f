"""
Runtime state of services during one orchestrator invocation.
"""
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from .orchestration_config import OrchestrationConfig
from .service_definition import ServiceDefinition


class ServiceState(str, Enum):
    """Lifecycle state of a service instance."""

    PENDING = "pending"
    STARTING = "starting"
    WAITING_HEALTHY = "waiting_healthy"
    HEALTHY = "healthy"
    RUNNING = "running"
    COMPLETED = "completed"
    STOPPING = "stopping"
    STOPPED = "stopped"
    ERRORED = "errored"


class HealthStatus(str, Enum):
    """Health status of a service."""

    STARTING = "starting"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"
    NONE = "none"  # No health check configured


_TRANSITIONS = {
    ServiceState.PENDING: {ServiceState.STARTING, ServiceState.ERRORED, ServiceState.STOPPED},
    ServiceState.STARTING: {
        ServiceState.RUNNING, ServiceState.WAITING_HEALTHY, ServiceState.ERRORED, ServiceState.STOPPING,
    },
    ServiceState.WAITING_HEALTHY: {ServiceState.HEALTHY, ServiceState.ERRORED, ServiceState.STOPPING},
    ServiceState.HEALTHY: {
        ServiceState.STOPPING, ServiceState.ERRORED, ServiceState.STOPPED, ServiceState.COMPLETED,
    },
    ServiceState.RUNNING: {
        ServiceState.STOPPING, ServiceState.ERRORED, ServiceState.STOPPED, ServiceState.COMPLETED,
    },
    ServiceState.COMPLETED: {ServiceState.STOPPING, ServiceState.STOPPED, ServiceState.STARTING},
    ServiceState.STOPPING: {ServiceState.STOPPED, ServiceState.ERRORED},
    ServiceState.STOPPED: {ServiceState.STARTING, ServiceState.PENDING},
    ServiceState.ERRORED: {
        ServiceState.STARTING, ServiceState.STOPPING, ServiceState.STOPPED, ServiceState.PENDING,
    },
}

# States a service can no longer leave without an explicit restart.
TERMINAL_STATES = frozenset({ServiceState.STOPPED, ServiceState.ERRORED, ServiceState.COMPLETED})

# States in which a container exists and is (or was just) running.
ACTIVE_STATES = frozenset({
    ServiceState.STARTING, ServiceState.WAITING_HEALTHY, ServiceState.HEALTHY, ServiceState.RUNNING,
})


def _now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class ServiceInstance:
    """
    One ServiceDefinition bound to a container handle for the duration of a run.
    """

    spec: ServiceDefinition
    state: ServiceState = ServiceState.PENDING
    handle: Optional[Any] = None
    health: HealthStatus = HealthStatus.NONE
    started_at: Optional[str] = None
    restart_count: int = 0
    exit_code: Optional[int] = None
    error: Optional[str] = None
    skipped: bool = False
    history: List[ServiceState] = field(default_factory=list)
    _lock: threading.RLock = field(default_factory=threading.RLock, repr=False, compare=False)

    def __post_init__(self):
        if not self.history:
            self.history.append(self.state)

    @property
    def name(self) -> str:
        return self.spec.name

    def transition(self, new_state: ServiceState, error: Optional[str] = None) -> ServiceState:
        """
        Moves the instance to new_state.

        :param new_state: Target state.
        :param error: Failure description when entering ERRORED.
        :return: The previous state.
        :raises ValueError: If the edge is not part of the lifecycle.
        """
        with self._lock:
            previous = self.state
            if new_state == previous:
                return previous
            if new_state not in _TRANSITIONS[previous]:
                raise ValueError(f"{self.name}: illegal transition {previous.value} -> {new_state.value}")
            self.state = new_state
            self.history.append(new_state)
            if new_state == ServiceState.STARTING:
                self.started_at = _now()
                self.exit_code = None
                self.error = None
                self.skipped = False
            if new_state == ServiceState.ERRORED:
                self.error = error
            return previous

    def mark_skipped(self, failed_dependency: str) -> bool:
        """
        Errors a service that never started because a dependency failed.

        :return: True if the instance was still pending and is now skipped.
        """
        with self._lock:
            if self.state != ServiceState.PENDING:
                return False
            self.transition(ServiceState.ERRORED, f"dependency {failed_dependency} failed")
            self.skipped = True
            return True

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def ever_started(self) -> bool:
        return ServiceState.STARTING in self.history


@dataclass
class ServiceStatus:
    """Row of the ps listing."""

    name: str
    state: str
    health: str = HealthStatus.NONE.value
    restart_count: int = 0
    exit_code: Optional[int] = None
    error: Optional[str] = None

    def __str__(self) -> str:
        if self.state == ServiceState.STOPPED.value and self.exit_code is not None:
            return f"exited({self.exit_code})"
        return self.state


@dataclass
class RunSummary:
    """
    Outcome of an up invocation: what started, what failed, what was skipped.
    """

    started: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    skipped: Dict[str, str] = field(default_factory=dict)
    aborted: bool = False

    @property
    def ok(self) -> bool:
        return not self.failed and not self.skipped and not self.aborted

    @classmethod
    def from_instances(cls, instances: List[ServiceInstance], aborted: bool = False) -> "RunSummary":
        summary = cls(aborted=aborted)
        for instance in instances:
            if instance.state == ServiceState.ERRORED:
                if instance.skipped:
                    summary.skipped[instance.name] = instance.error or ""
                else:
                    summary.failed[instance.name] = instance.error or ""
            elif instance.state in (ServiceState.RUNNING, ServiceState.HEALTHY, ServiceState.COMPLETED):
                summary.started.append(instance.name)
        return summary


@dataclass
class ApplicationRun:
    """
    Aggregate of everything one orchestrator invocation owns: the parsed
    configuration, its dependency graph and one instance per service.
    """

    config: OrchestrationConfig
    graph: Any
    instances: Dict[str, ServiceInstance] = field(default_factory=dict)
    cancel: threading.Event = field(default_factory=threading.Event)

    def __post_init__(self):
        for name, spec in self.config.services.items():
            self.instances.setdefault(name, ServiceInstance(spec=spec))

    @property
    def project_name(self) -> str:
        return self.config.project_name

    def instance(self, name: str) -> ServiceInstance:
        return self.instances[name]
