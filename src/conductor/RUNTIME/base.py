# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Abstract container runtime consumed by the orchestrator.

The orchestrator never touches processes, namespaces or storage directly;
everything goes through a ContainerRuntime. Implementations raise
ContainerRuntimeError for every rejected operation.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterator, List, Optional

from ..errors import ContainerRuntimeError
from ..MODELS.service_definition import HealthCheck, ServiceDefinition, VolumeMount
from ..MODELS.service_instance import HealthStatus


class ContainerState(str, Enum):
    """State of a container as reported by the runtime."""

    CREATED = "created"
    RUNNING = "running"
    EXITED = "exited"
    MISSING = "missing"


@dataclass
class ContainerHandle:
    """Opaque reference to a runtime container."""

    id: str
    name: str
    service: str


@dataclass
class ContainerStatus:
    """Result of inspecting a container."""

    state: ContainerState
    exit_code: Optional[int] = None
    pid: Optional[int] = None

    @property
    def running(self) -> bool:
        return self.state == ContainerState.RUNNING


@dataclass
class HealthResult:
    """Outcome of a single health probe."""

    status: HealthStatus
    output: str = ""


@dataclass
class ResourceInfo:
    """A network or volume as known by the runtime."""

    name: str
    kind: str
    driver: Optional[str] = None
    driver_opts: Dict[str, str] = field(default_factory=dict)
    labels: Dict[str, str] = field(default_factory=dict)
    path: Optional[str] = None


class ContainerRuntime(ABC):
    """
    Capability set the orchestrator needs from a container runtime.
    """

    # -- containers -----------------------------------------------------

    @abstractmethod
    def create_container(self,
                         name: str,
                         spec: ServiceDefinition,
                         environment: Dict[str, str],
                         networks: List[str],
                         mounts: List[VolumeMount],
                         labels: Dict[str, str]) -> ContainerHandle:
        """
        Creates (but does not start) a container.

        :param name: Runtime name of the container.
        :param spec: The service definition.
        :param environment: Fully resolved environment.
        :param networks: Runtime names of the networks to join.
        :param mounts: Mounts whose sources are runtime volume names or host paths.
        :param labels: Labels identifying project and service.
        """

    @abstractmethod
    def start(self, handle: ContainerHandle) -> None:
        """Starts a created container; returns once the runtime acknowledges the launch."""

    @abstractmethod
    def stop(self, handle: ContainerHandle, signal_name: str = "SIGTERM") -> None:
        """Requests a graceful stop without waiting for it."""

    @abstractmethod
    def signal(self, handle: ContainerHandle, signal_name: str) -> None:
        """Delivers a signal; SIGKILL force-terminates."""

    @abstractmethod
    def wait(self, handle: ContainerHandle, timeout: Optional[float]) -> Optional[int]:
        """
        Waits for the container to exit.

        :return: Exit code, or None if it is still running after timeout.
        """

    @abstractmethod
    def inspect(self, handle: ContainerHandle) -> ContainerStatus:
        """Reports the current container state."""

    @abstractmethod
    def check_health(self, handle: ContainerHandle, healthcheck: HealthCheck) -> HealthResult:
        """
        Runs one health probe, bounded by healthcheck.timeout.
        UNKNOWN means the container cannot be reached yet.
        """

    @abstractmethod
    def remove(self, handle: ContainerHandle) -> None:
        """Removes a stopped container. Removing a missing container is not an error."""

    @abstractmethod
    def find_container(self, name: str) -> Optional[ContainerHandle]:
        """Looks up an existing container by runtime name."""

    @abstractmethod
    def logs(self, handle: ContainerHandle, follow: bool = False, tail: Optional[int] = None) -> Iterator[str]:
        """Yields log lines of a container."""

    @abstractmethod
    def exec(self, handle: ContainerHandle, command: List[str]) -> int:
        """Runs a command in the context of a running container and returns its exit code."""

    def build(self, spec: ServiceDefinition) -> None:
        """
        Builds the image of a service. Runtimes without a builder reject it.
        """
        raise ContainerRuntimeError(f"{type(self).__name__} cannot build images", service=spec.name)

    # -- networks -------------------------------------------------------

    @abstractmethod
    def create_network(self, name: str, driver: Optional[str], driver_opts: Dict[str, str],
                       labels: Dict[str, str]) -> ResourceInfo:
        """Creates a network."""

    @abstractmethod
    def remove_network(self, name: str) -> None:
        """Removes a network."""

    @abstractmethod
    def list_networks(self) -> List[ResourceInfo]:
        """Lists existing networks."""

    # -- volumes --------------------------------------------------------

    @abstractmethod
    def create_volume(self, name: str, driver: Optional[str], driver_opts: Dict[str, str],
                      labels: Dict[str, str]) -> ResourceInfo:
        """Creates a volume."""

    @abstractmethod
    def remove_volume(self, name: str) -> None:
        """Removes a volume."""

    @abstractmethod
    def list_volumes(self) -> List[ResourceInfo]:
        """Lists existing volumes."""
