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
Creation and removal of the named networks and volumes shared by services.
"""
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple, Union

from ..errors import ContainerRuntimeError, ResourceConflictError
from ..MODELS.orchestration_config import NetworkDefinition, VolumeDefinition
from ..RUNTIME.base import ContainerRuntime, ResourceInfo
from ..UTILS.events import EventSink, LoggingEventSink

logger = logging.getLogger(__name__)

Definition = Union[NetworkDefinition, VolumeDefinition]


class ResourceScope(str, Enum):
    """How long a resource lives."""

    RUN = "run"  # removed on every teardown
    PERSISTENT = "persistent"  # removed only when purged
    EXTERNAL = "external"  # never created or removed here


@dataclass(frozen=True)
class ResourceHandle:
    """Reference to a network or volume known to the runtime."""

    kind: str
    key: str
    name: str
    scope: ResourceScope
    path: Optional[str] = None


class ResourceManager:
    """
    Sole mutator of networks and volumes for one project.

    ensure() is idempotent and safe to call concurrently: callers racing on
    the same name are serialised on a per-name lock, the first one creates
    the resource and the others receive the cached handle.
    """

    def __init__(self, runtime: ContainerRuntime, project_name: str, sink: Optional[EventSink] = None):
        self.runtime = runtime
        self.project_name = project_name
        self.sink = sink or LoggingEventSink()
        self._guard = threading.Lock()
        self._locks: Dict[Tuple[str, str], threading.Lock] = {}
        self._handles: Dict[Tuple[str, str], ResourceHandle] = {}

    @staticmethod
    def _kind(definition: Definition) -> str:
        return "network" if isinstance(definition, NetworkDefinition) else "volume"

    def handle_for(self, definition: Definition) -> ResourceHandle:
        """
        Computes the handle of a definition without touching the runtime.
        """
        kind = self._kind(definition)
        if definition.external:
            scope = ResourceScope.EXTERNAL
        elif kind == "network":
            scope = ResourceScope.RUN
        else:
            scope = ResourceScope.PERSISTENT
        return ResourceHandle(kind=kind, key=definition.key, name=definition.runtime_name(self.project_name),
                              scope=scope)

    def _lock_for(self, key: Tuple[str, str]) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    def _find(self, kind: str, name: str) -> Optional[ResourceInfo]:
        listing = self.runtime.list_networks() if kind == "network" else self.runtime.list_volumes()
        for info in listing:
            if info.name == name:
                return info
        return None

    def ensure(self, definition: Definition) -> ResourceHandle:
        """
        Returns a handle to the resource, creating it on first use.

        :param definition: A network or volume definition.
        :return: The shared handle.
        :raises ResourceConflictError: If a resource of that name exists with other parameters.
        :raises ContainerRuntimeError: If an external resource is missing or creation fails.
        """
        handle = self.handle_for(definition)
        cache_key = (handle.kind, handle.name)

        with self._lock_for(cache_key):
            cached = self._handles.get(cache_key)
            if cached is not None:
                return cached

            existing = self._find(handle.kind, handle.name)
            if existing is not None:
                if not definition.external:
                    self._check_compatible(definition, existing, handle)
                logger.debug("Reusing %s %s", handle.kind, handle.name)
            elif definition.external:
                raise ContainerRuntimeError(f"external {handle.kind} {handle.name} not found")
            else:
                labels = dict(definition.labels)
                labels.update({"conductor.project": self.project_name, f"conductor.{handle.kind}": definition.key})
                create = self.runtime.create_network if handle.kind == "network" else self.runtime.create_volume
                existing = create(handle.name, definition.driver, dict(definition.driver_opts), labels)
                self.sink.publish(handle.name, f"{handle.kind}_created")

            handle = ResourceHandle(kind=handle.kind, key=handle.key, name=handle.name, scope=handle.scope,
                                    path=existing.path)
            self._handles[cache_key] = handle
            return handle

    def _check_compatible(self, definition: Definition, existing: ResourceInfo, handle: ResourceHandle) -> None:
        if definition.driver and existing.driver and definition.driver != existing.driver:
            raise ResourceConflictError(
                handle.name,
                f"{handle.kind} {handle.name} exists with driver {existing.driver}, "
                f"but the configuration asks for {definition.driver}",
            )
        if definition.driver_opts and definition.driver_opts != existing.driver_opts:
            raise ResourceConflictError(
                handle.name,
                f"{handle.kind} {handle.name} exists with different driver options",
            )
        project = existing.labels.get("conductor.project")
        if project and project != self.project_name:
            logger.warning("%s %s was created by project %s", handle.kind, handle.name, project)

    def release(self, handle: ResourceHandle, purge: bool = False) -> bool:
        """
        Removes a resource when purge is set or its scope ends with the run.
        Releasing something already gone is a no-op.

        :return: True if the resource was removed.
        """
        if handle.scope == ResourceScope.EXTERNAL:
            return False
        if handle.scope == ResourceScope.PERSISTENT and not purge:
            return False

        cache_key = (handle.kind, handle.name)
        with self._lock_for(cache_key):
            self._handles.pop(cache_key, None)
            if self._find(handle.kind, handle.name) is None:
                return False
            remove = self.runtime.remove_network if handle.kind == "network" else self.runtime.remove_volume
            remove(handle.name)
        self.sink.publish(handle.name, f"{handle.kind}_removed")
        return True

    def release_all(self, definitions: Iterable[Definition], purge_volumes: bool = False) -> List[ResourceHandle]:
        """
        Releases every given resource; networks always, volumes only when purged.

        :return: Handles that were actually removed.
        """
        removed = []
        for definition in definitions:
            handle = self.handle_for(definition)
            if self.release(handle, purge=purge_volumes):
                removed.append(handle)
        return removed

    @property
    def handles(self) -> List[ResourceHandle]:
        with self._guard:
            return list(self._handles.values())
