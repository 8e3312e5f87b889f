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
Orchestration for multiple services, managing dependencies and health.
"""
import logging
from typing import Dict, Iterable, List, Optional

import yaml

from ..errors import ContainerRuntimeError, ValidationError
from ..MODELS.orchestration_config import OrchestrationConfig
from ..MODELS.service_instance import ApplicationRun, RunSummary, ServiceStatus
from ..MODELS.settings import OrchestratorSettings
from ..RUNNERS.dependency_resolver import DependencyResolver
from ..RUNTIME.base import ContainerHandle, ContainerRuntime
from ..UTILS.events import EventSink, LoggingEventSink
from .health_monitor import HealthGate
from .lifecycle_scheduler import LifecycleScheduler
from .log_aggregator import LogAggregator
from .resource_manager import ResourceManager

logger = logging.getLogger(__name__)


class ServiceOrchestrator:
    """
    Orchestrates multiple services based on their dependencies.
    """
    def __init__(self,
                 config: OrchestrationConfig,
                 runtime: Optional[ContainerRuntime] = None,
                 settings: Optional[OrchestratorSettings] = None,
                 sink: Optional[EventSink] = None,
                 base_dir: str = "."):
        """
        Initializes the orchestrator.

        The dependency graph is built here, so a cycle is reported before
        any network, volume or container is touched.

        :param config: Configuration for all services.
        :param runtime: Container runtime; defaults to the local process runtime.
        :param settings: Orchestrator tunables.
        :param sink: Destination of lifecycle events.
        :param base_dir: Working directory for the services.
        """
        self.config = config
        self.settings = settings or OrchestratorSettings.from_environ()
        self.sink = sink or LoggingEventSink()
        self.resolver = DependencyResolver()
        graph = self.resolver.build(config)

        if runtime is None:
            from ..RUNTIME.process_runtime import LocalProcessRuntime
            runtime = LocalProcessRuntime(state_dir=self.settings.state_dir, base_dir=base_dir)
        self.runtime = runtime

        self.run = ApplicationRun(config=config, graph=graph)
        self.resources = ResourceManager(runtime, config.project_name, self.sink)
        self.health_gate = HealthGate(runtime, self.sink, poll_floor=self.settings.poll_floor)
        self.scheduler = LifecycleScheduler(
            self.run, runtime, self.resources, self.health_gate, self.settings, self.sink
        )
        self._discover()

    def _discover(self):
        """
        Binds containers created by an earlier invocation to their instances.
        """
        for name in self.config.services:
            try:
                handle = self.runtime.find_container(self.scheduler.container_name(name))
            except ContainerRuntimeError as e:
                logger.warning("Cannot look up container of %s: %s", name, e)
                continue
            if handle is not None:
                self.scheduler.adopt(name, handle)

    def _check_services(self, services: Optional[Iterable[str]]) -> Optional[List[str]]:
        if not services:
            return None
        names = list(services)
        unknown = [name for name in names if name not in self.config.services]
        if unknown:
            raise ValidationError(f"no such service: {', '.join(unknown)}")
        return names

    def up(self, services: Optional[Iterable[str]] = None) -> RunSummary:
        """
        Starts the services and their dependencies in dependency order, then
        supervises them in the background.

        :param services: Services to start; all when empty.
        :return: What started, failed or was skipped.
        """
        names = self._check_services(services)
        summary = self.scheduler.start_all(names)
        if not summary.aborted:
            self.scheduler.supervise()
        if summary.started:
            logger.info("Started: %s", ", ".join(summary.started))
        return summary

    def down(self, purge_volumes: bool = False, timeout: Optional[float] = None) -> Dict[str, str]:
        """
        Stops all services in reverse dependency order, then removes networks
        (and volumes when purge_volumes is set).

        :return: Services or resources that could not be removed, with the reason.
        """
        failures = self.scheduler.stop_all(timeout=timeout)
        definitions = list(self.config.networks.values()) + list(self.config.volumes.values())
        for definition in definitions:
            try:
                self.resources.release(self.resources.handle_for(definition), purge=purge_volumes)
            except ContainerRuntimeError as e:
                failures[definition.key] = str(e)
        self.health_gate.shutdown()
        return failures

    def stop(self, services: Optional[Iterable[str]] = None, timeout: Optional[float] = None) -> Dict[str, str]:
        return self.scheduler.stop_all(self._check_services(services), timeout=timeout)

    def restart(self, services: Optional[Iterable[str]] = None, timeout: Optional[float] = None) -> RunSummary:
        """
        Stops the services in reverse order, then starts them again.
        """
        names = self._check_services(services)
        self.scheduler.stop_all(names, timeout=timeout)
        return self.up(names)

    def abort(self):
        """
        Interrupts a running startup. Call down() afterwards for the ordered teardown.
        """
        self.scheduler.abort()

    def ps(self) -> Dict[str, ServiceStatus]:
        """
        Returns the status of all services.

        :return: Service names and their statuses.
        """
        result = {}
        for name, instance in self.run.instances.items():
            health = self.health_gate.get_all_health().get(name)
            result[name] = ServiceStatus(
                name=name,
                state=instance.state.value,
                health=(health.status if health else instance.health).value,
                restart_count=instance.restart_count,
                exit_code=instance.exit_code,
                error=instance.error,
            )
        return result

    def _handles(self, services: Optional[Iterable[str]]) -> Dict[str, ContainerHandle]:
        names = self._check_services(services) or list(self.config.services)
        return {
            name: self.run.instance(name).handle
            for name in names
            if self.run.instance(name).handle is not None
        }

    def logs(self, services: Optional[Iterable[str]] = None, follow: bool = False, tail: Optional[int] = None,
             echo=None):
        """
        Prints the logs of the given services, prefixed with the service name.
        """
        LogAggregator(self.runtime).tail_logs(self._handles(services), follow=follow, tail=tail, echo=echo)

    def exec(self, service: str, command: List[str]) -> int:
        """
        Runs a command inside a running service.

        :return: The command's exit code.
        """
        self._check_services([service])
        handle = self.run.instance(service).handle
        if handle is None:
            raise ContainerRuntimeError(f"service {service} is not running", service=service)
        return self.runtime.exec(handle, command)

    def build(self, services: Optional[Iterable[str]] = None) -> List[str]:
        """
        Builds the services that declare a build context.

        :return: Names of the services that were built.
        """
        names = self._check_services(services) or list(self.config.services)
        built = []
        for name in names:
            spec = self.config.services[name]
            if spec.build is None:
                continue
            self.runtime.build(spec)
            built.append(name)
        return built

    def render_config(self) -> str:
        """
        Returns the merged, interpolated configuration as YAML.
        """
        data = self.config.model_dump(mode="json", exclude={"sources"})
        return yaml.safe_dump(data, sort_keys=False, default_flow_style=False)
