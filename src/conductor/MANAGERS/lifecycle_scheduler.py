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
Dependency-ordered startup and teardown of service instances.

Every service gets its own control thread. A thread blocks only on the
completion signals of its direct dependencies, so independent parts of the
graph start in parallel. Teardown mirrors this: a service is stopped once
everything depending on it has stopped.
"""
import logging
import threading
import time
from typing import Dict, Iterable, List, Optional, Set, Tuple

from tenacity import Retrying, retry_if_exception, stop_after_attempt, wait_exponential

from ..errors import ContainerRuntimeError, HealthTimeoutError, ResourceConflictError
from ..MODELS.service_definition import DependencyCondition
from ..MODELS.service_instance import (
    ACTIVE_STATES,
    ApplicationRun,
    HealthStatus,
    RunSummary,
    ServiceInstance,
    ServiceState,
)
from ..MODELS.settings import OrchestratorSettings
from ..RUNNERS.dependency_resolver import DependencyGraph
from ..RUNTIME.base import ContainerHandle, ContainerRuntime
from ..UTILS.events import EventSink, LoggingEventSink
from .health_monitor import HealthGate
from .network_manager import ServiceDiscovery
from .resource_manager import ResourceManager

logger = logging.getLogger(__name__)

# States that satisfy each dependency condition.
_SATISFIES = {
    DependencyCondition.STARTED: {
        ServiceState.RUNNING, ServiceState.WAITING_HEALTHY, ServiceState.HEALTHY, ServiceState.COMPLETED,
    },
    DependencyCondition.HEALTHY: {ServiceState.HEALTHY},
    DependencyCondition.COMPLETED: {ServiceState.COMPLETED},
}

_RETRYABLE = (ContainerRuntimeError, HealthTimeoutError)


class LifecycleScheduler:
    """
    Walks the dependency graph of an ApplicationRun to start and stop services.
    """

    def __init__(self,
                 run: ApplicationRun,
                 runtime: ContainerRuntime,
                 resources: ResourceManager,
                 health_gate: HealthGate,
                 settings: Optional[OrchestratorSettings] = None,
                 sink: Optional[EventSink] = None):
        self.run = run
        self.runtime = runtime
        self.resources = resources
        self.health_gate = health_gate
        self.settings = settings or OrchestratorSettings()
        self.sink = sink or LoggingEventSink()
        self.discovery = ServiceDiscovery(run.config)

        # started: container launched (or the service gave up); settled: final startup state reached
        self._started: Dict[str, threading.Event] = {name: threading.Event() for name in run.graph.nodes}
        self._settled: Dict[str, threading.Event] = {name: threading.Event() for name in run.graph.nodes}
        # services stopped on request; the supervisor leaves them alone
        self._halted: Set[str] = set()
        self._threads: List[Tuple[Optional[str], threading.Thread]] = []
        self._threads_lock = threading.Lock()
        self._tearing_down = threading.Event()
        self._monitor_stop = threading.Event()
        self._monitor: Optional[threading.Thread] = None

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def container_name(self, service: str) -> str:
        return f"{self.run.project_name}-{service}-1"

    def _spawn(self, target, name: str, *args, service: Optional[str] = None) -> threading.Thread:
        thread = threading.Thread(target=target, args=args, name=name, daemon=True)
        with self._threads_lock:
            self._threads = [(s, t) for s, t in self._threads if t.is_alive()]
            self._threads.append((service, thread))
        thread.start()
        return thread

    def _join(self, threads: Iterable[threading.Thread]) -> None:
        # short timeouts keep the main thread responsive to KeyboardInterrupt
        for thread in threads:
            while thread.is_alive():
                thread.join(0.2)

    def _sleep(self, seconds: float) -> None:
        self.run.cancel.wait(seconds)

    def _cancelled(self, name: str) -> bool:
        return self.run.cancel.is_set() or name in self._halted

    def adopt(self, service: str, handle: ContainerHandle) -> None:
        """
        Binds a container left by an earlier invocation to its instance.
        Running containers are taken over as started; others are only remembered
        so that they can be cleaned up.
        """
        instance = self.run.instance(service)
        instance.handle = handle
        status = self.runtime.inspect(handle)
        if instance.state != ServiceState.PENDING:
            return
        if not status.running:
            instance.transition(ServiceState.STOPPED)
            instance.exit_code = status.exit_code
            return
        instance.transition(ServiceState.STARTING)
        if instance.spec.has_healthcheck:
            instance.transition(ServiceState.WAITING_HEALTHY)
        else:
            instance.transition(ServiceState.RUNNING)
        self.sink.publish(service, "adopted", handle.name)

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    def start_all(self, names: Optional[Iterable[str]] = None) -> RunSummary:
        """
        Starts the selected services (default: all) and everything they depend on.

        :param names: Services to start.
        :return: Which services started, failed, or were skipped.
        """
        graph = self.run.graph.subgraph(names) if names else self.run.graph
        self.run.cancel.clear()
        self._tearing_down.clear()

        for name in graph.nodes:
            instance = self.run.instance(name)
            if instance.state in (ServiceState.STOPPED, ServiceState.ERRORED):
                instance.transition(ServiceState.PENDING)
        for name in graph.nodes:
            self._halted.discard(name)
            self._started[name].clear()
            self._settled[name].clear()

        logger.info("Starting services in waves: %s", " | ".join(", ".join(w) for w in graph.waves()))
        threads = [
            self._spawn(self._control, f"start-{name}", name, graph, service=name) for name in graph.nodes
        ]
        self._join(threads)

        return RunSummary.from_instances(
            [self.run.instance(name) for name in graph.nodes], aborted=self.run.cancel.is_set()
        )

    def _control(self, name: str, graph: DependencyGraph) -> None:
        """
        Control task of one service: wait for dependencies, then launch.
        """
        instance = self.run.instance(name)
        try:
            if instance.state in (ServiceState.RUNNING, ServiceState.HEALTHY, ServiceState.COMPLETED):
                return
            if instance.state == ServiceState.WAITING_HEALTHY:
                # adopted from an earlier invocation
                self._started[name].set()
                try:
                    self._await_health(instance)
                except HealthTimeoutError as e:
                    self.sink.publish(name, "errored", str(e))
                return

            for dep, condition in graph.dependencies[name].items():
                signal = self._settled[dep] if condition != DependencyCondition.STARTED else self._started[dep]
                signal.wait()
                dependency = self.run.instance(dep)
                if dependency.state not in _SATISFIES[condition]:
                    # a restarting dependency may be between attempts
                    self._settled[dep].wait()
                if self._cancelled(name):
                    instance.transition(ServiceState.STOPPED)
                    return
                if dependency.state not in _SATISFIES[condition]:
                    if instance.mark_skipped(dep):
                        self.sink.publish(name, "skipped", f"dependency {dep} is {dependency.state.value}")
                    return

            if self._cancelled(name):
                instance.transition(ServiceState.STOPPED)
                return

            self._launch_with_restart(instance)
            if instance.state in (ServiceState.RUNNING, ServiceState.HEALTHY) and self._needs_completion(name, graph):
                self._await_completion(instance)
        except Exception as e:
            logger.exception("Control task of %s failed", name)
            if instance.state not in (ServiceState.ERRORED, ServiceState.STOPPED):
                instance.transition(ServiceState.ERRORED, str(e))
        finally:
            self._started[name].set()
            self._settled[name].set()

    @staticmethod
    def _needs_completion(name: str, graph: DependencyGraph) -> bool:
        return any(
            graph.dependencies[dependent].get(name) == DependencyCondition.COMPLETED
            for dependent in graph.dependents[name]
        )

    def _max_start_attempts(self, instance: ServiceInstance) -> int:
        policy = instance.spec.restart_policy
        if not policy.should_restart(None):
            return 1
        return 1 + (policy.max_retries or self.settings.default_max_restarts)

    def _launch_with_restart(self, instance: ServiceInstance) -> None:
        """
        Launches a service, re-entering STARTING with exponential backoff while
        its restart policy allows it.
        """
        attempts = self._max_start_attempts(instance)

        def before_sleep(retry_state):
            error = retry_state.outcome.exception()
            self.sink.publish(instance.name, "restarting", str(error), attempt=retry_state.attempt_number)

        retrying = Retrying(
            stop=stop_after_attempt(attempts),
            wait=wait_exponential(
                multiplier=self.settings.restart_backoff_initial,
                max=self.settings.restart_backoff_max,
            ),
            retry=retry_if_exception(lambda e: isinstance(e, _RETRYABLE) and not self._cancelled(instance.name)),
            sleep=self._sleep,
            before_sleep=before_sleep,
            reraise=True,
        )
        try:
            for attempt in retrying:
                if attempt.retry_state.attempt_number > 1 and self._cancelled(instance.name):
                    break
                with attempt:
                    if attempt.retry_state.attempt_number > 1:
                        instance.restart_count += 1
                    self._launch(instance)
        except (ContainerRuntimeError, HealthTimeoutError, ResourceConflictError) as e:
            if instance.state != ServiceState.ERRORED:
                instance.transition(ServiceState.ERRORED, str(e))
            self.sink.publish(instance.name, "errored", str(e))

    def _launch(self, instance: ServiceInstance) -> None:
        """
        One start attempt: ensure resources, create and start the container,
        then wait for readiness.
        """
        name = instance.name
        if instance.handle is not None:
            self._discard(instance)

        instance.transition(ServiceState.STARTING)
        self.sink.publish(name, "starting")
        try:
            instance.handle = self._create(instance)
            self.runtime.start(instance.handle)
        except (ContainerRuntimeError, ResourceConflictError) as e:
            instance.transition(ServiceState.ERRORED, str(e))
            raise

        if not instance.spec.has_healthcheck:
            instance.transition(ServiceState.RUNNING)
            instance.health = HealthStatus.NONE
            self._started[name].set()
            self.sink.publish(name, "running")
            return

        instance.transition(ServiceState.WAITING_HEALTHY)
        self._started[name].set()
        self._await_health(instance)
        if instance.state == ServiceState.ERRORED:
            raise ContainerRuntimeError(instance.error or f"{name} failed", service=name)

    def _await_health(self, instance: ServiceInstance) -> None:
        try:
            healthy = self.health_gate.wait_until_healthy(instance, self.run.cancel)
        except (HealthTimeoutError, ContainerRuntimeError) as e:
            instance.transition(ServiceState.ERRORED, str(e))
            if isinstance(e, HealthTimeoutError):
                raise
            return
        if healthy:
            instance.transition(ServiceState.HEALTHY)

    def _await_completion(self, instance: ServiceInstance) -> None:
        """
        Waits for a one-shot service that others expect to complete successfully.
        """
        while not self.run.cancel.is_set():
            code = self.runtime.wait(instance.handle, self.settings.monitor_interval)
            if code is None:
                continue
            instance.exit_code = code
            if code == 0:
                instance.transition(ServiceState.COMPLETED)
                self.sink.publish(instance.name, "completed")
            else:
                instance.transition(ServiceState.ERRORED, f"exited with code {code}")
                self.sink.publish(instance.name, "errored", f"exited with code {code}")
            return

    def _create(self, instance: ServiceInstance) -> ContainerHandle:
        config = self.run.config
        name = instance.name
        spec = instance.spec

        networks = [self.resources.ensure(config.networks[key]).name for key in config.service_networks(name)]
        mounts = []
        for mount in spec.volumes:
            if mount.type == "volume" and mount.source in config.volumes:
                handle = self.resources.ensure(config.volumes[mount.source])
                mount = mount.model_copy(update={"source": handle.name})
            mounts.append(mount)

        environment = self.discovery.environment_for(name)
        environment.update(spec.environment)
        labels = dict(spec.labels)
        labels.update({"conductor.project": self.run.project_name, "conductor.service": name})

        return self.runtime.create_container(self.container_name(name), spec, environment, networks, mounts, labels)

    def _discard(self, instance: ServiceInstance) -> None:
        """
        Stops and removes the previous container of an instance before a re-launch.
        """
        handle = instance.handle
        if self.runtime.inspect(handle).running:
            self._terminate(instance, self._grace(instance, None))
        self.runtime.remove(handle)
        instance.handle = None

    # ------------------------------------------------------------------
    # Supervision
    # ------------------------------------------------------------------

    def supervise(self) -> None:
        """
        Starts the background monitor that applies restart policies to
        services exiting unexpectedly.
        """
        if self._monitor is not None and self._monitor.is_alive():
            return
        self._monitor_stop.clear()
        self._monitor = threading.Thread(target=self._monitor_loop, name="supervisor", daemon=True)
        self._monitor.start()

    def stop_supervising(self) -> None:
        self._monitor_stop.set()
        if self._monitor is not None:
            self._monitor.join(timeout=self.settings.monitor_interval + 1)
            self._monitor = None

    def _monitor_loop(self) -> None:
        """
        Internal loop that periodically checks every running service.
        """
        while not self._monitor_stop.wait(self.settings.monitor_interval):
            for instance in list(self.run.instances.values()):
                if instance.state not in (ServiceState.RUNNING, ServiceState.HEALTHY) or instance.handle is None:
                    continue
                try:
                    status = self.runtime.inspect(instance.handle)
                except ContainerRuntimeError as e:
                    logger.warning("Cannot inspect %s: %s", instance.name, e)
                    continue
                if not status.running:
                    self.handle_exit(instance, status.exit_code)

    def handle_exit(self, instance: ServiceInstance, exit_code: Optional[int]) -> None:
        """
        Records an unexpected exit and schedules a restart when the policy asks for one.
        """
        if self._tearing_down.is_set() or instance.name in self._halted:
            return
        with instance._lock:
            if instance.state not in (ServiceState.RUNNING, ServiceState.HEALTHY):
                return
            instance.exit_code = exit_code
            if exit_code == 0:
                instance.transition(ServiceState.STOPPED)
            else:
                instance.transition(ServiceState.ERRORED, f"exited with code {exit_code}")
        self.sink.publish(instance.name, "exited", f"code {exit_code}")
        self._schedule_restart(instance, exit_code)

    def _schedule_restart(self, instance: ServiceInstance, exit_code: Optional[int]) -> None:
        policy = instance.spec.restart_policy
        if not policy.should_restart(exit_code):
            return
        # only an explicit count bounds supervised restarts
        if policy.max_retries and instance.restart_count >= policy.max_retries:
            logger.warning("Service %s exceeded max restart attempts (%d)", instance.name, policy.max_retries)
            return

        delay = min(
            self.settings.restart_backoff_initial * (2 ** min(instance.restart_count, 32)),
            self.settings.restart_backoff_max,
        )
        self._spawn(self._restart_after, f"restart-{instance.name}", instance, delay, service=instance.name)

    def _restart_after(self, instance: ServiceInstance, delay: float) -> None:
        deadline = time.monotonic() + delay
        while not self._cancelled(instance.name) and not self._tearing_down.is_set():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            self.run.cancel.wait(min(remaining, self.settings.monitor_interval))
        else:
            return
        instance.restart_count += 1
        logger.info("Restarting service %s (attempt %d)", instance.name, instance.restart_count)
        try:
            self._launch(instance)
        except (ContainerRuntimeError, HealthTimeoutError, ResourceConflictError) as e:
            if instance.state != ServiceState.ERRORED:
                instance.transition(ServiceState.ERRORED, str(e))
            self.sink.publish(instance.name, "errored", str(e))
            if not self._cancelled(instance.name) and not self._tearing_down.is_set():
                self._schedule_restart(instance, None)
        except Exception as e:
            logger.exception("Restart of %s failed", instance.name)
            if instance.state not in (ServiceState.ERRORED, ServiceState.STOPPED):
                instance.transition(ServiceState.ERRORED, str(e))

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def abort(self) -> None:
        """
        Interrupts startup: pending services never start and every wait returns.
        The caller then runs stop_all() for an ordered teardown.
        """
        self.run.cancel.set()
        for event in list(self._started.values()) + list(self._settled.values()):
            event.set()

    def stop_all(self, names: Optional[Iterable[str]] = None, timeout: Optional[float] = None) -> Dict[str, str]:
        """
        Stops services in reverse dependency order.

        :param names: Services to stop (default: all).
        :param timeout: Grace period overriding every service's own.
        :return: Services that failed to stop, with the reason.
        """
        graph = self.run.graph.subgraph(names, include_dependencies=False) if names else self.run.graph
        if names:
            # the rest of the application stays up and supervised
            self._halted.update(graph.nodes)
            for name in graph.nodes:
                self._started[name].set()
                self._settled[name].set()
        else:
            self._tearing_down.set()
            self.run.cancel.set()
            self.stop_supervising()
        with self._threads_lock:
            pending = [t for service, t in self._threads if not names or service in graph.nodes]
        self._join(pending)

        stopped = {name: threading.Event() for name in graph.nodes}
        failures: Dict[str, str] = {}

        def stop_one(name: str):
            try:
                for dependent in graph.dependents[name]:
                    stopped[dependent].wait()
                error = self._stop_instance(self.run.instance(name), timeout)
                if error:
                    failures[name] = error
            finally:
                stopped[name].set()

        logger.info("Stopping services in order: %s", ", ".join(graph.teardown_order()))
        threads = [self._spawn(stop_one, f"stop-{name}", name) for name in graph.nodes]
        self._join(threads)
        return failures

    def _grace(self, instance: ServiceInstance, timeout: Optional[float]) -> float:
        if timeout is not None:
            return timeout
        if instance.spec.stop_grace_period is not None:
            return instance.spec.stop_grace_period
        return self.settings.stop_grace_period

    def _terminate(self, instance: ServiceInstance, grace: float) -> Optional[int]:
        """
        Two-phase stop: graceful signal, then SIGKILL after the grace period.
        """
        handle = instance.handle
        self.runtime.stop(handle, instance.spec.stop_signal)
        code = self.runtime.wait(handle, grace)
        if code is None:
            self.sink.publish(instance.name, "killed", f"no exit within {grace:g}s")
            self.runtime.signal(handle, "SIGKILL")
            code = self.runtime.wait(handle, max(grace, 1.0))
            if code is None:
                raise ContainerRuntimeError(f"{instance.name} did not exit after SIGKILL", service=instance.name)
        return code

    def _stop_instance(self, instance: ServiceInstance, timeout: Optional[float]) -> Optional[str]:
        """
        Stops and removes the container of one instance.

        :return: An error message, or None on success.
        """
        if instance.handle is None:
            if instance.state == ServiceState.PENDING:
                instance.transition(ServiceState.STOPPED)
            elif instance.state in ACTIVE_STATES:
                instance.transition(ServiceState.STOPPING)
                instance.transition(ServiceState.STOPPED)
            return None

        if instance.state not in (ServiceState.PENDING, ServiceState.STOPPED):
            instance.transition(ServiceState.STOPPING)
            self.sink.publish(instance.name, "stopping")
        started = time.monotonic()
        try:
            status = self.runtime.inspect(instance.handle)
            if status.running:
                instance.exit_code = self._terminate(instance, self._grace(instance, timeout))
            elif status.exit_code is not None:
                instance.exit_code = status.exit_code
            self.runtime.remove(instance.handle)
        except ContainerRuntimeError as e:
            if instance.state == ServiceState.STOPPING:
                instance.transition(ServiceState.ERRORED, str(e))
            self.sink.publish(instance.name, "errored", str(e))
            return str(e)

        instance.handle = None
        if instance.state in (ServiceState.STOPPING, ServiceState.PENDING):
            instance.transition(ServiceState.STOPPED)
        self.sink.publish(instance.name, "stopped", f"in {time.monotonic() - started:.1f}s")
        return None
