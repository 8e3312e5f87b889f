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
Readiness gate: runs health probes and decides when a service counts as healthy.
"""
import logging
import threading
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Optional

from ..errors import ContainerRuntimeError, HealthTimeoutError
from ..MODELS.service_instance import HealthStatus, ServiceInstance
from ..RUNTIME.base import ContainerRuntime, HealthResult
from ..UTILS.events import EventSink, LoggingEventSink

logger = logging.getLogger(__name__)


@dataclass
class ServiceHealth:
    """Health information for a service."""

    status: HealthStatus = HealthStatus.NONE
    failing_streak: int = 0
    probes: int = 0
    last_check: Optional[str] = None
    last_output: str = ""


class HealthGate:
    """
    Evaluates readiness probes for service instances.

    A probe yields HEALTHY, UNHEALTHY or UNKNOWN. UNKNOWN means the runtime
    cannot reach the service yet and is counted like UNHEALTHY towards the
    retry limit, but is never by itself a failure.
    """

    def __init__(self, runtime: ContainerRuntime, sink: Optional[EventSink] = None, poll_floor: float = 0.05):
        """
        :param runtime: Runtime that executes the probes.
        :param sink: Destination of health events.
        :param poll_floor: Lower bound for the wait between two probes.
        """
        self.runtime = runtime
        self.sink = sink or LoggingEventSink()
        self.poll_floor = poll_floor
        self._health: Dict[str, ServiceHealth] = {}
        self._lock = threading.Lock()
        self._executor: Optional[ThreadPoolExecutor] = None

    def get_health(self, service_name: str) -> ServiceHealth:
        """
        Get the health status of a service.
        """
        with self._lock:
            return self._health.get(service_name, ServiceHealth())

    def get_all_health(self) -> Dict[str, ServiceHealth]:
        """Get health status of all services."""
        with self._lock:
            return self._health.copy()

    def reset_health(self, name: str) -> ServiceHealth:
        with self._lock:
            health = self._health[name] = ServiceHealth()
            return health

    def probe(self, instance: ServiceInstance) -> HealthStatus:
        """
        Runs one probe for the instance, bounded by the probe's timeout.

        :param instance: The service instance.
        :return: HEALTHY, UNHEALTHY or UNKNOWN.
        """
        hc = instance.spec.health_check
        with self._lock:
            health = self._health.setdefault(instance.name, ServiceHealth())

        if hc is None or not hc.enabled:
            health.status = HealthStatus.HEALTHY
            return HealthStatus.HEALTHY
        if instance.handle is None:
            result = HealthResult(HealthStatus.UNKNOWN, "container not created")
        else:
            future = self._pool().submit(self.runtime.check_health, instance.handle, hc)
            try:
                # the runtime enforces the timeout itself; this bounds a runtime that does not
                result = future.result(timeout=hc.timeout + 1.0)
            except FutureTimeout:
                result = HealthResult(HealthStatus.UNHEALTHY, "Health check timed out")
            except ContainerRuntimeError as e:
                result = HealthResult(HealthStatus.UNKNOWN, str(e))

        health.probes += 1
        health.last_check = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
        health.last_output = result.output
        if result.status == HealthStatus.HEALTHY:
            health.failing_streak = 0
        else:
            health.failing_streak += 1
        health.status = result.status
        return result.status

    def wait_until_healthy(self, instance: ServiceInstance, cancel: threading.Event) -> bool:
        """
        Polls the probe until it succeeds or the retry limit is exceeded.

        :param instance: The started service instance.
        :param cancel: Set to abort the wait.
        :return: True once healthy, False if cancelled.
        :raises HealthTimeoutError: If more than `retries` consecutive probes fail.
        :raises ContainerRuntimeError: If the container exits while waiting.
        """
        hc = instance.spec.health_check
        health = self.reset_health(instance.name)
        health.status = HealthStatus.STARTING
        instance.health = HealthStatus.STARTING

        if hc is None or not hc.enabled:
            instance.health = HealthStatus.NONE
            return True

        if hc.start_period > 0 and cancel.wait(hc.start_period):
            return False

        while True:
            status = self.runtime.inspect(instance.handle)
            if not status.running:
                raise ContainerRuntimeError(
                    f"{instance.name} exited with code {status.exit_code} before becoming healthy",
                    service=instance.name,
                )

            result = self.probe(instance)
            instance.health = result
            if result == HealthStatus.HEALTHY:
                self.sink.publish(instance.name, "healthy", f"after {health.probes} probe(s)")
                return True

            self.sink.publish(instance.name, "unhealthy" if result == HealthStatus.UNHEALTHY else "probe_unknown",
                              health.last_output, streak=health.failing_streak)
            if health.failing_streak > hc.retries:
                raise HealthTimeoutError(instance.name, health.failing_streak, health.last_output)

            if cancel.wait(max(hc.interval, self.poll_floor)):
                return False

    def _pool(self) -> ThreadPoolExecutor:
        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(thread_name_prefix="health-probe")
            return self._executor

    def shutdown(self):
        """
        Releases the probe threads. A later probe starts a fresh pool.
        """
        with self._lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=False, cancel_futures=True)
