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
Runtime that runs every service as a native host process.

There is no isolation: volumes are plain directories, networks are records
used for service discovery, and containers are process trees tracked by pid.
State lives in JSON files under the state directory so that a later
invocation can inspect and stop what an earlier one started.
"""
import json
import logging
import os
import re
import shutil
import signal
import subprocess
import sys
import threading
import time
import uuid
from typing import Any, Dict, Iterator, List, Optional, Union

import psutil

from ..errors import ContainerRuntimeError
from ..MODELS.service_definition import HealthCheck, ServiceDefinition, VolumeMount, VolumeType
from ..MODELS.service_instance import HealthStatus
from .base import ContainerHandle, ContainerRuntime, ContainerState, ContainerStatus, HealthResult, ResourceInfo
from .process_runner import ProcessRunner
from ..UTILS.port_finder import is_port_free

logger = logging.getLogger(__name__)


def mount_variable(target: str) -> str:
    """
    Name of the variable through which a mount target is exposed: /var/lib/data -> CONDUCTOR_MOUNT_VAR_LIB_DATA.
    """
    return "CONDUCTOR_MOUNT_" + (re.sub(r"[^A-Za-z0-9]+", "_", target).strip("_").upper() or "ROOT")


class LocalProcessRuntime(ContainerRuntime):
    """
    ContainerRuntime backed by host processes and directories.
    """

    def __init__(self, state_dir: str = ".conductor", base_dir: str = "."):
        """
        :param state_dir: Directory holding logs, volumes and the registries.
        :param base_dir: Directory relative working directories are resolved against.
        """
        self.base_dir = os.path.abspath(base_dir)
        self.state_dir = os.path.abspath(os.path.join(self.base_dir, state_dir))
        self.logs_dir = os.path.join(self.state_dir, "logs")
        self.volumes_root = os.path.join(self.state_dir, "volumes")
        self._containers_file = os.path.join(self.state_dir, "containers.json")
        self._networks_file = os.path.join(self.state_dir, "networks.json")
        self._volumes_file = os.path.join(self.state_dir, "volumes.json")

        os.makedirs(self.logs_dir, exist_ok=True)
        os.makedirs(self.volumes_root, exist_ok=True)

        self._lock = threading.RLock()
        self._runners: Dict[str, ProcessRunner] = {}

    # ------------------------------------------------------------------
    # Registry persistence
    # ------------------------------------------------------------------

    def _load(self, path: str) -> Dict[str, Any]:
        if not os.path.exists(path):
            return {}
        try:
            with open(path, 'r') as f:
                return json.load(f)
        except (json.JSONDecodeError, IOError) as e:
            raise ContainerRuntimeError(f"corrupt runtime state {path}: {e}") from e

    def _save(self, path: str, data: Dict[str, Any]) -> None:
        tmp = f"{path}.tmp"
        with open(tmp, 'w') as f:
            json.dump(data, f, indent=2)
        os.replace(tmp, path)

    def _record(self, handle: ContainerHandle) -> Dict[str, Any]:
        with self._lock:
            containers = self._load(self._containers_file)
            if handle.name not in containers:
                raise ContainerRuntimeError(f"no such container: {handle.name}", service=handle.service)
            return containers[handle.name]

    def _update(self, name: str, **fields) -> None:
        with self._lock:
            containers = self._load(self._containers_file)
            if name in containers:
                containers[name].update(fields)
                self._save(self._containers_file, containers)

    # ------------------------------------------------------------------
    # Containers
    # ------------------------------------------------------------------

    def create_container(self,
                         name: str,
                         spec: ServiceDefinition,
                         environment: Dict[str, str],
                         networks: List[str],
                         mounts: List[VolumeMount],
                         labels: Dict[str, str]) -> ContainerHandle:
        command = spec.full_command
        if not command:
            raise ContainerRuntimeError(
                f"service {spec.name} has no command; the process runtime cannot run images", service=spec.name
            )

        env = dict(os.environ)
        env.update(environment)
        for index, mount in enumerate(mounts):
            env[mount_variable(mount.target)] = self._mount_path(name, index, mount)

        working_dir = None
        if spec.working_dir:
            working_dir = os.path.join(self.base_dir, spec.working_dir.lstrip("/\\"))

        log_file = None if spec.logging.driver == "none" else os.path.join(self.logs_dir, f"{name}.log")

        with self._lock:
            containers = self._load(self._containers_file)
            if name in containers:
                raise ContainerRuntimeError(f"container {name} already exists", service=spec.name)
            record = {
                "id": uuid.uuid4().hex[:12],
                "name": name,
                "service": spec.name,
                "command": command,
                "env": env,
                "working_dir": working_dir,
                "log_file": log_file,
                "networks": networks,
                "labels": labels,
                "ports": [[p.host_ip or "", p.published] for p in spec.ports if p.published and p.protocol == "tcp"],
                "memory_limit": spec.limits.memory,
                "status": ContainerState.CREATED.value,
                "pid": None,
                "create_time": None,
                "exit_code": None,
            }
            containers[name] = record
            self._save(self._containers_file, containers)
        return ContainerHandle(id=record["id"], name=name, service=spec.name)

    def _mount_path(self, container: str, index: int, mount: VolumeMount) -> str:
        if mount.type == VolumeType.BIND:
            if not os.path.exists(mount.source):
                os.makedirs(mount.source, exist_ok=True)
            return mount.source
        if mount.source:
            info = self._load(self._volumes_file).get(mount.source)
            if info is None:
                raise ContainerRuntimeError(f"volume {mount.source} does not exist")
            return info["path"]
        path = os.path.join(self.state_dir, "anonymous", container, str(index))
        os.makedirs(path, exist_ok=True)
        return path

    def start(self, handle: ContainerHandle) -> None:
        record = self._record(handle)
        for host_ip, port in record.get("ports", []):
            if not is_port_free(port, host_ip):
                raise ContainerRuntimeError(f"port {port} is already in use, cannot start {handle.name}",
                                            service=handle.service)
        runner = ProcessRunner(handle.name, log_file=record["log_file"])
        try:
            pid = runner.start(record["command"], env=record["env"], working_dir=record["working_dir"])
        except OSError as e:
            self._update(handle.name, status=ContainerState.EXITED.value, exit_code=127)
            raise ContainerRuntimeError(f"failed to start {handle.name}: {e}", service=handle.service) from e

        create_time = None
        try:
            proc = psutil.Process(pid)
            create_time = proc.create_time()
            if record.get("memory_limit") and sys.platform.startswith("linux"):
                limit = int(record["memory_limit"])
                proc.rlimit(psutil.RLIMIT_AS, (limit, limit))
        except psutil.NoSuchProcess:
            pass
        except (psutil.AccessDenied, ValueError, OSError) as e:
            logger.warning("[%s] Could not apply memory limit: %s", handle.name, e)

        with self._lock:
            self._runners[handle.name] = runner
        self._update(handle.name, status=ContainerState.RUNNING.value, pid=pid, create_time=create_time,
                     exit_code=None)

    def _process(self, record: Dict[str, Any]) -> Optional[psutil.Process]:
        """
        The live process of a record, guarding against pid reuse.
        """
        pid = record.get("pid")
        if not pid:
            return None
        try:
            proc = psutil.Process(pid)
            if record.get("create_time") and abs(proc.create_time() - record["create_time"]) > 1.0:
                return None
            if proc.status() == psutil.STATUS_ZOMBIE:
                return None
            return proc
        except psutil.NoSuchProcess:
            return None

    def stop(self, handle: ContainerHandle, signal_name: str = "SIGTERM") -> None:
        self.signal(handle, signal_name)

    def signal(self, handle: ContainerHandle, signal_name: str) -> None:
        record = self._record(handle)
        proc = self._process(record)
        if proc is None:
            return
        try:
            sig = signal.Signals[signal_name if signal_name.startswith("SIG") else f"SIG{signal_name}"]
        except KeyError:
            raise ContainerRuntimeError(f"unknown signal {signal_name}", service=handle.service) from None

        try:
            children = proc.children(recursive=True)
        except psutil.NoSuchProcess:
            children = []
        logger.debug("[%s] Sending %s to pid %s and %d children", handle.name, sig.name, proc.pid, len(children))
        for target in [proc] + children:
            try:
                target.send_signal(sig)
            except psutil.NoSuchProcess:
                continue
            except psutil.AccessDenied as e:
                raise ContainerRuntimeError(f"cannot signal {handle.name}: {e}", service=handle.service) from e

    def wait(self, handle: ContainerHandle, timeout: Optional[float]) -> Optional[int]:
        with self._lock:
            runner = self._runners.get(handle.name)
        if runner is not None:
            code = runner.wait(timeout)
            if code is not None:
                self._update(handle.name, status=ContainerState.EXITED.value, exit_code=code)
            return code

        record = self._record(handle)
        proc = self._process(record)
        if proc is None:
            return self._mark_exited(handle.name, record)
        try:
            proc.wait(timeout=timeout)
        except psutil.TimeoutExpired:
            return None
        return self._mark_exited(handle.name, record)

    def _mark_exited(self, name: str, record: Dict[str, Any]) -> int:
        # Exit codes of processes started by another invocation are unknown.
        code = record.get("exit_code")
        if code is None:
            code = 0 if record.get("status") == ContainerState.CREATED.value else -1
        self._update(name, status=ContainerState.EXITED.value, exit_code=code)
        return code

    def inspect(self, handle: ContainerHandle) -> ContainerStatus:
        with self._lock:
            runner = self._runners.get(handle.name)
        record = self._record(handle)

        if runner is not None:
            code = runner.get_exit_code()
            if code is None:
                return ContainerStatus(ContainerState.RUNNING, pid=record.get("pid"))
            runner.close()
            self._update(handle.name, status=ContainerState.EXITED.value, exit_code=code)
            return ContainerStatus(ContainerState.EXITED, exit_code=code, pid=record.get("pid"))

        state = ContainerState(record["status"])
        if state == ContainerState.RUNNING:
            if self._process(record) is not None:
                return ContainerStatus(ContainerState.RUNNING, pid=record.get("pid"))
            code = self._mark_exited(handle.name, record)
            return ContainerStatus(ContainerState.EXITED, exit_code=code, pid=record.get("pid"))
        return ContainerStatus(state, exit_code=record.get("exit_code"), pid=record.get("pid"))

    def check_health(self, handle: ContainerHandle, healthcheck: HealthCheck) -> HealthResult:
        """
        Run the health check command for a container.
        """
        if not self.inspect(handle).running:
            return HealthResult(HealthStatus.UNKNOWN, "container is not running")
        if not healthcheck.enabled:
            return HealthResult(HealthStatus.HEALTHY)

        record = self._record(handle)
        cmd = healthcheck.test
        use_shell = False
        if cmd[0] == "CMD":
            real_cmd: Union[List[str], str] = cmd[1:]
        elif cmd[0] == "CMD-SHELL":
            real_cmd = cmd[1] if len(cmd) > 1 else ""
            use_shell = True
        else:
            real_cmd = cmd

        try:
            result = subprocess.run(
                real_cmd,
                shell=use_shell,
                env=record["env"],
                cwd=record["working_dir"],
                capture_output=True,
                timeout=healthcheck.timeout,
                text=True,
            )
        except subprocess.TimeoutExpired:
            return HealthResult(HealthStatus.UNHEALTHY, "Health check timed out")
        except OSError as e:
            return HealthResult(HealthStatus.UNHEALTHY, str(e))

        if result.returncode == 0:
            return HealthResult(HealthStatus.HEALTHY, result.stdout[:500] if result.stdout else "")
        return HealthResult(
            HealthStatus.UNHEALTHY,
            result.stderr[:500] if result.stderr else f"Exit code: {result.returncode}",
        )

    def remove(self, handle: ContainerHandle) -> None:
        with self._lock:
            containers = self._load(self._containers_file)
            record = containers.get(handle.name)
            if record is None:
                return
            if record["status"] == ContainerState.RUNNING.value and self._process(record) is not None:
                raise ContainerRuntimeError(f"cannot remove running container {handle.name}", service=handle.service)
            del containers[handle.name]
            self._save(self._containers_file, containers)
            runner = self._runners.pop(handle.name, None)
        if runner is not None:
            runner.close()
        shutil.rmtree(os.path.join(self.state_dir, "anonymous", handle.name), ignore_errors=True)

    def find_container(self, name: str) -> Optional[ContainerHandle]:
        with self._lock:
            record = self._load(self._containers_file).get(name)
        if record is None:
            return None
        return ContainerHandle(id=record["id"], name=name, service=record["service"])

    def logs(self, handle: ContainerHandle, follow: bool = False, tail: Optional[int] = None) -> Iterator[str]:
        record = self._record(handle)
        path = record.get("log_file")
        if not path or not os.path.exists(path):
            return
        with open(path, 'r') as f:
            lines = f.readlines()
            if tail is not None:
                lines = lines[-tail:] if tail > 0 else []
            for line in lines:
                yield line.rstrip("\n")
            if not follow:
                return
            while True:
                line = f.readline()
                if line:
                    yield line.rstrip("\n")
                    continue
                if not self.inspect(handle).running:
                    return
                time.sleep(0.1)

    def exec(self, handle: ContainerHandle, command: List[str]) -> int:
        if not self.inspect(handle).running:
            raise ContainerRuntimeError(f"container {handle.name} is not running", service=handle.service)
        record = self._record(handle)
        try:
            return subprocess.run(command, env=record["env"], cwd=record["working_dir"]).returncode
        except OSError as e:
            raise ContainerRuntimeError(f"exec failed in {handle.name}: {e}", service=handle.service) from e

    # ------------------------------------------------------------------
    # Networks
    # ------------------------------------------------------------------

    def create_network(self, name: str, driver: Optional[str], driver_opts: Dict[str, str],
                       labels: Dict[str, str]) -> ResourceInfo:
        with self._lock:
            networks = self._load(self._networks_file)
            if name in networks:
                raise ContainerRuntimeError(f"network {name} already exists")
            networks[name] = {"driver": driver or "bridge", "driver_opts": driver_opts, "labels": labels}
            self._save(self._networks_file, networks)
        return ResourceInfo(name=name, kind="network", driver=driver or "bridge", driver_opts=dict(driver_opts),
                            labels=dict(labels))

    def remove_network(self, name: str) -> None:
        with self._lock:
            networks = self._load(self._networks_file)
            if name not in networks:
                raise ContainerRuntimeError(f"network {name} not found")
            del networks[name]
            self._save(self._networks_file, networks)

    def list_networks(self) -> List[ResourceInfo]:
        with self._lock:
            networks = self._load(self._networks_file)
        return [ResourceInfo(name=n, kind="network", driver=v.get("driver"), driver_opts=v.get("driver_opts", {}),
                             labels=v.get("labels", {})) for n, v in networks.items()]

    # ------------------------------------------------------------------
    # Volumes
    # ------------------------------------------------------------------

    def create_volume(self, name: str, driver: Optional[str], driver_opts: Dict[str, str],
                      labels: Dict[str, str]) -> ResourceInfo:
        if driver not in (None, "local"):
            raise ContainerRuntimeError(f"volume driver {driver} is not supported by the process runtime")
        path = os.path.join(self.volumes_root, name)
        with self._lock:
            volumes = self._load(self._volumes_file)
            if name in volumes:
                raise ContainerRuntimeError(f"volume {name} already exists")
            os.makedirs(path, exist_ok=True)
            volumes[name] = {"driver": "local", "driver_opts": driver_opts, "labels": labels, "path": path}
            self._save(self._volumes_file, volumes)
        return ResourceInfo(name=name, kind="volume", driver="local", driver_opts=dict(driver_opts),
                            labels=dict(labels), path=path)

    def remove_volume(self, name: str) -> None:
        with self._lock:
            volumes = self._load(self._volumes_file)
            info = volumes.pop(name, None)
            if info is None:
                raise ContainerRuntimeError(f"volume {name} not found")
            self._save(self._volumes_file, volumes)
        shutil.rmtree(info["path"], ignore_errors=True)

    def list_volumes(self) -> List[ResourceInfo]:
        with self._lock:
            volumes = self._load(self._volumes_file)
        return [ResourceInfo(name=n, kind="volume", driver=v.get("driver"), driver_opts=v.get("driver_opts", {}),
                             labels=v.get("labels", {}), path=v.get("path")) for n, v in volumes.items()]
