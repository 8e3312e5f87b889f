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
Loader for layered compose files: read, interpolate, merge, validate.
"""
import logging
import os
import re
import shlex
from typing import Any, Dict, List, Mapping, Optional, Sequence

import yaml
from pydantic import ValidationError as PydanticValidationError

from ..errors import ValidationError
from ..MODELS.orchestration_config import DEFAULT_NETWORK, NetworkDefinition, OrchestrationConfig, VolumeDefinition
from ..MODELS.service_definition import (
    BuildSpec,
    Dependency,
    DependencyCondition,
    HealthCheck,
    LoggingConfig,
    PortMapping,
    ResourceLimits,
    RestartPolicy,
    ServiceDefinition,
    VolumeMount,
    VolumeType,
)
from ..UTILS.document_merge import merge_documents
from ..UTILS.string_interpolation import EnvironmentInterpolator, build_context
from ..UTILS.units import parse_duration, parse_memory
from .env_parser import EnvParser

logger = logging.getLogger(__name__)

DEFAULT_COMPOSE_FILES = ("compose.yaml", "compose.yml", "docker-compose.yml", "docker-compose.yaml")

_RESTART_ALIASES = {"none": "no", "any": "always"}


def normalize_project_name(name: str) -> str:
    """
    Lowercases a project name and strips characters the runtime would reject.
    """
    cleaned = re.sub(r"[^a-z0-9_-]", "", str(name).lower())
    return cleaned or "default"


def find_default_file(directory: str = ".") -> Optional[str]:
    """
    Returns the first conventional compose file present in directory.
    """
    for candidate in DEFAULT_COMPOSE_FILES:
        path = os.path.join(directory, candidate)
        if os.path.isfile(path):
            return path
    return None


class ComposeParser:
    """
    Parser for compose files.
    """
    def __init__(self,
                 context: Optional[Mapping[str, str]] = None,
                 project_name: Optional[str] = None,
                 env_file: Optional[str] = None):
        """
        Initializes the parser.

        :param context: Interpolation environment. Defaults to the .env file next
                        to the first compose file layered under os.environ.
        :param project_name: Explicit project name, overriding every other source.
        :param env_file: Alternative .env file for the interpolation environment.
        """
        self.context = dict(context) if context is not None else None
        self.project_name = project_name
        self.env_file = env_file

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def load(self,
             paths: Sequence[str],
             environment_overrides: Optional[Mapping[str, str]] = None) -> OrchestrationConfig:
        """
        Loads and merges compose files left to right.

        :param paths: Ordered compose files; later files override earlier ones.
        :param environment_overrides: Variables that win over every other source.
        :return: The validated configuration.
        :raises ValidationError: If any file is malformed or the result is inconsistent.
        :raises MissingVariableError: If a variable without default is unset.
        """
        if not paths:
            raise ValidationError("no compose file given")

        base_dir = os.path.dirname(os.path.abspath(paths[0]))
        context = self._build_context(base_dir, environment_overrides)

        documents = []
        for path in paths:
            if not os.path.isfile(path):
                raise ValidationError(f"compose file {path} not found")
            with open(path, 'r') as f:
                content = f.read()
            documents.append(self._read_document(content, context, path))

        merged = merge_documents(documents, list(paths))
        sources = [os.path.abspath(p) for p in paths]
        return self.build_config(merged, context, base_dir, sources)

    def parse(self, compose_path: str) -> OrchestrationConfig:
        """
        Parses a single compose file from a path.

        :param compose_path: Path to the compose file.
        :return: Parsed configuration.
        """
        return self.load([compose_path])

    def parse_from_string(self, content: str, base_dir: str = ".") -> OrchestrationConfig:
        """
        Parses a compose document held in memory.

        :param content: YAML content of the compose file.
        :param base_dir: Directory that relative paths are resolved against.
        :return: Parsed configuration.
        """
        context = self._build_context(os.path.abspath(base_dir), None)
        document = self._read_document(content, context, "<string>")
        merged = merge_documents([document], ["<string>"])
        return self.build_config(merged, context, os.path.abspath(base_dir), [])

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def _build_context(self, base_dir: str, overrides: Optional[Mapping[str, str]]) -> Dict[str, str]:
        if self.context is not None:
            return build_context(self.context, overrides)

        dotenv: Dict[str, str] = {}
        env_path = self.env_file or os.path.join(base_dir, ".env")
        if os.path.isfile(env_path):
            logger.debug("Loading interpolation variables from %s", env_path)
            dotenv = EnvParser.parse(env_path)
        elif self.env_file:
            raise ValidationError(f"env file {self.env_file} not found")
        return build_context(dotenv, os.environ, overrides)

    def _read_document(self, content: str, context: Mapping[str, str], source: str) -> Dict[str, Any]:
        try:
            data = yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise ValidationError(f"invalid YAML: {e}", source=source) from e
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ValidationError("top-level document must be a mapping", source=source)
        return EnvironmentInterpolator.interpolate_tree(data, context, source)

    # ------------------------------------------------------------------
    # Building models
    # ------------------------------------------------------------------

    def build_config(self,
                     merged: Dict[str, Any],
                     context: Mapping[str, str],
                     base_dir: str,
                     sources: List[str]) -> OrchestrationConfig:
        """
        Turns a merged document into a validated OrchestrationConfig.
        All problems are collected and raised as one ValidationError.
        """
        errors: List[str] = []

        networks = {}
        for key, definition in merged.get('networks', {}).items():
            network = self._build_resource(NetworkDefinition, key, definition, errors, "network")
            if network:
                networks[key] = network

        volumes = {}
        for key, definition in merged.get('volumes', {}).items():
            volume = self._build_resource(VolumeDefinition, key, definition, errors, "volume")
            if volume:
                volumes[key] = volume

        services = {}
        for name, spec in merged.get('services', {}).items():
            service = self._parse_service(name, spec, context, base_dir, volumes, errors)
            if service:
                services[name] = service

        project_name = normalize_project_name(
            self.project_name
            or context.get('COMPOSE_PROJECT_NAME')
            or merged.get('name')
            or (os.path.basename(base_dir) if sources else "default")
        )

        if not errors:
            self._resolve_conditions(services)
            errors.extend(self._validate_references(services, networks))
        if errors:
            raise ValidationError(errors, source=sources[0] if len(sources) == 1 else None)

        return OrchestrationConfig(
            project_name=project_name,
            sources=sources,
            services=services,
            networks=networks,
            volumes=volumes,
        )

    def _build_resource(self, model, key: str, definition: Any, errors: List[str], kind: str):
        definition = definition or {}
        if not isinstance(definition, dict):
            errors.append(f"{kind} {key} must be a mapping")
            return None
        external = definition.get('external', False)
        name = definition.get('name')
        if isinstance(external, dict):
            # legacy form: external: {name: foo}
            name = external.get('name', name)
            external = True
        try:
            return model(
                key=key,
                name=name,
                driver=definition.get('driver'),
                driver_opts={k: str(v) for k, v in (definition.get('driver_opts') or {}).items()},
                labels=self._to_mapping(definition.get('labels')),
                external=bool(external),
                **({'internal': bool(definition.get('internal', False))} if kind == "network" else {}),
            )
        except PydanticValidationError as e:
            errors.extend(self._format_errors(f"{kind} {key}", e))
            return None

    def _parse_service(self,
                       name: str,
                       spec: Dict[str, Any],
                       context: Mapping[str, str],
                       base_dir: str,
                       volumes: Dict[str, VolumeDefinition],
                       errors: List[str]) -> Optional[ServiceDefinition]:
        """
        Parses a single service definition from a merged document.

        :param name: The name of the service.
        :param spec: The normalised service mapping.
        :return: A ServiceDefinition instance, or None when errors were recorded.
        """
        local_errors: List[str] = []
        prefix = f"service {name}"

        try:
            ports = self._parse_ports(spec.get('ports', []))
        except ValueError as e:
            local_errors.append(f"{prefix}: {e}")
            ports = []

        mounts = []
        for entry in spec.get('volumes', []):
            try:
                mount = self._parse_volume(entry, base_dir)
            except ValueError as e:
                local_errors.append(f"{prefix}: {e}")
                continue
            if mount.type == VolumeType.VOLUME and mount.source and mount.source not in volumes:
                local_errors.append(f"{prefix}: refers to undefined volume {mount.source}")
            mounts.append(mount)

        try:
            environment, env_files = self._parse_environment(spec, context, base_dir)
            restart_policy = self._parse_restart(spec)
            health_check = self._parse_healthcheck(spec.get('healthcheck'))
            limits = self._parse_limits(spec.get('deploy') or {})
            stop_grace_period = parse_duration(spec.get('stop_grace_period'))
        except (ValueError, TypeError) as e:
            local_errors.append(f"{prefix}: {e}")
            return self._record(local_errors, errors)

        networks, aliases = self._parse_networks(spec.get('networks'))

        depends_on = {}
        for dep, options in (spec.get('depends_on') or {}).items():
            depends_on[dep] = options or {}

        build = spec.get('build')
        logging_spec = spec.get('logging') or {}

        if local_errors:
            return self._record(local_errors, errors)

        try:
            return ServiceDefinition(
                name=name,
                image=spec.get('image'),
                build=BuildSpec(
                    context=str(build.get('context', '.')),
                    dockerfile=build.get('dockerfile'),
                    args=self._to_mapping(build.get('args')),
                ) if build else None,
                command=self._to_command(spec.get('command')),
                entrypoint=self._to_command(spec.get('entrypoint')),
                working_dir=spec.get('working_dir'),
                environment=environment,
                environment_files=env_files,
                ports=ports,
                networks=networks,
                network_aliases=aliases,
                hostname=spec.get('hostname'),
                volumes=mounts,
                restart_policy=restart_policy,
                health_check=health_check,
                depends_on={dep: Dependency(**options) for dep, options in depends_on.items()},
                stop_grace_period=stop_grace_period,
                stop_signal=str(spec.get('stop_signal', 'SIGTERM')),
                limits=limits,
                logging=LoggingConfig(
                    driver=logging_spec.get('driver', 'json-file'),
                    options={k: str(v) for k, v in (logging_spec.get('options') or {}).items()},
                ),
                labels=self._to_mapping(spec.get('labels')),
                user=str(spec['user']) if spec.get('user') is not None else None,
            )
        except PydanticValidationError as e:
            errors.extend(self._format_errors(prefix, e))
            return None

    @staticmethod
    def _record(local_errors: List[str], errors: List[str]) -> None:
        errors.extend(local_errors)
        return None

    # -- field parsers --------------------------------------------------

    def _parse_ports(self, entries: List[Any]) -> List[PortMapping]:
        """
        Parses short and long port syntax.

        :raises ValueError: On malformed entries.
        """
        ports: List[PortMapping] = []
        for entry in entries:
            if isinstance(entry, dict):
                if 'target' not in entry:
                    raise ValueError(f"port mapping {entry!r} has no target")
                ports.append(PortMapping(
                    target=self._port_number(entry['target'], entry),
                    published=self._port_number(entry['published'], entry) if entry.get('published') else None,
                    host_ip=entry.get('host_ip'),
                    protocol=entry.get('protocol', 'tcp'),
                ))
                continue
            if isinstance(entry, bool) or not isinstance(entry, (str, int)):
                raise ValueError(f"malformed port mapping {entry!r}")

            text = str(entry).strip()
            protocol = 'tcp'
            if '/' in text:
                text, protocol = text.rsplit('/', 1)
            parts = text.rsplit(':', 2)
            host_ip = None
            published = None
            if len(parts) == 3:
                host_ip, published, target = parts
                host_ip = host_ip.strip('[]') or None
            elif len(parts) == 2:
                published, target = parts
            else:
                target = parts[0]

            targets = self._port_range(target, entry)
            publishes = self._port_range(published, entry) if published else [None] * len(targets)
            if len(publishes) != len(targets):
                raise ValueError(f"malformed port mapping {entry!r}: range sizes differ")
            for host_port, container_port in zip(publishes, targets):
                try:
                    ports.append(PortMapping(
                        target=container_port, published=host_port, host_ip=host_ip, protocol=protocol,
                    ))
                except PydanticValidationError as e:
                    raise ValueError(f"malformed port mapping {entry!r}: {e.errors()[0]['msg']}") from None
        return ports

    @staticmethod
    def _port_number(value: Any, entry: Any) -> int:
        try:
            return int(value)
        except (TypeError, ValueError):
            raise ValueError(f"malformed port mapping {entry!r}") from None

    def _port_range(self, text: str, entry: Any) -> List[int]:
        if '-' in text:
            start, end = text.split('-', 1)
            first, last = self._port_number(start, entry), self._port_number(end, entry)
            if last < first:
                raise ValueError(f"malformed port mapping {entry!r}: descending range")
            return list(range(first, last + 1))
        return [self._port_number(text, entry)]

    def _parse_volume(self, entry: Any, base_dir: str) -> VolumeMount:
        """
        Parses a volume mount in short (src:dst[:mode]) or long syntax.

        :raises ValueError: On malformed entries.
        """
        if isinstance(entry, dict):
            if 'target' not in entry:
                raise ValueError(f"volume mount {entry!r} has no target")
            mount_type = entry.get('type', 'volume')
            if mount_type not in ('volume', 'bind'):
                raise ValueError(f"unsupported volume type {mount_type!r}")
            source = entry.get('source')
            if mount_type == 'bind' and source:
                source = self._resolve_host_path(source, base_dir)
            return VolumeMount(
                source=source,
                target=entry['target'],
                read_only=bool(entry.get('read_only', False)),
                type=mount_type,
            )

        parts = str(entry).split(':')
        if len(parts) == 1:
            return VolumeMount(source=None, target=parts[0])
        if len(parts) > 3 or not parts[0] or not parts[1]:
            raise ValueError(f"malformed volume mount {entry!r}")
        source, target = parts[0], parts[1]
        mode = parts[2] if len(parts) == 3 else 'rw'
        if mode not in ('ro', 'rw', 'z', 'Z'):
            raise ValueError(f"malformed volume mount {entry!r}: unknown mode {mode}")
        if source.startswith(('.', '/', '~')):
            return VolumeMount(
                source=self._resolve_host_path(source, base_dir),
                target=target,
                read_only=(mode == 'ro'),
                type=VolumeType.BIND,
            )
        return VolumeMount(source=source, target=target, read_only=(mode == 'ro'))

    @staticmethod
    def _resolve_host_path(source: str, base_dir: str) -> str:
        source = os.path.expanduser(source)
        return os.path.abspath(os.path.join(base_dir, source))

    def _parse_environment(self, spec: Dict[str, Any], context: Mapping[str, str], base_dir: str):
        environment: Dict[str, str] = {}
        env_files: List[str] = []

        # env_file values first, explicit environment overrides them
        for item in spec.get('env_file') or []:
            required = True
            if isinstance(item, dict):
                required = item.get('required', True)
                item = item.get('path')
            path = os.path.join(base_dir, str(item))
            if not os.path.isfile(path):
                if required:
                    raise ValueError(f"env file {item} not found")
                continue
            env_files.append(path)
            environment.update(EnvParser.parse(path))

        for key, value in (spec.get('environment') or {}).items():
            if value is None:
                # bare KEY takes its value from the interpolation environment
                if key in context:
                    environment[key] = context[key]
                continue
            environment[key] = self._scalar(value)
        return environment, env_files

    def _parse_restart(self, spec: Dict[str, Any]) -> RestartPolicy:
        deploy_policy = (spec.get('deploy') or {}).get('restart_policy')
        restart = spec.get('restart')
        if restart is False:
            # YAML reads a bare `no` as a boolean
            restart = 'no'

        if restart is None and deploy_policy:
            condition = _RESTART_ALIASES.get(deploy_policy.get('condition', 'any'), deploy_policy.get('condition'))
            return RestartPolicy(
                condition=condition,
                max_retries=int(deploy_policy.get('max_attempts', 0)),
                delay=parse_duration(deploy_policy.get('delay', 0)),
            )

        restart = str(restart or 'no')
        max_retries = 0
        if restart.startswith('on-failure:'):
            restart, count = restart.split(':', 1)
            max_retries = int(count)
        try:
            return RestartPolicy(condition=restart, max_retries=max_retries)
        except PydanticValidationError:
            raise ValueError(f"unsupported restart policy {restart!r}") from None

    def _parse_healthcheck(self, spec: Optional[Dict[str, Any]]) -> Optional[HealthCheck]:
        if not spec:
            return None
        test = spec.get('test')
        if spec.get('disable'):
            test = ['NONE']
        if test is None:
            raise ValueError("healthcheck requires a test")
        if isinstance(test, str):
            test = ['CMD-SHELL', test]
        test = [str(t) for t in test]
        values = {'test': test, 'disable': bool(spec.get('disable', False))}
        for key in ('interval', 'timeout', 'start_period'):
            if spec.get(key) is not None:
                values[key] = parse_duration(spec[key])
        if spec.get('retries') is not None:
            values['retries'] = int(spec['retries'])
        try:
            return HealthCheck(**values)
        except PydanticValidationError as e:
            raise ValueError(f"healthcheck: {e.errors()[0]['msg']}") from None

    def _parse_limits(self, deploy: Dict[str, Any]) -> ResourceLimits:
        limits = ((deploy.get('resources') or {}).get('limits')) or {}
        cpus = limits.get('cpus')
        return ResourceLimits(
            memory=parse_memory(limits.get('memory')),
            cpus=float(cpus) if cpus is not None else None,
        )

    @staticmethod
    def _parse_networks(spec: Any):
        networks: List[str] = []
        aliases: Dict[str, List[str]] = {}
        for key, options in (spec or {}).items():
            networks.append(key)
            if isinstance(options, dict) and options.get('aliases'):
                aliases[key] = [str(a) for a in options['aliases']]
        return networks, aliases

    # -- validation -----------------------------------------------------

    @staticmethod
    def _resolve_conditions(services: Dict[str, ServiceDefinition]) -> None:
        """
        Short-form dependencies wait for health when the target has a probe.
        """
        for service in services.values():
            for dep, dependency in service.depends_on.items():
                if dependency.condition is None:
                    target = services.get(dep)
                    dependency.condition = (
                        DependencyCondition.HEALTHY if target is not None and target.has_healthcheck
                        else DependencyCondition.STARTED
                    )

    @staticmethod
    def _validate_references(services: Dict[str, ServiceDefinition],
                             networks: Dict[str, NetworkDefinition]) -> List[str]:
        errors = []
        for name, service in services.items():
            for dep, dependency in service.depends_on.items():
                if dep not in services:
                    errors.append(f"service {name} depends on undefined service {dep}")
                elif dependency.condition == "service_healthy" and not services[dep].has_healthcheck:
                    errors.append(
                        f"service {name} waits for {dep} to be healthy but {dep} has no healthcheck"
                    )
            for network in service.networks:
                if network != DEFAULT_NETWORK and network not in networks:
                    errors.append(f"service {name} refers to undefined network {network}")
        return errors

    @staticmethod
    def _format_errors(prefix: str, error: PydanticValidationError) -> List[str]:
        messages = []
        for item in error.errors():
            location = ".".join(str(part) for part in item.get('loc', ()))
            msg = item.get('msg', '')
            if msg.startswith("Value error, "):
                msg = msg[len("Value error, "):]
            messages.append(f"{prefix}: {location + ': ' if location else ''}{msg}")
        return messages

    # -- helpers --------------------------------------------------------

    @staticmethod
    def _scalar(value: Any) -> str:
        if isinstance(value, bool):
            return "true" if value else "false"
        return str(value)

    def _to_mapping(self, val: Any) -> Dict[str, str]:
        """
        Helper to turn a list of KEY=VALUE strings or a mapping into a string mapping.
        """
        if not val:
            return {}
        if isinstance(val, dict):
            return {str(k): self._scalar(v) if v is not None else "" for k, v in val.items()}
        result = {}
        for item in val:
            key, _, value = str(item).partition('=')
            result[key] = value
        return result

    def _to_command(self, val: Any) -> List[str]:
        """
        Helper to ensure a command is a list of strings; strings are split shell-style.

        :param val: The value to convert.
        :return: A list of strings.
        """
        if val is None:
            return []
        if isinstance(val, str):
            return shlex.split(val)
        return [str(v) for v in val]
