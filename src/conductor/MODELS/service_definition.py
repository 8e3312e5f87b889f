"""
Models for defining services, including restart policies, health checks, and mounts.
"""
from typing import List, Dict, Optional
from pydantic import BaseModel, Field, field_validator, model_validator
from enum import Enum

class RestartPolicyCondition(str, Enum):
    """
    Conditions under which a service should be restarted.
    """
    NO = "no"
    ALWAYS = "always"
    ON_FAILURE = "on-failure"
    UNLESS_STOPPED = "unless-stopped"

class RestartPolicy(BaseModel):
    """
    Defines how a service should be restarted on failure or exit.
    """
    condition: RestartPolicyCondition = RestartPolicyCondition.NO
    max_retries: int = 0
    delay: float = 0.0

    def should_restart(self, exit_code: Optional[int]) -> bool:
        """
        Whether a service that exited with exit_code must be started again.
        A None exit code means the start itself failed.
        """
        if self.condition == RestartPolicyCondition.NO:
            return False
        if self.condition == RestartPolicyCondition.ON_FAILURE:
            return exit_code is None or exit_code != 0
        return True

class HealthCheck(BaseModel):
    """
    Defines a command to run to check the health of a service.
    """
    test: List[str]
    interval: float = 30.0
    timeout: float = 30.0
    retries: int = 3
    start_period: float = 0.0
    disable: bool = False

    @field_validator("retries")
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("healthcheck retries must not be negative")
        return value

    @property
    def enabled(self) -> bool:
        return not self.disable and bool(self.test) and self.test[0] != "NONE"

class VolumeType(str, Enum):
    """
    Kind of mount source.
    """
    VOLUME = "volume"
    BIND = "bind"

class VolumeMount(BaseModel):
    """
    Defines a mapping between a named volume or host path and a service path.
    An anonymous volume has no source.
    """
    source: Optional[str] = None
    target: str
    read_only: bool = False
    type: VolumeType = VolumeType.VOLUME

class PortMapping(BaseModel):
    """
    A single host:container port publication.
    """
    target: int
    published: Optional[int] = None
    host_ip: Optional[str] = None
    protocol: str = "tcp"

    @field_validator("target", "published")
    @classmethod
    def _port_range(cls, value: Optional[int]) -> Optional[int]:
        if value is not None and not 1 <= value <= 65535:
            raise ValueError(f"port {value} is out of range 1-65535")
        return value

    @field_validator("protocol")
    @classmethod
    def _protocol(cls, value: str) -> str:
        value = value.lower()
        if value not in ("tcp", "udp"):
            raise ValueError(f"unsupported protocol {value!r}")
        return value

class DependencyCondition(str, Enum):
    """
    What a dependency must reach before its dependent may start.
    """
    STARTED = "service_started"
    HEALTHY = "service_healthy"
    COMPLETED = "service_completed_successfully"

class Dependency(BaseModel):
    """
    One entry of depends_on. A condition left unset is resolved by the loader:
    healthy when the dependency has a healthcheck, started otherwise.
    """
    condition: Optional[DependencyCondition] = None

class BuildSpec(BaseModel):
    """
    Build context reference. Conductor records it but never builds images itself.
    """
    context: str
    dockerfile: Optional[str] = None
    args: Dict[str, str] = {}

class ResourceLimits(BaseModel):
    """
    deploy.resources.limits, with memory in bytes.
    """
    memory: Optional[int] = None
    cpus: Optional[float] = None

class LoggingConfig(BaseModel):
    driver: str = "json-file"
    options: Dict[str, str] = {}

class ServiceDefinition(BaseModel):
    """
    The full definition of a single service, translated from a compose file.
    """
    name: str
    image: Optional[str] = None
    build: Optional[BuildSpec] = None
    
    # Execution
    command: List[str] = []
    entrypoint: List[str] = []
    working_dir: Optional[str] = None
    
    # Environment
    environment: Dict[str, str] = {}
    environment_files: List[str] = []
    
    # Networking
    ports: List[PortMapping] = []
    networks: List[str] = []
    network_aliases: Dict[str, List[str]] = {}
    hostname: Optional[str] = None
    
    # Storage
    volumes: List[VolumeMount] = []
    
    # Lifecycle
    restart_policy: RestartPolicy = Field(default_factory=RestartPolicy)
    health_check: Optional[HealthCheck] = None
    depends_on: Dict[str, Dependency] = {}
    stop_grace_period: Optional[float] = None
    stop_signal: str = "SIGTERM"
    
    # Resources
    limits: ResourceLimits = Field(default_factory=ResourceLimits)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    
    # Metadata
    labels: Dict[str, str] = {}
    user: Optional[str] = None

    @model_validator(mode="after")
    def _image_or_build(self) -> "ServiceDefinition":
        if self.image and self.build:
            raise ValueError(f"service {self.name} sets both 'image' and 'build'; they are mutually exclusive")
        if not self.image and not self.build:
            raise ValueError(f"service {self.name} must set either 'image' or 'build'")
        return self

    @property
    def has_healthcheck(self) -> bool:
        return self.health_check is not None and self.health_check.enabled

    @property
    def full_command(self) -> List[str]:
        """
        Combines entrypoint and command: the entrypoint is the executable and
        the command becomes its arguments.
        """
        if self.entrypoint:
            return self.entrypoint + self.command
        return list(self.command)
