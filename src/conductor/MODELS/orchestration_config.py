"""
Models for overall orchestration configuration.
"""
from typing import List, Dict, Optional
from pydantic import BaseModel
from .service_definition import ServiceDefinition

DEFAULT_NETWORK = "default"

class ResourceDefinition(BaseModel):
    """
    Common shape of top-level networks and volumes.
    """
    key: str
    name: Optional[str] = None
    driver: Optional[str] = None
    driver_opts: Dict[str, str] = {}
    labels: Dict[str, str] = {}
    external: bool = False

    def runtime_name(self, project_name: str) -> str:
        """
        Name of the resource as the runtime knows it.
        """
        if self.name:
            return self.name
        if self.external:
            return self.key
        return f"{project_name}_{self.key}"

class NetworkDefinition(ResourceDefinition):
    internal: bool = False

class VolumeDefinition(ResourceDefinition):
    pass

class OrchestrationConfig(BaseModel):
    """
    Complete configuration for a multi-service stack.
    Equivalent to the merge of one or more compose files.
    """
    project_name: str = "default"
    sources: List[str] = []
    services: Dict[str, ServiceDefinition]
    networks: Dict[str, NetworkDefinition] = {}
    volumes: Dict[str, VolumeDefinition] = {}

    def model_post_init(self, __context) -> None:
        if DEFAULT_NETWORK not in self.networks:
            self.networks[DEFAULT_NETWORK] = NetworkDefinition(key=DEFAULT_NETWORK)

    def service_networks(self, name: str) -> List[str]:
        """
        Network keys a service joins; services without explicit networks join the default one.
        """
        return self.services[name].networks or [DEFAULT_NETWORK]

    def service_volumes(self, name: str) -> List[str]:
        """
        Named volume keys a service mounts.
        """
        keys = []
        for mount in self.services[name].volumes:
            if mount.type == "volume" and mount.source and mount.source in self.volumes and mount.source not in keys:
                keys.append(mount.source)
        return keys
