"""
Service discovery across shared networks.
"""
import re
from typing import Dict, List

from ..MODELS.orchestration_config import OrchestrationConfig


def _env_prefix(name: str) -> str:
    return re.sub(r"[^A-Za-z0-9]", "_", name).upper()


class ServiceDiscovery:
    """
    Generates environment variables that let a service find its peers.
    Example: DB_HOST=127.0.0.1, DB_PORT=5432
    """
    def __init__(self, config: OrchestrationConfig, host: str = "127.0.0.1"):
        """
        :param config: The application configuration.
        :param host: Address peers are reachable on.
        """
        self.config = config
        self.host = host

    def peers(self, name: str) -> List[str]:
        """
        Services sharing at least one network with name.
        """
        mine = set(self.config.service_networks(name))
        return [
            peer for peer in self.config.services
            if peer != name and mine & set(self.config.service_networks(peer))
        ]

    def environment_for(self, name: str) -> Dict[str, str]:
        """
        Discovery variables for every peer of name, under its service name and its aliases.
        """
        env = {}
        mine = set(self.config.service_networks(name))
        for peer in self.peers(name):
            spec = self.config.services[peer]
            aliases = [peer]
            if spec.hostname:
                aliases.append(spec.hostname)
            for network, names in spec.network_aliases.items():
                if network in mine:
                    aliases.extend(names)

            # The first published port is the "default" port of the peer
            published = next((p.published for p in spec.ports if p.published), None)
            for alias in aliases:
                prefix = _env_prefix(alias)
                env[f"{prefix}_HOST"] = self.host
                if published:
                    env[f"{prefix}_PORT"] = str(published)
        return env
