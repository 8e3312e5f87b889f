"""
Tunables for the orchestrator, read from CONDUCTOR_* environment variables.
"""
import os
from typing import Dict, Mapping, Optional
from pydantic import BaseModel, field_validator

from ..UTILS.units import parse_duration

ENV_PREFIX = "CONDUCTOR_"

class OrchestratorSettings(BaseModel):
    """
    Timing and storage settings shared by the scheduler, health gate and runtimes.
    """
    stop_grace_period: float = 10.0
    monitor_interval: float = 1.0
    restart_backoff_initial: float = 1.0
    restart_backoff_max: float = 30.0
    default_max_restarts: int = 3
    state_dir: str = ".conductor"
    poll_floor: float = 0.05

    @field_validator(
        "stop_grace_period", "monitor_interval", "restart_backoff_initial", "restart_backoff_max", "poll_floor",
        mode="before",
    )
    @classmethod
    def _duration(cls, value):
        return parse_duration(value)

    @classmethod
    def from_environ(cls, environ: Optional[Mapping[str, str]] = None, **overrides) -> "OrchestratorSettings":
        """
        Builds settings from CONDUCTOR_<FIELD> variables; keyword overrides win.
        """
        environ = os.environ if environ is None else environ
        values: Dict[str, object] = {}
        for field_name in cls.model_fields:
            key = ENV_PREFIX + field_name.upper()
            if key in environ:
                values[field_name] = environ[key]
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)
