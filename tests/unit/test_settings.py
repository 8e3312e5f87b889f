"""
Unit tests for orchestrator settings.
"""
from conductor.MODELS.settings import OrchestratorSettings


def test_defaults():
    settings = OrchestratorSettings()
    assert settings.stop_grace_period == 10.0
    assert settings.default_max_restarts == 3
    assert settings.state_dir == ".conductor"


def test_from_environ_parses_durations():
    settings = OrchestratorSettings.from_environ({
        "CONDUCTOR_STOP_GRACE_PERIOD": "1m",
        "CONDUCTOR_MONITOR_INTERVAL": "250ms",
        "CONDUCTOR_DEFAULT_MAX_RESTARTS": "7",
        "UNRELATED": "x",
    })
    assert settings.stop_grace_period == 60.0
    assert settings.monitor_interval == 0.25
    assert settings.default_max_restarts == 7


def test_overrides_win_over_environment():
    settings = OrchestratorSettings.from_environ(
        {"CONDUCTOR_STATE_DIR": "/var/lib/conductor"}, state_dir="/tmp/state", poll_floor=None,
    )
    assert settings.state_dir == "/tmp/state"
    assert settings.poll_floor == 0.05
