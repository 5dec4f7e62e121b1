from models import RepeatMode
from utils import clamp, env_flag, env_float, safe_float


def test_env_helpers(monkeypatch):
    monkeypatch.setenv("X_FLAG", "Yes")
    monkeypatch.setenv("X_FLOAT", "inf")
    monkeypatch.setenv("X_BAD", "abc")
    assert env_flag("X_FLAG") is True
    assert env_flag("X_UNSET_FLAG") is False
    assert env_float("X_FLOAT", 2.0) == 2.0
    assert env_float("X_BAD", 3.0) == 3.0
    assert env_float("X_UNSET_FLOAT", 4.0) == 4.0


def test_clamp_and_safe_float():
    assert clamp(5, 0, 1) == 1
    assert clamp(-5, 0, 1) == 0
    assert safe_float("1.5") == 1.5
    assert safe_float(None, 7.0) == 7.0


def test_repeat_mode_setting_round_trip():
    for mode in RepeatMode:
        assert RepeatMode.from_setting(mode.value) is mode
    assert RepeatMode.from_setting("nope") is RepeatMode.SEQUENTIAL

