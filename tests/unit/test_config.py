"""Tests for configuration loading."""

from stepwise.config import StepwiseConfig, load_config


def test_defaults_without_config_file(tmp_path, monkeypatch):
    monkeypatch.setenv("STEPWISE_CONFIG", str(tmp_path / "missing.yaml"))
    monkeypatch.delenv("STEPWISE_LOG_LEVEL", raising=False)
    monkeypatch.delenv("STEPWISE_HISTORY_SIZE", raising=False)

    config = load_config()
    assert config == StepwiseConfig()
    assert config.bus.history_size == 1000
    assert config.engine.default_timeout_ms == 30000
    assert config.engine.retry.max_retries == 3


def test_load_config_from_env(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
bus:
  history_size: 50
  request_timeout_ms: 500
engine:
  default_timeout_ms: 2500
  retry:
    max_retries: 1
    delay_ms: 10
    backoff: 2
log_level: DEBUG
"""
    )
    monkeypatch.setenv("STEPWISE_CONFIG", str(config_path))
    monkeypatch.delenv("STEPWISE_LOG_LEVEL", raising=False)
    monkeypatch.delenv("STEPWISE_HISTORY_SIZE", raising=False)

    config = load_config()
    assert config.bus.history_size == 50
    assert config.bus.request_timeout_ms == 500
    assert config.engine.default_timeout_ms == 2500
    assert config.engine.retry.backoff == 2
    assert config.log_level == "DEBUG"


def test_env_overrides(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text("bus:\n  history_size: 50\n")
    monkeypatch.setenv("STEPWISE_LOG_LEVEL", "warning")
    monkeypatch.setenv("STEPWISE_HISTORY_SIZE", "7")

    config = load_config(str(config_path))
    assert config.log_level == "WARNING"
    assert config.bus.history_size == 7
