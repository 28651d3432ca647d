"""Tests for configuration loading."""

from inkflow.config import load_config
from inkflow.persistence import SQLiteWorkflowRepository, get_repository
from inkflow.transports import get_transport
from inkflow.transports.redis import RedisTransport


def test_load_config_from_env(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
transport:
  backend: redis
  redis:
    host: testhost
    port: 1234
retry:
  max_attempts: 5
  initial_delay: 0.5
gates:
  seed_approval:
    fail_open: false
steps:
  timeout_seconds: 30
"""
    )
    monkeypatch.setenv("INKFLOW_CONFIG", str(config_path))
    monkeypatch.delenv("INKFLOW_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)

    config = load_config()
    assert config.transport.backend == "redis"
    assert config.transport.redis.host == "testhost"
    assert config.transport.redis.port == 1234
    assert config.retry.max_attempts == 5
    assert config.steps.timeout_seconds == 30
    assert config.gate_fails_open("seed_approval") is False
    assert config.gate_fails_open("competitor") is True
    assert config.database_url is None


def test_defaults_without_file(tmp_path, monkeypatch):
    monkeypatch.setenv("INKFLOW_CONFIG", str(tmp_path / "missing.yaml"))
    monkeypatch.delenv("INKFLOW_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)

    config = load_config()
    assert config.transport.backend == "inmemory"
    assert config.retry.max_attempts == 3
    assert config.rate_limit.enabled


def test_database_url_from_env(tmp_path, monkeypatch):
    monkeypatch.setenv("INKFLOW_CONFIG", str(tmp_path / "missing.yaml"))
    monkeypatch.setenv("INKFLOW_DATABASE_URL", f"sqlite://{tmp_path / 'wf.db'}")

    config = load_config()
    assert config.database_url.startswith("sqlite://")

    repo = get_repository(config.database_url)
    assert isinstance(repo, SQLiteWorkflowRepository)


def test_get_transport_uses_config(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
transport:
  backend: redis
  redis:
    host: confighost
    port: 6380
"""
    )
    monkeypatch.setenv("INKFLOW_CONFIG", str(config_path))
    monkeypatch.delenv("INKFLOW_TRANSPORT", raising=False)

    transport = get_transport()
    assert isinstance(transport, RedisTransport)
    assert transport.host == "confighost"
    assert transport.port == 6380
