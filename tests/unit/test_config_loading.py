"""Tests for configuration loading."""

from mailflow.config import load_config
from mailflow.events import get_transport
from mailflow.events.redis import RedisEventTransport
from mailflow.persistence import InMemoryWorkflowStore, SQLiteWorkflowStore, get_store


def test_defaults_without_file(tmp_path, monkeypatch):
    monkeypatch.setenv("MAILFLOW_CONFIG", str(tmp_path / "missing.yaml"))
    monkeypatch.delenv("MAILFLOW_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)

    config = load_config()
    assert config.database_url is None
    assert config.retry.max_attempts == 3
    assert config.retry.base_delay == 30
    assert config.retry.max_delay == 300
    assert config.scheduler.poll_interval == 60
    assert config.scheduler.retention_days == 7
    assert config.timeouts.email == 30
    assert config.timeouts.webhook == 10


def test_load_config_from_env(tmp_path, monkeypatch):
    config_path = tmp_path / "mailflow.yaml"
    config_path.write_text(
        """
retry:
  max_attempts: 5
scheduler:
  poll_interval: 15
events:
  backend: redis
  redis:
    host: testhost
    port: 1234
"""
    )
    monkeypatch.setenv("MAILFLOW_CONFIG", str(config_path))

    config = load_config()
    assert config.retry.max_attempts == 5
    assert config.scheduler.poll_interval == 15
    assert config.events.backend == "redis"
    assert config.events.redis.host == "testhost"


def test_get_transport_uses_config(tmp_path, monkeypatch):
    config_path = tmp_path / "mailflow.yaml"
    config_path.write_text(
        """
events:
  backend: redis
  redis:
    host: confighost
    port: 6380
"""
    )
    monkeypatch.setenv("MAILFLOW_CONFIG", str(config_path))
    monkeypatch.delenv("MAILFLOW_EVENTS", raising=False)

    transport = get_transport()
    assert isinstance(transport, RedisEventTransport)
    assert transport.host == "confighost"
    assert transport.port == 6380


def test_get_store_selects_backend(tmp_path, monkeypatch):
    monkeypatch.setenv("MAILFLOW_CONFIG", str(tmp_path / "missing.yaml"))
    monkeypatch.delenv("MAILFLOW_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    assert isinstance(get_store(), InMemoryWorkflowStore)

    monkeypatch.setenv("MAILFLOW_DATABASE_URL", f"sqlite://{tmp_path / 'mf.db'}")
    assert isinstance(get_store(), SQLiteWorkflowStore)
