"""Tests for configuration loading."""

from sagaflow import get_repository
from sagaflow.config import load_config
from sagaflow.persistence import InMemoryStateRepository, SQLiteStateRepository


def test_load_config_from_env(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
log_level: debug
engine:
  fail_on_save_error: true
  default_approval_timeout: 60
retry:
  max_attempts: 5
redis:
  key_prefix: custom
"""
    )
    monkeypatch.setenv("SAGAFLOW_CONFIG", str(config_path))
    monkeypatch.delenv("SAGAFLOW_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)

    config = load_config()
    assert config.log_level == "debug"
    assert config.engine.fail_on_save_error is True
    assert config.engine.default_approval_timeout == 60
    assert config.retry.max_attempts == 5
    assert config.redis.key_prefix == "custom"
    assert config.database_url is None


def test_env_overrides(tmp_path, monkeypatch):
    monkeypatch.setenv("SAGAFLOW_CONFIG", str(tmp_path / "missing.yaml"))
    monkeypatch.setenv("SAGAFLOW_DATABASE_URL", "sqlite://" + str(tmp_path / "wf.db"))
    monkeypatch.setenv("SAGAFLOW_JOURNAL_URL", "sqlite+aiosqlite:///journal.db")
    monkeypatch.setenv("SAGAFLOW_LOG_LEVEL", "warning")

    config = load_config()
    assert config.database_url.endswith("wf.db")
    assert config.journal_url == "sqlite+aiosqlite:///journal.db"
    assert config.log_level == "WARNING"


def test_get_repository_uses_config(tmp_path, monkeypatch):
    monkeypatch.setenv("SAGAFLOW_CONFIG", str(tmp_path / "missing.yaml"))
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.setenv("SAGAFLOW_DATABASE_URL", "sqlite://" + str(tmp_path / "wf.db"))
    repo = get_repository(config=load_config())
    assert isinstance(repo, SQLiteStateRepository)

    monkeypatch.delenv("SAGAFLOW_DATABASE_URL")
    repo = get_repository(config=load_config())
    assert isinstance(repo, InMemoryStateRepository)
