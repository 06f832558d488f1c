"""Tests for configuration loading."""

from podflow.config import load_config
from podflow.persistence import SQLiteWorkflowRepository, get_repository


def test_load_config_from_env(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
engine:
  default_max_attempts: 3
  default_backoff: exponential
polling:
  running_interval: 0.5
api:
  port: 9000
"""
    )
    monkeypatch.setenv("PODFLOW_CONFIG", str(config_path))

    config = load_config()
    assert config.engine.default_max_attempts == 3
    assert config.engine.default_backoff == "exponential"
    assert config.polling.running_interval == 0.5
    assert config.polling.waiting_interval == 2.0
    assert config.api.port == 9000
    assert config.database_url is None


def test_missing_config_file_yields_defaults(tmp_path):
    config = load_config(str(tmp_path / "nope.yaml"))
    assert config.engine.default_max_attempts == 1
    assert config.polling.max_attempts == 300


def test_database_url_env_overrides_file(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text("database_url: sqlite://ignored.db\n")
    db_path = tmp_path / "env.db"
    monkeypatch.setenv("PODFLOW_DATABASE_URL", f"sqlite://{db_path}")

    config = load_config(str(config_path))
    assert config.database_url == f"sqlite://{db_path}"
    repo = get_repository(config=config)
    assert isinstance(repo, SQLiteWorkflowRepository)
    assert repo.db_path == str(db_path)
