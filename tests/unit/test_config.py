"""Tests for configuration loading."""

from countersign.config import load_config
from countersign.notify import InMemoryNotifier, get_notifier
from countersign.notify.redis import RedisNotifier
from countersign.persistence import (
    InMemoryWorkflowRepository,
    SQLiteWorkflowRepository,
    get_repository,
)


def test_defaults_without_config_file():
    config = load_config()
    assert config.database_url is None
    assert config.runtime.max_cas_retries == 5
    assert config.runtime.default_timeout_hours == 72
    assert config.sweeper.interval_seconds == 60
    assert config.notifier.backend == "inmemory"


def test_load_config_from_env(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
database_url: sqlite://approvals.db
runtime:
  max_cas_retries: 9
  default_timeout_hours: 24
notifier:
  backend: redis
  redis:
    host: testhost
    port: 1234
"""
    )
    monkeypatch.setenv("COUNTERSIGN_CONFIG", str(config_path))

    config = load_config()
    assert config.database_url == "sqlite://approvals.db"
    assert config.runtime.max_cas_retries == 9
    assert config.runtime.default_timeout_hours == 24
    assert config.notifier.backend == "redis"
    assert config.notifier.redis.host == "testhost"
    assert config.notifier.redis.port == 1234


def test_database_url_env_overrides_file(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text("database_url: sqlite://from-file.db\n")
    monkeypatch.setenv("DATABASE_URL", "sqlite://from-env.db")

    assert load_config(str(config_path)).database_url == "sqlite://from-env.db"


def test_get_notifier_uses_config(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
notifier:
  backend: redis
  redis:
    host: confighost
    port: 6380
"""
    )
    monkeypatch.setenv("COUNTERSIGN_CONFIG", str(config_path))

    notifier = get_notifier()
    assert isinstance(notifier, RedisNotifier)
    assert notifier.host == "confighost"
    assert notifier.port == 6380

    monkeypatch.setenv("COUNTERSIGN_NOTIFIER", "inmemory")
    assert isinstance(get_notifier(), InMemoryNotifier)


def test_get_repository_picks_backend(tmp_path, monkeypatch):
    assert isinstance(get_repository(), InMemoryWorkflowRepository)
    assert get_repository() is get_repository()

    monkeypatch.setenv("COUNTERSIGN_DATABASE_URL", f"sqlite://{tmp_path / 'wf.db'}")
    repo = get_repository(config=load_config())
    assert isinstance(repo, SQLiteWorkflowRepository)
    assert repo.db_path == str(tmp_path / "wf.db")


def test_sqlite_urls_keep_absolute_and_relative_paths(tmp_path, monkeypatch):
    absolute = get_repository(f"sqlite://{tmp_path / 'abs.db'}")
    assert isinstance(absolute, SQLiteWorkflowRepository)
    assert absolute.db_path == str(tmp_path / "abs.db")
    assert (tmp_path / "abs.db").exists()
    absolute.close()

    monkeypatch.chdir(tmp_path)
    relative = get_repository("sqlite://rel.db")
    assert relative.db_path == "rel.db"
    assert (tmp_path / "rel.db").exists()
    relative.close()


def test_driver_qualified_url_goes_through_sqlmodel(tmp_path):
    from countersign.persistence.sql import SQLWorkflowRepository

    repo = get_repository(f"sqlite+pysqlite:///{tmp_path / 'sqlmodel.db'}")
    assert isinstance(repo, SQLWorkflowRepository)
    assert (tmp_path / "sqlmodel.db").exists()
