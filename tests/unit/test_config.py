"""Tests for configuration loading."""

from pathlib import Path

import pytest

import stepwright.persistence as persistence
from stepwright.config import load_config
from stepwright.persistence import InMemoryStore, SQLiteStore, get_store


@pytest.fixture(autouse=True)
def _reset_store(monkeypatch):
    monkeypatch.delenv("STEPWRIGHT_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.setattr(persistence, "_store_instance", None)
    monkeypatch.setattr(persistence, "_store_url", None)


def test_load_config_from_env(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
lease:
  default_ttl_ms: 1000
  max_requeues: 2
daemon:
  runtime_dir: /tmp/sw-runtime
log_level: DEBUG
"""
    )
    monkeypatch.setenv("STEPWRIGHT_CONFIG", str(config_path))

    config = load_config()
    assert config.lease.default_ttl_ms == 1000
    assert config.lease.max_requeues == 2
    assert config.lease.requeue_delay_ms == 500
    assert config.daemon.pid_path == Path("/tmp/sw-runtime/daemon.pid")
    assert config.log_level == "DEBUG"


def test_missing_config_file_yields_defaults(tmp_path):
    config = load_config(str(tmp_path / "absent.yaml"))
    assert config.database_url is None
    assert config.lease.default_ttl_ms == 300_000
    assert config.lease.max_requeues == 5
    assert config.daemon.stop_timeout_s == 5.0


def test_database_url_env_overrides_file(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text("database_url: sqlite:///from-file.db\n")
    monkeypatch.setenv("STEPWRIGHT_DATABASE_URL", f"sqlite://{tmp_path / 'env.db'}")

    config = load_config(str(config_path))
    assert config.database_url == f"sqlite://{tmp_path / 'env.db'}"


def test_get_store_selects_backend(tmp_path):
    assert isinstance(get_store(config=load_config(str(tmp_path / "none.yaml"))), InMemoryStore)

    store = get_store(f"sqlite://{tmp_path / 'journal.db'}")
    assert isinstance(store, SQLiteStore)
    # cached for argument-less callers
    assert get_store() is store

    with pytest.raises(ValueError):
        get_store("mysql://nope")


def test_get_store_understands_in_memory_urls(tmp_path):
    sqlite_memory = get_store("sqlite:///:memory:")
    assert isinstance(sqlite_memory, SQLiteStore)
    assert sqlite_memory.db_path == ":memory:"
    assert not (tmp_path / ":memory:").exists()

    assert isinstance(get_store("memory://"), InMemoryStore)


def test_get_store_reuses_store_for_same_url_and_replaces_on_change(tmp_path):
    first_url = f"sqlite://{tmp_path / 'first.db'}"
    first = get_store(first_url)
    assert get_store(first_url) is first

    second = get_store(f"sqlite://{tmp_path / 'second.db'}")
    assert second is not first
    assert second.db_path == str(tmp_path / "second.db")
    assert get_store() is second

    with pytest.raises(ValueError, match="no database file"):
        get_store("sqlite://")
