"""Shared fixtures for redep tests."""

import pytest

from redep.config import CONFIG_SCHEMA, ConfigStore


@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch):
    """Keep the developer's env vars and ~/.redep out of every test."""
    for schema in CONFIG_SCHEMA.values():
        if schema.env:
            monkeypatch.delenv(schema.env, raising=False)
    monkeypatch.setenv("REDEP_HOME", str(tmp_path / "redep_home"))
    # Stop cli.run() from picking up a stray .env in the working directory
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def store(tmp_path):
    """A fresh config store in a temp directory."""
    s = ConfigStore(tmp_path / "config.db")
    yield s
    s.close()


@pytest.fixture
def server_store(store, tmp_path):
    """A config store with every mandatory server key set."""
    work_dir = tmp_path / "work"
    work_dir.mkdir()
    store.set("secret_key", "test_secret_key_12345")
    store.set("working_dir", str(work_dir))
    store.set("deployment_command", "echo deployed")
    return store
