"""Tests for the config store and settings helpers."""

import os

import pytest

from redep.config import (
    ConfigStore,
    ServerProfile,
    get_client_config,
    get_detailed_config,
    get_server_config,
    get_server_profiles,
    get_server_security_level,
    load_server_settings,
    missing_config_message,
    resolve_deploy_target,
    save_server_profile,
    sort_config_entries,
    validate_mandatory_config,
)
from redep.exceptions import ConfigurationError


class TestConfigStore:
    """Tests for ConfigStore lookups."""

    def test_default_value(self, store):
        assert store.get("server_port") == 3000
        assert store.get("secret_key") is None
        assert store.get("servers") == {}

    def test_unknown_key_defaults_to_none(self, store):
        assert store.get("no_such_key") is None

    def test_set_and_get_keeps_types(self, store):
        store.set("server_port", 4000)
        store.set("servers", {"prod": {"url": "http://x", "secret": "s"}})
        assert store.get("server_port") == 4000
        assert store.get("servers")["prod"]["url"] == "http://x"

    def test_env_overrides_stored_value(self, store, monkeypatch):
        store.set("secret_key", "from-file")
        monkeypatch.setenv("SECRET_KEY", "from-env")
        assert store.get("secret_key") == "from-env"

    def test_env_overrides_default(self, store, monkeypatch):
        monkeypatch.setenv("SERVER_PORT", "8080")
        assert store.get("server_port") == "8080"

    def test_records_updated_at(self, store):
        store.set("working_dir", "/srv/app")
        value, updated_at = store.items()["working_dir"]
        assert value == "/srv/app"
        assert "T" in updated_at

    def test_delete(self, store):
        store.set("server_pid", 123)
        assert store.delete("server_pid") is True
        assert store.delete("server_pid") is False
        assert store.get("server_pid") is None

    def test_clear(self, store):
        store.set("a", 1)
        store.set("b", 2)
        store.clear()
        assert store.items() == {}

    def test_persists_across_instances(self, tmp_path):
        path = tmp_path / "persist.db"
        first = ConfigStore(path)
        first.set("secret_key", "abc")
        first.close()
        second = ConfigStore(path)
        assert second.get("secret_key") == "abc"
        second.close()

    def test_file_is_private(self, store):
        if os.name != "posix":
            pytest.skip("POSIX permissions only")
        assert (store.db_path.stat().st_mode & 0o777) == 0o600

    def test_default_location_uses_redep_home(self, tmp_path):
        s = ConfigStore()
        assert s.db_path == tmp_path / "redep_home" / "config.db"
        s.close()


class TestMandatoryConfig:
    """Tests for mandatory server key validation."""

    def test_all_missing(self, store):
        assert validate_mandatory_config(store) == ["secret_key", "working_dir", "deployment_command"]

    def test_some_missing(self, store):
        store.set("secret_key", "s")
        assert validate_mandatory_config(store) == ["working_dir", "deployment_command"]

    def test_empty_env_counts_as_missing(self, server_store, monkeypatch):
        monkeypatch.setenv("DEPLOYMENT_COMMAND", "")
        assert validate_mandatory_config(server_store) == ["deployment_command"]

    def test_message_lists_every_key(self):
        message = missing_config_message(["secret_key", "deployment_command"])
        assert "'secret_key', 'deployment_command'" in message
        assert "SECRET_KEY=<value>" in message
        assert "redep config set deployment_command <value>" in message

    def test_message_none_when_complete(self):
        assert missing_config_message([]) is None


class TestServerSettings:

    def test_missing_keys_raise(self, store):
        with pytest.raises(ConfigurationError) as exc_info:
            load_server_settings(store)
        assert exc_info.value.missing_keys == ["secret_key", "working_dir", "deployment_command"]

    def test_loads_with_port_override(self, server_store):
        settings = load_server_settings(server_store, port=5050)
        assert settings.port == 5050
        assert settings.deployment_command == "echo deployed"
        assert settings.command_timeout is None

    def test_env_port_is_coerced(self, server_store, monkeypatch):
        monkeypatch.setenv("SERVER_PORT", "7070")
        assert load_server_settings(server_store).port == 7070

    def test_invalid_port(self, server_store):
        server_store.set("server_port", 70000)
        with pytest.raises(ConfigurationError, match="port"):
            load_server_settings(server_store)

    def test_command_timeout(self, server_store, monkeypatch):
        monkeypatch.setenv("COMMAND_TIMEOUT", "90")
        assert load_server_settings(server_store).command_timeout == 90.0


class TestServerProfiles:
    """Tests for client-side server profiles."""

    def test_save_and_list(self, store):
        save_server_profile(store, ServerProfile(name="prod", url="https://deploy.example.com", secret="s"))
        save_server_profile(store, ServerProfile(name="dev", url="http://localhost:3000", secret="d"))
        profiles = get_server_profiles(store)
        assert set(profiles) == {"prod", "dev"}
        assert profiles["prod"].url == "https://deploy.example.com"

    def test_client_listing_masks_secrets(self, store):
        save_server_profile(store, ServerProfile(name="prod", url="https://deploy.example.com", secret="s"))
        rows = get_client_config(store)
        assert rows == [{
            "server": "prod",
            "host": "https://deploy.example.com",
            "secret_key": "********",
            "security": "high",
            "description": "Production environment with high security",
        }]

    @pytest.mark.parametrize("name,description", [
        ("staging", "Staging environment for testing"),
        ("DEV", "Development environment"),
        ("eu-west", "Custom environment"),
    ])
    def test_client_listing_describes_profiles(self, store, name, description):
        save_server_profile(store, ServerProfile(name=name, url="http://h:3000", secret="s"))
        assert get_client_config(store)[0]["description"] == description

    def test_incomplete_profile_ignored(self, store):
        store.set("servers", {"broken": {"url": "http://x"}})
        assert get_server_profiles(store) == {}

    def test_resolve_profile(self, store):
        save_server_profile(store, ServerProfile(name="prod", url="http://h:3000", secret="s"))
        target = resolve_deploy_target(store, "prod")
        assert (target.url, target.secret) == ("http://h:3000", "s")

    def test_resolve_falls_back_to_globals(self, store, monkeypatch):
        monkeypatch.setenv("SERVER_URL", "http://global:3000")
        monkeypatch.setenv("SECRET_KEY", "global-secret")
        target = resolve_deploy_target(store, "staging")
        assert (target.url, target.secret) == ("http://global:3000", "global-secret")

    def test_resolve_unknown_server(self, store):
        with pytest.raises(ConfigurationError, match='Server "prod" not found'):
            resolve_deploy_target(store, "prod")

    def test_resolve_missing_secret(self, store):
        store.set("server_url", "http://global:3000")
        with pytest.raises(ConfigurationError, match="secret_key"):
            resolve_deploy_target(store, "prod")

    @pytest.mark.parametrize("url,level", [
        ("https://deploy.example.com", "high"),
        ("http://localhost:3000", "low"),
        ("http://127.0.0.1:3000", "low"),
        ("http://10.0.0.5:3000", "medium"),
        ("10.0.0.5:3000", "unknown"),
        (None, "unknown"),
    ])
    def test_security_level(self, url, level):
        assert get_server_security_level(url) == level


class TestDetailedConfig:
    """Tests for `config list` rows."""

    def test_sources(self, store, monkeypatch):
        store.set("working_dir", "/srv")
        monkeypatch.setenv("SERVER_URL", "http://env")
        rows = {e.key: e for e in get_detailed_config(store)}
        assert rows["working_dir"].source == "File"
        assert rows["working_dir"].is_modified
        assert rows["server_url"].source == "Environment"
        assert rows["server_port"].source == "Default"
        assert rows["server_port"].updated_at is None

    def test_secret_is_masked(self, store):
        store.set("secret_key", "hunter2")
        row = next(e for e in get_detailed_config(store) if e.key == "secret_key")
        assert row.display_value() == "********"
        assert row.to_dict()["value"] == "********"

    def test_custom_keys_listed(self, store):
        store.set("my_note", "hello")
        row = next(e for e in get_detailed_config(store) if e.key == "my_note")
        assert row.security == "unknown"
        assert row.description == "Custom Configuration"

    def test_server_view_filters_keys(self, store):
        keys = {e.key for e in get_server_config(store)}
        assert "secret_key" in keys
        assert "servers" not in keys
        assert "server_url" not in keys

    def test_sort_by_security(self, store):
        entries = sort_config_entries(get_detailed_config(store), "security")
        assert entries[0].key == "secret_key"

    def test_sort_by_modified(self, store):
        store.set("working_dir", "/a")
        store.set("deployment_command", "make")
        entries = sort_config_entries(get_detailed_config(store), "modified")
        assert entries[0].key == "deployment_command"
