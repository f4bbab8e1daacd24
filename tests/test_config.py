"""Tests for agent configuration and persisted identity."""

import json
import os

import pytest

from common.config import (
    ConfigError,
    ensure_agent_id,
    ensure_created_at,
    load_agent_config,
    load_json,
    save_json,
    write_with_mode,
)


class TestLoadAgentConfig:
    """Tests for source precedence and validation."""

    def test_environment_wins_over_flags(self, tmp_path):
        """ADDR/SECRET in the environment override -a/-s."""
        env = {"AGENT_CONFIG_DIR": str(tmp_path), "ADDR": "env:1", "SECRET": "envsecret"}
        cfg = load_agent_config({"addr": "flag:2", "secret": "flagsecret"}, env)
        assert cfg["addr"] == "env:1"
        assert cfg["secret"] == "envsecret"

    def test_flags_win_over_yaml(self, tmp_path):
        """Flags override the tunables file, which supplies other keys."""
        yaml_path = tmp_path / "agent.yaml"
        yaml_path.write_text("addr: yaml:3\nsecret: s\nws_ping_sec: 7\n", encoding="utf-8")
        cfg = load_agent_config({"addr": "flag:2"}, {"AGENT_CONFIG_DIR": str(tmp_path)})
        assert cfg["addr"] == "flag:2"
        assert cfg["secret"] == "s"
        assert cfg["ws_ping_sec"] == 7

    def test_panel_file_fallback(self, tmp_path):
        """config.json supplies addr/secret when nothing else does."""
        (tmp_path / "config.json").write_text(json.dumps({"addr": "panel:6365", "secret": "x"}), encoding="utf-8")
        cfg = load_agent_config({}, {"AGENT_CONFIG_DIR": str(tmp_path)})
        assert cfg["addr"] == "panel:6365"
        assert cfg["secret"] == "x"

    def test_missing_credentials_is_fatal(self, tmp_path):
        """No addr or secret anywhere raises ConfigError."""
        with pytest.raises(ConfigError):
            load_agent_config({}, {"AGENT_CONFIG_DIR": str(tmp_path)})

    def test_unsupported_scheme(self, tmp_path):
        """Only ws and wss are accepted."""
        with pytest.raises(ConfigError):
            load_agent_config({"addr": "a:1", "secret": "s", "scheme": "http"}, {"AGENT_CONFIG_DIR": str(tmp_path)})

    def test_defaults(self, tmp_path):
        """Intervals and flags default as documented."""
        cfg = load_agent_config({"addr": "a:1", "secret": "s"}, {"AGENT_CONFIG_DIR": str(tmp_path)})
        assert cfg["ws_ping_sec"] == 15
        assert cfg["ws_deadline_sec"] == 45
        assert cfg["reconcile_interval"] == 300
        assert cfg["single_agent"] is True
        assert cfg["strict_reconcile"] is False
        assert cfg["role"] == "agent1"
        assert cfg["version"].startswith("go-agent-")

    def test_role_from_executable_name(self, tmp_path):
        """The flux-agent2 binary runs as the secondary role."""
        cfg = load_agent_config(
            {"addr": "a:1", "secret": "s"},
            {"AGENT_CONFIG_DIR": str(tmp_path)},
            argv0="/etc/gost/flux-agent2",
        )
        assert cfg["role"] == "agent2"
        assert cfg["version"].startswith("go-agent2-")

    def test_env_tunables_are_cast(self, tmp_path):
        """Numeric and boolean environment tunables are parsed."""
        env = {
            "AGENT_CONFIG_DIR": str(tmp_path),
            "WS_PING_SEC": "5",
            "STRICT_RECONCILE": "true",
            "SINGLE_AGENT": "0",
        }
        cfg = load_agent_config({"addr": "a:1", "secret": "s"}, env)
        assert cfg["ws_ping_sec"] == 5
        assert cfg["strict_reconcile"] is True
        assert cfg["single_agent"] is False

    def test_unknown_role(self, tmp_path):
        """A ROLE outside agent1/agent2 is rejected."""
        with pytest.raises(ConfigError):
            load_agent_config({"addr": "a:1", "secret": "s"}, {"AGENT_CONFIG_DIR": str(tmp_path), "ROLE": "agent3"})


class TestIdentity:
    """Tests for persisted agent identity."""

    def test_machine_id_preferred(self, tmp_path):
        """A machine id yields mid-<id> and nothing is persisted."""
        mid = tmp_path / "machine-id"
        mid.write_text("abc123\n", encoding="utf-8")
        assert ensure_agent_id(str(tmp_path / "cfg"), "1.2.3.4", (str(mid),)) == "mid-abc123"
        assert not (tmp_path / "cfg" / "agent_uid").exists()

    def test_ip_derived_id_is_persisted(self, tmp_path):
        """Without a machine id the external-IP id is stored and reused."""
        first = ensure_agent_id(str(tmp_path), "1.2.3.4", (str(tmp_path / "none"),))
        assert first.startswith("hip-")
        assert len(first) == len("hip-") + 8
        again = ensure_agent_id(str(tmp_path), "5.6.7.8", (str(tmp_path / "none"),))
        assert again == first

    def test_random_id_without_ip(self, tmp_path):
        """No machine id and no IP falls back to a random uid."""
        agent_id = ensure_agent_id(str(tmp_path), "", (str(tmp_path / "none"),))
        assert agent_id.startswith("uid-")
        assert (tmp_path / "agent_uid").read_text(encoding="utf-8") == agent_id

    def test_created_at_is_stable(self, tmp_path):
        """The first-seen timestamp is written once."""
        first = ensure_created_at(str(tmp_path))
        assert first > 0
        assert ensure_created_at(str(tmp_path)) == first


class TestJsonFiles:
    """Tests for atomic JSON persistence."""

    def test_save_and_load(self, tmp_path):
        """Saved files load back and honour the requested mode."""
        path = tmp_path / "sub" / "anytls.json"
        save_json(path, {"port": 443}, mode=0o600)
        assert load_json(path) == {"port": 443}
        assert path.stat().st_mode & 0o777 == 0o600
        assert not list(path.parent.glob(".*.tmp"))

    def test_private_file_never_wider(self, tmp_path, monkeypatch):
        """The temp file already has the final mode before it is renamed, even when a stale one existed."""
        path = tmp_path / "anytls.json"
        stale = tmp_path / ".anytls.json.tmp"
        stale.write_text("old", encoding="utf-8")
        stale.chmod(0o666)
        seen = []
        real_replace = os.replace

        def recording_replace(src, dst):
            seen.append(os.stat(src).st_mode & 0o777)
            real_replace(src, dst)

        monkeypatch.setattr(os, "replace", recording_replace)
        save_json(path, {"password": "p"}, mode=0o600)
        assert seen == [0o600]
        assert load_json(path) == {"password": "p"}

    def test_write_with_mode_resets_existing_file(self, tmp_path):
        """Overwriting a readable file narrows it to the requested mode."""
        path = tmp_path / "key.pem"
        path.write_bytes(b"old")
        path.chmod(0o644)
        write_with_mode(path, b"secret", 0o600)
        assert path.read_bytes() == b"secret"
        assert path.stat().st_mode & 0o777 == 0o600

    def test_load_default_on_garbage(self, tmp_path):
        """Unreadable or invalid files return the default."""
        path = tmp_path / "bad.json"
        path.write_text("{not json", encoding="utf-8")
        assert load_json(path, default={}) == {}
        assert load_json(tmp_path / "missing.json", default=[]) == []
