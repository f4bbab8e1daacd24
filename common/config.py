from __future__ import annotations

import json
import os
import secrets
import time
from pathlib import Path
from typing import Any, Mapping

import yaml

from common.crypto import md5_hex

DEFAULT_CONFIG_DIR = "/etc/gost"
VERSION_BASE = "2.0.0.0"
ROLE_PRIMARY = "agent1"
ROLE_SECONDARY = "agent2"

_TRUE_VALUES = {"1", "true", "yes", "on"}

# Tunables read from the environment: env name -> (config key, caster, default).
_ENV_TUNABLES: dict[str, tuple[str, type, Any]] = {
    "WS_IP_FAMILY": ("ws_ip_family", str, "auto"),
    "WS_PING_SEC": ("ws_ping_sec", int, 15),
    "WS_DEADLINE_SEC": ("ws_deadline_sec", int, 45),
    "RECONCILE_INTERVAL": ("reconcile_interval", int, 300),
    "AGENT_SYSINFO_SEC": ("sysinfo_sec", int, 10),
    "AGENT_USED_PORTS_SEC": ("used_ports_sec", int, 10),
    "AGENT_SVC_REPORT_SEC": ("svc_report_sec", int, 5),
    "HEARTBEAT_ENDPOINT": ("heartbeat_endpoint", str, "https://flux.199028.xyz/api/v1/stats/heartbeat"),
    "IP_LOOKUP_URL": ("ip_lookup_url", str, "https://api.ip.sb/ip"),
    "AGENT_LOG_LEVEL": ("log_level", str, "info"),
}


class ConfigError(ValueError):
    pass


def load_yaml(path: str) -> dict[str, Any]:
    p = Path(path)
    if not p.exists():
        raise ConfigError(f"config file does not exist: {path}")
    with p.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigError("config root must be a mapping")
    return data


def require_keys(cfg: dict[str, Any], keys: list[str], where: str = "config") -> None:
    missing = [k for k in keys if not cfg.get(k)]
    if missing:
        raise ConfigError(f"{where} missing required keys: {', '.join(missing)}")


def load_json(path: str | Path, default: Any = None) -> Any:
    p = Path(path)
    try:
        raw = p.read_text(encoding="utf-8")
    except OSError:
        return default
    if not raw.strip():
        return default
    try:
        return json.loads(raw)
    except ValueError:
        return default


def write_with_mode(path: str | Path, data: bytes, mode: int) -> None:
    """Write ``data`` through a descriptor opened with ``mode``; the file is never wider than that."""
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
    with os.fdopen(fd, "wb") as f:
        # O_CREAT leaves an existing file's mode alone.
        os.fchmod(f.fileno(), mode)
        f.write(data)


def save_json(path: str | Path, data: Any, mode: int = 0o644, indent: int | None = 2) -> None:
    """Write JSON atomically: temp file beside the target, then rename over it."""
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    tmp = p.with_name(f".{p.name}.tmp")
    write_with_mode(tmp, json.dumps(data, ensure_ascii=False, indent=indent).encode("utf-8"), mode)
    os.replace(tmp, p)


def parse_bool(value: Any, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if not text:
        return default
    return text in _TRUE_VALUES


def detect_role(argv0: str) -> str:
    return ROLE_SECONDARY if "flux-agent2" in Path(argv0).name else ROLE_PRIMARY


def version_for_role(role: str, base: str = VERSION_BASE) -> str:
    prefix = "go-agent2-" if role == ROLE_SECONDARY else "go-agent-"
    return prefix + base


def read_panel_file(config_dir: str) -> tuple[str, str]:
    data = load_json(Path(config_dir) / "config.json", default={})
    if not isinstance(data, dict):
        return "", ""
    return str(data.get("addr") or ""), str(data.get("secret") or "")


def _cast(caster: type, raw: Any, default: Any) -> Any:
    try:
        return caster(raw)
    except (TypeError, ValueError):
        return default


def load_agent_config(
    flags: Mapping[str, Any] | None = None,
    environ: Mapping[str, str] | None = None,
    argv0: str = "flux-agent",
) -> dict[str, Any]:
    """Merge env, flags, the optional YAML tunables file and the legacy panel file.

    Environment wins over flags, flags over YAML, YAML over ``config.json``.
    Raises ConfigError when no panel address or secret can be found.
    """
    flags = dict(flags or {})
    env = dict(os.environ if environ is None else environ)

    cfg: dict[str, Any] = {key: default for key, _, default in _ENV_TUNABLES.values()}
    cfg.update(
        {
            "config_dir": DEFAULT_CONFIG_DIR,
            "scheme": "ws",
            "strict_reconcile": False,
            "single_agent": True,
            "probe_sec": 60,
            "heartbeat_sec": 3600,
            "reconnect_delay": 3.0,
            "reconcile_delay": 1.2,
            "engine_api_url": "http://127.0.0.1:18080/api",
            "anytls_session_layer": "",
            "version_base": VERSION_BASE,
        }
    )

    cfg["config_dir"] = str(env.get("AGENT_CONFIG_DIR") or flags.get("config_dir") or DEFAULT_CONFIG_DIR)
    yaml_path = str(flags.get("config") or Path(cfg["config_dir"], "agent.yaml"))
    if flags.get("config") or Path(yaml_path).exists():
        cfg.update(load_yaml(yaml_path))

    for key in ("addr", "secret", "scheme"):
        if flags.get(key):
            cfg[key] = flags[key]

    for env_name, (key, caster, default) in _ENV_TUNABLES.items():
        if env.get(env_name):
            cfg[key] = _cast(caster, env[env_name], default)
    for env_name, key in (("ADDR", "addr"), ("SECRET", "secret"), ("SCHEME", "scheme")):
        if env.get(env_name):
            cfg[key] = env[env_name]
    if "STRICT_RECONCILE" in env:
        cfg["strict_reconcile"] = parse_bool(env["STRICT_RECONCILE"])
    if "SINGLE_AGENT" in env:
        cfg["single_agent"] = parse_bool(env["SINGLE_AGENT"], default=True)

    if not cfg.get("addr") or not cfg.get("secret"):
        file_addr, file_secret = read_panel_file(cfg["config_dir"])
        cfg["addr"] = cfg.get("addr") or file_addr
        cfg["secret"] = cfg.get("secret") or file_secret
    require_keys(cfg, ["addr", "secret"], where="agent config (ADDR/SECRET, flags or config.json)")

    cfg["scheme"] = str(cfg.get("scheme") or "ws").lower()
    if cfg["scheme"] not in {"ws", "wss"}:
        raise ConfigError(f"unsupported scheme: {cfg['scheme']}")
    role = str(env.get("ROLE") or cfg.get("role") or detect_role(argv0))
    if role not in {ROLE_PRIMARY, ROLE_SECONDARY}:
        raise ConfigError(f"unknown role: {role}")
    cfg["role"] = role
    cfg["version"] = version_for_role(role, str(cfg["version_base"]))
    cfg["strict_reconcile"] = parse_bool(cfg.get("strict_reconcile"))
    cfg["single_agent"] = parse_bool(cfg.get("single_agent"), default=True)
    return cfg


def ensure_agent_id(
    config_dir: str,
    external_ip: str = "",
    machine_id_paths: tuple[str, ...] = ("/etc/machine-id", "/var/lib/dbus/machine-id"),
) -> str:
    for candidate in machine_id_paths:
        try:
            mid = Path(candidate).read_text(encoding="utf-8").strip()
        except OSError:
            continue
        if mid:
            return "mid-" + mid
    store = Path(config_dir) / "agent_uid"
    try:
        stored = store.read_text(encoding="utf-8").strip()
    except OSError:
        stored = ""
    if stored:
        return stored
    if external_ip:
        agent_id = "hip-" + md5_hex(external_ip)[:8]
    else:
        agent_id = f"uid-{time.time_ns()}-{secrets.randbits(62)}"
    store.parent.mkdir(parents=True, exist_ok=True)
    store.write_text(agent_id, encoding="utf-8")
    return agent_id


def ensure_created_at(config_dir: str) -> int:
    store = Path(config_dir) / "agent_created_ms"
    try:
        ms = int(store.read_text(encoding="utf-8").strip())
    except (OSError, ValueError):
        ms = 0
    if ms > 0:
        return ms
    now = int(time.time() * 1000)
    store.parent.mkdir(parents=True, exist_ok=True)
    store.write_text(str(now), encoding="utf-8")
    return now
