# src/polychat/config_loader.py

from __future__ import annotations
from pathlib import Path
from typing import Any, Dict
import yaml

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
_SECRET_METHODS = ("env", "keyring")


class ConfigError(ValueError):
    pass


def _require(d: Dict[str, Any], dotted: str, typ: type) -> Any:
    cur: Any = d
    for k in dotted.split("."):
        if not isinstance(cur, dict) or k not in cur:
            raise ConfigError(f"Missing config key: {dotted}")
        cur = cur[k]
    if typ is str and not isinstance(cur, str):
        raise ConfigError(f"'{dotted}' must be a string")
    return cur


def _section(raw: Dict[str, Any], name: str) -> Dict[str, Any]:
    val = raw.get(name)
    if val is None:
        return {}
    if not isinstance(val, dict):
        raise ConfigError(f"'{name}' must be a mapping")
    return val


def load_config(path: Path) -> Dict[str, Any]:
    if not path or not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    raw = yaml.safe_load(path.read_text())
    if not isinstance(raw, dict) or not raw:
        raise ConfigError(f"Config is empty or invalid YAML: {path}")

    # Required keys (no defaults here)
    _require(raw, "app.default_provider", str)
    _require(raw, "storage.data_dir", str)
    _require(raw, "logging.level", str)

    raw["app"]["default_provider"] = raw["app"]["default_provider"].strip().lower()

    level = raw["logging"]["level"].strip().upper()
    if level not in _LOG_LEVELS:
        raise ConfigError(f"Unknown logging.level '{raw['logging']['level']}' (expected one of {', '.join(_LOG_LEVELS)}).")
    raw["logging"]["level"] = level
    log_file = raw["logging"].get("file")
    if log_file is not None and not isinstance(log_file, str):
        raise ConfigError("'logging.file' must be a string")

    chats_dir = raw["storage"].get("chats_dir")
    if chats_dir is not None and not isinstance(chats_dir, str):
        raise ConfigError("'storage.chats_dir' must be a string")

    default_model = _section(raw, "app").get("default_model")
    if default_model is not None and not isinstance(default_model, str):
        raise ConfigError("'app.default_model' must be a string")

    secrets = _section(raw, "secrets")
    method = secrets.get("method", "env")
    methods = [method] if isinstance(method, str) else method
    if not isinstance(methods, list) or not methods:
        raise ConfigError("'secrets.method' must be a string or a non-empty list")
    for m in methods:
        if str(m).strip().lower() not in _SECRET_METHODS:
            raise ConfigError(f"Unknown secrets.method '{m}' (expected 'env' or 'keyring').")

    tools = _section(raw, "tools")
    servers = tools.get("servers") or {}
    if not isinstance(servers, dict):
        raise ConfigError("'tools.servers' must be a mapping of name -> {command, args}")
    for name, spec in servers.items():
        if not isinstance(spec, dict) or not isinstance(spec.get("command"), str):
            raise ConfigError(f"tools.servers.{name} needs a 'command' string")

    # Leave paths as provided; resolve them later in bootstrap
    return raw
