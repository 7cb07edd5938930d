from __future__ import annotations

from pathlib import Path
from typing import Any, Mapping

import yaml


class ConfigError(ValueError):
    pass


def load_yaml(path: str) -> dict[str, Any]:
    p = Path(path)
    if not p.exists():
        raise ConfigError(f"config file does not exist: {path}")
    with p.open("r", encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"config file is not valid YAML: {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError("config root must be a mapping")
    return data


def require_keys(cfg: Mapping[str, Any], keys: list[str], where: str = "config") -> None:
    missing = [k for k in keys if cfg.get(k) in (None, "")]
    if missing:
        raise ConfigError(f"{where} missing required keys: {', '.join(missing)}")


def with_defaults(cfg: Mapping[str, Any], defaults: Mapping[str, Any]) -> dict[str, Any]:
    merged = dict(defaults)
    merged.update({k: v for k, v in cfg.items() if v is not None})
    return merged


def resolve_path_field(cfg: dict[str, Any], key: str, config_path: str) -> None:
    """Make a relative path setting absolute against the config file's directory."""
    raw = str(cfg.get(key, "") or "").strip()
    if not raw:
        return
    value = Path(raw).expanduser()
    if not value.is_absolute():
        value = Path(config_path).expanduser().resolve().parent / value
    cfg[key] = str(value.resolve())
