"""YAML configuration loader.

Parses ``gridbridge.yaml`` and layers it over an env-derived
BridgeConfig. Example::

    server:
      host: 0.0.0.0
      port: 3001
      log_level: DEBUG

    bridge:
      dedup_ttl_seconds: 2.0
      prefer_structured_protocol: false
      auto_approve: true

    observer:
      discovery_interval_seconds: 3
      candidate_grace_seconds: 10
      fs_debounce_seconds: 1

    providers:
      claude:
        command: /opt/bin/claude
      codex:
        acp_command: [codex-acp, --verbose]
"""
from __future__ import annotations

import logging
from dataclasses import fields, replace
from pathlib import Path
from typing import Any

import yaml

from .config import BridgeConfig, ProviderOverride

logger = logging.getLogger(__name__)

_SECTION_KEYS: dict[str, set[str]] = {
    "server": {"host", "port", "log_level", "observer_queue_size"},
    "bridge": {
        "dedup_ttl_seconds",
        "tool_call_memory_seconds",
        "fs_refresh_delay_seconds",
        "prefer_structured_protocol",
        "auto_approve",
    },
    "observer": {
        "discovery_interval_seconds",
        "candidate_grace_seconds",
        "bridged_claim_seconds",
        "fs_debounce_seconds",
        "max_discovery_depth",
    },
}

_FIELD_TYPES = {f.name: f.type for f in fields(BridgeConfig)}


def _coerce(name: str, value: Any) -> Any:
    kind = _FIELD_TYPES.get(name)
    if kind in ("int", int):
        return int(value)
    if kind in ("float", float):
        return float(value)
    if kind in ("bool", bool):
        if isinstance(value, str):
            return value.strip().lower() in {"1", "true", "yes", "on"}
        return bool(value)
    return str(value)


def _parse_providers(raw: Any) -> dict[str, ProviderOverride]:
    result: dict[str, ProviderOverride] = {}
    if not isinstance(raw, dict):
        return result
    for name, entry in raw.items():
        if not isinstance(entry, dict):
            logger.warning("Ignoring provider override %r: expected a mapping", name)
            continue
        acp = entry.get("acp_command")
        if isinstance(acp, str):
            acp = acp.split()
        result[str(name)] = ProviderOverride(
            command=entry.get("command"),
            acp_command=list(acp) if acp else None,
        )
    return result


def apply_yaml_config(base: BridgeConfig, raw: dict[str, Any]) -> BridgeConfig:
    """Return a copy of *base* with the YAML sections applied."""
    overrides: dict[str, Any] = {}
    for section, allowed in _SECTION_KEYS.items():
        values = raw.get(section) or {}
        if not isinstance(values, dict):
            logger.warning("Section '%s' must be a mapping, ignoring", section)
            continue
        for key, value in values.items():
            if key not in allowed:
                logger.warning("Unknown key '%s.%s' in config, ignoring", section, key)
                continue
            overrides[key] = _coerce(key, value)
    providers = _parse_providers(raw.get("providers"))
    if providers:
        merged = dict(base.provider_commands)
        merged.update(providers)
        overrides["provider_commands"] = merged
    return replace(base, **overrides)


def load_yaml_config(path: str | Path, base: BridgeConfig | None = None) -> BridgeConfig:
    """Load *path* and layer it over *base* (or env-derived defaults)."""
    path = Path(path)
    base = base if base is not None else BridgeConfig.from_env()
    try:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error("load_yaml_config: config file not found at %s", path.absolute())
        raise
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise
    if not isinstance(raw, dict):
        raise ValueError(f"Config root in {path} must be a mapping")

    logger.info(
        "Parsed YAML config %s (sections: %s)",
        path, ", ".join(sorted(raw.keys())) or "<empty>",
    )
    return apply_yaml_config(base, raw)


def discover_config_path(explicit: str | None, cwd: Path) -> Path | None:
    """Resolve --config, then ``.grid/gridbridge.yaml``, then ``gridbridge.yaml``."""
    if explicit:
        return Path(explicit)
    for candidate in (cwd / ".grid" / "gridbridge.yaml", cwd / "gridbridge.yaml"):
        if candidate.exists():
            return candidate
    return None
