"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via GRID_* env vars,
then via the optional YAML file (see yaml_config.py).
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

_TRUTHY = {"1", "true", "yes", "on"}


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in _TRUTHY


@dataclass
class ProviderOverride:
    """Per-provider command overrides (custom wrappers, tests)."""
    command: str | None = None
    acp_command: list[str] | None = None


@dataclass
class BridgeConfig:
    """Bridge server configuration."""

    host: str = "127.0.0.1"
    port: int = 3001

    # Deduplication windows
    dedup_ttl_seconds: float = 2.0
    tool_call_memory_seconds: float = 2.0

    # Filesystem watching
    fs_debounce_seconds: float = 1.0
    # Delay between a file-modifying tool event and its refresh broadcast.
    fs_refresh_delay_seconds: float = 0.5

    # Observer mode
    discovery_interval_seconds: float = 3.0
    candidate_grace_seconds: float = 10.0
    # How long a bridged session's file event claims that path.
    bridged_claim_seconds: float = 5.0
    max_discovery_depth: int = 6

    # Broadcast
    observer_queue_size: int = 1000

    # Launch behaviour
    prefer_structured_protocol: bool = True
    auto_approve: bool = True

    # Logging
    log_level: str = "INFO"

    provider_commands: dict[str, ProviderOverride] = field(default_factory=dict)

    @classmethod
    def from_env(cls) -> BridgeConfig:
        """Load configuration from GRID_* environment variables."""
        grid_vars = {
            k: v for k, v in os.environ.items() if k.startswith("GRID_")
        }
        if grid_vars:
            logger.info(
                "BridgeConfig.from_env: GRID_* env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(grid_vars.items())),
            )
        else:
            logger.debug("BridgeConfig.from_env: no GRID_* env vars set, using defaults")

        return cls(
            host=os.getenv("GRID_HOST", cls.host),
            port=int(os.getenv("GRID_PORT", str(cls.port))),
            dedup_ttl_seconds=float(os.getenv(
                "GRID_DEDUP_TTL", str(cls.dedup_ttl_seconds)
            )),
            tool_call_memory_seconds=float(os.getenv(
                "GRID_TOOL_CALL_MEMORY", str(cls.tool_call_memory_seconds)
            )),
            fs_debounce_seconds=float(os.getenv(
                "GRID_FS_DEBOUNCE", str(cls.fs_debounce_seconds)
            )),
            fs_refresh_delay_seconds=float(os.getenv(
                "GRID_FS_REFRESH_DELAY", str(cls.fs_refresh_delay_seconds)
            )),
            discovery_interval_seconds=float(os.getenv(
                "GRID_DISCOVERY_INTERVAL", str(cls.discovery_interval_seconds)
            )),
            candidate_grace_seconds=float(os.getenv(
                "GRID_CANDIDATE_GRACE", str(cls.candidate_grace_seconds)
            )),
            bridged_claim_seconds=float(os.getenv(
                "GRID_BRIDGED_CLAIM", str(cls.bridged_claim_seconds)
            )),
            max_discovery_depth=int(os.getenv(
                "GRID_MAX_DISCOVERY_DEPTH", str(cls.max_discovery_depth)
            )),
            observer_queue_size=int(os.getenv(
                "GRID_QUEUE_SIZE", str(cls.observer_queue_size)
            )),
            prefer_structured_protocol=_env_flag(
                "GRID_PREFER_ACP", cls.prefer_structured_protocol
            ),
            auto_approve=_env_flag("GRID_AUTO_APPROVE", cls.auto_approve),
            log_level=os.getenv("GRID_LOG_LEVEL", cls.log_level),
        )
