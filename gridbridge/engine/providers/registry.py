"""Provider registry: maps ProviderId to Provider instances.

The set of providers is closed: ``build_provider_registry`` registers
one provider per ProviderId and refuses to build a registry with a gap.
"""
from __future__ import annotations

import logging
from collections.abc import Mapping

from ..config import ProviderOverride
from ..errors import ProviderUnavailableError
from ..models import ProviderId
from .base import Provider
from .claude_provider import ClaudeProvider
from .codex_provider import CodexProvider
from .gemini_provider import GeminiProvider
from .generic_provider import (
    AiderProvider,
    AugmentProvider,
    ClineProvider,
    CopilotProvider,
    GenericAgentProvider,
    KilocodeProvider,
    KimiProvider,
    OpenCodeProvider,
    QwenProvider,
)
from .goose_provider import GooseProvider

logger = logging.getLogger(__name__)

PROVIDER_CLASSES: dict[ProviderId, type[Provider]] = {
    ProviderId.CLAUDE: ClaudeProvider,
    ProviderId.GEMINI: GeminiProvider,
    ProviderId.CODEX: CodexProvider,
    ProviderId.GOOSE: GooseProvider,
    ProviderId.KILOCODE: KilocodeProvider,
    ProviderId.OPENCODE: OpenCodeProvider,
    ProviderId.KIMI: KimiProvider,
    ProviderId.AIDER: AiderProvider,
    ProviderId.CLINE: ClineProvider,
    ProviderId.AUGMENT: AugmentProvider,
    ProviderId.QWEN: QwenProvider,
    ProviderId.COPILOT: CopilotProvider,
    ProviderId.GENERIC: GenericAgentProvider,
}


class ProviderRegistry:
    """Registry of agent providers keyed by ProviderId."""

    def __init__(self) -> None:
        self._providers: dict[ProviderId, Provider] = {}

    def register(self, provider: Provider) -> None:
        self._providers[provider.provider_id] = provider
        logger.debug(
            "Provider registered: %s (spawnable=%s)",
            provider.name, provider.spawnable,
        )

    def get(self, provider_id: ProviderId | str) -> Provider | None:
        pid = ProviderId.parse(provider_id)
        if pid is None:
            return None
        return self._providers.get(pid)

    def get_or_raise(self, provider_id: ProviderId | str) -> Provider:
        """Get a provider, raising ProviderUnavailableError if unknown."""
        provider = self.get(provider_id)
        if provider is None:
            raise ProviderUnavailableError(str(provider_id), "unsupported provider")
        return provider

    def require_spawnable(self, provider_id: ProviderId | str) -> Provider:
        """Resolve a provider that can be launched right now.

        Checks the search path before any fork so a missing CLI never
        creates a session.
        """
        provider = self.get_or_raise(provider_id)
        if not provider.spawnable:
            raise ProviderUnavailableError(provider.name, "provider is observe-only")
        if not provider.can_launch():
            raise ProviderUnavailableError(
                provider.name,
                f"'{provider.command}' not found on PATH",
            )
        return provider

    def all(self) -> list[Provider]:
        return [self._providers[pid] for pid in ProviderId if pid in self._providers]

    def by_process_name(self) -> dict[str, ProviderId]:
        """Executable basename -> provider, for process discovery."""
        names: dict[str, ProviderId] = {}
        for provider in self.all():
            for name in provider.process_names:
                names.setdefault(name, provider.provider_id)
        return names

    def validate(self) -> dict[str, bool]:
        """Log which spawnable providers are installed."""
        report = {
            p.name: p.can_launch() for p in self.all() if p.spawnable
        }
        available = [n for n, ok in report.items() if ok]
        unavailable = [n for n, ok in report.items() if not ok]
        if available:
            logger.info("Available providers: %s", ", ".join(available))
        if unavailable:
            logger.info("Providers not installed: %s", ", ".join(unavailable))
        if not available:
            logger.warning("No agent CLIs found on PATH; only observer mode will work.")
        return report


def build_provider_registry(
    overrides: Mapping[str, ProviderOverride] | None = None,
) -> ProviderRegistry:
    """Register every ProviderId, applying per-provider command overrides."""
    overrides = overrides or {}
    missing = [pid.value for pid in ProviderId if pid not in PROVIDER_CLASSES]
    if missing:
        raise RuntimeError(f"No provider implementation for: {', '.join(missing)}")

    registry = ProviderRegistry()
    for pid, cls in PROVIDER_CLASSES.items():
        override = overrides.get(pid.value)
        if override is not None:
            registry.register(cls(command=override.command, acp_command=override.acp_command))
        else:
            registry.register(cls())
    return registry
