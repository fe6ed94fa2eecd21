"""Agent CLI providers."""
from .base import LaunchSpec, ParsedStreamEvent, Provider
from .registry import ProviderRegistry, build_provider_registry

__all__ = [
    "LaunchSpec",
    "ParsedStreamEvent",
    "Provider",
    "ProviderRegistry",
    "build_provider_registry",
]
