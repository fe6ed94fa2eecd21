from __future__ import annotations

from unittest.mock import patch

import pytest

from gridbridge.engine.config import ProviderOverride
from gridbridge.engine.errors import ProviderUnavailableError
from gridbridge.engine.models import LaunchMode, ProviderId
from gridbridge.engine.providers.registry import PROVIDER_CLASSES, build_provider_registry


def test_every_provider_id_has_an_implementation() -> None:
    assert set(PROVIDER_CLASSES) == set(ProviderId)
    registry = build_provider_registry()
    assert [p.provider_id for p in registry.all()] == list(ProviderId)


def test_process_names() -> None:
    names = build_provider_registry().by_process_name()
    assert names["claude"] is ProviderId.CLAUDE
    assert names["auggie"] is ProviderId.AUGMENT
    assert names["copilot"] is ProviderId.COPILOT


def test_missing_cli_is_unavailable() -> None:
    registry = build_provider_registry()
    with patch("gridbridge.engine.providers.base.shutil.which", return_value=None):
        with pytest.raises(ProviderUnavailableError, match="not found on PATH"):
            registry.require_spawnable("claude")
        with pytest.raises(ProviderUnavailableError, match="unsupported provider"):
            registry.require_spawnable("emacs")
        report = registry.validate()
    assert report["claude"] is False
    assert "cline" not in report


def test_installed_cli_is_spawnable() -> None:
    registry = build_provider_registry()
    with patch("gridbridge.engine.providers.base.shutil.which", return_value="/usr/bin/gemini"):
        provider = registry.require_spawnable(ProviderId.GEMINI)
        row = provider.describe()
    assert row["available"] is True
    assert row["structured"] is True
    assert row["name"] == "Gemini CLI"


def test_adapter_only_install_is_listed_as_available() -> None:
    registry = build_provider_registry()

    def which(name: str) -> str | None:
        return "/usr/bin/codex-acp" if name == "codex-acp" else None

    with patch("gridbridge.engine.providers.base.shutil.which", side_effect=which):
        codex = registry.require_spawnable("codex")
        row = codex.describe()
        report = registry.validate()
    assert row["available"] is True
    assert row["structured"] is True
    assert report["codex"] is True
    assert report["claude"] is False


def test_overrides_and_launch_specs() -> None:
    with patch("gridbridge.engine.providers.base.shutil.which", return_value=None):
        registry = build_provider_registry({
            "codex": ProviderOverride(command="my-codex", acp_command=["codex-acp", "--debug"]),
        })
    codex = registry.get("codex")
    assert codex.command == "my-codex"
    launch = codex.build_launch("fix", auto_approve=True)
    assert launch.argv == ["my-codex", "-q", "--json", "fix"]
    assert launch.mode is LaunchMode.STREAM
    structured = codex.build_acp_launch()
    assert structured.argv == ["codex-acp", "--debug"]
    assert structured.mode is LaunchMode.STRUCTURED

    gemini = registry.get("gemini")
    assert gemini.build_acp_launch(auto_approve=True).argv == ["gemini", "--experimental-acp", "--yolo"]
    assert registry.get("aider").build_acp_launch() is None
    assert registry.get("cline").build_acp_launch() is None
