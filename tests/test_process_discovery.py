from __future__ import annotations

from unittest.mock import patch

import pytest

from gridbridge.adapters.process_discovery import (
    ProcessDiscovery,
    ProcessInfo,
    detect_provider,
    parse_ps_output,
)
from gridbridge.engine.models import ProviderId

NAMES = {
    "claude": ProviderId.CLAUDE,
    "gemini": ProviderId.GEMINI,
    "codex": ProviderId.CODEX,
    "auggie": ProviderId.AUGMENT,
}


def test_parse_ps_output() -> None:
    out = """
      1     0 /sbin/init
    200     1 claude -p hello --output-format stream-json
    bogus line
    300   200 node /usr/lib/node_modules/@google/gemini-cli/dist/index.js
    """
    table = parse_ps_output(out)
    assert set(table) == {1, 200, 300}
    assert table[200] == ProcessInfo(200, 1, "claude -p hello --output-format stream-json")


@pytest.mark.parametrize("args,provider", [
    ("claude", ProviderId.CLAUDE),
    ("/usr/local/bin/codex exec --json", ProviderId.CODEX),
    ("node /usr/lib/node_modules/@google/gemini-cli/dist/index.js", ProviderId.GEMINI),
    ("node /opt/claude-code/cli.js", ProviderId.CLAUDE),
    ("auggie --print", ProviderId.AUGMENT),
    ("bash -c claude -p x", None),
    ("claude --version", None),
    ("claude mcp serve", None),
    ("/bin/zsh /home/u/.claude/shell-snapshots/snap.sh", None),
    ("vim notes.txt", None),
    ("", None),
])
def test_detect_provider(args: str, provider: ProviderId | None) -> None:
    assert detect_provider(args, NAMES) is provider


@pytest.mark.asyncio
async def test_scan_filters_owned_hidden_and_outside() -> None:
    table = {
        10: ProcessInfo(10, 1, "claude"),           # owned by the bridge
        11: ProcessInfo(11, 10, "gemini"),          # descendant of an owned process
        20: ProcessInfo(20, 1, "codex"),            # in the tree
        30: ProcessInfo(30, 1, "gemini"),           # outside the root
        40: ProcessInfo(40, 1, "claude"),           # hidden directory
        50: ProcessInfo(50, 1, "python app.py"),    # not an agent
    }
    cwds = {20: "/repo/sub", 30: "/elsewhere", 40: "/repo/.cache/x", 11: "/repo", 10: "/repo"}

    async def fake_list() -> dict[int, ProcessInfo]:
        return table

    async def fake_cwd(pid: int) -> str | None:
        return cwds.get(pid)

    discovery = ProcessDiscovery(NAMES, own_pid=99999)
    with patch("gridbridge.adapters.process_discovery.list_processes", fake_list), \
         patch("gridbridge.adapters.process_discovery.process_cwd", fake_cwd):
        found = await discovery.scan("/repo", exclude_pids={10})
    assert [(p.pid, p.provider, p.working_directory) for p in found] == [
        (20, ProviderId.CODEX, "/repo/sub"),
    ]


@pytest.mark.asyncio
async def test_scan_skips_roots_deeper_than_limit() -> None:
    discovery = ProcessDiscovery(NAMES, max_depth=2, own_pid=1)
    assert await discovery.scan("/a/b/c/d") == []
