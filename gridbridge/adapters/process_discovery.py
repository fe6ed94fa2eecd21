"""Discovery of agent processes the bridge did not launch.

Relies on external process-table and open-file utilities: ``ps`` for
the table, ``/proc`` (Linux) or ``lsof`` (macOS) for working
directories and open files. Every failure degrades to "nothing found
this cycle"; the next scan simply tries again.
"""
from __future__ import annotations

import asyncio
import logging
import os
import re
import sys
from dataclasses import dataclass
from pathlib import Path

from ..engine.models import ProviderId

logger = logging.getLogger(__name__)

_PROC = Path("/proc")
_INTERPRETERS = {"node", "nodejs", "bun", "deno", "python", "python3"}
_WRAPPER_SHELLS = {"bash", "sh", "zsh"}
# Helper processes that share an agent's binary name but are not agents.
_EXCLUDE_PATTERNS = (
    re.compile(r"\.claude/shell-snapshots/"),
    re.compile(r"(?:^|\s)(?:mcp-server|mcp)(?:\s|$)"),
    re.compile(r"--version\b"),
)


@dataclass(frozen=True)
class ProcessInfo:
    pid: int
    ppid: int
    args: str


@dataclass(frozen=True)
class DiscoveredProcess:
    pid: int
    provider: ProviderId
    working_directory: str | None


async def _run(*argv: str, timeout: float = 5.0) -> str:
    """Run a utility and return stdout; empty string on any failure."""
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
        )
    except OSError as exc:
        logger.debug("Discovery utility %s unavailable: %s", argv[0], exc)
        return ""
    try:
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        logger.debug("Discovery utility %s timed out", argv[0])
        return ""
    return stdout.decode("utf-8", errors="replace")


def parse_ps_output(out: str) -> dict[int, ProcessInfo]:
    """Parse ``ps -eo pid=,ppid=,args=`` output into a table keyed by pid."""
    table: dict[int, ProcessInfo] = {}
    for line in out.splitlines():
        parts = line.strip().split(maxsplit=2)
        if len(parts) < 3:
            continue
        try:
            pid = int(parts[0])
            ppid = int(parts[1])
        except ValueError:
            continue
        table[pid] = ProcessInfo(pid=pid, ppid=ppid, args=parts[2])
    return table


async def list_processes() -> dict[int, ProcessInfo]:
    return parse_ps_output(await _run("ps", "-eo", "pid=,ppid=,args="))


def detect_provider(args: str, names: dict[str, ProviderId]) -> ProviderId | None:
    """Identify the agent CLI a command line belongs to."""
    for pattern in _EXCLUDE_PATTERNS:
        if pattern.search(args):
            return None
    argv = args.split()
    if not argv:
        return None
    first = os.path.basename(argv[0])
    if first in _WRAPPER_SHELLS and len(argv) > 1 and argv[1] in ("-c", "-lc"):
        # The wrapped child shows up as its own process.
        return None
    if first in names:
        return names[first]
    if first in _INTERPRETERS or first.startswith("python"):
        # node /usr/lib/node_modules/@anthropic-ai/claude-code/cli.js
        for arg in argv[1:3]:
            base = os.path.basename(arg)
            if base in names:
                return names[base]
            for part in Path(arg).parts:
                for name, provider in names.items():
                    if part in (name, f"{name}-code", f"{name}-cli"):
                        return provider
    return None


def _read_proc_cwd(pid: int) -> str | None:
    try:
        return os.readlink(_PROC / str(pid) / "cwd")
    except OSError:
        return None


async def process_cwd(pid: int) -> str | None:
    """Best-effort working directory of *pid*."""
    if sys.platform.startswith("linux"):
        return await asyncio.to_thread(_read_proc_cwd, pid)
    out = await _run("lsof", "-a", "-p", str(pid), "-d", "cwd", "-Fn")
    for line in out.splitlines():
        if line.startswith("n"):
            return line[1:]
    return None


def _proc_holders(path: str, pids: list[int]) -> set[int]:
    target = os.path.realpath(path)
    holders: set[int] = set()
    for pid in pids:
        fd_dir = _PROC / str(pid) / "fd"
        try:
            entries = list(fd_dir.iterdir())
        except OSError:
            continue
        for entry in entries:
            try:
                if os.readlink(entry) == target:
                    holders.add(pid)
                    break
            except OSError:
                continue
    return holders


async def open_file_holders(path: str, pids: list[int]) -> set[int]:
    """Subset of *pids* that currently hold *path* open."""
    if not pids:
        return set()
    if sys.platform.startswith("linux") and _PROC.is_dir():
        return await asyncio.to_thread(_proc_holders, path, pids)
    out = await _run("lsof", "-t", "--", path)
    found: set[int] = set()
    for line in out.split():
        try:
            found.add(int(line))
        except ValueError:
            continue
    return found & set(pids)


def _has_hidden_component(path: str) -> bool:
    return any(part.startswith(".") and part not in (".", "..") for part in Path(path).parts)


def _is_under(path: str, root: str) -> bool:
    path = os.path.normpath(path)
    root = os.path.normpath(root)
    return path == root or path.startswith(root.rstrip(os.sep) + os.sep)


class ProcessDiscovery:
    """One scan of the process table, filtered to agents working under a root."""

    def __init__(
        self,
        names: dict[str, ProviderId],
        *,
        max_depth: int = 6,
        own_pid: int | None = None,
    ) -> None:
        self._names = names
        self._max_depth = max_depth
        self._own_pid = own_pid if own_pid is not None else os.getpid()

    def _descends_from(self, info: ProcessInfo, table: dict[int, ProcessInfo], roots: set[int]) -> bool:
        cur: ProcessInfo | None = info
        hops = 0
        while cur is not None and hops < 32:
            if cur.pid in roots:
                return True
            cur = table.get(cur.ppid)
            hops += 1
        return False

    async def scan(self, root: str, exclude_pids: set[int] | None = None) -> list[DiscoveredProcess]:
        """Agent processes whose cwd lies at or below *root*.

        Processes owned by the bridge (and their descendants) are skipped,
        as are processes sitting in hidden directories.
        """
        root = os.path.abspath(root)
        if len(Path(root).parts) - 1 > self._max_depth:
            logger.debug("Skipping discovery: %s is deeper than %d", root, self._max_depth)
            return []
        try:
            table = await list_processes()
        except OSError as exc:
            logger.debug("Process table unavailable: %s", exc)
            return []

        excluded = {self._own_pid} | set(exclude_pids or ())
        found: list[DiscoveredProcess] = []
        for info in table.values():
            provider = detect_provider(info.args, self._names)
            if provider is None:
                continue
            if self._descends_from(info, table, excluded):
                continue
            cwd = await process_cwd(info.pid)
            if cwd is None or not _is_under(cwd, root):
                continue
            if _has_hidden_component(os.path.relpath(cwd, root)):
                continue
            found.append(DiscoveredProcess(pid=info.pid, provider=provider, working_directory=cwd))
        return found
