"""Textual reclassification of shell tool calls.

Providers often surface arbitrary shell invocations with no structured
semantics. These heuristics look at the raw command text and pick a
believable file-effect category. They are approximate by nature and
can misread compound or heavily quoted commands.
"""
from __future__ import annotations

import logging
import os
import re
import shlex
from dataclasses import dataclass

from .models import ToolKind

logger = logging.getLogger(__name__)

_DELETE_PROGRAMS = {"rm", "rmdir", "unlink"}
_SEARCH_PROGRAMS = {"grep", "egrep", "fgrep", "rg", "ag", "ack", "find", "fd", "locate"}
_GLOB_PROGRAMS = {"ls", "tree", "exa", "eza", "dir"}
_SHELL_WRAPPERS = {"bash", "sh", "zsh"}
_PREFIX_PROGRAMS = {"sudo", "env", "command", "nohup", "time"}

_REDIRECT_RE = re.compile(r"(?:^|[\s])>>?\s*([^\s|;&]+)")
_NULL_TARGETS = {"/dev/null", "/dev/stdout", "/dev/stderr"}


@dataclass(frozen=True)
class ShellClassification:
    tool_kind: ToolKind
    file_path: str | None = None


def _split_shell_segments(command: str) -> list[str]:
    """Split a command on ``;``, ``|``, ``||`` and ``&&`` outside quotes."""
    segments: list[str] = []
    current: list[str] = []
    in_single = False
    in_double = False
    escaped = False
    i = 0
    while i < len(command):
        ch = command[i]
        nxt = command[i + 1] if i + 1 < len(command) else ""
        if escaped:
            current.append(ch)
            escaped = False
            i += 1
            continue
        if ch == "\\":
            escaped = True
            current.append(ch)
            i += 1
            continue
        if ch == "'" and not in_double:
            in_single = not in_single
        elif ch == '"' and not in_single:
            in_double = not in_double
        elif not in_single and not in_double:
            if ch == ";" or ch == "|" or (ch == "&" and nxt == "&"):
                seg = "".join(current).strip()
                if seg:
                    segments.append(seg)
                current = []
                i += 2 if ch in {"|", "&"} and nxt == ch else 1
                continue
        current.append(ch)
        i += 1
    seg = "".join(current).strip()
    if seg:
        segments.append(seg)
    return segments


def _tokenize(segment: str) -> list[str]:
    try:
        return shlex.split(segment)
    except ValueError:
        # Unbalanced quotes: fall back to whitespace splitting.
        return segment.split()


def _first_non_flag(tokens: list[str]) -> str | None:
    for token in tokens:
        if token == "--" or token.startswith("-"):
            continue
        return token
    return None


def _last_non_flag(tokens: list[str]) -> str | None:
    for token in reversed(tokens):
        if not token.startswith("-"):
            return token
    return None


def _redirect_target(segment: str) -> str | None:
    match = _REDIRECT_RE.search(segment)
    if not match:
        return None
    target = match.group(1).strip("'\"")
    if not target or target in _NULL_TARGETS or target.startswith("&"):
        return None
    return target


def _classify_segment(segment: str) -> ShellClassification | None:
    tokens = _tokenize(segment)
    while tokens and (tokens[0] in _PREFIX_PROGRAMS or "=" in tokens[0].split("/")[0]):
        # Skip `sudo`, `env FOO=1` and bare assignments in front of the program.
        tokens = tokens[1:]
    if not tokens:
        return None

    prog = os.path.basename(tokens[0])
    args = tokens[1:]

    if prog in _SHELL_WRAPPERS:
        for i, token in enumerate(args):
            if token in {"-c", "-lc"} and i + 1 < len(args):
                return classify_command(args[i + 1])
        return None

    if prog in _DELETE_PROGRAMS:
        return ShellClassification(ToolKind.DELETE, _first_non_flag(args))

    target = _redirect_target(segment)
    if target:
        return ShellClassification(ToolKind.WRITE, target)

    if prog == "sed" and any(t == "-i" or t.startswith("-i") for t in args):
        return ShellClassification(ToolKind.EDIT, _last_non_flag(args))
    if prog == "tee":
        return ShellClassification(ToolKind.WRITE, _last_non_flag(args))

    if prog in _GLOB_PROGRAMS:
        return ShellClassification(ToolKind.GLOB, _first_non_flag(args))
    if prog in _SEARCH_PROGRAMS:
        return ShellClassification(ToolKind.SEARCH)
    return None


def classify_command(command: str) -> ShellClassification | None:
    """Classify a raw shell command, or return None to keep it as Execute.

    Segments are inspected left to right; the first that yields a
    classification wins, except that a file-modifying classification
    in a later segment outranks an earlier read-only one
    (``ls && rm x`` is a delete).
    """
    if not command or not command.strip():
        return None
    best: ShellClassification | None = None
    for segment in _split_shell_segments(command):
        result = _classify_segment(segment)
        if result is None:
            continue
        if result.tool_kind in {ToolKind.DELETE, ToolKind.WRITE, ToolKind.EDIT}:
            return result
        if best is None:
            best = result
    return best


def refine_execute(
    tool_kind: ToolKind, command: str | None, file_path: str | None,
) -> tuple[ToolKind, str | None]:
    """Apply shell heuristics to an Execute event.

    Non-Execute events and unclassifiable commands pass through unchanged.
    An explicit *file_path* from the provider is only replaced when the
    heuristic extracted its own target.
    """
    if tool_kind is not ToolKind.EXECUTE or not command:
        return tool_kind, file_path
    result = classify_command(command)
    if result is None:
        return tool_kind, file_path
    logger.debug("Reclassified shell command as %s: %.80s", result.tool_kind.value, command)
    return result.tool_kind, result.file_path or file_path
