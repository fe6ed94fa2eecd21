"""Provider-native tool vocabulary -> canonical ToolKind.

Every provider names its tools differently (``read_file``, ``ReadFile``,
``shell``, ``run_shell_command``...). Canonicalization is a pure table
lookup so the same raw name always maps to the same kind.
"""
from __future__ import annotations

from ..models import ToolKind

# Keys are lower-cased; lookups lower-case the raw name first.
_TOOL_NAME_ALIASES: dict[str, ToolKind] = {
    # Claude Code
    "read": ToolKind.READ,
    "write": ToolKind.WRITE,
    "edit": ToolKind.EDIT,
    "multiedit": ToolKind.EDIT,
    "notebookedit": ToolKind.EDIT,
    "bash": ToolKind.EXECUTE,
    "glob": ToolKind.GLOB,
    "grep": ToolKind.SEARCH,
    "task": ToolKind.SPAWN_SUBTASK,
    "agent": ToolKind.SPAWN_SUBTASK,
    "delete": ToolKind.DELETE,
    "webfetch": ToolKind.FETCH,
    "websearch": ToolKind.FETCH,
    "askuserquestion": ToolKind.ASK,
    "todowrite": ToolKind.UNKNOWN,
    # Gemini CLI
    "read_file": ToolKind.READ,
    "read_many_files": ToolKind.READ,
    "write_file": ToolKind.WRITE,
    "edit_file": ToolKind.EDIT,
    "replace": ToolKind.EDIT,
    "run_shell_command": ToolKind.EXECUTE,
    "search_files": ToolKind.SEARCH,
    "search_file_content": ToolKind.SEARCH,
    "list_directory": ToolKind.GLOB,
    "google_web_search": ToolKind.FETCH,
    "web_fetch": ToolKind.FETCH,
    "readfile": ToolKind.READ,
    "writefile": ToolKind.WRITE,
    "editfile": ToolKind.EDIT,
    "executecommand": ToolKind.EXECUTE,
    "search": ToolKind.SEARCH,
    "listfiles": ToolKind.GLOB,
    "readdirectory": ToolKind.GLOB,
    # Codex CLI
    "patch": ToolKind.EDIT,
    "apply_patch": ToolKind.EDIT,
    "shell": ToolKind.EXECUTE,
    "ls": ToolKind.GLOB,
    "web_search": ToolKind.FETCH,
    # Goose
    "list": ToolKind.GLOB,
    "text_editor": ToolKind.EDIT,
    # Kilocode / OpenCode
    "runcommand": ToolKind.EXECUTE,
    "searchfiles": ToolKind.SEARCH,
    # Aider
    "editor": ToolKind.EDIT,
    "run": ToolKind.EXECUTE,
    # Generic fallbacks
    "file_read": ToolKind.READ,
    "file_write": ToolKind.WRITE,
    "file_edit": ToolKind.EDIT,
    "file_delete": ToolKind.DELETE,
    "delete_file": ToolKind.DELETE,
    "remove": ToolKind.DELETE,
    "execute": ToolKind.EXECUTE,
    "find": ToolKind.SEARCH,
    "fetch": ToolKind.FETCH,
    "spawn_subtask": ToolKind.SPAWN_SUBTASK,
    "ask": ToolKind.ASK,
}

# Structured-protocol tool-call kinds.
_ACP_KIND_MAP: dict[str, ToolKind] = {
    "read": ToolKind.READ,
    "edit": ToolKind.EDIT,
    "delete": ToolKind.DELETE,
    "move": ToolKind.EDIT,
    "search": ToolKind.SEARCH,
    "execute": ToolKind.EXECUTE,
    "fetch": ToolKind.FETCH,
    "think": ToolKind.UNKNOWN,
    "switch_mode": ToolKind.UNKNOWN,
    "other": ToolKind.UNKNOWN,
}

# Ordered keyword heuristics for free-text titles.
_TITLE_KEYWORDS: tuple[tuple[tuple[str, ...], ToolKind], ...] = (
    (("delete", "remove", "rm "), ToolKind.DELETE),
    (("write", "create"), ToolKind.WRITE),
    (("edit", "patch", "replace", "modify"), ToolKind.EDIT),
    (("read", "view", "open"), ToolKind.READ),
    (("grep", "search", "find"), ToolKind.SEARCH),
    (("list", "glob", "ls"), ToolKind.GLOB),
    (("run", "exec", "shell", "command", "bash"), ToolKind.EXECUTE),
    (("fetch", "http", "web"), ToolKind.FETCH),
    (("subagent", "task"), ToolKind.SPAWN_SUBTASK),
)


def bare_tool_name(tool_name: str) -> str:
    """Strip MCP-style ``mcp__server__tool`` prefixes."""
    if tool_name.startswith("mcp__") and tool_name.count("__") >= 2:
        return tool_name.split("__", 2)[2]
    return tool_name


def normalize_tool_name(tool_name: str | None) -> ToolKind:
    """Map a provider-native tool name to its canonical kind."""
    if not tool_name:
        return ToolKind.UNKNOWN
    return _TOOL_NAME_ALIASES.get(bare_tool_name(tool_name).strip().lower(), ToolKind.UNKNOWN)


def kind_from_title(title: str | None) -> ToolKind:
    if not title:
        return ToolKind.UNKNOWN
    direct = normalize_tool_name(title.split()[0] if title.split() else title)
    if direct is not ToolKind.UNKNOWN:
        return direct
    lowered = title.lower()
    for keywords, kind in _TITLE_KEYWORDS:
        if any(k in lowered for k in keywords):
            return kind
    return ToolKind.UNKNOWN


def kind_from_acp(kind: str | None, title: str | None = None) -> ToolKind:
    """Map a structured-protocol tool-call kind, falling back to the title."""
    if kind:
        mapped = _ACP_KIND_MAP.get(kind.lower())
        if mapped is not None and mapped is not ToolKind.UNKNOWN:
            return mapped
        by_name = normalize_tool_name(kind)
        if by_name is not ToolKind.UNKNOWN:
            return by_name
    return kind_from_title(title)
