from __future__ import annotations

import pytest

from gridbridge.engine.models import ToolKind
from gridbridge.engine.providers.tool_names import (
    bare_tool_name,
    kind_from_acp,
    kind_from_title,
    normalize_tool_name,
)


@pytest.mark.parametrize("raw,kind", [
    ("Read", ToolKind.READ),
    ("read_file", ToolKind.READ),
    ("ReadFile", ToolKind.READ),
    ("Write", ToolKind.WRITE),
    ("write_file", ToolKind.WRITE),
    ("MultiEdit", ToolKind.EDIT),
    ("apply_patch", ToolKind.EDIT),
    ("Bash", ToolKind.EXECUTE),
    ("run_shell_command", ToolKind.EXECUTE),
    ("shell", ToolKind.EXECUTE),
    ("Grep", ToolKind.SEARCH),
    ("Glob", ToolKind.GLOB),
    ("list_directory", ToolKind.GLOB),
    ("Task", ToolKind.SPAWN_SUBTASK),
    ("WebFetch", ToolKind.FETCH),
    ("AskUserQuestion", ToolKind.ASK),
    ("mcp__fs__read_file", ToolKind.READ),
    ("SomethingNew", ToolKind.UNKNOWN),
    ("", ToolKind.UNKNOWN),
    (None, ToolKind.UNKNOWN),
])
def test_normalize_tool_name(raw, kind: ToolKind) -> None:
    assert normalize_tool_name(raw) is kind


def test_bare_tool_name() -> None:
    assert bare_tool_name("mcp__github__create_issue") == "create_issue"
    assert bare_tool_name("mcp__odd") == "mcp__odd"
    assert bare_tool_name("Read") == "Read"


def test_acp_kinds() -> None:
    assert kind_from_acp("edit", "Editing x") is ToolKind.EDIT
    assert kind_from_acp("move") is ToolKind.EDIT
    assert kind_from_acp("execute", "npm test") is ToolKind.EXECUTE
    # "other" falls back to the title.
    assert kind_from_acp("other", "Write src/app.py") is ToolKind.WRITE
    assert kind_from_acp(None, None) is ToolKind.UNKNOWN


def test_kind_from_title_keywords() -> None:
    assert kind_from_title("Remove temporary files") is ToolKind.DELETE
    assert kind_from_title("Searching for usages") is ToolKind.SEARCH
    assert kind_from_title("") is ToolKind.UNKNOWN
