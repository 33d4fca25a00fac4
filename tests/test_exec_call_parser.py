from __future__ import annotations

import json

from nibot_runtime.tools.parser import extract_exec_calls, iter_exec_calls
from nibot_runtime.tools.protocol import ExecCall


def test_parser_returns_empty_list_when_no_tags() -> None:
    assert extract_exec_calls("") == []
    assert extract_exec_calls("just chatting, no tools here") == []


def test_parser_extracts_calls_in_order() -> None:
    text = 'first [EXEC:fs.read {"path":"a.txt"}] then [EXEC:memory.stats] done'
    calls = extract_exec_calls(text)

    assert calls == [
        ExecCall(tool="fs.read", args_raw='{"path":"a.txt"}'),
        ExecCall(tool="memory.stats", args_raw=""),
    ]


def test_parser_keeps_bracket_inside_json_string() -> None:
    """字符串内的 `]` 不结束参数。"""

    calls = extract_exec_calls('[EXEC:fs.write {"path":"memory/x.md","content":"a ] b"}]')

    assert len(calls) == 1
    assert "a ] b" in calls[0].args_raw
    assert json.loads(calls[0].args_raw)["content"] == "a ] b"


def test_parser_handles_json_array_arguments() -> None:
    calls = extract_exec_calls('[EXEC:skill.exec {"skill":"weather","script":"run.sh","args":["Beijing"]}] ok')

    assert len(calls) == 1
    assert json.loads(calls[0].args_raw)["args"] == ["Beijing"]


def test_parser_keeps_escaped_quotes_verbatim() -> None:
    """参数原样保留，不反转义。"""

    raw = '{"content":"say \\"hi\\" ]"}'
    calls = extract_exec_calls(f"[EXEC:fs.write {raw}]")

    assert calls[0].args_raw == raw
    assert json.loads(calls[0].args_raw)["content"] == 'say "hi" ]'


def test_parser_bare_string_arguments() -> None:
    calls = extract_exec_calls("[EXEC:runtime.exec   ls -la  ]")

    assert calls == [ExecCall(tool="runtime.exec", args_raw="ls -la")]


def test_parser_discards_empty_tool_name_and_continues() -> None:
    calls = extract_exec_calls('[EXEC: ] [EXEC:fs.read {"path":"b"}]')

    assert [c.tool for c in calls] == ["fs.read"]


def test_parser_stops_at_unclosed_tag() -> None:
    calls = extract_exec_calls('[EXEC:fs.read {"path":"a"}] [EXEC:fs.read {"path":"b"')

    assert [c.args_raw for c in calls] == ['{"path":"a"}']


def test_parser_tool_name_ends_at_newline() -> None:
    calls = extract_exec_calls("[EXEC:memory.list\n{}]")

    assert calls == [ExecCall(tool="memory.list", args_raw="{}")]


def test_iter_exec_calls_is_lazy() -> None:
    it = iter_exec_calls("[EXEC:a] [EXEC:b]")

    assert next(it).tool == "a"
    assert next(it).tool == "b"
