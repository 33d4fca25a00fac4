from __future__ import annotations

import io
from pathlib import Path

import pytest

from nibot_runtime.core.audit import AuditLog, normalize_log_level
from nibot_runtime.core.errors import ErrorKind
from nibot_runtime.core.redaction import redact_secrets
from nibot_runtime.tools.protocol import ExecCall, ToolResult


@pytest.mark.parametrize(
    "text,leaked",
    [
        ("LLM_API_KEY=abc123secret", "abc123secret"),
        ("openai_api_key = 'quoted secret'", "quoted secret"),
        ('{"api_key": "json-secret-value"}', "json-secret-value"),
        ("Authorization: Bearer tok.en.value", "tok.en.value"),
        ("use bearer abcdefghijklmnop please", "abcdefghijklmnop"),
        ("key nvapi-ABCDEFGH1234 here", "nvapi-ABCDEFGH1234"),
        ("key sk-ABCDEFGH1234 here", "sk-ABCDEFGH1234"),
        ("https://x.test/a?token=zzz&x=1", "zzz"),
    ],
)
def test_redact_secrets_masks_known_shapes(text: str, leaked: str) -> None:
    out = redact_secrets(text)

    assert leaked not in out
    assert "<redacted>" in out


def test_redact_secrets_keeps_plain_text() -> None:
    assert redact_secrets("") == ""
    assert redact_secrets("nothing secret here") == "nothing secret here"


def test_normalize_log_level() -> None:
    assert normalize_log_level("META") == "meta"
    assert normalize_log_level(None) == "full"
    assert normalize_log_level("verbose") == "full"


def test_audit_full_records_redacted_args_and_first_error_line() -> None:
    buf = io.StringIO()
    audit = AuditLog(buf)
    calls = [
        ExecCall(tool="runtime.exec", args_raw='{"command":"curl -H \'Authorization: Bearer secrettoken123\'"}'),
        ExecCall(tool="fs.read", args_raw='{"path":"a"}'),
    ]
    results = [
        ToolResult.failure("runtime.exec", "runtime.exec failed\ndetails", error_kind=ErrorKind.PROCESS_FAILURE),
        ToolResult.success("fs.read", "  hello  "),
    ]

    audit.record_results(calls, results)
    text = buf.getvalue()

    assert text.startswith("\n### Audit\n")
    assert "secrettoken123" not in text
    assert 'tool=runtime.exec ok=false' in text
    assert 'error="runtime.exec failed"' in text
    assert "details" not in text
    assert 'tool=fs.read ok=true args="{\\"path\\":\\"a\\"}" output_bytes=5 error=""' in text


def test_audit_meta_omits_args() -> None:
    buf = io.StringIO()
    audit = AuditLog(buf, level="meta")
    audit.record_results([ExecCall(tool="fs.read", args_raw='{"path":"secret.txt"}')], [ToolResult.success("fs.read", "")])
    text = buf.getvalue()

    assert text.startswith("\n### Audit (meta)\n")
    assert "secret.txt" not in text
    assert "args_bytes=21" in text


def test_audit_approval_and_file_sink(tmp_path: Path) -> None:
    path = tmp_path / "logs" / "audit.md"
    audit = AuditLog(path)

    audit.record_approval(ExecCall(tool="fs.write", args_raw='{"path":"memory/x.md"}'), True)
    audit.record_approval(ExecCall(tool="fs.write", args_raw="{}"), False)
    audit.record_results([], [])

    text = path.read_text(encoding="utf-8")
    assert "approval allow tool=fs.write" in text
    assert "approval deny tool=fs.write" in text
    assert text.count("### Audit") == 2
