from __future__ import annotations

import io

from nibot_runtime.safety.approvals import (
    ApprovalDecision,
    AutoApproveGate,
    CallbackApprovalGate,
    DenyAllGate,
    PromptApprovalGate,
    SessionApprovalGate,
    compute_approval_key,
    decision_of,
)
from nibot_runtime.safety.rule_approvals import ApprovalRule, RuleBasedApprovalGate
from nibot_runtime.tools.protocol import ExecCall

_WRITE = ExecCall(tool="fs.write", args_raw='{"path":"memory/x.md","content":"hi"}')


def test_simple_gates() -> None:
    assert AutoApproveGate().approve(_WRITE) is True
    assert DenyAllGate().approve(_WRITE) is False
    assert CallbackApprovalGate(lambda c: c.tool == "fs.write").approve(_WRITE) is True
    assert decision_of(DenyAllGate(), _WRITE) is ApprovalDecision.DENIED


def test_approval_key_is_semantic_for_json_args() -> None:
    a = compute_approval_key(tool="fs.write", args_raw='{"a":1,"b":2}')
    b = compute_approval_key(tool="fs.write", args_raw='{ "b": 2, "a": 1 }')
    c = compute_approval_key(tool="fs.write", args_raw='{"a":1,"b":3}')

    assert a == b
    assert a != c
    assert compute_approval_key(tool="x", args_raw=" ls ") == compute_approval_key(tool="x", args_raw="ls")


def test_prompt_gate_answers() -> None:
    out = io.StringIO()
    answers = iter(["y", "always", "", "nope"])
    gate = PromptApprovalGate(lambda _prompt: next(answers), output=out)

    assert gate.decide(_WRITE) is ApprovalDecision.APPROVED
    assert gate.decide(_WRITE) is ApprovalDecision.APPROVED_FOR_SESSION
    assert gate.approve(_WRITE) is False
    assert gate.approve(_WRITE) is False
    assert "Approve tool call? tool=fs.write" in out.getvalue()


def test_prompt_gate_eof_denies_and_redacts_prompt() -> None:
    prompts = []

    def _eof(prompt: str) -> str:
        """记录提示后模拟 EOF。"""

        prompts.append(prompt)
        raise EOFError

    gate = PromptApprovalGate(_eof)
    call = ExecCall(tool="runtime.exec", args_raw='{"command":"export OPENAI_API_KEY=sk-verysecretvalue"}')

    assert gate.approve(call) is False
    assert "sk-verysecretvalue" not in prompts[0]


def test_session_gate_caches_always_answers_only() -> None:
    answers = iter(["a", "n", "y", "n"])
    asked = []

    def _input(prompt: str) -> str:
        """记录提问次数。"""

        asked.append(prompt)
        return next(answers)

    gate = SessionApprovalGate(PromptApprovalGate(_input))
    other = ExecCall(tool="fs.write", args_raw='{"path":"memory/y.md"}')

    assert gate.approve(_WRITE) is True
    assert gate.approve(_WRITE) is True
    assert len(asked) == 1
    assert gate.approve(other) is False
    assert gate.approve(other) is True
    gate.clear()
    assert gate.approve(_WRITE) is False
    assert len(asked) == 4


def test_rule_gate_first_match_and_fail_closed() -> None:
    def _boom(_call: ExecCall) -> bool:
        """条件抛异常。"""

        raise RuntimeError("boom")

    gate = RuleBasedApprovalGate(
        [
            ApprovalRule(tool="runtime.exec", condition=_boom, decision=ApprovalDecision.APPROVED),
            ApprovalRule(
                tool="fs.write",
                condition=lambda c: '"memory/' in c.args_raw,
                decision=ApprovalDecision.APPROVED,
            ),
            ApprovalRule(tool="*", decision=ApprovalDecision.DENIED),
        ]
    )

    assert gate.approve(_WRITE) is True
    assert gate.approve(ExecCall(tool="runtime.exec", args_raw="{}")) is False
    assert gate.approve(ExecCall(tool="fs.write", args_raw='{"path":"logs/x"}')) is False
    assert RuleBasedApprovalGate([]).approve(_WRITE) is False
    assert RuleBasedApprovalGate([], default=True).approve(_WRITE) is True
