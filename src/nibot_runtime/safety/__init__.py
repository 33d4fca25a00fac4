"""
Safety（ToolPolicy + ApprovalGate）模块。
"""

from __future__ import annotations

from nibot_runtime.safety.approvals import (
    ApprovalDecision,
    ApprovalGate,
    AutoApproveGate,
    CallbackApprovalGate,
    DenyAllGate,
    PromptApprovalGate,
    SessionApprovalGate,
    compute_approval_key,
)
from nibot_runtime.safety.policy import ToolPolicy, default_tool_policy, load_tool_policy, resolve_tool_policy
from nibot_runtime.safety.rule_approvals import ApprovalRule, RuleBasedApprovalGate

__all__ = [
    "ApprovalDecision",
    "ApprovalGate",
    "ApprovalRule",
    "AutoApproveGate",
    "CallbackApprovalGate",
    "DenyAllGate",
    "PromptApprovalGate",
    "RuleBasedApprovalGate",
    "SessionApprovalGate",
    "ToolPolicy",
    "compute_approval_key",
    "default_tool_policy",
    "load_tool_policy",
    "resolve_tool_policy",
]
