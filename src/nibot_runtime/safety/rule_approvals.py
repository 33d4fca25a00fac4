"""
规则审批（RuleBasedApprovalGate）。

动机：
- 消息机器人/批处理场景不应“等待人类回答”，而应使用程序化规则做审批决策；
- 默认必须 fail-closed：任何未命中规则的请求一律拒绝；
- condition 抛异常时视为不匹配，避免 fail-open 风险。
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

from nibot_runtime.safety.approvals import ApprovalDecision
from nibot_runtime.tools.protocol import ExecCall

logger = logging.getLogger(__name__)


ApprovalCondition = Callable[[ExecCall], bool]


@dataclass(frozen=True)
class ApprovalRule:
    """
    审批规则（最小集合）。

    字段：
    - tool：工具名（精确匹配；`*` 匹配任意工具）
    - condition：可选谓词；返回 True 表示命中；抛异常视为不命中（fail-closed）
    - decision：命中后的决策
    """

    tool: str
    condition: Optional[ApprovalCondition] = None
    decision: ApprovalDecision = ApprovalDecision.DENIED


class RuleBasedApprovalGate:
    """
    基于规则的程序化审批。

    约束：
    - 按顺序匹配，首个命中即返回；
    - 无规则命中时返回 default（默认拒绝）。
    """

    def __init__(self, rules: Iterable[ApprovalRule], *, default: bool = False) -> None:
        """
        创建规则审批 gate。

        参数：
        - rules：审批规则列表
        - default：未命中规则时是否放行（默认 False，fail-closed）
        """

        self._rules = list(rules or [])
        self._default = ApprovalDecision.APPROVED if default else ApprovalDecision.DENIED

    def decide(self, call: ExecCall) -> ApprovalDecision:
        """根据规则返回决策（不等待人类交互）。"""

        tool = str(call.tool or "").strip()
        for rule in self._rules:
            rt = str(rule.tool or "").strip()
            if rt != "*" and rt != tool:
                continue
            cond = rule.condition
            if cond is None:
                return rule.decision
            try:
                if bool(cond(call)):
                    return rule.decision
            except Exception:
                # fail-closed：条件异常视为不命中
                logger.debug("approval rule condition raised an exception", exc_info=True)
                continue
        return self._default

    def approve(self, call: ExecCall) -> bool:
        """decide 的布尔视图。"""

        return self.decide(call) in (ApprovalDecision.APPROVED, ApprovalDecision.APPROVED_FOR_SESSION)


__all__ = ["ApprovalCondition", "ApprovalRule", "RuleBasedApprovalGate"]
