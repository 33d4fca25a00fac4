"""
ApprovalGate（人工审批）协议与常用实现。

协议：
- `approve(call) -> bool`：对一次需要审批的调用给出“放行/拒绝”
- 可选 `decide(call) -> ApprovalDecision`：给出更细的决策（例如“本会话内一直放行”）

实现：
- `AutoApproveGate` / `DenyAllGate`：批处理与测试用
- `CallbackApprovalGate(fn)`：包装任意 `fn(call) -> bool`（消息机器人等前端）
- `SessionApprovalGate(inner)`：缓存“本会话放行”的决策（按 approval_key）
- `PromptApprovalGate(input_fn, output)`：交互式终端（y/yes 放行，a/always 本会话放行，其余拒绝）

说明：
- 本模块不直接读 stdin：终端交互由调用方注入 `input_fn`；
- 展示给人类的参数预览必须先脱敏。
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
from enum import Enum
from typing import IO, Any, Callable, Dict, Optional, Protocol, Set, runtime_checkable

from nibot_runtime.core.redaction import redact_secrets
from nibot_runtime.core.utils import preview_args
from nibot_runtime.tools.protocol import ExecCall

logger = logging.getLogger(__name__)


class ApprovalDecision(str, Enum):
    """审批决策枚举（最小集合）。"""

    APPROVED = "approved"
    APPROVED_FOR_SESSION = "approved_for_session"
    DENIED = "denied"


_APPROVING = (ApprovalDecision.APPROVED, ApprovalDecision.APPROVED_FOR_SESSION)


@runtime_checkable
class ApprovalGate(Protocol):
    """审批适配层（纯接口；不依赖终端）。"""

    def approve(self, call: ExecCall) -> bool:
        """返回 True 表示放行该调用。"""

        ...


def decision_of(gate: ApprovalGate, call: ExecCall) -> ApprovalDecision:
    """
    取得 gate 对调用的细粒度决策。

    说明：gate 实现了 `decide` 时使用它；否则把 `approve` 的布尔值映射为 APPROVED/DENIED。
    """

    decide = getattr(gate, "decide", None)
    if callable(decide):
        return ApprovalDecision(decide(call))
    return ApprovalDecision.APPROVED if gate.approve(call) else ApprovalDecision.DENIED


def _canonical_args(args_raw: str) -> Any:
    """参数的稳定表示：能解析为 JSON 时用解析结果，否则用去空白后的原文。"""

    s = (args_raw or "").strip()
    if s.startswith("{") or s.startswith("["):
        try:
            return json.loads(s)
        except ValueError:
            return s
    return s


def compute_approval_key(*, tool: str, args_raw: str) -> str:
    """
    计算 approval_key（canonical JSON sha256）。

    参数：
    - tool：工具名
    - args_raw：原始参数文本（JSON 参数按语义比较，键顺序/空白不影响结果）
    """

    canonical: Dict[str, Any] = {"tool": tool, "request": _canonical_args(args_raw)}
    raw = json.dumps(canonical, ensure_ascii=False, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class AutoApproveGate:
    """总是放行。"""

    def approve(self, call: ExecCall) -> bool:
        """放行。"""

        return True


class DenyAllGate:
    """总是拒绝（无人值守时的保守默认）。"""

    def approve(self, call: ExecCall) -> bool:
        """拒绝。"""

        return False


class CallbackApprovalGate:
    """把任意 `fn(call) -> bool` 包装为 gate。"""

    def __init__(self, fn: Callable[[ExecCall], bool]) -> None:
        """
        参数：
        - fn：审批回调；返回真值表示放行
        """

        self._fn = fn

    def approve(self, call: ExecCall) -> bool:
        """调用回调并取布尔值。"""

        return bool(self._fn(call))


class SessionApprovalGate:
    """
    会话级审批缓存。

    规则：
    - 同一 (tool, args) 曾被 inner 决策为 APPROVED_FOR_SESSION 时，后续直接放行；
    - 其它决策不缓存（拒绝与单次放行都会再次询问）。
    """

    def __init__(self, inner: ApprovalGate) -> None:
        """包装 inner gate。"""

        self._inner = inner
        self._approved: Set[str] = set()
        self._lock = threading.Lock()

    def decide(self, call: ExecCall) -> ApprovalDecision:
        """先查缓存，再询问 inner。"""

        key = compute_approval_key(tool=call.tool, args_raw=call.args_raw)
        with self._lock:
            if key in self._approved:
                logger.debug("approval cached for session: tool=%s", call.tool)
                return ApprovalDecision.APPROVED_FOR_SESSION
        decision = decision_of(self._inner, call)
        if decision is ApprovalDecision.APPROVED_FOR_SESSION:
            with self._lock:
                self._approved.add(key)
        return decision

    def approve(self, call: ExecCall) -> bool:
        """decide 的布尔视图。"""

        return self.decide(call) in _APPROVING

    def clear(self) -> None:
        """清空会话缓存。"""

        with self._lock:
            self._approved.clear()


class PromptApprovalGate:
    """
    交互式终端审批。

    参数：
    - input_fn：读取一行回答（例如内置 `input`）
    - output：提示输出流；为 None 时提示文本交给 input_fn 作为 prompt
    """

    def __init__(self, input_fn: Callable[[str], str], output: Optional[IO[str]] = None) -> None:
        """创建交互式 gate。"""

        self._input_fn = input_fn
        self._output = output

    def prompt_text(self, call: ExecCall) -> str:
        """生成提示文本（参数已脱敏并截断）。"""

        args = redact_secrets(preview_args(call.args_raw))
        return f"Approve tool call? tool={call.tool} args={args}\n[y]es / [a]lways / [N]o: "

    def decide(self, call: ExecCall) -> ApprovalDecision:
        """读取回答：y/yes 放行，a/always 本会话放行，其余（含 EOF）拒绝。"""

        text = self.prompt_text(call)
        if self._output is not None:
            self._output.write(text)
            self._output.flush()
            text = ""
        try:
            answer = self._input_fn(text)
        except EOFError:
            return ApprovalDecision.DENIED
        a = str(answer or "").strip().lower()
        if a in ("y", "yes"):
            return ApprovalDecision.APPROVED
        if a in ("a", "always"):
            return ApprovalDecision.APPROVED_FOR_SESSION
        return ApprovalDecision.DENIED

    def approve(self, call: ExecCall) -> bool:
        """decide 的布尔视图。"""

        return self.decide(call) in _APPROVING


__all__ = [
    "ApprovalDecision",
    "ApprovalGate",
    "AutoApproveGate",
    "CallbackApprovalGate",
    "DenyAllGate",
    "PromptApprovalGate",
    "SessionApprovalGate",
    "compute_approval_key",
    "decision_of",
]
