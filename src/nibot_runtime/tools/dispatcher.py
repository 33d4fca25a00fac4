"""
ToolDispatcher：一批调用的顺序执行（策略 → 审批 → handler）。

每个调用的状态机（括号内为终态）：
`received` → 策略检查（denied: policy）→ 需要时审批（denied: user）→ handler（ok / failed）。

约定：
- 同一批次内严格按解析顺序逐个执行；结果列表与调用列表按下标对齐；
- 单个调用失败不会中断批次；
- `settings.approvals.auto_approve`（`NIBOT_AUTO_APPROVE=true`）时跳过审批；
  未提供 ApprovalGate 时调用直接放行（没有审批通道的前端）。
"""

from __future__ import annotations

import logging
from typing import List, Optional, Sequence

from nibot_runtime.core.audit import AuditLog
from nibot_runtime.core.errors import ErrorKind
from nibot_runtime.core.redaction import redact_secrets
from nibot_runtime.core.utils import first_line, normalize_newlines, preview_args
from nibot_runtime.safety.approvals import ApprovalGate
from nibot_runtime.tools.builtin import register_builtin_tools
from nibot_runtime.tools.parser import extract_exec_calls
from nibot_runtime.tools.protocol import ExecCall, ToolResult
from nibot_runtime.tools.registry import ExecContext, ToolRegistry

logger = logging.getLogger(__name__)

FEEDBACK_OUTPUT_MAX_BYTES = 2000
FEEDBACK_HINT = "If you need to call tools again, output [EXEC:tool {json_args}] only."


def default_registry() -> ToolRegistry:
    """新建一个注册了全部内置工具的注册表。"""

    registry = ToolRegistry()
    register_builtin_tools(registry)
    return registry


def _run_one(
    ctx: ExecContext,
    call: ExecCall,
    approver: Optional[ApprovalGate],
    audit: Optional[AuditLog],
    registry: ToolRegistry,
) -> ToolResult:
    """单个调用的门禁与派发。"""

    if not ctx.policy.allows_tool(call.tool):
        logger.debug("tool denied by policy: %s", call.tool)
        return ToolResult.failure(call.tool, "disabled by policy", error_kind=ErrorKind.POLICY_DENIED)

    if ctx.policy.requires_approval(call.tool) and approver is not None and not ctx.settings.approvals.auto_approve:
        approved = bool(approver.approve(call))
        logger.debug(
            "approval %s: %s %s",
            "allow" if approved else "deny",
            call.tool,
            redact_secrets(preview_args(call.args_raw)),
        )
        if audit is not None:
            audit.record_approval(call, approved)
        if not approved:
            return ToolResult.failure(call.tool, "denied by user", error_kind=ErrorKind.APPROVAL_DENIED)

    return registry.dispatch(call, ctx)


def execute_calls(
    ctx: ExecContext,
    calls: Sequence[ExecCall],
    approver: Optional[ApprovalGate] = None,
    *,
    audit: Optional[AuditLog] = None,
    registry: Optional[ToolRegistry] = None,
) -> List[ToolResult]:
    """
    顺序执行一批调用。

    参数：
    - ctx：执行上下文
    - calls：解析出的调用（按出现顺序）
    - approver：审批门；None 表示不审批
    - audit：审计日志（可选）；批次结束后写入每条结果
    - registry：工具注册表；缺省为内置工具全集

    返回：
    - 与 calls 等长、按下标对齐的 `ToolResult` 列表
    """

    reg = registry or default_registry()
    results = [_run_one(ctx, call, approver, audit, reg) for call in calls]
    if audit is not None and calls:
        audit.record_results(calls, results)
    return results


def parse_and_execute(
    ctx: ExecContext,
    text: str,
    approver: Optional[ApprovalGate] = None,
    *,
    audit: Optional[AuditLog] = None,
    registry: Optional[ToolRegistry] = None,
) -> List[ToolResult]:
    """解析模型文本中的全部调用并执行。"""

    return execute_calls(ctx, extract_exec_calls(text), approver, audit=audit, registry=registry)


def _truncate_utf8(text: str, max_bytes: int) -> str:
    """按 UTF-8 字节截断（丢弃残缺的多字节字符）。"""

    raw = text.encode("utf-8")
    if len(raw) <= max_bytes:
        return text
    return raw[:max_bytes].decode("utf-8", errors="ignore") + "\n[TRUNCATED]"


def format_tool_results(results: Sequence[ToolResult]) -> str:
    """
    渲染回注给模型的 `TOOL_RESULTS:` 文本块。

    规则：
    - error 单行化（换行转义为 `\\n`）；
    - output 去首尾空白，超过 2000 字节截断并追加 `\\n[TRUNCATED]`，逐行缩进在 `output: |` 之下；
    - 末尾附一行再次调用的提示。
    """

    lines = ["TOOL_RESULTS:"]
    for r in results:
        lines.append(f"- tool: {r.tool}")
        lines.append(f"  ok: {'true' if r.ok else 'false'}")
        if r.error:
            lines.append("  error: " + r.error.replace("\n", "\\n"))
        if r.output:
            out = _truncate_utf8(normalize_newlines(r.output).strip(), FEEDBACK_OUTPUT_MAX_BYTES)
            lines.append("  output: |")
            lines.extend("    " + line for line in out.split("\n"))
        lines.append("")
    lines.append(FEEDBACK_HINT)
    return "\n".join(lines) + "\n"


def format_tool_results_meta(results: Sequence[ToolResult]) -> str:
    """
    渲染低详细度的 `TOOL_RESULTS_META:` 文本块（用于日志）。

    说明：
    - error 脱敏后逐行缩进；output 只记录字节数与首行预览（脱敏）。
    """

    lines = ["TOOL_RESULTS_META:"]
    for r in results:
        lines.append(f"- tool: {r.tool}")
        lines.append(f"  ok: {'true' if r.ok else 'false'}")
        if r.error.strip():
            lines.append("  error: |")
            for line in normalize_newlines(redact_secrets(r.error)).split("\n"):
                lines.append("    " + line if line else "    ")
        out = r.output.strip()
        lines.append(f"  output_bytes: {len(out.encode('utf-8'))}")
        if out:
            lines.append("  output_preview: |")
            lines.append("    " + redact_secrets(first_line(out)))
    return "\n".join(lines)


__all__ = [
    "default_registry",
    "execute_calls",
    "format_tool_results",
    "format_tool_results_meta",
    "parse_and_execute",
]
