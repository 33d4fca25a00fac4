"""
内置工具：runtime.exec（同义名 shell_exec）。

参数（JSON）：
- command：命令行文本（交给 `sh -lc`；Windows 为 `powershell -NoProfile -Command`）
- timeoutSeconds：可选；默认 30s，上限 10 分钟

门禁（按顺序）：
- 策略开关（handler 内再次检查，供其它前端直接调用时兜底）；
- exec 总开关关闭时，只允许只读白名单命令（见 `safety.guard`）；
- 策略的命令前缀白名单。
"""

from __future__ import annotations

import os
from typing import List, Optional

from pydantic import BaseModel, ConfigDict

from nibot_runtime.core.errors import ErrorKind, ToolError
from nibot_runtime.safety.guard import is_safe_runtime_command_when_exec_disabled
from nibot_runtime.tools.args import parse_json_args
from nibot_runtime.tools.builtin._process import clamp_timeout_seconds, run_bounded
from nibot_runtime.tools.protocol import ExecCall, ToolResult, ToolSpec
from nibot_runtime.tools.registry import ExecContext


class _RuntimeExecArgs(BaseModel):
    """runtime.exec 输入参数。"""

    model_config = ConfigDict(extra="ignore")

    command: str = ""
    timeoutSeconds: Optional[int] = None


RUNTIME_EXEC_SPEC = ToolSpec(
    name="runtime.exec",
    aliases=("shell_exec",),
    description="Run a shell command in the workspace (bounded by timeout and output caps).",
    args_hint='{"command":"...","timeoutSeconds":10}',
)


def shell_argv(command: str) -> List[str]:
    """平台 shell 的 argv。"""

    if os.name == "nt":
        return ["powershell", "-NoProfile", "-Command", command]
    return ["sh", "-lc", command]


def runtime_exec(call: ExecCall, ctx: ExecContext) -> ToolResult:
    """
    执行 runtime.exec。

    返回：
    - ok=true：`format_exec_output(stdout, stderr)`

    异常：
    - `ToolError`：参数非法、功能关闭、策略拒绝、`runtime.exec failed`（output 为部分输出 + 失败原因）
    - `SandboxUnavailableError`：沙箱启用但不可用
    """

    if not ctx.policy.allows_tool(call.tool):
        raise ToolError("disabled by policy", error_kind=ErrorKind.POLICY_DENIED)

    args = parse_json_args("runtime.exec", call.args_raw, _RuntimeExecArgs, hint=RUNTIME_EXEC_SPEC.args_hint)
    command = args.command
    if not command.strip():
        raise ToolError("runtime.exec requires command", error_kind=ErrorKind.VALIDATION)
    if not ctx.settings.exec.enabled and not is_safe_runtime_command_when_exec_disabled(command):
        raise ToolError(
            "runtime.exec disabled (set NIBOT_ENABLE_EXEC=1 to enable)", error_kind=ErrorKind.FEATURE_DISABLED
        )
    if not ctx.policy.allows_runtime_command(command):
        raise ToolError("runtime.exec command denied by policy", error_kind=ErrorKind.POLICY_DENIED)

    timeout_seconds = clamp_timeout_seconds(ctx, args.timeoutSeconds)
    output = run_bounded(
        ctx,
        shell_argv(command),
        timeout_seconds=timeout_seconds,
        failure_message=lambda _res: "runtime.exec failed",
    )
    return ToolResult.success(call.tool, output)
