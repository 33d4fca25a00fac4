"""
内置工具：skill.exec（同义名 skill_exec）。

参数（JSON）：
- skill：skill 目录名
- script：`scripts/` 下的脚本文件名
- args：可选，追加到命令末尾的参数数组
- timeoutSeconds：可选；默认 30s，上限 10 分钟

脚本按 override > local > upstream 分层查找；按扩展名选择解释器：
- POSIX：`.sh` → `sh <abs>`；其它直接执行
- Windows：`.ps1` → powershell -File；`.bat/.cmd` → `cmd /c`；其它直接执行
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from nibot_runtime.core.errors import ErrorKind, ToolError
from nibot_runtime.skills.layers import resolve_layered
from nibot_runtime.tools.args import parse_json_args
from nibot_runtime.tools.builtin._process import clamp_timeout_seconds, run_bounded
from nibot_runtime.tools.protocol import ExecCall, ToolResult, ToolSpec
from nibot_runtime.tools.registry import ExecContext


class _SkillExecArgs(BaseModel):
    """skill.exec 输入参数。"""

    model_config = ConfigDict(extra="ignore")

    skill: str = ""
    script: str = ""
    args: List[str] = Field(default_factory=list)
    timeoutSeconds: Optional[int] = None


SKILL_EXEC_SPEC = ToolSpec(
    name="skill.exec",
    aliases=("skill_exec",),
    description="Run a script shipped by an installed skill.",
    args_hint='{"skill":"...","script":"...","args":[...],"timeoutSeconds":30}',
)


def skill_script_argv(script_path: Path, args: List[str]) -> List[str]:
    """按扩展名构造 argv。"""

    abs_path = str(script_path)
    ext = script_path.suffix.lower()
    if os.name == "nt":
        if ext == ".ps1":
            head = ["powershell", "-NoProfile", "-ExecutionPolicy", "Bypass", "-File", abs_path]
        elif ext in (".bat", ".cmd"):
            head = ["cmd", "/c", abs_path]
        else:
            head = [abs_path]
    elif ext == ".sh":
        head = ["sh", abs_path]
    else:
        head = [abs_path]
    return head + list(args)


def resolve_skill_script(ctx: ExecContext, skill: str, script: str) -> Path:
    """
    分层定位脚本文件。

    异常：
    - `ToolError(not_found)`：三层都不存在
    """

    hit = resolve_layered(ctx.workspace, skill, "scripts", script, want_dir=False)
    if hit is None:
        raise ToolError(f"skill script not found: {skill}/{script}", error_kind=ErrorKind.NOT_FOUND)
    return hit.path


def skill_exec(call: ExecCall, ctx: ExecContext) -> ToolResult:
    """
    执行 skill.exec。

    返回：
    - ok=true：`format_exec_output(stdout, stderr)`

    异常：
    - `ToolError`：功能关闭、参数非法、策略拒绝、脚本不存在、`skill.exec failed: <原因>`
    - `SandboxUnavailableError`：沙箱启用但不可用
    """

    if not ctx.policy.allows_tool(call.tool):
        raise ToolError("disabled by policy", error_kind=ErrorKind.POLICY_DENIED)
    if not ctx.settings.skills.exec_enabled:
        raise ToolError(
            "skill.exec disabled (set NIBOT_ENABLE_SKILLS=1 to enable)", error_kind=ErrorKind.FEATURE_DISABLED
        )

    args = parse_json_args("skill.exec", call.args_raw, _SkillExecArgs, hint=SKILL_EXEC_SPEC.args_hint)
    skill = args.skill.strip()
    script = args.script.strip()
    if not skill or not script:
        raise ToolError("skill.exec requires skill and script", error_kind=ErrorKind.VALIDATION)
    if ".." in skill or ".." in script:
        raise ToolError("invalid skill/script", error_kind=ErrorKind.PATH_VIOLATION)
    if not ctx.policy.allows_skill_exec(skill, script):
        raise ToolError("skill.exec denied by policy", error_kind=ErrorKind.POLICY_DENIED)

    script_path = resolve_skill_script(ctx, skill, script)
    output = run_bounded(
        ctx,
        skill_script_argv(script_path, args.args),
        timeout_seconds=clamp_timeout_seconds(ctx, args.timeoutSeconds),
        failure_message=lambda res: f"skill.exec failed: {res.error or 'process failed'}",
    )
    return ToolResult.success(call.tool, output)
