"""
内置工具：fs.write（同义名 file_write）。

参数（JSON）：
- path：workspace 相对路径
- content：写入内容（上限 512 KiB）
- mode：`append`（默认）/ `overwrite`

门禁（按顺序）：
- 受保护文件（facts.md / reflections.md / agent.md）禁止 overwrite，不受策略影响；
- 路径必须位于受信目录（memory/、skills/、logs/、workspace/、data/）之下；
- 路径必须满足策略的写路径白名单。

append 模式：目标文件非空且新内容不以换行开头时，先补一个 `\\n` 分隔。
"""

from __future__ import annotations

import posixpath

from pydantic import BaseModel, ConfigDict

from nibot_runtime.core.errors import ErrorKind, ToolError
from nibot_runtime.core.paths import normalize_workspace_rel_path
from nibot_runtime.tools.args import parse_json_args
from nibot_runtime.tools.protocol import ExecCall, ToolResult, ToolSpec
from nibot_runtime.tools.registry import ExecContext

FS_WRITE_MAX_CONTENT_BYTES = 512 * 1024
PROTECTED_FILENAMES = frozenset({"facts.md", "reflections.md", "agent.md"})
TRUSTED_WRITE_DIRS = ("memory/", "skills/", "logs/", "workspace/", "data/")


class _FsWriteArgs(BaseModel):
    """fs.write 输入参数。"""

    model_config = ConfigDict(extra="ignore")

    path: str = ""
    content: str = ""
    mode: str = ""


FS_WRITE_SPEC = ToolSpec(
    name="fs.write",
    aliases=("file_write",),
    description="Append to or overwrite a file under memory/, skills/ or logs/.",
    args_hint='{"path":"...","content":"...","mode":"append|overwrite"}',
)


def is_trusted_write_path(path: str) -> bool:
    """路径是否位于受信目录之下（大小写敏感的前缀匹配）。"""

    p = (path or "").strip().replace("\\", "/")
    if not p:
        return False
    return any(p.startswith(d) for d in TRUSTED_WRITE_DIRS)


def fs_write(call: ExecCall, ctx: ExecContext) -> ToolResult:
    """
    执行 fs.write。

    返回：
    - ok=true：`overwrote N bytes to P` / `appended N bytes to P`
    """

    if not ctx.policy.allows_tool(call.tool):
        raise ToolError("disabled by policy", error_kind=ErrorKind.POLICY_DENIED)

    args = parse_json_args("fs.write", call.args_raw, _FsWriteArgs, hint=FS_WRITE_SPEC.args_hint)
    path = normalize_workspace_rel_path(args.path)
    if not path:
        raise ToolError("fs.write requires path", error_kind=ErrorKind.VALIDATION)
    content = args.content
    raw = content.encode("utf-8")
    if len(raw) > FS_WRITE_MAX_CONTENT_BYTES:
        raise ToolError("fs.write content too large", error_kind=ErrorKind.RESOURCE_LIMIT)

    mode = args.mode.strip().lower() or "append"
    if mode not in ("append", "overwrite"):
        raise ToolError(f"fs.write invalid mode: {mode}", error_kind=ErrorKind.VALIDATION)
    if mode == "overwrite":
        base = posixpath.basename(path.replace("\\", "/")).lower()
        if base in PROTECTED_FILENAMES:
            raise ToolError(
                f"fs.write overwrite denied for protected file: {path}", error_kind=ErrorKind.POLICY_DENIED
            )

    if not is_trusted_write_path(path):
        raise ToolError("fs.write denied for path (allowed: memory/, skills/, logs/)", error_kind=ErrorKind.POLICY_DENIED)
    if not ctx.policy.allows_write_path(path):
        raise ToolError("fs.write denied by policy", error_kind=ErrorKind.POLICY_DENIED)

    abs_path = ctx.resolve_path(path)
    abs_path.parent.mkdir(parents=True, exist_ok=True)
    if mode == "overwrite":
        abs_path.write_bytes(raw)
        return ToolResult.success(call.tool, f"overwrote {len(raw)} bytes to {path}")

    prefix = b""
    if abs_path.is_file() and abs_path.stat().st_size > 0 and not content.startswith("\n"):
        prefix = b"\n"
    with abs_path.open("ab") as f:
        f.write(prefix + raw)
    return ToolResult.success(call.tool, f"appended {len(prefix) + len(raw)} bytes to {path}")
