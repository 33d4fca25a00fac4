"""
内置工具：fs.read（同义名 file_read）。

参数：
- JSON `{"path": "..."}`，或裸路径文本

行为：
- 路径经 PathResolver 限制在 workspace 内；
- 最多读取 256 KiB，超出时截断并追加 `\\n\\n[TRUNCATED]`。
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict

from nibot_runtime.core.errors import ErrorKind, ToolError
from nibot_runtime.core.paths import normalize_workspace_rel_path
from nibot_runtime.tools.args import is_json_object_text, parse_json_args
from nibot_runtime.tools.protocol import ExecCall, ToolResult, ToolSpec
from nibot_runtime.tools.registry import ExecContext

FS_READ_MAX_BYTES = 256 * 1024
FS_READ_TRUNCATED_MARKER = "\n\n[TRUNCATED]"


class _FsReadArgs(BaseModel):
    """fs.read 输入参数。"""

    model_config = ConfigDict(extra="ignore")

    path: str = ""


FS_READ_SPEC = ToolSpec(
    name="fs.read",
    aliases=("file_read",),
    description="Read a workspace file (first 256 KiB).",
    args_hint='{"path":"memory/notes.md"}',
)


def fs_read(call: ExecCall, ctx: ExecContext) -> ToolResult:
    """
    执行 fs.read。

    返回：
    - ok=true：文件文本（UTF-8，非法字节替换；可能截断）

    异常：
    - `ToolError(validation)`：缺少 path / JSON 非法
    - `UserError(PATH_VIOLATION)`：路径越界
    - `FileNotFoundError` 等 OSError：由注册表归一化
    """

    if is_json_object_text(call.args_raw):
        path = parse_json_args("fs.read", call.args_raw, _FsReadArgs, hint=FS_READ_SPEC.args_hint).path
    else:
        path = call.args_raw.strip()

    path = normalize_workspace_rel_path(path)
    if not path:
        raise ToolError("fs.read requires path", error_kind=ErrorKind.VALIDATION)

    abs_path = ctx.resolve_path(path)
    with abs_path.open("rb") as f:
        data = f.read(FS_READ_MAX_BYTES + 1)
    if len(data) > FS_READ_MAX_BYTES:
        text = data[:FS_READ_MAX_BYTES].decode("utf-8", errors="replace")
        return ToolResult.success(call.tool, text + FS_READ_TRUNCATED_MARKER)
    return ToolResult.success(call.tool, data.decode("utf-8", errors="replace"))
