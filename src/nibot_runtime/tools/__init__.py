"""Tool System（协议 + 解析器 + 注册表 + 内置工具）。"""

from __future__ import annotations

from nibot_runtime.tools.parser import extract_exec_calls, iter_exec_calls
from nibot_runtime.tools.protocol import ExecCall, ToolResult, ToolSpec

__all__ = [
    "protocol",
    "parser",
    "registry",
    "dispatcher",
    "ExecCall",
    "ToolResult",
    "ToolSpec",
    "extract_exec_calls",
    "iter_exec_calls",
]
