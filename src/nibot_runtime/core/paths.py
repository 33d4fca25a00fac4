"""
PathResolver：把模型给出的相对路径限制在 workspace 根目录之内。

规则（任一命中即拒绝）：
- 含 NUL 字符；
- 归一化后为空；
- 绝对路径（含 Windows 盘符形态）；
- 清洗后为 `.` 或分隔符本身；
- 清洗后仍含 `..` 段；
- 与 workspace 拼接并绝对化后，相对 workspace 的路径以 `..` 开头（符号链接/分隔符边角情况兜底）。

说明：
- 模型常把 workspace 名回显进路径（`workspace/memory/x.md`），因此解析前会反复剥掉前导 `workspace/`；
- 本模块只做词法 + 绝对化校验，不跟随符号链接（与 `Path.resolve()` 语义刻意区分）。
"""

from __future__ import annotations

import os
import posixpath
from pathlib import Path, PureWindowsPath
from typing import Union

from nibot_runtime.core.errors import UserError

_WORKSPACE_PREFIX = "workspace/"


def _path_violation(message: str, *, path: str, reason: str) -> UserError:
    """构造统一的路径越界错误。"""

    return UserError(message, code="PATH_VIOLATION", details={"path": path, "reason": reason})


def is_absolute_path(p: str) -> bool:
    """同时识别 posix 绝对路径与 Windows 盘符/UNC 路径。"""

    if os.path.isabs(p) or p.startswith("/"):
        return True
    win = PureWindowsPath(p)
    return bool(win.drive) or win.is_absolute()


def normalize_workspace_rel_path(path: str) -> str:
    """
    归一化模型提供的相对路径。

    处理：
    - 去掉首尾空白；绝对路径原样返回（交给 resolve 拒绝）；
    - 反斜杠转为 `/`，去掉前导 `/`；
    - 反复剥掉前导 `workspace/`（大小写不敏感）。
    """

    p = (path or "").strip()
    if not p:
        return p
    if is_absolute_path(p):
        return p
    s = p.replace("\\", "/").lstrip("/")
    while s.lower().startswith(_WORKSPACE_PREFIX):
        s = s[len(_WORKSPACE_PREFIX):].lstrip("/")
    return s


def resolve_workspace_path(workspace: Union[str, Path], path: str) -> Path:
    """
    把相对路径解析为 workspace 内的绝对路径。

    参数：
    - workspace：workspace 根目录
    - path：调用方提供的相对路径

    返回：
    - 绝对路径（保证位于 workspace 之内）

    异常：
    - `UserError(code=PATH_VIOLATION)`：路径非法、绝对路径、目录穿越或逃逸 workspace
    """

    raw = path or ""
    if "\x00" in raw:
        raise _path_violation("invalid path", path=raw, reason="nul_byte")
    p = normalize_workspace_rel_path(raw)
    if not p:
        raise _path_violation("empty path", path=raw, reason="empty")
    if is_absolute_path(p):
        raise _path_violation("absolute paths are not allowed", path=raw, reason="absolute")

    clean = posixpath.normpath(p.replace("\\", "/"))
    if clean in (".", "/", ""):
        raise _path_violation("invalid path", path=raw, reason="empty_after_clean")
    if clean == ".." or clean.startswith("../") or "/../" in f"/{clean}/":
        raise _path_violation("path traversal is not allowed", path=raw, reason="dotdot_segment")

    root = Path(os.path.abspath(workspace))
    target = Path(os.path.abspath(os.path.join(str(root), *clean.split("/"))))
    rel = os.path.relpath(str(target), str(root))
    if rel == ".." or rel.startswith(".." + os.sep):
        raise _path_violation("path escapes workspace", path=raw, reason="escapes_workspace")
    return target


def is_within_workspace(workspace: Union[str, Path], target: Union[str, Path]) -> bool:
    """判断 target（绝对化后）是否位于 workspace 之内。"""

    root = os.path.abspath(workspace)
    rel = os.path.relpath(os.path.abspath(target), root)
    return not (rel == ".." or rel.startswith(".." + os.sep) or os.path.isabs(rel))
