"""
命令安全检测（Guard）。

本模块提供两类纯函数：
- `is_safe_git_url`：只接受 `https://` 且不含空白/控制字符的 URL
- `is_safe_runtime_command_when_exec_disabled`：exec 总开关关闭时仍允许的只读命令白名单

白名单（命令行中出现任何 shell 元字符 `;&|` + "`$><" + 换行一律拒绝）：
- `ls [flags] [relative paths]`：非 flag 参数不得为绝对路径、含 `..` 或以 `~` 开头
- `dir [args]`：所有参数同上（flag 也检查）
- `git clone <https-url> skills/<dest>`：恰好 4 个 token；dest 不得为绝对路径、含 `..` 或以 `~` 开头

说明：该白名单在“exec 关闭”时不经过沙箱执行；与“沙箱启用但不可用时直接失败”是两种刻意不同的处理方式。
"""

from __future__ import annotations

from typing import Sequence

from nibot_runtime.core.paths import is_absolute_path
from nibot_runtime.core.utils import split_command_line

_SHELL_META = frozenset(";&|`$><\n\r")
_URL_FORBIDDEN = frozenset(" \t\r\n")


def contains_shell_meta(command: str) -> bool:
    """是否包含 shell 元字符。"""

    return any(ch in _SHELL_META for ch in command)


def is_safe_git_url(url: str) -> bool:
    """`https://` 前缀（大小写不敏感），且不含空白/回车/换行。"""

    u = (url or "").strip()
    if not u.lower().startswith("https://"):
        return False
    return not any(ch in _URL_FORBIDDEN for ch in u)


def _is_unsafe_path_arg(arg: str) -> bool:
    """绝对路径、含 `..`、以 `~` 开头的参数视为不安全。"""

    return is_absolute_path(arg) or ".." in arg or arg.startswith("~")


def _ls_args_safe(args: Sequence[str], *, check_flags: bool) -> bool:
    """检查 ls/dir 的参数。"""

    for raw in args:
        a = raw.strip()
        if not a:
            continue
        if not check_flags and a.startswith("-"):
            continue
        if _is_unsafe_path_arg(a):
            return False
    return True


def is_safe_runtime_command_when_exec_disabled(command: str) -> bool:
    """
    判断命令是否属于“exec 关闭时仍允许”的只读白名单。

    参数：
    - command：模型给出的命令行文本

    返回：
    - True 表示允许
    """

    cmd = (command or "").strip()
    if not cmd or contains_shell_meta(cmd):
        return False
    tokens = split_command_line(cmd)
    if not tokens:
        return False
    first = tokens[0].strip().lower()

    if first == "ls":
        return _ls_args_safe(tokens[1:], check_flags=False)
    if first == "dir":
        return _ls_args_safe(tokens[1:], check_flags=True)
    if first == "git":
        if len(tokens) != 4 or tokens[1].strip().lower() != "clone":
            return False
        url = tokens[2].strip()
        dest = tokens[3].strip()
        if not is_safe_git_url(url):
            return False
        if not dest or _is_unsafe_path_arg(dest):
            return False
        return dest.replace("\\", "/").lower().startswith("skills/")
    return False


__all__ = ["contains_shell_meta", "is_safe_git_url", "is_safe_runtime_command_when_exec_disabled"]
