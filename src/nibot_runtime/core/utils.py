"""共享工具函数（消除跨模块重复）。"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional

_TRUE_WORDS = {"1", "true", "yes", "y", "on"}
_FALSE_WORDS = {"0", "false", "no", "n", "off"}


def now_rfc3339() -> str:
    """返回当前 UTC 时间的 RFC3339 字符串（以 Z 结尾）。"""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_bool(value: Optional[str], default: bool) -> bool:
    """宽松布尔解析：`1/true/yes/y/on` 与 `0/false/no/n/off`；其它返回 default。"""
    v = str(value or "").strip().lower()
    if v in _TRUE_WORDS:
        return True
    if v in _FALSE_WORDS:
        return False
    return default


def split_command_line(text: str) -> List[str]:
    """
    按空白切分命令行（识别双引号；引号内支持反斜杠转义）。

    说明：
    - 只用于“取第一个 token 做前缀匹配”与安全白名单判断，不等价于 POSIX shell 词法；
    - 引号本身不进入 token。
    """

    s = (text or "").strip()
    if not s:
        return []
    out: List[str] = []
    buf: List[str] = []
    in_quotes = False
    escape = False
    for ch in s:
        if escape:
            buf.append(ch)
            escape = False
            continue
        if ch == "\\" and in_quotes:
            escape = True
            continue
        if ch == '"':
            in_quotes = not in_quotes
            continue
        if not in_quotes and ch in (" ", "\t"):
            if buf:
                out.append("".join(buf))
                buf = []
            continue
        buf.append(ch)
    if buf:
        out.append("".join(buf))
    return out


def normalize_newlines(text: str) -> str:
    """把 `\\r\\n` / `\\r` 统一为 `\\n`。"""
    return text.replace("\r\n", "\n").replace("\r", "\n")


def first_line(text: str) -> str:
    """返回首行（已 strip）。"""
    s = normalize_newlines(text)
    idx = s.find("\n")
    if idx >= 0:
        return s[:idx].strip()
    return s.strip()


def preview_args(args_raw: str, *, limit: int = 120) -> str:
    """参数预览：超过 limit 字符时截断并追加 `...`。"""
    s = (args_raw or "").strip()
    if len(s) <= limit:
        return s
    return s[:limit] + "..."


def preview_text(text: str, limit: int = 200) -> str:
    """
    单行预览：折叠所有空白为单个空格，并按 UTF-8 字节数截断。

    说明：截断点落在多字节字符中间时，丢弃残缺字节。
    """
    s = " ".join((text or "").split())
    if not s:
        return ""
    if limit <= 0:
        limit = 200
    raw = s.encode("utf-8")
    if len(raw) <= limit:
        return s
    return raw[:limit].decode("utf-8", errors="ignore") + "..."


def format_duration(seconds: float) -> str:
    """
    把时长格式化为紧凑文本（`500ms`、`30s`、`1m30s`、`1h0m0s`）。

    用于 `timeout after <duration>` 之类面向模型的错误信息。
    """

    if seconds <= 0:
        return "0s"
    if seconds < 1:
        return f"{int(round(seconds * 1000))}ms"
    total_ms = int(round(seconds * 1000))
    hours, rem_ms = divmod(total_ms, 3_600_000)
    minutes, rem_ms = divmod(rem_ms, 60_000)
    secs = rem_ms / 1000.0
    sec_text = f"{secs:.3f}".rstrip("0").rstrip(".") + "s"
    if hours:
        return f"{hours}h{minutes}m{sec_text}"
    if minutes:
        return f"{minutes}m{sec_text}"
    return sec_text
