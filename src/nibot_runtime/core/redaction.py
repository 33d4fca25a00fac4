"""
Redactor：在文本进入审计/错误信息/记忆存储之前，屏蔽常见密钥形态（纯函数）。

覆盖形态：
- `LLM_API_KEY=...` / `api_key=...` 之类的赋值
- JSON 字段 `"api_key": "..."`
- `Authorization: Bearer ...` 与裸 `bearer <token>`
- `nvapi-...` / `sk-...` 前缀 token
- URL 查询参数 `?api_key=` / `&token=` 等

说明：
- 只做模式替换，不做“已知值”替换；替换后仍保留键名，便于排障；
- 空文本原样返回。
"""

from __future__ import annotations

import re
from typing import List, Tuple

_REDACTIONS: List[Tuple["re.Pattern[str]", str]] = [
    (
        re.compile(r"""(?i)\b(LLM_API_KEY|NVIDIA_API_KEY|OPENAI_API_KEY)\b\s*=\s*(".*?"|'.*?'|\S+)"""),
        r'\1="<redacted>"',
    ),
    (re.compile(r"""(?i)\b(api_key)\b\s*=\s*(".*?"|'.*?'|\S+)"""), r'\1="<redacted>"'),
    (
        re.compile(r'(?i)("(?:api[_-]?key|llm_api_key|nvidia_api_key|openai_api_key)"\s*:\s*)"(.*?)"'),
        r'\1"<redacted>"',
    ),
    (re.compile(r"(?i)(authorization:\s*bearer\s+)(\S+)"), r"\1<redacted>"),
    (re.compile(r"(?i)\b(bearer)\s+([A-Za-z0-9._~+/=-]{12,})\b"), r"\1 <redacted>"),
    (re.compile(r"\b(nvapi-[A-Za-z0-9_\-]{8,})\b"), "nvapi-<redacted>"),
    (re.compile(r"\b(sk-[A-Za-z0-9_\-]{8,})\b"), "sk-<redacted>"),
    (re.compile(r"(?i)([?&](?:api_key|apikey|key|token)=)([^&\s]+)"), r"\1<redacted>"),
]

REDACTED = "<redacted>"


def redact_secrets(text: str) -> str:
    """
    按固定规则表依次替换文本中的密钥。

    参数：
    - text：任意文本（命令参数、错误信息、记忆内容）

    返回：
    - 脱敏后的文本
    """

    if not text:
        return text
    out = text
    for pattern, repl in _REDACTIONS:
        out = pattern.sub(repl, out)
    return out


__all__ = ["REDACTED", "redact_secrets"]
