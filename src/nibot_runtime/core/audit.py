"""
AuditLog：人类可读、仅追加的工具审计流。

格式（每批次前写一次标题）：

```
### Audit
- 2026-01-02 15:04:05 approval allow tool=fs.write args="{\"path\":\"memory/x.md\"}"
- 2026-01-02 15:04:05 tool=fs.write ok=true args="..." output_bytes=21 error=""
```

两种详细程度：
- `full`：记录参数预览（脱敏 + 截断到 120 字符）
- `meta`：只记录参数字节数，不记录参数内容

说明：
- 错误只保留（脱敏后的）首行；输出只记录字节数；
- 与 `logging` 分离：它是交给运维查阅的记录，不是调试日志。
"""

from __future__ import annotations

import json
import threading
from datetime import datetime
from pathlib import Path
from typing import IO, Optional, Sequence, Union

from nibot_runtime.core.redaction import redact_secrets
from nibot_runtime.core.utils import first_line, preview_args
from nibot_runtime.tools.protocol import ExecCall, ToolResult

LOG_LEVEL_FULL = "full"
LOG_LEVEL_META = "meta"


def normalize_log_level(value: Optional[str]) -> str:
    """把任意输入归一化为 `full` 或 `meta`（未知值按 `full`）。"""

    v = str(value or "").strip().lower()
    if v in (LOG_LEVEL_FULL, LOG_LEVEL_META):
        return v
    return LOG_LEVEL_FULL


def _quote(text: str) -> str:
    """双引号包裹并转义（审计行内的单行安全表示）。"""

    return json.dumps(text, ensure_ascii=False)


def _bool_text(value: bool) -> str:
    """布尔值的审计表示。"""

    return "true" if value else "false"


def _timestamp() -> str:
    """本地时间戳（秒级）。"""

    return datetime.now().strftime("%Y-%m-%d %H:%M:%S")


class AuditLog:
    """
    审计写入器（线程安全）。

    参数：
    - sink：文本流（例如 `sys.stderr`、`io.StringIO`）或文件路径（以追加模式打开）
    - level：`full` / `meta`
    """

    def __init__(self, sink: Union[IO[str], str, Path], *, level: str = LOG_LEVEL_FULL) -> None:
        """创建审计写入器；路径形态会在首次写入时创建父目录。"""

        self._path: Optional[Path] = None
        self._stream: Optional[IO[str]] = None
        if isinstance(sink, (str, Path)):
            self._path = Path(sink)
        else:
            self._stream = sink
        self._level = normalize_log_level(level)
        self._lock = threading.Lock()

    @property
    def level(self) -> str:
        """当前详细程度。"""

        return self._level

    def header(self) -> str:
        """批次标题。"""

        if self._level == LOG_LEVEL_META:
            return "\n### Audit (meta)\n"
        return "\n### Audit\n"

    def record_approval(self, call: ExecCall, approved: bool) -> None:
        """记录一次审批决定（allow/deny）。"""

        decision = "allow" if approved else "deny"
        args_preview = redact_secrets(preview_args(call.args_raw))
        line = f"- {_timestamp()} approval {decision} tool={call.tool} args={_quote(args_preview)}\n"
        self._write(self.header() + line)

    def record_results(self, calls: Sequence[ExecCall], results: Sequence[ToolResult]) -> None:
        """
        记录一批工具结果（与 calls 按下标对齐；多出的一侧被忽略）。

        参数：
        - calls：本批次的调用
        - results：对应结果
        """

        if not calls or not results:
            return
        ts = _timestamp()
        lines = [self.header()]
        for call, result in zip(calls, results):
            err_preview = ""
            if result.error.strip():
                err_preview = first_line(redact_secrets(result.error))
            out_bytes = len(result.output.strip().encode("utf-8"))
            if self._level == LOG_LEVEL_META:
                args_bytes = len(call.args_raw.strip().encode("utf-8"))
                lines.append(
                    f"- {ts} tool={call.tool} ok={_bool_text(result.ok)} args_bytes={args_bytes} "
                    f"output_bytes={out_bytes} error={_quote(err_preview)}\n"
                )
            else:
                args_preview = redact_secrets(preview_args(call.args_raw))
                lines.append(
                    f"- {ts} tool={call.tool} ok={_bool_text(result.ok)} args={_quote(args_preview)} "
                    f"output_bytes={out_bytes} error={_quote(err_preview)}\n"
                )
        self._write("".join(lines))

    def _write(self, text: str) -> None:
        """追加写入（单次写入一整段，避免批次内交错）。"""

        with self._lock:
            if self._path is not None:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                with self._path.open("a", encoding="utf-8") as f:
                    f.write(text)
            elif self._stream is not None:
                self._stream.write(text)
                self._stream.flush()


__all__ = ["AuditLog", "LOG_LEVEL_FULL", "LOG_LEVEL_META", "normalize_log_level"]
