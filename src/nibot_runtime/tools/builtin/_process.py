"""runtime.exec / skill.exec 共享的子进程执行与输出拼装。"""

from __future__ import annotations

import logging
from typing import Callable, List, Optional

from nibot_runtime.core.errors import ErrorKind, ToolError
from nibot_runtime.core.executor import CommandResult, format_exec_output
from nibot_runtime.tools.registry import ExecContext

logger = logging.getLogger(__name__)


def clamp_timeout_seconds(ctx: ExecContext, requested: Optional[int]) -> int:
    """非正数取默认值（30s），上限 10 分钟（均可由 settings.exec 调整）。"""

    section = ctx.settings.exec
    t = int(requested or 0)
    if t <= 0:
        t = section.default_timeout_seconds
    return min(t, section.max_timeout_seconds)


def run_bounded(
    ctx: ExecContext,
    argv: List[str],
    *,
    timeout_seconds: int,
    failure_message: Callable[[CommandResult], str],
) -> str:
    """
    执行 argv 并返回回注文本。

    参数：
    - argv：命令（未经沙箱包装）
    - timeout_seconds：墙钟超时
    - failure_message：由失败结果生成 ToolResult.error 文本

    返回：
    - 成功时的 `format_exec_output(stdout, stderr)`

    异常：
    - `SandboxUnavailableError`：沙箱启用但不可用
    - `ToolError`：超时/非零退出/取消；output 中带已捕获的部分输出与失败原因
    """

    res = ctx.run_argv(argv, timeout_ms=timeout_seconds * 1000)
    out = res.stdout.strip()
    err = res.stderr.strip()
    if res.ok:
        return format_exec_output(out, err)

    reason = res.error or "process failed"
    err = f"{err}\n{reason}" if err else reason
    logger.debug("process failed (%s): %s", res.error_kind, reason)
    raise ToolError(
        failure_message(res),
        error_kind=res.error_kind or ErrorKind.PROCESS_FAILURE,
        output=format_exec_output(out, err),
    )
