"""
Executor（有界子进程执行器）与 ExecutorPool（进程并发槽位）。

本模块提供：
- `CappedBuffer`：只保留前 N 字节的输出缓冲；写满后丢弃但仍报告“全部写入”，子进程不会因管道写满而阻塞
- `ExecutorPool`：计数信号量；`with pool.slot():` 获取槽位，返回时无条件释放
- `default_executor_pool(...)`：进程级共享池（懒构造一次）
- `Executor.run_command(...)`：执行 argv，施加墙钟超时（进程组 SIGTERM → SIGKILL）、输出上限与可选取消
- `format_exec_output(...)`：把 stdout/stderr 拼成回注给模型的文本

说明：
- 本类不做命令白名单/危险性判断（该职责属于 safety/policy 层）；
- 槽位获取本身没有超时：这是刻意的背压点，槽位总会被释放。
"""

from __future__ import annotations

import contextlib
import logging
import os
import signal
import subprocess
import threading
import time
from pathlib import Path
from typing import Callable, Iterator, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field

from nibot_runtime.core.errors import ErrorKind
from nibot_runtime.core.utils import format_duration

logger = logging.getLogger(__name__)

TRUNCATED_MARKER = "\n[TRUNCATED]"
DEFAULT_MAX_OUTPUT_BYTES = 256 * 1024
MIN_MAX_OUTPUT_BYTES = 1024
MAX_MAX_OUTPUT_BYTES = 8 * 1024 * 1024
DEFAULT_MAX_CONCURRENT = 2
MAX_MAX_CONCURRENT = 32


class CommandResult(BaseModel):
    """
    命令执行结果（结构化）。

    字段说明：
    - ok：exit_code==0 且未超时/未取消
    - exit_code：进程退出码；超时/取消/启动失败时为 None
    - stdout/stderr：捕获到的输出（已按上限截断，截断时带 `[TRUNCATED]` 标记）
    - duration_ms：耗时（毫秒）
    - timeout：是否因超时被终止
    - truncated：stdout/stderr 是否发生截断（任一发生即 true）
    - error_kind：失败分类（timeout/process_failure/cancelled/validation）
    - error：失败原因短句（`timeout after 30s`、`exit status 2` 等）
    """

    model_config = ConfigDict(extra="forbid")

    ok: bool
    exit_code: Optional[int] = None
    stdout: str = ""
    stderr: str = ""
    duration_ms: int = Field(default=0, ge=0)
    timeout: bool = False
    truncated: bool = False
    error_kind: Optional[ErrorKind] = None
    error: str = ""


class CappedBuffer:
    """保留头部的有界字节缓冲（线程安全）。"""

    def __init__(self, max_bytes: int) -> None:
        """
        创建缓冲区。

        参数：
        - `max_bytes`：允许保留的最大字节数；<=0 时按 1024 处理
        """

        self._max_bytes = max_bytes if max_bytes > 0 else MIN_MAX_OUTPUT_BYTES
        self._buf = bytearray()
        self._lock = threading.Lock()
        self.truncated = False

    def write(self, chunk: bytes) -> int:
        """追加字节；超出上限的部分被丢弃。总是返回 len(chunk)。"""

        if not chunk:
            return 0
        with self._lock:
            remaining = self._max_bytes - len(self._buf)
            if remaining <= 0:
                self.truncated = True
            elif len(chunk) <= remaining:
                self._buf.extend(chunk)
            else:
                self._buf.extend(chunk[:remaining])
                self.truncated = True
        return len(chunk)

    def get_bytes(self) -> bytes:
        """获取已保留的字节。"""

        with self._lock:
            return bytes(self._buf)

    def text(self) -> str:
        """解码为 UTF-8 文本；截断时追加 `\\n[TRUNCATED]`。"""

        s = self.get_bytes().decode("utf-8", errors="replace")
        if self.truncated:
            return s + TRUNCATED_MARKER
        return s


class ExecutorPool:
    """
    进程并发槽位（计数信号量）。

    说明：
    - 进程内通常只有一个：`default_executor_pool()` 懒构造，经 `ExecContext` 传递给每个执行类 handler；
    - 容量在构造时固定，之后不可修改。
    """

    def __init__(self, max_concurrent: int = DEFAULT_MAX_CONCURRENT) -> None:
        """创建槽位池；容量被限制在 [1, 32]。"""

        cap = int(max_concurrent)
        if cap <= 0:
            cap = DEFAULT_MAX_CONCURRENT
        cap = min(cap, MAX_MAX_CONCURRENT)
        self._capacity = cap
        self._sem = threading.BoundedSemaphore(cap)
        self._lock = threading.Lock()
        self._in_use = 0

    @property
    def capacity(self) -> int:
        """槽位总数。"""

        return self._capacity

    @property
    def in_use(self) -> int:
        """当前被占用的槽位数。"""

        with self._lock:
            return self._in_use

    @contextlib.contextmanager
    def slot(self) -> Iterator[None]:
        """阻塞直到拿到一个槽位；退出上下文时无条件释放。"""

        self._sem.acquire()
        with self._lock:
            self._in_use += 1
        try:
            yield
        finally:
            with self._lock:
                self._in_use -= 1
            self._sem.release()


_default_pool: Optional[ExecutorPool] = None
_default_pool_lock = threading.Lock()


def default_executor_pool(
    env: Optional[Mapping[str, str]] = None, *, max_concurrent: Optional[int] = None
) -> ExecutorPool:
    """
    返回进程级共享槽位池（懒构造一次，之后容量不再变化）。

    参数：
    - env：首次构造且未给出 max_concurrent 时，从 `NIBOT_EXEC_MAX_CONCURRENT` 读取容量
    - max_concurrent：首次构造时使用的容量（通常来自 `settings.exec.max_concurrent`）

    说明：
    - 只有第一次调用的参数生效；之后的调用返回同一个池，参数被忽略；
    - 未显式传入 pool 的 `ExecContext` 都共享这个池，因此多个会话合计也不会超过容量；
    - 测试与嵌入场景可自行构造 `ExecutorPool` 并传入 `ExecContext`。
    """

    global _default_pool
    with _default_pool_lock:
        if _default_pool is None:
            if max_concurrent is None:
                from nibot_runtime.config.loader import exec_max_concurrent_from_env

                max_concurrent = exec_max_concurrent_from_env(env)
            _default_pool = ExecutorPool(max_concurrent)
            logger.debug("process executor pool created: capacity=%d", _default_pool.capacity)
        return _default_pool


def format_exec_output(stdout: str, stderr: str) -> str:
    """
    拼接回注文本。

    规则：
    - 都为空：`(no output)`
    - 只有 stdout：原样
    - 只有 stderr：`STDERR:\\n...`
    - 都有：`STDOUT:\\n...\\n\\nSTDERR:\\n...`
    """

    if not stdout and not stderr:
        return "(no output)"
    if not stderr:
        return stdout
    if not stdout:
        return "STDERR:\n" + stderr
    return "STDOUT:\n" + stdout + "\n\nSTDERR:\n" + stderr


class Executor:
    """
    有界子进程执行器。

    参数：
    - max_output_bytes：stdout/stderr 各自的保留上限（头部保留）
    - terminate_grace_ms：超时后 SIGTERM→SIGKILL 的宽限时间（毫秒）
    """

    def __init__(self, *, max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES, terminate_grace_ms: int = 200) -> None:
        """创建执行器并配置输出上限与终止策略。"""

        if terminate_grace_ms < 0:
            raise ValueError("terminate_grace_ms must be >= 0")
        self._max_output_bytes = max_output_bytes
        self._terminate_grace_ms = terminate_grace_ms

    @property
    def max_output_bytes(self) -> int:
        """单流输出上限。"""

        return self._max_output_bytes

    def run_command(
        self,
        argv: list[str],
        *,
        cwd: Path,
        timeout_ms: int = 30_000,
        env: Optional[Mapping[str, str]] = None,
        pool: Optional[ExecutorPool] = None,
        cancel_checker: Optional[Callable[[], bool]] = None,
    ) -> CommandResult:
        """
        执行 argv 命令并捕获结果。

        参数：
        - argv：命令与参数（至少 1 项）
        - cwd：工作目录（必须存在且为目录）
        - timeout_ms：墙钟超时毫秒数
        - env：追加/覆盖的环境变量
        - pool：并发槽位池；为 None 时不限流
        - cancel_checker：可选；返回 True 时终止子进程并标记 cancelled

        返回：
        - `CommandResult`
        """

        if not argv:
            return CommandResult(ok=False, error="empty command argv", error_kind=ErrorKind.VALIDATION)
        cwd_path = Path(cwd)
        if not cwd_path.is_dir():
            return CommandResult(ok=False, error=f"cwd is not a directory: {cwd_path}", error_kind=ErrorKind.VALIDATION)
        if timeout_ms < 1:
            return CommandResult(ok=False, error="timeout_ms must be >= 1", error_kind=ErrorKind.VALIDATION)

        if pool is None:
            return self._run(argv, cwd_path, timeout_ms, env, cancel_checker)
        with pool.slot():
            logger.debug("exec slot acquired (%d/%d in use)", pool.in_use, pool.capacity)
            return self._run(argv, cwd_path, timeout_ms, env, cancel_checker)

    def _run(
        self,
        argv: list[str],
        cwd: Path,
        timeout_ms: int,
        env: Optional[Mapping[str, str]],
        cancel_checker: Optional[Callable[[], bool]],
    ) -> CommandResult:
        """实际执行（调用方已持有槽位）。"""

        start = time.monotonic()
        merged_env = dict(os.environ)
        if env:
            merged_env.update({str(k): str(v) for k, v in env.items()})

        stdout_buf = CappedBuffer(self._max_output_bytes)
        stderr_buf = CappedBuffer(self._max_output_bytes)

        popen_kwargs: dict = {
            "cwd": str(cwd),
            "env": merged_env,
            "stdin": subprocess.DEVNULL,
            "stdout": subprocess.PIPE,
            "stderr": subprocess.PIPE,
        }
        # 让超时 kill 更可靠：子进程成为新的进程组 leader。
        if os.name != "nt":
            popen_kwargs["start_new_session"] = True
        else:
            popen_kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP  # type: ignore[attr-defined]

        try:
            proc = subprocess.Popen(argv, **popen_kwargs)  # noqa: S603
        except OSError as e:
            return CommandResult(
                ok=False,
                error=str(e),
                error_kind=ErrorKind.PROCESS_FAILURE,
                duration_ms=int((time.monotonic() - start) * 1000),
            )

        t_out = threading.Thread(target=_drain_stream, args=(proc.stdout, stdout_buf), daemon=True)
        t_err = threading.Thread(target=_drain_stream, args=(proc.stderr, stderr_buf), daemon=True)
        t_out.start()
        t_err.start()

        timed_out = False
        cancelled = False
        deadline = start + timeout_ms / 1000.0
        try:
            while True:
                if cancel_checker is not None and cancel_checker():
                    cancelled = True
                    self._terminate_process(proc)
                    break
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    timed_out = True
                    self._terminate_process(proc)
                    break
                try:
                    proc.wait(timeout=min(0.05, remaining))
                    break
                except subprocess.TimeoutExpired:
                    continue
        finally:
            # 回收：无论何种结局都等待进程退出并排空管道
            proc.wait()
            t_out.join(timeout=1.0)
            t_err.join(timeout=1.0)
            for stream in (proc.stdout, proc.stderr):
                if stream is not None:
                    stream.close()

        duration_ms = int((time.monotonic() - start) * 1000)
        truncated = stdout_buf.truncated or stderr_buf.truncated
        common = {
            "stdout": stdout_buf.text(),
            "stderr": stderr_buf.text(),
            "duration_ms": duration_ms,
            "truncated": truncated,
        }
        if cancelled:
            return CommandResult(ok=False, error="cancelled", error_kind=ErrorKind.CANCELLED, **common)
        if timed_out:
            logger.debug("process timed out after %dms: %s", timeout_ms, argv[0])
            return CommandResult(
                ok=False,
                timeout=True,
                error=f"timeout after {format_duration(timeout_ms / 1000.0)}",
                error_kind=ErrorKind.TIMEOUT,
                **common,
            )

        exit_code = proc.returncode
        if exit_code == 0:
            return CommandResult(ok=True, exit_code=0, **common)
        if exit_code is not None and exit_code < 0:
            error = f"signal: {signal.Signals(-exit_code).name}" if -exit_code in _SIGNAL_NUMBERS else f"exit status {exit_code}"
        else:
            error = f"exit status {exit_code}"
        return CommandResult(ok=False, exit_code=exit_code, error=error, error_kind=ErrorKind.PROCESS_FAILURE, **common)

    def _terminate_process(self, proc: subprocess.Popen) -> None:
        """
        终止子进程：SIGTERM → (grace) → SIGKILL。

        注意：
        - POSIX 下终止整个进程组（`start_new_session=True`）；
        - 进程已退出时的 `ProcessLookupError` 视为终止成功。
        """

        if os.name == "nt":
            with contextlib.suppress(OSError):
                proc.terminate()
            try:
                proc.wait(timeout=self._terminate_grace_ms / 1000.0)
                return
            except subprocess.TimeoutExpired:
                pass
            with contextlib.suppress(OSError):
                proc.kill()
            return

        try:
            os.killpg(proc.pid, signal.SIGTERM)
        except ProcessLookupError:
            return
        except PermissionError:
            proc.terminate()

        try:
            proc.wait(timeout=self._terminate_grace_ms / 1000.0)
            return
        except subprocess.TimeoutExpired:
            pass

        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            return
        except PermissionError:
            proc.kill()


_SIGNAL_NUMBERS = {int(s) for s in signal.Signals}


def _drain_stream(stream: Optional[object], buf: CappedBuffer) -> None:
    """持续读取子进程 stdout/stderr 并写入缓冲（后台线程）。"""

    if stream is None:
        return
    while True:
        try:
            chunk = stream.read(4096)  # type: ignore[attr-defined]
        except (OSError, ValueError):
            # 管道已被关闭：读线程退出
            return
        if not chunk:
            return
        buf.write(chunk)
