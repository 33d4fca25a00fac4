from __future__ import annotations

import os
import shutil
import sys
import threading
import time
from pathlib import Path

import pytest

from nibot_runtime.core import executor as executor_mod
from nibot_runtime.core.errors import ErrorKind
from nibot_runtime.core.executor import (
    CappedBuffer,
    Executor,
    ExecutorPool,
    default_executor_pool,
    format_exec_output,
)

posix_only = pytest.mark.skipif(os.name == "nt", reason="POSIX shell required")


def _sh(script: str) -> list[str]:
    """`sh -c <script>`。"""

    return [shutil.which("sh") or "/bin/sh", "-c", script]


def test_capped_buffer_reports_full_consumption_and_truncates() -> None:
    buf = CappedBuffer(1024)

    assert buf.write(b"a" * 1000) == 1000
    assert buf.write(b"b" * 100) == 100
    assert buf.write(b"c" * 10) == 10
    assert len(buf.get_bytes()) == 1024
    assert buf.truncated is True
    assert buf.text().endswith("\n[TRUNCATED]")


def test_capped_buffer_exact_fit_is_not_truncated() -> None:
    buf = CappedBuffer(1024)
    buf.write(b"x" * 1024)

    assert buf.truncated is False
    assert buf.text() == "x" * 1024


def test_format_exec_output_variants() -> None:
    assert format_exec_output("", "") == "(no output)"
    assert format_exec_output("out", "") == "out"
    assert format_exec_output("", "err") == "STDERR:\nerr"
    assert format_exec_output("out", "err") == "STDOUT:\nout\n\nSTDERR:\nerr"


def test_executor_rejects_invalid_inputs(tmp_path: Path) -> None:
    ex = Executor()

    assert ex.run_command([], cwd=tmp_path).error == "empty command argv"
    missing = ex.run_command(["true"], cwd=tmp_path / "missing")
    assert missing.ok is False
    assert missing.error_kind == ErrorKind.VALIDATION
    assert ex.run_command(["true"], cwd=tmp_path, timeout_ms=0).error == "timeout_ms must be >= 1"


def test_executor_missing_binary_is_process_failure(tmp_path: Path) -> None:
    res = Executor().run_command(["definitely-not-a-real-binary-xyz"], cwd=tmp_path)

    assert res.ok is False
    assert res.error_kind == ErrorKind.PROCESS_FAILURE
    assert res.exit_code is None


@posix_only
def test_executor_echo_ok(tmp_path: Path) -> None:
    res = Executor().run_command(_sh("echo hi; echo oops 1>&2"), cwd=tmp_path, timeout_ms=5_000)

    assert res.ok is True
    assert res.exit_code == 0
    assert res.stdout.strip() == "hi"
    assert res.stderr.strip() == "oops"


@posix_only
def test_executor_runs_in_cwd(tmp_path: Path) -> None:
    (tmp_path / "marker.txt").write_text("m", encoding="utf-8")
    res = Executor().run_command(_sh("ls"), cwd=tmp_path, timeout_ms=5_000)

    assert "marker.txt" in res.stdout


@posix_only
def test_executor_nonzero_exit(tmp_path: Path) -> None:
    res = Executor().run_command(_sh("echo partial; exit 3"), cwd=tmp_path, timeout_ms=5_000)

    assert res.ok is False
    assert res.exit_code == 3
    assert res.error == "exit status 3"
    assert res.error_kind == ErrorKind.PROCESS_FAILURE
    assert "partial" in res.stdout


@posix_only
def test_executor_timeout_kills_process(tmp_path: Path) -> None:
    start = time.monotonic()
    res = Executor(terminate_grace_ms=50).run_command(_sh("echo started; sleep 5"), cwd=tmp_path, timeout_ms=300)

    assert time.monotonic() - start < 4
    assert res.ok is False
    assert res.timeout is True
    assert res.exit_code is None
    assert res.error == "timeout after 300ms"
    assert res.error_kind == ErrorKind.TIMEOUT


@posix_only
def test_executor_truncates_large_output(tmp_path: Path) -> None:
    script = f"{sys.executable} -c \"print('x' * 5000)\""
    res = Executor(max_output_bytes=1024).run_command(_sh(script), cwd=tmp_path, timeout_ms=10_000)

    assert res.ok is True
    assert res.truncated is True
    assert res.stdout.endswith("\n[TRUNCATED]")
    assert len(res.stdout) == 1024 + len("\n[TRUNCATED]")


@posix_only
def test_executor_cancel_checker(tmp_path: Path) -> None:
    calls = {"n": 0}

    def _cancel() -> bool:
        """第 3 次检查时请求取消。"""

        calls["n"] += 1
        return calls["n"] >= 3

    res = Executor(terminate_grace_ms=50).run_command(
        _sh("sleep 5"), cwd=tmp_path, timeout_ms=10_000, cancel_checker=_cancel
    )

    assert res.ok is False
    assert res.error == "cancelled"
    assert res.error_kind == ErrorKind.CANCELLED


def test_executor_pool_capacity_is_clamped() -> None:
    assert ExecutorPool(0).capacity == 2
    assert ExecutorPool(-5).capacity == 2
    assert ExecutorPool(100).capacity == 32
    assert ExecutorPool(3).capacity == 3


def test_executor_pool_slot_released_on_error() -> None:
    pool = ExecutorPool(1)
    with pytest.raises(RuntimeError):
        with pool.slot():
            assert pool.in_use == 1
            raise RuntimeError("boom")

    assert pool.in_use == 0
    with pool.slot():
        assert pool.in_use == 1


@posix_only
def test_executor_pool_bounds_concurrency(tmp_path: Path) -> None:
    """容量 2：并发 5 个进程时同一时刻最多 2 个在运行。"""

    pool = ExecutorPool(2)
    ex = Executor()
    peak = {"v": 0}
    lock = threading.Lock()
    stop = threading.Event()

    def _sample() -> None:
        """采样当前占用槽位数。"""

        while not stop.is_set():
            with lock:
                peak["v"] = max(peak["v"], pool.in_use)
            time.sleep(0.005)

    sampler = threading.Thread(target=_sample, daemon=True)
    sampler.start()
    workers = [
        threading.Thread(target=ex.run_command, args=(_sh("sleep 0.2"),), kwargs={"cwd": tmp_path, "pool": pool})
        for _ in range(5)
    ]
    for w in workers:
        w.start()
    for w in workers:
        w.join(timeout=10)
    stop.set()
    sampler.join(timeout=1)

    assert peak["v"] == 2
    assert pool.in_use == 0


def test_default_executor_pool_is_built_once(monkeypatch) -> None:  # type: ignore[no-untyped-def]
    monkeypatch.setattr(executor_mod, "_default_pool", None)

    first = default_executor_pool({"NIBOT_EXEC_MAX_CONCURRENT": "5"})
    second = default_executor_pool({"NIBOT_EXEC_MAX_CONCURRENT": "9"})

    assert first is second
    assert first.capacity == 5
