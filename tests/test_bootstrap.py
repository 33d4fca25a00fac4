from __future__ import annotations

from pathlib import Path

import pytest

from nibot_runtime.bootstrap import (
    build_exec_context,
    discover_overlay_paths,
    effective_env,
    load_dotenv_if_present,
)
from nibot_runtime.core import executor as executor_mod
from nibot_runtime.core.errors import UserError
from nibot_runtime.core.executor import ExecutorPool
from nibot_runtime.sandbox import PrefixSandboxAdapter


def _write(path: Path, text: str) -> Path:
    """写入文本文件（自动创建父目录）。"""

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


def test_dotenv_parses_and_does_not_override(tmp_path: Path) -> None:
    _write(
        tmp_path / ".env",
        "# comment\n\nexport NIBOT_ENABLE_EXEC=1\nNIBOT_LOG_LEVEL='meta'\nKEEP=\"from-file\"\nbroken line\n",
    )

    env_file, extra = load_dotenv_if_present(workspace_root=tmp_path, env={"KEEP": "from-env"})

    assert env_file == tmp_path.resolve() / ".env"
    assert extra == {"NIBOT_ENABLE_EXEC": "1", "NIBOT_LOG_LEVEL": "meta"}


def test_dotenv_override_and_missing(tmp_path: Path) -> None:
    assert load_dotenv_if_present(workspace_root=tmp_path, env={}) == (None, {})

    _write(tmp_path / "conf" / "dev.env", "KEEP=file\n")
    env_file, extra = load_dotenv_if_present(
        workspace_root=tmp_path,
        override=True,
        env={"NIBOT_ENV_FILE": "conf/dev.env", "KEEP": "env"},
    )
    assert env_file == (tmp_path / "conf" / "dev.env").resolve()
    assert extra == {"KEEP": "file"}


def test_explicit_env_file_must_exist(tmp_path: Path) -> None:
    with pytest.raises(UserError) as ei:
        load_dotenv_if_present(workspace_root=tmp_path, env={"NIBOT_ENV_FILE": "nope.env"})

    assert ei.value.code == "CONFIG_INVALID"


def test_discover_overlay_paths_order_and_dedup(tmp_path: Path) -> None:
    default = _write(tmp_path / "config" / "runtime.yaml", "{}\n")
    extra = tmp_path / "extra.yaml"

    paths = discover_overlay_paths(
        workspace_root=tmp_path,
        env={"NIBOT_CONFIG_PATHS": f"extra.yaml; config/runtime.yaml , {extra}"},
    )

    assert paths == [default.resolve(), extra.resolve()]
    assert discover_overlay_paths(workspace_root=tmp_path / "empty", env={}) == []


def test_effective_env_merges_dotenv(tmp_path: Path) -> None:
    _write(tmp_path / ".env", "A=1\nB=2\n")

    assert effective_env(workspace_root=tmp_path, env={"B": "x"}) == {"A": "1", "B": "x"}
    assert effective_env(workspace_root=tmp_path, env={"B": "x"}, use_dotenv=False) == {"B": "x"}


def test_build_exec_context_layers_everything(tmp_path: Path, monkeypatch) -> None:  # type: ignore[no-untyped-def]
    monkeypatch.setattr(executor_mod, "_default_pool", None)
    _write(tmp_path / ".env", "NIBOT_EXEC_SANDBOX=1\nNIBOT_SANDBOX_BIN=/opt/sandbox/bin\n")
    _write(tmp_path / "config" / "runtime.yaml", "exec:\n  max_concurrent: 3\n")
    cli_overlay = _write(tmp_path / "cli.yaml", "skills:\n  exec_enabled: true\n")
    _write(tmp_path / "data" / "policy.toml", "[policy]\nallow_runtime_exec = false\n")

    ctx = build_exec_context(
        tmp_path,
        env={"NIBOT_POLICY_ALLOW_FS_WRITE": "no"},
        config_paths=[cli_overlay],
    )

    assert ctx.workspace == tmp_path.resolve()
    assert ctx.settings.exec.max_concurrent == 3
    assert ctx.settings.skills.exec_enabled is True
    assert ctx.pool is not None and ctx.pool.capacity == 3
    assert build_exec_context(tmp_path, env={}, use_dotenv=False).pool is ctx.pool
    assert isinstance(ctx.sandbox, PrefixSandboxAdapter)
    assert ctx.policy.allow_runtime_exec is False
    assert ctx.policy.allow_fs_write is False


def test_build_exec_context_defaults_without_files(tmp_path: Path) -> None:
    pool = ExecutorPool(1)

    ctx = build_exec_context(tmp_path, env={}, pool=pool, use_dotenv=False)

    assert ctx.pool is pool
    assert ctx.sandbox is None
    assert ctx.settings.exec.enabled is False
    assert ctx.policy.allow_fs_write is True
