"""
Bootstrap（启动/配置发现/一次性构造 ExecContext）。

设计目标：
- 核心模块无隐式 I/O：handler、dispatcher 不读 `.env`，也不自动发现 overlays；
- CLI 与其它前端通过本模块一次性得到 `ExecContext`：
  `.env` → 有效 env → YAML overlays → RuntimeSettings → ToolPolicy → ExecutorPool / 沙箱 adapter。
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Callable, Dict, Iterable, Mapping, Optional, Tuple

from nibot_runtime.config.loader import RuntimeSettings, load_runtime_settings
from nibot_runtime.core.errors import UserError
from nibot_runtime.core.executor import Executor, ExecutorPool, default_executor_pool
from nibot_runtime.safety.policy import load_tool_policy
from nibot_runtime.sandbox import build_sandbox_adapter
from nibot_runtime.tools.registry import ExecContext

logger = logging.getLogger(__name__)

ENV_FILE_VAR = "NIBOT_ENV_FILE"
CONFIG_PATHS_VAR = "NIBOT_CONFIG_PATHS"


def _get_env_nonempty(key: str, *, env: Optional[Mapping[str, str]] = None) -> Optional[str]:
    """读取 env 并返回非空白字符串（否则视为未设置）。"""

    v = (os.environ if env is None else env).get(key)
    if v is None:
        return None
    s = str(v).strip()
    return s or None


def _split_paths(raw: str) -> list[str]:
    """将逗号/分号分隔的路径串切分为片段列表（保序，去空项）。"""

    parts: list[str] = []
    for chunk in raw.replace(";", ",").split(","):
        s = chunk.strip()
        if s:
            parts.append(s)
    return parts


def _parse_env_text(text: str) -> Dict[str, str]:
    """解析 `.env` 风格文本为键值字典。

    支持的最小语法：
    - 忽略空行与 `#` 注释行
    - 可选前缀 `export `
    - `KEY=VALUE`，并去掉 VALUE 两侧的单/双引号
    """

    out: Dict[str, str] = {}
    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("export "):
            line = line[len("export ") :].strip()
        if "=" not in line:
            continue
        k, v = line.split("=", 1)
        k = k.strip()
        v = v.strip()
        if not k:
            continue
        if len(v) >= 2 and ((v.startswith('"') and v.endswith('"')) or (v.startswith("'") and v.endswith("'"))):
            v = v[1:-1]
        out[k] = v
    return out


def _load_dotenv(*, path: Path, override: bool, base_env: Mapping[str, str]) -> Dict[str, str]:
    """读取 `.env` 并返回“应注入”的映射（override=False 时不覆盖 base_env 中已有的键）。"""

    if not path.exists():
        return {}
    data = _parse_env_text(path.read_text(encoding="utf-8"))
    if not override:
        data = {k: v for k, v in data.items() if k not in base_env}
    return data


def load_dotenv_if_present(
    *,
    workspace_root: Path,
    override: bool = False,
    env: Optional[Mapping[str, str]] = None,
) -> Tuple[Optional[Path], Dict[str, str]]:
    """
    约定发现并解析 `.env`：
    1) 若设置 `NIBOT_ENV_FILE`，加载其指向的文件（相对路径相对 workspace_root）
    2) 否则若 `<workspace_root>/.env` 存在，加载之

    参数：
    - workspace_root：工作区根目录
    - override：是否覆盖已存在的 env（默认 False）
    - env：基准 env（默认 `os.environ`）

    返回：
    - (env_file_path_or_none, env_vars_to_inject)

    说明：
    - 本函数不修改 `os.environ`；调用方决定是否注入。

    异常：
    - `UserError(CONFIG_INVALID)`：显式指定的 env 文件不存在
    """

    base = os.environ if env is None else env
    ws = Path(workspace_root).resolve()
    p = _get_env_nonempty(ENV_FILE_VAR, env=base)
    if p:
        env_path = Path(p).expanduser()
        if not env_path.is_absolute():
            env_path = (ws / env_path).resolve()
        if not env_path.exists():
            raise UserError(f"env file not found: {env_path}", code="CONFIG_INVALID")
        return env_path, _load_dotenv(path=env_path, override=override, base_env=base)

    default_env = ws / ".env"
    if default_env.exists():
        return default_env, _load_dotenv(path=default_env, override=override, base_env=base)
    return None, {}


def discover_overlay_paths(*, workspace_root: Path, env: Optional[Mapping[str, str]] = None) -> list[Path]:
    """
    overlay 路径发现规则（顺序稳定）：
    1) 默认 overlay：`<workspace_root>/config/runtime.yaml`（存在时）
    2) `NIBOT_CONFIG_PATHS`（逗号/分号分隔；相对路径相对 workspace_root）
    """

    ws = Path(workspace_root).resolve()
    overlays: list[Path] = []
    default_overlay = ws / "config" / "runtime.yaml"
    if default_overlay.exists():
        overlays.append(default_overlay)

    for p in _split_paths(_get_env_nonempty(CONFIG_PATHS_VAR, env=env) or ""):
        pp = Path(p).expanduser()
        overlays.append(pp.resolve() if pp.is_absolute() else (ws / pp).resolve())

    # 去重（按 canonical path；保序）
    seen: set[Path] = set()
    uniq: list[Path] = []
    for p in overlays:
        if p in seen:
            continue
        seen.add(p)
        uniq.append(p)
    return uniq


def effective_env(
    *, workspace_root: Path, env: Optional[Mapping[str, str]] = None, use_dotenv: bool = True
) -> Dict[str, str]:
    """基准 env 叠加 `.env`（不覆盖已有键）。"""

    merged: Dict[str, str] = dict(os.environ if env is None else env)
    if use_dotenv:
        env_file, extra = load_dotenv_if_present(workspace_root=workspace_root, env=merged)
        if env_file is not None:
            logger.debug("loaded %d keys from %s", len(extra), env_file)
        merged.update(extra)
    return merged


def build_exec_context(
    workspace_root: Path,
    *,
    env: Optional[Mapping[str, str]] = None,
    config_paths: Iterable[Path] = (),
    pool: Optional[ExecutorPool] = None,
    cancel_checker: Optional[Callable[[], bool]] = None,
    use_dotenv: bool = True,
) -> ExecContext:
    """
    一次性构造 `ExecContext`。

    参数：
    - workspace_root：工作区根目录
    - env：基准 env（默认 `os.environ`）
    - config_paths：额外 YAML overlays（排在自动发现的 overlays 之后）
    - pool：进程槽位池；缺省为进程级共享池（首次构造时按 `settings.exec.max_concurrent` 定容量）
    - cancel_checker：可选取消检查
    - use_dotenv：是否加载 `.env`

    返回：
    - `ExecContext`

    异常：
    - `UserError(CONFIG_INVALID)`：配置文件缺失/非法
    """

    ws = Path(workspace_root).resolve()
    merged_env = effective_env(workspace_root=ws, env=env, use_dotenv=use_dotenv)
    overlays = discover_overlay_paths(workspace_root=ws, env=merged_env) + [Path(p) for p in config_paths]
    settings: RuntimeSettings = load_runtime_settings(overlays, env=merged_env)
    policy = load_tool_policy(ws, env=merged_env)
    return ExecContext(
        workspace=ws,
        policy=policy,
        settings=settings,
        pool=pool or default_executor_pool(max_concurrent=settings.exec.max_concurrent),
        executor=Executor(max_output_bytes=settings.exec.max_output_bytes),
        sandbox=build_sandbox_adapter(settings),
        cancel_checker=cancel_checker,
    )


__all__ = [
    "build_exec_context",
    "discover_overlay_paths",
    "effective_env",
    "load_dotenv_if_present",
]
