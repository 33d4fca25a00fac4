"""
配置加载器（YAML overlays + 环境变量）。

设计目标：
- 支持加载多个 YAML，并按顺序做深度合并（后者覆盖前者）；
- 环境变量（`NIBOT_*`）先转换为 overlay dict，再用同一套深度合并叠加在最上层；
- 使用 pydantic 做一次性 schema 校验；未知字段拒绝（`extra="forbid"`），拼错的键会立即暴露。

优先级（后者覆盖前者）：
- 内置默认值 < YAML overlay（按顺序） < 环境变量

说明：
- 策略文件（`data/policy.toml`）不走本模块，由 `safety.policy` 解析；
- 数值型环境变量“非正数/无法解析”时视为未设置（回落到默认值），而不是报错。
"""

from __future__ import annotations

import os
from copy import deepcopy
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, MutableMapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, ValidationInfo, field_validator

from nibot_runtime.core.errors import UserError
from nibot_runtime.sandbox import default_sandbox_bin

DEFAULT_EXEC_MAX_OUTPUT_BYTES = 256 * 1024
MIN_EXEC_MAX_OUTPUT_BYTES = 1024
MAX_EXEC_MAX_OUTPUT_BYTES = 8 * 1024 * 1024
DEFAULT_EXEC_MAX_CONCURRENT = 2
MAX_EXEC_MAX_CONCURRENT = 32

DEFAULT_SKILLS_MAX_FILE_BYTES = 5 * 1024 * 1024
DEFAULT_SKILLS_MAX_TOTAL_BYTES = 20 * 1024 * 1024
DEFAULT_SKILLS_MAX_ZIP_BYTES = 50 * 1024 * 1024

INSTALL_LAYERS = ("local", "upstream", "override")


def _deep_merge(base: MutableMapping[str, Any], overlay: Mapping[str, Any]) -> MutableMapping[str, Any]:
    """
    深度合并两个 dict（overlay 覆盖 base）。

    合并规则：
    - dict + dict：递归合并
    - 其它类型：overlay 直接覆盖
    - list：整体覆盖（不做去重/拼接）
    """

    for key, overlay_value in overlay.items():
        if key in base and isinstance(base[key], dict) and isinstance(overlay_value, Mapping):
            _deep_merge(base[key], overlay_value)  # type: ignore[arg-type]
            continue
        base[key] = deepcopy(overlay_value)
    return base


class ExecSettings(BaseModel):
    """runtime.exec / skill.exec 的进程约束。"""

    model_config = ConfigDict(extra="forbid")

    enabled: bool = False
    max_output_bytes: int = DEFAULT_EXEC_MAX_OUTPUT_BYTES
    max_concurrent: int = DEFAULT_EXEC_MAX_CONCURRENT
    default_timeout_seconds: int = Field(default=30, ge=1)
    max_timeout_seconds: int = Field(default=600, ge=1)

    @field_validator("max_output_bytes")
    @classmethod
    def _clamp_output_bytes(cls, v: int) -> int:
        """非正数回落默认值；其余限制在 [1 KiB, 8 MiB]。"""

        if v <= 0:
            return DEFAULT_EXEC_MAX_OUTPUT_BYTES
        return max(MIN_EXEC_MAX_OUTPUT_BYTES, min(v, MAX_EXEC_MAX_OUTPUT_BYTES))

    @field_validator("max_concurrent")
    @classmethod
    def _clamp_concurrent(cls, v: int) -> int:
        """非正数回落默认值；上限 32。"""

        if v <= 0:
            return DEFAULT_EXEC_MAX_CONCURRENT
        return min(v, MAX_EXEC_MAX_CONCURRENT)


class SandboxSettings(BaseModel):
    """外部沙箱可执行文件配置。"""

    model_config = ConfigDict(extra="forbid")

    enabled: bool = False
    binary: str = Field(default_factory=default_sandbox_bin)


class SkillsSettings(BaseModel):
    """Skills 执行/安装开关与安装限额。"""

    model_config = ConfigDict(extra="forbid")

    exec_enabled: bool = False
    git_enabled: bool = False
    max_file_bytes: int = DEFAULT_SKILLS_MAX_FILE_BYTES
    max_total_bytes: int = DEFAULT_SKILLS_MAX_TOTAL_BYTES
    max_zip_bytes: int = DEFAULT_SKILLS_MAX_ZIP_BYTES
    install_layer: Optional[str] = None
    git_clone_timeout_seconds: int = Field(default=180, ge=1)

    @field_validator("max_file_bytes", "max_total_bytes", "max_zip_bytes", mode="before")
    @classmethod
    def _positive_or_default(cls, v: Any, info: ValidationInfo) -> Any:
        """非正数/None 回落到字段默认值。"""

        defaults = {
            "max_file_bytes": DEFAULT_SKILLS_MAX_FILE_BYTES,
            "max_total_bytes": DEFAULT_SKILLS_MAX_TOTAL_BYTES,
            "max_zip_bytes": DEFAULT_SKILLS_MAX_ZIP_BYTES,
        }
        if v is None or (isinstance(v, int) and not isinstance(v, bool) and v <= 0):
            return defaults[info.field_name]
        return v

    @field_validator("install_layer", mode="before")
    @classmethod
    def _normalize_layer(cls, v: Any) -> Optional[str]:
        """空值视为未设置；其它值必须是 local/upstream/override。"""

        if v is None:
            return None
        s = str(v).strip().lower()
        if not s:
            return None
        if s not in INSTALL_LAYERS:
            raise ValueError(f"install_layer must be one of {', '.join(INSTALL_LAYERS)}")
        return s


class ApprovalsSettings(BaseModel):
    """审批配置。"""

    model_config = ConfigDict(extra="forbid")

    auto_approve: bool = False


class MemorySettings(BaseModel):
    """持久化记忆库配置。"""

    model_config = ConfigDict(extra="forbid")

    backend: str = "none"  # none|sqlite
    db_path: str = "data/nibot.db"

    @field_validator("backend", mode="before")
    @classmethod
    def _normalize_backend(cls, v: Any) -> str:
        """大小写不敏感；未知值按 none。"""

        s = str(v or "").strip().lower()
        return "sqlite" if s == "sqlite" else "none"


class AuditSettings(BaseModel):
    """审计详细程度（full|meta）。"""

    model_config = ConfigDict(extra="forbid")

    level: str = "full"

    @field_validator("level", mode="before")
    @classmethod
    def _normalize_level(cls, v: Any) -> str:
        """未知值按 full。"""

        s = str(v or "").strip().lower()
        return s if s in ("full", "meta") else "full"


class RuntimeSettings(BaseModel):
    """运行时配置根对象。"""

    model_config = ConfigDict(extra="forbid", frozen=True)

    exec: ExecSettings = Field(default_factory=ExecSettings)
    sandbox: SandboxSettings = Field(default_factory=SandboxSettings)
    skills: SkillsSettings = Field(default_factory=SkillsSettings)
    approvals: ApprovalsSettings = Field(default_factory=ApprovalsSettings)
    memory: MemorySettings = Field(default_factory=MemorySettings)
    audit: AuditSettings = Field(default_factory=AuditSettings)


def _get_env_nonempty(env: Mapping[str, str], key: str) -> Optional[str]:
    """读取环境变量；空白值返回 None。"""

    raw = env.get(key)
    if raw is None:
        return None
    v = str(raw).strip()
    return v or None


def _env_positive_int(env: Mapping[str, str], key: str) -> Optional[int]:
    """读取正整数环境变量；非正数/无法解析返回 None。"""

    v = _get_env_nonempty(env, key)
    if v is None:
        return None
    try:
        n = int(v)
    except ValueError:
        return None
    return n if n > 0 else None


def exec_max_concurrent_from_env(env: Optional[Mapping[str, str]] = None) -> int:
    """`NIBOT_EXEC_MAX_CONCURRENT`：默认 2，上限 32。"""

    n = _env_positive_int(os.environ if env is None else env, "NIBOT_EXEC_MAX_CONCURRENT")
    if n is None:
        return DEFAULT_EXEC_MAX_CONCURRENT
    return min(n, MAX_EXEC_MAX_CONCURRENT)


def settings_env_overlay(env: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """
    把 `NIBOT_*` 环境变量转换为 overlay dict（只包含“已设置”的键）。

    参数：
    - env：环境变量映射；为 None 时读取 `os.environ`

    返回：
    - 可直接交给 `_deep_merge` 的嵌套 dict
    """

    e: Mapping[str, str] = os.environ if env is None else env
    out: Dict[str, Any] = {}

    def put(section: str, key: str, value: Any) -> None:
        """写入 overlay[section][key]。"""

        out.setdefault(section, {})[key] = value

    if "NIBOT_ENABLE_EXEC" in e:
        put("exec", "enabled", str(e["NIBOT_ENABLE_EXEC"]) == "1")
    n = _env_positive_int(e, "NIBOT_EXEC_MAX_OUTPUT_BYTES")
    if n is not None:
        put("exec", "max_output_bytes", n)
    n = _env_positive_int(e, "NIBOT_EXEC_MAX_CONCURRENT")
    if n is not None:
        put("exec", "max_concurrent", n)

    if "NIBOT_EXEC_SANDBOX" in e:
        put("sandbox", "enabled", str(e["NIBOT_EXEC_SANDBOX"]).strip() == "1")
    v = _get_env_nonempty(e, "NIBOT_SANDBOX_BIN")
    if v is not None:
        put("sandbox", "binary", v)

    if "NIBOT_ENABLE_SKILLS" in e:
        put("skills", "exec_enabled", str(e["NIBOT_ENABLE_SKILLS"]) == "1")
    if "NIBOT_ENABLE_GIT" in e:
        put("skills", "git_enabled", str(e["NIBOT_ENABLE_GIT"]) == "1")
    for env_key, field in (
        ("NIBOT_SKILLS_MAX_FILE_BYTES", "max_file_bytes"),
        ("NIBOT_SKILLS_MAX_TOTAL_BYTES", "max_total_bytes"),
        ("NIBOT_SKILLS_MAX_ZIP_BYTES", "max_zip_bytes"),
    ):
        n = _env_positive_int(e, env_key)
        if n is not None:
            put("skills", field, n)
    v = _get_env_nonempty(e, "NIBOT_SKILLS_INSTALL_LAYER")
    if v is not None and v.lower() in INSTALL_LAYERS:
        put("skills", "install_layer", v.lower())

    if "NIBOT_AUTO_APPROVE" in e:
        put("approvals", "auto_approve", str(e["NIBOT_AUTO_APPROVE"]) == "true")

    storage = str(e.get("NIBOT_STORAGE") or "").strip().lower()
    memory_db = str(e.get("NIBOT_MEMORY_DB") or "").strip().lower()
    if storage == "sqlite" or memory_db == "sqlite":
        put("memory", "backend", "sqlite")

    v = _get_env_nonempty(e, "NIBOT_LOG_LEVEL")
    if v is not None:
        put("audit", "level", v)

    return out


def _load_yaml_file(path: Path) -> Dict[str, Any]:
    """读取 YAML 文件为 dict；空文件返回空 dict。"""

    if not path.exists():
        raise UserError(f"config file not found: {path}", code="CONFIG_INVALID", details={"path": str(path)})
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise UserError(
            f"config root must be a mapping: {path}", code="CONFIG_INVALID", details={"path": str(path)}
        )
    return data


def load_settings_dicts(config_dicts: Iterable[Mapping[str, Any]]) -> RuntimeSettings:
    """
    加载并合并多个 dict 配置，返回校验后的 `RuntimeSettings`。

    参数：
    - config_dicts：按顺序做深度合并（后者覆盖前者）

    异常：
    - `UserError(code=CONFIG_INVALID)`：schema 校验失败
    """

    merged: Dict[str, Any] = {}
    for overlay in config_dicts:
        if not overlay:
            continue
        _deep_merge(merged, overlay)
    try:
        return RuntimeSettings.model_validate(merged)
    except ValidationError as e:
        raise UserError(f"invalid runtime settings: {e}", code="CONFIG_INVALID") from e


def load_runtime_settings(
    config_paths: Iterable[Path] = (),
    *,
    env: Optional[Mapping[str, str]] = None,
) -> RuntimeSettings:
    """
    加载运行时配置：默认值 < YAML overlays < 环境变量。

    参数：
    - config_paths：YAML 路径列表；按顺序合并
    - env：环境变量映射；为 None 时读取 `os.environ`
    """

    overlays: list[Dict[str, Any]] = [_load_yaml_file(Path(p)) for p in config_paths]
    overlays.append(settings_env_overlay(env))
    return load_settings_dicts(overlays)


__all__ = [
    "ApprovalsSettings",
    "AuditSettings",
    "ExecSettings",
    "MemorySettings",
    "RuntimeSettings",
    "SandboxSettings",
    "SkillsSettings",
    "exec_max_concurrent_from_env",
    "load_runtime_settings",
    "load_settings_dicts",
    "settings_env_overlay",
]
