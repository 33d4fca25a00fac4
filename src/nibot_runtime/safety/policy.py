"""
ToolPolicy：分层解析后的不可变权限表。

分层（后者覆盖前者）：
- 内置默认值（全部工具可用；写/执行/安装需要审批；写路径限制在 memory/、skills/、logs/）
- 策略文件 `<workspace>/data/policy.toml`（逐行 `key = value`）
- 环境变量 `NIBOT_POLICY_ALLOW_*`

合并规则（`resolve_tool_policy`）：
- 每层是“字段名 → 值”的 mapping；缺失或 None 表示该层未设置
- 布尔字段：设置即覆盖
- 列表字段：仅在非空时覆盖

说明：
- 本模块只回答“是否允许/是否需要审批”，不执行任何工具；
- 未知工具永远不需要审批，且不受开关限制（读类/记忆类工具）。
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field

from nibot_runtime.core.utils import parse_bool, split_command_line

logger = logging.getLogger(__name__)

POLICY_FILE_REL = ("data", "policy.toml")

FAMILY_FS_WRITE = "fs_write"
FAMILY_RUNTIME_EXEC = "runtime_exec"
FAMILY_SKILL_EXEC = "skill_exec"
FAMILY_SKILL_INSTALL = "skill_install"

_TOOL_FAMILIES: Dict[str, str] = {
    "fs.write": FAMILY_FS_WRITE,
    "file_write": FAMILY_FS_WRITE,
    "runtime.exec": FAMILY_RUNTIME_EXEC,
    "shell_exec": FAMILY_RUNTIME_EXEC,
    "skill.exec": FAMILY_SKILL_EXEC,
    "skill_exec": FAMILY_SKILL_EXEC,
    "skills.install": FAMILY_SKILL_INSTALL,
    "install_skill": FAMILY_SKILL_INSTALL,
    "skill_store_install": FAMILY_SKILL_INSTALL,
}

_BOOL_KEYS = (
    "allow_fs_write",
    "allow_runtime_exec",
    "allow_skill_exec",
    "allow_skill_install",
    "require_approval_fs_write",
    "require_approval_runtime_exec",
    "require_approval_skill_exec",
    "require_approval_skill_install",
)
_LIST_KEYS = (
    "allowed_runtime_prefixes",
    "allowed_write_prefixes",
    "allowed_skill_names",
    "allowed_skill_scripts",
)

_ENV_KEYS = (
    ("NIBOT_POLICY_ALLOW_RUNTIME_EXEC", "allow_runtime_exec"),
    ("NIBOT_POLICY_ALLOW_SKILL_EXEC", "allow_skill_exec"),
    ("NIBOT_POLICY_ALLOW_FS_WRITE", "allow_fs_write"),
    ("NIBOT_POLICY_ALLOW_SKILL_INSTALL", "allow_skill_install"),
)

PolicyLayer = Mapping[str, Any]


def tool_family(tool: str) -> Optional[str]:
    """返回工具所属的受控族；不受控工具返回 None。"""

    return _TOOL_FAMILIES.get(tool)


class ToolPolicy(BaseModel):
    """
    工具权限表（构造后不可变）。

    字段：
    - allow_*：工具族是否可用
    - require_approval_*：工具族是否需要审批
    - allowed_runtime_prefixes：runtime.exec 首个 token 白名单（空=不限制）
    - allowed_write_prefixes：fs.write 路径前缀白名单（空=不限制；`*` 放行全部）
    - allowed_skill_names / allowed_skill_scripts：skill.exec 白名单（空=不限制）
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    allow_fs_write: bool = True
    allow_runtime_exec: bool = True
    allow_skill_exec: bool = True
    allow_skill_install: bool = True
    require_approval_fs_write: bool = True
    require_approval_runtime_exec: bool = True
    require_approval_skill_exec: bool = True
    require_approval_skill_install: bool = True
    allowed_runtime_prefixes: Tuple[str, ...] = Field(default_factory=tuple)
    allowed_write_prefixes: Tuple[str, ...] = ("memory/", "skills/", "logs/")
    allowed_skill_names: Tuple[str, ...] = Field(default_factory=tuple)
    allowed_skill_scripts: Tuple[str, ...] = Field(default_factory=tuple)

    def allows_tool(self, tool: str) -> bool:
        """工具族开关；不受控工具恒为 True。"""

        family = tool_family(tool)
        if family is None:
            return True
        return bool(getattr(self, f"allow_{family}"))

    def requires_approval(self, tool: str) -> bool:
        """审批要求；不受控工具恒为 False。"""

        family = tool_family(tool)
        if family is None:
            return False
        return bool(getattr(self, f"require_approval_{family}"))

    def allows_runtime_command(self, command: str) -> bool:
        """
        runtime.exec 命令前缀检查。

        规则：
        - 未配置白名单：全部允许
        - 否则按引号感知切分命令行，首个 token 与白名单大小写不敏感地精确比较
        """

        if not self.allowed_runtime_prefixes:
            return True
        tokens = split_command_line(command)
        if not tokens:
            return False
        first = tokens[0].strip().lower()
        for pref in self.allowed_runtime_prefixes:
            p = pref.strip().lower()
            if p and first == p:
                return True
        return False

    def allows_write_path(self, rel_path: str) -> bool:
        """
        fs.write 路径前缀检查（大小写不敏感；`*` 放行全部）。

        参数：
        - rel_path：workspace 相对路径（反斜杠与前导 `/` 会被归一化）
        """

        if not self.allowed_write_prefixes:
            return True
        path = (rel_path or "").strip().replace("\\", "/").lstrip("/")
        if not path:
            return False
        lowered = path.lower()
        for pref in self.allowed_write_prefixes:
            p = pref.strip().replace("\\", "/").lstrip("/")
            if p == "*":
                return True
            if p and lowered.startswith(p.lower()):
                return True
        return False

    def allows_skill_exec(self, skill: str, script: str) -> bool:
        """
        skill.exec 白名单检查。

        规则：
        - skill 白名单非空时：skill 名（或 `*`）必须在其中
        - script 白名单非空时：裸脚本名、`skill/script` 或 `*` 之一必须在其中
        """

        sk = (skill or "").strip().lower()
        sc = (script or "").strip().lower()
        if not sk or not sc:
            return False
        if self.allowed_skill_names:
            names = {it.strip().lower() for it in self.allowed_skill_names}
            if "*" not in names and sk not in names:
                return False
        if not self.allowed_skill_scripts:
            return True
        key = f"{sk}/{sc}"
        for it in self.allowed_skill_scripts:
            v = it.strip().lower()
            if v in ("*", sc, key):
                return True
        return False

    def as_layer(self) -> Dict[str, Any]:
        """把当前表导出为完整的一层（用于展示与再合并）。"""

        return self.model_dump()


def default_tool_policy() -> ToolPolicy:
    """内置默认策略。"""

    return ToolPolicy()


def resolve_tool_policy(default: ToolPolicy, *layers: Optional[PolicyLayer]) -> ToolPolicy:
    """
    按顺序把各层叠加到 default 上，返回新的不可变策略。

    参数：
    - default：基线策略
    - layers：若干层（None 或空 mapping 会被跳过）

    返回：
    - 合并后的 `ToolPolicy`
    """

    merged: Dict[str, Any] = default.model_dump()
    for layer in layers:
        if not layer:
            continue
        for key in _BOOL_KEYS:
            value = layer.get(key)
            if value is not None:
                merged[key] = bool(value)
        for key in _LIST_KEYS:
            value = layer.get(key)
            if value:
                merged[key] = tuple(str(v) for v in value)
    return ToolPolicy.model_validate(merged)


def _split_csv(value: str) -> Tuple[str, ...]:
    """逗号切分；每项去空白与引号；空项丢弃。"""

    out = []
    for item in value.split(","):
        v = item.strip().strip("\"'")
        if v:
            out.append(v)
    return tuple(out)


def parse_policy_text(text: str) -> Dict[str, Any]:
    """
    解析策略文件文本为一层。

    格式：
    - 跳过空行、`#` 注释与 `[section]` 标题
    - `key = value`；value 去掉外层引号
    - 布尔值宽松解析（无法识别时按 true）；列表值逗号切分

    返回：
    - 只包含已设置键的 dict（未设置任何键时为空 dict）
    """

    layer: Dict[str, Any] = {}
    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith("#") or line.startswith("["):
            continue
        if "=" not in line:
            continue
        key, _, val = line.partition("=")
        key = key.strip()
        val = val.strip().strip('"').strip("'")
        if key in _BOOL_KEYS:
            layer[key] = parse_bool(val, True)
        elif key in _LIST_KEYS:
            items = _split_csv(val)
            if items:
                layer[key] = items
        else:
            logger.debug("ignoring unknown policy key: %s", key)
    return layer


def policy_file_path(workspace: Union[str, Path]) -> Path:
    """策略文件位置：`<workspace>/data/policy.toml`。"""

    return Path(workspace).joinpath(*POLICY_FILE_REL)


def read_policy_file(path: Union[str, Path]) -> Optional[Dict[str, Any]]:
    """读取策略文件为一层；文件不存在或未设置任何键时返回 None。"""

    p = Path(path)
    if not p.is_file():
        return None
    layer = parse_policy_text(p.read_text(encoding="utf-8", errors="replace"))
    return layer or None


def policy_layer_from_env(env: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """
    从 `NIBOT_POLICY_ALLOW_*` 环境变量构造一层。

    说明：
    - 空白值视为未设置；
    - 无法识别的值不设置该键（等价于沿用下层的值）。
    """

    e: Mapping[str, str] = os.environ if env is None else env
    layer: Dict[str, Any] = {}
    for env_key, field in _ENV_KEYS:
        raw = e.get(env_key)
        if raw is None or not str(raw).strip():
            continue
        v = parse_bool(raw, None)  # type: ignore[arg-type]
        if v is not None:
            layer[field] = v
    return layer


def load_tool_policy(workspace: Union[str, Path], *, env: Optional[Mapping[str, str]] = None) -> ToolPolicy:
    """
    默认值 ← 策略文件 ← 环境变量。

    参数：
    - workspace：workspace 根目录
    - env：环境变量映射；为 None 时读取 `os.environ`
    """

    file_layer = read_policy_file(policy_file_path(workspace))
    env_layer = policy_layer_from_env(env)
    policy = resolve_tool_policy(default_tool_policy(), file_layer, env_layer)
    logger.debug("tool policy resolved (file=%s, env_keys=%s)", file_layer is not None, sorted(env_layer))
    return policy


__all__ = [
    "FAMILY_FS_WRITE",
    "FAMILY_RUNTIME_EXEC",
    "FAMILY_SKILL_EXEC",
    "FAMILY_SKILL_INSTALL",
    "PolicyLayer",
    "ToolPolicy",
    "default_tool_policy",
    "load_tool_policy",
    "parse_policy_text",
    "policy_file_path",
    "policy_layer_from_env",
    "read_policy_file",
    "resolve_tool_policy",
    "tool_family",
]
