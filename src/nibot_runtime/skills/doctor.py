"""
Skills 诊断（doctor / check）。

- `diagnose_skills`：对全部 skills 做静态检查
- `check_skill`：对单个 skill 做检查（找不到时返回一条 error 诊断）

脚本文件按分层查找（override > local > upstream）定位，与 skill.exec 的实际行为一致。
"""

from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import List, Optional, Union

from nibot_runtime.config.loader import RuntimeSettings
from nibot_runtime.core.errors import UserError
from nibot_runtime.skills.discovery import discover_skills
from nibot_runtime.skills.layers import resolve_layered
from nibot_runtime.skills.models import Skill, SkillIssue


def is_script_supported_on_this_os(script: str) -> bool:
    """脚本扩展名在当前平台是否可执行。"""

    ext = os.path.splitext(script)[1].lower()
    if os.name == "nt":
        return ext in (".ps1", ".cmd", ".bat", ".exe")
    return ext in (".sh", ".exe")


def _has_metadata(skill: Skill) -> bool:
    """元数据来自 SKILL.md / manifest（而非目录名兜底）。"""

    first = skill.source.split(";", 1)[0].strip()
    return bool(skill.docs.strip()) and first not in ("", "directory")


def _script_issues(workspace: Union[str, Path], skill: Skill, max_file_bytes: int) -> List[SkillIssue]:
    """逐个脚本检查：存在性、平台兼容性、大小上限。"""

    issues: List[SkillIssue] = []
    for sc in skill.scripts:
        hit = resolve_layered(workspace, skill.dir_name, "scripts", sc, want_dir=False)
        if hit is None:
            issues.append(SkillIssue(skill=skill.name, level="error", message=f"missing script file: {sc}"))
            continue
        if not is_script_supported_on_this_os(sc):
            issues.append(
                SkillIssue(skill=skill.name, level="warn", message=f"script may not run on {sys.platform}: {sc}")
            )
        size = hit.path.stat().st_size
        if max_file_bytes > 0 and size > max_file_bytes:
            issues.append(
                SkillIssue(
                    skill=skill.name,
                    level="warn",
                    message=f"script size {size} exceeds NIBOT_SKILLS_MAX_FILE_BYTES={max_file_bytes}: {sc}",
                )
            )
    return issues


def diagnose_skills(workspace: Union[str, Path], settings: Optional[RuntimeSettings] = None) -> List[SkillIssue]:
    """
    诊断全部 skills。

    参数：
    - workspace：workspace 根目录
    - settings：运行时配置（读取单文件上限）；缺省为内置默认值

    返回：
    - `SkillIssue` 列表（可能为空）
    """

    settings = settings or RuntimeSettings()
    issues: List[SkillIssue] = []
    for s in discover_skills(workspace):
        if not s.scripts:
            issues.append(SkillIssue(skill=s.name, level="warn", message="no executable scripts under scripts/"))
        if not _has_metadata(s):
            issues.append(
                SkillIssue(
                    skill=s.name,
                    level="warn",
                    message="no metadata found (SKILL.md/skill.json/manifest.json/skill.yaml)",
                )
            )
        issues.extend(_script_issues(workspace, s, settings.skills.max_file_bytes))
    return issues


def find_skill(workspace: Union[str, Path], name: str) -> Optional[Skill]:
    """按 name / display_name / 目录名查找（大小写不敏感）。"""

    want = name.strip().lower()
    for s in discover_skills(workspace):
        if want in (s.name.lower(), s.display_name.lower(), s.dir_name.lower()):
            return s
    return None


def check_skill(
    workspace: Union[str, Path], name: str, settings: Optional[RuntimeSettings] = None
) -> List[SkillIssue]:
    """
    检查单个 skill。

    异常：
    - `UserError`：name 为空
    """

    if not (name or "").strip():
        raise UserError("empty skill name", code="SKILL_NAME_INVALID")
    settings = settings or RuntimeSettings()
    s = find_skill(workspace, name)
    if s is None:
        return [SkillIssue(skill=name.strip(), level="error", message="skill not found")]

    issues: List[SkillIssue] = []
    if not _has_metadata(s):
        issues.append(SkillIssue(skill=s.name, level="warn", message="no metadata found"))
    if not s.scripts:
        issues.append(SkillIssue(skill=s.name, level="error", message="no scripts under scripts/"))
        return issues
    if not settings.skills.exec_enabled:
        issues.append(
            SkillIssue(skill=s.name, level="warn", message="skill.exec disabled (set NIBOT_ENABLE_SKILLS=1 to enable)")
        )
    issues.extend(_script_issues(workspace, s, settings.skills.max_file_bytes))
    return issues


__all__ = ["check_skill", "diagnose_skills", "find_skill", "is_script_supported_on_this_os"]
