"""
Skills 系统（三层目录、发现、安装、诊断）。
"""

from __future__ import annotations

from nibot_runtime.skills.discovery import discover_skill_scripts, discover_skills
from nibot_runtime.skills.doctor import check_skill, diagnose_skills
from nibot_runtime.skills.installer import (
    install_skills_from_git,
    install_skills_from_path,
    install_skills_from_zip,
)
from nibot_runtime.skills.layers import SkillLayer, resolve_layered
from nibot_runtime.skills.models import Skill, SkillIssue, SkillScript

__all__ = [
    "Skill",
    "SkillIssue",
    "SkillLayer",
    "SkillScript",
    "check_skill",
    "diagnose_skills",
    "discover_skill_scripts",
    "discover_skills",
    "install_skills_from_git",
    "install_skills_from_path",
    "install_skills_from_zip",
    "resolve_layered",
]
