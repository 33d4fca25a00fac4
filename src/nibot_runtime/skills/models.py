"""
Skills 数据模型。

- `Skill`：发现后的稳定表示（元数据 + 合并后的脚本列表 + 来源描述）
- `SkillScript`：(skill, script) 二元组，供列出“可执行入口”
- `SkillIssue`：doctor/check 的诊断项
"""

from __future__ import annotations

from typing import List, Literal

from pydantic import BaseModel, ConfigDict, Field


class Skill(BaseModel):
    """
    Skill 结构。

    字段：
    - name：技能名（manifest 中的 name 优先，否则为目录名）
    - dir_name：磁盘上的目录名（分层查找与 skill.exec 使用该名）
    - display_name：展示名（缺省为 name）
    - description：描述
    - docs：注入提示词用的文档文本
    - scripts：三层合并后的脚本文件名（已排序）
    - source：`<元数据来源>; layer=<层>; origin=<来源>`
    """

    model_config = ConfigDict(frozen=True)

    name: str
    dir_name: str
    display_name: str = ""
    description: str = ""
    docs: str = ""
    scripts: List[str] = Field(default_factory=list)
    source: str = ""


class SkillScript(BaseModel):
    """一个可执行入口。"""

    model_config = ConfigDict(frozen=True)

    skill: str
    script: str


class SkillIssue(BaseModel):
    """doctor/check 诊断项。"""

    model_config = ConfigDict(frozen=True)

    skill: str
    level: Literal["warn", "error"]
    message: str


__all__ = ["Skill", "SkillIssue", "SkillScript"]
