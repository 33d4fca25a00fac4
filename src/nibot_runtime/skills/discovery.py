"""
Skills 发现（三层合并）。

约定：
- 技能名集合 = 三层根目录下子目录名的并集（跳过 `.`/`_` 开头）
- 元数据只读“主目录”（override > local > upstream 中第一个存在的目录）
- 脚本为三层 `scripts/` 下可执行文件名的并集
- 来源（origin）按层优先级读取第一个非空的 `.nibot_source.json`

说明：
- 元数据文件损坏（JSON/YAML 解析失败）时跳过该文件，继续尝试下一种格式（fail-open）；
  discovery 只用于展示与诊断，不应因单个 skill 的坏文件整体失败。
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import yaml

from nibot_runtime.core.utils import normalize_newlines
from nibot_runtime.skills.layers import (
    all_skill_names,
    existing_layer_dirs,
    iter_layer_candidates,
    resolve_layered,
)
from nibot_runtime.skills.models import Skill, SkillScript

logger = logging.getLogger(__name__)

SOURCE_META_FILENAME = ".nibot_source.json"
SCRIPT_EXTENSIONS = (".sh", ".ps1", ".bat", ".cmd", ".exe")

_MD_FILES = ("SKILL.md", "skill.md")
_JSON_FILES = ("skill.json", "manifest.json", "skill.manifest.json")
_YAML_FILES = ("skill.yaml", "skill.yml", "manifest.yaml", "manifest.yml")
METADATA_FILES = _MD_FILES + _JSON_FILES + _YAML_FILES + ("package.json",)


def is_executable_script(name: str) -> bool:
    """按扩展名判断是否为脚本入口（大小写不敏感）。"""

    return name.lower().endswith(SCRIPT_EXTENSIONS)


def parse_skill_md(content: str) -> str:
    """
    解析 SKILL.md：提取 frontmatter 的 `name:`/`description:` 与正文。

    返回：
    - `Name: ...\\nDescription: ...\\n\\n<body>`；三者都为空时返回原文（strip 后）
    """

    frontmatter: List[str] = []
    body: List[str] = []
    in_fm = False
    fm_done = False
    for line in normalize_newlines(content).split("\n"):
        if line.strip() == "---" and not fm_done:
            if not in_fm:
                in_fm = True
                continue
            in_fm = False
            fm_done = True
            continue
        if in_fm and not fm_done:
            frontmatter.append(line)
            continue
        body.append(line)

    name = ""
    description = ""
    for raw in frontmatter:
        line = raw.strip()
        if line.startswith("name:"):
            name = line[len("name:") :].strip()
        if line.startswith("description:"):
            description = line[len("description:") :].strip()

    parts: List[str] = []
    if name:
        parts.append(f"Name: {name}\n")
    if description:
        parts.append(f"Description: {description}\n")
    body_text = "\n".join(body).strip()
    if body_text:
        parts.append("\n" + body_text + "\n")
    if not parts:
        return content.strip()
    return "".join(parts).rstrip("\n")


def _doc_header(doc: str) -> Tuple[str, str]:
    """从文档中取第一处 `name:` 与 `description:`（大小写不敏感）。"""

    name = ""
    desc = ""
    for raw in normalize_newlines(doc).split("\n"):
        line = raw.strip()
        low = line.lower()
        if not name and low.startswith("name:"):
            name = line[len("name:") :].strip()
            continue
        if not desc and low.startswith("description:"):
            desc = line[len("description:") :].strip()
    return name, desc


def _doc_from_meta(name: str, desc: str) -> str:
    """由元数据拼装简短文档。"""

    lines = []
    if name.strip():
        lines.append(f"Name: {name.strip()}")
    if desc.strip():
        lines.append(f"Description: {desc.strip()}")
    return "\n".join(lines)


def _str_field(obj: Dict[str, Any], key: str) -> str:
    """取 mapping 中的字符串字段（非字符串视为空）。"""

    v = obj.get(key)
    return v.strip() if isinstance(v, str) else ""


def _read_json_mapping(path: Path) -> Optional[Dict[str, Any]]:
    """读取 JSON object；不存在或解析失败返回 None。"""

    try:
        obj = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return None
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
        logger.debug("skip unreadable manifest %s: %s", path, e)
        return None
    return obj if isinstance(obj, dict) else None


def _read_yaml_mapping(path: Path) -> Optional[Dict[str, Any]]:
    """读取 YAML mapping；不存在或解析失败返回 None。"""

    try:
        obj = yaml.safe_load(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return None
    except (OSError, UnicodeDecodeError, yaml.YAMLError) as e:
        logger.debug("skip unreadable manifest %s: %s", path, e)
        return None
    if not isinstance(obj, dict):
        return None
    return {str(k).lower(): v for k, v in obj.items()}


def load_skill_info(skill_dir: Path, fallback_name: str) -> Skill:
    """
    从 skill 目录读取元数据（不含脚本与层信息）。

    参数：
    - skill_dir：主目录
    - fallback_name：目录名（manifest 未给出 name 时使用）

    返回：
    - `Skill`（`source` 为元数据文件名，或 `directory`）
    """

    name = fallback_name
    display = fallback_name

    for fname in _MD_FILES:
        p = skill_dir / fname
        if not p.is_file():
            continue
        doc = parse_skill_md(p.read_text(encoding="utf-8", errors="replace"))
        header_name, desc = _doc_header(doc)
        return Skill(
            name=name,
            dir_name=fallback_name,
            display_name=header_name or fallback_name,
            description=desc,
            docs=doc,
            source=fname,
        )

    for fname in _JSON_FILES + _YAML_FILES:
        p = skill_dir / fname
        m = _read_json_mapping(p) if fname in _JSON_FILES else _read_yaml_mapping(p)
        if m is None:
            continue
        name = _str_field(m, "name") or name
        display = _str_field(m, "display_name") or name
        desc = _str_field(m, "description")
        return Skill(
            name=name,
            dir_name=fallback_name,
            display_name=display,
            description=desc,
            docs=_doc_from_meta(display, desc),
            source=fname,
        )

    pkg = _read_json_mapping(skill_dir / "package.json")
    if pkg is not None:
        pkg_name = _str_field(pkg, "name")
        if pkg_name:
            name = pkg_name
            display = pkg_name
        desc = _str_field(pkg, "description")
        return Skill(
            name=name,
            dir_name=fallback_name,
            display_name=display,
            description=desc,
            docs=_doc_from_meta(display, desc),
            source="package.json",
        )

    return Skill(
        name=name,
        dir_name=fallback_name,
        display_name=display,
        docs=_doc_from_meta(display, ""),
        source="directory",
    )


def read_skill_origin(workspace: Union[str, Path], name: str) -> str:
    """按层优先级读取第一个非空的 provenance origin。"""

    for hit in iter_layer_candidates(workspace, name, SOURCE_META_FILENAME):
        meta = _read_json_mapping(hit.path)
        if meta is None:
            continue
        origin = _str_field(meta, "origin")
        if origin:
            return origin
    return ""


def _scripts_in_dir(d: Path) -> List[str]:
    """目录下的脚本文件名（已排序；目录不存在返回空）。"""

    if not d.is_dir():
        return []
    return sorted(e.name for e in d.iterdir() if e.is_file() and is_executable_script(e.name))


def merged_scripts(workspace: Union[str, Path], name: str) -> List[str]:
    """三层 `scripts/` 的并集（已排序）。"""

    found = set()
    for hit in existing_layer_dirs(workspace, name):
        found.update(_scripts_in_dir(hit.path / "scripts"))
    return sorted(found)


def discover_skills(workspace: Union[str, Path]) -> List[Skill]:
    """
    发现 workspace 下的全部 skills（按 name 排序）。

    参数：
    - workspace：workspace 根目录

    返回：
    - `Skill` 列表；无 skills 目录时为空列表
    """

    skills: List[Skill] = []
    for dir_name in all_skill_names(workspace):
        primary = resolve_layered(workspace, dir_name, want_dir=True)
        if primary is None:
            continue
        info = load_skill_info(primary.path, dir_name)
        parts = [p for p in (info.source.strip(), f"layer={primary.layer.value}") if p]
        origin = read_skill_origin(workspace, dir_name)
        if origin:
            parts.append(f"origin={origin}")
        skills.append(
            info.model_copy(update={"source": "; ".join(parts), "scripts": merged_scripts(workspace, dir_name)})
        )
    skills.sort(key=lambda s: s.name)
    return skills


def discover_skill_scripts(workspace: Union[str, Path]) -> List[SkillScript]:
    """列出全部 (skill 目录名, 脚本名)，按 (skill, script) 排序。"""

    out = [
        SkillScript(skill=name, script=sc)
        for name in all_skill_names(workspace)
        for sc in merged_scripts(workspace, name)
    ]
    out.sort(key=lambda x: (x.skill, x.script))
    return out


__all__ = [
    "METADATA_FILES",
    "SCRIPT_EXTENSIONS",
    "SOURCE_META_FILENAME",
    "discover_skill_scripts",
    "discover_skills",
    "is_executable_script",
    "load_skill_info",
    "merged_scripts",
    "parse_skill_md",
    "read_skill_origin",
]
