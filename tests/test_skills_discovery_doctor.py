from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from nibot_runtime.config.loader import load_settings_dicts
from nibot_runtime.core.errors import UserError
from nibot_runtime.skills.discovery import (
    discover_skill_scripts,
    discover_skills,
    load_skill_info,
    parse_skill_md,
)
from nibot_runtime.skills.doctor import check_skill, diagnose_skills, find_skill
from nibot_runtime.skills.layers import SkillLayer, all_skill_names, resolve_layered


def _touch(path: Path, text: str = "echo hi\n") -> Path:
    """写入文件（自动创建父目录）。"""

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


def test_parse_skill_md_front_matter() -> None:
    doc = parse_skill_md("---\nname: weather\ndescription: Get weather\n---\n\n# Usage\nrun it\n")

    assert doc == "Name: weather\nDescription: Get weather\n\n# Usage\nrun it"


def test_parse_skill_md_without_front_matter_returns_body() -> None:
    assert parse_skill_md("just text\n") == "\njust text"
    assert parse_skill_md("   ") == ""


def test_load_skill_info_precedence(tmp_path: Path) -> None:
    d = tmp_path / "tool"
    _touch(d / "skill.json", json.dumps({"name": "from-json", "description": "json desc"}))
    _touch(d / "skill.yaml", "name: from-yaml\n")

    info = load_skill_info(d, "tool")
    assert info.name == "from-json"
    assert info.source == "skill.json"
    assert info.docs == "Name: from-json\nDescription: json desc"

    _touch(d / "SKILL.md", "---\nname: Pretty Tool\ndescription: md desc\n---\n")
    info = load_skill_info(d, "tool")
    assert info.name == "tool"
    assert info.display_name == "Pretty Tool"
    assert info.description == "md desc"
    assert info.source == "SKILL.md"


def test_load_skill_info_yaml_keys_case_insensitive_and_broken_json_skipped(tmp_path: Path) -> None:
    d = tmp_path / "tool"
    _touch(d / "skill.json", "{not json")
    _touch(d / "manifest.yaml", "Name: yaml-tool\nDescription: from yaml\n")

    info = load_skill_info(d, "tool")

    assert info.name == "yaml-tool"
    assert info.source == "manifest.yaml"


def test_load_skill_info_package_json_and_directory_fallback(tmp_path: Path) -> None:
    d = tmp_path / "pkg"
    _touch(d / "package.json", json.dumps({"name": "npm-skill", "description": "npm"}))
    assert load_skill_info(d, "pkg").source == "package.json"

    bare = tmp_path / "bare"
    bare.mkdir()
    info = load_skill_info(bare, "bare")
    assert info.source == "directory"
    assert info.display_name == "bare"


def test_layers_resolution_order(tmp_path: Path) -> None:
    _touch(tmp_path / "skills/_upstream/w/scripts/a.sh")
    _touch(tmp_path / "skills/w/scripts/a.sh")

    hit = resolve_layered(tmp_path, "w", "scripts", "a.sh", want_dir=False)
    assert hit is not None and hit.layer is SkillLayer.LOCAL

    _touch(tmp_path / "skills/_overrides/w/scripts/a.sh")
    hit = resolve_layered(tmp_path, "w", "scripts", "a.sh", want_dir=False)
    assert hit is not None and hit.layer is SkillLayer.OVERRIDE

    assert resolve_layered(tmp_path, "../escape", want_dir=True) is None


def test_all_skill_names_skips_private_dirs(tmp_path: Path) -> None:
    (tmp_path / "skills" / ".hidden").mkdir(parents=True)
    (tmp_path / "skills" / "_upstream" / "up").mkdir(parents=True)
    (tmp_path / "skills" / "local").mkdir(parents=True)

    assert all_skill_names(tmp_path) == ["local", "up"]


def test_discover_merges_scripts_across_layers(tmp_path: Path) -> None:
    _touch(tmp_path / "skills/_upstream/w/scripts/up.sh")
    _touch(tmp_path / "skills/_upstream/w/scripts/shared.sh")
    _touch(tmp_path / "skills/w/scripts/shared.sh")
    _touch(tmp_path / "skills/w/scripts/README.txt")
    _touch(tmp_path / "skills/w/SKILL.md", "---\nname: w\ndescription: weather\n---\n")

    skills = discover_skills(tmp_path)

    assert len(skills) == 1
    assert skills[0].scripts == ["shared.sh", "up.sh"]
    assert skills[0].source == "SKILL.md; layer=local"
    assert [(s.skill, s.script) for s in discover_skill_scripts(tmp_path)] == [("w", "shared.sh"), ("w", "up.sh")]


def test_discover_empty_workspace(tmp_path: Path) -> None:
    assert discover_skills(tmp_path) == []
    assert diagnose_skills(tmp_path) == []


def test_diagnose_reports_missing_scripts_and_metadata(tmp_path: Path) -> None:
    (tmp_path / "skills" / "empty").mkdir(parents=True)

    messages = {(i.skill, i.level, i.message) for i in diagnose_skills(tmp_path)}

    assert ("empty", "warn", "no executable scripts under scripts/") in messages
    assert ("empty", "warn", "no metadata found (SKILL.md/skill.json/manifest.json/skill.yaml)") in messages


@pytest.mark.skipif(os.name == "nt", reason="POSIX script extensions")
def test_diagnose_flags_platform_and_size(tmp_path: Path) -> None:
    _touch(tmp_path / "skills/w/SKILL.md", "---\nname: w\n---\n")
    _touch(tmp_path / "skills/w/scripts/win.ps1", "Write-Host hi\n")
    _touch(tmp_path / "skills/w/scripts/big.sh", "x" * 64)
    settings = load_settings_dicts([{"skills": {"max_file_bytes": 32}}])

    messages = [i.message for i in diagnose_skills(tmp_path, settings)]

    assert any(m.startswith("script may not run on") and m.endswith("win.ps1") for m in messages)
    assert "script size 64 exceeds NIBOT_SKILLS_MAX_FILE_BYTES=32: big.sh" in messages


def test_find_skill_by_display_name(tmp_path: Path) -> None:
    _touch(tmp_path / "skills/wx/SKILL.md", "---\nname: Weather Pro\n---\n")
    _touch(tmp_path / "skills/wx/scripts/run.sh")

    assert find_skill(tmp_path, "weather pro") is not None
    assert find_skill(tmp_path, "WX") is not None
    assert find_skill(tmp_path, "nope") is None


def test_check_skill(tmp_path: Path) -> None:
    _touch(tmp_path / "skills/wx/SKILL.md", "---\nname: wx\n---\n")
    _touch(tmp_path / "skills/wx/scripts/run.sh")
    (tmp_path / "skills" / "noscripts").mkdir(parents=True)

    assert [i.message for i in check_skill(tmp_path, "ghost")] == ["skill not found"]
    assert [i.level for i in check_skill(tmp_path, "noscripts")] == ["warn", "error"]

    issues = check_skill(tmp_path, "wx")
    assert [i.message for i in issues] == ["skill.exec disabled (set NIBOT_ENABLE_SKILLS=1 to enable)"]

    enabled = load_settings_dicts([{"skills": {"exec_enabled": True}}])
    assert check_skill(tmp_path, "wx", enabled) == []

    with pytest.raises(UserError):
        check_skill(tmp_path, "  ")
