from __future__ import annotations

import json
import stat
import zipfile
from pathlib import Path
from typing import Any, Dict, Optional

import pytest

from nibot_runtime.config.loader import RuntimeSettings, load_settings_dicts
from nibot_runtime.core.errors import FrameworkError
from nibot_runtime.skills.discovery import SOURCE_META_FILENAME, discover_skills
from nibot_runtime.skills.installer import (
    install_skills_from_git,
    install_skills_from_path,
    install_skills_from_zip,
    safe_base_name,
    safe_zip_rel_path,
)


def _settings(**skills: Any) -> RuntimeSettings:
    """只覆盖 skills 段的配置。"""

    return load_settings_dicts([{"skills": skills}])


def _make_skill(root: Path, name: str, *, script: str = "run.sh", body: str = "echo hi\n") -> Path:
    """在 root 下生成 `<name>/scripts/<script>` 与 SKILL.md。"""

    d = root / name
    (d / "scripts").mkdir(parents=True, exist_ok=True)
    (d / "scripts" / script).write_text(body, encoding="utf-8")
    (d / "SKILL.md").write_text(f"---\nname: {name}\ndescription: test skill\n---\nbody\n", encoding="utf-8")
    return d


def _write_zip(path: Path, entries: Dict[str, bytes], *, symlinks: Optional[Dict[str, str]] = None) -> Path:
    """写入 zip；symlinks 为 entry → 链接目标。"""

    with zipfile.ZipFile(path, "w") as zf:
        for name, data in entries.items():
            zf.writestr(name, data)
        for name, target in (symlinks or {}).items():
            info = zipfile.ZipInfo(name)
            info.external_attr = (stat.S_IFLNK | 0o777) << 16
            zf.writestr(info, target)
    return path


def _codes(ei: pytest.ExceptionInfo) -> str:  # type: ignore[type-arg]
    """取 FrameworkError.code。"""

    assert isinstance(ei.value, FrameworkError)
    return ei.value.code


def test_install_single_skill_directory_with_provenance(tmp_path: Path) -> None:
    ws = tmp_path / "ws"
    src = _make_skill(tmp_path / "src", "weather")

    names = install_skills_from_path(ws, src)

    assert names == ["weather"]
    dst = ws / "skills" / "weather"
    assert (dst / "scripts" / "run.sh").read_text(encoding="utf-8") == "echo hi\n"
    meta = json.loads((dst / SOURCE_META_FILENAME).read_text(encoding="utf-8"))
    assert meta["origin"] == str(src.absolute())
    assert meta["layer"] == "local"
    assert meta["installed_at"].endswith("Z")
    # staging 目录不应残留
    assert [p.name for p in (ws / "skills").iterdir()] == ["weather"]


def test_install_repo_with_skills_dir_and_noise(tmp_path: Path) -> None:
    ws = tmp_path / "ws"
    repo = tmp_path / "repo"
    _make_skill(repo / "skills", "alpha")
    _make_skill(repo / "skills", "beta")
    (repo / "skills" / "notes").mkdir(parents=True)
    (repo / "skills" / "alpha" / "node_modules" / "x").mkdir(parents=True)
    (repo / "skills" / "alpha" / "node_modules" / "x" / "big.js").write_text("junk", encoding="utf-8")

    names = install_skills_from_path(ws, repo, layer="upstream")

    assert names == ["alpha", "beta"]
    assert (ws / "skills" / "_upstream" / "alpha" / "scripts" / "run.sh").is_file()
    assert not (ws / "skills" / "_upstream" / "alpha" / "node_modules").exists()
    assert not (ws / "skills" / "_upstream" / "notes").exists()


def test_install_scripts_dir_gets_default_skill_md(tmp_path: Path) -> None:
    ws = tmp_path / "ws"
    src = tmp_path / "mytool" / "scripts"
    src.mkdir(parents=True)
    (src / "go.sh").write_text("echo go\n", encoding="utf-8")

    assert install_skills_from_path(ws, src, layer="override") == ["mytool"]

    dst = ws / "skills" / "_overrides" / "mytool"
    assert (dst / "scripts" / "go.sh").is_file()
    assert "name: mytool" in (dst / "SKILL.md").read_text(encoding="utf-8")


def test_install_layer_from_settings_overrides_caller(tmp_path: Path) -> None:
    ws = tmp_path / "ws"
    src = _make_skill(tmp_path / "src", "weather")

    install_skills_from_path(ws, src, settings=_settings(install_layer="upstream"), layer="local")

    assert (ws / "skills" / "_upstream" / "weather").is_dir()


def test_install_conflict_fails_before_copying(tmp_path: Path) -> None:
    ws = tmp_path / "ws"
    repo = tmp_path / "repo"
    _make_skill(repo, "alpha")
    _make_skill(repo, "beta")
    _make_skill(ws / "skills", "beta", body="echo original\n")

    with pytest.raises(FrameworkError) as ei:
        install_skills_from_path(ws, repo)

    assert _codes(ei) == "SKILL_INSTALL_CONFLICT"
    assert str(ei.value) == "skill already exists: beta"
    assert not (ws / "skills" / "alpha").exists()
    assert (ws / "skills" / "beta" / "scripts" / "run.sh").read_text(encoding="utf-8") == "echo original\n"


def test_install_source_errors(tmp_path: Path) -> None:
    ws = tmp_path / "ws"
    (tmp_path / "file.txt").write_text("x", encoding="utf-8")
    (tmp_path / "empty").mkdir()

    for src, message in (
        ("", "empty source path"),
        (str(tmp_path / "missing"), "source not found"),
        (str(tmp_path / "file.txt"), "source is not a directory"),
        (str(tmp_path / "empty"), "no skills found under"),
    ):
        with pytest.raises(FrameworkError) as ei:
            install_skills_from_path(ws, src)
        assert _codes(ei) == "SKILL_INSTALL_INVALID"
        assert str(ei.value).startswith(message)


def test_install_file_too_large_rolls_back(tmp_path: Path) -> None:
    ws = tmp_path / "ws"
    repo = tmp_path / "repo"
    _make_skill(repo, "alpha", body="ok\n")
    _make_skill(repo, "beta", body="x" * 100)

    with pytest.raises(FrameworkError) as ei:
        install_skills_from_path(ws, repo, settings=_settings(max_file_bytes=50))

    assert _codes(ei) == "SKILL_INSTALL_TOO_LARGE"
    assert "exceeds NIBOT_SKILLS_MAX_FILE_BYTES=50" in str(ei.value)
    assert not (ws / "skills" / "alpha").exists()
    assert not (ws / "skills" / "beta").exists()


def test_install_total_budget(tmp_path: Path) -> None:
    ws = tmp_path / "ws"
    repo = tmp_path / "repo"
    _make_skill(repo, "alpha", body="a" * 60)
    _make_skill(repo, "beta", body="b" * 60)

    with pytest.raises(FrameworkError) as ei:
        install_skills_from_path(ws, repo, settings=_settings(max_file_bytes=1000, max_total_bytes=200))

    assert _codes(ei) == "SKILL_INSTALL_TOO_LARGE"
    assert "total too large: exceeds NIBOT_SKILLS_MAX_TOTAL_BYTES=200" in str(ei.value)


def test_install_zip(tmp_path: Path) -> None:
    ws = tmp_path / "ws"
    zp = _write_zip(
        tmp_path / "bundle.zip",
        {
            "weather/SKILL.md": b"---\nname: weather\ndescription: zipped\n---\n",
            "weather/scripts/run.sh": b"echo zipped\n",
            "weather/.git/config": b"noise",
        },
    )

    assert install_skills_from_path(ws, zp) == ["weather"]

    dst = ws / "skills" / "weather"
    assert (dst / "scripts" / "run.sh").read_bytes() == b"echo zipped\n"
    assert not (dst / ".git").exists()
    meta = json.loads((dst / SOURCE_META_FILENAME).read_text(encoding="utf-8"))
    assert meta["origin"] == str(zp.absolute())


def test_install_zip_with_top_level_scripts_is_named_after_archive(tmp_path: Path) -> None:
    zp = _write_zip(
        tmp_path / "weather.zip",
        {
            "SKILL.md": b"---\nname: weather\ndescription: flat\n---\n",
            "scripts/run.sh": b"echo flat\n",
        },
    )

    assert install_skills_from_zip(tmp_path / "ws1", zp) == ["weather"]
    assert install_skills_from_zip(tmp_path / "ws2", zp) == ["weather"]
    assert (tmp_path / "ws1" / "skills" / "weather" / "scripts" / "run.sh").read_bytes() == b"echo flat\n"


def test_zip_slip_entry_rejected_and_nothing_written(tmp_path: Path) -> None:
    ws = tmp_path / "ws"
    zp = _write_zip(
        tmp_path / "evil.zip",
        {"weather/scripts/run.sh": b"echo ok\n", "../evil.sh": b"rm -rf /\n"},
    )

    with pytest.raises(FrameworkError) as ei:
        install_skills_from_zip(ws, zp)

    assert _codes(ei) == "SKILL_INSTALL_INVALID"
    assert str(ei.value) == "unsafe zip entry: ../evil.sh"
    assert not (tmp_path / "evil.sh").exists()
    assert not (ws / "skills").exists()


def test_zip_symlink_entry_rejected(tmp_path: Path) -> None:
    zp = _write_zip(
        tmp_path / "link.zip",
        {"weather/scripts/run.sh": b"echo ok\n"},
        symlinks={"weather/scripts/passwd": "/etc/passwd"},
    )

    with pytest.raises(FrameworkError) as ei:
        install_skills_from_zip(tmp_path / "ws", zp)

    assert _codes(ei) == "SKILL_INSTALL_INVALID"
    assert ei.value.details["reason"] == "symlink"


@pytest.mark.parametrize(
    "name,reason",
    [
        ("/abs/x.sh", "absolute_path"),
        ("C:/x.sh", "drive_letter"),
        ("a/../../x.sh", "dotdot_segment"),
        ("..\\x.sh", "dotdot_segment"),
        ("", "empty_name"),
    ],
)
def test_safe_zip_rel_path_rejects(name: str, reason: str) -> None:
    with pytest.raises(FrameworkError) as ei:
        safe_zip_rel_path(name)
    assert ei.value.details["reason"] == reason


def test_safe_zip_rel_path_normalizes() -> None:
    assert str(safe_zip_rel_path("a\\b/./c.sh")) == "a/b/c.sh"


def test_zip_archive_size_cap(tmp_path: Path) -> None:
    zp = _write_zip(tmp_path / "big.zip", {"weather/scripts/run.sh": b"x" * 4096})
    size = zp.stat().st_size

    with pytest.raises(FrameworkError) as ei:
        install_skills_from_zip(tmp_path / "ws", zp, settings=_settings(max_zip_bytes=100))

    assert _codes(ei) == "SKILL_INSTALL_TOO_LARGE"
    assert str(ei.value) == f"zip too large: {size} bytes exceeds NIBOT_SKILLS_MAX_ZIP_BYTES=100"


def test_zip_declared_entry_size_cap(tmp_path: Path) -> None:
    zp = _write_zip(tmp_path / "entry.zip", {"weather/scripts/run.sh": b"y" * 500})

    with pytest.raises(FrameworkError) as ei:
        install_skills_from_zip(tmp_path / "ws", zp, settings=_settings(max_file_bytes=100))

    assert _codes(ei) == "SKILL_INSTALL_TOO_LARGE"
    assert str(ei.value).startswith("zip entry too large: weather/scripts/run.sh (500 bytes)")


def test_zip_total_size_cap(tmp_path: Path) -> None:
    zp = _write_zip(
        tmp_path / "total.zip",
        {"a/scripts/one.sh": b"1" * 80, "b/scripts/two.sh": b"2" * 80},
    )

    with pytest.raises(FrameworkError) as ei:
        install_skills_from_zip(tmp_path / "ws", zp, settings=_settings(max_file_bytes=100, max_total_bytes=120))

    assert str(ei.value) == "zip total too large: exceeds NIBOT_SKILLS_MAX_TOTAL_BYTES=120"


def test_invalid_zip_archive(tmp_path: Path) -> None:
    zp = tmp_path / "broken.zip"
    zp.write_bytes(b"not a zip at all")

    with pytest.raises(FrameworkError) as ei:
        install_skills_from_zip(tmp_path / "ws", zp)
    assert str(ei.value).startswith("invalid zip archive")


def test_git_install_disabled_by_default(tmp_path: Path) -> None:
    with pytest.raises(FrameworkError) as ei:
        install_skills_from_git(tmp_path, "https://github.com/acme/skills.git")

    assert _codes(ei) == "SKILL_INSTALL_DISABLED"
    assert str(ei.value) == "git install disabled (set NIBOT_ENABLE_GIT=1 to enable)"


def test_git_install_rejects_non_https(tmp_path: Path) -> None:
    with pytest.raises(FrameworkError) as ei:
        install_skills_from_git(tmp_path, "git@github.com:acme/skills.git", settings=_settings(git_enabled=True))
    assert _codes(ei) == "SKILL_INSTALL_DENIED"

    with pytest.raises(FrameworkError) as ei:
        install_skills_from_git(tmp_path, "  ", settings=_settings(git_enabled=True))
    assert str(ei.value) == "empty git url"


def test_installed_skill_is_discoverable_with_origin(tmp_path: Path) -> None:
    ws = tmp_path / "ws"
    install_skills_from_path(ws, _make_skill(tmp_path / "src", "weather"), origin="https://example.com/w.git")

    skills = discover_skills(ws)

    assert [s.name for s in skills] == ["weather"]
    assert skills[0].source == "SKILL.md; layer=local; origin=https://example.com/w.git"
    assert skills[0].scripts == ["run.sh"]


def test_safe_base_name() -> None:
    assert safe_base_name("/tmp/My Bundle.zip") == "My_Bundle"
    assert safe_base_name("https://github.com/acme/skills.git") == "skills"
    assert safe_base_name("") == "zip"
