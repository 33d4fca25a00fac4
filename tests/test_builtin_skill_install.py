from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

from nibot_runtime.config.loader import load_settings_dicts
from nibot_runtime.core.errors import ErrorKind
from nibot_runtime.core.executor import ExecutorPool
from nibot_runtime.safety.policy import ToolPolicy, default_tool_policy
from nibot_runtime.skills import installer
from nibot_runtime.tools.builtin import skill_install as skill_install_mod
from nibot_runtime.tools.builtin.skill_install import SKILL_INSTALL_SPEC, skill_install_tool
from nibot_runtime.tools.dispatcher import default_registry
from nibot_runtime.tools.protocol import ExecCall, ToolResult
from nibot_runtime.tools.registry import ExecContext


def _ctx(tmp_path: Path, *, git: bool = False, policy: Optional[ToolPolicy] = None) -> ExecContext:
    """构造 ExecContext（可选开启 git 安装）。"""

    settings = load_settings_dicts([{"skills": {"git_enabled": git}}])
    return ExecContext(
        workspace=tmp_path,
        policy=policy or default_tool_policy(),
        settings=settings,
        pool=ExecutorPool(1),
    )


def _call(ctx: ExecContext, args: Dict[str, Any], tool: str = "skills.install") -> ToolResult:
    """经注册表派发一次安装调用。"""

    return default_registry().dispatch(ExecCall(tool=tool, args_raw=json.dumps(args)), ctx)


def test_handler_module_is_not_shadowed_by_the_handler() -> None:
    assert skill_install_mod.install_skills_from_git is installer.install_skills_from_git
    assert default_registry().resolve("install_skill") == (SKILL_INSTALL_SPEC, skill_install_tool)


def test_skill_install_requires_name_and_url(tmp_path: Path) -> None:
    ctx = _ctx(tmp_path, git=True)

    r1 = _call(ctx, {"url": "https://example.com/x.git"})
    r2 = _call(ctx, {"name": "x"})

    assert r1.error == "install_skill requires name"
    assert r1.error_kind == ErrorKind.VALIDATION
    assert r2.error == "install_skill requires url (https://...)"


@pytest.mark.parametrize(
    "url",
    ["http://example.com/x.git", "git@example.com:x.git", "https://example.com/a b.git", "file:///tmp/x"],
)
def test_skill_install_rejects_non_https(tmp_path: Path, url: str) -> None:
    r = _call(_ctx(tmp_path, git=True), {"name": "x", "url": url})

    assert r.ok is False
    assert r.error_kind == ErrorKind.POLICY_DENIED
    assert r.error == "install_skill denied: only https:// URLs are allowed"


def test_skill_install_git_disabled_is_feature_disabled(tmp_path: Path) -> None:
    r = _call(_ctx(tmp_path), {"name": "x", "url": "https://example.com/x.git"}, tool="install_skill")

    assert r.error_kind == ErrorKind.FEATURE_DISABLED
    assert r.error == "git install disabled (set NIBOT_ENABLE_GIT=1 to enable)"


def test_skill_install_policy_recheck(tmp_path: Path) -> None:
    r = _call(
        _ctx(tmp_path, git=True, policy=ToolPolicy(allow_skill_install=False)),
        {"name": "x", "url": "https://example.com/x.git"},
    )

    assert r.error == "disabled by policy"
    assert r.error_kind == ErrorKind.POLICY_DENIED


def test_skill_install_success_reports_names(tmp_path: Path, monkeypatch) -> None:  # type: ignore[no-untyped-def]
    seen: List[Dict[str, Any]] = []

    def _fake_install(workspace, url, *, settings, layer, pool):  # type: ignore[no-untyped-def]
        """记录参数并返回固定的安装结果。"""

        seen.append({"workspace": workspace, "url": url, "layer": layer, "pool": pool})
        return ["alpha", "beta"]

    monkeypatch.setattr(skill_install_mod, "install_skills_from_git", _fake_install)
    ctx = _ctx(tmp_path, git=True)

    r = _call(ctx, {"name": "evomap", "url": " https://example.com/x.git "}, tool="skill_store_install")
    r2 = _call(ctx, {"name": "evomap", "url": "https://example.com/x.git", "layer": "Override"})

    assert r.output == "installed skills: alpha, beta"
    assert seen[0] == {"workspace": ctx.workspace, "url": "https://example.com/x.git", "layer": "upstream", "pool": ctx.pool}
    assert r2.ok is True
    assert seen[1]["layer"] == "override"
