"""
内置工具：skills.install（同义名 install_skill / skill_store_install）。

参数（JSON）：
- name：必填（仅作调用方标注；实际安装名来自仓库目录结构）
- url：git 仓库地址（仅 `https://`）
- layer：安装层，默认 `upstream`

安装经由 `install_skills_from_git`，因此同样受 git 安装开关约束。
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict

from nibot_runtime.core.errors import ErrorKind, ToolError
from nibot_runtime.safety.guard import is_safe_git_url
from nibot_runtime.skills.installer import install_skills_from_git
from nibot_runtime.tools.args import parse_json_args
from nibot_runtime.tools.protocol import ExecCall, ToolResult, ToolSpec
from nibot_runtime.tools.registry import ExecContext


class _InstallArgs(BaseModel):
    """skills.install 输入参数。"""

    model_config = ConfigDict(extra="ignore")

    name: str = ""
    url: str = ""
    layer: str = ""


SKILL_INSTALL_SPEC = ToolSpec(
    name="skills.install",
    aliases=("install_skill", "skill_store_install"),
    description="Install skills from an https git repository.",
    args_hint='{"name":"evomap","url":"https://...","layer":"upstream"}',
)


def skill_install_tool(call: ExecCall, ctx: ExecContext) -> ToolResult:
    """
    执行 skills.install。

    返回：
    - ok=true：`installed skills: a, b`

    异常：
    - `ToolError`：参数非法、URL 被拒绝、策略拒绝
    - `FrameworkError`：安装失败（git 关闭、冲突、超限等）
    """

    if not ctx.policy.allows_tool(call.tool):
        raise ToolError("disabled by policy", error_kind=ErrorKind.POLICY_DENIED)

    args = parse_json_args("install_skill", call.args_raw, _InstallArgs, hint=SKILL_INSTALL_SPEC.args_hint)
    url = args.url.strip()
    layer = args.layer.strip().lower() or "upstream"
    if not args.name.strip():
        raise ToolError("install_skill requires name", error_kind=ErrorKind.VALIDATION)
    if not url:
        raise ToolError("install_skill requires url (https://...)", error_kind=ErrorKind.VALIDATION)
    if not is_safe_git_url(url):
        raise ToolError("install_skill denied: only https:// URLs are allowed", error_kind=ErrorKind.POLICY_DENIED)

    installed = install_skills_from_git(ctx.workspace, url, settings=ctx.settings, layer=layer, pool=ctx.pool)
    return ToolResult.success(call.tool, "installed skills: " + ", ".join(installed))
