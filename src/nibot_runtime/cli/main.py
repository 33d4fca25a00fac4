"""
Nibot Runtime CLI（exec/parse/policy/skills）。

约束：
- 使用 argparse（不引入第三方 CLI 依赖）
- stdout 输出机器可读 JSON；失败时也输出 JSON
- exit code：0 成功；1 存在失败结果或 error 级诊断；2 用法错误
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from nibot_runtime.bootstrap import build_exec_context
from nibot_runtime.core.audit import AuditLog
from nibot_runtime.core.errors import FrameworkError, FrameworkIssue
from nibot_runtime.safety.approvals import (
    ApprovalGate,
    AutoApproveGate,
    DenyAllGate,
    PromptApprovalGate,
    SessionApprovalGate,
)
from nibot_runtime.skills.discovery import discover_skill_scripts, discover_skills
from nibot_runtime.skills.doctor import check_skill, diagnose_skills
from nibot_runtime.skills.installer import install_skills_from_git, install_skills_from_path
from nibot_runtime.tools.dispatcher import execute_calls, format_tool_results
from nibot_runtime.tools.parser import extract_exec_calls
from nibot_runtime.tools.registry import ExecContext

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2


def _dump_json_to_stdout(obj: Dict[str, Any], *, pretty: bool) -> None:
    """
    将 dict 输出为 JSON 到 stdout（末尾包含换行）。

    参数：
    - obj：待输出对象
    - pretty：是否启用 pretty-print（indent=2）
    """

    if pretty:
        text = json.dumps(obj, ensure_ascii=False, indent=2)
    else:
        text = json.dumps(obj, ensure_ascii=False, separators=(",", ":"))
    print(text)


def _issues_to_jsonable(issues: List[FrameworkIssue]) -> List[Dict[str, Any]]:
    """将 FrameworkIssue 列表投影为可 JSON 序列化结构。"""

    return [{"code": it.code, "message": it.message, "details": dict(it.details)} for it in issues]


def _dump_error(err: FrameworkError, *, pretty: bool) -> int:
    """输出框架错误并返回 exit code 1。"""

    _dump_json_to_stdout({"ok": False, "issues": _issues_to_jsonable([err.to_issue()])}, pretty=pretty)
    return EXIT_FAILED


def _read_text_arg(args: argparse.Namespace) -> str:
    """`--text` 或 `--text-file`（utf-8）。"""

    if args.text is not None:
        return str(args.text)
    return Path(str(args.text_file)).expanduser().read_text(encoding="utf-8")


def _build_context(args: argparse.Namespace) -> ExecContext:
    """按公共 flags 构造 ExecContext。"""

    ws = Path(str(args.workspace_root)).expanduser().resolve()
    return build_exec_context(
        ws,
        config_paths=[Path(p).expanduser() for p in args.config],
        use_dotenv=not bool(args.no_dotenv),
    )


def _select_approver(args: argparse.Namespace) -> ApprovalGate:
    """`--yes` 自动放行；TTY 上交互询问；否则拒绝。"""

    if args.yes:
        return AutoApproveGate()
    if sys.stdin.isatty():
        return SessionApprovalGate(PromptApprovalGate(input, output=sys.stderr))
    return DenyAllGate()


def _handle_exec(args: argparse.Namespace) -> int:
    """解析文本中的调用并执行。"""

    ctx = _build_context(args)
    text = _read_text_arg(args)
    calls = extract_exec_calls(text)
    audit: Optional[AuditLog] = None
    if args.audit_log:
        audit = AuditLog(Path(str(args.audit_log)).expanduser(), level=ctx.settings.audit.level)
    results = execute_calls(ctx, calls, _select_approver(args), audit=audit)
    _dump_json_to_stdout(
        {
            "ok": all(r.ok for r in results),
            "calls": [c.model_dump(mode="json") for c in calls],
            "results": [r.model_dump(mode="json") for r in results],
            "feedback": format_tool_results(results) if results else "",
        },
        pretty=args.pretty,
    )
    return EXIT_OK if all(r.ok for r in results) else EXIT_FAILED


def _handle_parse(args: argparse.Namespace) -> int:
    """只解析，不执行。"""

    calls = extract_exec_calls(_read_text_arg(args))
    _dump_json_to_stdout({"calls": [c.model_dump(mode="json") for c in calls]}, pretty=args.pretty)
    return EXIT_OK


def _handle_policy_show(args: argparse.Namespace) -> int:
    """输出已解析的有效策略。"""

    ctx = _build_context(args)
    _dump_json_to_stdout({"policy": ctx.policy.model_dump(mode="json")}, pretty=args.pretty)
    return EXIT_OK


def _handle_skills(args: argparse.Namespace) -> int:
    """skills 子命令分派。"""

    ctx = _build_context(args)
    ws = ctx.workspace
    cmd = args.skills_cmd

    if cmd == "list":
        skills = discover_skills(ws)
        _dump_json_to_stdout({"skills": [s.model_dump(mode="json") for s in skills]}, pretty=args.pretty)
        return EXIT_OK
    if cmd == "scripts":
        scripts = discover_skill_scripts(ws)
        _dump_json_to_stdout({"scripts": [s.model_dump(mode="json") for s in scripts]}, pretty=args.pretty)
        return EXIT_OK
    if cmd in ("doctor", "check"):
        if cmd == "doctor":
            issues = diagnose_skills(ws, ctx.settings)
        else:
            issues = check_skill(ws, str(args.name), ctx.settings)
        _dump_json_to_stdout({"issues": [i.model_dump(mode="json") for i in issues]}, pretty=args.pretty)
        return EXIT_FAILED if any(i.level == "error" for i in issues) else EXIT_OK

    source = str(args.source).strip()
    if source.lower().startswith("https://"):
        installed = install_skills_from_git(
            ws, source, settings=ctx.settings, layer=args.layer or "upstream", pool=ctx.pool
        )
    else:
        installed = install_skills_from_path(ws, source, settings=ctx.settings, layer=args.layer or "local")
    _dump_json_to_stdout({"ok": True, "installed": installed}, pretty=args.pretty)
    return EXIT_OK


def _build_parser() -> argparse.ArgumentParser:
    """构建 CLI argparse parser。"""

    parser = argparse.ArgumentParser(
        prog="nibot-runtime",
        description="Nibot Runtime CLI（exec/parse/policy/skills）。",
    )
    root_sub = parser.add_subparsers(dest="command", required=True)

    def _add_common_flags(p: argparse.ArgumentParser) -> None:
        """为子命令添加公共 flags。"""

        p.add_argument("--workspace-root", default=".", help="Workspace root directory (default: .)")
        p.add_argument("--config", action="append", default=[], help="Overlay config YAML path (repeatable).")
        p.add_argument("--pretty", action="store_true", help="Pretty-print JSON output.")
        p.add_argument("--no-dotenv", action="store_true", help="Disable loading .env from workspace root.")
        p.add_argument("--verbose", action="store_true", help="Debug logging to stderr.")

    def _add_text_source(p: argparse.ArgumentParser) -> None:
        """`--text` / `--text-file` 二选一。"""

        group = p.add_mutually_exclusive_group(required=True)
        group.add_argument("--text", default=None, help="Model output text containing [EXEC:...] tags.")
        group.add_argument("--text-file", default=None, help="File containing model output text (utf-8).")

    exec_p = root_sub.add_parser("exec", help="Parse and execute tool calls")
    _add_common_flags(exec_p)
    _add_text_source(exec_p)
    exec_p.add_argument("--yes", action="store_true", help="Approve every call that requires approval.")
    exec_p.add_argument("--audit-log", default=None, help="Append audit records to this file.")

    parse_p = root_sub.add_parser("parse", help="Parse tool calls only")
    _add_common_flags(parse_p)
    _add_text_source(parse_p)

    policy = root_sub.add_parser("policy", help="Policy commands")
    policy_sub = policy.add_subparsers(dest="policy_cmd", required=True)
    _add_common_flags(policy_sub.add_parser("show", help="Show the effective tool policy"))

    skills = root_sub.add_parser("skills", help="Skills commands")
    skills_sub = skills.add_subparsers(dest="skills_cmd", required=True)
    _add_common_flags(skills_sub.add_parser("list", help="List discovered skills"))
    _add_common_flags(skills_sub.add_parser("scripts", help="List skill scripts"))
    _add_common_flags(skills_sub.add_parser("doctor", help="Diagnose all skills"))
    check = skills_sub.add_parser("check", help="Check one skill")
    _add_common_flags(check)
    check.add_argument("name", help="Skill name")
    install = skills_sub.add_parser("install", help="Install skills from a directory, .zip or https git URL")
    _add_common_flags(install)
    install.add_argument("source", help="Directory, .zip file or https:// git URL")
    install.add_argument("--layer", default=None, choices=["local", "upstream", "override"], help="Install layer.")

    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    """
    CLI 入口函数（用于 console_scripts 与测试）。

    参数：
    - argv：命令行参数列表（不含程序名）；为 None 时读取 sys.argv[1:]

    返回：
    - int：exit code（不会直接 sys.exit，便于测试）
    """

    parser = _build_parser()
    try:
        args = parser.parse_args(list(argv) if argv is not None else None)
    except SystemExit as exc:
        # argparse：`--help` 为 0，参数错误为 2
        code = getattr(exc, "code", EXIT_USAGE)
        return EXIT_USAGE if code is None else int(code)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        stream=sys.stderr,
        format="%(levelname)s %(name)s: %(message)s",
    )

    try:
        if args.command == "exec":
            return _handle_exec(args)
        if args.command == "parse":
            return _handle_parse(args)
        if args.command == "policy":
            return _handle_policy_show(args)
        return _handle_skills(args)
    except FrameworkError as e:
        logger.debug("command failed: %s", e, exc_info=True)
        return _dump_error(e, pretty=args.pretty)
    except OSError as e:
        return _dump_error(
            FrameworkError(code="CLI_IO_ERROR", message=str(e), details={"type": type(e).__name__}),
            pretty=args.pretty,
        )


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
