"""
内置工具：memory.store / memory.recall / memory.forget / memory.list / memory.stats。

所有工具都要求持久化记忆库已启用（`NIBOT_MEMORY_DB=sqlite` 或 `NIBOT_STORAGE=sqlite`）；
memory.store 写入前先对内容做脱敏。
"""

from __future__ import annotations

from typing import List

from pydantic import BaseModel, ConfigDict

from nibot_runtime.core.errors import ErrorKind, ToolError
from nibot_runtime.core.redaction import redact_secrets
from nibot_runtime.core.utils import preview_text
from nibot_runtime.state.memory_store import (
    LIST_DEFAULT_LIMIT,
    MemoryItem,
    SqliteMemoryStore,
    open_memory_store,
)
from nibot_runtime.tools.args import parse_json_args
from nibot_runtime.tools.protocol import ExecCall, ToolResult, ToolSpec
from nibot_runtime.tools.registry import ExecContext

RECALL_PREVIEW_BYTES = 240
LIST_PREVIEW_BYTES = 200


class _StoreArgs(BaseModel):
    """memory.store 输入参数。"""

    model_config = ConfigDict(extra="ignore")

    scope: str = ""
    tags: str = ""
    content: str = ""


class _RecallArgs(BaseModel):
    """memory.recall 输入参数。"""

    model_config = ConfigDict(extra="ignore")

    query: str = ""
    scope: str = ""
    limit: int = 0


class _ForgetArgs(BaseModel):
    """memory.forget 输入参数。"""

    model_config = ConfigDict(extra="ignore")

    id: int = 0


class _ListArgs(BaseModel):
    """memory.list 输入参数。"""

    model_config = ConfigDict(extra="ignore")

    scope: str = ""
    limit: int = 0


MEMORY_STORE_SPEC = ToolSpec(
    name="memory.store",
    description="Store a durable memory.",
    args_hint='{"scope":"global","tags":"...","content":"..."}',
)
MEMORY_RECALL_SPEC = ToolSpec(
    name="memory.recall",
    description="Search stored memories by substring.",
    args_hint='{"query":"...","scope":"global","limit":10}',
)
MEMORY_FORGET_SPEC = ToolSpec(
    name="memory.forget",
    description="Delete a stored memory by id.",
    args_hint='{"id":123}',
)
MEMORY_LIST_SPEC = ToolSpec(
    name="memory.list",
    description="List recent memories.",
    args_hint='{"scope":"global","limit":50}',
)
MEMORY_STATS_SPEC = ToolSpec(name="memory.stats", description="Count stored memories.")


def _require_store(ctx: ExecContext) -> SqliteMemoryStore:
    """打开记忆库；未启用时报 feature_disabled。"""

    store = open_memory_store(ctx.workspace, ctx.settings)
    if store is None:
        raise ToolError(
            "memory db disabled (set NIBOT_MEMORY_DB=sqlite or NIBOT_STORAGE=sqlite)",
            error_kind=ErrorKind.FEATURE_DISABLED,
        )
    return store


def _format_items(items: List[MemoryItem], preview_bytes: int) -> str:
    """`- id=N scope=S tags=T: <preview>` 每条一行。"""

    return "\n".join(
        f"- id={it.id} scope={it.scope} tags={it.tags}: {preview_text(it.content, preview_bytes)}" for it in items
    )


def memory_store(call: ExecCall, ctx: ExecContext) -> ToolResult:
    """memory.store：写入一条记忆（内容先脱敏）。"""

    args = parse_json_args("memory.store", call.args_raw, _StoreArgs, hint=MEMORY_STORE_SPEC.args_hint)
    scope = args.scope.strip() or "global"
    content = args.content.strip()
    if not content:
        raise ToolError("memory.store requires content", error_kind=ErrorKind.VALIDATION)
    store = _require_store(ctx)
    memory_id = store.insert(scope, args.tags, redact_secrets(content))
    return ToolResult.success(call.tool, f"stored memory id={memory_id} scope={scope}")


def memory_recall(call: ExecCall, ctx: ExecContext) -> ToolResult:
    """memory.recall：按子串检索。"""

    args = parse_json_args("memory.recall", call.args_raw, _RecallArgs, hint=MEMORY_RECALL_SPEC.args_hint)
    query = args.query.strip()
    if not query:
        raise ToolError("memory.recall requires query", error_kind=ErrorKind.VALIDATION)
    items = _require_store(ctx).search(args.scope, query, args.limit)
    if not items:
        return ToolResult.success(call.tool, "(no matches)")
    return ToolResult.success(call.tool, _format_items(items, RECALL_PREVIEW_BYTES))


def memory_forget(call: ExecCall, ctx: ExecContext) -> ToolResult:
    """memory.forget：按 id 删除。"""

    args = parse_json_args("memory.forget", call.args_raw, _ForgetArgs, hint=MEMORY_FORGET_SPEC.args_hint)
    if args.id <= 0:
        raise ToolError("memory.forget requires id", error_kind=ErrorKind.VALIDATION)
    _require_store(ctx).delete(args.id)
    return ToolResult.success(call.tool, f"deleted memory id={args.id}")


def memory_list(call: ExecCall, ctx: ExecContext) -> ToolResult:
    """memory.list：参数可省略。"""

    scope = ""
    limit = LIST_DEFAULT_LIMIT
    if call.args_raw.strip():
        args = parse_json_args("memory.list", call.args_raw, _ListArgs, hint=MEMORY_LIST_SPEC.args_hint)
        scope = args.scope.strip()
        if args.limit > 0:
            limit = args.limit
    items = _require_store(ctx).list(scope, limit)
    if not items:
        return ToolResult.success(call.tool, "(empty)")
    return ToolResult.success(call.tool, _format_items(items, LIST_PREVIEW_BYTES))


def memory_stats(call: ExecCall, ctx: ExecContext) -> ToolResult:
    """memory.stats：参数被忽略。"""

    return ToolResult.success(call.tool, f"memories={_require_store(ctx).count()}")
