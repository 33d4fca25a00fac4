"""
工具参数解析（JSON 参数 → pydantic 模型）。

约定：
- 需要 JSON 参数的工具：参数文本（去空白后）必须以 `{` 开头，否则报 `<tool> requires JSON args: <hint>`；
- JSON 语法/类型错误统一报 `invalid JSON args for <tool>: <原因>`；
- 未知字段被忽略（模型常附带多余字段）。
"""

from __future__ import annotations

import json
from typing import Type, TypeVar

from pydantic import BaseModel, ValidationError

from nibot_runtime.core.errors import ErrorKind, ToolError

ArgsModel = TypeVar("ArgsModel", bound=BaseModel)


def is_json_object_text(args_raw: str) -> bool:
    """参数文本是否形如 JSON 对象（以 `{` 开头）。"""

    return (args_raw or "").strip().startswith("{")


def _validation_reason(e: ValidationError) -> str:
    """把 pydantic 校验错误压缩为一行（取第一个错误）。"""

    errors = e.errors()
    if not errors:
        return str(e)
    first = errors[0]
    loc = ".".join(str(x) for x in first.get("loc", ()) if x != "__root__")
    msg = str(first.get("msg") or "invalid value")
    return f"{loc}: {msg}" if loc else msg


def parse_json_args(tool: str, args_raw: str, model: Type[ArgsModel], *, hint: str) -> ArgsModel:
    """
    解析 JSON 参数。

    参数：
    - tool：工具名（用于错误信息）
    - args_raw：原始参数文本
    - model：参数模型
    - hint：参数形状示例（例如 `{"path":"...","content":"..."}`）

    异常：
    - `ToolError(error_kind=validation)`：非 JSON 对象、JSON 语法错误或字段类型错误
    """

    if not is_json_object_text(args_raw):
        raise ToolError(f"{tool} requires JSON args: {hint}", error_kind=ErrorKind.VALIDATION)
    try:
        data = json.loads(args_raw)
    except json.JSONDecodeError as e:
        raise ToolError(f"invalid JSON args for {tool}: {e}", error_kind=ErrorKind.VALIDATION) from e
    if not isinstance(data, dict):
        raise ToolError(f"invalid JSON args for {tool}: expected an object", error_kind=ErrorKind.VALIDATION)
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise ToolError(f"invalid JSON args for {tool}: {_validation_reason(e)}", error_kind=ErrorKind.VALIDATION) from e


__all__ = ["is_json_object_text", "parse_json_args"]
