"""
Tool 协议（ExecCall / ToolResult / ToolSpec）。

本模块只定义“可实现级”的最小协议：
- ExecCall：从模型文本中解析出的一次调用（工具名 + 原始参数文本）
- ToolResult：一次调用的执行结果（与 ExecCall 列表按下标对齐）
- ToolSpec：注册表条目（规范名 + 同义名 + 说明）
"""

from __future__ import annotations

from typing import Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, model_validator

from nibot_runtime.core.errors import ErrorKind


class ExecCall(BaseModel):
    """
    一次工具调用（解析器产物）。

    字段：
    - tool：工具名（原样保留模型写的名字，可能是同义名）
    - args_raw：工具名之后、匹配的右方括号之前的原始文本（JSON 对象或裸字符串；不做反转义）
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    tool: str
    args_raw: str = ""


class ToolResult(BaseModel):
    """
    工具执行结果。

    字段：
    - tool：对应调用的工具名
    - ok：是否成功
    - output：工具输出（失败时也可能包含超时前/崩溃前的部分输出）
    - error：错误信息（ok=false 时必填，已脱敏）
    - error_kind：错误分类（ok=false 时必填）
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    tool: str
    ok: bool
    output: str = ""
    error: str = ""
    error_kind: Optional[ErrorKind] = None

    @model_validator(mode="after")
    def _check_failure_fields(self) -> "ToolResult":
        """失败结果必须带 error 与 error_kind。"""

        if not self.ok:
            if not self.error:
                raise ValueError("failed ToolResult requires a non-empty error")
            if self.error_kind is None:
                raise ValueError("failed ToolResult requires error_kind")
        return self

    @classmethod
    def success(cls, tool: str, output: str) -> "ToolResult":
        """便捷构造：成功结果。"""

        return cls(tool=tool, ok=True, output=output)

    @classmethod
    def failure(cls, tool: str, error: str, *, error_kind: ErrorKind, output: str = "") -> "ToolResult":
        """便捷构造：失败结果（error 为空时兜底为 error_kind 文本）。"""

        return cls(tool=tool, ok=False, output=output, error=error or error_kind.value, error_kind=error_kind)


class ToolSpec(BaseModel):
    """
    Tool 注册信息。

    字段：
    - name：规范工具名（例如 `fs.read`）
    - aliases：同义名（例如 `file_read`），路由到同一 handler
    - description：一句话说明（CLI/文档展示）
    - args_hint：参数形状示例（用于参数错误提示）
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str
    aliases: Tuple[str, ...] = Field(default_factory=tuple)
    description: str = ""
    args_hint: str = ""

    def all_names(self) -> Tuple[str, ...]:
        """返回规范名 + 全部同义名。"""

        return (self.name, *self.aliases)
