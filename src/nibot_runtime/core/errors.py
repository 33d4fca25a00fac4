"""
运行时内部错误分类（异常类型 + 工具错误种类）。

说明：
- 异常用于模块间传递“错误层级”语义（框架错误 / 用户输入错误 / 工具执行错误）；
- 对外（回注模型、审计）统一使用 `ToolResult.error` + `ToolResult.error_kind`；
- 任何一种错误都只终结“当前这一次调用”，不会中断整个批次。
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict


class ErrorKind(str, Enum):
    """工具失败的稳定分类（写入 `ToolResult.error_kind`）。"""

    POLICY_DENIED = "policy_denied"
    APPROVAL_DENIED = "approval_denied"
    VALIDATION = "validation"
    PATH_VIOLATION = "path_violation"
    RESOURCE_LIMIT = "resource_limit"
    SANDBOX_UNAVAILABLE = "sandbox_unavailable"
    TIMEOUT = "timeout"
    PROCESS_FAILURE = "process_failure"
    UNKNOWN_TOOL = "unknown_tool"
    FEATURE_DISABLED = "feature_disabled"
    NOT_FOUND = "not_found"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"


class NibotError(Exception):
    """运行时错误基类（不建议直接抛出）。"""


@dataclass(frozen=True)
class FrameworkIssue:
    """框架结构化问题对象（可用于 CLI 输出中的 errors/warnings）。"""

    code: str
    message: str
    details: Dict[str, Any]


class FrameworkError(NibotError):
    """框架层结构化错误（英文 `code/message/details`）。"""

    def __init__(self, *, code: str, message: str, details: Dict[str, Any] | None = None) -> None:
        """创建框架错误。

        参数：
        - `code`：稳定错误码（英文大写下划线）
        - `message`：英文错误消息（会原样进入 ToolResult.error）
        - `details`：结构化上下文信息
        """

        super().__init__(message)
        self.code = code
        self.message = message
        self.details: Dict[str, Any] = details or {}

    def __str__(self) -> str:
        """返回错误消息本身（与回注给模型的文本一致）。"""

        return self.message

    def to_issue(self) -> FrameworkIssue:
        """把异常转换为可序列化问题对象。"""

        return FrameworkIssue(code=self.code, message=self.message, details=dict(self.details))


class UserError(FrameworkError):
    """调用方输入/配置导致的错误（参数缺失、路径越界等）。"""

    def __init__(self, message: str, *, code: str = "USER_ERROR", details: Dict[str, Any] | None = None) -> None:
        """创建 `UserError`。

        参数：
        - `message`：可读错误信息
        - `code`：错误码（默认 `USER_ERROR`）
        - `details`：结构化补充信息
        """

        super().__init__(code=code, message=message, details=details or {})


class ToolError(NibotError):
    """工具执行失败（超时、非零退出、功能关闭、策略拒绝等）。

    字段：
    - `error_kind`：`ErrorKind` 之一
    - `output`：失败前已经产生的部分输出（可为空）
    """

    def __init__(self, message: str, *, error_kind: ErrorKind, output: str = "") -> None:
        """创建 `ToolError`。"""

        super().__init__(message)
        self.message = message
        self.error_kind = error_kind
        self.output = output


class SandboxUnavailableError(ToolError):
    """要求使用沙箱但沙箱可执行文件不可用（fail-closed，不回退到非沙箱执行）。"""

    def __init__(self, message: str) -> None:
        """创建 `SandboxUnavailableError`。"""

        super().__init__(message, error_kind=ErrorKind.SANDBOX_UNAVAILABLE)


# FrameworkError.code -> ErrorKind（registry 把异常转换为 ToolResult 时使用）
ERROR_KIND_BY_CODE: Dict[str, ErrorKind] = {
    "USER_ERROR": ErrorKind.VALIDATION,
    "INVALID_ARGS": ErrorKind.VALIDATION,
    "PATH_VIOLATION": ErrorKind.PATH_VIOLATION,
    "SKILL_INSTALL_INVALID": ErrorKind.PATH_VIOLATION,
    "SKILL_INSTALL_TOO_LARGE": ErrorKind.RESOURCE_LIMIT,
    "SKILL_INSTALL_CONFLICT": ErrorKind.VALIDATION,
    "SKILL_INSTALL_DISABLED": ErrorKind.FEATURE_DISABLED,
    "SKILL_INSTALL_DENIED": ErrorKind.POLICY_DENIED,
    "SKILL_INSTALL_FAILED": ErrorKind.PROCESS_FAILURE,
    "SKILL_NOT_FOUND": ErrorKind.NOT_FOUND,
    "CONFIG_INVALID": ErrorKind.VALIDATION,
}


def error_kind_for(error: FrameworkError) -> ErrorKind:
    """按错误码映射到 `ErrorKind`；未登记的错误码归为 `validation`。"""

    return ERROR_KIND_BY_CODE.get(error.code, ErrorKind.VALIDATION)
