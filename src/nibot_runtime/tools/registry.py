"""
ToolRegistry：工具注册表与派发（dispatch）。

本模块提供：
- `ExecContext`：一次派发批次内不可变的执行上下文（workspace、policy、settings、进程槽位池、沙箱 adapter）
- 注册：`register/resolve/get_spec/list_specs`（规范名与同义名路由到同一 handler）
- 执行：`dispatch(call, ctx) -> ToolResult`（handler 抛出的任何错误都被转换为失败结果）

说明：
- policy/approval 的门禁在 `dispatcher.execute_calls` 中完成；本模块只负责路由与错误归一化；
- 失败结果的 error 文本统一经过 Redactor。
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from nibot_runtime.config.loader import RuntimeSettings
from nibot_runtime.core.errors import ErrorKind, FrameworkError, ToolError, UserError, error_kind_for
from nibot_runtime.core.executor import CommandResult, Executor, ExecutorPool, default_executor_pool
from nibot_runtime.core.paths import resolve_workspace_path
from nibot_runtime.core.redaction import redact_secrets
from nibot_runtime.safety.policy import ToolPolicy
from nibot_runtime.sandbox import SandboxAdapter
from nibot_runtime.tools.protocol import ExecCall, ToolResult, ToolSpec

logger = logging.getLogger(__name__)

ToolHandler = Callable[[ExecCall, "ExecContext"], ToolResult]


@dataclass(frozen=True)
class ExecContext:
    """
    Tool 执行上下文（派发层注入，批次内不可变）。

    字段：
    - workspace：workspace 根目录（绝对路径）
    - policy：已解析的 ToolPolicy
    - settings：运行时配置（exec/sandbox/skills/memory 等开关与限额）
    - pool：进程并发槽位池（runtime.exec / skill.exec 共享）；缺省为进程级共享池 `default_executor_pool()`
    - executor：有界子进程执行器
    - sandbox：沙箱 adapter；None 表示不启用沙箱
    - cancel_checker：可选；返回 True 时终止正在运行的子进程
    """

    workspace: Path
    policy: ToolPolicy
    settings: RuntimeSettings = field(default_factory=RuntimeSettings)
    pool: Optional[ExecutorPool] = None
    executor: Optional[Executor] = None
    sandbox: Optional[SandboxAdapter] = None
    cancel_checker: Optional[Callable[[], bool]] = None

    def __post_init__(self) -> None:
        """workspace 绝对化；缺省 executor 按 settings 的输出上限构造；缺省 pool 取进程级共享池。"""

        object.__setattr__(self, "workspace", Path(self.workspace).absolute())
        if self.pool is None:
            object.__setattr__(self, "pool", default_executor_pool(max_concurrent=self.settings.exec.max_concurrent))
        if self.executor is None:
            object.__setattr__(self, "executor", Executor(max_output_bytes=self.settings.exec.max_output_bytes))

    def resolve_path(self, path: str) -> Path:
        """
        把相对路径解析到 workspace 内。

        异常：
        - `UserError(code=PATH_VIOLATION)`
        """

        return resolve_workspace_path(self.workspace, path)

    def run_argv(self, argv: List[str], *, timeout_ms: int) -> CommandResult:
        """
        在 workspace 下执行 argv（沙箱包装 → 获取槽位 → 有界执行）。

        异常：
        - `SandboxUnavailableError`：沙箱启用但不可用（不会回退为非沙箱执行）
        """

        cwd = self.workspace
        if self.sandbox is not None:
            prepared = self.sandbox.prepare(list(argv), cwd)
            argv, cwd = prepared.argv, prepared.cwd
        executor = self.executor or Executor(max_output_bytes=self.settings.exec.max_output_bytes)
        return executor.run_command(
            list(argv),
            cwd=cwd,
            timeout_ms=timeout_ms,
            pool=self.pool,
            cancel_checker=self.cancel_checker,
        )


class ToolRegistry:
    """工具注册表。"""

    def __init__(self) -> None:
        """创建空注册表。"""

        self._specs: Dict[str, ToolSpec] = {}
        self._routes: Dict[str, Tuple[ToolSpec, ToolHandler]] = {}

    def register(self, spec: ToolSpec, handler: ToolHandler, *, override: bool = False) -> None:
        """
        注册工具（规范名 + 全部同义名）。

        参数：
        - spec：工具规格
        - handler：工具执行函数
        - override：是否允许覆盖已注册名字；默认 False（重复注册抛 UserError）
        """

        for name in spec.all_names():
            if name in self._routes and not override:
                raise UserError(f"duplicate tool registration: {name}")
        self._specs[spec.name] = spec
        for name in spec.all_names():
            self._routes[name] = (spec, handler)

    def resolve(self, name: str) -> Optional[Tuple[ToolSpec, ToolHandler]]:
        """按规范名或同义名查找；不存在返回 None。"""

        return self._routes.get(name)

    def get_spec(self, name: str) -> ToolSpec:
        """获取工具规格；不存在则抛 `UserError`。"""

        route = self._routes.get(name)
        if route is None:
            raise UserError(f"unknown tool: {name}")
        return route[0]

    def list_specs(self) -> List[ToolSpec]:
        """按注册顺序返回所有工具规格。"""

        return list(self._specs.values())

    def dispatch(self, call: ExecCall, ctx: ExecContext) -> ToolResult:
        """
        执行一次调用并归一化结果。

        规则：
        - 未注册 → `unknown tool`
        - `ToolError` → 其 error_kind（保留部分输出）
        - `FrameworkError`/`UserError` → 按错误码映射 error_kind
        - `OSError` → not_found（文件不存在）/ unknown
        - 其它异常 → unknown（批次不中断）
        """

        route = self._routes.get(call.tool)
        if route is None:
            return ToolResult.failure(call.tool, "unknown tool", error_kind=ErrorKind.UNKNOWN_TOOL)
        _spec, handler = route

        try:
            result = handler(call, ctx)
        except ToolError as e:
            result = ToolResult.failure(call.tool, str(e), error_kind=e.error_kind, output=e.output)
        except FrameworkError as e:
            result = ToolResult.failure(call.tool, str(e), error_kind=error_kind_for(e))
        except FileNotFoundError as e:
            result = ToolResult.failure(call.tool, str(e), error_kind=ErrorKind.NOT_FOUND)
        except OSError as e:
            result = ToolResult.failure(call.tool, str(e), error_kind=ErrorKind.UNKNOWN)
        except Exception as e:
            logger.debug("tool handler raised unexpectedly: %s", call.tool, exc_info=True)
            result = ToolResult.failure(call.tool, f"{type(e).__name__}: {e}", error_kind=ErrorKind.UNKNOWN)

        if result.ok:
            return result
        return result.model_copy(update={"error": redact_secrets(result.error)})


__all__ = ["ExecContext", "ToolHandler", "ToolRegistry"]
