"""
内置工具（builtin tools）。

工具目录（规范名 / 同义名）：
- 文件：`fs.read`/`file_read`、`fs.write`/`file_write`
- 执行：`runtime.exec`/`shell_exec`、`skill.exec`/`skill_exec`
- 记忆：`memory.store`、`memory.recall`、`memory.forget`、`memory.list`、`memory.stats`
- 安装：`skills.install`/`install_skill`/`skill_store_install`
"""

from __future__ import annotations

from nibot_runtime.tools.builtin.fs_read import FS_READ_SPEC, fs_read
from nibot_runtime.tools.builtin.fs_write import FS_WRITE_SPEC, fs_write
from nibot_runtime.tools.builtin.memory import (
    MEMORY_FORGET_SPEC,
    MEMORY_LIST_SPEC,
    MEMORY_RECALL_SPEC,
    MEMORY_STATS_SPEC,
    MEMORY_STORE_SPEC,
    memory_forget,
    memory_list,
    memory_recall,
    memory_stats,
    memory_store,
)
from nibot_runtime.tools.builtin.runtime_exec import RUNTIME_EXEC_SPEC, runtime_exec
from nibot_runtime.tools.builtin.skill_exec import SKILL_EXEC_SPEC, skill_exec
from nibot_runtime.tools.builtin.skill_install import SKILL_INSTALL_SPEC, skill_install_tool
from nibot_runtime.tools.registry import ToolRegistry

__all__ = ["register_builtin_tools"]

_BUILTIN_TOOL_ENTRIES = [
    (FS_READ_SPEC, fs_read),
    (FS_WRITE_SPEC, fs_write),
    (RUNTIME_EXEC_SPEC, runtime_exec),
    (SKILL_EXEC_SPEC, skill_exec),
    (MEMORY_STORE_SPEC, memory_store),
    (MEMORY_RECALL_SPEC, memory_recall),
    (MEMORY_FORGET_SPEC, memory_forget),
    (MEMORY_LIST_SPEC, memory_list),
    (MEMORY_STATS_SPEC, memory_stats),
    (SKILL_INSTALL_SPEC, skill_install_tool),
]


def register_builtin_tools(registry: ToolRegistry, *, override: bool = False) -> None:
    """
    注册全部内置工具。

    参数：
    - registry：工具注册表
    - override：是否允许覆盖同名工具（默认 False）
    """

    for spec, handler in _BUILTIN_TOOL_ENTRIES:
        registry.register(spec, handler, override=override)
