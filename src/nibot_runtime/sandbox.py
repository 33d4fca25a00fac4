"""
SandboxWrapper：把一次子进程 argv 前缀为外部沙箱可执行文件。

说明：
- 本模块只负责“如何把 argv 包装成沙箱内执行”，不负责 policy/approval（那是 safety 层职责）；
- fail-closed：沙箱被启用但可执行文件不可定位时，直接报错，不回退到非沙箱执行；
- 沙箱未启用时 `build_sandbox_adapter` 返回 None，调用方原样执行 argv。
"""

from __future__ import annotations

import logging
import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol

from nibot_runtime.core.errors import SandboxUnavailableError

logger = logging.getLogger(__name__)


def default_sandbox_bin() -> str:
    """平台默认的沙箱可执行文件名。"""

    if os.name == "nt":
        return "trae-sandbox.exe"
    return "trae-sandbox"


@dataclass(frozen=True)
class PreparedCommand:
    """
    沙箱准备后的命令（可直接交给 Executor 执行）。

    字段：
    - argv：可执行命令 argv
    - cwd：Executor 进程的工作目录
    """

    argv: list[str]
    cwd: Path


class SandboxAdapter(Protocol):
    """
    沙箱 adapter 抽象接口。

    方法：
    - `is_available()`：沙箱可执行文件是否可定位
    - `prepare(argv, cwd)`：包装 argv；不可用时抛 `SandboxUnavailableError`
    """

    def is_available(self) -> bool:
        """沙箱是否可用。"""

        ...

    def prepare(self, argv: list[str], cwd: Path) -> PreparedCommand:
        """把 argv 包装为沙箱内执行形式。"""

        ...


class PrefixSandboxAdapter:
    """
    前缀式 adapter：`[<binary>, *argv]`。

    定位规则：
    - 绝对路径：文件必须存在
    - 裸命令名：必须能在 PATH 中找到
    """

    def __init__(self, binary: str = "") -> None:
        """
        创建 adapter。

        参数：
        - binary：沙箱可执行文件（绝对路径或命令名）；为空时使用平台默认名
        """

        self._binary = str(binary or "").strip() or default_sandbox_bin()

    @property
    def binary(self) -> str:
        """配置的沙箱可执行文件。"""

        return self._binary

    def is_available(self) -> bool:
        """检查沙箱可执行文件是否可用（PATH 或绝对路径）。"""

        if Path(self._binary).is_absolute():
            return Path(self._binary).exists()
        return shutil.which(self._binary) is not None

    def prepare(self, argv: list[str], cwd: Path) -> PreparedCommand:
        """
        前缀包装。

        异常：
        - `SandboxUnavailableError`：argv 为空，或沙箱可执行文件不可定位
        """

        if not argv:
            raise SandboxUnavailableError("empty command argv")
        if Path(self._binary).is_absolute():
            if not Path(self._binary).exists():
                logger.warning("sandbox binary missing, refusing to run: %s", self._binary)
                raise SandboxUnavailableError(f"sandbox binary not found: {self._binary}")
        elif shutil.which(self._binary) is None:
            logger.warning("sandbox binary not in PATH, refusing to run: %s", self._binary)
            raise SandboxUnavailableError(f"sandbox enabled but {self._binary} not found in PATH")
        logger.debug("wrapping command with sandbox %s", self._binary)
        return PreparedCommand(argv=[self._binary, *argv], cwd=Path(cwd))


def build_sandbox_adapter(settings: object) -> Optional[SandboxAdapter]:
    """
    基于 `RuntimeSettings.sandbox` 创建 adapter。

    返回：
    - `PrefixSandboxAdapter`；沙箱未启用时返回 None
    """

    section = getattr(settings, "sandbox")
    if not bool(getattr(section, "enabled", False)):
        return None
    return PrefixSandboxAdapter(str(getattr(section, "binary", "") or ""))


__all__ = ["PreparedCommand", "PrefixSandboxAdapter", "SandboxAdapter", "build_sandbox_adapter", "default_sandbox_bin"]
