"""
持久化记忆库（SQLite）。

表结构：`memories(id, scope, tags, content, created_at)`。

实现约定：
- 每次操作使用短连接（`closing(sqlite3.connect(...))`），同一实例内的写操作由锁串行化；
- `list`/`search` 的 scope 为空或 `all` 时跨全部 scope，按 id 倒序返回；
- 开关关闭时 `open_memory_store` 返回 None，由工具层给出“功能关闭”错误。
"""

from __future__ import annotations

import sqlite3
import threading
from contextlib import closing
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Union

from nibot_runtime.config.loader import RuntimeSettings
from nibot_runtime.core.errors import UserError
from nibot_runtime.core.paths import resolve_workspace_path
from nibot_runtime.core.utils import now_rfc3339

LIST_DEFAULT_LIMIT = 50
LIST_MAX_LIMIT = 200
SEARCH_DEFAULT_LIMIT = 10
SEARCH_MAX_LIMIT = 50

_SCHEMA = """
CREATE TABLE IF NOT EXISTS memories (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  scope TEXT,
  tags TEXT,
  content TEXT,
  created_at TEXT
)
"""


@dataclass(frozen=True)
class MemoryItem:
    """一条记忆。"""

    id: int
    scope: str
    tags: str
    content: str
    created_at: str


def _is_all_scope(scope: str) -> bool:
    """空 scope 或 `all` 表示不过滤。"""

    s = (scope or "").strip()
    return not s or s.lower() == "all"


class SqliteMemoryStore:
    """
    SQLite 记忆库。

    参数：
    - db_path：数据库文件路径（父目录不存在时自动创建）
    """

    def __init__(self, db_path: Union[str, Path]) -> None:
        """打开（必要时创建）数据库并确保表存在。"""

        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        with closing(self._connect()) as conn:
            conn.execute(_SCHEMA)
            conn.commit()

    @property
    def db_path(self) -> Path:
        """数据库文件路径。"""

        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        """新建连接。"""

        return sqlite3.connect(str(self._db_path), timeout=5.0)

    def insert(self, scope: str, tags: str, content: str) -> int:
        """
        插入一条记忆并返回 id。

        异常：
        - `UserError`：content 为空
        """

        scope = (scope or "").strip() or "global"
        tags = (tags or "").strip()
        content = (content or "").strip()
        if not content:
            raise UserError("empty content", code="INVALID_ARGS")
        with self._lock, closing(self._connect()) as conn:
            cur = conn.execute(
                "INSERT INTO memories(scope, tags, content, created_at) VALUES (?, ?, ?, ?)",
                (scope, tags, content, now_rfc3339()),
            )
            conn.commit()
            return int(cur.lastrowid or 0)

    def delete(self, memory_id: int) -> None:
        """按 id 删除（不存在时静默成功）。"""

        if int(memory_id) <= 0:
            raise UserError("invalid id", code="INVALID_ARGS")
        with self._lock, closing(self._connect()) as conn:
            conn.execute("DELETE FROM memories WHERE id = ?", (int(memory_id),))
            conn.commit()

    def _query(self, sql_all: str, sql_scoped: str, scope: str, params: tuple) -> List[MemoryItem]:
        """执行查询并映射为 `MemoryItem`。"""

        with closing(self._connect()) as conn:
            if _is_all_scope(scope):
                rows = conn.execute(sql_all, params).fetchall()
            else:
                rows = conn.execute(sql_scoped, (scope.strip(),) + params).fetchall()
        return [
            MemoryItem(id=int(r[0]), scope=str(r[1] or ""), tags=str(r[2] or ""), content=str(r[3] or ""), created_at=str(r[4] or ""))
            for r in rows
        ]

    def list(self, scope: str = "", limit: int = LIST_DEFAULT_LIMIT) -> List[MemoryItem]:
        """按 id 倒序列出；limit ≤0 或 >200 时取 50。"""

        if limit <= 0 or limit > LIST_MAX_LIMIT:
            limit = LIST_DEFAULT_LIMIT
        return self._query(
            "SELECT id, scope, tags, content, created_at FROM memories ORDER BY id DESC LIMIT ?",
            "SELECT id, scope, tags, content, created_at FROM memories WHERE scope = ? ORDER BY id DESC LIMIT ?",
            scope,
            (limit,),
        )

    def search(self, scope: str, query: str, limit: int = SEARCH_DEFAULT_LIMIT) -> List[MemoryItem]:
        """
        子串匹配 content；limit ≤0 或 >50 时取 10。

        异常：
        - `UserError`：query 为空
        """

        q = (query or "").strip()
        if not q:
            raise UserError("empty query", code="INVALID_ARGS")
        if limit <= 0 or limit > SEARCH_MAX_LIMIT:
            limit = SEARCH_DEFAULT_LIMIT
        pattern = f"%{q}%"
        return self._query(
            "SELECT id, scope, tags, content, created_at FROM memories WHERE content LIKE ? ORDER BY id DESC LIMIT ?",
            "SELECT id, scope, tags, content, created_at FROM memories WHERE scope = ? AND content LIKE ? "
            "ORDER BY id DESC LIMIT ?",
            scope,
            (pattern, limit),
        )

    def count(self) -> int:
        """记忆总数。"""

        with closing(self._connect()) as conn:
            row = conn.execute("SELECT COUNT(1) FROM memories").fetchone()
        return int(row[0]) if row else 0


def open_memory_store(workspace: Union[str, Path], settings: RuntimeSettings) -> Optional[SqliteMemoryStore]:
    """
    按配置打开记忆库。

    返回：
    - `SqliteMemoryStore`；`settings.memory.backend != "sqlite"` 时返回 None

    异常：
    - `UserError(PATH_VIOLATION)`：db_path 越出 workspace
    """

    if settings.memory.backend != "sqlite":
        return None
    return SqliteMemoryStore(resolve_workspace_path(workspace, settings.memory.db_path))


__all__ = ["MemoryItem", "SqliteMemoryStore", "open_memory_store"]
