"""
ExecCallParser：从模型自由文本中提取 `[EXEC:<tool> <args>]` 调用。

状态机：
- seeking-tag：查找字面量 `[EXEC:`
- reading-tool：读取工具名，直到空白（空格/制表/回车/换行）或 `]`；随后跳过空格与制表
- reading-args：跟踪三组独立计数（字符串模式 + 反斜杠转义、`{}` 深度、`[]` 深度）；
  在“不在字符串内且两个深度都为 0”时遇到的第一个 `]` 结束参数

约束：
- 参数文本原样保留（仅去首尾空白），不反转义；
- 工具名为空的标签被丢弃，扫描从该标签结束处继续；
- 未闭合的标签终止扫描（其后的文本不再产生调用）。
"""

from __future__ import annotations

from enum import Enum
from typing import Iterator, List

from nibot_runtime.tools.protocol import ExecCall

TAG_PREFIX = "[EXEC:"
_TOOL_TERMINATORS = frozenset(" \t\r\n]")
_ARGS_LEADING_SKIP = frozenset(" \t")


class ParserState(str, Enum):
    """解析器顶层状态。"""

    SEEKING_TAG = "seeking-tag"
    READING_TOOL = "reading-tool"
    READING_ARGS = "reading-args"


class _ArgsScanner:
    """reading-args 子状态：字符串模式 + 两类括号深度。"""

    __slots__ = ("in_string", "escape", "brace_depth", "bracket_depth")

    def __init__(self) -> None:
        """初始化为“不在字符串内、深度为 0”。"""

        self.in_string = False
        self.escape = False
        self.brace_depth = 0
        self.bracket_depth = 0

    def feed(self, ch: str) -> bool:
        """
        消费一个字符。

        返回：
        - True：该字符是参数结束的 `]`（调用方据此切出参数文本）
        """

        if self.in_string:
            if self.escape:
                self.escape = False
            elif ch == "\\":
                self.escape = True
            elif ch == '"':
                self.in_string = False
            return False

        if ch == '"':
            self.in_string = True
        elif ch == "{":
            self.brace_depth += 1
        elif ch == "}":
            if self.brace_depth > 0:
                self.brace_depth -= 1
        elif ch == "[":
            self.bracket_depth += 1
        elif ch == "]":
            if self.brace_depth == 0 and self.bracket_depth == 0:
                return True
            if self.bracket_depth > 0:
                self.bracket_depth -= 1
        return False


def iter_exec_calls(text: str) -> Iterator[ExecCall]:
    """
    惰性地按从左到右顺序产出文本中的每个合法调用。

    参数：
    - text：模型输出的任意文本

    返回：
    - ExecCall 迭代器（可能为空）
    """

    if not text:
        return
    n = len(text)
    pos = 0
    state = ParserState.SEEKING_TAG
    tool = ""
    args_start = 0
    scanner = _ArgsScanner()

    while True:
        if state is ParserState.SEEKING_TAG:
            idx = text.find(TAG_PREFIX, pos)
            if idx < 0:
                return
            pos = idx + len(TAG_PREFIX)
            state = ParserState.READING_TOOL
            continue

        if state is ParserState.READING_TOOL:
            tool_start = pos
            while pos < n and text[pos] not in _TOOL_TERMINATORS:
                pos += 1
            tool = text[tool_start:pos].strip()
            while pos < n and text[pos] in _ARGS_LEADING_SKIP:
                pos += 1
            args_start = pos
            scanner = _ArgsScanner()
            state = ParserState.READING_ARGS
            continue

        # reading-args
        while pos < n:
            ch = text[pos]
            if scanner.feed(ch):
                args = text[args_start:pos].strip()
                pos += 1
                if tool:
                    yield ExecCall(tool=tool, args_raw=args)
                break
            pos += 1
        else:
            # 未闭合标签：停止扫描
            return
        state = ParserState.SEEKING_TAG


def extract_exec_calls(text: str) -> List[ExecCall]:
    """一次性提取全部调用；没有调用时返回空列表（不区分 None / 空）。"""

    return list(iter_exec_calls(text))
