"""CLI 输出解析器模块。

cli-agent-exec shared/parsers v0.1.0

三种协议族各有一个纯函数解析器，统一返回 StreamParseResult:
- plain_text: OpenCode 纯文本输出
- stream_json: Claude Code 累积式 NDJSON 事件
- exec_json: Codex 离散式 NDJSON 事件

用法:
    from cli_agent_exec.shared.parsers import parse_exec_json

    parsed = parse_exec_json(stdout)
    print(parsed.assistant_text, parsed.token_usage)
"""

from __future__ import annotations

from .base import (
    StreamParseResult,
    TokenUsage,
    VERSION,
    reconcile_token_usage,
)
from .exec_json import extract_exec_assistant_text, parse_exec_json
from .plain_text import extract_plain_text_token_usage, parse_plain_text_output
from .stream_json import (
    CumulativeTextTracker,
    extract_stream_assistant_text,
    parse_stream_json,
)

__version__ = VERSION

__all__ = [
    "__version__",
    # 类型
    "StreamParseResult",
    "TokenUsage",
    "reconcile_token_usage",
    # 纯文本
    "parse_plain_text_output",
    "extract_plain_text_token_usage",
    # stream-json
    "parse_stream_json",
    "extract_stream_assistant_text",
    "CumulativeTextTracker",
    # exec-json
    "parse_exec_json",
    "extract_exec_assistant_text",
]
