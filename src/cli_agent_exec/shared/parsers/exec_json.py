"""exec-json 输出解析器（Codex）。

cli-agent-exec shared/parsers v0.1.0

Codex `exec --json` 每行输出一个离散事件:
- item.completed: item.type 为 agent_message 时携带一轮完整的助手文本
- turn.completed: 携带 usage（cached_input_tokens 计入缓存读取）
- turn.failed / error: 标记失败并收集错误消息

各轮文本互相独立，最终以空行拼接。
"""

from __future__ import annotations

import json
from typing import Any

from .base import StreamParseResult, iter_json_events, reconcile_token_usage

__all__ = [
    "parse_exec_json",
    "extract_exec_assistant_text",
    "ASSISTANT_ITEM_TYPES",
]

ASSISTANT_ITEM_TYPES = frozenset({"agent_message", "assistant_message"})


def _completed_item_text(event: dict[str, Any]) -> str | None:
    if event.get("type") != "item.completed":
        return None
    item = event.get("item")
    if not isinstance(item, dict) or item.get("type") not in ASSISTANT_ITEM_TYPES:
        return None
    text = item.get("text")
    if not isinstance(text, str) or not text.strip():
        return None
    return text.strip()


def extract_exec_assistant_text(line: str) -> str | None:
    """从单行输出中提取助手文本，用于实时回显。"""
    line = line.strip()
    if not line.startswith("{"):
        return None
    try:
        event = json.loads(line)
    except json.JSONDecodeError:
        return None
    if not isinstance(event, dict):
        return None
    return _completed_item_text(event)


def parse_exec_json(raw: str) -> StreamParseResult:
    """解析完整的 exec-json 输出。

    Args:
        raw: 原始 stdout

    Returns:
        StreamParseResult
    """
    result = StreamParseResult()
    texts: list[str] = []

    for event in iter_json_events(raw):
        event_type = event.get("type")

        text = _completed_item_text(event)
        if text:
            texts.append(text)
            continue

        if event_type == "turn.completed":
            usage = event.get("usage")
            if isinstance(usage, dict):
                result.token_usage = reconcile_token_usage(
                    usage.get("input_tokens"),
                    usage.get("output_tokens"),
                    total_tokens=usage.get("total_tokens"),
                    cache_read_tokens=usage.get("cached_input_tokens", 0),
                )
            continue

        if event_type == "turn.failed":
            result.is_error = True
            error = event.get("error")
            if isinstance(error, dict):
                message = error.get("message")
                if isinstance(message, str) and message.strip():
                    result.errors.append(message.strip())
            continue

        if event_type == "error":
            result.is_error = True
            message = event.get("message")
            if isinstance(message, str) and message.strip():
                result.errors.append(message.strip())

    result.assistant_text = "\n\n".join(texts)
    return result
