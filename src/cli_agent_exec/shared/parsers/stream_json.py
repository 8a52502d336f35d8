"""stream-json 输出解析器（Claude Code）。

cli-agent-exec shared/parsers v0.1.0

每行一个 JSON 事件:
- assistant: message.content 中携带截至当前的完整回复（累积内容，不是增量）
- result: 终止事件，携带 is_error、result、usage 以及 permission_denials
- error: 错误事件

实时回显需要与上一次的累积文本做差，只输出新增部分，见 CumulativeTextTracker。
"""

from __future__ import annotations

import json
from typing import Any

from .base import StreamParseResult, iter_json_events, reconcile_token_usage

__all__ = [
    "parse_stream_json",
    "extract_stream_assistant_text",
    "CumulativeTextTracker",
]


def extract_stream_assistant_text(event: dict[str, Any]) -> str:
    """提取 assistant 事件中的文本。

    Args:
        event: 已解析的事件字典

    Returns:
        文本块按换行拼接后的内容，非 assistant 事件返回空字符串
    """
    if event.get("type") != "assistant":
        return ""
    message = event.get("message")
    if not isinstance(message, dict):
        return ""
    content = message.get("content")
    if isinstance(content, str):
        return content.strip()
    if not isinstance(content, list):
        return ""

    texts: list[str] = []
    for block in content:
        if not isinstance(block, dict) or block.get("type") != "text":
            continue
        text = block.get("text")
        if isinstance(text, str) and text.strip():
            texts.append(text.strip())
    return "\n".join(texts)


def _event_error_message(event: dict[str, Any]) -> str | None:
    error = event.get("error")
    if isinstance(error, dict):
        message = error.get("message")
        if isinstance(message, str) and message.strip():
            return message.strip()
    if isinstance(error, str) and error.strip():
        return error.strip()
    message = event.get("message")
    if isinstance(message, str) and message.strip():
        return message.strip()
    return None


def parse_stream_json(raw: str) -> StreamParseResult:
    """解析完整的 stream-json 输出。

    Args:
        raw: 原始 stdout

    Returns:
        StreamParseResult，assistant_text 为最后一个 assistant 事件的累积内容
    """
    result = StreamParseResult()

    for event in iter_json_events(raw):
        event_type = event.get("type")

        if event_type == "assistant":
            text = extract_stream_assistant_text(event)
            if text:
                result.assistant_text = text
            continue

        if event_type == "result":
            if event.get("is_error") is True:
                result.is_error = True
            subtype = event.get("subtype")
            if isinstance(subtype, str) and subtype.startswith("error"):
                result.is_error = True
            text = event.get("result")
            if isinstance(text, str):
                result.result_text = text.strip()

            usage = event.get("usage")
            if isinstance(usage, dict):
                result.token_usage = reconcile_token_usage(
                    usage.get("input_tokens"),
                    usage.get("output_tokens"),
                    cache_read_tokens=usage.get("cache_read_input_tokens", 0),
                    cache_write_tokens=usage.get("cache_creation_input_tokens", 0),
                )

            denials = event.get("permission_denials")
            if isinstance(denials, list):
                for denial in denials:
                    if isinstance(denial, dict):
                        name = denial.get("tool_name")
                        result.permission_denials.append(
                            name if isinstance(name, str) and name else json.dumps(denial)
                        )
                    elif isinstance(denial, str):
                        result.permission_denials.append(denial)
            continue

        if event_type == "error":
            result.is_error = True
            message = _event_error_message(event)
            if message:
                result.errors.append(message)

    return result


class CumulativeTextTracker:
    """把累积文本转换为增量文本。

    每次传入截至当前的完整文本，返回相对上一次新增的部分。
    新文本不以上一次文本开头时（例如新一轮消息）返回整段文本。
    """

    def __init__(self) -> None:
        self._last = ""

    @property
    def last(self) -> str:
        return self._last

    def next_delta(self, text: str) -> str | None:
        """计算增量。

        Args:
            text: 最新的累积文本

        Returns:
            新增文本（去除前导空白），没有新内容时返回 None
        """
        if not text or text == self._last:
            return None

        if self._last and text.startswith(self._last):
            delta = text[len(self._last):].lstrip()
        else:
            delta = text
        self._last = text
        return delta or None
