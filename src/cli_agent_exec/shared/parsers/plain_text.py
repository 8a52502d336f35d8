"""纯文本输出解析器（OpenCode）。

cli-agent-exec shared/parsers v0.1.0

OpenCode 以纯文本输出，日志行中可能嵌入结构化片段。
该协议没有结构化的错误/结果通道，失败只能由退出码和检测器判定。

支持的用量格式:
- JSON 片段: "input_tokens": 120, ... "output_tokens": 45
- 可读文本: Tokens: 1,200 input, 340 output（也接受 Token: 及省略逗号）
- 仅总量: Total tokens used: 999
"""

from __future__ import annotations

import re

from .base import StreamParseResult, TokenUsage, reconcile_token_usage, to_int

__all__ = [
    "parse_plain_text_output",
    "extract_plain_text_token_usage",
]

_JSON_USAGE_RE = re.compile(
    r'"input_tokens"\s*:\s*(\d+)[\s\S]*?"output_tokens"\s*:\s*(\d+)'
)
_TEXT_USAGE_RE = re.compile(
    r"Tokens?:\s*([\d,]+)\s*input,?\s*([\d,]+)\s*output", re.IGNORECASE
)
_TOTAL_ONLY_RE = re.compile(r"Total tokens used:\s*([\d,]+)", re.IGNORECASE)


def extract_plain_text_token_usage(output: str) -> TokenUsage | None:
    """从纯文本输出中提取 token 用量。

    Args:
        output: 累积的 stdout 文本

    Returns:
        TokenUsage 或 None（未找到或全部为 0）
    """
    match = _JSON_USAGE_RE.search(output)
    if match:
        return reconcile_token_usage(match.group(1), match.group(2))

    match = _TEXT_USAGE_RE.search(output)
    if match:
        return reconcile_token_usage(match.group(1), match.group(2))

    match = _TOTAL_ONLY_RE.search(output)
    if match:
        return reconcile_token_usage(0, 0, total_tokens=to_int(match.group(1)))

    return None


def parse_plain_text_output(output: str) -> StreamParseResult:
    """解析纯文本输出。

    助手文本即原始 stdout；is_error 恒为 False。
    """
    return StreamParseResult(
        assistant_text=output,
        token_usage=extract_plain_text_token_usage(output),
    )
