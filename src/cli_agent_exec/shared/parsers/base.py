"""解析器基础类型。

cli-agent-exec shared/parsers v0.1.0

本模块定义三种输出协议共用的解析结果类型，包括：
- TokenUsage: 归一化的 token 用量
- StreamParseResult: 解析器统一返回结构
- reconcile_token_usage: token 用量归并规则
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Final

__all__ = [
    "TokenUsage",
    "StreamParseResult",
    "reconcile_token_usage",
    "to_int",
    "iter_json_events",
    "VERSION",
]

# 模块版本，用于分发追踪
VERSION: Final[str] = "0.1.0"


@dataclass(frozen=True)
class TokenUsage:
    """Token 用量。

    Attributes:
        input_tokens: 输入 token 数
        output_tokens: 输出 token 数
        total_tokens: 总 token 数
        cache_read_tokens: 缓存读取 token 数（后端未报告时为 None）
        cache_write_tokens: 缓存写入 token 数（后端未报告时为 None）
    """

    input_tokens: int
    output_tokens: int
    total_tokens: int
    cache_read_tokens: int | None = None
    cache_write_tokens: int | None = None

    def to_dict(self) -> dict[str, int]:
        """转换为字典（camelCase 键）。"""
        data = {
            "inputTokens": self.input_tokens,
            "outputTokens": self.output_tokens,
            "totalTokens": self.total_tokens,
        }
        if self.cache_read_tokens is not None:
            data["cacheReadTokens"] = self.cache_read_tokens
        if self.cache_write_tokens is not None:
            data["cacheWriteTokens"] = self.cache_write_tokens
        return data


@dataclass
class StreamParseResult:
    """解析器统一返回结构。

    Attributes:
        assistant_text: 助手最终文本输出
        result_text: 终止事件携带的结果文本（仅 stream-json 协议）
        is_error: 后端报告的失败标志
        errors: 收集到的错误消息
        permission_denials: 被拒绝授权的工具名
        token_usage: token 用量（未报告时为 None）
    """

    assistant_text: str = ""
    result_text: str | None = None
    is_error: bool = False
    errors: list[str] = field(default_factory=list)
    permission_denials: list[str] = field(default_factory=list)
    token_usage: TokenUsage | None = None


def to_int(value: Any) -> int:
    """宽松地把数值转为非负整数，无法解析时返回 0。"""
    if isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return max(0, int(value))
    if isinstance(value, str):
        try:
            return max(0, int(float(value.replace(",", "").strip())))
        except ValueError:
            return 0
    return 0


def reconcile_token_usage(
    input_tokens: Any = 0,
    output_tokens: Any = 0,
    *,
    total_tokens: Any = 0,
    cache_read_tokens: Any = None,
    cache_write_tokens: Any = None,
) -> TokenUsage | None:
    """按统一规则归并 token 用量。

    规则:
    - 任一分量（输入/输出/缓存读/缓存写）大于 0 时，总量为四者之和
    - 只报告了总量时，输入/输出记为 0，总量原样保留
    - 全部为 0 视为未报告，返回 None

    Args:
        input_tokens: 输入 token
        output_tokens: 输出 token
        total_tokens: 后端显式报告的总量
        cache_read_tokens: 缓存读取 token（None 表示后端不报告该字段）
        cache_write_tokens: 缓存写入 token（None 表示后端不报告该字段）

    Returns:
        TokenUsage 或 None
    """
    inp = to_int(input_tokens)
    out = to_int(output_tokens)
    cache_read = None if cache_read_tokens is None else to_int(cache_read_tokens)
    cache_write = None if cache_write_tokens is None else to_int(cache_write_tokens)

    computed = inp + out + (cache_read or 0) + (cache_write or 0)
    if computed > 0:
        return TokenUsage(
            input_tokens=inp,
            output_tokens=out,
            total_tokens=computed,
            cache_read_tokens=cache_read,
            cache_write_tokens=cache_write,
        )

    explicit_total = to_int(total_tokens)
    if explicit_total > 0:
        return TokenUsage(input_tokens=0, output_tokens=0, total_tokens=explicit_total)

    return None


def iter_json_events(raw: str):
    """逐行解析 NDJSON，跳过空行和非 JSON 对象行。"""
    for line in raw.splitlines():
        line = line.strip()
        if not line or not line.startswith("{"):
            continue
        try:
            event = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(event, dict):
            yield event
