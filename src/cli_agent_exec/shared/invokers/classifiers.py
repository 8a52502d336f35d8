"""错误分类规则。

cli-agent-exec shared/invokers v0.1.0

按后端划分的错误分类，供重试策略判断下一步动作:
- 可重试错误（限流、502/503、过载、网络超时等）
- 认证错误（无论其他条件如何都不重试）
- 配额耗尽（走配额等待路径，与普通重试分开计数）
- thought signature 错误（触发一次性模型回退）
- 行为类中止（死循环、权限提示等），属于内容问题，不重试
"""

from __future__ import annotations

import hashlib
import re
from collections.abc import Mapping

from ...runtime.detectors import is_quota_exceeded_error

__all__ = [
    "is_opencode_retryable_error",
    "is_claude_retryable_error",
    "is_claude_auth_failure",
    "is_codex_retryable_error",
    "is_codex_auth_failure",
    "is_codex_ignorable_stderr_line",
    "is_quota_exceeded_error",
    "is_title_only_quota_error",
    "is_title_generation_line",
    "is_thought_signature_error",
    "is_behavioral_abort",
    "extract_quota_retry_delay_ms",
    "quota_error_label",
    "api_key_fingerprint",
]

# OpenCode: 区分大小写的 ETIMEDOUT 与原始 CLI 输出保持一致
_OPENCODE_RETRYABLE_PATTERNS = (
    re.compile(r"rate.?limit", re.IGNORECASE),
    re.compile(r"too.?many.?requests", re.IGNORECASE),
    re.compile(r"503"),
    re.compile(r"502"),
    re.compile(r"overloaded", re.IGNORECASE),
    re.compile(r"ETIMEDOUT"),
)

_CLAUDE_RETRYABLE_MARKERS = (
    "rate limit",
    "429",
    "503",
    "502",
    "temporarily unavailable",
    "overloaded",
    "etimedout",
    "econnreset",
)

_CLAUDE_AUTH_MARKERS = (
    "/login",
    "authentication_failed",
    "api key source",
    "does not have access to claude code",
)

_CODEX_RETRYABLE_MARKERS = (
    "rate limit",
    "429",
    "500",
    "502",
    "503",
    "504",
    "temporarily unavailable",
    "overloaded",
    "timeout",
    "etimedout",
    "econnreset",
)

_CODEX_NON_RETRYABLE_MARKERS = ("model is not supported",)

_CODEX_AUTH_MARKERS = (
    "not logged in",
    "missing bearer or basic authentication",
    "incorrect api key",
    "invalid api key",
    "unauthorized",
)

_CODEX_IGNORABLE_STDERR_RE = re.compile(
    r"codex_core::rollout::list:\s*state db missing rollout path for thread",
    re.IGNORECASE,
)

_RETRY_DELAY_PATTERNS = (
    re.compile(r"""retrydelay["']?\s*[:=]\s*["']?([0-9.]+)s""", re.IGNORECASE),
    re.compile(r"retry in\s*([0-9.]+)s", re.IGNORECASE),
)

_FINGERPRINT_TAIL = 5

_THOUGHT_SIGNATURE_RE = re.compile(r"thought[_\s-]?signature", re.IGNORECASE)

_TITLE_AGENT_RE = re.compile(r"\bagent=title\b", re.IGNORECASE)
_TITLE_PROMPT_MARKER = "you are a title generator"

# 行为类中止标记（由 runtime.detectors.abort_marker 生成）
_BEHAVIORAL_ABORT_MARKERS = (
    "] Doom loop detected",
    "] external_directory permission prompt blocked the run",
    "] Execution cancelled",
    "] Parent process received ",
)


def is_opencode_retryable_error(stderr: str, exit_code: int) -> bool:
    """OpenCode 可重试错误判断。

    退出码为 1 且 stderr 为空时视为确定性失败，不重试。
    """
    if exit_code == 1 and not stderr.strip():
        return False
    return any(pattern.search(stderr) for pattern in _OPENCODE_RETRYABLE_PATTERNS)


def is_claude_auth_failure(text: str) -> bool:
    lowered = text.lower()
    return any(marker in lowered for marker in _CLAUDE_AUTH_MARKERS)


def is_claude_retryable_error(stderr: str, exit_code: int) -> bool:
    """Claude Code 可重试错误判断（只在非零退出时重试）。"""
    if exit_code == 0:
        return False
    lowered = stderr.lower()
    return any(marker in lowered for marker in _CLAUDE_RETRYABLE_MARKERS)


def is_codex_auth_failure(text: str) -> bool:
    lowered = text.lower()
    return any(marker in lowered for marker in _CODEX_AUTH_MARKERS)


def is_codex_retryable_error(stderr: str, exit_code: int) -> bool:
    """Codex 可重试错误判断。"""
    if exit_code == 0:
        return False
    lowered = stderr.lower()
    if any(marker in lowered for marker in _CODEX_NON_RETRYABLE_MARKERS):
        return False
    return any(marker in lowered for marker in _CODEX_RETRYABLE_MARKERS)


def is_codex_ignorable_stderr_line(line: str) -> bool:
    """Codex 已知的无害 stderr 噪音。"""
    return bool(_CODEX_IGNORABLE_STDERR_RE.search(line))


def is_title_generation_line(line: str) -> bool:
    lowered = line.lower()
    return bool(_TITLE_AGENT_RE.search(line)) or _TITLE_PROMPT_MARKER in lowered


def is_title_only_quota_error(stderr: str) -> bool:
    """配额错误是否只来自会话标题生成。

    标题生成使用单独的小请求，它的配额错误不影响主任务，
    应按普通错误退避而不是进入配额等待。
    """
    quota_lines = [line for line in stderr.splitlines() if is_quota_exceeded_error(line)]
    if not quota_lines:
        return False
    return all(is_title_generation_line(line) for line in quota_lines)


def is_thought_signature_error(text: str) -> bool:
    return bool(_THOUGHT_SIGNATURE_RE.search(text))


def is_behavioral_abort(stderr: str) -> bool:
    """是否为检测器/调用方触发的中止（内容问题，不应重试）。"""
    return any(marker in stderr for marker in _BEHAVIORAL_ABORT_MARKERS)


def extract_quota_retry_delay_ms(text: str) -> int | None:
    """从错误文本中提取提供方建议的重试等待时间。

    Args:
        text: stderr 文本

    Returns:
        毫秒数（至少 1000）；无法解析或不为正数时返回 None，由调用方使用默认等待
    """
    for pattern in _RETRY_DELAY_PATTERNS:
        match = pattern.search(text)
        if not match:
            continue
        try:
            seconds = float(match.group(1))
        except ValueError:
            continue
        if seconds <= 0:
            continue
        return max(1000, int(seconds * 1000))
    return None


def quota_error_label(text: str) -> str:
    """用于日志的配额错误类别。"""
    if "resource_exhausted" in text.lower():
        return "resource exhausted"
    return "quota exceeded"


def api_key_fingerprint(env: Mapping[str, str], key: str = "GEMINI_API_KEY") -> str:
    """生成 API key 的脱敏指纹，便于日志中区分不同的 key。

    Returns:
        例如 "********x9Q2a (sha256:1a2b3c4d)"，只保留末尾几位，未设置时返回 "unset"
    """
    value = (env.get(key) or "").strip()
    if not value:
        return "unset"
    digest = hashlib.sha256(value.encode("utf-8")).hexdigest()[:8]
    if len(value) <= 8:
        return f"*** (sha256:{digest})"
    tail = value[-_FINGERPRINT_TAIL:]
    masked = "*" * min(len(value) - len(tail), 8)
    return f"{masked}{tail} (sha256:{digest})"
