"""Claude Code CLI 执行器。

cli-agent-exec shared/invokers v0.1.0

实现 Claude Code CLI 的命令构建和调用逻辑。

命令格式:
    claude -p {prompt} \
      --output-format stream-json \
      --verbose \
      --permission-mode {mode} \
      --model {model} \
      [--dangerously-skip-permissions] \
      [--max-turns {n}] \
      [--allowedTools {a,b}] \
      [--disallowedTools {a,b}] \
      [--append-system-prompt {text}]

输出为 stream-json：assistant 事件携带累积内容，实时回显时只输出增量；
result 事件携带 is_error、最终结果、用量和工具授权拒绝列表。
"""

from __future__ import annotations

import json

from ...config import ClaudeCodeSettings
from ...runtime.process_runner import ProcessOutcome
from ..parsers.stream_json import extract_stream_assistant_text, parse_stream_json
from .base import AgentExecutor, ExecutionContext
from .classifiers import is_claude_auth_failure, is_claude_retryable_error
from .types import AttemptResult, Backend, ExecutionRequest

__all__ = ["ClaudeCodeExecutor", "normalize_claude_model"]

# 这些提供方的模型 Claude Code 无法使用，忽略请求中的模型
_FOREIGN_PROVIDER_PREFIXES = ("google/", "openai/", "xai/", "deepseek/", "groq/", "ollama/")


def normalize_claude_model(model: str | None) -> str | None:
    """把请求中的模型标识归一化为 Claude Code 的命名。

    Args:
        model: 例如 "anthropic/claude-sonnet-4-5" 或 "claude-opus-4-6"

    Returns:
        去掉 anthropic/ 前缀的模型名；其他提供方的模型返回 None
    """
    if not model or not model.strip():
        return None
    value = model.strip()
    lowered = value.lower()
    if lowered.startswith("anthropic/"):
        value = value[len("anthropic/"):].strip()
        return value or None
    if lowered.startswith(_FOREIGN_PROVIDER_PREFIXES):
        return None
    return value


class ClaudeCodeExecutor(AgentExecutor):
    """Claude Code CLI 执行器。

    Example:
        executor = ClaudeCodeExecutor(load_config())
        attempt = await executor.execute_once(request)
    """

    backend = Backend.CLAUDE_CODE
    label = "ClaudeCode"
    default_binary = "claude"

    @property
    def settings(self) -> ClaudeCodeSettings:
        return self.config.claude

    def resolve_model(self, request: ExecutionRequest) -> str:
        return (
            normalize_claude_model(self.settings.model)
            or normalize_claude_model(request.model)
            or self.settings.default_model
        )

    def build_argv(self, ctx: ExecutionContext) -> list[str]:
        """构建 Claude Code CLI 参数。"""
        settings = self.settings
        args = [
            "-p", ctx.prompt,
            "--output-format", "stream-json",
            "--verbose",
            "--permission-mode", settings.permission_mode,
            "--model", ctx.model,
        ]
        if settings.permission_mode == "bypassPermissions":
            args.append("--dangerously-skip-permissions")
        if settings.max_turns > 0:
            args.extend(["--max-turns", str(settings.max_turns)])
        if settings.allowed_tools:
            args.extend(["--allowedTools", ",".join(settings.allowed_tools)])
        if settings.disallowed_tools:
            args.extend(["--disallowedTools", ",".join(settings.disallowed_tools)])
        if settings.append_system_prompt:
            args.extend(["--append-system-prompt", settings.append_system_prompt])
        return args

    def handle_stdout_line(self, ctx: ExecutionContext, line: str) -> None:
        line = line.strip()
        if not line.startswith("{"):
            return
        try:
            event = json.loads(line)
        except json.JSONDecodeError:
            return
        if not isinstance(event, dict):
            return
        delta = ctx.tracker.next_delta(extract_stream_assistant_text(event))
        if delta:
            self.echo(delta)

    def build_result(self, ctx: ExecutionContext, outcome: ProcessOutcome) -> AttemptResult:
        parsed = parse_stream_json(outcome.stdout)

        extra: list[str] = list(parsed.errors)
        if parsed.permission_denials:
            extra.append(f"Permission denied for tools: {', '.join(parsed.permission_denials)}")
        if parsed.is_error and parsed.result_text:
            extra.append(parsed.result_text)

        exit_code = self.exit_code_for(outcome)
        success = exit_code == 0 and not parsed.is_error and not parsed.permission_denials

        return AttemptResult(
            success=success,
            exit_code=exit_code,
            stdout=parsed.assistant_text or parsed.result_text or outcome.stdout,
            stderr=self._join_stderr(outcome, extra),
            duration_ms=outcome.duration_ms,
            token_usage=parsed.token_usage,
        )

    @staticmethod
    def _join_stderr(outcome: ProcessOutcome, extra: list[str]) -> str:
        parts = [p.strip() for p in extra if p and p.strip()]
        if outcome.stderr.strip():
            parts.append(outcome.stderr.strip())
        parts.extend(outcome.markers)
        return "\n".join(parts)

    def is_retryable_error(self, result: AttemptResult) -> bool:
        return is_claude_retryable_error(result.stderr, result.exit_code)

    def is_auth_failure(self, result: AttemptResult) -> bool:
        return is_claude_auth_failure(f"{result.stderr}\n{result.stdout}")
