"""Codex CLI 执行器。

cli-agent-exec shared/invokers v0.1.0

实现 Codex CLI 的命令构建和调用逻辑。

命令格式:
    codex exec \
      --json \
      --full-auto \
      --sandbox workspace-write \
      --skip-git-repo-check \
      --model {model} \
      -

Prompt 通过 stdin 传递（"-" 表示从 stdin 读取）。
输出为 exec-json：只有 item.completed 的 agent_message 贡献文本。
"""

from __future__ import annotations

from ...config import CodexSettings
from ...runtime.process_runner import ProcessOutcome
from ..parsers.exec_json import extract_exec_assistant_text, parse_exec_json
from .base import AgentExecutor, ExecutionContext
from .classifiers import (
    is_codex_auth_failure,
    is_codex_ignorable_stderr_line,
    is_codex_retryable_error,
)
from .types import AttemptResult, Backend, ExecutionRequest

__all__ = ["CodexExecutor", "normalize_codex_model"]


def normalize_codex_model(model: str | None) -> str | None:
    """把请求中的模型标识归一化为 Codex 的命名。

    Args:
        model: 例如 "openai/gpt-5.3-codex" 或 "gpt-5.3-codex"

    Returns:
        去掉 openai/ 前缀的模型名；其他提供方或仍包含 "/" 的标识返回 None
    """
    if not model or not model.strip():
        return None
    value = model.strip()
    if value.lower().startswith("openai/"):
        value = value[len("openai/"):].strip()
    if not value or "/" in value:
        return None
    return value


class CodexExecutor(AgentExecutor):
    """Codex CLI 执行器。

    Example:
        executor = CodexExecutor(load_config())
        attempt = await executor.execute_once(request)
    """

    backend = Backend.CODEX
    label = "Codex"
    default_binary = "codex"

    @property
    def settings(self) -> CodexSettings:
        return self.config.codex

    def resolve_model(self, request: ExecutionRequest) -> str:
        return (
            normalize_codex_model(self.settings.model)
            or normalize_codex_model(request.model)
            or self.settings.default_model
        )

    def build_argv(self, ctx: ExecutionContext) -> list[str]:
        """构建 Codex CLI 参数。"""
        return [
            "exec",
            "--json",
            "--full-auto",
            "--sandbox", "workspace-write",
            "--skip-git-repo-check",
            "--model", ctx.model,
            "-",
        ]

    def build_stdin(self, ctx: ExecutionContext) -> bytes:
        return ctx.prompt.encode("utf-8")

    def build_env(self, request: ExecutionRequest) -> dict[str, str]:
        """Codex 读取 CODEX_API_KEY，未设置时沿用 OPENAI_API_KEY。"""
        env = super().build_env(request)
        if not env.get("CODEX_API_KEY", "").strip() and env.get("OPENAI_API_KEY", "").strip():
            env["CODEX_API_KEY"] = env["OPENAI_API_KEY"]
        return env

    def is_ignorable_stderr_line(self, line: str) -> bool:
        return is_codex_ignorable_stderr_line(line)

    def handle_stdout_line(self, ctx: ExecutionContext, line: str) -> None:
        text = extract_exec_assistant_text(line)
        if text:
            self.echo(text)

    def build_result(self, ctx: ExecutionContext, outcome: ProcessOutcome) -> AttemptResult:
        parsed = parse_exec_json(outcome.stdout)
        exit_code = self.exit_code_for(outcome)
        return AttemptResult(
            success=exit_code == 0 and not parsed.is_error,
            exit_code=exit_code,
            stdout=parsed.assistant_text or outcome.stdout,
            stderr=outcome.stderr_with_markers(*parsed.errors),
            duration_ms=outcome.duration_ms,
            token_usage=parsed.token_usage,
        )

    def is_retryable_error(self, result: AttemptResult) -> bool:
        return is_codex_retryable_error(result.stderr, result.exit_code)

    def is_auth_failure(self, result: AttemptResult) -> bool:
        return is_codex_auth_failure(f"{result.stderr}\n{result.stdout}")
