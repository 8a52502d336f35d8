"""OpenCode CLI 执行器。

cli-agent-exec shared/invokers v0.1.0

实现 OpenCode CLI 的命令构建和调用逻辑。

命令格式:
    opencode run \
      --model {model} \
      --print-logs \
      --log-level ERROR \
      --file {tmpdir}/prompt.txt \
      -- "Read the attached prompt and follow the instructions."

Prompt 写入临时目录中的文件并通过 --file 附加，临时目录在执行结束后
无论成功与否都会被删除。输出为纯文本，没有结构化的错误通道，
失败只由退出码和实时检测器（死循环、权限提示、配额等）判定。
"""

from __future__ import annotations

import logging
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from ...config import OpencodeSettings
from ...runtime.detectors import OutputMonitor
from ...runtime.process_runner import ProcessOutcome
from ..parsers.plain_text import parse_plain_text_output
from .base import AgentExecutor, ExecutionContext
from .classifiers import is_opencode_retryable_error
from .types import AttemptResult, Backend, ExecutionRequest

__all__ = ["OpencodeExecutor", "OPENCODE_RUN_MESSAGE"]

logger = logging.getLogger(__name__)

OPENCODE_RUN_MESSAGE = "Read the attached prompt and follow the instructions."
PROMPT_FILE_NAME = "prompt.txt"


class OpencodeExecutor(AgentExecutor):
    """OpenCode CLI 执行器。

    唯一支持配额等待和模型回退的后端。

    Example:
        executor = OpencodeExecutor(load_config())
        attempt = await executor.execute_once(request)
    """

    backend = Backend.OPENCODE
    label = "OpenCode"
    default_binary = "opencode"

    supports_quota_wait = True
    supports_model_fallback = True

    @property
    def settings(self) -> OpencodeSettings:
        return self.config.opencode

    @property
    def fallback_model(self) -> str | None:
        return self.settings.fallback_model or None

    def resolve_model(self, request: ExecutionRequest) -> str:
        return request.model or self.settings.model

    @contextmanager
    def launch_scope(self, ctx: ExecutionContext) -> Iterator[None]:
        with tempfile.TemporaryDirectory(prefix="cli-agent-exec-opencode-") as tmp:
            prompt_file = Path(tmp) / PROMPT_FILE_NAME
            prompt_file.write_text(ctx.prompt, encoding="utf-8")
            ctx.prompt_file = prompt_file
            try:
                yield
            finally:
                ctx.prompt_file = None
                logger.debug(f"[{self.label}] Removing prompt directory {tmp}")

    def build_argv(self, ctx: ExecutionContext) -> list[str]:
        """构建 OpenCode CLI 参数。"""
        if ctx.prompt_file is None:
            raise RuntimeError("prompt file is only available inside launch_scope()")
        return [
            "run",
            "--model", ctx.model,
            "--print-logs",
            "--log-level", "ERROR",
            "--file", str(ctx.prompt_file),
            "--",
            OPENCODE_RUN_MESSAGE,
        ]

    def create_monitor(self) -> OutputMonitor:
        return OutputMonitor(config=self.config.detectors)

    def handle_stdout_line(self, ctx: ExecutionContext, line: str) -> None:
        self.echo(line)

    def build_result(self, ctx: ExecutionContext, outcome: ProcessOutcome) -> AttemptResult:
        parsed = parse_plain_text_output(outcome.stdout)
        exit_code = self.exit_code_for(outcome)
        return AttemptResult(
            success=exit_code == 0,
            exit_code=exit_code,
            stdout=parsed.assistant_text,
            stderr=outcome.stderr_with_markers(),
            duration_ms=outcome.duration_ms,
            token_usage=parsed.token_usage,
        )

    def is_retryable_error(self, result: AttemptResult) -> bool:
        return is_opencode_retryable_error(result.stderr, result.exit_code)
