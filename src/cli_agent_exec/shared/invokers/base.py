"""后端执行器基类。

cli-agent-exec shared/invokers v0.1.0

每个后端执行器把进程监督器、参数/stdin 构建和该后端的流解析器
组合为一个"执行一次"原语，返回不含重试信息的 AttemptResult。

执行流程:
1. 构建 prompt（指令文件 + 任务）并解析有效模型
2. 进入启动作用域（例如写入临时 prompt 文件，退出时无条件清理）
3. 构建 ProcessSpec，交给 ProcessSupervisor 运行
4. 行处理器负责实时回显（可按后端开关）
5. 进程结束后用完整输出解析结果并判定成功
"""

from __future__ import annotations

import asyncio
import logging
import sys
from abc import ABC, abstractmethod
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, TextIO

import anyio

from ...config import Config
from ...runtime.detectors import OutputMonitor
from ...runtime.process_runner import ProcessOutcome, ProcessSpec, ProcessSupervisor
from ...runtime.terminator import Terminator
from ..parsers.stream_json import CumulativeTextTracker
from .prompt import build_child_env, build_prompt
from .types import AttemptResult, Backend, ExecutionRequest

__all__ = [
    "AgentExecutor",
    "ExecutionContext",
]

logger = logging.getLogger(__name__)


@dataclass
class ExecutionContext:
    """单次执行的状态。

    每次 execute_once() 创建新的上下文，确保执行器实例可以安全复用。

    Attributes:
        request: 请求
        prompt: 最终 prompt 文本
        model: 本次尝试使用的模型
        prompt_file: 写入临时目录的 prompt 文件（仅文件式后端）
        tracker: 累积文本增量跟踪器（仅 stream-json 后端）
    """

    request: ExecutionRequest
    prompt: str
    model: str
    prompt_file: Path | None = None
    tracker: CumulativeTextTracker = field(default_factory=CumulativeTextTracker)


class AgentExecutor(ABC):
    """后端执行器抽象基类。

    子类需要实现：
    - backend / label / default_binary: 后端标识
    - resolve_model(): 解析有效模型
    - build_argv(): 构建命令行
    - handle_stdout_line(): 实时行处理（回显）
    - build_result(): 由进程结果构造 AttemptResult
    - is_retryable_error(): 后端的可重试错误分类

    使用示例:
        executor = CodexExecutor(config)
        attempt = await executor.execute_once(ExecutionRequest(
            workdir=Path("/path/to/repo"),
            task="Fix the failing test",
        ))
    """

    backend: Backend
    label: str = "Agent"
    default_binary: str = ""

    # 后端能力：只有 OpenCode 支持配额等待与模型回退
    supports_quota_wait: bool = False
    supports_model_fallback: bool = False

    def __init__(
        self,
        config: Config | None = None,
        *,
        command: Sequence[str] | None = None,
        terminator: Terminator | None = None,
        echo_stream: TextIO | None = None,
        supervisor_options: Mapping[str, Any] | None = None,
    ) -> None:
        """初始化执行器。

        Args:
            config: 引擎配置，默认使用内置默认值
            command: 可执行文件前缀（默认 [default_binary]），后端参数追加在其后
            terminator: 进程终止策略，默认按平台选择
            echo_stream: 回显目标，默认 sys.stdout
            supervisor_options: 额外的 ProcessSupervisor 参数（如轮询间隔）
        """
        self.config = config or Config()
        self._command = list(command) if command else [self.default_binary]
        self._terminator = terminator
        self._echo_stream = echo_stream
        self._supervisor_options = dict(supervisor_options or {})

    # =========================================================================
    # 后端配置
    # =========================================================================

    @property
    @abstractmethod
    def settings(self) -> Any:
        """后端专属配置段。"""
        ...

    @property
    def max_retries(self) -> int:
        return self.settings.max_retries

    @property
    def retry_delay_ms(self) -> int:
        return self.settings.retry_delay_ms

    @property
    def echo_enabled(self) -> bool:
        return bool(self.settings.echo_stdout)

    @property
    def fallback_model(self) -> str | None:
        return None

    # =========================================================================
    # 子类钩子
    # =========================================================================

    @abstractmethod
    def resolve_model(self, request: ExecutionRequest) -> str:
        """解析有效模型（运行时覆盖 > 请求模型 > 默认值）。"""
        ...

    @abstractmethod
    def build_argv(self, ctx: ExecutionContext) -> list[str]:
        """构建后端参数（不含可执行文件前缀）。"""
        ...

    def build_stdin(self, ctx: ExecutionContext) -> bytes | None:
        """通过 stdin 传递的内容，None 表示不使用 stdin。"""
        return None

    def build_env(self, request: ExecutionRequest) -> dict[str, str]:
        """构建子进程环境。"""
        return build_child_env(request.env, inherit=request.inherit_env)

    def create_monitor(self) -> OutputMonitor | None:
        """创建输出异常检测器，None 表示只启用超时。"""
        return None

    def is_ignorable_stderr_line(self, line: str) -> bool:
        return False

    @abstractmethod
    def handle_stdout_line(self, ctx: ExecutionContext, line: str) -> None:
        """处理一行实时输出。"""
        ...

    @abstractmethod
    def build_result(self, ctx: ExecutionContext, outcome: ProcessOutcome) -> AttemptResult:
        """由进程结果构造 AttemptResult。"""
        ...

    @abstractmethod
    def is_retryable_error(self, result: AttemptResult) -> bool:
        ...

    def is_auth_failure(self, result: AttemptResult) -> bool:
        return False

    @contextmanager
    def launch_scope(self, ctx: ExecutionContext) -> Iterator[None]:
        """启动作用域，子类可在此准备并清理临时资源。"""
        yield

    # =========================================================================
    # 执行
    # =========================================================================

    async def execute_once(
        self,
        request: ExecutionRequest,
        *,
        model: str | None = None,
        cancel_scope: anyio.CancelScope | None = None,
    ) -> AttemptResult:
        """执行一次后端调用。

        Args:
            request: 请求
            model: 覆盖本次尝试的模型（重试策略进行模型回退时使用）
            cancel_scope: 可选的取消作用域

        Returns:
            AttemptResult（执行期失败体现在结果中，不抛出）

        Raises:
            asyncio.CancelledError: 调用方任务被取消（子进程已终止）
        """
        try:
            prompt = build_prompt(request.task, request.instructions_path)
        except OSError as e:
            logger.error(f"[{self.label}] Failed to read instructions file: {e}")
            return AttemptResult(
                success=False,
                exit_code=-1,
                stdout="",
                stderr=f"Failed to read instructions file {request.instructions_path}: {e}",
                duration_ms=0,
            )

        ctx = ExecutionContext(
            request=request,
            prompt=prompt,
            model=model or self.resolve_model(request),
        )

        try:
            with self.launch_scope(ctx):
                spec = ProcessSpec(
                    argv=[*self._command, *self.build_argv(ctx)],
                    cwd=Path(request.workdir),
                    env=self.build_env(request),
                    stdin_bytes=self.build_stdin(ctx),
                )
                logger.info(
                    f"[{self.label}] Executing model={ctx.model} cwd={request.workdir} "
                    f"timeout={request.timeout_seconds:g}s"
                )
                outcome = await self._create_supervisor(ctx).run(spec, cancel_scope=cancel_scope)
        except asyncio.CancelledError:
            logger.warning(f"[{self.label}] Execution cancelled by caller")
            raise

        if outcome.spawn_error:
            return AttemptResult(
                success=False,
                exit_code=-1,
                stdout="",
                stderr=outcome.stderr_with_markers(outcome.spawn_error),
                duration_ms=outcome.duration_ms,
            )

        result = self.build_result(ctx, outcome)
        logger.info(
            f"[{self.label}] Finished success={result.success} exit_code={result.exit_code} "
            f"duration_ms={result.duration_ms}"
        )
        return result

    def _create_supervisor(self, ctx: ExecutionContext) -> ProcessSupervisor:
        options: dict[str, Any] = {
            "label": self.label,
            "timeout_seconds": float(ctx.request.timeout_seconds),
            "idle_timeout_seconds": float(self.config.idle_timeout_seconds),
            "monitor": self.create_monitor(),
            "on_stdout_line": lambda line: self.handle_stdout_line(ctx, line),
            "stderr_filter": self.is_ignorable_stderr_line,
        }
        if self._terminator is not None:
            options["terminator"] = self._terminator
        options.update(self._supervisor_options)
        return ProcessSupervisor(**options)

    # =========================================================================
    # 辅助方法
    # =========================================================================

    def echo(self, text: str) -> None:
        """回显一段助手文本（按后端开关）。"""
        if not self.echo_enabled or not text:
            return
        stream = self._echo_stream or sys.stdout
        stream.write(text if text.endswith("\n") else text + "\n")
        stream.flush()

    @staticmethod
    def exit_code_for(outcome: ProcessOutcome) -> int:
        """中止或未正常退出时返回 -1，否则返回进程退出码。"""
        if outcome.aborted or outcome.exit_code is None:
            return -1
        return outcome.exit_code
