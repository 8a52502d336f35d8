"""后端执行器模块。

cli-agent-exec shared/invokers v0.1.0

提供统一的"执行一次"接口，封装 OpenCode、Claude Code、Codex 三个 CLI。

基础用法:
    from cli_agent_exec.shared.invokers import CodexExecutor, ExecutionRequest

    executor = CodexExecutor()
    attempt = await executor.execute_once(ExecutionRequest(
        workdir=Path("/path/to/repo"),
        task="Review this code",
    ))

工厂函数:
    from cli_agent_exec.shared.invokers import create_executor, Backend

    executor = create_executor(Backend.CLAUDE_CODE, config)
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from ...config import Config
from .base import AgentExecutor, ExecutionContext
from .claude import ClaudeCodeExecutor, normalize_claude_model
from .codex import CodexExecutor, normalize_codex_model
from .opencode import OpencodeExecutor
from .types import (
    BACKEND_ALIASES,
    AttemptResult,
    Backend,
    ExecutionRequest,
    ExecutionResult,
)

__version__ = "0.1.0"

__all__ = [
    # 版本
    "__version__",
    # 类型
    "Backend",
    "BACKEND_ALIASES",
    "ExecutionRequest",
    "AttemptResult",
    "ExecutionResult",
    "ExecutionContext",
    # 执行器
    "AgentExecutor",
    "OpencodeExecutor",
    "ClaudeCodeExecutor",
    "CodexExecutor",
    # 模型归一化
    "normalize_claude_model",
    "normalize_codex_model",
    # 工厂函数
    "create_executor",
]


def create_executor(
    backend: Backend,
    config: Config | None = None,
    *,
    command: Sequence[str] | None = None,
    **kwargs: Any,
) -> AgentExecutor:
    """创建后端执行器的工厂函数。

    Args:
        backend: 后端种类
        config: 引擎配置
        command: 可执行文件前缀（可选）
        **kwargs: 传递给执行器构造函数的其他参数

    Returns:
        对应的执行器实例

    Raises:
        ValueError: 不支持的后端
    """
    if backend is Backend.OPENCODE:
        return OpencodeExecutor(config, command=command, **kwargs)
    elif backend is Backend.CLAUDE_CODE:
        return ClaudeCodeExecutor(config, command=command, **kwargs)
    elif backend is Backend.CODEX:
        return CodexExecutor(config, command=command, **kwargs)
    else:
        raise ValueError(f"Unsupported backend: {backend}")
