"""CLI Agent Exec - 编码智能体 CLI 的子进程执行引擎。

把一个可能长时间运行、可能失控的 CLI 进程变成有界、可观测、可重试的工作单元。

环境变量:
    LLM_EXECUTOR: 默认后端 (opencode / claude_code / codex)
    LLM_IDLE_TIMEOUT_SECONDS: 空闲超时 (默认 900s)
    CAE_LOG_DEBUG: 日志调试模式 (默认 false)

用法:
    uvx cli-agent-exec
"""

__version__ = "0.1.0"

from .app import main

__all__ = ["__version__", "main"]
