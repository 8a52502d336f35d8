"""统一执行入口。

唯一负责选择后端的模块：解析后端、在入口边界加载配置、
创建执行器并交给重试策略运行。

后端解析顺序:
1. 请求中的 backend
2. LLM_EXECUTOR（请求 env 优先，其次进程环境）
3. 默认 opencode

用法:
    result = await run_agent(ExecutionRequest(
        workdir=Path("/path/to/repo"),
        task="Fix the failing test",
        backend="codex",
    ))
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

import anyio

from .config import Config, load_config
from .retry_policy import RetryPolicy
from .shared.invokers import AgentExecutor, Backend, ExecutionRequest, ExecutionResult, create_executor
from .shared.invokers.prompt import runtime_environ

__all__ = [
    "DEFAULT_BACKEND",
    "resolve_backend",
    "run_agent",
]

logger = logging.getLogger(__name__)

DEFAULT_BACKEND = Backend.OPENCODE

ExecutorFactory = Callable[[Backend, Config], AgentExecutor]


def resolve_backend(selector: str | Backend | None, hint: str | None = None) -> Backend:
    """解析后端。

    Args:
        selector: 显式选择器（优先）
        hint: LLM_EXECUTOR 提示

    Returns:
        Backend

    Raises:
        ConfigurationError: 选择器或提示无法识别
    """
    if selector is not None and str(selector).strip():
        return Backend.parse(selector)
    if hint is not None and hint.strip():
        return Backend.parse(hint)
    return DEFAULT_BACKEND


async def run_agent(
    request: ExecutionRequest,
    *,
    config: Config | None = None,
    cancel_scope: anyio.CancelScope | None = None,
    executor_factory: ExecutorFactory | None = None,
    **policy_options: Any,
) -> ExecutionResult:
    """执行一个请求并返回最终结果。

    Args:
        request: 请求
        config: 引擎配置，None 时从（请求 env 覆盖后的）进程环境加载
        cancel_scope: 取消作用域
        executor_factory: 执行器工厂，默认 create_executor
        **policy_options: 传递给 RetryPolicy 的额外参数（如 sleep）

    Returns:
        ExecutionResult

    Raises:
        ConfigurationError: 后端无法识别
    """
    env = runtime_environ(request.env)
    if config is None:
        config = load_config(env)

    hint = request.env.get("LLM_EXECUTOR", "").strip() or config.executor
    backend = resolve_backend(request.backend, hint)
    factory = executor_factory or create_executor
    executor = factory(backend, config)
    logger.info(f"[Runner] Dispatching to {backend.value} (workdir={request.workdir})")

    policy_options.setdefault("env", env)
    policy = RetryPolicy.for_request(executor, request, **policy_options)
    return await policy.run(request, cancel_scope=cancel_scope)
