"""重试/容错策略。

包装后端执行器的"执行一次"原语，是唯一持有多次尝试状态的组件。

状态机（每个顶层调用一个）:
    Attempting -> Success | QuotaWaiting | ModelFallback | Backoff | GivenUp

- Success: 立即返回，附带累计的 retry_count
- QuotaWaiting: 配额耗尽且允许等待、等待预算未用完（可以不限）时，
  按提供方建议（或配置的默认值）等待后重试，不计入 attempt/retry_count
- ModelFallback: 出现 thought signature 错误时切换到回退模型，每次调用最多一次，
  不计入 attempt/retry_count
- Backoff: 仍有重试次数、错误可重试、且不是认证失败或行为类中止时，
  按指数退避加抖动等待后重试
- GivenUp: 返回最后一次尝试的结果

配额等待与模型回退是后端能力，只有支持的后端（OpenCode）才会进入这两个状态。
"""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any

import anyio

from .shared.invokers.base import AgentExecutor
from .shared.invokers.classifiers import (
    api_key_fingerprint,
    extract_quota_retry_delay_ms,
    is_behavioral_abort,
    is_quota_exceeded_error,
    is_thought_signature_error,
    is_title_only_quota_error,
    quota_error_label,
)
from .shared.invokers.types import AttemptResult, ExecutionRequest, ExecutionResult

__all__ = [
    "RetryPolicy",
    "RetryState",
    "calculate_backoff_delay_ms",
    "MAX_BACKOFF_DELAY_MS",
]

logger = logging.getLogger(__name__)

MAX_BACKOFF_DELAY_MS = 60_000
BACKOFF_JITTER_MS = 1000
_SLEEP_SLICE_SECONDS = 0.25

SleepFunc = Callable[[float], Awaitable[Any]]


def calculate_backoff_delay_ms(
    attempt: int,
    base_delay_ms: float,
    rng: Callable[[], float] = random.random,
) -> float:
    """计算指数退避延迟。

    Args:
        attempt: 当前重试序号（从 1 开始）
        base_delay_ms: 基础延迟
        rng: 返回 [0, 1) 的随机数函数

    Returns:
        min(base * 2^attempt + rng() * 1000, 60000) 毫秒
    """
    delay = base_delay_ms * (2 ** attempt) + rng() * BACKOFF_JITTER_MS
    return min(delay, MAX_BACKOFF_DELAY_MS)


@dataclass
class RetryState:
    """单次调用的重试状态。

    Attributes:
        attempt: 当前退避序号
        retry_count: 普通重试次数（首次之外）
        quota_wait_count: 配额等待次数
        fallback_used: 是否已经切换过回退模型
        model: 当前使用的模型
    """

    attempt: int = 0
    retry_count: int = 0
    quota_wait_count: int = 0
    fallback_used: bool = False
    model: str = ""


class RetryPolicy:
    """包装执行器的多次尝试循环。

    Example:
        executor = OpencodeExecutor(config)
        policy = RetryPolicy.for_request(executor, request)
        result = await policy.run(request)
        print(result.success, result.retry_count)
    """

    def __init__(
        self,
        executor: AgentExecutor,
        *,
        max_retries: int | None = None,
        retry_delay_ms: int | None = None,
        wait_on_quota: bool | None = None,
        quota_retry_delay_ms: int | None = None,
        max_quota_waits: int | None = None,
        sleep: SleepFunc | None = None,
        rng: Callable[[], float] = random.random,
        env: Mapping[str, str] | None = None,
    ) -> None:
        """初始化重试策略。

        未指定的参数取自执行器所在后端的配置。

        Args:
            executor: 后端执行器
            max_retries: 普通重试次数上限
            retry_delay_ms: 退避基础延迟
            wait_on_quota: 配额耗尽时是否等待
            quota_retry_delay_ms: 配额等待默认时长
            max_quota_waits: 配额等待次数上限，负数表示不限
            sleep: 异步睡眠函数（参数为秒），用于测试注入
            rng: 抖动随机数函数
            env: 读取 API key 指纹用的环境视图
        """
        self.executor = executor
        settings = executor.settings
        self.max_retries = max(0, executor.max_retries if max_retries is None else max_retries)
        self.retry_delay_ms = max(0, executor.retry_delay_ms if retry_delay_ms is None else retry_delay_ms)
        self.wait_on_quota = (
            getattr(settings, "wait_on_quota", False) if wait_on_quota is None else wait_on_quota
        )
        self.quota_retry_delay_ms = (
            getattr(settings, "quota_retry_delay_ms", 0)
            if quota_retry_delay_ms is None
            else quota_retry_delay_ms
        )
        self.max_quota_waits = (
            getattr(settings, "max_quota_waits", 0) if max_quota_waits is None else max_quota_waits
        )
        self._sleep = sleep
        self._rng = rng
        self._env = env or {}

    @classmethod
    def for_request(
        cls,
        executor: AgentExecutor,
        request: ExecutionRequest,
        **kwargs: Any,
    ) -> RetryPolicy:
        """使用请求中的重试参数（未指定时回落到配置）创建策略。"""
        return cls(
            executor,
            max_retries=request.max_retries,
            retry_delay_ms=request.retry_delay_ms,
            max_quota_waits=request.max_quota_waits,
            **kwargs,
        )

    @property
    def label(self) -> str:
        return self.executor.label

    async def run(
        self,
        request: ExecutionRequest,
        *,
        cancel_scope: anyio.CancelScope | None = None,
    ) -> ExecutionResult:
        """执行请求，按状态机重试直到成功或放弃。

        Args:
            request: 请求
            cancel_scope: 取消作用域；取消后不再开始新的尝试，等待也会提前结束

        Returns:
            ExecutionResult
        """
        executor = self.executor
        state = RetryState(model=executor.resolve_model(request))
        started = time.monotonic()

        while True:
            logger.info(
                f"[Retry] {self.label} attempt={state.attempt + 1} model={state.model} "
                f"retries={state.retry_count}/{self.max_retries} quota_waits={state.quota_wait_count}"
            )
            result = await executor.execute_once(request, model=state.model, cancel_scope=cancel_scope)

            if result.success:
                return ExecutionResult.from_attempt(result, state.retry_count)

            if _cancelled(cancel_scope):
                logger.info(f"[Retry] {self.label} cancelled, not retrying")
                break

            action = self._next_action(result, state)
            if action is None:
                break

            delay_ms = action
            if delay_ms > 0:
                await self._pause(delay_ms, cancel_scope)
            if _cancelled(cancel_scope):
                logger.info(f"[Retry] {self.label} cancelled while waiting")
                break

        elapsed = time.monotonic() - started
        logger.error(
            f"[Retry] {self.label} giving up after {state.retry_count} retries, "
            f"{state.quota_wait_count} quota waits, {elapsed:.1f}s "
            f"(exit_code={result.exit_code})"
        )
        return ExecutionResult.from_attempt(result, state.retry_count)

    def _next_action(self, result: AttemptResult, state: RetryState) -> float | None:
        """根据失败结果推进状态。

        Returns:
            下一次尝试前需要等待的毫秒数；None 表示放弃
        """
        executor = self.executor
        stderr = result.stderr
        title_only_quota = False

        if executor.supports_quota_wait and is_quota_exceeded_error(stderr):
            title_only_quota = is_title_only_quota_error(stderr)
            if not title_only_quota:
                return self._quota_wait(stderr, state)
            logger.warning(
                f"[Retry] {self.label} quota error only affects title generation, using normal backoff"
            )

        if (
            executor.supports_model_fallback
            and not state.fallback_used
            and is_thought_signature_error(stderr)
        ):
            fallback = executor.fallback_model
            if fallback and fallback != state.model:
                logger.warning(
                    f"[Retry] {self.label} thought signature error with model={state.model}, "
                    f"falling back to {fallback}"
                )
                state.fallback_used = True
                state.model = fallback
                return 0

        if state.attempt >= self.max_retries:
            return None
        if executor.is_auth_failure(result):
            logger.error(f"[Retry] {self.label} authentication failure, not retrying")
            return None
        if is_behavioral_abort(stderr):
            return None
        if not (title_only_quota or executor.is_retryable_error(result)):
            return None

        state.attempt += 1
        state.retry_count += 1
        delay_ms = calculate_backoff_delay_ms(state.attempt, self.retry_delay_ms, self._rng)
        logger.warning(
            f"[Retry] {self.label} retryable error (exit_code={result.exit_code}), "
            f"retry {state.retry_count}/{self.max_retries} in {delay_ms / 1000:.1f}s"
        )
        return delay_ms

    def _quota_wait(self, stderr: str, state: RetryState) -> float | None:
        label = quota_error_label(stderr)
        unbounded = self.max_quota_waits < 0
        if not self.wait_on_quota or (not unbounded and state.quota_wait_count >= self.max_quota_waits):
            logger.error(
                f"[Retry] {self.label} {label} and quota wait budget exhausted "
                f"(waits={state.quota_wait_count}, max={self.max_quota_waits}, "
                f"key={api_key_fingerprint(self._env)})"
            )
            return None

        state.quota_wait_count += 1
        delay_ms = extract_quota_retry_delay_ms(stderr) or self.quota_retry_delay_ms
        budget = "unbounded" if unbounded else str(self.max_quota_waits)
        logger.warning(
            f"[Retry] {self.label} {label}, waiting {delay_ms / 1000:.1f}s "
            f"(wait {state.quota_wait_count}/{budget}, key={api_key_fingerprint(self._env)})"
        )
        return delay_ms

    async def _pause(self, delay_ms: float, cancel_scope: anyio.CancelScope | None) -> None:
        seconds = delay_ms / 1000
        if self._sleep is not None:
            await self._sleep(seconds)
            return

        deadline = time.monotonic() + seconds
        while not _cancelled(cancel_scope):
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return
            await anyio.sleep(min(_SLEEP_SLICE_SECONDS, remaining))


def _cancelled(cancel_scope: anyio.CancelScope | None) -> bool:
    return cancel_scope is not None and cancel_scope.cancel_called
