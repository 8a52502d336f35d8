"""执行器类型定义。

cli-agent-exec shared/invokers v0.1.0

定义统一的请求/结果契约，所有后端都使用同一套类型:
- Backend: 后端种类（封闭枚举）
- ExecutionRequest: 归一化请求（每次尝试内不可变）
- AttemptResult: 单次尝试结果（不含重试信息）
- ExecutionResult: 重试策略返回的最终结果（附带 retry_count）
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ...errors import ConfigurationError
from ..parsers.base import TokenUsage

__all__ = [
    "Backend",
    "ExecutionRequest",
    "AttemptResult",
    "ExecutionResult",
    "BACKEND_ALIASES",
]


class Backend(str, Enum):
    """后端种类枚举。"""

    OPENCODE = "opencode"
    CLAUDE_CODE = "claude_code"
    CODEX = "codex"

    @classmethod
    def parse(cls, value: str | Backend) -> Backend:
        """解析后端选择器（支持别名，忽略大小写）。

        Args:
            value: 选择器字符串或 Backend

        Returns:
            对应的 Backend

        Raises:
            ConfigurationError: 未知的选择器
        """
        if isinstance(value, Backend):
            return value
        key = str(value).strip().lower()
        backend = BACKEND_ALIASES.get(key)
        if backend is None:
            raise ConfigurationError(
                f"Unknown backend selector {value!r}, expected one of: "
                f"{', '.join(sorted(BACKEND_ALIASES))}"
            )
        return backend


BACKEND_ALIASES: dict[str, Backend] = {
    "opencode": Backend.OPENCODE,
    "open_code": Backend.OPENCODE,
    "open-code": Backend.OPENCODE,
    "claude_code": Backend.CLAUDE_CODE,
    "claudecode": Backend.CLAUDE_CODE,
    "claude-code": Backend.CLAUDE_CODE,
    "claude": Backend.CLAUDE_CODE,
    "codex": Backend.CODEX,
    "codex_cli": Backend.CODEX,
    "codex-cli": Backend.CODEX,
    "openai_codex": Backend.CODEX,
    "openai-codex": Backend.CODEX,
}


class ExecutionRequest(BaseModel):
    """归一化执行请求。

    Attributes:
        workdir: 工作目录
        task: 任务文本
        instructions_path: 指令文件，内容（去除首尾空白）作为前缀拼接到任务前
        timeout_seconds: 硬超时秒数（必须大于 0）
        env: 环境变量覆盖
        inherit_env: 是否继承当前进程环境
        model: 模型标识（各后端会按自身命名规则归一化）
        max_retries: 普通重试次数上限（None 使用配置）
        retry_delay_ms: 退避基础延迟（None 使用配置）
        max_quota_waits: 配额等待次数上限，负数表示不限（None 使用配置）
        backend: 后端选择器（None 时依次使用 LLM_EXECUTOR 和默认后端）
    """

    model_config = ConfigDict(frozen=True, extra="forbid", protected_namespaces=())

    workdir: Path
    task: str
    instructions_path: Path | None = None
    timeout_seconds: float = Field(default=3600, gt=0)
    env: dict[str, str] = Field(default_factory=dict)
    inherit_env: bool = True
    model: str | None = None
    max_retries: int | None = Field(default=None, ge=0)
    retry_delay_ms: int | None = Field(default=None, ge=0)
    max_quota_waits: int | None = None
    backend: Backend | None = None

    @field_validator("backend", mode="before")
    @classmethod
    def _parse_backend(cls, value: Any) -> Any:
        if value is None or isinstance(value, Backend):
            return value
        try:
            return Backend.parse(value)
        except ConfigurationError as e:
            raise ValueError(str(e)) from e

    @field_validator("model", mode="before")
    @classmethod
    def _blank_model_is_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value


@dataclass(frozen=True)
class AttemptResult:
    """单次尝试结果。

    Attributes:
        success: 是否成功
        exit_code: 退出码（-1 表示进程未正常退出或无法启动）
        stdout: 归一化后的助手输出
        stderr: 诊断文本，末尾附带每个中止原因的标记行
        duration_ms: 耗时（毫秒）
        token_usage: token 用量（后端未报告时为 None）
    """

    success: bool
    exit_code: int
    stdout: str
    stderr: str
    duration_ms: int
    token_usage: TokenUsage | None = None


@dataclass(frozen=True)
class ExecutionResult(AttemptResult):
    """最终执行结果。

    Attributes:
        retry_count: 首次之外的普通重试次数（配额等待和模型回退不计入）
    """

    retry_count: int = 0

    @classmethod
    def from_attempt(cls, attempt: AttemptResult, retry_count: int) -> ExecutionResult:
        """用单次尝试结果和重试次数构造最终结果。"""
        fields = {name: getattr(attempt, name) for name in AttemptResult.__dataclass_fields__}
        return cls(**fields, retry_count=retry_count)

    def to_dict(self) -> dict[str, Any]:
        """转换为字典（camelCase 键，用于 JSON 输出）。"""
        data: dict[str, Any] = {
            "success": self.success,
            "exitCode": self.exit_code,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "durationMs": self.duration_ms,
            "retryCount": self.retry_count,
        }
        if self.token_usage is not None:
            data["tokenUsage"] = self.token_usage.to_dict()
        return data
