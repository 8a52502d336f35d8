"""执行引擎配置管理。

所有配置均来自环境变量风格的键值对，全部可选，未设置时使用默认值。
引擎本身不读取进程环境：load_config() 在入口边界被调用一次，
得到的 Config 再显式传入重试策略与各后端执行器。

通用环境变量:
    LLM_EXECUTOR: 默认后端 (opencode / claude_code / codex 及其别名)
    LLM_IDLE_TIMEOUT_SECONDS: 空闲超时秒数，默认 900，<=0 关闭
    LLM_DOOM_LOOP_WINDOW: 重复检测滑动窗口行数，默认 64
    LLM_DOOM_LOOP_IDENTICAL_THRESHOLD: 同一行出现次数阈值，默认 5，<=0 关闭
    LLM_DOOM_LOOP_PATTERN_MAX_LENGTH: 检测的最长重复块行数，默认 12
    LLM_DOOM_LOOP_PATTERN_REPEAT_THRESHOLD: 重复块连续出现次数阈值，默认 4
    LLM_MAX_CONSECUTIVE_PLANNING_LINES: 连续计划性语句上限，默认 10

OpenCode:
    OPENCODE_MODEL: 默认模型 (google/gemini-3-flash-preview)
    OPENCODE_FALLBACK_MODEL: thought signature 错误时的回退模型 (google/gemini-2.5-flash)
    OPENCODE_WAIT_ON_QUOTA: 配额耗尽时是否等待后重试，默认 true
    OPENCODE_QUOTA_RETRY_DELAY_MS: 配额等待默认时长，默认 30000
    OPENCODE_MAX_QUOTA_WAITS: 配额等待次数上限，默认 -1（不限）
    OPENCODE_MAX_RETRIES / OPENCODE_RETRY_DELAY_MS: 普通重试次数与基础延迟
    OPENCODE_ECHO_STDOUT: 是否实时回显输出，默认 true

Claude Code:
    CLAUDE_CODE_MODEL: 运行时模型覆盖
    CLAUDE_CODE_PERMISSION_MODE: 权限模式，默认 bypassPermissions
    CLAUDE_CODE_MAX_TURNS: 最大轮数，0 表示不限制
    CLAUDE_CODE_ALLOWED_TOOLS / CLAUDE_CODE_DISALLOWED_TOOLS: 工具列表，逗号或空白分隔
    CLAUDE_CODE_APPEND_SYSTEM_PROMPT: 追加系统提示
    CLAUDE_CODE_ECHO_STDOUT / CLAUDE_CODE_MAX_RETRIES / CLAUDE_CODE_RETRY_DELAY_MS

Codex:
    CODEX_MODEL: 运行时模型覆盖
    CODEX_ECHO_STDOUT / CODEX_MAX_RETRIES / CODEX_RETRY_DELAY_MS

服务与日志:
    CAE_LOG_DEBUG: 日志调试模式（日志输出到临时文件），默认 false
    CAE_DEFAULT_TIMEOUT_SECONDS: MCP 工具未指定超时时使用的硬超时，默认 3600
"""

from __future__ import annotations

import logging
import os
import re
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from .runtime.detectors import DetectorConfig

__all__ = [
    "Config",
    "OpencodeSettings",
    "ClaudeCodeSettings",
    "CodexSettings",
    "CLAUDE_PERMISSION_MODES",
    "load_config",
    "get_config",
    "reload_config",
    "parse_csv_setting",
]

logger = logging.getLogger(__name__)

# 默认值
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY_MS = 5000
DEFAULT_IDLE_TIMEOUT_SECONDS = 900
DEFAULT_TIMEOUT_SECONDS = 3600

DEFAULT_OPENCODE_MODEL = "google/gemini-3-flash-preview"
DEFAULT_OPENCODE_FALLBACK_MODEL = "google/gemini-2.5-flash"
DEFAULT_QUOTA_RETRY_DELAY_MS = 30000

DEFAULT_CLAUDE_MODEL = "claude-opus-4-6"
DEFAULT_CLAUDE_PERMISSION_MODE = "bypassPermissions"
CLAUDE_PERMISSION_MODES = frozenset({
    "default",
    "acceptEdits",
    "bypassPermissions",
    "delegate",
    "dontAsk",
    "plan",
})

DEFAULT_CODEX_MODEL = "gpt-5.3-codex"

_TRUE_VALUES = ("true", "1", "yes", "y", "on")
_FALSE_VALUES = ("false", "0", "no", "n", "off")
_CSV_SPLIT_RE = re.compile(r"[,\s]+")


def _parse_bool(value: str | None, default: bool = False) -> bool:
    """解析布尔值环境变量，无法识别时返回默认值。"""
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in _TRUE_VALUES:
        return True
    if normalized in _FALSE_VALUES:
        return False
    return default


def _parse_int(value: str | None, default: int) -> int:
    """解析整数环境变量，无法解析时返回默认值。"""
    if value is None or not value.strip():
        return default
    try:
        return int(float(value.strip()))
    except ValueError:
        logger.warning(f"Invalid integer setting {value!r}, using default {default}")
        return default


def _parse_str(value: str | None) -> str | None:
    if value is None or not value.strip():
        return None
    return value.strip()


def parse_csv_setting(value: str | None) -> list[str]:
    """解析逗号/空白分隔的列表。

    Args:
        value: 原始值，例如 "Read, Edit Bash"

    Returns:
        去除空项后的列表
    """
    if not value or not value.strip():
        return []
    return [item for item in _CSV_SPLIT_RE.split(value.strip()) if item]


@dataclass
class OpencodeSettings:
    """OpenCode 后端配置。"""

    model: str = DEFAULT_OPENCODE_MODEL
    fallback_model: str = DEFAULT_OPENCODE_FALLBACK_MODEL
    wait_on_quota: bool = True
    quota_retry_delay_ms: int = DEFAULT_QUOTA_RETRY_DELAY_MS
    max_quota_waits: int = -1
    max_retries: int = DEFAULT_MAX_RETRIES
    retry_delay_ms: int = DEFAULT_RETRY_DELAY_MS
    echo_stdout: bool = True


@dataclass
class ClaudeCodeSettings:
    """Claude Code 后端配置。

    Attributes:
        model: 运行时模型覆盖，优先级高于请求中的模型
        default_model: 请求未指定（或不适用）模型时使用的默认模型
        permission_mode: --permission-mode 取值
        max_turns: --max-turns，0 表示不传
        allowed_tools: --allowedTools
        disallowed_tools: --disallowedTools
        append_system_prompt: --append-system-prompt
    """

    model: str | None = None
    default_model: str = DEFAULT_CLAUDE_MODEL
    permission_mode: str = DEFAULT_CLAUDE_PERMISSION_MODE
    max_turns: int = 0
    allowed_tools: list[str] = field(default_factory=list)
    disallowed_tools: list[str] = field(default_factory=list)
    append_system_prompt: str | None = None
    max_retries: int = DEFAULT_MAX_RETRIES
    retry_delay_ms: int = DEFAULT_RETRY_DELAY_MS
    echo_stdout: bool = True


@dataclass
class CodexSettings:
    """Codex 后端配置。"""

    model: str | None = None
    default_model: str = DEFAULT_CODEX_MODEL
    max_retries: int = DEFAULT_MAX_RETRIES
    retry_delay_ms: int = DEFAULT_RETRY_DELAY_MS
    echo_stdout: bool = True


@dataclass
class Config:
    """执行引擎配置。

    Attributes:
        executor: 后端提示（LLM_EXECUTOR 原始值，解析在入口处完成）
        idle_timeout_seconds: 空闲超时秒数
        detectors: 输出异常检测阈值
        opencode: OpenCode 后端配置
        claude: Claude Code 后端配置
        codex: Codex 后端配置
        default_timeout_seconds: MCP 工具的默认硬超时
        log_debug: 日志调试模式（输出到临时文件）
        log_file: 日志文件路径（当 log_debug=True 时自动设置）
    """

    executor: str | None = None
    idle_timeout_seconds: int = DEFAULT_IDLE_TIMEOUT_SECONDS
    detectors: DetectorConfig = field(default_factory=DetectorConfig)
    opencode: OpencodeSettings = field(default_factory=OpencodeSettings)
    claude: ClaudeCodeSettings = field(default_factory=ClaudeCodeSettings)
    codex: CodexSettings = field(default_factory=CodexSettings)
    default_timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS
    log_debug: bool = False
    log_file: str | None = None

    def disable_echo(self) -> None:
        """关闭所有后端的实时回显（stdout 被其他协议占用时使用）。"""
        self.opencode.echo_stdout = False
        self.claude.echo_stdout = False
        self.codex.echo_stdout = False

    def __repr__(self) -> str:
        return (
            f"Config(executor={self.executor or 'default'}, "
            f"idle_timeout_seconds={self.idle_timeout_seconds}, "
            f"opencode_model={self.opencode.model}, "
            f"claude_model={self.claude.model or self.claude.default_model}, "
            f"codex_model={self.codex.model or self.codex.default_model}, "
            f"log_debug={self.log_debug}, "
            f"log_file={self.log_file})"
        )


def _generate_log_file_path() -> str:
    """生成日志文件路径。

    Returns:
        临时目录下的日志文件绝对路径
    """
    log_dir = Path(tempfile.gettempdir()) / "cli-agent-exec"
    log_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = log_dir / f"cae_debug_{timestamp}.log"

    return str(log_file.resolve())


def _parse_permission_mode(value: str | None) -> str:
    mode = _parse_str(value)
    if mode is None:
        return DEFAULT_CLAUDE_PERMISSION_MODE
    if mode not in CLAUDE_PERMISSION_MODES:
        logger.warning(
            f"Unknown CLAUDE_CODE_PERMISSION_MODE {mode!r}, using {DEFAULT_CLAUDE_PERMISSION_MODE}"
        )
        return DEFAULT_CLAUDE_PERMISSION_MODE
    return mode


def load_config(env: Mapping[str, str] | None = None) -> Config:
    """从环境变量加载配置。

    Args:
        env: 键值来源，默认读取 os.environ

    Returns:
        Config 实例
    """
    source = os.environ if env is None else env
    get = source.get

    log_debug = _parse_bool(get("CAE_LOG_DEBUG"), default=False)

    detectors = DetectorConfig(
        window=max(1, _parse_int(get("LLM_DOOM_LOOP_WINDOW"), 64)),
        identical_threshold=_parse_int(get("LLM_DOOM_LOOP_IDENTICAL_THRESHOLD"), 5),
        pattern_max_length=_parse_int(get("LLM_DOOM_LOOP_PATTERN_MAX_LENGTH"), 12),
        pattern_repeat_threshold=_parse_int(get("LLM_DOOM_LOOP_PATTERN_REPEAT_THRESHOLD"), 4),
        max_planning_lines=_parse_int(get("LLM_MAX_CONSECUTIVE_PLANNING_LINES"), 10),
    )

    opencode = OpencodeSettings(
        model=_parse_str(get("OPENCODE_MODEL")) or DEFAULT_OPENCODE_MODEL,
        fallback_model=_parse_str(get("OPENCODE_FALLBACK_MODEL")) or DEFAULT_OPENCODE_FALLBACK_MODEL,
        wait_on_quota=_parse_bool(get("OPENCODE_WAIT_ON_QUOTA"), default=True),
        quota_retry_delay_ms=max(0, _parse_int(get("OPENCODE_QUOTA_RETRY_DELAY_MS"), DEFAULT_QUOTA_RETRY_DELAY_MS)),
        max_quota_waits=_parse_int(get("OPENCODE_MAX_QUOTA_WAITS"), -1),
        max_retries=max(0, _parse_int(get("OPENCODE_MAX_RETRIES"), DEFAULT_MAX_RETRIES)),
        retry_delay_ms=max(0, _parse_int(get("OPENCODE_RETRY_DELAY_MS"), DEFAULT_RETRY_DELAY_MS)),
        echo_stdout=_parse_bool(get("OPENCODE_ECHO_STDOUT"), default=True),
    )

    claude = ClaudeCodeSettings(
        model=_parse_str(get("CLAUDE_CODE_MODEL")),
        permission_mode=_parse_permission_mode(get("CLAUDE_CODE_PERMISSION_MODE")),
        max_turns=max(0, _parse_int(get("CLAUDE_CODE_MAX_TURNS"), 0)),
        allowed_tools=parse_csv_setting(get("CLAUDE_CODE_ALLOWED_TOOLS")),
        disallowed_tools=parse_csv_setting(get("CLAUDE_CODE_DISALLOWED_TOOLS")),
        append_system_prompt=_parse_str(get("CLAUDE_CODE_APPEND_SYSTEM_PROMPT")),
        max_retries=max(0, _parse_int(get("CLAUDE_CODE_MAX_RETRIES"), DEFAULT_MAX_RETRIES)),
        retry_delay_ms=max(0, _parse_int(get("CLAUDE_CODE_RETRY_DELAY_MS"), DEFAULT_RETRY_DELAY_MS)),
        echo_stdout=_parse_bool(get("CLAUDE_CODE_ECHO_STDOUT"), default=True),
    )

    codex = CodexSettings(
        model=_parse_str(get("CODEX_MODEL")),
        max_retries=max(0, _parse_int(get("CODEX_MAX_RETRIES"), DEFAULT_MAX_RETRIES)),
        retry_delay_ms=max(0, _parse_int(get("CODEX_RETRY_DELAY_MS"), DEFAULT_RETRY_DELAY_MS)),
        echo_stdout=_parse_bool(get("CODEX_ECHO_STDOUT"), default=True),
    )

    return Config(
        executor=_parse_str(get("LLM_EXECUTOR")),
        idle_timeout_seconds=_parse_int(get("LLM_IDLE_TIMEOUT_SECONDS"), DEFAULT_IDLE_TIMEOUT_SECONDS),
        detectors=detectors,
        opencode=opencode,
        claude=claude,
        codex=codex,
        default_timeout_seconds=max(
            1, _parse_int(get("CAE_DEFAULT_TIMEOUT_SECONDS"), DEFAULT_TIMEOUT_SECONDS)
        ),
        log_debug=log_debug,
        log_file=_generate_log_file_path() if log_debug else None,
    )


# 全局配置实例（延迟加载）
_config: Config | None = None


def get_config() -> Config:
    """获取全局配置实例。"""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reload_config() -> Config:
    """重新加载配置（用于测试）。"""
    global _config
    _config = load_config()
    return _config
