"""异常类型定义。

执行期失败（超时、检测器中止、后端报错等）不会抛出异常，
一律体现在 ExecutionResult 中；这里只定义入口边界上的配置类错误。
"""

from __future__ import annotations

__all__ = [
    "CliAgentExecError",
    "ConfigurationError",
]


class CliAgentExecError(Exception):
    """cli-agent-exec 异常基类。"""


class ConfigurationError(CliAgentExecError, ValueError):
    """配置错误。

    例如未知的后端选择器、无法解析的配置值。
    """
