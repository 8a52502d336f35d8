"""CLI Agent Exec MCP Server。

把执行引擎暴露为一个 MCP 工具 execute_agent。
服务只是外层入口，引擎本身不依赖它。

stdout 被 stdio 传输占用，所有后端的实时回显都会被关闭。
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from mcp.server import Server
from mcp.types import TextContent, Tool
from pydantic import ValidationError

from .config import Config, get_config
from .errors import ConfigurationError
from .runner import run_agent
from .shared.invokers import BACKEND_ALIASES, ExecutionRequest, ExecutionResult

__all__ = [
    "TOOL_NAME",
    "TOOL_DESCRIPTION",
    "create_server",
    "create_tool_schema",
    "format_error_response",
    "handle_execute_agent",
]

logger = logging.getLogger(__name__)

TOOL_NAME = "execute_agent"

TOOL_DESCRIPTION = (
    "Run a coding-agent CLI (opencode, claude_code or codex) in a working directory "
    "with hard/idle timeouts, doom-loop detection and automatic retries. "
    "Returns JSON: success, exitCode, stdout, stderr, durationMs, retryCount, tokenUsage."
)

# 工具参数中允许传入的字段
_TOOL_FIELDS = ("workdir", "task", "backend", "model", "timeout_seconds", "max_retries", "instructions_path")

RunAgent = Callable[..., Awaitable[ExecutionResult]]


def create_tool_schema() -> dict[str, Any]:
    """生成 execute_agent 的 inputSchema。"""
    return {
        "type": "object",
        "properties": {
            "workdir": {
                "type": "string",
                "description": "Absolute path of the working directory for the agent.",
            },
            "task": {
                "type": "string",
                "description": "Task text passed to the agent.",
            },
            "backend": {
                "type": "string",
                "description": (
                    "Backend selector. Falls back to LLM_EXECUTOR, then opencode. "
                    f"Accepted: {', '.join(sorted(BACKEND_ALIASES))}."
                ),
            },
            "model": {
                "type": "string",
                "description": "Model identifier, normalized per backend.",
            },
            "timeout_seconds": {
                "type": "number",
                "description": "Hard timeout in seconds.",
            },
            "max_retries": {
                "type": "integer",
                "description": "Retry budget for transient failures.",
            },
            "instructions_path": {
                "type": "string",
                "description": "File whose content is prepended to the task.",
            },
        },
        "required": ["workdir", "task"],
    }


def format_error_response(error: str) -> list[TextContent]:
    """统一的错误响应格式。"""
    payload = {"success": False, "isError": True, "error": error}
    return [TextContent(type="text", text=json.dumps(payload, ensure_ascii=False))]


async def handle_execute_agent(
    arguments: dict[str, Any],
    config: Config,
    run: RunAgent = run_agent,
) -> list[TextContent]:
    """处理一次 execute_agent 调用。

    Args:
        arguments: 工具参数
        config: 引擎配置
        run: 执行函数（测试注入）

    Returns:
        ExecutionResult.to_dict() 的 JSON；参数无效时返回错误 JSON
    """
    unknown = sorted(set(arguments) - set(_TOOL_FIELDS))
    if unknown:
        return format_error_response(f"Unknown arguments: {', '.join(unknown)}")

    values = {k: v for k, v in arguments.items() if v is not None}
    values.setdefault("timeout_seconds", config.default_timeout_seconds)

    try:
        request = ExecutionRequest.model_validate(values)
    except ValidationError as e:
        logger.warning(f"[MCP] Invalid {TOOL_NAME} arguments: {e.error_count()} error(s)")
        return format_error_response(f"Invalid arguments: {e}")

    try:
        result = await run(request, config=config)
    except ConfigurationError as e:
        logger.warning(f"[MCP] Configuration error: {e}")
        return format_error_response(str(e))

    return [TextContent(type="text", text=json.dumps(result.to_dict(), ensure_ascii=False))]


def create_server(config: Config | None = None, run: RunAgent = run_agent) -> Server:
    """创建 MCP Server 实例。

    Args:
        config: 引擎配置，默认使用全局配置
        run: 执行函数（测试注入）
    """
    config = config or get_config()
    config.disable_echo()
    server = Server("cli-agent-exec")

    @server.list_tools()
    async def list_tools() -> list[Tool]:
        """列出可用工具。"""
        logger.debug("[MCP] list_tools called")
        return [
            Tool(
                name=TOOL_NAME,
                description=TOOL_DESCRIPTION,
                inputSchema=create_tool_schema(),
            )
        ]

    @server.call_tool()
    async def call_tool(name: str, arguments: dict[str, Any]) -> list[TextContent]:
        """调用工具。"""
        logger.debug(
            f"[MCP] call_tool request: tool={name} "
            f"arguments={json.dumps({k: v[:100] + '...' if isinstance(v, str) and len(v) > 100 else v for k, v in (arguments or {}).items()}, ensure_ascii=False, default=str)}"
        )
        if name != TOOL_NAME:
            return format_error_response(f"Unknown tool '{name}'")

        try:
            return await handle_execute_agent(arguments or {}, config, run)
        except asyncio.CancelledError:
            logger.info(f"Tool '{name}' cancelled")
            raise

    return server
