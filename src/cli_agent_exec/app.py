"""CLI Agent Exec 应用入口。

包含服务器生命周期管理和主入口点。
"""

from __future__ import annotations

import asyncio
import logging
import sys

from mcp.server.stdio import stdio_server

from .config import get_config
from .server import create_server

__all__ = ["run_server", "main", "configure_logging"]

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


async def run_server() -> None:
    """运行 MCP Server（stdio 传输）。"""
    config = get_config()
    logger.info(f"Starting CLI Agent Exec MCP Server: {config}")

    server = create_server(config)
    try:
        async with stdio_server() as (read_stream, write_stream):
            logger.debug("stdio transport ready")
            await server.run(read_stream, write_stream, server.create_initialization_options())
    except asyncio.CancelledError:
        logger.info("run_server: cancelled")
        raise
    finally:
        logger.info("run_server: shutdown completed")


def configure_logging() -> None:
    """配置日志输出。

    默认输出到 stderr（stdout 被 stdio 传输占用）；
    CAE_LOG_DEBUG 模式下 DEBUG 日志写入临时文件。
    """
    config = get_config()
    log_handlers: list[logging.Handler] = []

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setFormatter(logging.Formatter(LOG_FORMAT))

    if config.log_debug and config.log_file:
        # LOG_DEBUG 模式：完整日志写入文件，stderr 只保留 INFO 以上
        file_handler = logging.FileHandler(config.log_file, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        stderr_handler.setLevel(logging.INFO)
        log_handlers.extend([file_handler, stderr_handler])
        log_level = logging.DEBUG
    else:
        log_handlers.append(stderr_handler)
        log_level = logging.INFO

    # 配置 root logger（第三方库）为 WARNING，减少噪音
    logging.basicConfig(
        level=logging.WARNING,
        handlers=log_handlers,
    )
    # 只对 cli_agent_exec 命名空间启用详细日志
    logging.getLogger("cli_agent_exec").setLevel(log_level)

    if config.log_file:
        logger.info(f"Debug log: {config.log_file}")


def main() -> None:
    """主入口点。"""
    configure_logging()
    try:
        asyncio.run(run_server())
    except KeyboardInterrupt:
        logger.info("Interrupted, exiting")
        sys.exit(130)


if __name__ == "__main__":
    main()
