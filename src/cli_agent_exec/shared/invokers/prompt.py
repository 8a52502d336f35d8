"""Prompt 构建与子进程环境合并。

cli-agent-exec shared/invokers v0.1.0
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path

__all__ = [
    "build_prompt",
    "build_child_env",
    "runtime_environ",
]


def build_prompt(task: str, instructions_path: Path | None = None) -> str:
    """拼接指令文件内容与任务文本。

    Args:
        task: 任务文本
        instructions_path: 指令文件路径（可选）

    Returns:
        "<指令>\\n\\n<任务>"，指令为空时只返回任务

    Raises:
        OSError: 指令文件无法读取
    """
    if instructions_path is None:
        return task
    instructions = Path(instructions_path).read_text(encoding="utf-8").strip()
    if not instructions:
        return task
    return f"{instructions}\n\n{task}"


def build_child_env(
    overrides: Mapping[str, str],
    inherit: bool = True,
    base: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """合并子进程环境变量。

    Args:
        overrides: 请求中的覆盖项
        inherit: 是否继承 base（默认当前进程环境）
        base: 基础环境，默认 os.environ

    Returns:
        子进程使用的完整环境
    """
    env: dict[str, str] = dict(os.environ if base is None else base) if inherit else {}
    env.update({str(k): str(v) for k, v in overrides.items()})
    return env


def runtime_environ(
    overrides: Mapping[str, str],
    base: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """构造读取运行时设置用的环境视图。

    请求中的非空白值优先，其余取自进程环境。
    """
    env = dict(os.environ if base is None else base)
    env.update({k: v for k, v in overrides.items() if isinstance(v, str) and v.strip()})
    return env
