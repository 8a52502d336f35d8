"""Pytest 配置和 fixtures。"""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

# 项目根目录
PROJECT_ROOT = Path(__file__).parent.parent

# 添加 src 目录到 Python 路径
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

# 模拟 CLI 脚本
FAKE_AGENT = Path(__file__).parent / "fixtures" / "fake_agent.py"

# 测试中使用的快速 supervisor 参数
FAST_SUPERVISOR_OPTIONS = {
    "idle_check_interval": 0.1,
    "settle_poll_interval": 0.1,
    "cancel_poll_interval": 0.05,
    "kill_grace": 0.5,
    "progress_interval": 0,
    "forward_parent_signals": False,
}


@pytest.fixture
def project_root() -> Path:
    """项目根目录。"""
    return PROJECT_ROOT


@pytest.fixture
def fake_agent() -> Path:
    """模拟 CLI 脚本路径。"""
    return FAKE_AGENT


@pytest.fixture
def fake_command():
    """构造运行模拟 CLI 的命令前缀。"""

    def _make(*fake_args: str) -> list[str]:
        return [sys.executable, str(FAKE_AGENT), *fake_args]

    return _make


@pytest.fixture
def supervisor_options() -> dict:
    """快速轮询的 supervisor 参数（不安装父进程信号转发）。"""
    return dict(FAST_SUPERVISOR_OPTIONS)
