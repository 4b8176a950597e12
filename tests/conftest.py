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

FIXTURES_DIR = Path(__file__).parent / "fixtures"


@pytest.fixture
def chatty_cli() -> list[str]:
    """运行 chatty_cli.py 的命令前缀。"""
    return [sys.executable, str(FIXTURES_DIR / "chatty_cli.py")]


@pytest.fixture
def plugin_root(tmp_path: Path) -> Path:
    """临时插件根目录。"""
    root = tmp_path / "diffdirs.nvim"
    root.mkdir()
    return root
