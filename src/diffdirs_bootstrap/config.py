"""Bootstrap 环境变量配置管理。

环境变量:
    DIFFDIRS_PLUGIN_ROOT: 插件根目录（cargo build 的工作目录）
        - 默认当前目录

    DIFFDIRS_DEST: 最终产物路径
        - 默认 <plugin_root>/lua/diffdirs.so（Windows 为 .dll）

    DIFFDIRS_RELEASE_URL: 预编译产物的下载地址前缀
        - 默认 https://github.com/jayong93/diffdirs.nvim/releases/latest/download

    DIFFDIRS_VERSION_TIER: 宿主版本档位（如 neovim-0-10）
        - 空/未设置 = 运行 `<editor> --version` 自动检测

    DIFFDIRS_EDITOR / DIFFDIRS_CURL / DIFFDIRS_CARGO: 可执行文件
        - 默认 nvim / curl / cargo

    DIFFDIRS_SKIP_DOWNLOAD: 跳过下载，直接本地编译
        - true/1/yes/on = 跳过
        - false/0/no = 不跳过 (默认)

    DIFFDIRS_STEP_TIMEOUT: 每个子进程的超时时间（秒）
        - 空/未设置 = 不限时 (默认)
        - 最小 1 秒

    DIFFDIRS_LOG_DEBUG: 日志调试模式
        - true/1/yes = 开启 (日志输出到临时文件)
        - false/0/no = 关闭 (默认，日志输出到 stderr)
"""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from .runtime.process_runner import IS_WINDOWS

__all__ = ["Config", "load_config", "get_config", "reload_config"]

DEFAULT_RELEASE_URL = "https://github.com/jayong93/diffdirs.nvim/releases/latest/download"
ARTIFACT_PREFIX = "diffdirs"
MIN_STEP_TIMEOUT = 1.0


def _parse_bool(value: str | None, default: bool = False) -> bool:
    """解析布尔值环境变量。"""
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


def _parse_optional(value: str | None) -> str | None:
    """空字符串视为未设置。"""
    if value is None or not value.strip():
        return None
    return value.strip()


def _parse_timeout(value: str | None) -> float | None:
    """解析超时环境变量，无效值视为不限时。"""
    if not value:
        return None
    try:
        timeout = float(value)
    except ValueError:
        return None
    if timeout <= 0:
        return None
    return max(MIN_STEP_TIMEOUT, timeout)


def default_destination(plugin_root: Path) -> Path:
    """插件加载的固定产物路径。"""
    suffix = "dll" if IS_WINDOWS else "so"
    return plugin_root / "lua" / f"{ARTIFACT_PREFIX}.{suffix}"


@dataclass
class Config:
    """Bootstrap 配置。

    Attributes:
        plugin_root: 插件根目录
        destination: 最终产物路径
        release_url: 下载地址前缀
        version_tier: 版本档位覆盖值（None = 自动检测）
        editor: 宿主编辑器可执行文件
        curl: curl 可执行文件
        cargo: cargo 可执行文件
        skip_download: 跳过下载直接编译
        step_timeout: 子进程超时（None = 不限时）
        log_debug: 日志调试模式（输出到临时文件）
        log_file: 日志文件路径（当 log_debug=True 时自动设置）
    """

    plugin_root: Path = field(default_factory=Path.cwd)
    destination: Path | None = None
    release_url: str = DEFAULT_RELEASE_URL
    version_tier: str | None = None
    editor: str = "nvim"
    curl: str = "curl"
    cargo: str = "cargo"
    skip_download: bool = False
    step_timeout: float | None = None
    log_debug: bool = False
    log_file: str | None = None

    def __post_init__(self) -> None:
        """确保路径是 Path 对象，并补全默认产物路径。"""
        if isinstance(self.plugin_root, str):
            self.plugin_root = Path(self.plugin_root)
        if isinstance(self.destination, str):
            self.destination = Path(self.destination)
        if self.destination is None:
            self.destination = default_destination(self.plugin_root)

    @property
    def target_dir(self) -> Path:
        """cargo release 产物目录。"""
        return self.plugin_root / "target" / "release"

    def __repr__(self) -> str:
        return (
            f"Config(plugin_root={self.plugin_root}, "
            f"destination={self.destination}, "
            f"release_url={self.release_url}, "
            f"version_tier={self.version_tier or 'auto'}, "
            f"skip_download={self.skip_download}, "
            f"step_timeout={self.step_timeout}, "
            f"log_debug={self.log_debug}, "
            f"log_file={self.log_file})"
        )


def _generate_log_file_path() -> str:
    """生成日志文件路径。

    Returns:
        临时目录下的日志文件绝对路径
    """
    log_dir = Path(tempfile.gettempdir()) / "diffdirs-bootstrap"
    log_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = log_dir / f"bootstrap_debug_{timestamp}.log"

    return str(log_file.resolve())


def load_config() -> Config:
    """从环境变量加载配置。"""
    log_debug = _parse_bool(os.environ.get("DIFFDIRS_LOG_DEBUG"), default=False)
    log_file = _generate_log_file_path() if log_debug else None

    root = _parse_optional(os.environ.get("DIFFDIRS_PLUGIN_ROOT"))
    plugin_root = Path(root) if root else Path.cwd()
    dest = _parse_optional(os.environ.get("DIFFDIRS_DEST"))

    return Config(
        plugin_root=plugin_root,
        destination=Path(dest) if dest else None,
        release_url=_parse_optional(os.environ.get("DIFFDIRS_RELEASE_URL")) or DEFAULT_RELEASE_URL,
        version_tier=_parse_optional(os.environ.get("DIFFDIRS_VERSION_TIER")),
        editor=_parse_optional(os.environ.get("DIFFDIRS_EDITOR")) or "nvim",
        curl=_parse_optional(os.environ.get("DIFFDIRS_CURL")) or "curl",
        cargo=_parse_optional(os.environ.get("DIFFDIRS_CARGO")) or "cargo",
        skip_download=_parse_bool(os.environ.get("DIFFDIRS_SKIP_DOWNLOAD"), default=False),
        step_timeout=_parse_timeout(os.environ.get("DIFFDIRS_STEP_TIMEOUT")),
        log_debug=log_debug,
        log_file=log_file,
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
