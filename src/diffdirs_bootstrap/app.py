"""diffdirs-bootstrap 应用入口。

包含命令行解析、日志配置和主入口点。

退出码:
    0: 产物已就绪（下载或本地编译）
    1: 编译或移动产物失败
    2: 无法确定宿主版本档位
    130: 被 SIGINT 中断
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from dataclasses import replace
from pathlib import Path

from .config import MIN_STEP_TIMEOUT, Config, default_destination, get_config
from .errors import UnsupportedHostError
from .events import JsonLinesSink, LoggingSink, ProgressEvent, ProgressLevel, ProgressSink
from .sequencer import BootstrapOutcome, bootstrap

__all__ = ["build_parser", "run_bootstrap", "main"]

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_UNSUPPORTED_HOST = 2
EXIT_INTERRUPTED = 130  # 128 + SIGINT(2)


def build_parser() -> argparse.ArgumentParser:
    """构建命令行解析器（命令行参数覆盖环境变量）。"""
    parser = argparse.ArgumentParser(
        prog="diffdirs-bootstrap",
        description="Download the prebuilt diffdirs module, or build it from source.",
    )
    parser.add_argument("--plugin-root", type=Path, help="Plugin root (cargo workspace)")
    parser.add_argument("--dest", type=Path, help="Where the module must end up")
    parser.add_argument("--version-tier", help="Editor version tier, e.g. neovim-0-10")
    parser.add_argument("--release-url", help="Base URL of the release assets")
    parser.add_argument(
        "--skip-download", action="store_true", help="Build from source directly"
    )
    parser.add_argument(
        "--timeout", type=float, help="Per-step timeout in seconds (default: none)"
    )
    parser.add_argument(
        "--json", action="store_true", help="Write progress events as JSON lines to stdout"
    )
    return parser


def apply_args(config: Config, args: argparse.Namespace) -> Config:
    """把命令行参数合并到配置中。"""
    changes: dict[str, object] = {}
    if args.plugin_root is not None:
        changes["plugin_root"] = args.plugin_root
        # 未显式指定产物路径时，随插件根目录重新推导
        if args.dest is None and config.destination == default_destination(config.plugin_root):
            changes["destination"] = None
    if args.dest is not None:
        changes["destination"] = args.dest
    if args.version_tier:
        changes["version_tier"] = args.version_tier
    if args.release_url:
        changes["release_url"] = args.release_url
    if args.skip_download:
        changes["skip_download"] = True
    if args.timeout is not None:
        changes["step_timeout"] = (
            max(MIN_STEP_TIMEOUT, args.timeout) if args.timeout > 0 else None
        )
    return replace(config, **changes) if changes else config


async def run_bootstrap(config: Config, sink: ProgressSink) -> int:
    """运行 bootstrap 并映射为进程退出码。"""
    logger.debug(f"Starting bootstrap: {config}")
    try:
        outcome: BootstrapOutcome = await bootstrap(config, sink=sink)
    except UnsupportedHostError as e:
        sink(ProgressEvent(message=str(e), level=ProgressLevel.ERROR))
        return EXIT_UNSUPPORTED_HOST

    logger.debug(f"Bootstrap finished: status={outcome.status.value}")
    return EXIT_OK if outcome.ok else EXIT_FAILED


def configure_logging(config: Config) -> None:
    """配置日志输出。"""
    log_handlers: list[logging.Handler] = []
    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    if config.log_debug and config.log_file:
        # LOG_DEBUG 模式：输出到临时文件
        file_handler = logging.FileHandler(config.log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        log_handlers.append(file_handler)
        log_level = logging.DEBUG
    else:
        # 默认模式：输出到 stderr
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(formatter)
        log_handlers.append(stderr_handler)
        log_level = logging.INFO

    # 配置 root logger（第三方库）为 WARNING，减少噪音
    logging.basicConfig(level=logging.WARNING, handlers=log_handlers, force=True)
    # 只对 diffdirs_bootstrap 命名空间启用详细日志
    logging.getLogger("diffdirs_bootstrap").setLevel(log_level)


def main(argv: list[str] | None = None) -> int:
    """主入口点。"""
    args = build_parser().parse_args(argv)
    config = apply_args(get_config(), args)
    configure_logging(config)

    sink: ProgressSink = JsonLinesSink(sys.stdout) if args.json else LoggingSink()

    try:
        return asyncio.run(run_bootstrap(config, sink))
    except KeyboardInterrupt:
        logger.warning("Interrupted, child processes terminated")
        return EXIT_INTERRUPTED


if __name__ == "__main__":
    sys.exit(main())
