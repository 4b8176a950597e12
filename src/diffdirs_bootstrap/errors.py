"""Bootstrap 异常类。

diffdirs-bootstrap v0.1.0

ProcessRunner 本身从不抛出这些异常，进程级失败都记录在 ProcessResult 中，
由 BootstrapSequencer 负责解释和升级。
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .runtime import ProcessResult

__all__ = [
    "BootstrapError",
    "UnsupportedHostError",
    "StepFailedError",
]


class BootstrapError(Exception):
    """Bootstrap 基础异常。"""
    pass


class UnsupportedHostError(BootstrapError):
    """无法确定宿主编辑器的版本档位（版本过旧、输出无法解析或编辑器无法启动）。"""
    pass


class StepFailedError(BootstrapError):
    """致命步骤失败（build / relocate / mkdir）。

    Attributes:
        step: 失败的步骤名
        result: 该步骤的完整进程结果（含 stdout/stderr）
    """

    def __init__(self, step: str, result: ProcessResult) -> None:
        self.step = step
        self.result = result
        if result.spawn_error:
            detail = result.spawn_error
        else:
            detail = f"exit code {result.exit_code}"
        super().__init__(f"[{step}] {detail}")
