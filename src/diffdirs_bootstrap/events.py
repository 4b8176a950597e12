"""进度事件模型与宿主回调。

diffdirs-bootstrap v0.1.0

BootstrapSequencer 在每次状态转换时产生 ProgressEvent，并立即交给宿主显示。
"发出消息" 与 "让出控制权" 是两件事：sink 是一次性调用（fire-and-forget），
不会挂起当前任务；挂起只发生在 ProcessRunner 等待子进程时。
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable
from enum import Enum
from typing import IO

from pydantic import BaseModel, ConfigDict, Field

__all__ = [
    "ProgressLevel",
    "ProgressEvent",
    "ProgressSink",
    "LoggingSink",
    "CollectingSink",
    "JsonLinesSink",
    "FanoutSink",
]


class ProgressLevel(str, Enum):
    """事件级别，有序：trace < info < warn < error。"""

    TRACE = "trace"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"

    @property
    def rank(self) -> int:
        return _LEVEL_RANK[self]

    @property
    def logging_level(self) -> int:
        """对应的 logging 级别（trace 映射为 DEBUG）。"""
        return _LOGGING_LEVELS[self]

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, ProgressLevel):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other: object) -> bool:
        if not isinstance(other, ProgressLevel):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other: object) -> bool:
        if not isinstance(other, ProgressLevel):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other: object) -> bool:
        if not isinstance(other, ProgressLevel):
            return NotImplemented
        return self.rank >= other.rank


_LEVEL_RANK: dict[ProgressLevel, int] = {
    ProgressLevel.TRACE: 0,
    ProgressLevel.INFO: 1,
    ProgressLevel.WARN: 2,
    ProgressLevel.ERROR: 3,
}

_LOGGING_LEVELS: dict[ProgressLevel, int] = {
    ProgressLevel.TRACE: logging.DEBUG,
    ProgressLevel.INFO: logging.INFO,
    ProgressLevel.WARN: logging.WARNING,
    ProgressLevel.ERROR: logging.ERROR,
}


class ProgressEvent(BaseModel):
    """进度事件，产生后立即交给宿主，不保留。

    Attributes:
        message: 消息文本
        level: 事件级别
        step: 产生事件的步骤名（mkdir/download/build/relocate，可选）
        timestamp: Unix 时间戳（秒）
    """

    model_config = ConfigDict(frozen=True)

    message: str
    level: ProgressLevel = ProgressLevel.INFO
    step: str | None = None
    timestamp: float = Field(default_factory=time.time)


# 宿主回调：接收一个事件，不返回任何东西
ProgressSink = Callable[[ProgressEvent], None]


class LoggingSink:
    """把事件转发到 logging。"""

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self.logger = logger or logging.getLogger("diffdirs_bootstrap.progress")

    def __call__(self, event: ProgressEvent) -> None:
        if event.step:
            self.logger.log(event.level.logging_level, f"[{event.step}] {event.message}")
        else:
            self.logger.log(event.level.logging_level, event.message)


class CollectingSink:
    """收集事件到列表中（测试与延迟渲染的宿主使用）。"""

    def __init__(self) -> None:
        self.events: list[ProgressEvent] = []

    def __call__(self, event: ProgressEvent) -> None:
        self.events.append(event)

    def at(self, level: ProgressLevel) -> list[ProgressEvent]:
        """返回指定级别的事件。"""
        return [e for e in self.events if e.level == level]

    def at_least(self, level: ProgressLevel) -> list[ProgressEvent]:
        """返回不低于指定级别的事件。"""
        return [e for e in self.events if e.level >= level]

    @property
    def messages(self) -> list[str]:
        return [e.message for e in self.events]


class JsonLinesSink:
    """每个事件写一行 JSON，供读取 stdout 的宿主解析。"""

    def __init__(self, stream: IO[str]) -> None:
        self.stream = stream

    def __call__(self, event: ProgressEvent) -> None:
        self.stream.write(event.model_dump_json() + "\n")
        self.stream.flush()


class FanoutSink:
    """把同一事件转发给多个 sink。"""

    def __init__(self, sinks: Iterable[ProgressSink]) -> None:
        self.sinks = list(sinks)

    def __call__(self, event: ProgressEvent) -> None:
        for sink in self.sinks:
            sink(event)
