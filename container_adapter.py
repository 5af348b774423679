"""
Container interface for the stack orchestrator.

Every backend (Docker, Kubernetes, inline shell script) **sub-classes
`Container`** and implements the four backend-specific methods (`start`,
`stop`, `is_running`, `address`).  Everything else is shared.
"""

from __future__ import annotations

import queue
import threading
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Deque, Dict, List, Optional

from container_config import (
    APP_LOG_BUFFER,
    OVERFLOW_BLOCK,
    OVERFLOW_DROP_OLDEST,
    ContainerConfig,
)

if TYPE_CHECKING:
    from container_stack import Stack


@dataclass
class LogLine:
    source:    str
    message:   str
    timestamp: datetime = field(default_factory=lambda: datetime.now(tz=UTC))

    def as_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source,
            "message": self.message,
            "timestamp": self.timestamp.isoformat().replace("+00:00", "Z"),
        }


class LogBuffer:
    """
    Bounded, closable FIFO of `LogLine`s owned by exactly one container.

    ● Producers (the container's follow-log thread) call `put()`.  When the
      buffer is full the overflow policy decides:
        - ``block``       : wait for a consumer to make room (backpressure).
        - ``drop_oldest`` : discard the oldest pending line.
    ● Consumers never block: `get_nowait()` raises `queue.Empty`, `drain()`
      returns whatever is pending.
    ● `close()` is idempotent, releases blocked producers and makes later
      `put()` calls return False.  Lines already buffered stay readable.
    """

    def __init__(self, maxsize: int = APP_LOG_BUFFER, overflow: str = OVERFLOW_BLOCK) -> None:
        self.maxsize  = maxsize
        self.overflow = overflow
        self.closed   = False
        self._lines: Deque[LogLine] = deque()
        self._cond = threading.Condition()

    def put(self, line: LogLine) -> bool:
        with self._cond:
            while not self.closed and len(self._lines) >= self.maxsize:
                if self.overflow == OVERFLOW_DROP_OLDEST:
                    self._lines.popleft()
                    break
                self._cond.wait()

            if self.closed:
                return False

            self._lines.append(line)
            return True

    def get_nowait(self) -> LogLine:
        with self._cond:
            if not self._lines:
                raise queue.Empty
            line = self._lines.popleft()
            self._cond.notify_all()
            return line

    def drain(self, limit: int) -> List[LogLine]:
        out: List[LogLine] = []
        while len(out) < limit:
            try:
                out.append(self.get_nowait())
            except queue.Empty:
                break
        return out

    def close(self) -> None:
        with self._cond:
            self.closed = True
            self._cond.notify_all()

    def __len__(self) -> int:
        with self._cond:
            return len(self._lines)


class Container(ABC):
    """
    One workload managed by a `Stack`.

    ● Lifecycle:
        - `validate()`   : check and default the owned `config`.
        - `start()`      : launch the workload; `id` becomes non-empty.
                           Not idempotent (restart = `stop()` then `start()`).
        - `stop()`       : idempotent; closes the log buffer first, then tears
                           the backend resource down.  Never-started → no-op.
    ● Observation:
        - `is_running()` : bounded liveness probe, never raises.
        - `address()`    : ``host:port`` while running, ``""`` otherwise.
        - `tail()`       : the container's `LogBuffer` (drain, don't wait).
    """

    engine = ""

    def __init__(self, argument: str = "default://", stack: Optional["Stack"] = None) -> None:
        self.argument = argument
        self.stack    = stack
        self.config   = ContainerConfig()
        self._id      = ""
        self._logs    = LogBuffer()

    # ---------- lifecycle -------------------------------------------------- #
    def validate(self) -> None:
        self.config.validate()
        self._logs.overflow = self.config.log_overflow

    @abstractmethod
    def start(self) -> None: ...

    @abstractmethod
    def stop(self) -> None: ...

    # ---------- observation ------------------------------------------------ #
    @abstractmethod
    def is_running(self) -> bool: ...

    @abstractmethod
    def address(self) -> str: ...

    @property
    def id(self) -> str:
        return self._id

    def tail(self) -> LogBuffer:
        return self._logs

    def describe(self) -> Dict[str, Any]:
        running = self.is_running()
        return {
            "name": self.config.name,
            "id": self._id,
            "engine": self.engine,
            "image": self.config.image,
            "running": running,
            "address": self.address() if running else "",
        }

    def __str__(self) -> str:
        return self.config.name

    # ---------- helpers for subclasses ------------------------------------- #
    def _reset_logs(self) -> None:
        if self._logs.closed:
            self._logs = LogBuffer(overflow=self.config.log_overflow)

    def _push(self, message: str, timestamp: Optional[datetime] = None,
              logs: Optional[LogBuffer] = None) -> bool:
        # follow threads pass the buffer of the start they belong to
        line = LogLine(source=self.config.name, message=message)
        if timestamp is not None:
            line.timestamp = timestamp
        return (logs or self._logs).put(line)
