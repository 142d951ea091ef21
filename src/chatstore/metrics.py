"""In-process counters for chatstore database work.

Two things are tracked:
- Bulk reads (tag search, contact lists, member lists, message listing,
  upload garbage collection): how often they run, how long they take and
  how many rows they hand back. Slow ones are logged.
- Transactions opened by ``db.transaction``: how many committed and how
  many were rolled back.

Nothing here talks to the database; callers report into the global
``metrics`` object.
"""

from __future__ import annotations

import logging
import time
from collections import defaultdict
from collections.abc import Sized
from contextlib import contextmanager
from dataclasses import dataclass, field
from functools import wraps
from threading import Lock
from typing import Any, Callable, Iterator, TypeVar

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])

SLOW_OPERATION_MS = 100.0


@dataclass
class OperationStats:
    """Running totals for one named operation."""

    count: int = 0
    rows: int = 0
    total_ms: float = 0.0
    max_ms: float = 0.0

    def record(self, duration_ms: float, rows: int) -> None:
        self.count += 1
        self.rows += rows
        self.total_ms += duration_ms
        self.max_ms = max(self.max_ms, duration_ms)

    def to_dict(self) -> dict:
        return {
            "count": self.count,
            "rows": self.rows,
            "avg_ms": round(self.total_ms / self.count, 2) if self.count else 0.0,
            "max_ms": round(self.max_ms, 2),
        }


@dataclass
class Metrics:
    """Global metrics collector."""

    _lock: Lock = field(default_factory=Lock)
    operations: dict[str, OperationStats] = field(
        default_factory=lambda: defaultdict(OperationStats)
    )
    committed: int = 0
    rolled_back: int = 0
    _start_time: float = field(default_factory=time.time)

    def record_operation(self, operation: str, duration_ms: float, rows: int = 0) -> None:
        with self._lock:
            self.operations[operation].record(duration_ms, rows)

    def record_transaction(self, committed: bool) -> None:
        with self._lock:
            if committed:
                self.committed += 1
            else:
                self.rolled_back += 1

    def to_dict(self) -> dict:
        with self._lock:
            return {
                "uptime_seconds": round(time.time() - self._start_time, 1),
                "operations": {k: v.to_dict() for k, v in self.operations.items()},
                "transactions": {"committed": self.committed, "rolled_back": self.rolled_back},
            }

    def reset(self) -> None:
        """Zero everything (tests call this between cases)."""
        with self._lock:
            self.operations.clear()
            self.committed = 0
            self.rolled_back = 0
            self._start_time = time.time()


metrics = Metrics()


@dataclass
class OperationTimer:
    """Handle yielded by timed_db_operation; set ``rows`` before leaving the block."""

    operation: str
    rows: int = 0
    _start: float = field(default_factory=time.perf_counter)

    def finish(self) -> float:
        duration_ms = (time.perf_counter() - self._start) * 1000
        metrics.record_operation(self.operation, duration_ms, self.rows)
        if duration_ms > SLOW_OPERATION_MS:
            logger.warning(
                f"Slow DB operation: {self.operation} took {duration_ms:.1f}ms "
                f"({self.rows} rows)"
            )
        return duration_ms


@contextmanager
def timed_db_operation(operation: str) -> Iterator[OperationTimer]:
    """Time a block of queries.

    Usage:
        with timed_db_operation("find_users") as timer:
            rows = conn.execute(...).fetchall()
            timer.rows = len(rows)
    """
    timer = OperationTimer(operation)
    try:
        yield timer
    finally:
        timer.finish()


def timed_operation(operation_name: str) -> Callable[[F], F]:
    """Decorator form of timed_db_operation. A sized result counts as its rows."""

    def decorator(func: F) -> F:
        @wraps(func)
        def wrapper(*args, **kwargs):
            with timed_db_operation(operation_name) as timer:
                result = func(*args, **kwargs)
                if isinstance(result, Sized):
                    timer.rows = len(result)
                return result

        return wrapper  # type: ignore

    return decorator
