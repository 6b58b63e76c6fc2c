"""
Performance monitoring utilities
Timing of provider calls and storage operations with per-operation counters
"""

import asyncio
import logging
import time
import functools
import threading
from dataclasses import dataclass, asdict
from typing import Dict, Any, Callable, Optional

from services.provisioning_models import ProviderError

logger = logging.getLogger(__name__)


@dataclass
class OperationStats:
    calls: int = 0
    failures: int = 0
    total_ms: float = 0.0
    max_ms: float = 0.0

    @property
    def avg_ms(self) -> float:
        return self.total_ms / self.calls if self.calls else 0.0


_stats: Dict[str, OperationStats] = {}
_stats_lock = threading.Lock()


def _record(operation_name: str, duration_ms: float, failed: bool) -> None:
    with _stats_lock:
        stats = _stats.setdefault(operation_name, OperationStats())
        stats.calls += 1
        stats.total_ms += duration_ms
        stats.max_ms = max(stats.max_ms, duration_ms)
        if failed:
            stats.failures += 1


class OperationTimer:
    """Times a block and records the duration under operation_name"""

    def __init__(self, operation_name: str):
        self.operation_name = operation_name
        self.start_time = None
        self.end_time = None
        self.failure: Optional[str] = None

    def mark_failed(self, reason: str) -> None:
        """Count the block as failed even though it did not raise"""
        self.failure = reason

    def __enter__(self):
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.end_time = time.perf_counter()
        duration = self.duration_ms
        if exc_type is not None:
            self.failure = exc_type.__name__
        failed = self.failure is not None
        _record(self.operation_name, duration, failed)

        if failed:
            logger.warning(f"⏱️ {self.operation_name}: {duration:.2f}ms (failed: {self.failure})")
        else:
            logger.debug(f"⏱️ {self.operation_name}: {duration:.2f}ms")

    @property
    def duration_ms(self) -> float:
        """Get duration in milliseconds"""
        if self.start_time is not None and self.end_time is not None:
            return (self.end_time - self.start_time) * 1000
        return 0.0


def monitor_performance(operation_name: str):
    """
    Decorator to time every call of a function

    A returned ProviderError counts as a failure, like a raised exception.

    Args:
        operation_name: Counter name, e.g. "registrar.register"
    """
    def decorator(func: Callable):
        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs):
            with OperationTimer(operation_name) as timer:
                result = await func(*args, **kwargs)
                if isinstance(result, ProviderError):
                    timer.mark_failed(result.kind.value)
                return result

        @functools.wraps(func)
        def sync_wrapper(*args, **kwargs):
            with OperationTimer(operation_name) as timer:
                result = func(*args, **kwargs)
                if isinstance(result, ProviderError):
                    timer.mark_failed(result.kind.value)
                return result

        if asyncio.iscoroutinefunction(func):
            return async_wrapper
        return sync_wrapper

    return decorator


def get_performance_stats() -> Dict[str, Dict[str, Any]]:
    """Snapshot of the counters, keyed by operation name"""
    with _stats_lock:
        return {
            name: {**asdict(stats), 'avg_ms': stats.avg_ms}
            for name, stats in _stats.items()
        }


def log_performance_summary() -> None:
    for name, stats in get_performance_stats().items():
        logger.info(
            f"📊 {name}: {stats['calls']} calls, {stats['failures']} failed, "
            f"avg {stats['avg_ms']:.1f}ms, max {stats['max_ms']:.1f}ms"
        )


def reset_performance_stats() -> None:
    with _stats_lock:
        _stats.clear()
