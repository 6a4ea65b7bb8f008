"""Request performance telemetry.

Timings are written fire-and-forget: ``start_tracking`` hands back a callback
that queues the insert on a background worker and returns at once, and any
failure while persisting is logged instead of raised. Telemetry must never
change the status or latency of the request it measures.
"""

import math
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from datetime import datetime, timedelta
from functools import wraps
from typing import Callable, Dict, List, Optional, Set

from sqlmodel import select

from .logging import get_logger
from .models import EndpointPerformance, PerformanceMetric, to_utc, utcnow
from .storage import Database

logger = get_logger(__name__)

SLOW_REQUEST_THRESHOLD_MS = 500
AGGREGATION_WINDOW = timedelta(hours=24)


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


class PerformanceRecorder:
    """Persists request timings and summarizes them per endpoint."""

    def __init__(self, database: Database,
                 clock: Callable[[], datetime] = utcnow,
                 timer: Callable[[], float] = time.perf_counter):
        self.database = database
        self._clock = clock
        self._timer = timer
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="perf-metrics")
        self._pending: Set[Future] = set()
        self._pending_lock = threading.Lock()

    def record(self, endpoint: str, method: str, duration: int, status: int) -> None:
        """Append one metric. Errors are logged and swallowed."""
        try:
            with self.database.session() as session:
                session.add(PerformanceMetric(
                    endpoint=endpoint,
                    method=method,
                    duration=duration,
                    status=status,
                    timestamp=self._clock(),
                ))
                session.commit()
        except Exception as e:
            logger.error("Failed to track performance", endpoint=endpoint,
                         method=method, error=str(e))

    def start_tracking(self, endpoint: str, method: str) -> Callable[..., None]:
        """Start a timer and return ``track_end(status=200, endpoint=None)``.

        ``track_end`` measures the elapsed milliseconds and schedules the write
        in the background; it never blocks on or raises from persistence.
        Passing ``endpoint`` replaces the label given here, for callers that
        only learn the route template once the request has been handled.
        """
        default_endpoint = endpoint
        start = self._timer()

        def track_end(status: int = 200, endpoint: Optional[str] = None) -> None:
            duration = round((self._timer() - start) * 1000)
            self._schedule(endpoint or default_endpoint, method, duration, status)

        return track_end

    def track_performance(self, endpoint: str, method: str = "GET"):
        """Decorator timing a handler; an escaping exception counts as a 500."""
        def decorator(func):
            @wraps(func)
            def wrapper(*args, **kwargs):
                track_end = self.start_tracking(endpoint, method)
                try:
                    result = func(*args, **kwargs)
                except Exception:
                    track_end(500)
                    raise
                track_end(getattr(result, "status_code", 200))
                return result
            return wrapper
        return decorator

    def aggregate(self, now: Optional[datetime] = None) -> List[EndpointPerformance]:
        """Summarize the last 24 hours of metrics, one row per endpoint.

        Rows come out in order of each endpoint's most recent request.
        """
        now = self._clock() if now is None else to_utc(now)
        since = now - AGGREGATION_WINDOW

        with self.database.session() as session:
            stmt = (
                select(PerformanceMetric)
                .where(PerformanceMetric.timestamp >= since)
                .order_by(PerformanceMetric.timestamp.desc())
            )
            metrics = session.exec(stmt).all()

        grouped: Dict[str, List[int]] = {}
        for metric in metrics:
            grouped.setdefault(metric.endpoint, []).append(metric.duration)

        return [
            EndpointPerformance(
                endpoint=endpoint,
                avgDuration=round_half_up(sum(durations) / len(durations)),
                requests=len(durations),
                slowRequests=sum(1 for d in durations if d > SLOW_REQUEST_THRESHOLD_MS),
            )
            for endpoint, durations in grouped.items()
        ]

    def drain(self, timeout: Optional[float] = None) -> None:
        """Block until every queued write has finished."""
        with self._pending_lock:
            pending = list(self._pending)
        if pending:
            wait(pending, timeout=timeout)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)
        logger.info("Performance recorder stopped")

    def _schedule(self, endpoint: str, method: str, duration: int, status: int) -> None:
        try:
            future = self._executor.submit(self.record, endpoint, method, duration, status)
        except RuntimeError as e:
            # Executor already shut down
            logger.warning("Dropped performance metric", endpoint=endpoint, error=str(e))
            return

        with self._pending_lock:
            self._pending.add(future)
        future.add_done_callback(self._forget)

    def _forget(self, future: Future) -> None:
        with self._pending_lock:
            self._pending.discard(future)
