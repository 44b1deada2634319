import threading
from typing import Callable

from gsmtower.schemas.point import Point
from gsmtower.utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_FLUSH_SIZE = 5_000


class PointAccumulator:
    """Deduplicating point buffer shared by all parser workers of one refresh.

    Every mutation runs under one lock, so ``add`` may be called from any
    number of threads. Flushing happens inside the same critical section and
    hands the batch to ``sink``.
    """

    def __init__(
        self,
        sink: Callable[[list[Point]], None],
        flush_size: int = DEFAULT_FLUSH_SIZE,
    ) -> None:
        if flush_size <= 0:
            raise ValueError("flush_size must be positive")
        self._sink = sink
        self._flush_size = flush_size
        self._points: dict[str, Point] = {}
        self._lock = threading.Lock()
        self._aborted = threading.Event()
        self.added = 0
        self.merged = 0
        self.flushed = 0
        self.flush_count = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._points)

    def add(self, point: Point) -> None:
        if self._aborted.is_set():
            return
        with self._lock:
            station_id = point.station_id
            existing = self._points.get(station_id)
            if existing is None:
                self._points[station_id] = point
                self.added += 1
            else:
                self._points[station_id] = existing.merged_with(point)
                self.merged += 1

            if len(self._points) >= self._flush_size:
                self._flush_locked()

    def flush(self) -> None:
        with self._lock:
            self._flush_locked()

    def finish(self) -> None:
        self.flush()

    def abort(self) -> None:
        """Stop accepting points; the buffer is dropped instead of flushed. Does not block."""
        self._aborted.set()

    def _flush_locked(self) -> None:
        if self._aborted.is_set():
            self._points.clear()
            return
        if not self._points:
            return
        batch = list(self._points.values())
        self._points.clear()
        logger.debug("Flushing %d points", len(batch))
        self._sink(batch)
        self.flushed += len(batch)
        self.flush_count += 1
