import asyncio
import sqlite3
import threading
import time
import zipfile
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import date, datetime
from functools import partial
from pathlib import Path
from typing import Any, AsyncIterator, Callable

import httpx

from gsmtower.config import StationsConfig
from gsmtower.ingestion.uke import PublicationClient, PublicationError
from gsmtower.io.paths import build_data_paths, utc_now, write_json
from gsmtower.io.storage import PointFileStorage
from gsmtower.parsing.points import PointRowMapper, RowValidationError
from gsmtower.parsing.xlsx import XlsxFormatError
from gsmtower.schemas.point import Location, Point, PointFilter
from gsmtower.storage.spatial import SpatialStore
from gsmtower.utils.accumulator import PointAccumulator
from gsmtower.utils.concurrency import ConcurrencyLimiter, chunked, run_in_thread
from gsmtower.utils.http import HttpMetrics, PoliteHttpClient, RateLimiter
from gsmtower.utils.logging import get_logger

logger = get_logger(__name__)

ProgressCallback = Callable[[float, str], None]

METRICS_FILE = "metrics.json"


class RefreshError(RuntimeError):
    pass


def _ignore_progress(fraction: float, message: str) -> None:
    return None


@dataclass
class FileStats:
    file_name: str
    technology: str
    rows: int = 0
    rejected: int = 0
    rejected_reasons: dict[str, int] = field(default_factory=lambda: defaultdict(int))
    failed: str | None = None

    def reject(self, reason: str) -> None:
        self.rejected += 1
        self.rejected_reasons[reason] += 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "file_name": self.file_name,
            "technology": self.technology,
            "rows": self.rows,
            "rejected": self.rejected,
            "rejected_reasons": dict(self.rejected_reasons),
            "failed": self.failed,
        }


@dataclass
class RefreshStats:
    publication_date: date | None = None
    downloaded: list[str] = field(default_factory=list)
    files: list[FileStats] = field(default_factory=list)
    points_added: int = 0
    points_merged: int = 0
    points_flushed: int = 0
    flushes: int = 0
    runtime_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "publication_date": self.publication_date.isoformat() if self.publication_date else None,
            "downloaded": self.downloaded,
            "files": [stats.to_dict() for stats in self.files],
            "rows": sum(stats.rows for stats in self.files),
            "rejected": sum(stats.rejected for stats in self.files),
            "points_added": self.points_added,
            "points_merged": self.points_merged,
            "points_flushed": self.points_flushed,
            "flushes": self.flushes,
            "runtime_seconds": round(self.runtime_seconds, 3),
            "generated_at": utc_now(),
        }


class PointsRepository:
    """Entry point for refreshing the local station database and querying it."""

    def __init__(
        self,
        config: StationsConfig,
        storage: PointFileStorage,
        store: SpatialStore,
        mapper: PointRowMapper | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = config
        self._storage = storage
        self._store = store
        self._mapper = mapper or PointRowMapper()
        self._transport = transport
        self.http_metrics = HttpMetrics()

    @classmethod
    def from_config(
        cls, config: StationsConfig, transport: httpx.AsyncBaseTransport | None = None
    ) -> "PointsRepository":
        paths = build_data_paths(Path(config.data_dir))
        return cls(
            config=config,
            storage=PointFileStorage(paths.files_dir),
            store=SpatialStore(paths.db_path),
            transport=transport,
        )

    def __enter__(self) -> "PointsRepository":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        self._store.close()

    @asynccontextmanager
    async def _publication_client(self) -> AsyncIterator[PublicationClient]:
        config = self._config
        async with httpx.AsyncClient(timeout=config.timeout_seconds, transport=self._transport) as client:
            rate_limiter = RateLimiter(min_interval=config.throttle_seconds) if config.throttle_seconds > 0 else None
            http = PoliteHttpClient(
                client=client,
                user_agent=config.user_agent,
                retry=config.retry,
                metrics=self.http_metrics,
                rate_limiter=rate_limiter,
            )
            yield PublicationClient(
                http,
                limiter=ConcurrencyLimiter(config.max_parallel_downloads),
                bs_parser=config.bs_parser,
            )

    async def get_remote_date(self) -> datetime:
        async with self._publication_client() as client:
            return await client.fetch_current_data_date(self._config.source_url)

    def get_local_dates(self) -> list[date]:
        return self._storage.list_available_dates()

    async def is_new_version_available(self) -> bool:
        remote = await self.get_remote_date()
        local_dates = self.get_local_dates()
        if not local_dates:
            return True
        return remote.date() > max(local_dates)

    async def refresh(self, progress: ProgressCallback | None = None) -> RefreshStats:
        """Download the current publication and rebuild the database from it.

        Progress is reported as ``(fraction, message)`` with non-decreasing
        fractions. Rows that fail validation and files that cannot be opened
        are skipped; an unreachable index page or a database failure raises
        :class:`RefreshError`. On cancellation or failure the file workers are
        stopped at their next row and waited for, so nothing is written to the
        store after this coroutine exits.
        """
        report = progress or _ignore_progress
        start = time.monotonic()
        stats = RefreshStats()

        report(0.0, "Downloading files...")
        try:
            async with self._publication_client() as client:
                stats.downloaded = await client.download_files(
                    self._config.source_url,
                    lambda published, data, file_name: self._storage.save(data, published, file_name),
                )
        except PublicationError as exc:
            raise RefreshError(f"Could not download the current publication: {exc}") from exc

        report(0.3, "Removing old points")
        try:
            self._store.delete_all()
        except sqlite3.Error as exc:
            raise RefreshError(f"Could not clear the database: {exc}") from exc

        report(0.4, "Reading files")
        local_dates = self.get_local_dates()
        if not local_dates:
            report(1.0, "No local data available")
            return stats
        latest = max(local_dates)
        stats.publication_date = latest

        groups = chunked(self._storage.list_files(latest), self._config.file_group_size)
        accumulator = PointAccumulator(self._store.save, flush_size=self._config.flush_size)
        limiter = ConcurrencyLimiter(self._config.file_group_size)
        cancelled = threading.Event()

        def abort() -> None:
            cancelled.set()
            accumulator.abort()

        # workers have returned by the time an error leaves the group
        try:
            for index, group in enumerate(groups, start=1):
                results = await limiter.run(
                    [
                        partial(
                            run_in_thread,
                            self._ingest_file,
                            path,
                            latest,
                            accumulator,
                            cancelled,
                            on_abort=abort,
                        )
                        for path in group
                    ]
                )
                stats.files.extend(results)
                report(0.40 + 0.55 * index / len(groups), f"Processing files {index}/{len(groups)}")
            accumulator.finish()
        except asyncio.CancelledError:
            abort()
            logger.warning("Refresh cancelled; file workers stopped")
            raise
        except sqlite3.Error as exc:
            abort()
            raise RefreshError(f"Could not save points: {exc}") from exc

        stats.points_added = accumulator.added
        stats.points_merged = accumulator.merged
        stats.points_flushed = accumulator.flushed
        stats.flushes = accumulator.flush_count
        stats.runtime_seconds = time.monotonic() - start

        payload = stats.to_dict()
        payload.update(self.http_metrics.to_dict())
        write_json(self._storage.folder_for(latest) / METRICS_FILE, payload)

        logger.info(
            "Refresh of %s done: %d files, %d points",
            latest,
            len(stats.files),
            stats.points_flushed,
        )
        report(1.0, "Done")
        return stats

    def _ingest_file(
        self,
        path: Path,
        day: date,
        accumulator: PointAccumulator,
        cancelled: threading.Event,
    ) -> FileStats:
        file_stats = FileStats(file_name=path.name, technology=path.stem)
        rows = self._storage.read_file(path.name, day)
        try:
            for fields in rows:
                if cancelled.is_set():
                    break
                file_stats.rows += 1
                try:
                    point = self._mapper.parse(fields, file_stats.technology)
                except RowValidationError as exc:
                    file_stats.reject(exc.reason)
                    logger.debug("Rejected row %d of %s: %s", file_stats.rows, path.name, exc)
                    continue
                accumulator.add(point)
        except (XlsxFormatError, zipfile.BadZipFile, FileNotFoundError) as exc:
            file_stats.failed = str(exc)
            logger.warning("Skipping %s: %s", path.name, exc)
        finally:
            rows.close()

        logger.info("Read %s: %d rows, %d rejected", path.name, file_stats.rows, file_stats.rejected)
        return file_stats

    def get_points(
        self,
        center: Location,
        radius_meters: float,
        point_filter: PointFilter | None = None,
    ) -> list[Point]:
        return self._store.find_points(center, radius_meters, point_filter)

    def get_all_points(self, point_filter: PointFilter | None = None) -> list[Point]:
        return self._store.get_all_points(point_filter)

    def get_technologies(self) -> list[str]:
        return self._store.get_all_technologies()

    def get_operator_names(self) -> list[str]:
        return self._store.get_all_operator_names()

    def delete_all_local_data(self) -> None:
        self._storage.delete_all_files()
        self._store.delete_all()
