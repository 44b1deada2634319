import asyncio
import random
import time
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Awaitable, Callable
from urllib.parse import urlsplit

import httpx


RETRYABLE_STATUSES = {429, 502, 503, 504}


@dataclass
class RetryConfig:
    retries: int = 3
    backoff_base: float = 1.0
    backoff_factor: float = 2.0
    backoff_jitter: float = 0.25
    max_backoff: float = 60.0
    max_retry_after: float = 120.0


@dataclass
class HttpMetrics:
    total_requests: int = 0
    status_code_counts: dict[int, int] = field(default_factory=lambda: defaultdict(int))
    retries_attempted: int = 0
    backoff_sleep_seconds_total: float = 0.0
    bytes_downloaded: int = 0

    def to_dict(self) -> dict[str, float | int | dict[int, int]]:
        return {
            "total_requests": self.total_requests,
            "status_code_counts": dict(self.status_code_counts),
            "retries_attempted": self.retries_attempted,
            "backoff_sleep_seconds_total": round(self.backoff_sleep_seconds_total, 3),
            "bytes_downloaded": self.bytes_downloaded,
        }


@dataclass
class FetchResult:
    url: str
    status_code: int | None
    content: bytes | None
    text: str | None = None
    error: str | None = None
    retries: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None and self.status_code is not None and self.status_code < 400

    def describe_failure(self) -> str:
        if self.error:
            return f"request_error:{self.error}"
        return f"http_status:{self.status_code}"


@dataclass
class RateLimiter:
    """Spaces request starts to the same host at least ``min_interval`` apart.

    Concurrent downloads queue on a per-host lock, so the spacing holds when
    several files are fetched at once.
    """

    min_interval: float
    time_func: Callable[[], float] = time.monotonic
    sleep_func: Callable[[float], Awaitable[None]] = asyncio.sleep
    _next_slot: dict[str, float] = field(default_factory=dict)
    _locks: dict[str, asyncio.Lock] = field(default_factory=dict)

    async def acquire(self, host: str) -> None:
        if self.min_interval <= 0:
            return
        lock = self._locks.setdefault(host, asyncio.Lock())
        async with lock:
            wait = self._next_slot.get(host, 0.0) - self.time_func()
            if wait > 0:
                await self.sleep_func(wait)
            self._next_slot[host] = self.time_func() + self.min_interval


class PoliteHttpClient:
    def __init__(
        self,
        client: httpx.AsyncClient,
        user_agent: str,
        retry: RetryConfig,
        metrics: HttpMetrics,
        rate_limiter: RateLimiter | None = None,
        sleep_func: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._client = client
        self._user_agent = user_agent
        self._retry = retry
        self._metrics = metrics
        self._rate_limiter = rate_limiter
        self._sleep = sleep_func

    @property
    def metrics(self) -> HttpMetrics:
        return self._metrics

    async def get(self, url: str) -> FetchResult:
        host = urlsplit(url).hostname or ""
        if self._rate_limiter is not None:
            await self._rate_limiter.acquire(host)

        headers = {"User-Agent": self._user_agent}
        last_error: str | None = None
        for attempt in range(self._retry.retries + 1):
            try:
                resp = await self._client.get(url, headers=headers, follow_redirects=True)
            except httpx.HTTPError as exc:
                last_error = str(exc) or exc.__class__.__name__
                if attempt < self._retry.retries:
                    delay = self._backoff_delay(attempt)
                    self._metrics.retries_attempted += 1
                    self._metrics.backoff_sleep_seconds_total += delay
                    await self._sleep(delay)
                    continue
                return FetchResult(url=url, status_code=None, content=None, error=last_error, retries=attempt)

            self._metrics.total_requests += 1
            self._metrics.status_code_counts[resp.status_code] += 1

            if resp.status_code in RETRYABLE_STATUSES and attempt < self._retry.retries:
                delay = self._retry_delay(resp, attempt)
                self._metrics.retries_attempted += 1
                self._metrics.backoff_sleep_seconds_total += delay
                await self._sleep(delay)
                continue

            content = resp.content
            self._metrics.bytes_downloaded += len(content)
            return FetchResult(
                url=url,
                status_code=resp.status_code,
                content=content,
                text=resp.text,
                retries=attempt,
            )

        return FetchResult(url=url, status_code=None, content=None, error=last_error or "failed")

    def _backoff_delay(self, attempt: int) -> float:
        base = self._retry.backoff_base * (self._retry.backoff_factor**attempt)
        jitter = random.uniform(0, self._retry.backoff_jitter)
        return min(base + jitter, self._retry.max_backoff)

    def _retry_delay(self, resp: httpx.Response, attempt: int) -> float:
        retry_after = _parse_retry_after(resp.headers.get("Retry-After"))
        if retry_after is not None:
            return min(retry_after, self._retry.max_retry_after)
        return self._backoff_delay(attempt)


def _parse_retry_after(value: str | None, now: datetime | None = None) -> float | None:
    """Seconds to wait from a ``Retry-After`` header, either delta-seconds or an HTTP-date."""
    if not value:
        return None
    value = value.strip()
    if value.isdigit():
        return float(value)
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    delay = (when - (now or datetime.now(timezone.utc))).total_seconds()
    return max(delay, 0.0)
