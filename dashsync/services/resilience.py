from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
import random
import time
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Awaitable, Callable

from dashsync.core.config import Settings, get_settings
from dashsync.core.errors import BackendRejectionError, BackendTimeoutError, NetworkError, RateLimitedError
from dashsync.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


TransientException = (TimeoutError, asyncio.TimeoutError, OSError)


def proportional_jitter(delay_s: float) -> float:
    # Spread retries +/-25% around the computed delay.
    return delay_s * random.uniform(0.75, 1.25)


def full_jitter(delay_s: float) -> float:
    return random.uniform(0.0, delay_s)


def no_jitter(delay_s: float) -> float:
    return delay_s


def default_retryable(exc: BaseException) -> bool:
    # Retry only transient network/timeout failures by default.
    if isinstance(exc, BackendRejectionError):
        return False
    if isinstance(exc, (NetworkError, *TransientException)):
        return True
    status = getattr(exc, "status_code", None)
    if isinstance(status, int) and status >= 500:
        return True
    return False


@dataclass(frozen=True)
class RetryPolicy:
    # One backoff definition shared by fetches, mutations, and realtime reconnects.
    max_attempts: int
    base_delay_ms: int
    max_delay_ms: int = 30_000
    backoff_factor: float = 2.0
    jitter: Callable[[float], float] = field(default=proportional_jitter, compare=False)
    timeout_ms: int | None = None

    def delay_s(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based), capped then jittered."""
        raw_ms = self.base_delay_ms * (self.backoff_factor ** max(attempt - 1, 0))
        capped_s = min(raw_ms, self.max_delay_ms) / 1000.0
        return max(0.0, self.jitter(capped_s))


def _jitter_for(settings: Settings) -> Callable[[float], float]:
    return proportional_jitter if settings.retry_jitter else no_jitter


def fetch_retry_policy(settings: Settings | None = None) -> RetryPolicy:
    settings = settings or get_settings()
    return RetryPolicy(
        max_attempts=settings.fetch_max_attempts,
        base_delay_ms=settings.retry_base_delay_ms,
        max_delay_ms=settings.retry_max_delay_ms,
        backoff_factor=settings.retry_backoff_factor,
        jitter=_jitter_for(settings),
        timeout_ms=settings.fetch_timeout_ms,
    )


def mutation_retry_policy(settings: Settings | None = None) -> RetryPolicy:
    settings = settings or get_settings()
    return RetryPolicy(
        max_attempts=settings.mutation_max_attempts,
        base_delay_ms=settings.retry_base_delay_ms,
        max_delay_ms=settings.retry_max_delay_ms,
        backoff_factor=settings.retry_backoff_factor,
        jitter=_jitter_for(settings),
        timeout_ms=settings.mutation_timeout_ms,
    )


def realtime_retry_policy(settings: Settings | None = None) -> RetryPolicy:
    # Reconnects have no per-call timeout; the transport reports its own failures.
    settings = settings or get_settings()
    return RetryPolicy(
        max_attempts=settings.realtime_reconnect_max_attempts,
        base_delay_ms=settings.realtime_reconnect_base_delay_ms,
        max_delay_ms=settings.retry_max_delay_ms,
        backoff_factor=settings.retry_backoff_factor,
        jitter=_jitter_for(settings),
    )


class RequestPriority(IntEnum):
    # Mutations outrank reads; background revalidations go last.
    HIGH = 0
    MEDIUM = 1
    LOW = 2


async def _call_with_timeout(func: Callable[[], Awaitable[Any]], timeout_ms: int | None) -> Any:
    if not timeout_ms:
        return await func()
    try:
        return await asyncio.wait_for(func(), timeout=timeout_ms / 1000.0)
    except asyncio.TimeoutError as exc:
        raise BackendTimeoutError(f"backend call timed out after {timeout_ms}ms") from exc


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy | None = None,
    retryable: Callable[[BaseException], bool] | None = None,
    name: str = "backend",
    pacer: RequestPacer | None = None,
    priority: int = RequestPriority.MEDIUM,
) -> Any:
    # Retry helper with jittered exponential backoff for transient failures only.
    policy = policy or fetch_retry_policy()
    retryable = retryable or default_retryable
    attempt = 1

    def _attempt() -> Awaitable[Any]:
        return _call_with_timeout(func, policy.timeout_ms)

    while True:
        try:
            if pacer is None:
                return await _attempt()
            # Each attempt queues separately so a rate-limit pause also holds retries.
            return await pacer.run(_attempt, priority=priority)
        except Exception as exc:  # noqa: BLE001 - caller handles non-transient failures
            if attempt >= max(policy.max_attempts, 1) or not retryable(exc):
                raise
            # Track retry volume so operators can detect retry storms.
            increment_counter("retries_total")
            increment_counter(f"retries_total.{name}")
            sleep_s = policy.delay_s(attempt)
            logger.info("retry_scheduled name=%s attempt=%s sleep_s=%.3f error=%s", name, attempt, sleep_s, exc)
            await asyncio.sleep(sleep_s)
            attempt += 1


@dataclass(frozen=True)
class PacerStats:
    limit: int
    active: int
    queued: int
    paused: bool
    rate_limited_total: int


class RequestPacer:
    """Cap concurrent backend calls and hold all of them after a rate limit.

    Waiting calls are admitted by priority, then arrival order. A
    ``RateLimitedError`` pauses admission for its ``retry_after_s`` (or the
    configured pause); calls already running are left alone.
    """

    def __init__(self, limit: int, *, pause_ms: int = 60_000) -> None:
        self._limit = max(1, int(limit))
        self._pause_s = max(0, pause_ms) / 1000.0
        self._active = 0
        self._waiters: list[tuple[int, int, asyncio.Future[None]]] = []
        self._sequence = itertools.count()
        self._paused_until = 0.0
        self._resume_handle: asyncio.TimerHandle | None = None
        self._rate_limited_total = 0

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def pause_s(self) -> float:
        return self._pause_s

    @property
    def active(self) -> int:
        return self._active

    @property
    def paused(self) -> bool:
        return time.monotonic() < self._paused_until

    async def acquire(self, priority: int = RequestPriority.MEDIUM) -> None:
        if self._active < self._limit and not self._waiters and not self.paused:
            self._active += 1
            return
        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        heapq.heappush(self._waiters, (int(priority), next(self._sequence), waiter))
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # Admitted as the caller gave up; pass the slot on.
                self.release()
            raise

    def release(self) -> None:
        self._active = max(0, self._active - 1)
        self._admit()

    def _admit(self) -> None:
        while self._waiters and self._active < self._limit and not self.paused:
            _, _, waiter = heapq.heappop(self._waiters)
            if waiter.done():
                continue
            self._active += 1
            waiter.set_result(None)

    def pause(self, seconds: float | None = None) -> None:
        delay = self._pause_s if seconds is None else max(0.0, float(seconds))
        until = time.monotonic() + delay
        if until <= self._paused_until:
            return
        self._paused_until = until
        self._rate_limited_total += 1
        increment_counter("rate_limited_total")
        logger.warning("backend_rate_limited pause_s=%.3f queued=%s", delay, len(self._waiters))
        self._schedule_resume(delay)

    def _schedule_resume(self, delay: float) -> None:
        if self._resume_handle is not None:
            self._resume_handle.cancel()
            self._resume_handle = None
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._resume_handle = loop.call_later(delay, self._resume)

    def _resume(self) -> None:
        self._resume_handle = None
        remaining = self._paused_until - time.monotonic()
        if remaining > 0:
            # Timers may fire a clock tick early.
            self._schedule_resume(remaining)
            return
        self._admit()

    async def run(
        self,
        func: Callable[[], Awaitable[Any]],
        *,
        priority: int = RequestPriority.MEDIUM,
    ) -> Any:
        await self.acquire(priority)
        try:
            return await func()
        except RateLimitedError as exc:
            self.pause(exc.retry_after_s)
            raise
        finally:
            self.release()

    def stats(self) -> PacerStats:
        return PacerStats(
            limit=self._limit,
            active=self._active,
            queued=sum(1 for _, _, waiter in self._waiters if not waiter.done()),
            paused=self.paused,
            rate_limited_total=self._rate_limited_total,
        )


def request_pacer(settings: Settings | None = None) -> RequestPacer:
    settings = settings or get_settings()
    return RequestPacer(settings.backend_max_concurrency, pause_ms=settings.rate_limit_pause_ms)
