"""
Result cache with single-flight execution.

The entry point of the query execution core. ``get_or_execute`` turns a
dashboard request into a result table while guaranteeing that, for any
fingerprint, at most one engine execution is in flight at any instant.

Manifesto:
    Dashboards fire the same queries over and over, often all at once
    when a page loads. The engine is slow and metered. Identical requests
    must share one execution, and recent results must be served without
    touching the engine at all.

    - **Single-flight:** concurrent identical requests join one execution
    - **Same outcome:** every waiter receives the same result or error
    - **Immutable entries:** a refresh replaces the whole entry
    - **Admission at the edge:** only the caller that starts an execution
      spends a permit; hits and joins are free

Architecture:
    ::

        get_or_execute(request)
          │ canonicalize + fingerprint          (InvalidQuery, no engine)
          ▼
        ┌──────────── lock ─────────────┐
        │ live entry?   → return result │
        │ in flight?    → join waiters  │
        │ otherwise     → admit caller  │  (Denied, no engine)
        │                 start driver  │
        └───────────────────────────────┘
          │ await shield(shared future)  (no lock held)
          ▼
        driver task: submit → poll… → fetch
          success → publish CacheEntry, resolve future with the table
          failure → drop in-flight entry, resolve future with the error

    The lock is a ``threading.Lock`` held only for the synchronous
    critical sections above, never across an ``await``.

Cancellation:
    A cancelled caller leaves the waiter count. When the last waiter
    leaves, the driver task is cancelled and the engine execution is
    cancelled in the background. A request arriving while an abandoned
    execution is being torn down waits for the teardown and then starts a
    fresh execution.

Examples:
    >>> cache = ResultCache.from_settings(client, catalog)
    >>> table = await cache.get_or_execute(
    ...     QueryRequest(caller="analyst-1",
    ...                  params={"start": "2024-01-01", "end": "2024-01-31", "metric": "visits"})
    ... )
    >>> table.row_count
    3

Tags:
    cache, single-flight, ttl, lru, asyncio, query-spine
"""

from __future__ import annotations

import asyncio
import dataclasses
import functools
import threading
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from queryspine.core.errors import Denied, ExecutionCancelled
from queryspine.core.logging import get_logger
from queryspine.core.settings import QuerySpineSettings, get_settings
from queryspine.execution.adapter import EngineAdapter, EngineClient
from queryspine.execution.admission import AdmissionController, AdmissionPermit
from queryspine.execution.driver import ExecutionDriver
from queryspine.execution.retry import RetryPolicy
from queryspine.query.canonical import QueryCanonicalizer
from queryspine.query.catalog import QueryCatalog
from queryspine.query.fingerprint import fingerprint as fingerprint_of
from queryspine.query.fingerprint import short_fingerprint
from queryspine.query.models import CanonicalQuery, Fingerprint, QueryRequest, ResultTable
from queryspine.query.statement import QueryStatement, render_statement

logger = get_logger(__name__)

# Returned by a waiter whose shared execution was torn down underneath it
_RESTART = object()


@dataclass(frozen=True)
class CacheEntry:
    """A published result. Never mutated; a refresh replaces it."""

    fingerprint: Fingerprint
    result: ResultTable
    computed_at: float
    expires_at: float
    canonical: CanonicalQuery

    def is_live(self, now: float) -> bool:
        return now < self.expires_at

    def ttl_remaining(self, now: float) -> float:
        return max(0.0, self.expires_at - now)


@dataclass
class InFlightEntry:
    """The one execution currently servicing a fingerprint.

    Waiters are counted, not referenced; they all await ``future``.
    """

    fingerprint: Fingerprint
    canonical: CanonicalQuery
    future: asyncio.Future[ResultTable]
    permit: AdmissionPermit
    started_at: float
    task: asyncio.Task[None] | None = None
    waiters: int = 1
    abandoned: bool = False


@dataclass
class CacheStats:
    """Counters of one :class:`ResultCache`."""

    hits: int = 0
    misses: int = 0
    coalesced: int = 0
    executions: int = 0
    failures: int = 0
    denied: int = 0
    evictions: int = 0
    expirations: int = 0
    invalidations: int = 0

    @property
    def requests(self) -> int:
        return self.hits + self.misses + self.coalesced

    @property
    def hit_rate(self) -> float:
        return self.hits / self.requests if self.requests else 0.0

    def to_dict(self) -> dict[str, Any]:
        result = dataclasses.asdict(self)
        result["hit_rate"] = round(self.hit_rate, 4)
        return result


class ResultCache:
    """TTL result cache with single-flight execution and admission control.

    Args:
        catalog: Whitelist requests are validated against
        driver: Runs one execution against the engine
        admission: Per-caller admission controller
        canonicalizer: Defaults to ``QueryCanonicalizer(catalog)``
        ttl_seconds: Lifetime of a published entry
        max_entries: LRU bound on published entries
        clock: Monotonic time source in seconds (injectable for tests)
    """

    def __init__(
        self,
        catalog: QueryCatalog,
        driver: ExecutionDriver,
        admission: AdmissionController,
        *,
        canonicalizer: QueryCanonicalizer | None = None,
        ttl_seconds: float = 300.0,
        max_entries: int = 10_000,
        clock: Callable[[], float] = time.monotonic,
    ):
        if ttl_seconds <= 0:
            raise ValueError(f"ttl_seconds must be positive, got {ttl_seconds}")
        self.catalog = catalog
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._driver = driver
        self._admission = admission
        self._canonicalizer = canonicalizer or QueryCanonicalizer(catalog)
        self._clock = clock
        self._entries: OrderedDict[Fingerprint, CacheEntry] = OrderedDict()
        self._in_flight: dict[Fingerprint, InFlightEntry] = {}
        self._stats = CacheStats()
        self._lock = threading.Lock()
        self._closed = False

    @classmethod
    def from_settings(
        cls,
        client: EngineClient,
        catalog: QueryCatalog,
        settings: QuerySpineSettings | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ) -> ResultCache:
        """Wire adapter, driver, admission and canonicalizer from settings."""
        settings = settings or get_settings()
        adapter = EngineAdapter.from_settings(client, settings)
        driver = ExecutionDriver.from_settings(
            adapter,
            settings,
            retry=RetryPolicy.from_settings(settings, sleep=sleep),
            sleep=sleep,
        )
        return cls(
            catalog,
            driver,
            AdmissionController.from_settings(settings, clock=clock),
            canonicalizer=QueryCanonicalizer(
                catalog,
                default_page_size=settings.default_page_size,
                max_page_size=settings.max_page_size,
            ),
            ttl_seconds=settings.cache_ttl_seconds,
            max_entries=settings.cache_max_entries,
            clock=clock,
        )

    @property
    def driver(self) -> ExecutionDriver:
        return self._driver

    # ------------------------------------------------------------------ #
    # Upstream API
    # ------------------------------------------------------------------ #

    async def get_or_execute(self, request: QueryRequest) -> ResultTable:
        """Return the result for ``request``, executing it at most once.

        Raises:
            InvalidQuery: Request failed validation (engine not contacted)
            Denied: Caller over its admission budget (engine not contacted)
            EngineUnavailable, EngineRejected, QueryFailed, ExecutionCancelled,
            RetriesExhausted, ExecutionTimeout: The shared execution failed;
                every waiter receives the same error object.
        """
        canonical = self._canonicalizer.canonicalize(request)
        page_size = self._canonicalizer.effective_page_size(request)
        fp = fingerprint_of(canonical)
        log = logger.bind(fingerprint=short_fingerprint(fp), caller=request.caller)
        statement: QueryStatement | None = None

        while True:
            if self._closed:
                raise ExecutionCancelled("Result cache is shut down").with_context(
                    caller=request.caller, fingerprint=fp
                )
            if statement is None:
                statement = render_statement(canonical, self.catalog)

            entry: CacheEntry | None = None
            teardown: InFlightEntry | None = None
            flight: InFlightEntry | None = None
            started = False

            with self._lock:
                entry = self._live_entry(fp)
                if entry is not None:
                    self._stats.hits += 1
                else:
                    current = self._in_flight.get(fp)
                    if current is None:
                        self._stats.misses += 1
                        try:
                            permit = self._admission.try_acquire(request.caller)
                        except Denied:
                            self._stats.denied += 1
                            raise
                        flight = self._start(fp, canonical, statement, permit, page_size)
                        started = True
                    elif current.abandoned:
                        teardown = current
                    else:
                        current.waiters += 1
                        self._stats.coalesced += 1
                        flight = current

            if entry is not None:
                log.debug("cache.hit", ttl_remaining=round(entry.ttl_remaining(self._clock()), 3))
                return entry.result

            if teardown is not None:
                log.debug("cache.awaiting_teardown")
                await asyncio.wait([teardown.future])
                continue

            assert flight is not None
            if started:
                log.info("cache.miss", dataset=canonical.dataset)
            else:
                log.debug("cache.joined", waiters=flight.waiters)

            outcome = await self._wait(flight)
            if outcome is not _RESTART:
                return outcome
            log.info("cache.restarting")

    def invalidate(self, fp: str) -> bool:
        """Drop the published entry for ``fp``. In-flight executions are unaffected.

        Returns:
            True if an entry was removed.
        """
        with self._lock:
            removed = self._entries.pop(Fingerprint(fp), None) is not None
            if removed:
                self._stats.invalidations += 1
        if removed:
            logger.info("cache.invalidated", fingerprint=short_fingerprint(fp))
        return removed

    def invalidate_request(self, request: QueryRequest) -> bool:
        """Invalidate by request instead of fingerprint."""
        return self.invalidate(fingerprint_of(self._canonicalizer.canonicalize(request)))

    def lookup(self, fp: str) -> CacheEntry | None:
        """Live entry for ``fp`` without executing anything."""
        with self._lock:
            return self._live_entry(Fingerprint(fp), touch=False)

    def purge_expired(self) -> int:
        """Remove every expired entry; returns how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [fp for fp, entry in self._entries.items() if not entry.is_live(now)]
            for fp in expired:
                del self._entries[fp]
            self._stats.expirations += len(expired)
        if expired:
            logger.debug("cache.purged", expired=len(expired))
        return len(expired)

    def in_flight(self) -> list[Fingerprint]:
        with self._lock:
            return list(self._in_flight)

    def waiters(self, fp: str) -> int:
        """Callers currently waiting on the execution for ``fp``."""
        with self._lock:
            flight = self._in_flight.get(Fingerprint(fp))
            return flight.waiters if flight is not None else 0

    def stats(self) -> CacheStats:
        """Snapshot of the counters."""
        with self._lock:
            return dataclasses.replace(self._stats)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    async def shutdown(self) -> None:
        """Refuse new requests and cancel every outstanding execution."""
        with self._lock:
            self._closed = True
            flights = list(self._in_flight.values())
            for flight in flights:
                flight.abandoned = True
        tasks = [flight.task for flight in flights if flight.task is not None]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self._driver.adapter.wait_background()
        logger.info("cache.shutdown", cancelled=len(tasks), entries=len(self))

    # ------------------------------------------------------------------ #
    # Internals (``_lock`` held unless noted)
    # ------------------------------------------------------------------ #

    def _live_entry(self, fp: Fingerprint, *, touch: bool = True) -> CacheEntry | None:
        entry = self._entries.get(fp)
        if entry is None:
            return None
        if entry.is_live(self._clock()):
            if touch:
                self._entries.move_to_end(fp)
            return entry
        del self._entries[fp]
        self._stats.expirations += 1
        return None

    def _store(self, entry: CacheEntry) -> None:
        self._entries[entry.fingerprint] = entry
        self._entries.move_to_end(entry.fingerprint)
        while len(self._entries) > self.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            self._stats.evictions += 1
            logger.debug("cache.evicted", fingerprint=short_fingerprint(evicted))

    def _start(
        self,
        fp: Fingerprint,
        canonical: CanonicalQuery,
        statement: QueryStatement,
        permit: AdmissionPermit,
        page_size: int,
    ) -> InFlightEntry:
        loop = asyncio.get_running_loop()
        flight = InFlightEntry(
            fingerprint=fp,
            canonical=canonical,
            future=loop.create_future(),
            permit=permit,
            started_at=self._clock(),
        )
        self._in_flight[fp] = flight
        self._stats.executions += 1
        flight.task = loop.create_task(
            self._drive(flight, statement, page_size),
            name=f"queryspine-execution-{fp[:12]}",
        )
        flight.task.add_done_callback(functools.partial(self._on_driver_done, flight))
        return flight

    def _finish(self, flight: InFlightEntry) -> None:
        if self._in_flight.get(flight.fingerprint) is flight:
            del self._in_flight[flight.fingerprint]
        flight.permit.release()

    async def _drive(
        self,
        flight: InFlightEntry,
        statement: QueryStatement,
        page_size: int,
    ) -> None:
        """Driver task body (lock not held). Cancellation is handled in ``_on_driver_done``."""
        try:
            result = await self._driver.run(
                statement,
                fingerprint=flight.fingerprint,
                page_size=page_size,
            )
        except Exception as exc:
            with self._lock:
                self._finish(flight)
                self._stats.failures += 1
            logger.warning(
                "cache.execution_failed",
                fingerprint=short_fingerprint(flight.fingerprint),
                error_type=type(exc).__name__,
                error=str(exc),
                waiters=flight.waiters,
            )
            if not flight.future.done():
                flight.future.set_exception(exc)
            return

        now = self._clock()
        entry = CacheEntry(
            fingerprint=flight.fingerprint,
            result=result,
            computed_at=now,
            expires_at=now + self.ttl_seconds,
            canonical=flight.canonical,
        )
        with self._lock:
            self._store(entry)
            self._finish(flight)
        logger.info(
            "cache.stored",
            fingerprint=short_fingerprint(flight.fingerprint),
            rows=result.row_count,
            waiters=flight.waiters,
            duration_seconds=round(now - flight.started_at, 3),
        )
        if not flight.future.done():
            flight.future.set_result(result)

    def _on_driver_done(self, flight: InFlightEntry, task: asyncio.Task[None]) -> None:
        """Runs when the driver task ends; tears down what a cancelled run left (lock not held)."""
        with self._lock:
            self._finish(flight)
        if not flight.future.done():
            flight.future.cancel()
        elif not flight.future.cancelled():
            # Waiters may all be gone; mark the outcome as observed
            flight.future.exception()

    async def _wait(self, flight: InFlightEntry) -> Any:
        """Await the shared outcome (lock not held)."""
        try:
            return await asyncio.shield(flight.future)
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                self._leave(flight)
                raise
            if self._closed:
                raise ExecutionCancelled(
                    "Execution cancelled by result cache shutdown"
                ).with_context(fingerprint=flight.fingerprint) from None
            return _RESTART

    def _leave(self, flight: InFlightEntry) -> None:
        with self._lock:
            flight.waiters -= 1
            if flight.waiters > 0 or flight.abandoned or flight.future.done():
                return
            flight.abandoned = True
            task = flight.task
        logger.info(
            "cache.execution_abandoned",
            fingerprint=short_fingerprint(flight.fingerprint),
        )
        if task is not None:
            task.cancel()


__all__ = ["CacheEntry", "CacheStats", "InFlightEntry", "ResultCache"]
