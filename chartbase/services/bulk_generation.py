"""
Bulk Generation Coordinator

Generates every missing historical period as a background job. Each job is
tracked by a GenerationSession that clients poll for progress; finished
sessions are reclaimed after a TTL.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from typing import Any, Callable, Iterable

from chartbase.services.chart_store import CHART_TYPES, Chart, ChartStore
from chartbase.services.errors import SourceUnavailable
from chartbase.services.period_keys import PERIOD_TYPES, PeriodKeyCodec
from chartbase.services.play_log import PlayLog

logger = logging.getLogger(__name__)

RUNNING = "running"
COMPLETED = "completed"
FAILED = "failed"

DEFAULT_SESSION_TTL = 3600.0
DEFAULT_CLEANUP_INTERVAL = 60.0

GenerateChart = Callable[[str, str, str, bool], Chart]


@dataclass
class GenerationSession:
    """Progress record of one bulk generation job."""

    session_id: str
    chart_types: tuple[str, ...]
    period_types: tuple[str, ...]
    total_periods: int = 0
    completed_periods: int = 0
    current_period_key: str | None = None
    errors: list[tuple[str, str]] = field(default_factory=list)
    status: str = RUNNING
    started_at: float = field(default_factory=time.time)
    finished_at: float | None = None
    last_polled_at: float | None = None
    failure: str | None = None

    @property
    def is_running(self) -> bool:
        return self.status == RUNNING

    def snapshot(self) -> GenerationSession:
        return replace(self, errors=list(self.errors))

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "chart_types": list(self.chart_types),
            "period_types": list(self.period_types),
            "total_periods": self.total_periods,
            "completed_periods": self.completed_periods,
            "current_period_key": self.current_period_key,
            "errors": [
                {"period_key": period_key, "message": message}
                for period_key, message in self.errors
            ],
            "status": self.status,
            "started_at": _timestamp(self.started_at),
            "finished_at": _timestamp(self.finished_at),
            "failure": self.failure,
        }


def _timestamp(value: float | None) -> str | None:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc).isoformat()


@dataclass(frozen=True)
class PlannedPeriod:
    period_type: str
    period_key: str
    period_start: date


class BulkGenerationCoordinator:
    """
    Runs bulk generation sessions on a bounded thread pool.

    Periods within a session are processed sequentially, oldest first, so a
    session's progress only moves forward. Session records are mutated under
    ``_lock`` and handed out as snapshot copies.
    """

    def __init__(
        self,
        codec: PeriodKeyCodec,
        store: ChartStore,
        play_log: PlayLog,
        generate_chart: GenerateChart,
        workers: int = 2,
        session_ttl: float = DEFAULT_SESSION_TTL,
        cleanup_interval: float = DEFAULT_CLEANUP_INTERVAL,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.codec = codec
        self.store = store
        self.play_log = play_log
        self._generate_chart = generate_chart
        self._executor = ThreadPoolExecutor(
            max_workers=max(1, workers), thread_name_prefix="chart-bulk"
        )
        self._session_ttl = session_ttl
        self._cleanup_interval = cleanup_interval
        self._clock = clock or time.time
        self._sessions: dict[str, GenerationSession] = {}
        self._futures: dict[str, Future] = {}
        self._lock = threading.Lock()
        self._last_cleanup = self._clock()

    # ------------------------------------------------------------------
    # session lifecycle

    def start(
        self,
        chart_types: Iterable[str] = CHART_TYPES,
        period_types: Iterable[str] = PERIOD_TYPES,
        from_date: date | None = None,
        to_date: date | None = None,
        regenerate: bool = False,
    ) -> str:
        """
        Start generating every period that still needs a chart.

        A period needs generation when any requested chart type lacks a
        finalized chart for it, or always when ``regenerate`` is set (which
        also overwrites finalized charts). The range defaults to the earliest
        recorded play through today.

        Returns the new session id, or the id of an already running session
        covering an overlapping set of chart and period types.

        Raises:
            ValueError: unknown chart/period type or an inverted date range
        """
        chart_types = _unique(chart_types, CHART_TYPES, "chart type")
        period_types = _unique(period_types, PERIOD_TYPES, "period type")
        if from_date and to_date and from_date > to_date:
            raise ValueError("from_date must not be after to_date")

        session = GenerationSession(
            session_id=uuid.uuid4().hex,
            chart_types=chart_types,
            period_types=period_types,
            started_at=self._clock(),
        )
        try:
            plan = self.plan(chart_types, period_types, from_date, to_date, regenerate)
        except SourceUnavailable as exc:
            logger.warning("Bulk generation could not start: %s", exc)
            session.status = FAILED
            session.failure = str(exc)
            session.finished_at = self._clock()
            plan = []
        session.total_periods = len(plan)

        with self._lock:
            self._maybe_cleanup()
            duplicate = self._running_overlap(chart_types, period_types)
            if duplicate is not None:
                logger.info("Bulk generation already running as session %s", duplicate)
                return duplicate
            self._sessions[session.session_id] = session
            if session.status == RUNNING:
                self._futures[session.session_id] = self._executor.submit(
                    self._run, session.session_id, plan, regenerate
                )

        logger.info(
            "Started bulk generation %s: %d periods (%s / %s, regenerate=%s)",
            session.session_id,
            session.total_periods,
            ",".join(chart_types),
            ",".join(period_types),
            regenerate,
        )
        return session.session_id

    def progress(self, session_id: str) -> GenerationSession | None:
        """Snapshot of a session, or None when unknown or already reclaimed."""
        with self._lock:
            self._maybe_cleanup()
            session = self._sessions.get(session_id)
            if session is None:
                return None
            session.last_polled_at = self._clock()
            return session.snapshot()

    def discard(self, session_id: str) -> bool:
        """Forget a finished session. Running sessions are kept."""
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None or session.is_running:
                return False
            del self._sessions[session_id]
            self._futures.pop(session_id, None)
        logger.debug("Discarded bulk session %s", session_id)
        return True

    def wait(self, session_id: str, timeout: float | None = None) -> GenerationSession | None:
        """Block until a session finishes and return its final snapshot."""
        with self._lock:
            future = self._futures.get(session_id)
        if future is not None:
            future.result(timeout=timeout)
        return self.progress(session_id)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    # ------------------------------------------------------------------
    # planning

    def plan(
        self,
        chart_types: tuple[str, ...],
        period_types: tuple[str, ...],
        from_date: date | None = None,
        to_date: date | None = None,
        regenerate: bool = False,
    ) -> list[PlannedPeriod]:
        """
        Ordered periods needing generation, oldest period start first.

        Raises:
            SourceUnavailable: the play log could not be read
        """
        earliest = self._earliest_play(chart_types)
        if from_date is None:
            from_date = earliest
        if from_date is None:
            return []
        from_date = max(from_date, self.codec.min_date)
        to_date = min(to_date or self.store.today(), self.codec.max_date)
        if from_date > to_date:
            return []

        plan: list[PlannedPeriod] = []
        for period_type in period_types:
            finalized = {
                chart_type: self.store.finalized_period_keys(chart_type, period_type)
                for chart_type in chart_types
            }
            for period_key in self.codec.enumerate_periods(period_type, from_date, to_date):
                if not regenerate and all(
                    period_key in finalized[chart_type] for chart_type in chart_types
                ):
                    continue
                period_start, _ = self.codec.key_to_date_range(period_type, period_key)
                plan.append(PlannedPeriod(period_type, period_key, period_start))

        plan.sort(key=lambda item: (item.period_start, PERIOD_TYPES.index(item.period_type)))
        return plan

    def _earliest_play(self, chart_types: tuple[str, ...]) -> date | None:
        dates = [self.play_log.earliest_play_date(chart_type) for chart_type in chart_types]
        dates = [d for d in dates if d is not None]
        return min(dates) if dates else None

    # ------------------------------------------------------------------
    # worker

    def _run(self, session_id: str, plan: list[PlannedPeriod], regenerate: bool) -> None:
        with self._lock:
            chart_types = self._sessions[session_id].chart_types

        for period in plan:
            self._update(session_id, current_period_key=period.period_key)
            messages = []
            for chart_type in chart_types:
                try:
                    self._generate_chart(
                        chart_type, period.period_type, period.period_key, regenerate
                    )
                except Exception as exc:  # noqa: BLE001
                    logger.warning(
                        "Bulk %s: %s %s chart %s failed: %s",
                        session_id,
                        period.period_type,
                        chart_type,
                        period.period_key,
                        exc,
                    )
                    messages.append(f"{chart_type}: {exc}")

            with self._lock:
                session = self._sessions.get(session_id)
                if session is None:
                    continue
                if messages:
                    session.errors.append((period.period_key, "; ".join(messages)))
                session.completed_periods += 1

        with self._lock:
            session = self._sessions.get(session_id)
            if session is not None:
                session.status = COMPLETED
                session.current_period_key = None
                session.finished_at = self._clock()
                error_count = len(session.errors)
            else:
                error_count = 0
        logger.info(
            "Bulk generation %s completed: %d periods, %d errors",
            session_id,
            len(plan),
            error_count,
        )

    def _update(self, session_id: str, **changes: Any) -> None:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return
            for name, value in changes.items():
                setattr(session, name, value)

    # ------------------------------------------------------------------
    # housekeeping (callers hold _lock)

    def _running_overlap(
        self, chart_types: tuple[str, ...], period_types: tuple[str, ...]
    ) -> str | None:
        for session in self._sessions.values():
            if (
                session.is_running
                and set(session.chart_types) & set(chart_types)
                and set(session.period_types) & set(period_types)
            ):
                return session.session_id
        return None

    def _maybe_cleanup(self) -> None:
        """Evict finished sessions neither finished nor polled within the TTL."""
        now = self._clock()
        if now - self._last_cleanup < self._cleanup_interval:
            return

        self._last_cleanup = now
        expired = [
            session_id
            for session_id, session in self._sessions.items()
            if not session.is_running
            and session.finished_at is not None
            and now - max(session.finished_at, session.last_polled_at or 0)
            > self._session_ttl
        ]
        for session_id in expired:
            del self._sessions[session_id]
            self._futures.pop(session_id, None)

        if expired:
            logger.debug("Evicted %d finished bulk sessions", len(expired))


def _unique(values: Iterable[str], allowed: tuple[str, ...], label: str) -> tuple[str, ...]:
    result: list[str] = []
    for value in values:
        if value not in allowed:
            raise ValueError(f"Unknown {label}: {value!r}")
        if value not in result:
            result.append(value)
    if not result:
        raise ValueError(f"At least one {label} is required")
    return tuple(result)
