"""
Chart Store

Persistence for generated charts and their ranked entries.

A chart is identified by ``(chart_type, period_type, period_key)``. Generating
a chart either replaces its whole entry set or leaves the previous state in
place; finalized charts are only rewritten when explicitly forced.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Callable, Iterable

import psycopg
from psycopg import errors as pg_errors

from chartbase.services.errors import GenerationConflict, InvalidPeriodKey
from chartbase.services.period_keys import WEEKLY, PeriodKeyCodec, get_period_codec
from chartbase.services.ranking import RankedEntry

logger = logging.getLogger(__name__)

SONG = "song"
ALBUM = "album"
CHART_TYPES = (SONG, ALBUM)

GENERATE_ATTEMPTS = 3

ChartKey = tuple[str, str, str]


@dataclass(frozen=True)
class ChartEntry:
    """One ranked row within a chart."""

    chart_id: int
    entity_id: str
    position: int
    play_count: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity_id": self.entity_id,
            "position": self.position,
            "play_count": self.play_count,
        }


@dataclass(frozen=True)
class Chart:
    """An immutable snapshot of one generated leaderboard."""

    chart_id: int
    chart_type: str
    period_type: str
    period_key: str
    period_start: date
    period_end: date
    is_finalized: bool
    generated_at: datetime
    entries: tuple[ChartEntry, ...] = field(default_factory=tuple)

    @property
    def key(self) -> ChartKey:
        return (self.chart_type, self.period_type, self.period_key)

    def position_of(self, entity_id: str) -> int | None:
        for entry in self.entries:
            if entry.entity_id == entity_id:
                return entry.position
        return None

    def entry_for(self, entity_id: str) -> ChartEntry | None:
        for entry in self.entries:
            if entry.entity_id == entity_id:
                return entry
        return None

    def to_dict(self, include_entries: bool = True) -> dict[str, Any]:
        data: dict[str, Any] = {
            "chart_id": self.chart_id,
            "chart_type": self.chart_type,
            "period_type": self.period_type,
            "period_key": self.period_key,
            "period_start": self.period_start.isoformat(),
            "period_end": self.period_end.isoformat(),
            "is_finalized": self.is_finalized,
            "generated_at": self.generated_at.isoformat(),
            "entry_count": len(self.entries),
        }
        if include_entries:
            data["entries"] = [entry.to_dict() for entry in self.entries]
        return data


def check_chart_type(chart_type: str) -> None:
    if chart_type not in CHART_TYPES:
        raise ValueError(f"Unknown chart type: {chart_type!r}")


def _validate_ranked(entries: list[RankedEntry]) -> None:
    seen: set[str] = set()
    for expected, entry in enumerate(entries, start=1):
        if entry.position != expected:
            raise ValueError(
                f"Chart positions must be contiguous from 1; got {entry.position} at row {expected}"
            )
        if entry.entity_id in seen:
            raise ValueError(f"Duplicate entity in chart: {entry.entity_id}")
        seen.add(entry.entity_id)


class ChartStore:
    """
    Shared behaviour of chart store backends.

    Backends implement ``_write``, ``get_exact``, ``charts`` and ``delete``;
    navigation and key queries are derived from ``charts`` unless a backend
    overrides them with something cheaper.
    """

    def __init__(
        self,
        codec: PeriodKeyCodec | None = None,
        clock: Callable[[], date] | None = None,
    ) -> None:
        self.codec = codec or get_period_codec()
        self._clock = clock or date.today

    def today(self) -> date:
        return self._clock()

    # ------------------------------------------------------------------
    # writes

    def generate(
        self,
        chart_type: str,
        period_type: str,
        period_key: str,
        ranked_entries: Iterable[RankedEntry],
        force_if_finalized: bool = False,
    ) -> Chart:
        """
        Create or replace a chart's entries.

        A finalized chart is returned untouched unless ``force_if_finalized``
        is set. The chart is marked finalized when its period ended before
        today.

        Raises:
            InvalidPeriodKey: the period key cannot be resolved
            ValueError: unknown chart type or malformed ranked entries
        """
        check_chart_type(chart_type)
        period_key = self.codec.chart_key(period_type, period_key)
        period_start, period_end = self.codec.key_to_date_range(period_type, period_key)
        entries = list(ranked_entries)
        _validate_ranked(entries)
        finalize = period_end < self.today()

        attempt = 1
        while True:
            try:
                return self._write(
                    (chart_type, period_type, period_key),
                    period_start,
                    period_end,
                    entries,
                    finalize,
                    force_if_finalized,
                )
            except GenerationConflict:
                if attempt >= GENERATE_ATTEMPTS:
                    raise
                logger.info(
                    "Retrying %s %s chart %s after a concurrent write (attempt %d)",
                    period_type,
                    chart_type,
                    period_key,
                    attempt,
                )
                attempt += 1

    def _write(
        self,
        key: ChartKey,
        period_start: date,
        period_end: date,
        entries: list[RankedEntry],
        finalize: bool,
        force_if_finalized: bool,
    ) -> Chart:
        raise NotImplementedError

    def delete(self, chart_type: str, period_type: str, period_key: str) -> bool:
        raise NotImplementedError

    # ------------------------------------------------------------------
    # reads

    def get(self, chart_type: str, period_type: str, period_key: str) -> Chart | None:
        """Look up a chart; malformed or unknown keys return None."""
        try:
            check_chart_type(chart_type)
            period_key = self.codec.normalize_key(period_type, period_key)
        except (InvalidPeriodKey, ValueError):
            return None
        return self.get_exact((chart_type, period_type, period_key))

    def get_exact(self, key: ChartKey) -> Chart | None:
        raise NotImplementedError

    def charts(self, chart_type: str, period_type: str) -> list[Chart]:
        """All charts of one type and granularity, oldest period first."""
        raise NotImplementedError

    def previous(
        self, chart_type: str, period_key: str, period_type: str = WEEKLY
    ) -> Chart | None:
        """The existing chart immediately before ``period_key``, if any."""
        ordered = self.charts(chart_type, period_type)
        keys = [chart.period_key for chart in ordered]
        index = self._index_of(keys, period_type, period_key)
        if index is None or index == 0:
            return None
        return ordered[index - 1]

    def next(
        self, chart_type: str, period_key: str, period_type: str = WEEKLY
    ) -> Chart | None:
        """The existing chart immediately after ``period_key``, if any."""
        ordered = self.charts(chart_type, period_type)
        keys = [chart.period_key for chart in ordered]
        index = self._index_of(keys, period_type, period_key)
        if index is None or index + 1 >= len(ordered):
            return None
        return ordered[index + 1]

    def _index_of(self, keys: list[str], period_type: str, period_key: str) -> int | None:
        try:
            period_key = self.codec.normalize_key(period_type, period_key)
        except InvalidPeriodKey:
            return None
        try:
            return keys.index(period_key)
        except ValueError:
            return None

    def existing_period_keys(self, chart_type: str, period_type: str) -> set[str]:
        return {chart.period_key for chart in self.charts(chart_type, period_type)}

    def finalized_period_keys(self, chart_type: str, period_type: str) -> set[str]:
        return {
            chart.period_key
            for chart in self.charts(chart_type, period_type)
            if chart.is_finalized
        }

    def latest(
        self, chart_type: str, period_type: str, finalized_only: bool = False
    ) -> Chart | None:
        for chart in reversed(self.charts(chart_type, period_type)):
            if chart.is_finalized or not finalized_only:
                return chart
        return None

    def entries_for_entity(
        self, entity_id: str, chart_type: str, period_type: str = WEEKLY
    ) -> list[tuple[Chart, ChartEntry]]:
        """Every ``(chart, entry)`` pair featuring an entity, oldest first."""
        result = []
        for chart in self.charts(chart_type, period_type):
            entry = chart.entry_for(entity_id)
            if entry is not None:
                result.append((chart, entry))
        return result


class MemoryChartStore(ChartStore):
    """
    In-process chart store.

    Writers of the same chart key serialize on a per-key lock; the published
    chart snapshot is swapped under a short index lock, so readers never see
    a half-replaced entry set and different keys never wait on each other.
    """

    def __init__(
        self,
        codec: PeriodKeyCodec | None = None,
        clock: Callable[[], date] | None = None,
    ) -> None:
        super().__init__(codec=codec, clock=clock)
        self._charts: dict[ChartKey, Chart] = {}
        self._key_locks: dict[ChartKey, threading.Lock] = {}
        self._index_lock = threading.Lock()
        self._next_id = 1

    def _lock_for(self, key: ChartKey) -> threading.Lock:
        with self._index_lock:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = self._key_locks[key] = threading.Lock()
            return lock

    def _write(
        self,
        key: ChartKey,
        period_start: date,
        period_end: date,
        entries: list[RankedEntry],
        finalize: bool,
        force_if_finalized: bool,
    ) -> Chart:
        with self._lock_for(key):
            with self._index_lock:
                existing = self._charts.get(key)
                if existing is None:
                    chart_id = self._next_id
                    self._next_id += 1
                else:
                    chart_id = existing.chart_id

            if existing is not None and existing.is_finalized and not force_if_finalized:
                logger.debug("Skipping finalized %s %s chart %s", key[1], key[0], key[2])
                return existing

            chart = Chart(
                chart_id=chart_id,
                chart_type=key[0],
                period_type=key[1],
                period_key=key[2],
                period_start=period_start,
                period_end=period_end,
                is_finalized=finalize,
                generated_at=datetime.now(timezone.utc),
                entries=tuple(
                    ChartEntry(
                        chart_id=chart_id,
                        entity_id=entry.entity_id,
                        position=entry.position,
                        play_count=entry.play_count,
                    )
                    for entry in entries
                ),
            )
            with self._index_lock:
                self._charts[key] = chart

        logger.info(
            "Generated %s %s chart %s (%d entries, finalized=%s)",
            key[1],
            key[0],
            key[2],
            len(chart.entries),
            chart.is_finalized,
        )
        return chart

    def delete(self, chart_type: str, period_type: str, period_key: str) -> bool:
        try:
            period_key = self.codec.normalize_key(period_type, period_key)
        except InvalidPeriodKey:
            return False
        key = (chart_type, period_type, period_key)
        with self._lock_for(key):
            with self._index_lock:
                return self._charts.pop(key, None) is not None

    def get_exact(self, key: ChartKey) -> Chart | None:
        with self._index_lock:
            return self._charts.get(key)

    def charts(self, chart_type: str, period_type: str) -> list[Chart]:
        with self._index_lock:
            selected = [
                chart
                for (ctype, ptype, _), chart in self._charts.items()
                if ctype == chart_type and ptype == period_type
            ]
        return sorted(selected, key=lambda chart: chart.period_start)


_CHART_COLUMNS = """
    chart_id, chart_type, period_type, period_key,
    period_start, period_end, is_finalized, generated_at
"""


class PostgresChartStore(ChartStore):
    """
    Chart store backed by the ``charts`` / ``chart_entries`` tables.

    Each generation runs in a single transaction holding a transaction-level
    advisory lock derived from the chart key, which serializes writers of the
    same chart while leaving other keys untouched.
    """

    def __init__(
        self,
        connection_factory: Callable | None = None,
        codec: PeriodKeyCodec | None = None,
        clock: Callable[[], date] | None = None,
    ) -> None:
        super().__init__(codec=codec, clock=clock)
        if connection_factory is None:
            from chartbase.db.connection import get_connection

            connection_factory = get_connection
        self._connection_factory = connection_factory

    def _write(
        self,
        key: ChartKey,
        period_start: date,
        period_end: date,
        entries: list[RankedEntry],
        finalize: bool,
        force_if_finalized: bool,
    ) -> Chart:
        chart_type, period_type, period_key = key
        try:
            with self._connection_factory() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        "SELECT pg_advisory_xact_lock(hashtext(%s))",
                        ("|".join(key),),
                    )
                    cur.execute(
                        """
                        SELECT chart_id, is_finalized
                        FROM charts
                        WHERE chart_type = %s AND period_type = %s AND period_key = %s
                        FOR UPDATE
                        """,
                        key,
                    )
                    row = cur.fetchone()
                    skipped = row is not None and row[1] and not force_if_finalized
                    if not skipped:
                        self._replace(cur, key, row, period_start, period_end, entries, finalize)
                conn.commit()
        except pg_errors.UniqueViolation as exc:
            raise GenerationConflict(f"Concurrent write to chart {period_key}: {exc}") from exc

        if skipped:
            logger.debug("Skipping finalized %s %s chart %s", period_type, chart_type, period_key)
        else:
            logger.info(
                "Generated %s %s chart %s (%d entries, finalized=%s)",
                period_type,
                chart_type,
                period_key,
                len(entries),
                finalize,
            )
        return self.get_exact(key)

    @staticmethod
    def _replace(
        cur: psycopg.Cursor,
        key: ChartKey,
        row: tuple | None,
        period_start: date,
        period_end: date,
        entries: list[RankedEntry],
        finalize: bool,
    ) -> None:
        if row is None:
            cur.execute(
                """
                INSERT INTO charts (
                    chart_type, period_type, period_key,
                    period_start, period_end, is_finalized, generated_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, NOW())
                RETURNING chart_id
                """,
                (*key, period_start, period_end, finalize),
            )
            chart_id = cur.fetchone()[0]
        else:
            chart_id = row[0]
            cur.execute(
                """
                UPDATE charts
                SET period_start = %s,
                    period_end = %s,
                    is_finalized = %s,
                    generated_at = NOW()
                WHERE chart_id = %s
                """,
                (period_start, period_end, finalize, chart_id),
            )
            cur.execute("DELETE FROM chart_entries WHERE chart_id = %s", (chart_id,))

        if entries:
            cur.executemany(
                """
                INSERT INTO chart_entries (chart_id, entity_id, position, play_count)
                VALUES (%s, %s, %s, %s)
                """,
                [
                    (chart_id, entry.entity_id, entry.position, entry.play_count)
                    for entry in entries
                ],
            )

    def delete(self, chart_type: str, period_type: str, period_key: str) -> bool:
        try:
            period_key = self.codec.normalize_key(period_type, period_key)
        except InvalidPeriodKey:
            return False
        with self._connection_factory() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    DELETE FROM charts
                    WHERE chart_type = %s AND period_type = %s AND period_key = %s
                    """,
                    (chart_type, period_type, period_key),
                )
                deleted = cur.rowcount > 0
            conn.commit()
        if deleted:
            logger.info("Deleted %s %s chart %s", period_type, chart_type, period_key)
        return deleted

    def get_exact(self, key: ChartKey) -> Chart | None:
        with self._connection_factory() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    SELECT {_CHART_COLUMNS}
                    FROM charts
                    WHERE chart_type = %s AND period_type = %s AND period_key = %s
                    """,
                    key,
                )
                row = cur.fetchone()
                if row is None:
                    return None
                return self._load_entries(cur, [row])[0]

    def charts(self, chart_type: str, period_type: str) -> list[Chart]:
        with self._connection_factory() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    SELECT {_CHART_COLUMNS}
                    FROM charts
                    WHERE chart_type = %s AND period_type = %s
                    ORDER BY period_start ASC
                    """,
                    (chart_type, period_type),
                )
                rows = cur.fetchall()
                return self._load_entries(cur, rows)

    def previous(
        self, chart_type: str, period_key: str, period_type: str = WEEKLY
    ) -> Chart | None:
        return self._neighbour(chart_type, period_type, period_key, "<", "DESC")

    def next(
        self, chart_type: str, period_key: str, period_type: str = WEEKLY
    ) -> Chart | None:
        return self._neighbour(chart_type, period_type, period_key, ">", "ASC")

    def _neighbour(
        self,
        chart_type: str,
        period_type: str,
        period_key: str,
        comparison: str,
        direction: str,
    ) -> Chart | None:
        try:
            period_key = self.codec.normalize_key(period_type, period_key)
        except InvalidPeriodKey:
            return None
        with self._connection_factory() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    SELECT {_CHART_COLUMNS}
                    FROM charts
                    WHERE chart_type = %s AND period_type = %s
                      AND period_start {comparison} (
                          SELECT period_start FROM charts
                          WHERE chart_type = %s AND period_type = %s AND period_key = %s
                      )
                    ORDER BY period_start {direction}
                    LIMIT 1
                    """,
                    (chart_type, period_type, chart_type, period_type, period_key),
                )
                row = cur.fetchone()
                if row is None:
                    return None
                return self._load_entries(cur, [row])[0]

    def existing_period_keys(self, chart_type: str, period_type: str) -> set[str]:
        return self._period_keys(chart_type, period_type, finalized_only=False)

    def finalized_period_keys(self, chart_type: str, period_type: str) -> set[str]:
        return self._period_keys(chart_type, period_type, finalized_only=True)

    def _period_keys(self, chart_type: str, period_type: str, finalized_only: bool) -> set[str]:
        with self._connection_factory() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT period_key
                    FROM charts
                    WHERE chart_type = %s AND period_type = %s
                      AND (is_finalized OR NOT %s)
                    """,
                    (chart_type, period_type, finalized_only),
                )
                return {row[0] for row in cur.fetchall()}

    def entries_for_entity(
        self, entity_id: str, chart_type: str, period_type: str = WEEKLY
    ) -> list[tuple[Chart, ChartEntry]]:
        with self._connection_factory() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT c.chart_id, c.chart_type, c.period_type, c.period_key,
                           c.period_start, c.period_end, c.is_finalized, c.generated_at,
                           ce.position, ce.play_count
                    FROM chart_entries ce
                    JOIN charts c ON ce.chart_id = c.chart_id
                    WHERE ce.entity_id = %s AND c.chart_type = %s AND c.period_type = %s
                    ORDER BY c.period_start ASC
                    """,
                    (entity_id, chart_type, period_type),
                )
                rows = cur.fetchall()

        result = []
        for row in rows:
            chart = self._chart_from_row(row[:8])
            entry = ChartEntry(
                chart_id=chart.chart_id,
                entity_id=entity_id,
                position=row[8],
                play_count=row[9],
            )
            result.append((chart, entry))
        return result

    def _load_entries(self, cur: psycopg.Cursor, rows: list[tuple]) -> list[Chart]:
        if not rows:
            return []
        chart_ids = [row[0] for row in rows]
        cur.execute(
            """
            SELECT chart_id, entity_id, position, play_count
            FROM chart_entries
            WHERE chart_id = ANY(%s)
            ORDER BY chart_id, position
            """,
            (chart_ids,),
        )
        by_chart: dict[int, list[ChartEntry]] = {}
        for chart_id, entity_id, position, play_count in cur.fetchall():
            by_chart.setdefault(chart_id, []).append(
                ChartEntry(
                    chart_id=chart_id,
                    entity_id=entity_id,
                    position=position,
                    play_count=play_count,
                )
            )
        return [
            self._chart_from_row(row, tuple(by_chart.get(row[0], ())))
            for row in rows
        ]

    @staticmethod
    def _chart_from_row(row: tuple, entries: tuple[ChartEntry, ...] = ()) -> Chart:
        return Chart(
            chart_id=row[0],
            chart_type=row[1],
            period_type=row[2],
            period_key=row[3],
            period_start=row[4],
            period_end=row[5],
            is_finalized=bool(row[6]),
            generated_at=row[7],
            entries=entries,
        )

