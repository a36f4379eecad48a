"""
Play Log & Play Aggregator

Read-only access to recorded plays and the per-entity counting that feeds
chart ranking.
"""

from __future__ import annotations

import logging
import threading
from collections import Counter
from contextlib import contextmanager
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Callable, Iterable, Iterator

import psycopg
from psycopg_pool import PoolTimeout

from chartbase.services.errors import SourceUnavailable

logger = logging.getLogger(__name__)

SONG = "song"
ALBUM = "album"
ENTITY_CLASSES = (SONG, ALBUM)

PlayEvent = tuple[str, datetime]

_PLAYS_SQL = {
    SONG: """
        SELECT ps.sha_id, ps.started_at
        FROM play_sessions ps
        WHERE ps.started_at >= %s AND ps.started_at < %s
        ORDER BY ps.started_at
    """,
    ALBUM: """
        SELECT al.album_id, ps.started_at
        FROM play_sessions ps
        JOIN metadata.songs s ON ps.sha_id = s.sha_id
        JOIN metadata.albums al ON lower(al.title) = lower(s.album)
        WHERE ps.started_at >= %s AND ps.started_at < %s
          AND s.album IS NOT NULL AND s.album != ''
        ORDER BY ps.started_at
    """,
}

_COUNTS_SQL = {
    SONG: """
        SELECT ps.sha_id, COUNT(*)
        FROM play_sessions ps
        WHERE ps.started_at >= %s AND ps.started_at < %s
        GROUP BY ps.sha_id
    """,
    ALBUM: """
        SELECT al.album_id, COUNT(*)
        FROM play_sessions ps
        JOIN metadata.songs s ON ps.sha_id = s.sha_id
        JOIN metadata.albums al ON lower(al.title) = lower(s.album)
        WHERE ps.started_at >= %s AND ps.started_at < %s
          AND s.album IS NOT NULL AND s.album != ''
        GROUP BY al.album_id
    """,
}

_EARLIEST_SQL = {
    SONG: "SELECT MIN(started_at) FROM play_sessions",
    ALBUM: """
        SELECT MIN(ps.started_at)
        FROM play_sessions ps
        JOIN metadata.songs s ON ps.sha_id = s.sha_id
        WHERE s.album IS NOT NULL AND s.album != ''
    """,
}


def _check_entity_class(entity_class: str) -> None:
    if entity_class not in ENTITY_CLASSES:
        raise ValueError(f"Unknown entity class: {entity_class!r}")


def period_bounds(
    period_start: date,
    period_end: date,
    tz: tzinfo = timezone.utc,
) -> tuple[datetime, datetime]:
    """Half-open timestamp window ``[start, end + 1 day)`` for inclusive dates."""
    start = datetime.combine(period_start, time.min, tzinfo=tz)
    end = datetime.combine(period_end + timedelta(days=1), time.min, tzinfo=tz)
    return start, end


class PlayLog:
    """Interface of the external play log collaborator."""

    def query_plays_in_range(
        self, entity_class: str, start: datetime, end: datetime
    ) -> Iterable[PlayEvent]:
        """Yield ``(entity_id, timestamp)`` for plays with ``start <= ts < end``."""
        raise NotImplementedError

    def count_plays_in_range(
        self, entity_class: str, start: datetime, end: datetime
    ) -> dict[str, int]:
        counts: Counter[str] = Counter()
        for entity_id, _ in self.query_plays_in_range(entity_class, start, end):
            counts[entity_id] += 1
        return dict(counts)

    def earliest_play_date(self, entity_class: str) -> date | None:
        raise NotImplementedError


class PostgresPlayLog(PlayLog):
    """Play log backed by the ``play_sessions`` table."""

    def __init__(self, connection_factory: Callable | None = None) -> None:
        if connection_factory is None:
            from chartbase.db.connection import get_connection

            connection_factory = get_connection
        self._connection_factory = connection_factory

    @contextmanager
    def _cursor(self):
        try:
            with self._connection_factory() as conn:
                with conn.cursor() as cur:
                    yield cur
        except (psycopg.OperationalError, PoolTimeout) as exc:
            raise SourceUnavailable(f"Play log unavailable: {exc}") from exc

    def query_plays_in_range(
        self, entity_class: str, start: datetime, end: datetime
    ) -> Iterator[PlayEvent]:
        _check_entity_class(entity_class)
        with self._cursor() as cur:
            cur.execute(_PLAYS_SQL[entity_class], (start, end))
            rows = cur.fetchall()
        for entity_id, started_at in rows:
            yield str(entity_id), started_at

    def count_plays_in_range(
        self, entity_class: str, start: datetime, end: datetime
    ) -> dict[str, int]:
        _check_entity_class(entity_class)
        with self._cursor() as cur:
            cur.execute(_COUNTS_SQL[entity_class], (start, end))
            return {str(row[0]): int(row[1]) for row in cur.fetchall() if row[1]}

    def earliest_play_date(self, entity_class: str) -> date | None:
        _check_entity_class(entity_class)
        with self._cursor() as cur:
            cur.execute(_EARLIEST_SQL[entity_class])
            row = cur.fetchone()
        if not row or row[0] is None:
            return None
        return row[0].astimezone(timezone.utc).date()


class MemoryPlayLog(PlayLog):
    """Thread-safe in-memory play log, used offline and by the test suite."""

    def __init__(self, plays: Iterable[tuple[str, str, datetime]] = ()) -> None:
        self._plays: dict[str, list[PlayEvent]] = {cls: [] for cls in ENTITY_CLASSES}
        self._lock = threading.Lock()
        for entity_class, entity_id, played_at in plays:
            self.add(entity_class, entity_id, played_at)

    def add(self, entity_class: str, entity_id: str, played_at: datetime) -> None:
        """Record one play; naive timestamps are taken as UTC."""
        _check_entity_class(entity_class)
        if played_at.tzinfo is None:
            played_at = played_at.replace(tzinfo=timezone.utc)
        with self._lock:
            self._plays[entity_class].append((str(entity_id), played_at))

    def query_plays_in_range(
        self, entity_class: str, start: datetime, end: datetime
    ) -> list[PlayEvent]:
        _check_entity_class(entity_class)
        with self._lock:
            plays = list(self._plays[entity_class])
        return sorted(
            (play for play in plays if start <= play[1] < end),
            key=lambda play: play[1],
        )

    def earliest_play_date(self, entity_class: str) -> date | None:
        _check_entity_class(entity_class)
        with self._lock:
            timestamps = [played_at for _, played_at in self._plays[entity_class]]
        if not timestamps:
            return None
        return min(timestamps).astimezone(timezone.utc).date()


class PlayAggregator:
    """Groups play events into per-entity play counts for a period."""

    def __init__(self, play_log: PlayLog, tz: tzinfo = timezone.utc) -> None:
        self.play_log = play_log
        self.tz = tz

    def count_plays_by_entity(
        self,
        entity_class: str,
        period_start: date,
        period_end: date,
    ) -> dict[str, int]:
        """
        Count plays per entity between two inclusive calendar dates.

        Entities without plays are absent from the result.

        Raises:
            SourceUnavailable: the play log could not be read
        """
        _check_entity_class(entity_class)
        start, end = period_bounds(period_start, period_end, self.tz)
        counts = self.play_log.count_plays_in_range(entity_class, start, end)
        counts = {entity_id: count for entity_id, count in counts.items() if count > 0}
        logger.debug(
            "Aggregated %d %s entities for %s..%s",
            len(counts),
            entity_class,
            period_start,
            period_end,
        )
        return counts
