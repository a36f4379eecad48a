"""
Chart Service

The operations the rest of the application uses: single-period generation,
chart views with run statistics, run/trend queries and bulk generation.
"""

from __future__ import annotations

import logging
import os
import threading
import warnings
from dataclasses import dataclass
from datetime import date, timezone, tzinfo
from typing import Any, Iterable

from chartbase.app_settings import bulk_settings, chart_limit, load_settings
from chartbase.services.bulk_generation import BulkGenerationCoordinator, GenerationSession
from chartbase.services.chart_runs import (
    ChartRun,
    ChartRunTracker,
    PositionTally,
    Trend,
    compare_positions,
)
from chartbase.services.chart_store import (
    CHART_TYPES,
    Chart,
    ChartEntry,
    ChartStore,
    MemoryChartStore,
    PostgresChartStore,
    check_chart_type,
)
from chartbase.services.entity_directory import (
    EntityDirectory,
    MemoryEntityDirectory,
    PostgresEntityDirectory,
)
from chartbase.services.errors import UnknownEntity
from chartbase.services.period_keys import PERIOD_TYPES, WEEKLY
from chartbase.services.play_log import MemoryPlayLog, PlayAggregator, PlayLog, PostgresPlayLog
from chartbase.services.ranking import RankedEntry, TieBreak, name_tie_break, rank

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChartRow:
    """One display row of a chart with its run statistics as of that period."""

    position: int
    entity_id: str
    play_count: int
    last_position: int | None
    is_new_entry: bool
    is_reentry: bool
    peak_position: int
    periods_charted: int
    trend: Trend

    def to_dict(self) -> dict[str, Any]:
        return {
            "position": self.position,
            "entity_id": self.entity_id,
            "play_count": self.play_count,
            "last_position": self.last_position,
            "is_new_entry": self.is_new_entry,
            "is_reentry": self.is_reentry,
            "peak_position": self.peak_position,
            "periods_charted": self.periods_charted,
            "trend": self.trend.to_dict(),
        }


@dataclass(frozen=True)
class ChartView:
    chart: Chart
    label: str
    rows: tuple[ChartRow, ...]
    previous_period_key: str | None
    next_period_key: str | None

    def to_dict(self) -> dict[str, Any]:
        data = self.chart.to_dict(include_entries=False)
        data.update(
            {
                "label": self.label,
                "previous_period_key": self.previous_period_key,
                "next_period_key": self.next_period_key,
                "rows": [row.to_dict() for row in self.rows],
            }
        )
        return data


@dataclass(frozen=True)
class ChartSummary:
    """Index row of a stored chart: its period and current number one."""

    chart: Chart
    label: str
    top_entry: ChartEntry | None
    top_name: str | None = None

    def to_dict(self) -> dict[str, Any]:
        top = None
        if self.top_entry is not None:
            top = {**self.top_entry.to_dict(), "name": self.top_name}
        return {
            "period_key": self.chart.period_key,
            "label": self.label,
            "period_start": self.chart.period_start.isoformat(),
            "period_end": self.chart.period_end.isoformat(),
            "is_finalized": self.chart.is_finalized,
            "entry_count": len(self.chart.entries),
            "top_entry": top,
        }


class ChartService:
    def __init__(
        self,
        store: ChartStore,
        play_log: PlayLog,
        directory: EntityDirectory | None = None,
        settings: dict[str, Any] | None = None,
        tz: tzinfo = timezone.utc,
        bulk: BulkGenerationCoordinator | None = None,
    ) -> None:
        self.store = store
        self.codec = store.codec
        self.play_log = play_log
        self.directory = directory
        self.settings = settings if settings is not None else load_settings()
        self.aggregator = PlayAggregator(play_log, tz=tz)
        self.tracker = ChartRunTracker(store)
        if bulk is None:
            options = bulk_settings(self.settings)
            bulk = BulkGenerationCoordinator(
                codec=self.codec,
                store=store,
                play_log=play_log,
                generate_chart=self.generate_chart,
                workers=options["workers"],
                session_ttl=options["session_ttl_seconds"],
            )
        self.bulk = bulk

    # ------------------------------------------------------------------
    # generation

    def generate_chart(
        self,
        chart_type: str,
        period_type: str,
        period_key: str,
        force: bool = False,
    ) -> Chart:
        """
        Aggregate, rank and store one chart.

        A finalized chart is returned as stored, without reading plays,
        unless ``force`` is set.

        Raises:
            InvalidPeriodKey: the period key cannot be resolved or is week 00
            SourceUnavailable: the play log or entity directory could not be read
        """
        check_chart_type(chart_type)
        period_key = self.codec.chart_key(period_type, period_key)
        if not force:
            existing = self.store.get_exact((chart_type, period_type, period_key))
            if existing is not None and existing.is_finalized:
                return existing
        ranked = self._ranked(chart_type, period_type, period_key)
        self._check_entities(chart_type, period_key, ranked)
        return self.store.generate(
            chart_type, period_type, period_key, ranked, force_if_finalized=force
        )

    def generate(
        self,
        period_type: str,
        period_key: str,
        force: bool = False,
        chart_types: Iterable[str] = CHART_TYPES,
    ) -> dict[str, Chart]:
        """Generate every chart type for one period."""
        return {
            chart_type: self.generate_chart(chart_type, period_type, period_key, force)
            for chart_type in chart_types
        }

    def preview(self, chart_type: str, period_type: str, period_key: str) -> list[RankedEntry]:
        """Rank a period from current plays without persisting anything."""
        check_chart_type(chart_type)
        period_key = self.codec.normalize_key(period_type, period_key)
        return self._ranked(chart_type, period_type, period_key)

    def _ranked(self, chart_type: str, period_type: str, period_key: str) -> list[RankedEntry]:
        period_start, period_end = self.codec.key_to_date_range(period_type, period_key)
        counts = self.aggregator.count_plays_by_entity(chart_type, period_start, period_end)
        return rank(
            counts,
            tie_break=self._tie_break(chart_type, counts),
            limit=chart_limit(period_type, chart_type, self.settings),
        )

    def _tie_break(self, chart_type: str, counts: dict[str, int]) -> TieBreak | None:
        if self.directory is None:
            return None
        if self.settings.get("charts", {}).get("tie_break") != "name":
            return None
        return name_tie_break(self.directory.names(chart_type, counts))

    def _check_entities(
        self, chart_type: str, period_key: str, ranked: list[RankedEntry]
    ) -> None:
        if self.directory is None or not ranked:
            return
        unknown = self.directory.unknown_ids(chart_type, (entry.entity_id for entry in ranked))
        if not unknown:
            return
        message = (
            f"{len(unknown)} {chart_type} id(s) in chart {period_key} are not in the "
            f"entity directory: {', '.join(sorted(unknown))}"
        )
        logger.warning(message)
        warnings.warn(UnknownEntity(message), stacklevel=3)

    # ------------------------------------------------------------------
    # reads

    def get_chart(self, chart_type: str, period_type: str, period_key: str) -> Chart | None:
        return self.store.get(chart_type, period_type, period_key)

    def list_charts(
        self, chart_type: str, period_type: str, finalized_only: bool = False
    ) -> list[ChartSummary]:
        """Every stored chart of one granularity, newest period first."""
        check_chart_type(chart_type)
        if period_type not in PERIOD_TYPES:
            raise ValueError(f"Unknown period type: {period_type!r}")
        charts = [
            chart
            for chart in self.store.charts(chart_type, period_type)
            if chart.is_finalized or not finalized_only
        ]
        charts.reverse()

        tops = {chart.period_key: chart.entries[0] for chart in charts if chart.entries}
        names: dict[str, str | None] = {}
        if self.directory is not None and tops:
            names = self.directory.names(chart_type, {e.entity_id for e in tops.values()})

        summaries = []
        for chart in charts:
            top = tops.get(chart.period_key)
            summaries.append(
                ChartSummary(
                    chart=chart,
                    label=self.codec.format_key(period_type, chart.period_key),
                    top_entry=top,
                    top_name=names.get(top.entity_id) if top is not None else None,
                )
            )
        return summaries

    def chart_view(
        self, chart_type: str, period_type: str, period_key: str
    ) -> ChartView | None:
        """A stored chart with per-row movement and run statistics."""
        chart = self.store.get(chart_type, period_type, period_key)
        if chart is None:
            return None
        previous = self.store.previous(chart_type, chart.period_key, period_type)
        following = self.store.next(chart_type, chart.period_key, period_type)

        rows = []
        for entry in chart.entries:
            history = [
                point
                for point in self.tracker.run_for(entry.entity_id, chart_type, period_type).points
                if point.period_start <= chart.period_start
            ]
            earlier = [point for point in history if point.period_start < chart.period_start]
            last_position = previous.position_of(entry.entity_id) if previous else None
            is_reentry = last_position is None and previous is not None and any(
                point.period_start < previous.period_start for point in earlier
            )
            rows.append(
                ChartRow(
                    position=entry.position,
                    entity_id=entry.entity_id,
                    play_count=entry.play_count,
                    last_position=last_position,
                    is_new_entry=not earlier,
                    is_reentry=is_reentry,
                    peak_position=min((p.position for p in history), default=entry.position),
                    periods_charted=len(history),
                    trend=compare_positions(entry.position, last_position),
                )
            )

        return ChartView(
            chart=chart,
            label=self.codec.format_key(period_type, chart.period_key),
            rows=tuple(rows),
            previous_period_key=previous.period_key if previous else None,
            next_period_key=following.period_key if following else None,
        )

    def chart_run(self, entity_id: str, chart_type: str, period_type: str = WEEKLY) -> ChartRun:
        return self.tracker.run_for(entity_id, chart_type, period_type)

    def peak_position(
        self, entity_id: str, chart_type: str, period_type: str = WEEKLY
    ) -> int | None:
        return self.tracker.peak_position(entity_id, chart_type, period_type)

    def trend(
        self,
        entity_id: str,
        period_key: str,
        chart_type: str,
        period_type: str = WEEKLY,
    ) -> Trend | None:
        return self.tracker.trend(entity_id, period_key, chart_type, period_type)

    def previous_key(
        self, chart_type: str, period_key: str, period_type: str = WEEKLY
    ) -> str | None:
        chart = self.store.previous(chart_type, period_key, period_type)
        return chart.period_key if chart else None

    def next_key(
        self, chart_type: str, period_key: str, period_type: str = WEEKLY
    ) -> str | None:
        chart = self.store.next(chart_type, period_key, period_type)
        return chart.period_key if chart else None

    def weekly_key_for_date(self, d: date) -> str:
        """The week containing ``d``; week 00 days belong to the prior year's last week."""
        return self.codec.containing_key(WEEKLY, d)

    def key_for_date(self, period_type: str, d: date) -> str:
        return self.codec.containing_key(period_type, d)

    def most_periods_at_position(
        self,
        chart_type: str,
        max_position: int = 1,
        period_type: str = WEEKLY,
        year: int | None = None,
        limit: int | None = None,
    ) -> list[PositionTally]:
        tallies = self.tracker.most_periods_at_position(
            chart_type, max_position, period_type, year
        )
        return tallies[:limit] if limit is not None else tallies

    # ------------------------------------------------------------------
    # bulk

    def start_bulk(
        self,
        chart_types: Iterable[str] = CHART_TYPES,
        period_types: Iterable[str] = PERIOD_TYPES,
        from_date: date | None = None,
        to_date: date | None = None,
        regenerate: bool = False,
    ) -> str:
        return self.bulk.start(chart_types, period_types, from_date, to_date, regenerate)

    def poll_bulk(self, session_id: str) -> GenerationSession | None:
        return self.bulk.progress(session_id)

    def discard_bulk(self, session_id: str) -> bool:
        return self.bulk.discard(session_id)

    def close(self) -> None:
        self.bulk.shutdown(wait=False)


_service: ChartService | None = None
_service_lock = threading.Lock()


def build_chart_service(backend: str | None = None) -> ChartService:
    """Wire a ChartService for ``postgres`` or ``memory`` collaborators."""
    backend = (backend or os.environ.get("CHARTBASE_STORE", "postgres")).lower()
    if backend == "memory":
        return ChartService(
            store=MemoryChartStore(),
            play_log=MemoryPlayLog(),
            directory=MemoryEntityDirectory(),
        )
    return ChartService(
        store=PostgresChartStore(),
        play_log=PostgresPlayLog(),
        directory=PostgresEntityDirectory(),
    )


def get_chart_service() -> ChartService:
    """Get the singleton ChartService, configured from ``CHARTBASE_STORE``."""
    global _service
    if _service is not None:
        return _service
    with _service_lock:
        if _service is None:
            _service = build_chart_service()
            logger.info("Chart service using %s", type(_service.store).__name__)
        return _service


def reset_chart_service(service: ChartService | None = None) -> None:
    """Replace (or clear) the singleton; used at shutdown and by tests."""
    global _service
    with _service_lock:
        if _service is not None and _service is not service:
            _service.close()
        _service = service
