"""
Chart Run Tracker

Reconstructs an entity's position history across generated charts: the run
itself, its peak, and the movement between consecutive existing charts.
Runs are derived on demand and never stored.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Any

from chartbase.services.chart_store import ChartStore
from chartbase.services.period_keys import WEEKLY


@dataclass(frozen=True)
class RunPoint:
    period_key: str
    position: int
    play_count: int
    period_start: date
    period_end: date

    def to_dict(self) -> dict[str, Any]:
        return {
            "period_key": self.period_key,
            "position": self.position,
            "play_count": self.play_count,
            "period_start": self.period_start.isoformat(),
            "period_end": self.period_end.isoformat(),
        }


@dataclass(frozen=True)
class ChartRun:
    """An entity's chart appearances for one chart type, oldest first."""

    entity_id: str
    chart_type: str
    period_type: str
    points: tuple[RunPoint, ...]

    @property
    def peak_position(self) -> int | None:
        if not self.points:
            return None
        return min(point.position for point in self.points)

    @property
    def periods_charted(self) -> int:
        return len(self.points)

    @property
    def times_at_peak(self) -> int:
        peak = self.peak_position
        return sum(1 for point in self.points if point.position == peak)

    @property
    def debut_period_key(self) -> str | None:
        return self.points[0].period_key if self.points else None

    @property
    def peak_period_key(self) -> str | None:
        """First period in which the peak position was reached."""
        peak = self.peak_position
        for point in self.points:
            if point.position == peak:
                return point.period_key
        return None

    def periods_in_top(self, n: int) -> int:
        return sum(1 for point in self.points if point.position <= n)

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity_id": self.entity_id,
            "chart_type": self.chart_type,
            "period_type": self.period_type,
            "peak_position": self.peak_position,
            "periods_charted": self.periods_charted,
            "times_at_peak": self.times_at_peak,
            "debut_period_key": self.debut_period_key,
            "peak_period_key": self.peak_period_key,
            "periods_at_1": self.periods_in_top(1),
            "periods_in_top_5": self.periods_in_top(5),
            "periods_in_top_10": self.periods_in_top(10),
            "periods_in_top_20": self.periods_in_top(20),
            "points": [point.to_dict() for point in self.points],
        }


class TrendKind(str, Enum):
    NEW_ENTRY = "new-entry"
    UP = "up"
    DOWN = "down"
    UNCHANGED = "unchanged"
    DROPPED_OUT = "dropped-out"


@dataclass(frozen=True)
class Trend:
    """Movement of an entity between the previous existing chart and the current one."""

    kind: TrendKind
    change: int = 0

    def __str__(self) -> str:
        if self.kind in (TrendKind.UP, TrendKind.DOWN):
            return f"{self.kind.value}({self.change})"
        return self.kind.value

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind.value, "change": self.change, "label": str(self)}


def compare_positions(current: int | None, previous: int | None) -> Trend | None:
    """Trend between two positions; None when the entity is in neither chart."""
    if current is None and previous is None:
        return None
    if current is None:
        return Trend(TrendKind.DROPPED_OUT)
    if previous is None:
        return Trend(TrendKind.NEW_ENTRY)
    if current < previous:
        return Trend(TrendKind.UP, previous - current)
    if current > previous:
        return Trend(TrendKind.DOWN, current - previous)
    return Trend(TrendKind.UNCHANGED)


@dataclass(frozen=True)
class PositionTally:
    """One row of a "most periods at position" leaderboard."""

    rank: int
    entity_id: str
    periods: int
    peak_position: int
    first_period_key: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "rank": self.rank,
            "entity_id": self.entity_id,
            "periods": self.periods,
            "peak_position": self.peak_position,
            "first_period_key": self.first_period_key,
        }


class ChartRunTracker:
    """Derives chart runs, peaks and trends from a ChartStore."""

    def __init__(self, store: ChartStore) -> None:
        self.store = store

    def run_for(
        self, entity_id: str, chart_type: str, period_type: str = WEEKLY
    ) -> ChartRun:
        """Every appearance of an entity, ascending by period start."""
        points = tuple(
            RunPoint(
                period_key=chart.period_key,
                position=entry.position,
                play_count=entry.play_count,
                period_start=chart.period_start,
                period_end=chart.period_end,
            )
            for chart, entry in self.store.entries_for_entity(entity_id, chart_type, period_type)
        )
        return ChartRun(
            entity_id=entity_id,
            chart_type=chart_type,
            period_type=period_type,
            points=points,
        )

    def peak_position(
        self, entity_id: str, chart_type: str, period_type: str = WEEKLY
    ) -> int | None:
        """Best (lowest) position the entity reached, or None if it never charted."""
        return self.run_for(entity_id, chart_type, period_type).peak_position

    def trend(
        self,
        entity_id: str,
        current_period_key: str,
        chart_type: str,
        period_type: str = WEEKLY,
    ) -> Trend | None:
        """
        Compare the entity's position in ``current_period_key`` with the
        immediately preceding existing chart (which need not be the adjacent
        calendar period).

        Returns None when the current chart does not exist or the entity is
        absent from both charts.
        """
        current = self.store.get(chart_type, period_type, current_period_key)
        if current is None:
            return None
        previous = self.store.previous(chart_type, current.period_key, period_type)
        return compare_positions(
            current.position_of(entity_id),
            previous.position_of(entity_id) if previous is not None else None,
        )

    def most_periods_at_position(
        self,
        chart_type: str,
        max_position: int,
        period_type: str = WEEKLY,
        year: int | None = None,
    ) -> list[PositionTally]:
        """
        Entities ranked by the number of periods spent at or above
        ``max_position``; ties go to the earliest first appearance, then id.
        """
        if max_position < 1:
            raise ValueError("max_position must be at least 1")

        tallies: dict[str, dict[str, Any]] = {}
        for chart in self.store.charts(chart_type, period_type):
            if year is not None and chart.period_start.year != year:
                continue
            for entry in chart.entries:
                if entry.position > max_position:
                    continue
                tally = tallies.get(entry.entity_id)
                if tally is None:
                    tallies[entry.entity_id] = {
                        "periods": 1,
                        "peak": entry.position,
                        "first_start": chart.period_start,
                        "first_key": chart.period_key,
                    }
                else:
                    tally["periods"] += 1
                    tally["peak"] = min(tally["peak"], entry.position)

        ordered = sorted(
            tallies.items(),
            key=lambda item: (-item[1]["periods"], item[1]["first_start"], item[0]),
        )
        return [
            PositionTally(
                rank=rank,
                entity_id=entity_id,
                periods=tally["periods"],
                peak_position=tally["peak"],
                first_period_key=tally["first_key"],
            )
            for rank, (entity_id, tally) in enumerate(ordered, start=1)
        ]
