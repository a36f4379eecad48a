from __future__ import annotations

import unittest
from datetime import date

from chartbase.services.chart_runs import ChartRunTracker, Trend, TrendKind, compare_positions
from chartbase.services.chart_store import MemoryChartStore
from chartbase.services.ranking import RankedEntry


def _entries(*entity_ids: str) -> list[RankedEntry]:
    return [
        RankedEntry(entity_id, position, 10 - position)
        for position, entity_id in enumerate(entity_ids, start=1)
    ]


class ChartRunTrackerTest(unittest.TestCase):
    def setUp(self) -> None:
        self.store = MemoryChartStore(clock=lambda: date(2025, 1, 1))
        # 2024-W04 is deliberately missing.
        self.store.generate("song", "weekly", "2024-W01", _entries("a", "b"))
        self.store.generate("song", "weekly", "2024-W02", _entries("b", "a"))
        self.store.generate("song", "weekly", "2024-W03", _entries("b"))
        self.store.generate("song", "weekly", "2024-W05", _entries("a", "b"))
        self.store.generate("song", "weekly", "2023-W40", _entries("c"))
        self.tracker = ChartRunTracker(self.store)

    def test_run_and_peak(self) -> None:
        run = self.tracker.run_for("a", "song")
        self.assertEqual(
            [(p.period_key, p.position) for p in run.points],
            [("2024-W01", 1), ("2024-W02", 2), ("2024-W05", 1)],
        )
        self.assertEqual(run.peak_position, min(p.position for p in run.points))
        self.assertEqual(run.periods_charted, 3)
        self.assertEqual(run.times_at_peak, 2)
        self.assertEqual(run.debut_period_key, "2024-W01")
        self.assertEqual(run.peak_period_key, "2024-W01")
        self.assertEqual(run.periods_in_top(1), 2)
        self.assertEqual(self.tracker.peak_position("b", "song"), 1)

    def test_empty_run(self) -> None:
        run = self.tracker.run_for("nobody", "song")
        self.assertEqual(run.points, ())
        self.assertIsNone(run.peak_position)
        self.assertEqual(run.periods_charted, 0)
        self.assertIsNone(self.tracker.peak_position("nobody", "song"))
        self.assertIsNone(self.tracker.peak_position("a", "album"))

    def test_trend_against_previous_existing_chart(self) -> None:
        self.assertEqual(self.tracker.trend("a", "2024-W02", "song"), Trend(TrendKind.DOWN, 1))
        self.assertEqual(self.tracker.trend("b", "2024-W02", "song"), Trend(TrendKind.UP, 1))
        self.assertEqual(self.tracker.trend("b", "2024-W03", "song"), Trend(TrendKind.UNCHANGED))
        self.assertEqual(self.tracker.trend("a", "2024-W03", "song"), Trend(TrendKind.DROPPED_OUT))
        # 2024-W05 compares with 2024-W03, the latest chart before it.
        self.assertEqual(self.tracker.trend("a", "2024-W05", "song"), Trend(TrendKind.NEW_ENTRY))
        self.assertEqual(self.tracker.trend("b", "2024-W05", "song"), Trend(TrendKind.DOWN, 1))

    def test_trend_is_none_without_data(self) -> None:
        self.assertIsNone(self.tracker.trend("a", "2024-W04", "song"))
        self.assertIsNone(self.tracker.trend("nobody", "2024-W02", "song"))

    def test_trend_labels(self) -> None:
        self.assertEqual(str(compare_positions(3, 6)), "up(3)")
        self.assertEqual(str(compare_positions(6, 3)), "down(3)")
        self.assertEqual(str(compare_positions(4, None)), "new-entry")
        self.assertEqual(str(compare_positions(None, 4)), "dropped-out")
        self.assertEqual(str(compare_positions(2, 2)), "unchanged")
        self.assertIsNone(compare_positions(None, None))

    def test_most_periods_at_number_one(self) -> None:
        tallies = self.tracker.most_periods_at_position("song", 1, year=2024)
        # a and b both spent two weeks at #1; a got there first.
        self.assertEqual([(t.entity_id, t.periods) for t in tallies], [("a", 2), ("b", 2)])
        self.assertEqual([t.rank for t in tallies], [1, 2])

    def test_most_periods_in_top_two(self) -> None:
        tallies = self.tracker.most_periods_at_position("song", 2)
        self.assertEqual(
            [(t.entity_id, t.periods) for t in tallies],
            [("b", 4), ("a", 3), ("c", 1)],
        )
        self.assertEqual(tallies[2].first_period_key, "2023-W40")

    def test_most_periods_rejects_bad_position(self) -> None:
        with self.assertRaises(ValueError):
            self.tracker.most_periods_at_position("song", 0)


if __name__ == "__main__":
    unittest.main()
