from __future__ import annotations

import tempfile
import threading
import unittest
from datetime import date, datetime, timezone
from pathlib import Path

from chartbase.app_settings import load_settings
from chartbase.services.bulk_generation import BulkGenerationCoordinator
from chartbase.services.chart_service import ChartService
from chartbase.services.chart_store import MemoryChartStore
from chartbase.services.errors import SourceUnavailable
from chartbase.services.play_log import MemoryPlayLog

TODAY = date(2024, 3, 1)  # inside 2024-W09
FEBRUARY_WEEKS = ["2024-W05", "2024-W06", "2024-W07", "2024-W08", "2024-W09"]


class UnavailablePlayLog(MemoryPlayLog):
    def earliest_play_date(self, entity_class):
        raise SourceUnavailable("play log offline")


class FakeClock:
    def __init__(self) -> None:
        self.now = 1_000.0

    def __call__(self) -> float:
        return self.now


class BulkGenerationTest(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.settings = load_settings(Path(self.tmp.name) / "settings.json")
        self.play_log = MemoryPlayLog()
        self.play_log.add("song", "A", datetime(2024, 2, 1, tzinfo=timezone.utc))
        self.play_log.add("song", "B", datetime(2024, 2, 20, tzinfo=timezone.utc))
        self.store = MemoryChartStore(clock=lambda: TODAY)
        self.service = ChartService(
            store=self.store,
            play_log=self.play_log,
            settings=self.settings,
        )
        self.coordinators: list[BulkGenerationCoordinator] = []

    def tearDown(self) -> None:
        self.service.close()
        for coordinator in self.coordinators:
            coordinator.shutdown()
        self.tmp.cleanup()

    def _coordinator(self, generate_chart=None, play_log=None, **kwargs) -> BulkGenerationCoordinator:
        coordinator = BulkGenerationCoordinator(
            codec=self.store.codec,
            store=self.store,
            play_log=play_log or self.play_log,
            generate_chart=generate_chart or self.service.generate_chart,
            **kwargs,
        )
        self.coordinators.append(coordinator)
        return coordinator

    def test_generates_every_missing_period(self) -> None:
        session_id = self.service.start_bulk(["song"], ["weekly"])
        session = self.service.bulk.wait(session_id, timeout=10)

        self.assertEqual(session.status, "completed")
        self.assertEqual(session.total_periods, 5)
        self.assertEqual(session.completed_periods, 5)
        self.assertEqual(session.errors, [])
        self.assertIsNone(session.current_period_key)
        self.assertIsNotNone(session.finished_at)
        self.assertEqual(
            sorted(self.store.existing_period_keys("song", "weekly")), FEBRUARY_WEEKS
        )
        self.assertEqual(self.store.get("song", "weekly", "2024-W05").position_of("A"), 1)
        self.assertFalse(self.store.get("song", "weekly", "2024-W09").is_finalized)

    def test_second_run_only_revisits_unfinalized_periods(self) -> None:
        first = self.service.start_bulk(["song"], ["weekly"])
        self.service.bulk.wait(first, timeout=10)

        second = self.service.start_bulk(["song"], ["weekly"])
        self.assertNotEqual(first, second)
        self.assertEqual(self.service.bulk.wait(second, timeout=10).total_periods, 1)

        forced = self.service.start_bulk(["song"], ["weekly"], regenerate=True)
        self.assertEqual(self.service.bulk.wait(forced, timeout=10).total_periods, 5)

    def test_one_failing_period_is_recorded_and_the_run_continues(self) -> None:
        def generate_chart(chart_type, period_type, period_key, force):
            if period_key == "2024-W07":
                raise RuntimeError("boom")
            return self.service.generate_chart(chart_type, period_type, period_key, force)

        coordinator = self._coordinator(generate_chart)
        session = coordinator.wait(coordinator.start(["song"], ["weekly"]), timeout=10)

        self.assertEqual(session.status, "completed")
        self.assertEqual(session.completed_periods, 5)
        self.assertEqual(session.errors, [("2024-W07", "song: boom")])
        self.assertIsNone(self.store.get("song", "weekly", "2024-W07"))
        self.assertIsNotNone(self.store.get("song", "weekly", "2024-W08"))

    def test_errors_from_several_chart_types_share_one_entry(self) -> None:
        def generate_chart(chart_type, period_type, period_key, force):
            raise RuntimeError(f"{chart_type} failed")

        coordinator = self._coordinator(generate_chart)
        session = coordinator.wait(
            coordinator.start(["song", "album"], ["monthly"], from_date=date(2024, 2, 1)),
            timeout=10,
        )
        self.assertEqual(session.total_periods, 2)
        self.assertEqual(
            session.errors,
            [
                ("2024-02", "song: song failed; album: album failed"),
                ("2024-03", "song: song failed; album: album failed"),
            ],
        )

    def test_periods_are_processed_oldest_first(self) -> None:
        plan = self._coordinator().plan(
            ("song",), ("weekly", "monthly"), date(2024, 2, 1), date(2024, 2, 29)
        )
        self.assertEqual(
            [item.period_key for item in plan],
            ["2024-W05", "2024-02", "2024-W06", "2024-W07", "2024-W08", "2024-W09"],
        )

    def test_unavailable_play_log_fails_the_session(self) -> None:
        coordinator = self._coordinator(play_log=UnavailablePlayLog())
        session = coordinator.progress(coordinator.start(["song"], ["weekly"]))

        self.assertEqual(session.status, "failed")
        self.assertIn("play log offline", session.failure)
        self.assertEqual(session.total_periods, 0)

    def test_empty_play_log_completes_immediately(self) -> None:
        coordinator = self._coordinator(play_log=MemoryPlayLog())
        session = coordinator.wait(coordinator.start(["song"], ["yearly"]), timeout=10)
        self.assertEqual((session.status, session.total_periods), ("completed", 0))

    def test_duplicate_start_returns_running_session(self) -> None:
        release = threading.Event()

        def generate_chart(chart_type, period_type, period_key, force):
            release.wait(timeout=10)
            return self.service.generate_chart(chart_type, period_type, period_key, force)

        coordinator = self._coordinator(generate_chart, workers=2)
        first = coordinator.start(["song"], ["weekly"])
        try:
            self.assertEqual(coordinator.start(["song", "album"], ["weekly"]), first)
            other = coordinator.start(["album"], ["monthly"])
            self.assertNotEqual(other, first)
            self.assertFalse(coordinator.discard(first))
        finally:
            release.set()
        self.assertEqual(coordinator.wait(first, timeout=10).status, "completed")
        self.assertEqual(coordinator.wait(other, timeout=10).status, "completed")

    def test_progress_is_a_snapshot(self) -> None:
        coordinator = self._coordinator()
        session_id = coordinator.start(["song"], ["weekly"])
        coordinator.wait(session_id, timeout=10)

        snapshot = coordinator.progress(session_id)
        snapshot.errors.append(("x", "y"))
        self.assertEqual(coordinator.progress(session_id).errors, [])
        self.assertEqual(snapshot.to_dict()["status"], "completed")

    def test_finished_sessions_expire(self) -> None:
        clock = FakeClock()
        coordinator = self._coordinator(session_ttl=10, cleanup_interval=0, clock=clock)
        session_id = coordinator.start(["song"], ["yearly"])
        coordinator.wait(session_id, timeout=10)

        clock.now += 11
        self.assertIsNone(coordinator.progress(session_id))

    def test_polled_sessions_stay_until_idle(self) -> None:
        clock = FakeClock()
        coordinator = self._coordinator(session_ttl=10, cleanup_interval=0, clock=clock)
        session_id = coordinator.start(["song"], ["yearly"])
        coordinator.wait(session_id, timeout=10)

        for _ in range(4):
            clock.now += 4
            self.assertIsNotNone(coordinator.progress(session_id))

        clock.now += 11
        self.assertIsNone(coordinator.progress(session_id))

    def test_discard(self) -> None:
        coordinator = self._coordinator()
        session_id = coordinator.start(["song"], ["yearly"])
        coordinator.wait(session_id, timeout=10)

        self.assertTrue(coordinator.discard(session_id))
        self.assertIsNone(coordinator.progress(session_id))
        self.assertFalse(coordinator.discard(session_id))

    def test_rejects_unknown_types(self) -> None:
        with self.assertRaises(ValueError):
            self.service.start_bulk(["artist"], ["weekly"])
        with self.assertRaises(ValueError):
            self.service.start_bulk(["song"], ["daily"])
        with self.assertRaises(ValueError):
            self.service.start_bulk(["song"], ["weekly"], date(2024, 3, 1), date(2024, 2, 1))


if __name__ == "__main__":
    unittest.main()
