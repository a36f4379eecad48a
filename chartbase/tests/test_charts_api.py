from __future__ import annotations

import tempfile
import unittest
from datetime import date, datetime, timezone
from pathlib import Path

from fastapi.testclient import TestClient

from chartbase.api.app import app
from chartbase.app_settings import load_settings
from chartbase.services.chart_service import ChartService, reset_chart_service
from chartbase.services.chart_store import MemoryChartStore
from chartbase.services.entity_directory import MemoryEntityDirectory
from chartbase.services.errors import SourceUnavailable
from chartbase.services.play_log import MemoryPlayLog

TODAY = date(2024, 3, 1)


class OfflinePlayLog(MemoryPlayLog):
    def count_plays_in_range(self, entity_class, start, end):
        raise SourceUnavailable("play log offline")


class ChartsApiTest(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        play_log = MemoryPlayLog()
        week7 = datetime(2024, 2, 14, 9, tzinfo=timezone.utc)
        for entity_id, count in {"A": 10, "B": 10, "C": 5}.items():
            for _ in range(count):
                play_log.add("song", entity_id, week7)
        self.service = self._install(play_log)
        self.client = TestClient(app)

    def tearDown(self) -> None:
        reset_chart_service()
        self.tmp.cleanup()

    def _install(self, play_log) -> ChartService:
        service = ChartService(
            store=MemoryChartStore(clock=lambda: TODAY),
            play_log=play_log,
            directory=MemoryEntityDirectory({"song": {"A": "a", "B": "b", "C": "c"}}),
            settings=load_settings(Path(self.tmp.name) / "settings.json"),
        )
        reset_chart_service(service)
        return service

    def test_generate_and_read_chart(self) -> None:
        response = self.client.post("/api/charts/generate/weekly/2024-W07")
        self.assertEqual(response.status_code, 200)
        entries = response.json()["charts"]["song"]["entries"]
        self.assertEqual(
            [(e["entity_id"], e["position"], e["play_count"]) for e in entries],
            [("A", 1, 10), ("B", 2, 10), ("C", 3, 5)],
        )

        response = self.client.get("/api/charts/song/weekly/2024-W07")
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["label"], "Feb 12 - Feb 18, 2024")
        self.assertTrue(body["is_finalized"])
        self.assertEqual([row["entity_id"] for row in body["rows"]], ["A", "B", "C"])
        self.assertEqual(body["rows"][0]["trend"]["kind"], "new-entry")

    def test_missing_chart_is_404(self) -> None:
        response = self.client.get("/api/charts/song/weekly/2024-W01")
        self.assertEqual(response.status_code, 404)

    def test_bad_input_is_400(self) -> None:
        self.assertEqual(self.client.post("/api/charts/generate/weekly/2024-W99").status_code, 400)
        self.assertEqual(self.client.post("/api/charts/generate/daily/2024-01-01").status_code, 400)
        self.assertEqual(self.client.get("/api/charts/artist/weekly/2024-W07").status_code, 400)

    def test_week_00_generation_is_400(self) -> None:
        response = self.client.post("/api/charts/generate/weekly/2023-W00")
        self.assertEqual(response.status_code, 400)
        self.assertIn("2022-W52", response.json()["detail"])

    def test_chart_index(self) -> None:
        self.client.post("/api/charts/generate/weekly/2024-W06")
        self.client.post("/api/charts/generate/weekly/2024-W07")

        body = self.client.get("/api/charts/song/weekly").json()
        self.assertEqual(body["total"], 2)
        self.assertEqual([c["period_key"] for c in body["charts"]], ["2024-W07", "2024-W06"])
        self.assertEqual(body["charts"][0]["top_entry"]["entity_id"], "A")
        self.assertEqual(body["charts"][0]["top_entry"]["name"], "a")
        self.assertIsNone(body["charts"][1]["top_entry"])

        self.assertEqual(self.client.get("/api/charts/album/yearly").json()["total"], 0)
        self.assertEqual(self.client.get("/api/charts/song/daily").status_code, 400)

    def test_unavailable_play_log_is_503(self) -> None:
        self._install(OfflinePlayLog())
        response = self.client.post("/api/charts/generate/weekly/2024-W07")
        self.assertEqual(response.status_code, 503)

    def test_preview(self) -> None:
        response = self.client.get("/api/charts/song/weekly/2024-W07/preview")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["entries"][0]["entity_id"], "A")
        self.assertIsNone(self.service.get_chart("song", "weekly", "2024-W07"))

    def test_period_by_date(self) -> None:
        response = self.client.get("/api/charts/periods/weekly/by-date", params={"date": "2023-01-01"})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["period_key"], "2022-W52")

    def test_navigation(self) -> None:
        self.client.post("/api/charts/generate/weekly/2024-W05")
        self.client.post("/api/charts/generate/weekly/2024-W07")

        body = self.client.get("/api/charts/song/weekly/2024-W07/navigation").json()
        self.assertEqual(body["previous_period_key"], "2024-W05")
        self.assertIsNone(body["next_period_key"])
        self.assertEqual(body["calendar_previous_key"], "2024-W06")
        self.assertEqual(body["calendar_next_key"], "2024-W08")

    def test_run_trend_and_most_periods(self) -> None:
        self.client.post("/api/charts/generate/weekly/2024-W07")

        run = self.client.get("/api/charts/song/entities/B/run").json()
        self.assertEqual((run["peak_position"], run["periods_charted"]), (2, 1))

        trend = self.client.get(
            "/api/charts/song/entities/B/trend", params={"period_key": "2024-W07"}
        ).json()
        self.assertEqual(trend["trend"]["label"], "new-entry")

        most = self.client.get("/api/charts/song/most-periods", params={"max_position": 1}).json()
        self.assertEqual([row["entity_id"] for row in most["entries"]], ["A"])

    def test_bulk_generation_endpoints(self) -> None:
        response = self.client.post(
            "/api/charts/generate-all",
            json={"chart_types": ["song"], "period_types": ["weekly"]},
        )
        self.assertEqual(response.status_code, 200)
        session_id = response.json()["session_id"]
        self.service.bulk.wait(session_id, timeout=10)

        progress = self.client.get(f"/api/charts/generate-all/{session_id}").json()
        self.assertEqual(progress["status"], "completed")
        self.assertEqual(progress["completed_periods"], progress["total_periods"])

        stream = self.client.get(f"/api/charts/generate-all/{session_id}/stream")
        self.assertEqual(stream.status_code, 200)
        self.assertIn('"type": "complete"', stream.text)

        self.assertEqual(self.client.delete(f"/api/charts/generate-all/{session_id}").status_code, 200)
        self.assertEqual(self.client.get(f"/api/charts/generate-all/{session_id}").status_code, 404)

    def test_bulk_generation_rejects_unknown_types(self) -> None:
        response = self.client.post("/api/charts/generate-all", json={"chart_types": ["artist"]})
        self.assertEqual(response.status_code, 400)

    def test_health(self) -> None:
        body = self.client.get("/health").json()
        self.assertEqual(body, {"status": "healthy", "store": "MemoryChartStore"})


if __name__ == "__main__":
    unittest.main()
