import os
import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest import mock

from fastapi.testclient import TestClient

from booked.models import SourceEvent, SyncResult
from booked.web_admin import create_app
from fake_provider import FakeCalendarProvider


class WebAdminTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.config_path = str(Path(self.temp_dir.name) / "config.yaml")
        self.state_path = str(Path(self.temp_dir.name) / "state.db")
        env = mock.patch.dict(
            os.environ, {"BOOKED_CONFIG_PATH": self.config_path, "BOOKED_STATE_PATH": self.state_path}
        )
        env.start()
        self.addCleanup(env.stop)
        self.client = TestClient(create_app())
        self.context = self.client.app.state.context

        # Seed a non-empty password for masking/preserve tests.
        seed_payload = {
            "caldav": {"base_url": "https://dav.example.com", "username": "u", "password": "secret-pass"},
            "mirror": {"calendar_name": "Booked", "title": "Busy"},
            "sync": {"selected_calendar_ids": ["work"], "interval_seconds": 300, "timezone": "UTC"},
        }
        resp = self.client.put("/api/config", json={"payload": seed_payload})
        self.assertEqual(resp.status_code, 200)

        self.provider = FakeCalendarProvider("mirror-cal")
        start = datetime.now(timezone.utc) + timedelta(hours=2)
        self.provider.add_source(
            SourceEvent(calendar_id="work", uid="w-1", start=start, end=start + timedelta(hours=1)), name="Work"
        )
        self.provider.add_source(
            SourceEvent(calendar_id="home", uid="h-1", start=start, end=start + timedelta(hours=1)), name="Home"
        )

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def _with_provider(self):
        return mock.patch("booked.sync_engine.CalDAVService", return_value=self.provider)

    def test_healthz(self) -> None:
        resp = self.client.get("/healthz")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"status": "ok"})

    def test_config_has_masked_meta(self) -> None:
        resp = self.client.get("/api/config")
        self.assertEqual(resp.status_code, 200)
        data = resp.json()
        self.assertEqual(data["config"]["caldav"]["password"], "***")
        self.assertTrue(data["meta"]["caldav"]["password"]["is_masked"])

    def test_put_config_empty_secret_does_not_override(self) -> None:
        update = {"caldav": {"base_url": "https://dav-2.example.com", "password": ""}}
        resp = self.client.put("/api/config", json={"payload": update})
        self.assertEqual(resp.status_code, 200)
        config = resp.json()["config"]
        self.assertEqual(config["caldav"]["base_url"], "https://dav-2.example.com")
        self.assertEqual(config["caldav"]["password"], "secret-pass")

    def test_put_config_masked_secret_does_not_override(self) -> None:
        resp = self.client.put("/api/config", json={"payload": {"caldav": {"password": "***"}}})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["config"]["caldav"]["password"], "secret-pass")

    def test_put_config_non_secret_fields_merge(self) -> None:
        resp = self.client.put("/api/config", json={"payload": {"sync": {"debounce_seconds": 5}}})
        self.assertEqual(resp.status_code, 200)
        config = resp.json()["config"]
        self.assertEqual(config["sync"]["debounce_seconds"], 5.0)
        self.assertEqual(config["sync"]["interval_seconds"], 300)
        self.assertEqual(config["sync"]["selected_calendar_ids"], ["work"])

    def test_calendars_require_caldav_config(self) -> None:
        self.client.put("/api/config", json={"payload": {"caldav": {"base_url": ""}}})
        resp = self.client.get("/api/calendars")
        self.assertEqual(resp.status_code, 400)

    def test_calendars_exclude_mirror_and_mark_selection(self) -> None:
        with self._with_provider():
            resp = self.client.get("/api/calendars")
        self.assertEqual(resp.status_code, 200)
        data = resp.json()
        self.assertEqual(data["mirror_calendar_id"], "mirror-cal")
        rows = {row["calendar_id"]: row for row in data["calendars"]}
        self.assertEqual(set(rows), {"home", "work"})
        self.assertTrue(rows["work"]["selected"])
        self.assertFalse(rows["home"]["selected"])

    def test_calendar_listing_errors_become_400(self) -> None:
        with mock.patch("booked.sync_engine.CalDAVService", side_effect=RuntimeError("unreachable")):
            resp = self.client.get("/api/calendars")
        self.assertEqual(resp.status_code, 400)
        self.assertIn("unreachable", resp.json()["detail"])

    def test_put_selection_saves_and_schedules_debounced_sync(self) -> None:
        with mock.patch.object(self.context.scheduler.debounce, "trigger") as trigger:
            resp = self.client.put("/api/selection", json={"calendar_ids": ["work", "home", "work"]})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["calendar_ids"], ["work", "home"])
        trigger.assert_called_once_with(["work", "home"])
        self.assertEqual(self.client.get("/api/selection").json(), {"calendar_ids": ["work", "home"]})

    def test_sync_run_calls_sync_engine(self) -> None:
        fake_result = SyncResult(
            status="success",
            message="ok",
            duration_ms=42,
            trigger="manual",
            created=1,
            run_at=datetime(2026, 2, 27, 0, 0, 0, tzinfo=timezone.utc),
        )
        with mock.patch.object(self.context.sync_engine, "run_once", return_value=fake_result) as run_once:
            resp = self.client.post("/api/sync/run")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["result"]["created"], 1)
        run_once.assert_called_once_with(trigger="manual")

    def test_sync_run_mirrors_and_exposes_mappings(self) -> None:
        with self._with_provider():
            resp = self.client.post("/api/sync/run")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["result"]["status"], "success")

        mappings = self.client.get("/api/mappings").json()
        self.assertEqual(mappings["mirror_calendar_id"], "mirror-cal")
        self.assertEqual(list(mappings["mappings"]), ["work:w-1"])

        status = self.client.get("/api/sync/status").json()
        self.assertFalse(status["in_progress"])
        self.assertEqual(status["runs"][0]["created"], 1)

        created = self.client.get("/api/audit/events", params={"action": "mirror_created"}).json()["events"]
        self.assertEqual(len(created), 1)

    def test_mappings_empty_before_first_sync(self) -> None:
        resp = self.client.get("/api/mappings")
        self.assertEqual(resp.json(), {"mirror_calendar_id": "", "mappings": {}})

    def test_clear_mirror(self) -> None:
        with self._with_provider():
            self.client.post("/api/sync/run")
            resp = self.client.post("/api/mirror/clear")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["result"]["deleted"], 1)
        self.assertEqual(self.provider.mirrors, {})
        self.assertEqual(self.client.get("/api/mappings").json()["mappings"], {})


if __name__ == "__main__":
    unittest.main()
