import sqlite3
import tempfile
import unittest
from pathlib import Path

from booked.state_store import StateStore


class StateStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.db_path = Path(self.temp_dir.name) / "nested" / "state.db"
        self.store = StateStore(str(self.db_path))

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_creates_parent_directory(self) -> None:
        self.assertTrue(self.db_path.exists())

    def test_mappings_are_scoped_per_mirror_calendar(self) -> None:
        self.store.add_mapping("mirror-a", "personal:1", "m-1")
        self.store.add_mapping("mirror-b", "personal:1", "m-9")

        self.assertEqual(self.store.load_mappings("mirror-a"), {"personal:1": "m-1"})
        self.assertEqual(self.store.load_mappings("mirror-b"), {"personal:1": "m-9"})
        self.assertEqual(self.store.load_mappings("unknown"), {})

    def test_add_mapping_replaces_existing_uid(self) -> None:
        self.store.add_mapping("mirror", "personal:1", "m-1")
        self.store.add_mapping("mirror", "personal:1", "m-2")

        self.assertEqual(self.store.load_mappings("mirror"), {"personal:1": "m-2"})

    def test_save_mappings_replaces_whole_set(self) -> None:
        self.store.add_mapping("mirror", "personal:1", "m-1")
        self.store.save_mappings("mirror", {"personal:2": "m-2", "work:3": "m-3"})

        self.assertEqual(self.store.load_mappings("mirror"), {"personal:2": "m-2", "work:3": "m-3"})

    def test_remove_and_clear(self) -> None:
        self.store.save_mappings("mirror", {"personal:1": "m-1", "personal:2": "m-2"})
        self.store.remove_mapping("mirror", "personal:1")
        self.assertEqual(self.store.load_mappings("mirror"), {"personal:2": "m-2"})

        self.store.clear_mappings("mirror")
        self.assertEqual(self.store.load_mappings("mirror"), {})

    def test_unreadable_mapping_table_loads_as_empty(self) -> None:
        self.store.add_mapping("mirror", "personal:1", "m-1")
        with sqlite3.connect(self.db_path) as conn:
            conn.execute("DROP TABLE mirror_mappings")

        with self.assertLogs("booked.state_store", level="WARNING"):
            self.assertEqual(self.store.load_mappings("mirror"), {})

    def test_corrupt_database_file_is_moved_aside(self) -> None:
        broken = Path(self.temp_dir.name) / "broken" / "state.db"
        broken.parent.mkdir()
        broken.write_bytes(b"this is not sqlite" * 100)

        with self.assertLogs("booked.state_store", level="WARNING"):
            store = StateStore(str(broken))

        self.assertEqual(store.load_mappings("mirror"), {})
        store.add_mapping("mirror", "personal:1", "m-1")
        self.assertEqual(store.load_mappings("mirror"), {"personal:1": "m-1"})
        kept_aside = [path.name for path in broken.parent.iterdir() if ".corrupt-" in path.name]
        self.assertEqual(len(kept_aside), 1)
        self.assertTrue(kept_aside[0].startswith("state.db.corrupt-"))

    def test_mapping_calendars_are_recorded(self) -> None:
        self.store.add_mapping("mirror", "work:team:1", "m-1", "work:team")
        self.store.save_mappings(
            "other", {"home:2": "m-2", "home:3": "m-3"}, source_calendars={"home:2": "home"}
        )

        self.assertEqual(self.store.load_mapping_calendars("mirror"), {"work:team:1": "work:team"})
        self.assertEqual(self.store.load_mapping_calendars("other"), {"home:2": "home"})
        self.assertEqual(self.store.load_mappings("other"), {"home:2": "m-2", "home:3": "m-3"})

    def test_mapping_table_without_calendar_column_is_upgraded(self) -> None:
        legacy = Path(self.temp_dir.name) / "legacy.db"
        with sqlite3.connect(legacy) as conn:
            conn.execute(
                """
                CREATE TABLE mirror_mappings (
                    mirror_calendar_id TEXT NOT NULL,
                    source_key TEXT NOT NULL,
                    mirrored_uid TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    PRIMARY KEY (mirror_calendar_id, source_key)
                )
                """
            )
            conn.execute("INSERT INTO mirror_mappings VALUES ('mirror', 'home:1', 'm-1', '2026-01-01')")

        store = StateStore(str(legacy))
        store.add_mapping("mirror", "home:2", "m-2", "home")

        self.assertEqual(store.load_mappings("mirror"), {"home:1": "m-1", "home:2": "m-2"})
        self.assertEqual(store.load_mapping_calendars("mirror"), {"home:2": "home"})

    def test_sync_runs_newest_first(self) -> None:
        self.store.record_sync_run(trigger="manual", status="success", message="one", duration_ms=5, created=2)
        run_id = self.store.record_sync_run(
            trigger="selection", status="partial", message="two", duration_ms=7, created=1, failed=1
        )

        runs = self.store.recent_sync_runs(limit=10)

        self.assertEqual([run["message"] for run in runs], ["two", "one"])
        self.assertEqual(runs[0]["id"], run_id)
        self.assertEqual((runs[0]["created"], runs[0]["failed"]), (1, 1))
        self.assertEqual(len(self.store.recent_sync_runs(limit=1)), 1)

    def test_audit_events_filter_by_action(self) -> None:
        self.store.record_audit_event(calendar_id="mirror", uid="m-1", action="mirror_created", details={"a": 1})
        self.store.record_audit_event(calendar_id="mirror", uid="m-2", action="delete_failed", details={"error": "x"})

        everything = self.store.recent_audit_events()
        failures = self.store.recent_audit_events(action="delete_failed")

        self.assertEqual([item["uid"] for item in everything], ["m-2", "m-1"])
        self.assertEqual(len(failures), 1)
        self.assertEqual(failures[0]["details"], {"error": "x"})
        self.assertIsNone(failures[0]["run_id"])


if __name__ == "__main__":
    unittest.main()
