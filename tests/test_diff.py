import unittest
from datetime import datetime, timedelta, timezone

from booked.diff import diff_events
from booked.models import SourceEvent


START = datetime(2026, 3, 11, 9, 0, tzinfo=timezone.utc)


def _event(uid: str, calendar_id: str = "personal", **kwargs) -> SourceEvent:
    return SourceEvent(calendar_id=calendar_id, uid=uid, start=START, end=START + timedelta(hours=1), **kwargs)


class DiffTests(unittest.TestCase):
    def test_everything_new_is_created(self) -> None:
        events = [_event("a"), _event("b"), _event("c")]

        diff = diff_events(events, {})

        self.assertEqual([item.uid for item in diff.to_create], ["a", "b", "c"])
        self.assertEqual(diff.to_delete, [])
        self.assertEqual(diff.to_keep, [])
        self.assertFalse(diff.is_empty)

    def test_mapped_and_present_events_are_kept(self) -> None:
        diff = diff_events([_event("a")], {"personal:a": "m-1"})

        self.assertTrue(diff.is_empty)
        self.assertEqual([(item.source_key, item.mirrored_uid) for item in diff.to_keep], [("personal:a", "m-1")])

    def test_missing_source_is_deleted(self) -> None:
        diff = diff_events([_event("a")], {"personal:a": "m-1", "personal:b": "m-2"})

        self.assertEqual([(item.source_key, item.mirrored_uid) for item in diff.to_delete], [("personal:b", "m-2")])
        self.assertEqual(diff.to_create, [])

    def test_same_uid_in_different_calendars_are_distinct(self) -> None:
        diff = diff_events([_event("a", "work"), _event("a", "home")], {"work:a": "m-1"})

        self.assertEqual([item.key for item in diff.to_create], ["home:a"])

    def test_duplicate_source_keys_create_once(self) -> None:
        first = _event("a", summary="first")
        diff = diff_events([first, _event("a", summary="second")], {})

        self.assertEqual(len(diff.to_create), 1)
        self.assertIs(diff.to_create[0], first)

    def test_changed_times_do_not_recreate(self) -> None:
        moved = _event("a")
        moved.start = START + timedelta(days=2)

        diff = diff_events([moved], {"personal:a": "m-1"})

        self.assertTrue(diff.is_empty)
        self.assertEqual(len(diff.to_keep), 1)

    def test_recurrence_instances_have_their_own_keys(self) -> None:
        diff = diff_events(
            [_event("weekly", recurrence_id="20260311T090000Z"), _event("weekly", recurrence_id="20260318T090000Z")],
            {"personal:weekly:20260311T090000Z": "m-1"},
        )

        self.assertEqual([item.key for item in diff.to_create], ["personal:weekly:20260318T090000Z"])


if __name__ == "__main__":
    unittest.main()
