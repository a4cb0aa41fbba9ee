import unittest
from datetime import date, datetime, timedelta, timezone

from booked.window import compute_window_days, planning_window


class WindowTests(unittest.TestCase):
    def test_early_in_month_covers_rest_of_month_only(self) -> None:
        self.assertEqual(compute_window_days(date(2026, 3, 10)), 22)
        self.assertEqual(compute_window_days(date(2026, 3, 1)), 31)

    def test_late_in_month_adds_following_month(self) -> None:
        # Today counts as a whole day: Oct 17 leaves 15 days, then all 30 of November.
        self.assertEqual(compute_window_days(date(2026, 10, 17)), 15 + 30)
        self.assertEqual(compute_window_days(date(2026, 4, 30)), 1 + 31)

    def test_december_rolls_into_january_of_next_year(self) -> None:
        self.assertEqual(compute_window_days(date(2026, 12, 20)), 12 + 31)

    def test_february_lengths_follow_leap_years(self) -> None:
        self.assertEqual(compute_window_days(date(2028, 1, 20)), 12 + 29)
        self.assertEqual(compute_window_days(date(2027, 1, 20)), 12 + 28)

    def test_threshold_is_configurable(self) -> None:
        self.assertEqual(compute_window_days(date(2026, 10, 17), threshold_days=0), 15)
        self.assertEqual(compute_window_days(date(2026, 3, 10), threshold_days=30), 22 + 30)

    def test_accepts_datetimes(self) -> None:
        now = datetime(2026, 10, 17, 23, 59, tzinfo=timezone.utc)
        self.assertEqual(compute_window_days(now), 45)

    def test_planning_window_starts_at_now(self) -> None:
        now = datetime(2026, 10, 17, 8, 30, tzinfo=timezone.utc)
        start, end = planning_window(now)
        self.assertEqual(start, now)
        self.assertEqual(end, now + timedelta(days=45))

    def test_planning_window_assumes_utc_for_naive_now(self) -> None:
        start, _ = planning_window(datetime(2026, 3, 10, 9, 0))
        self.assertEqual(start.tzinfo, timezone.utc)


if __name__ == "__main__":
    unittest.main()
