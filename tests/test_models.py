import unittest
from dataclasses import asdict
from datetime import date, datetime, time, timezone

from calsync.models import (
    AppConfig,
    CalendarMetadata,
    Event,
    SyncRange,
    SyncResult,
    add_months,
    calendar_path_key,
    default_full_window,
    normalize_calendar_ref,
    normalize_time,
    parse_iso_datetime,
    strip_etag,
)


class ModelTests(unittest.TestCase):
    def test_normalize_time(self) -> None:
        self.assertEqual(normalize_time("09:30"), "09:30")
        self.assertEqual(normalize_time("09:30:15"), "09:30")
        self.assertEqual(normalize_time(time(7, 5)), "07:05")
        self.assertEqual(normalize_time(None), "")
        self.assertEqual(normalize_time("  "), "")
        with self.assertRaises(ValueError):
            normalize_time("25:00")

    def test_calendar_ref_normalization(self) -> None:
        self.assertEqual(normalize_calendar_ref("https://dav.example.com/cal/work/"), "https://dav.example.com/cal/work")
        self.assertEqual(normalize_calendar_ref(None), "")
        self.assertEqual(
            calendar_path_key("https://dav.example.com/cal/my%20work/"),
            calendar_path_key("https://other-host.example.com/cal/my work"),
        )

    def test_event_from_dict_drops_non_increasing_end_date(self) -> None:
        event = Event.from_dict({"id": "e1", "date": "2026-03-02", "end_date": "2026-03-02", "etag": '"abc"'})
        self.assertIsNone(event.end_date)
        self.assertTrue(event.all_day)
        self.assertEqual(event.etag, "abc")

    def test_event_requires_date(self) -> None:
        with self.assertRaises(ValueError):
            Event.from_dict({"id": "e1", "title": "no date"})

    def test_event_overlaps_multi_day(self) -> None:
        event = Event(id="e1", date=date(2026, 3, 2), end_date=date(2026, 3, 4))
        self.assertTrue(event.overlaps(date(2026, 3, 4), date(2026, 3, 10)))
        self.assertFalse(event.overlaps(date(2026, 3, 5), date(2026, 3, 10)))
        self.assertEqual(event.last_day, date(2026, 3, 4))

    def test_with_updates_does_not_touch_original(self) -> None:
        event = Event(id="e1", date=date(2026, 3, 2), extensions=["X-A:1"])
        copy = event.with_updates(title="changed")
        copy.extensions.append("X-B:2")
        self.assertEqual(event.title, "")
        self.assertEqual(event.extensions, ["X-A:1"])

    def test_strip_etag(self) -> None:
        self.assertEqual(strip_etag('W/"123"'), "123")
        self.assertEqual(strip_etag('"abc"'), "abc")
        self.assertEqual(strip_etag(None), "")

    def test_sync_range_rejects_inverted(self) -> None:
        with self.assertRaises(ValueError):
            SyncRange(date(2026, 3, 2), date(2026, 3, 1))
        self.assertEqual(
            SyncRange(date(2026, 3, 1), date(2026, 3, 2)).to_dict(),
            {"start": "2026-03-01", "end": "2026-03-02"},
        )

    def test_add_months_clamps_day(self) -> None:
        self.assertEqual(add_months(date(2026, 1, 31), 1), date(2026, 2, 28))
        self.assertEqual(add_months(date(2026, 3, 15), -3), date(2025, 12, 15))
        self.assertEqual(add_months(date(2026, 11, 30), 2), date(2027, 1, 30))

    def test_default_full_window(self) -> None:
        window = default_full_window(date(2026, 5, 10), 1, 3)
        self.assertEqual(window.start, date(2026, 4, 10))
        self.assertEqual(window.end, date(2026, 8, 10))

    def test_sync_result_dict_carries_counts(self) -> None:
        payload = SyncResult("success", "", 1, 7, 2, "manual").to_dict()
        self.assertEqual((payload["synced"], payload["deleted"]), (7, 2))
        self.assertNotIn("legacy_count", payload)

    def test_caldav_config_has_no_interval_field(self) -> None:
        config = AppConfig.from_dict({"caldav": {"server_url": "https://x", "sync_interval_minutes": 5}})
        self.assertNotIn("sync_interval_minutes", asdict(config.caldav))
        self.assertEqual(config.caldav.server_url, "https://x")

    def test_calendar_metadata_unknown_type(self) -> None:
        metadata = CalendarMetadata.from_dict({"url": "https://x/cal/", "type": "weird"})
        self.assertEqual(metadata.type, "caldav")
        self.assertEqual(metadata.url, "https://x/cal")

    def test_app_config_selected_urls_normalized(self) -> None:
        config = AppConfig.from_dict({"caldav": {"selected_calendar_urls": ["https://x/a/", "", "https://x/b"]}})
        self.assertEqual(config.caldav.selected_calendar_urls, ["https://x/a", "https://x/b"])

    def test_parse_iso_datetime_zulu(self) -> None:
        parsed = parse_iso_datetime("2026-03-01T10:00:00Z")
        self.assertEqual(parsed, datetime(2026, 3, 1, 10, 0, tzinfo=timezone.utc))


if __name__ == "__main__":
    unittest.main()
