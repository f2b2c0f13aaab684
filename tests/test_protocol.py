import unittest
from datetime import date
from unittest import mock

from calsync.ics_codec import event_to_ics
from calsync.models import Event, SyncRange
from calsync.protocol import ProtocolAdapter, classify_calendar

RANGE = SyncRange(date(2026, 3, 1), date(2026, 3, 31))


def _object(uid: str, day: date, etag: str = '"e1"') -> dict:
    event = Event(id=uid, date=day, title=uid, external_uid=uid)
    return {"href": f"/cal/{uid}.ics", "etag": etag, "data": event_to_ics(event)}


class ClassifyCalendarTests(unittest.TestCase):
    def test_subscription_and_read_only(self) -> None:
        metadata = classify_calendar("https://dav.example.com/subscribed/holidays/")
        self.assertTrue(metadata.is_subscription)
        self.assertTrue(metadata.read_only)
        self.assertEqual(metadata.type, "subscription")
        self.assertEqual(metadata.url, "https://dav.example.com/subscribed/holidays")

    def test_ics_url_is_subscription_but_writable_flag_off(self) -> None:
        metadata = classify_calendar("https://example.com/feeds/team.ics")
        self.assertTrue(metadata.is_subscription)
        self.assertFalse(metadata.read_only)

    def test_shared_segment(self) -> None:
        metadata = classify_calendar("https://dav.example.com/cal/" + "ab" * 32, display_name="Shared")
        self.assertTrue(metadata.is_shared)
        self.assertEqual(metadata.display_name, "Shared")
        self.assertFalse(classify_calendar("https://dav.example.com/cal/home").is_shared)


class ProtocolAdapterTests(unittest.TestCase):
    def setUp(self) -> None:
        self.gateway = mock.Mock()
        self.adapter = ProtocolAdapter(self.gateway)

    def test_discover_calendars(self) -> None:
        self.gateway.call.return_value = {
            "calendars": [
                {"url": "https://dav.example.com/cal/home/", "displayName": "Home", "color": "#ff0000"},
                {"displayName": "broken"},
            ]
        }
        calendars = self.adapter.discover_calendars()
        self.assertEqual(len(calendars), 1)
        self.assertEqual(calendars[0].url, "https://dav.example.com/cal/home")
        self.assertEqual(calendars[0].color, "#ff0000")

    def test_fetch_events_decodes_and_strips_etag(self) -> None:
        self.gateway.call.return_value = {"objects": [_object("a", date(2026, 3, 2)), _object("b", date(2026, 5, 2))]}
        events = self.adapter.fetch_events("https://dav.example.com/cal/home/", RANGE)
        self.gateway.call.assert_called_once_with(
            "fetchEvents", "https://dav.example.com/cal/home", {"start": "2026-03-01", "end": "2026-03-31"}
        )
        self.assertEqual([event.external_uid for event in events], ["a"])
        self.assertEqual(events[0].etag, "e1")
        self.assertEqual(events[0].source, "caldav")
        self.assertEqual(events[0].calendar_ref, "https://dav.example.com/cal/home")

    def test_unreadable_object_skipped(self) -> None:
        self.gateway.call.return_value = {"objects": [{"href": "x", "data": "garbage"}, _object("a", date(2026, 3, 2))]}
        with self.assertLogs("calsync.protocol", level="WARNING"):
            events = self.adapter.fetch_events("https://dav.example.com/cal", RANGE)
        self.assertEqual(len(events), 1)

    def test_fetch_delta(self) -> None:
        self.gateway.call.return_value = {
            "objects": [_object("a", date(2026, 3, 2))],
            "syncToken": "t2",
            "hasDeletions": True,
        }
        delta = self.adapter.fetch_delta("https://dav.example.com/cal", "t1", RANGE)
        self.gateway.call.assert_called_once_with("syncCollection", "https://dav.example.com/cal", {"syncToken": "t1"})
        self.assertEqual(delta.sync_token, "t2")
        self.assertTrue(delta.has_deletions)
        self.assertEqual(len(delta.events), 1)

    def test_fetch_sync_token_missing(self) -> None:
        self.gateway.call.return_value = {}
        self.assertIsNone(self.adapter.fetch_sync_token("https://dav.example.com/cal"))

    def test_create_event_uses_local_id_as_uid(self) -> None:
        self.gateway.call.return_value = {"etag": '"new"'}
        event = Event(id="local-1", date=date(2026, 3, 2), title="x")
        etag = self.adapter.create_event("https://dav.example.com/cal", event)
        self.assertEqual(etag, "new")
        action, ref, payload = self.gateway.call.call_args.args
        self.assertEqual(action, "createEvent")
        self.assertEqual(payload["uid"], "local-1")
        self.assertIn("UID:local-1", payload["ics"])

    def test_update_requires_uid(self) -> None:
        with self.assertRaises(ValueError):
            self.adapter.update_event("https://dav.example.com/cal", Event(id="x", date=date(2026, 3, 2)))

    def test_update_sends_bare_etag(self) -> None:
        self.gateway.call.return_value = {"etag": "e2"}
        event = Event(id="x", date=date(2026, 3, 2), external_uid="abc")
        self.assertEqual(self.adapter.update_event("https://dav.example.com/cal", event, '"e1"'), "e2")
        self.assertEqual(self.gateway.call.call_args.args[2]["etag"], "e1")

    def test_create_calendar_marks_app_created(self) -> None:
        self.gateway.call.return_value = {"calendarUrl": "https://dav.example.com/cal/new/", "displayName": "New"}
        metadata = self.adapter.create_calendar("New", "#00ff00")
        self.assertTrue(metadata.created_from_app)
        self.assertEqual(metadata.url, "https://dav.example.com/cal/new")
        self.assertEqual(metadata.color, "#00ff00")


if __name__ == "__main__":
    unittest.main()
