import tempfile
import threading
import unittest
from datetime import date
from pathlib import Path
from unittest import mock

from calsync.config_manager import ConfigManager
from calsync.gateway import GatewayError, OfflineError, UnauthorizedError
from calsync.models import CalendarMetadata, Event, SyncRange
from calsync.protocol import DeltaResult
from calsync.state_store import StateStore
from calsync.sync_engine import SyncEngine
from calsync.token_store import SyncTokenStore

SERVER = "https://dav.example.com"
HOME = f"{SERVER}/cal/home"
WORK = f"{SERVER}/cal/work"


def remote(uid: str, day: date = date(2026, 3, 2), **kwargs) -> Event:
    return Event(id=f"tmp-{uid}", date=day, title=kwargs.pop("title", uid), external_uid=uid, source="caldav", **kwargs)


class SyncEngineTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        root = Path(self.temp_dir.name)
        self.config_manager = ConfigManager(str(root / "config.yaml"))
        self.config_manager.update(
            {
                "caldav": {
                    "server_url": SERVER,
                    "username": "u",
                    "password": "p",
                    "enabled": True,
                    "selected_calendar_urls": [HOME],
                }
            }
        )
        self.store = StateStore(str(root / "state.db"))
        self.adapter = mock.Mock()
        self.adapter.fetch_sync_token.return_value = "token-1"
        self.adapter.fetch_events.return_value = []
        self.engine = SyncEngine(
            self.config_manager,
            self.store,
            adapter_factory=lambda config: self.adapter,
            today=lambda: date(2026, 3, 15),
        )
        self.tokens = SyncTokenStore(self.store, SERVER, "u")

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_full_fetch_then_token_saved(self) -> None:
        self.adapter.fetch_events.return_value = [remote("a"), remote("b")]
        result = self.engine.run_once(trigger="manual")
        self.assertEqual(result.status, "success")
        self.assertEqual(result.synced, 2)
        self.adapter.fetch_events.assert_called_once()
        window = self.adapter.fetch_events.call_args.args[1]
        self.assertEqual(window, SyncRange(date(2026, 2, 15), date(2026, 6, 15)))
        self.assertEqual(self.tokens.get(HOME), "token-1")
        self.assertTrue(self.config_manager.load().caldav.last_sync_at)
        self.assertEqual(self.store.recent_sync_runs()[0]["status"], "success")

    def test_delta_updates_only_changed_field(self) -> None:
        self.store.insert_event(
            Event(
                id="E1",
                date=date(2026, 3, 2),
                title="Meeting",
                start_time="09:00",
                end_time="10:00",
                external_uid="abc",
                calendar_ref=HOME,
                source="caldav",
            )
        )
        self.tokens.set(HOME, "token-0")
        token_at_merge = {}
        original_update = self.store.update_event_fields

        def spy(event_id, changes):
            token_at_merge["value"] = self.tokens.get(HOME)
            token_at_merge["changes"] = dict(changes)
            return original_update(event_id, changes)

        self.store.update_event_fields = spy
        self.adapter.fetch_delta.return_value = DeltaResult(
            events=[remote("abc", title="Meeting", start_time="09:00", end_time="11:00")],
            sync_token="token-2",
        )
        result = self.engine.run_once(trigger="periodic")
        self.assertEqual(result.status, "success")
        self.adapter.fetch_events.assert_not_called()
        self.assertEqual(token_at_merge, {"value": "token-0", "changes": {"end_time": "11:00"}})
        stored = self.store.get_event("E1")
        self.assertEqual(stored.end_time, "11:00")
        self.assertEqual(self.tokens.get(HOME), "token-2")

    def test_delta_never_deletes(self) -> None:
        self.adapter.fetch_events.return_value = [remote("a"), remote("b")]
        self.engine.run_once()
        self.adapter.fetch_delta.return_value = DeltaResult(events=[remote("a")], sync_token="token-2")
        result = self.engine.run_once()
        self.assertEqual(result.deleted, 0)
        self.assertIsNotNone(self.store.find_by_uid("b", HOME))

    def test_delta_failure_falls_back_to_full(self) -> None:
        self.tokens.set(HOME, "stale")
        self.adapter.fetch_delta.side_effect = GatewayError("token invalid", code="HTTP_ERROR", status=403)
        self.adapter.fetch_events.return_value = [remote("a")]
        with self.assertLogs("calsync.sync_engine", level="WARNING"):
            result = self.engine.run_once()
        self.assertEqual(result.status, "success")
        self.adapter.fetch_events.assert_called_once()
        self.assertEqual(self.tokens.get(HOME), "token-1")

    def test_delta_with_deletions_falls_back_to_full(self) -> None:
        self.adapter.fetch_events.return_value = [remote("a"), remote("b")]
        self.engine.run_once()
        self.adapter.fetch_events.reset_mock()
        self.adapter.fetch_delta.return_value = DeltaResult(events=[], sync_token="token-9", has_deletions=True)
        self.adapter.fetch_events.return_value = [remote("a")]
        result = self.engine.run_once()
        self.adapter.fetch_events.assert_called_once()
        self.assertEqual(result.deleted, 1)

    def test_failed_merge_does_not_advance_token(self) -> None:
        self.tokens.set(HOME, "token-0")
        self.adapter.fetch_delta.return_value = DeltaResult(events=[remote("a")], sync_token="token-2")
        with mock.patch("calsync.sync_engine.Reconciler.merge", side_effect=RuntimeError("disk full")):
            with self.assertLogs("calsync.sync_engine", level="WARNING"):
                result = self.engine.run_once()
        self.assertEqual(result.status, "error")
        self.assertEqual(self.tokens.get(HOME), "token-0")

    def test_one_calendar_failure_does_not_stop_others(self) -> None:
        self.config_manager.update({"caldav": {"selected_calendar_urls": [HOME, WORK]}})

        def fetch(ref, window, default_color):
            if ref == HOME:
                raise GatewayError("boom", code="HTTP_ERROR", status=500)
            return [remote("w")]

        self.adapter.fetch_events.side_effect = fetch
        with self.assertLogs("calsync.sync_engine", level="WARNING"):
            result = self.engine.run_once()
        self.assertEqual(result.status, "success")
        self.assertEqual(result.calendars_failed, 1)
        self.assertIsNotNone(self.store.find_by_uid("w", WORK))
        actions = [item["action"] for item in self.store.recent_audit_events()]
        self.assertIn("calendar_error", actions)

    def test_unauthorized_aborts_remaining_calendars(self) -> None:
        self.config_manager.update({"caldav": {"selected_calendar_urls": [HOME, WORK]}})
        self.adapter.fetch_events.side_effect = UnauthorizedError()
        with self.assertLogs("calsync.sync_engine", level="WARNING"):
            result = self.engine.run_once()
        self.assertEqual(result.status, "error")
        self.assertEqual(self.adapter.fetch_events.call_count, 1)
        self.assertEqual(self.store.recent_audit_events()[0]["action"], "run_error")

    def test_offline_is_quiet(self) -> None:
        self.adapter.fetch_events.side_effect = OfflineError()
        result = self.engine.run_once()
        self.assertEqual(result.status, "error")
        self.assertTrue(result.message.startswith("Network is offline"))

    def test_disabled_or_unselected_skips(self) -> None:
        self.config_manager.update({"caldav": {"selected_calendar_urls": []}})
        self.assertEqual(self.engine.run_once().status, "skipped")
        self.config_manager.update({"caldav": {"enabled": False, "selected_calendar_urls": [HOME]}})
        self.assertEqual(self.engine.run_once().status, "skipped")
        self.assertEqual(self.store.recent_sync_runs(), [])

    def test_overlapping_pass_is_skipped(self) -> None:
        entered = threading.Event()
        release = threading.Event()

        def slow_fetch(ref, window, default_color):
            entered.set()
            release.wait(timeout=5)
            return []

        self.adapter.fetch_events.side_effect = slow_fetch
        worker = threading.Thread(target=self.engine.run_once)
        worker.start()
        self.assertTrue(entered.wait(timeout=5))
        self.assertTrue(self.engine.in_progress)
        second = self.engine.run_once(trigger="scroll")
        release.set()
        worker.join(timeout=5)
        self.assertEqual(second.status, "skipped")
        self.assertFalse(self.engine.in_progress)

    def test_force_full_ignores_token(self) -> None:
        self.tokens.set(HOME, "token-0")
        self.engine.run_once(sync_range=SyncRange(date(2026, 1, 1), date(2026, 1, 31)), force_full=True)
        self.adapter.fetch_delta.assert_not_called()
        self.assertEqual(self.adapter.fetch_events.call_args.args[1], SyncRange(date(2026, 1, 1), date(2026, 1, 31)))

    def test_subscription_calendar_uses_feed(self) -> None:
        feed_url = f"{SERVER}/subscribed/holidays"
        self.config_manager.update({"caldav": {"selected_calendar_urls": [feed_url]}})
        self.engine.calendars.upsert(
            CalendarMetadata(url=feed_url, is_subscription=True, read_only=True, type="subscription")
        )
        feed = mock.Mock()
        feed.fetch.return_value = [remote("h1")]
        self.engine._subscription_feed = feed
        result = self.engine.run_once()
        self.assertEqual(result.status, "success")
        self.adapter.fetch_events.assert_not_called()
        self.assertIsNotNone(self.store.find_by_uid("h1", feed_url))

    def test_unavailable_feed_skips_calendar(self) -> None:
        feed_url = f"{SERVER}/subscribed/holidays"
        self.config_manager.update({"caldav": {"selected_calendar_urls": [feed_url]}})
        self.engine.calendars.upsert(CalendarMetadata(url=feed_url, is_subscription=True, type="subscription"))
        feed = mock.Mock()
        feed.fetch.return_value = None
        self.engine._subscription_feed = feed
        with self.assertLogs("calsync.sync_engine", level="WARNING"):
            result = self.engine.run_once()
        self.assertEqual(result.status, "error")
        self.assertEqual(result.calendars_failed, 1)

    def test_success_refreshes_local_store(self) -> None:
        local_store = mock.Mock()
        self.engine.local_store = local_store
        self.adapter.fetch_events.return_value = [remote("a")]
        self.engine.run_once()
        sync_range, events = local_store.apply_server_load.call_args.args
        self.assertEqual(sync_range, SyncRange(date(2026, 2, 15), date(2026, 6, 15)))
        self.assertEqual([event.external_uid for event in events], ["a"])


if __name__ == "__main__":
    unittest.main()
