import tempfile
import time
import unittest
from concurrent.futures import Future
from datetime import date
from pathlib import Path
from unittest import mock

from calsync.cache import SnapshotCache
from calsync.calendar_metadata import CalendarRegistry
from calsync.gateway import GatewayError, OfflineError
from calsync.history import CommandLog
from calsync.local_store import LocalStore
from calsync.models import SOURCE_MANUAL, SOURCE_REMOTE, CacheConfig, CalendarMetadata, Event, Routine, SyncRange
from calsync.reconciler import Reconciler
from calsync.state_store import StateStore

HOME = "https://dav.example.com/cal/home"
WORK = "https://dav.example.com/cal/work"
HOLIDAYS = "https://dav.example.com/subscribed/holidays"
RANGE = SyncRange(date(2026, 3, 1), date(2026, 3, 31))


class InlineExecutor:
    def submit(self, fn, *args):
        future: Future = Future()
        future.set_result(fn(*args))
        return future

    def shutdown(self, wait: bool = True) -> None:
        return None


class LocalStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.state_store = StateStore(str(Path(self.temp_dir.name) / "state.db"))
        self.calendars = CalendarRegistry(self.state_store)
        self.calendars.upsert(CalendarMetadata(url=HOME))
        self.calendars.upsert(CalendarMetadata(url=WORK))
        self.calendars.upsert(CalendarMetadata(url=HOLIDAYS, read_only=True, is_subscription=True))
        self.adapter = mock.Mock()
        self.adapter.create_event.return_value = "etag-1"
        self.adapter.update_event.return_value = "etag-2"
        self.history = CommandLog()
        self.store = LocalStore(
            self.state_store,
            self.calendars,
            history=self.history,
            adapter_provider=lambda: self.adapter,
            debounce_ms=10_000,
            executor=InlineExecutor(),
        )
        self.store.install_history_handlers()

    def tearDown(self) -> None:
        self.store.close()
        self.temp_dir.cleanup()

    def new_event(self, **kwargs) -> Event:
        values = {"id": "e1", "date": date(2026, 3, 2), "title": "Dentist", "calendar_ref": HOME}
        values.update(kwargs)
        return self.store.create_event(Event(**values))

    def test_create_is_immediate_and_pushed(self) -> None:
        created = self.new_event()
        self.assertEqual(self.store.get_event("e1").title, "Dentist")
        self.adapter.create_event.assert_called_once()
        stored = self.state_store.get_event(created.id)
        self.assertEqual(stored.external_uid, "e1")
        self.assertEqual(stored.etag, "etag-1")

    def test_read_only_and_local_calendars_not_pushed(self) -> None:
        self.new_event(id="ro", calendar_ref=HOLIDAYS)
        self.new_event(id="loc", calendar_ref="local-1")
        self.adapter.create_event.assert_not_called()

    def test_updates_are_coalesced(self) -> None:
        self.new_event()
        self.store.update_event("e1", {"title": "Dentist 1"})
        self.store.update_event("e1", {"title": "Dentist 2"})
        self.store.update_event("e1", {"start_time": "09:00"})
        self.assertEqual(self.store.pending_pushes, 1)
        self.adapter.update_event.assert_not_called()
        self.assertEqual(self.store.flush(), 1)
        self.adapter.update_event.assert_called_once()
        pushed = self.adapter.update_event.call_args.args[1]
        self.assertEqual((pushed.title, pushed.start_time), ("Dentist 2", "09:00"))
        self.assertEqual(self.store.pending_pushes, 0)

    def test_debounce_timer_fires(self) -> None:
        self.store.debounce_seconds = 0.05
        self.new_event()
        self.store.update_event("e1", {"title": "later"})
        deadline = time.monotonic() + 3
        while not self.adapter.update_event.called and time.monotonic() < deadline:
            time.sleep(0.02)
        self.adapter.update_event.assert_called_once()

    def test_push_failure_keeps_local_edit(self) -> None:
        self.new_event()
        self.adapter.update_event.side_effect = GatewayError("conflict", status=412)
        self.store.update_event("e1", {"title": "mine"})
        with self.assertLogs("calsync.local_store", level="WARNING"):
            self.store.flush()
        self.assertEqual(self.store.get_event("e1").title, "mine")

    def test_offline_push_logged_quietly(self) -> None:
        self.adapter.create_event.side_effect = OfflineError()
        self.new_event()
        self.assertEqual(self.store.get_event("e1").external_uid, "")

    def test_calendar_move_is_delete_plus_create(self) -> None:
        self.new_event()
        self.adapter.create_event.reset_mock()
        moved = self.store.update_event("e1", {"calendar_ref": WORK + "/"})
        self.assertEqual(moved.calendar_ref, WORK)
        self.adapter.delete_event.assert_called_once_with(HOME, "e1", "etag-1")
        self.assertEqual(self.adapter.create_event.call_args.args[0], WORK)

    def test_pushed_event_removed_on_server_is_deleted_by_full_fetch(self) -> None:
        self.new_event(id="mine")
        self.assertEqual(self.state_store.get_event("mine").source, SOURCE_REMOTE)
        self.assertEqual(self.store.get_event("mine").source, SOURCE_REMOTE)
        other = Event(id="x", date=date(2026, 3, 9), title="Other", external_uid="other", calendar_ref=HOME)
        deleted = Reconciler(self.state_store).delete_removed(HOME, [other], RANGE)
        self.assertEqual(deleted, 1)
        self.assertIsNone(self.state_store.get_event("mine"))

    def test_unpushed_event_stays_manual(self) -> None:
        self.adapter.create_event.side_effect = OfflineError()
        self.new_event()
        self.assertEqual(self.state_store.get_event("e1").source, SOURCE_MANUAL)

    def test_move_to_local_calendar_reverts_to_manual(self) -> None:
        self.new_event()
        moved = self.store.update_event("e1", {"calendar_ref": "local-1"})
        self.assertEqual(moved.source, SOURCE_MANUAL)
        stored = self.state_store.get_event("e1")
        self.assertEqual((stored.source, stored.external_uid), (SOURCE_MANUAL, ""))

    def test_delete_pushes_remote_delete(self) -> None:
        self.new_event()
        self.store.delete_event("e1")
        self.assertIsNone(self.store.get_event("e1"))
        self.assertIsNone(self.state_store.get_event("e1"))
        self.adapter.delete_event.assert_called_once_with(HOME, "e1", "etag-1")

    def test_server_load_replaces_in_range_and_keeps_outside(self) -> None:
        self.new_event(id="inside", calendar_ref="local-1")
        self.new_event(id="outside", date=date(2026, 5, 2), calendar_ref="local-1")
        server = Event(id="inside", date=date(2026, 3, 2), title="server copy", calendar_ref="local-1")
        self.store.apply_server_load(RANGE, [server], write_snapshot=False)
        self.assertEqual(self.store.get_event("inside").title, "server copy")
        self.assertIsNotNone(self.store.get_event("outside"))

    def test_deleted_during_load_is_not_resurrected(self) -> None:
        self.new_event()
        stale = self.state_store.list_events_in_range(RANGE.start, RANGE.end)
        self.store.delete_event("e1")
        self.store.apply_server_load(RANGE, stale, write_snapshot=False)
        self.assertIsNone(self.store.get_event("e1"))
        resurrected = stale[0].with_updates(id="fresh-id")
        self.store.apply_server_load(RANGE, [resurrected], write_snapshot=False)
        self.assertIsNone(self.store.get_event("fresh-id"))
        self.store.apply_server_load(RANGE, [], write_snapshot=False)
        self.assertFalse(self.store.is_tombstoned(stale[0]))

    def test_pending_edit_survives_reload(self) -> None:
        self.new_event()
        self.store.update_event("e1", {"title": "local draft"})
        server = self.state_store.get_event("e1").with_updates(title="server")
        self.store.apply_server_load(RANGE, [server], write_snapshot=False)
        self.assertEqual(self.store.get_event("e1").title, "local draft")

    def test_end_time_without_start_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            self.new_event(end_time="10:00")
        self.assertIsNone(self.state_store.get_event("e1"))
        self.new_event()
        with self.assertRaises(ValueError):
            self.store.update_event("e1", {"end_time": "10:00"})
        self.assertEqual(self.store.get_event("e1").end_time, "")
        self.assertEqual(self.state_store.get_event("e1").end_time, "")
        self.adapter.update_event.assert_not_called()

    def test_undo_redo_event_kinds(self) -> None:
        self.new_event(calendar_ref="local-1")
        after_create = self.store.events()
        self.assertTrue(self.history.undo())
        self.assertEqual(self.store.events(), [])
        self.assertTrue(self.history.redo())
        self.assertEqual(self.store.events(), after_create)

        self.store.update_event("e1", {"title": "Renamed", "start_time": "09:00", "end_time": "10:00"})
        after_update = self.store.events()
        self.history.undo()
        self.assertEqual(self.store.get_event("e1").title, "Dentist")
        self.history.redo()
        self.assertEqual(self.store.events(), after_update)

        self.store.delete_event("e1")
        self.history.undo()
        self.assertEqual(self.store.events(), after_update)
        self.history.redo()
        self.assertEqual(self.store.events(), [])

    def test_undo_redo_todo_toggle(self) -> None:
        todo = self.store.add_todo("Buy milk")
        self.store.toggle_todo(todo.id)
        after = self.store.todos()
        self.history.undo()
        self.assertFalse(self.store.todos()[0].completed)
        self.history.redo()
        self.assertEqual(self.store.todos(), after)

    def test_undo_redo_routine_completion(self) -> None:
        routine = self.store.add_routine(Routine(id="r1", name="Stretch", days=[1, 3]))
        self.store.toggle_routine_completion(routine.id, date(2026, 3, 2))
        self.assertEqual(len(self.store.completions()), 1)
        self.history.undo()
        self.assertEqual(self.store.completions(), [])
        self.history.redo()
        self.assertEqual(len(self.store.completions()), 1)

    def test_snapshot_round_trip(self) -> None:
        cache = SnapshotCache(self.state_store, CacheConfig(secret="s3cret"))
        self.store.snapshot_cache = cache
        self.store._principal = lambda: "https://dav.example.com:u"
        self.new_event(calendar_ref="local-1")
        self.store.add_todo("Buy milk")
        self.store.add_routine(Routine(id="r1", name="Stretch"))
        self.store.set_day_definition(date(2026, 3, 2), {"label": "holiday"})
        self.assertTrue(self.store.write_snapshot())

        fresh = LocalStore(self.state_store, self.calendars, snapshot_cache=cache, principal=lambda: "https://dav.example.com:u")
        self.assertTrue(fresh.restore_snapshot())
        self.assertEqual(fresh.events(), self.store.events())
        self.assertEqual(fresh.todos(), self.store.todos())
        self.assertEqual(fresh.routines(), self.store.routines())
        fresh.close()

    def test_missing_snapshot(self) -> None:
        self.assertFalse(self.store.restore_snapshot())


if __name__ == "__main__":
    unittest.main()
