from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import asdict, replace
from datetime import date
from typing import Any, Callable

from calsync.cache import CORE_SNAPSHOT, SnapshotCache
from calsync.calendar_metadata import CalendarRegistry
from calsync.gateway import GatewayError, OfflineError
from calsync.history import CommandLog
from calsync.models import (
    ACTION_CREATE,
    ACTION_DELETE,
    ACTION_TOGGLE,
    ACTION_UPDATE,
    CATEGORY_EVENT,
    CATEGORY_ROUTINE,
    CATEGORY_TODO,
    DEFAULT_EVENT_COLOR,
    SOURCE_MANUAL,
    SOURCE_REMOTE,
    Event,
    HistoryAction,
    Routine,
    RoutineCompletion,
    SyncRange,
    Todo,
    new_local_id,
    normalize_calendar_ref,
    normalize_time,
    parse_iso_date,
)
from calsync.protocol import ProtocolAdapter
from calsync.state_store import StateStore

logger = logging.getLogger(__name__)

EVENT_EDITABLE_FIELDS = {"date", "end_date", "title", "memo", "start_time", "end_time", "color", "calendar_ref"}


def _todo_from_dict(data: dict[str, Any]) -> Todo:
    return Todo(
        id=str(data["id"]),
        title=str(data.get("title", "")),
        completed=bool(data.get("completed", False)),
        date=parse_iso_date(data.get("date")),
        position=int(data.get("position", 0)),
    )


def _routine_from_dict(data: dict[str, Any]) -> Routine:
    return Routine(
        id=str(data["id"]),
        name=str(data.get("name", "")),
        icon=str(data.get("icon", "")),
        color=str(data.get("color") or DEFAULT_EVENT_COLOR),
        days=[int(x) for x in data.get("days") or []],
    )


class LocalStore:
    """In-memory working copy that every user mutation hits first.

    Mutations return immediately. Remote writes run in the background:
    creates and deletes are dispatched at once, updates to the same event are
    coalesced and pushed after ``debounce_ms`` of quiet. Background failures are
    logged and never roll back the local state.
    """

    def __init__(
        self,
        state_store: StateStore,
        calendars: CalendarRegistry,
        history: CommandLog | None = None,
        adapter_provider: Callable[[], ProtocolAdapter] | None = None,
        snapshot_cache: SnapshotCache | None = None,
        principal: Callable[[], str] | None = None,
        debounce_ms: int = 1000,
        executor: ThreadPoolExecutor | None = None,
    ) -> None:
        self.state_store = state_store
        self.calendars = calendars
        self.history = history or CommandLog()
        self.adapter_provider = adapter_provider
        self.snapshot_cache = snapshot_cache
        self._principal = principal or (lambda: "")
        self.debounce_seconds = max(0, debounce_ms) / 1000.0
        self._executor = executor or ThreadPoolExecutor(max_workers=2, thread_name_prefix="calsync-push")
        self._lock = threading.RLock()
        self._events: dict[str, Event] = {}
        self._todos: dict[str, Todo] = {}
        self._routines: dict[str, Routine] = {}
        self._completions: dict[tuple[str, date], RoutineCompletion] = {}
        self._day_definitions: dict[str, Any] = {}
        self._pending: dict[str, threading.Timer] = {}
        self._tombstones: dict[str, Event] = {}

    # Reads

    def events(self) -> list[Event]:
        with self._lock:
            return sorted((e.clone() for e in self._events.values()), key=lambda e: (e.date, e.start_time, e.id))

    def events_in_range(self, start: date, end: date) -> list[Event]:
        return [event for event in self.events() if event.overlaps(start, end)]

    def get_event(self, event_id: str) -> Event | None:
        with self._lock:
            event = self._events.get(event_id)
            return event.clone() if event else None

    def todos(self) -> list[Todo]:
        with self._lock:
            return sorted((t.clone() for t in self._todos.values()), key=lambda t: (t.position, t.id))

    def routines(self) -> list[Routine]:
        with self._lock:
            return [r.clone() for r in self._routines.values()]

    def completions(self) -> list[RoutineCompletion]:
        with self._lock:
            return [replace(c) for c in self._completions.values()]

    @property
    def pending_pushes(self) -> int:
        with self._lock:
            return len(self._pending)

    def is_tombstoned(self, event: Event) -> bool:
        with self._lock:
            if event.id in self._tombstones or event.external_uid in self._tombstones:
                return True
            return bool(event.external_uid) and any(
                t.external_uid == event.external_uid for t in self._tombstones.values()
            )

    # Loading

    def load_range(self, sync_range: SyncRange, write_snapshot: bool = False) -> None:
        self.apply_server_load(
            sync_range,
            self.state_store.list_events_in_range(sync_range.start, sync_range.end),
            write_snapshot=write_snapshot,
        )

    def apply_server_load(self, sync_range: SyncRange, loaded: list[Event], write_snapshot: bool = True) -> None:
        """Replace in-range events with ``loaded``.

        Events outside the range are kept. Events deleted locally while the load
        was in flight stay deleted. Events with a pending push keep their local
        version.
        """
        with self._lock:
            kept = {
                event_id: event
                for event_id, event in self._events.items()
                if not event.overlaps(sync_range.start, sync_range.end) or event_id in self._pending
            }
            seen_ids: set[str] = set()
            seen_uids: set[str] = set()
            for event in loaded:
                seen_ids.add(event.id)
                if event.external_uid:
                    seen_uids.add(event.external_uid)
                if self.is_tombstoned(event) or event.id in kept:
                    continue
                kept[event.id] = event.clone()
            self._events = kept
            # A tombstone is retired once a load covering it no longer returns the record.
            for event_id, tomb in list(self._tombstones.items()):
                if not tomb.overlaps(sync_range.start, sync_range.end):
                    continue
                if event_id in seen_ids or event_id in seen_uids:
                    continue
                if tomb.external_uid and tomb.external_uid in seen_uids:
                    continue
                del self._tombstones[event_id]
        if write_snapshot:
            self.write_snapshot()

    def snapshot_data(self) -> dict[str, Any]:
        with self._lock:
            return {
                "events": [event.to_dict() for event in self._events.values()],
                "routines": [asdict(routine) for routine in self._routines.values()],
                "routine_completions": [
                    {"routine_id": c.routine_id, "date": c.date.isoformat(), "completed": c.completed}
                    for c in self._completions.values()
                ],
                "todos": [
                    {**asdict(todo), "date": todo.date.isoformat() if todo.date else None}
                    for todo in self._todos.values()
                ],
                "day_definitions": dict(self._day_definitions),
            }

    def write_snapshot(self) -> bool:
        if self.snapshot_cache is None:
            return False
        return self.snapshot_cache.write(self._principal(), CORE_SNAPSHOT, self.snapshot_data())

    def restore_snapshot(self) -> bool:
        """Load the cached snapshot. Returns ``False`` when none is usable."""
        if self.snapshot_cache is None:
            return False
        data = self.snapshot_cache.read(self._principal(), CORE_SNAPSHOT)
        if not isinstance(data, dict):
            return False
        try:
            events = {item["id"]: Event.from_dict(item) for item in data.get("events", [])}
            routines = {item["id"]: _routine_from_dict(item) for item in data.get("routines", [])}
            todos = {item["id"]: _todo_from_dict(item) for item in data.get("todos", [])}
            completions: dict[tuple[str, date], RoutineCompletion] = {}
            for item in data.get("routine_completions", []):
                completion = RoutineCompletion(
                    routine_id=str(item["routine_id"]),
                    date=date.fromisoformat(item["date"]),
                    completed=bool(item.get("completed", True)),
                )
                completions[(completion.routine_id, completion.date)] = completion
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Discarding malformed snapshot: %s", exc)
            return False
        with self._lock:
            self._events = events
            self._routines = routines
            self._todos = todos
            self._completions = completions
            self._day_definitions = dict(data.get("day_definitions") or {})
        return True

    # Event mutations

    def create_event(self, event: Event, record: bool = True) -> Event:
        created = event.with_updates(
            id=event.id or new_local_id(),
            calendar_ref=normalize_calendar_ref(event.calendar_ref),
        )
        created.check_times()
        with self._lock:
            if created.id in self._events:
                raise ValueError(f"Event {created.id} already exists")
            self._events[created.id] = created
            self._tombstones.pop(created.id, None)
        self.state_store.upsert_event(created)
        if record:
            self.history.record(
                HistoryAction(CATEGORY_EVENT, ACTION_CREATE, item=created.clone(), description=created.title)
            )
        if self._pushable(created.calendar_ref):
            self._dispatch(self._push_create, created.id)
        return created.clone()

    def update_event(self, event_id: str, changes: dict[str, Any], record: bool = True) -> Event:
        unknown = set(changes) - EVENT_EDITABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown event fields: {sorted(unknown)}")
        changes = dict(changes)
        for name in ("start_time", "end_time"):
            if name in changes:
                changes[name] = normalize_time(changes[name])
        with self._lock:
            current = self._events.get(event_id)
            if current is None:
                raise KeyError(event_id)
            previous = current.clone()
            updated = current.with_updates(**changes)
            updated.check_times()
            updated.calendar_ref = normalize_calendar_ref(updated.calendar_ref)
            moved = updated.calendar_ref != previous.calendar_ref
            if moved:
                updated.external_uid = ""
                updated.etag = ""
                updated.source = SOURCE_MANUAL
            self._events[event_id] = updated
        self.state_store.update_event_fields(
            event_id,
            {name: getattr(updated, name) for name in (*EVENT_EDITABLE_FIELDS, "external_uid", "etag", "source")},
        )
        if record:
            self.history.record(
                HistoryAction(
                    CATEGORY_EVENT, ACTION_UPDATE, item=updated.clone(), previous=previous, description=updated.title
                )
            )
        if moved:
            self._cancel_pending(event_id)
            if previous.external_uid and self._pushable(previous.calendar_ref):
                self._dispatch(self._push_delete, previous.calendar_ref, previous.external_uid, previous.etag)
            if self._pushable(updated.calendar_ref):
                self._dispatch(self._push_create, event_id)
        elif self._pushable(updated.calendar_ref):
            self._schedule_push(event_id)
        return updated.clone()

    def delete_event(self, event_id: str, record: bool = True) -> Event:
        with self._lock:
            current = self._events.pop(event_id, None)
            if current is None:
                raise KeyError(event_id)
            self._tombstones[event_id] = current.clone()
        self._cancel_pending(event_id)
        self.state_store.delete_events([event_id])
        if record:
            self.history.record(
                HistoryAction(CATEGORY_EVENT, ACTION_DELETE, previous=current.clone(), description=current.title)
            )
        if current.external_uid and self._pushable(current.calendar_ref):
            self._dispatch(self._push_delete, current.calendar_ref, current.external_uid, current.etag)
        return current

    # Background pushes

    def _pushable(self, calendar_ref: str) -> bool:
        if self.adapter_provider is None or not calendar_ref.startswith("http"):
            return False
        return not self.calendars.is_read_only(calendar_ref)

    def _dispatch(self, fn: Callable[..., None], *args: Any) -> Future:
        return self._executor.submit(self._guarded, fn, *args)

    def _guarded(self, fn: Callable[..., None], *args: Any) -> None:
        try:
            fn(*args)
        except OfflineError:
            logger.debug("Offline, %s deferred for %s", fn.__name__, args[0])
        except GatewayError as exc:
            logger.warning("Remote %s failed for %s: %s", fn.__name__, args[0], exc)
        except Exception:
            logger.exception("Remote %s crashed for %s", fn.__name__, args[0])

    def _schedule_push(self, event_id: str) -> None:
        with self._lock:
            existing = self._pending.pop(event_id, None)
            if existing is not None:
                existing.cancel()
            timer = threading.Timer(self.debounce_seconds, self._fire_push, args=(event_id,))
            timer.daemon = True
            self._pending[event_id] = timer
            timer.start()

    def _fire_push(self, event_id: str) -> None:
        with self._lock:
            self._pending.pop(event_id, None)
        self._guarded(self._push_update, event_id)

    def _cancel_pending(self, event_id: str) -> None:
        with self._lock:
            timer = self._pending.pop(event_id, None)
        if timer is not None:
            timer.cancel()

    def flush(self) -> int:
        """Send every pending update now. Returns how many were flushed."""
        with self._lock:
            pending = list(self._pending.items())
            self._pending.clear()
        for event_id, timer in pending:
            timer.cancel()
            self._guarded(self._push_update, event_id)
        return len(pending)

    def _push_create(self, event_id: str) -> None:
        event = self.get_event(event_id)
        if event is None:
            return
        adapter = self.adapter_provider()
        uid = event.external_uid or event.id
        etag = adapter.create_event(event.calendar_ref, event.with_updates(external_uid=uid))
        self._store_remote_identity(event_id, uid, etag)

    def _push_update(self, event_id: str) -> None:
        event = self.get_event(event_id)
        if event is None:
            return
        if not event.external_uid:
            self._push_create(event_id)
            return
        etag = self.adapter_provider().update_event(event.calendar_ref, event, event.etag)
        self._store_remote_identity(event_id, event.external_uid, etag)

    def _push_delete(self, calendar_ref: str, uid: str, etag: str) -> None:
        self.adapter_provider().delete_event(calendar_ref, uid, etag)

    def _store_remote_identity(self, event_id: str, uid: str, etag: str) -> None:
        with self._lock:
            current = self._events.get(event_id)
            if current is None:
                return
            current.external_uid = uid
            current.etag = etag
            current.source = SOURCE_REMOTE
        self.state_store.update_event_fields(
            event_id, {"external_uid": uid, "etag": etag, "source": SOURCE_REMOTE}
        )

    def close(self) -> None:
        self.flush()
        self._executor.shutdown(wait=True)

    # Todos, routines, completions

    def add_todo(self, title: str, todo_date: date | None = None, record: bool = True, todo_id: str = "") -> Todo:
        with self._lock:
            position = max((t.position for t in self._todos.values()), default=-1) + 1
            todo = Todo(id=todo_id or new_local_id(), title=title, date=todo_date, position=position)
            self._todos[todo.id] = todo
        if record:
            self.history.record(HistoryAction(CATEGORY_TODO, ACTION_CREATE, item=todo.clone(), description=title))
        return todo.clone()

    def _put_todo(self, todo: Todo) -> None:
        with self._lock:
            self._todos[todo.id] = todo.clone()

    def update_todo(self, todo_id: str, record: bool = True, **changes: Any) -> Todo:
        with self._lock:
            previous = self._todos[todo_id].clone()
            updated = replace(previous, **changes)
            self._todos[todo_id] = updated
        if record:
            self.history.record(
                HistoryAction(CATEGORY_TODO, ACTION_UPDATE, item=updated.clone(), previous=previous, description=updated.title)
            )
        return updated.clone()

    def toggle_todo(self, todo_id: str, record: bool = True) -> Todo:
        with self._lock:
            previous = self._todos[todo_id].clone()
            updated = replace(previous, completed=not previous.completed)
            self._todos[todo_id] = updated
        if record:
            self.history.record(
                HistoryAction(CATEGORY_TODO, ACTION_TOGGLE, item=updated.clone(), previous=previous, description=updated.title)
            )
        return updated.clone()

    def delete_todo(self, todo_id: str, record: bool = True) -> Todo:
        with self._lock:
            removed = self._todos.pop(todo_id)
        if record:
            self.history.record(HistoryAction(CATEGORY_TODO, ACTION_DELETE, previous=removed.clone(), description=removed.title))
        return removed

    def add_routine(self, routine: Routine, record: bool = True) -> Routine:
        created = replace(routine, id=routine.id or new_local_id(), days=list(routine.days))
        with self._lock:
            self._routines[created.id] = created
        if record:
            self.history.record(HistoryAction(CATEGORY_ROUTINE, ACTION_CREATE, item=created.clone(), description=created.name))
        return created.clone()

    def update_routine(self, routine_id: str, record: bool = True, **changes: Any) -> Routine:
        with self._lock:
            previous = self._routines[routine_id].clone()
            updated = replace(previous, **changes)
            self._routines[routine_id] = updated
        if record:
            self.history.record(
                HistoryAction(
                    CATEGORY_ROUTINE, ACTION_UPDATE, item=updated.clone(), previous=previous, description=updated.name
                )
            )
        return updated.clone()

    def delete_routine(self, routine_id: str, record: bool = True) -> Routine:
        with self._lock:
            removed = self._routines.pop(routine_id)
            for key in [k for k in self._completions if k[0] == routine_id]:
                del self._completions[key]
        if record:
            self.history.record(
                HistoryAction(CATEGORY_ROUTINE, ACTION_DELETE, previous=removed.clone(), description=removed.name)
            )
        return removed

    def toggle_routine_completion(self, routine_id: str, on_date: date, record: bool = True) -> bool:
        with self._lock:
            if routine_id not in self._routines:
                raise KeyError(routine_id)
            key = (routine_id, on_date)
            completed = key not in self._completions
            if completed:
                self._completions[key] = RoutineCompletion(routine_id=routine_id, date=on_date)
            else:
                del self._completions[key]
        if record:
            self.history.record(
                HistoryAction(
                    CATEGORY_ROUTINE,
                    ACTION_TOGGLE,
                    item=RoutineCompletion(routine_id, on_date, completed),
                    description=f"{routine_id}@{on_date.isoformat()}",
                )
            )
        return completed

    def set_day_definition(self, day: date, value: Any) -> None:
        with self._lock:
            self._day_definitions[day.isoformat()] = value

    # Undo/redo

    def install_history_handlers(self) -> None:
        self.history.register(CATEGORY_EVENT, self._undo_event, self._redo_event)
        self.history.register(CATEGORY_TODO, self._undo_todo, self._redo_todo)
        self.history.register(CATEGORY_ROUTINE, self._undo_routine, self._redo_routine)

    def _restore_event_fields(self, target: Event) -> None:
        self.update_event(
            target.id,
            {name: getattr(target, name) for name in EVENT_EDITABLE_FIELDS},
            record=False,
        )

    def _undo_event(self, action: HistoryAction) -> None:
        if action.kind == ACTION_CREATE:
            self.delete_event(action.item.id, record=False)
        elif action.kind == ACTION_DELETE:
            self.create_event(action.previous, record=False)
        elif action.kind in (ACTION_UPDATE, ACTION_TOGGLE):
            self._restore_event_fields(action.previous)

    def _redo_event(self, action: HistoryAction) -> None:
        if action.kind == ACTION_CREATE:
            self.create_event(action.item.with_updates(external_uid="", etag=""), record=False)
        elif action.kind == ACTION_DELETE:
            self.delete_event(action.previous.id, record=False)
        elif action.kind in (ACTION_UPDATE, ACTION_TOGGLE):
            self._restore_event_fields(action.item)

    def _undo_todo(self, action: HistoryAction) -> None:
        if action.kind == ACTION_CREATE:
            self.delete_todo(action.item.id, record=False)
        else:
            self._put_todo(action.previous)

    def _redo_todo(self, action: HistoryAction) -> None:
        if action.kind == ACTION_DELETE:
            self.delete_todo(action.previous.id, record=False)
        else:
            self._put_todo(action.item)

    def _undo_routine(self, action: HistoryAction) -> None:
        if action.kind == ACTION_TOGGLE:
            self.toggle_routine_completion(action.item.routine_id, action.item.date, record=False)
        elif action.kind == ACTION_CREATE:
            self.delete_routine(action.item.id, record=False)
        else:
            with self._lock:
                self._routines[action.previous.id] = action.previous.clone()

    def _redo_routine(self, action: HistoryAction) -> None:
        if action.kind == ACTION_TOGGLE:
            self.toggle_routine_completion(action.item.routine_id, action.item.date, record=False)
        elif action.kind == ACTION_DELETE:
            self.delete_routine(action.previous.id, record=False)
        else:
            with self._lock:
                self._routines[action.item.id] = action.item.clone()
