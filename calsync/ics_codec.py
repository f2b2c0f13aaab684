from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Any
from zoneinfo import ZoneInfo

from icalendar import Calendar as ICalendar
from icalendar import Event as ICEvent

from calsync import recurrence
from calsync.memo_meta import parse_memo
from calsync.models import (
    DEFAULT_EVENT_COLOR,
    SOURCE_MANUAL,
    SOURCE_REMOTE,
    Event,
    SyncRange,
    new_local_id,
    normalize_calendar_ref,
    parse_iso_date,
    strip_etag,
)

logger = logging.getLogger(__name__)

PRODID = "-//calsync//Calendar Sync//EN"
UNTITLED = "(untitled)"
COLOR_PROPERTIES = ("X-APPLE-CALENDAR-COLOR", "COLOR")

# Properties this codec maps to Event fields or regenerates on output.
# Everything else on a VEVENT travels opaquely in Event.extensions.
MANAGED_PROPERTIES = {
    "UID",
    "SUMMARY",
    "DESCRIPTION",
    "DTSTART",
    "DTEND",
    "DURATION",
    "DTSTAMP",
    "RRULE",
    "RDATE",
    "EXDATE",
    "RECURRENCE-ID",
    *COLOR_PROPERTIES,
}


class CodecError(ValueError):
    """Malformed interchange data."""


def resolve_timezone(name: str | None) -> tzinfo:
    if not name or name.upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (KeyError, ValueError) as exc:
        raise CodecError(f"Unknown timezone: {name}") from exc


def read_calendar(text: str | bytes) -> ICalendar:
    try:
        return ICalendar.from_ical(text)
    except ValueError as exc:
        raise CodecError(f"Unreadable calendar data: {exc}") from exc


def iter_vevents(calendar_obj: ICalendar) -> list[ICEvent]:
    return [component for component in calendar_obj.walk() if component.name == "VEVENT"]


def _has_tzid(prop: Any) -> bool:
    params = getattr(prop, "params", None) or {}
    return bool(params.get("TZID"))


def _wall_clock(prop: Any, tz: tzinfo) -> datetime | date:
    value = prop.dt
    if isinstance(value, datetime):
        return recurrence.to_wall_clock(value, tz, has_tzid=_has_tzid(prop))
    return value


def _end_value(vevent: ICEvent, start_value: datetime | date, tz: tzinfo) -> datetime | date | None:
    dtend = vevent.get("DTEND")
    if dtend is not None:
        return _wall_clock(dtend, tz)
    duration = vevent.get("DURATION")
    if duration is not None:
        return start_value + duration.dt
    return None


def _color(vevent: ICEvent, default_color: str) -> str:
    for name in COLOR_PROPERTIES:
        value = vevent.get(name)
        if value is not None and str(value).strip():
            return str(value).strip()
    return default_color


def _extensions(vevent: ICEvent) -> list[str]:
    lines: list[str] = []
    for name, value in vevent.items():
        if name.upper() in MANAGED_PROPERTIES:
            continue
        values = value if isinstance(value, list) else [value]
        for item in values:
            lines.append(vevent.content_line(name, item).to_ical().decode("utf-8"))
    return lines


def _span_fields(start_value: datetime | date, end_value: datetime | date | None) -> dict[str, Any]:
    if not isinstance(start_value, datetime):
        end_date = None
        if isinstance(end_value, date) and not isinstance(end_value, datetime):
            # Exclusive DTEND: more than one day apart means a multi-day span.
            if (end_value - start_value).days > 1:
                end_date = end_value - timedelta(days=1)
        return {"date": start_value, "end_date": end_date, "start_time": "", "end_time": ""}

    fields: dict[str, Any] = {
        "date": start_value.date(),
        "end_date": None,
        "start_time": start_value.strftime("%H:%M"),
        "end_time": "",
    }
    if isinstance(end_value, datetime):
        fields["end_time"] = end_value.strftime("%H:%M")
        day_gap = (end_value.date() - start_value.date()).days
        overnight = day_gap == 1 and end_value.time() < start_value.time()
        if day_gap > 0 and not overnight:
            fields["end_date"] = end_value.date()
    return fields


def event_from_vevent(
    vevent: ICEvent,
    *,
    calendar_ref: str = "",
    default_color: str = DEFAULT_EVENT_COLOR,
    tz: tzinfo = timezone.utc,
    etag: str = "",
    source: str = SOURCE_REMOTE,
) -> Event:
    dtstart = vevent.get("DTSTART")
    if dtstart is None:
        raise CodecError("VEVENT without DTSTART")
    try:
        start_value = _wall_clock(dtstart, tz)
        end_value = _end_value(vevent, start_value, tz)
    except (TypeError, ValueError, AttributeError) as exc:
        raise CodecError(f"Invalid VEVENT times: {exc}") from exc
    memo, meta = parse_memo(str(vevent.get("DESCRIPTION", "") or ""))
    span = _span_fields(start_value, end_value)
    if span["end_date"] is None and meta.get("endDate"):
        legacy_end = parse_iso_date(meta["endDate"])
        if legacy_end and legacy_end > span["date"]:
            span["end_date"] = legacy_end
    return Event(
        id=new_local_id(),
        title=str(vevent.get("SUMMARY", "") or ""),
        memo=memo,
        color=_color(vevent, default_color),
        external_uid=str(vevent.get("UID", "") or "").strip(),
        calendar_ref=normalize_calendar_ref(calendar_ref),
        etag=strip_etag(etag),
        source=source,
        extensions=_extensions(vevent),
        **span,
    )


def _expand(
    vevent: ICEvent,
    overrides: dict[int, ICEvent],
    sync_range: SyncRange,
    tz: tzinfo,
    **kwargs: Any,
) -> list[Event]:
    template = event_from_vevent(vevent, tz=tz, **kwargs)
    dtstart = vevent.get("DTSTART")
    start_value = _wall_clock(dtstart, tz)
    end_value = _end_value(vevent, start_value, tz)
    local_start = recurrence.to_wall_clock(start_value, tz, has_tzid=True)
    duration = None
    if end_value is not None:
        duration = recurrence.to_wall_clock(end_value, tz, has_tzid=True) - local_start
    range_start = datetime.combine(sync_range.start, time.min)
    range_end = datetime.combine(sync_range.end, time.max)
    if duration is not None and duration > timedelta(0):
        # Occurrences that began before the window but still overlap it count.
        range_start -= duration
    all_day = not isinstance(start_value, datetime)

    occurrences: list[Event] = []
    for occurrence in recurrence.iter_occurrences(vevent, local_start, range_start, range_end, tz):
        key = recurrence.epoch_ms(occurrence)
        override = overrides.get(key)
        if override is not None:
            item = event_from_vevent(override, tz=tz, **kwargs)
        else:
            occ_start: datetime | date = occurrence.date() if all_day else occurrence
            occ_end = None if duration is None else (
                (occurrence + duration).date() if all_day else occurrence + duration
            )
            item = template.with_updates(id=new_local_id(), **_span_fields(occ_start, occ_end))
        item.external_uid = recurrence.occurrence_uid(template.external_uid, occurrence)
        occurrences.append(item)
    return occurrences


def _override_index(vevents: list[ICEvent], tz: tzinfo) -> dict[str, dict[int, ICEvent]]:
    index: dict[str, dict[int, ICEvent]] = {}
    for vevent in vevents:
        recurrence_id = vevent.get("RECURRENCE-ID")
        if recurrence_id is None:
            continue
        uid = str(vevent.get("UID", "") or "").strip()
        instant = recurrence.to_wall_clock(recurrence_id.dt, tz, has_tzid=_has_tzid(recurrence_id))
        index.setdefault(uid, {})[recurrence.epoch_ms(instant)] = vevent
    return index


def events_from_ics(
    text: str | bytes,
    *,
    sync_range: SyncRange | None = None,
    calendar_ref: str = "",
    default_color: str = DEFAULT_EVENT_COLOR,
    tz: tzinfo = timezone.utc,
    etag: str = "",
    source: str = SOURCE_REMOTE,
) -> list[Event]:
    """Decode every VEVENT in ``text``.

    Recurring definitions are expanded into occurrences when ``sync_range`` is
    given; otherwise the definition itself is returned. A malformed VEVENT is
    logged and skipped, a malformed document raises ``CodecError``.
    """
    calendar_obj = read_calendar(text)
    vevents = iter_vevents(calendar_obj)
    overrides = _override_index(vevents, tz)
    kwargs = {"calendar_ref": calendar_ref, "default_color": default_color, "etag": etag, "source": source}
    events: list[Event] = []
    for vevent in vevents:
        if vevent.get("RECURRENCE-ID") is not None:
            continue
        try:
            if sync_range is not None and recurrence.is_recurring(vevent):
                uid = str(vevent.get("UID", "") or "").strip()
                events.extend(_expand(vevent, overrides.get(uid, {}), sync_range, tz, **kwargs))
                continue
            event = event_from_vevent(vevent, tz=tz, **kwargs)
        except (CodecError, ValueError, TypeError) as exc:
            logger.warning("Skipping malformed VEVENT %s: %s", vevent.get("UID"), exc)
            continue
        if sync_range is not None and not event.overlaps(sync_range.start, sync_range.end):
            continue
        events.append(event)
    return events


def _timed_value(day: date, hhmm: str, tz: tzinfo) -> datetime:
    hours, minutes = (int(part) for part in hhmm.split(":"))
    return datetime.combine(day, time(hours, minutes), tzinfo=tz)


def event_to_vevent(event: Event, tz: tzinfo = timezone.utc) -> ICEvent:
    vevent = ICEvent()
    vevent.add("UID", event.external_uid or event.id)
    vevent.add("DTSTAMP", datetime.now(timezone.utc))
    vevent.add("SUMMARY", event.title or "")
    if event.memo:
        vevent.add("DESCRIPTION", event.memo)
    if event.all_day:
        vevent.add("DTSTART", event.date)
        vevent.add("DTEND", event.last_day + timedelta(days=1))
    else:
        if not event.start_time:
            raise CodecError(f"Event {event.id} has an end time but no start time")
        start = _timed_value(event.date, event.start_time, tz)
        vevent.add("DTSTART", start)
        if event.end_time:
            end_day = event.end_date or event.date
            end = _timed_value(end_day, event.end_time, tz)
            if event.end_date is None and end < start:
                end += timedelta(days=1)
            vevent.add("DTEND", end)
    if event.color:
        vevent.add("X-APPLE-CALENDAR-COLOR", event.color)
    if event.extensions:
        carrier = ICEvent.from_ical("BEGIN:VEVENT\r\n" + "\r\n".join(event.extensions) + "\r\nEND:VEVENT\r\n")
        for name, value in carrier.items():
            if name.upper() not in MANAGED_PROPERTIES:
                vevent[name] = value
    return vevent


def event_to_ics(event: Event, tz: tzinfo = timezone.utc) -> str:
    calendar_obj = ICalendar()
    calendar_obj.add("PRODID", PRODID)
    calendar_obj.add("VERSION", "2.0")
    calendar_obj.add_component(event_to_vevent(event, tz))
    return calendar_obj.to_ical().decode("utf-8")


def import_ics(text: str | bytes, tz: tzinfo = timezone.utc) -> list[Event]:
    """Events from a user-supplied file, as manual events without remote identity."""
    imported: list[Event] = []
    for event in events_from_ics(text, tz=tz, source=SOURCE_MANUAL):
        imported.append(
            event.with_updates(
                title=event.title or UNTITLED,
                external_uid="",
                calendar_ref="",
                etag="",
            )
        )
    return imported
