from __future__ import annotations

import logging
import re
from datetime import date, datetime, time, timezone, tzinfo
from typing import Any, Iterator

from dateutil.rrule import rruleset, rrulestr

logger = logging.getLogger(__name__)

MAX_OCCURRENCES = 2000

_UTC_UNTIL = re.compile(r"UNTIL=(\d{8}T\d{6})Z", re.IGNORECASE)


def occurrence_uid(base_uid: str, instant: datetime) -> str:
    return f"{base_uid}-{epoch_ms(instant)}"


def epoch_ms(instant: datetime | date) -> int:
    if not isinstance(instant, datetime):
        instant = datetime.combine(instant, time.min)
    if instant.tzinfo is None:
        instant = instant.replace(tzinfo=timezone.utc)
    return int(instant.timestamp() * 1000)


def to_wall_clock(value: datetime | date, tz: tzinfo, *, has_tzid: bool) -> datetime:
    """Naive local datetime for a DTSTART-like value.

    UTC instants are shifted into ``tz``; TZID-qualified and floating values keep
    their wall clock. Dates become midnight.
    """
    if not isinstance(value, datetime):
        return datetime.combine(value, time.min)
    if value.tzinfo is None or has_tzid:
        return value.replace(tzinfo=None)
    return value.astimezone(tz).replace(tzinfo=None)


def _localize_until(rule_text: str, tz: tzinfo) -> str:
    def _swap(match: re.Match[str]) -> str:
        instant = datetime.strptime(match.group(1), "%Y%m%dT%H%M%S").replace(tzinfo=timezone.utc)
        local = instant.astimezone(tz).replace(tzinfo=None)
        return f"UNTIL={local.strftime('%Y%m%dT%H%M%S')}"

    return _UTC_UNTIL.sub(_swap, rule_text)


def _property_values(vevent: Any, name: str) -> list[Any]:
    raw = vevent.get(name)
    if raw is None:
        return []
    items = raw if isinstance(raw, list) else [raw]
    values: list[Any] = []
    for item in items:
        dts = getattr(item, "dts", None)
        if dts is None:
            continue
        params = getattr(item, "params", None) or {}
        has_tzid = bool(params.get("TZID"))
        for entry in dts:
            values.append((entry.dt, has_tzid))
    return values


def is_recurring(vevent: Any) -> bool:
    return vevent.get("RRULE") is not None or vevent.get("RDATE") is not None


def build_ruleset(vevent: Any, dtstart: datetime, tz: tzinfo) -> rruleset:
    rules = rruleset()
    raw_rule = vevent.get("RRULE")
    if isinstance(raw_rule, list):
        raw_rule = raw_rule[0] if raw_rule else None
    if raw_rule is not None:
        rule_text = _localize_until(raw_rule.to_ical().decode("utf-8"), tz)
        rules.rrule(rrulestr(f"RRULE:{rule_text}", dtstart=dtstart))
    else:
        rules.rdate(dtstart)
    for value, has_tzid in _property_values(vevent, "RDATE"):
        rules.rdate(to_wall_clock(value, tz, has_tzid=has_tzid))
    for value, has_tzid in _property_values(vevent, "EXDATE"):
        rules.exdate(to_wall_clock(value, tz, has_tzid=has_tzid))
    return rules


def iter_occurrences(
    vevent: Any,
    dtstart: datetime,
    range_start: datetime,
    range_end: datetime,
    tz: tzinfo,
    limit: int = MAX_OCCURRENCES,
) -> Iterator[datetime]:
    """Yield naive local occurrence starts inside ``[range_start, range_end]``.

    Iteration stops at the range end or after ``limit`` occurrences.
    """
    rules = build_ruleset(vevent, dtstart, tz)
    count = 0
    for occurrence in rules.xafter(range_start, count=limit, inc=True):
        if occurrence > range_end:
            break
        count += 1
        yield occurrence
    if count >= limit:
        logger.warning("Recurrence expansion hit the %s occurrence cap for %s", limit, vevent.get("UID"))
