from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import timezone, tzinfo
from typing import Any

from calsync.gateway import Gateway
from calsync.ics_codec import CodecError, event_to_ics, events_from_ics
from calsync.models import (
    DEFAULT_EVENT_COLOR,
    SOURCE_REMOTE,
    CalendarMetadata,
    Event,
    SyncRange,
    normalize_calendar_ref,
    strip_etag,
)

logger = logging.getLogger(__name__)

_SHARED_SEGMENT = re.compile(r"^[0-9a-fA-F]{60,}$")


@dataclass(frozen=True)
class DeltaResult:
    events: list[Event] = field(default_factory=list)
    sync_token: str | None = None
    has_deletions: bool = False


def classify_calendar(url: str, display_name: str = "", color: str = "") -> CalendarMetadata:
    ref = normalize_calendar_ref(url)
    lowered = ref.lower()
    is_subscription = lowered.endswith(".ics") or "subscribed" in lowered
    last_segment = ref.rsplit("/", 1)[-1]
    return CalendarMetadata(
        url=ref,
        display_name=display_name or last_segment or ref,
        color=color or DEFAULT_EVENT_COLOR,
        type="subscription" if is_subscription else "caldav",
        subscription_url=ref if is_subscription else "",
        is_shared=bool(_SHARED_SEGMENT.match(last_segment)),
        is_subscription=is_subscription,
        read_only="subscribed" in lowered,
    )


class ProtocolAdapter:
    """Typed operations on top of the gateway's action-shaped JSON."""

    def __init__(self, gateway: Gateway, tz: tzinfo = timezone.utc) -> None:
        self.gateway = gateway
        self.tz = tz

    def discover_calendars(self) -> list[CalendarMetadata]:
        response = self.gateway.call("listCalendars")
        calendars: list[CalendarMetadata] = []
        for item in response.get("calendars", []) or []:
            if not isinstance(item, dict) or not item.get("url"):
                continue
            calendars.append(
                classify_calendar(
                    str(item["url"]),
                    display_name=str(item.get("displayName") or ""),
                    color=str(item.get("color") or ""),
                )
            )
        return calendars

    def _decode_objects(
        self,
        objects: list[Any],
        calendar_ref: str,
        sync_range: SyncRange | None,
        default_color: str,
    ) -> list[Event]:
        events: list[Event] = []
        for item in objects or []:
            if not isinstance(item, dict) or not item.get("data"):
                continue
            try:
                events.extend(
                    events_from_ics(
                        item["data"],
                        sync_range=sync_range,
                        calendar_ref=calendar_ref,
                        default_color=default_color,
                        tz=self.tz,
                        etag=str(item.get("etag") or ""),
                        source=SOURCE_REMOTE,
                    )
                )
            except CodecError as exc:
                logger.warning("Skipping unreadable object %s in %s: %s", item.get("href"), calendar_ref, exc)
        return events

    def fetch_events(
        self,
        calendar_ref: str,
        sync_range: SyncRange,
        default_color: str = DEFAULT_EVENT_COLOR,
    ) -> list[Event]:
        ref = normalize_calendar_ref(calendar_ref)
        response = self.gateway.call("fetchEvents", ref, sync_range.to_dict())
        return self._decode_objects(response.get("objects", []), ref, sync_range, default_color)

    def fetch_sync_token(self, calendar_ref: str) -> str | None:
        response = self.gateway.call("getSyncToken", normalize_calendar_ref(calendar_ref))
        token = response.get("syncToken")
        return str(token) if token else None

    def fetch_delta(
        self,
        calendar_ref: str,
        sync_token: str,
        expansion_range: SyncRange | None = None,
        default_color: str = DEFAULT_EVENT_COLOR,
    ) -> DeltaResult:
        ref = normalize_calendar_ref(calendar_ref)
        response = self.gateway.call("syncCollection", ref, {"syncToken": sync_token})
        token = response.get("syncToken")
        return DeltaResult(
            events=self._decode_objects(response.get("objects", []), ref, expansion_range, default_color),
            sync_token=str(token) if token else None,
            has_deletions=bool(response.get("hasDeletions", False)),
        )

    def create_event(self, calendar_ref: str, event: Event) -> str:
        uid = event.external_uid or event.id
        response = self.gateway.call(
            "createEvent",
            normalize_calendar_ref(calendar_ref),
            {"uid": uid, "ics": event_to_ics(event.with_updates(external_uid=uid), self.tz)},
        )
        return strip_etag(response.get("etag"))

    def update_event(self, calendar_ref: str, event: Event, etag: str | None = None) -> str:
        if not event.external_uid:
            raise ValueError("update_event requires an event with a remote uid")
        response = self.gateway.call(
            "updateEvent",
            normalize_calendar_ref(calendar_ref),
            {"uid": event.external_uid, "ics": event_to_ics(event, self.tz), "etag": strip_etag(etag)},
        )
        return strip_etag(response.get("etag"))

    def delete_event(self, calendar_ref: str, uid: str, etag: str | None = None) -> bool:
        response = self.gateway.call(
            "deleteEvent",
            normalize_calendar_ref(calendar_ref),
            {"uid": uid, "etag": strip_etag(etag)},
        )
        return bool(response.get("deleted", True))

    def create_calendar(self, name: str, color: str = DEFAULT_EVENT_COLOR) -> CalendarMetadata:
        response = self.gateway.call("createCalendar", None, {"name": name, "color": color})
        metadata = classify_calendar(
            str(response.get("calendarUrl") or ""),
            display_name=str(response.get("displayName") or name),
            color=str(response.get("color") or color),
        )
        metadata.created_from_app = True
        return metadata

    def delete_calendar(self, calendar_ref: str) -> None:
        self.gateway.call("deleteCalendar", normalize_calendar_ref(calendar_ref))
