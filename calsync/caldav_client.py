from __future__ import annotations

import logging
from datetime import datetime, time, timezone
from typing import Any, Callable
from urllib.parse import quote

import caldav
import requests
from caldav.elements import dav, ical
from caldav.lib.error import AuthorizationError, DAVError, NotFoundError

from calsync.gateway import Credentials, GatewayError, GatewayRequest, OfflineError, UnauthorizedError
from calsync.models import normalize_calendar_ref, parse_iso_date, strip_etag

logger = logging.getLogger(__name__)

ICS_CONTENT_TYPE = "text/calendar; charset=utf-8"


def event_object_url(calendar_ref: str, uid: str) -> str:
    return f"{normalize_calendar_ref(calendar_ref)}/{quote(uid, safe='@-_.')}.ics"


def _range_bound(value: Any, is_end: bool) -> datetime:
    day = parse_iso_date(value)
    if day is None:
        raise GatewayError("fetchEvents requires start and end dates.", code="BAD_REQUEST")
    return datetime.combine(day, time.max if is_end else time.min, tzinfo=timezone.utc)


def _object_payload(resource: Any) -> dict[str, Any] | None:
    data = getattr(resource, "data", None)
    if not data:
        return None
    if isinstance(data, bytes):
        data = data.decode("utf-8", errors="replace")
    props = getattr(resource, "props", None) or {}
    return {
        "href": str(getattr(resource, "url", "") or ""),
        "etag": strip_etag(props.get(dav.GetEtag.tag)),
        "data": str(data),
    }


class CalDAVTransport:
    """Executes gateway actions directly against the server with the caldav library."""

    def __init__(self, timeout_seconds: int = 30) -> None:
        self.timeout_seconds = timeout_seconds
        self._client: Any = None
        self._principal: Any = None
        self._identity: tuple[str, str, str] | None = None
        self._handlers: dict[str, Callable[[GatewayRequest], dict[str, Any]]] = {
            "listCalendars": self._list_calendars,
            "fetchEvents": self._fetch_events,
            "getSyncToken": self._get_sync_token,
            "syncCollection": self._sync_collection,
            "createEvent": self._put_event,
            "updateEvent": self._put_event,
            "deleteEvent": self._delete_event,
            "createCalendar": self._create_calendar,
            "deleteCalendar": self._delete_calendar,
        }

    def _connect(self, credentials: Credentials) -> None:
        identity = (credentials.server_url, credentials.username, credentials.password)
        if self._principal is not None and self._identity == identity:
            return
        if not credentials.server_url or not credentials.username:
            raise GatewayError("CalDAV config is incomplete.", code="CONFIG")
        self._client = caldav.DAVClient(
            url=credentials.server_url,
            username=credentials.username,
            password=credentials.password,
            timeout=self.timeout_seconds,
        )
        self._principal = self._client.principal()
        self._identity = identity

    def send(self, request: GatewayRequest, credentials: Credentials) -> dict[str, Any]:
        handler = self._handlers.get(request.action)
        if handler is None:
            raise GatewayError(f"Unsupported gateway action: {request.action}", code="BAD_ACTION")
        try:
            self._connect(credentials)
            return handler(request)
        except AuthorizationError as exc:
            self._principal = None
            raise UnauthorizedError(str(exc) or "Unauthorized") from exc
        except requests.ConnectionError as exc:
            self._principal = None
            raise OfflineError(f"Network is offline: {exc}") from exc
        except DAVError as exc:
            raise GatewayError(f"{type(exc).__name__}: {exc}", code="DAV_ERROR") from exc

    def _calendar(self, calendar_ref: str | None) -> Any:
        if not calendar_ref:
            raise GatewayError("calendarRef is required for this action.", code="BAD_REQUEST")
        return self._client.calendar(url=normalize_calendar_ref(calendar_ref) + "/")

    def _list_calendars(self, request: GatewayRequest) -> dict[str, Any]:
        calendars: list[dict[str, Any]] = []
        for calendar in self._principal.calendars():
            url = str(calendar.url)
            try:
                props = calendar.get_properties([dav.DisplayName(), ical.CalendarColor()])
            except DAVError as exc:
                logger.debug("Property lookup failed for %s: %s", url, exc)
                props = {}
            calendars.append(
                {
                    "url": url,
                    "displayName": str(props.get(dav.DisplayName.tag) or getattr(calendar, "name", "") or url),
                    "color": str(props.get(ical.CalendarColor.tag) or ""),
                }
            )
        return {"calendars": calendars}

    def _fetch_events(self, request: GatewayRequest) -> dict[str, Any]:
        payload = request.payload or {}
        calendar = self._calendar(request.calendar_ref)
        resources = calendar.search(
            start=_range_bound(payload.get("start"), is_end=False),
            end=_range_bound(payload.get("end"), is_end=True),
            event=True,
            expand=False,
        )
        objects = [item for item in (_object_payload(resource) for resource in resources) if item]
        return {"objects": objects}

    def _get_sync_token(self, request: GatewayRequest) -> dict[str, Any]:
        calendar = self._calendar(request.calendar_ref)
        collection = calendar.objects_by_sync_token(load_objects=False)
        token = getattr(collection, "sync_token", None)
        return {"syncToken": str(token) if token else None}

    def _sync_collection(self, request: GatewayRequest) -> dict[str, Any]:
        token = str((request.payload or {}).get("syncToken") or "")
        if not token:
            raise GatewayError("syncCollection requires a syncToken.", code="BAD_REQUEST")
        calendar = self._calendar(request.calendar_ref)
        collection = calendar.objects_by_sync_token(sync_token=token, load_objects=True)
        objects: list[dict[str, Any]] = []
        has_deletions = False
        for resource in getattr(collection, "objects", []):
            item = _object_payload(resource)
            if item is None:
                # Members that can no longer be loaded were removed server-side.
                has_deletions = True
                continue
            objects.append(item)
        next_token = getattr(collection, "sync_token", None)
        return {
            "objects": objects,
            "syncToken": str(next_token) if next_token else None,
            "hasDeletions": has_deletions,
        }

    def _put_event(self, request: GatewayRequest) -> dict[str, Any]:
        payload = request.payload or {}
        uid = str(payload.get("uid") or "").strip()
        ics = str(payload.get("ics") or "")
        if not uid or not ics:
            raise GatewayError("Event uid and ics are required.", code="BAD_REQUEST")
        url = event_object_url(str(request.calendar_ref or ""), uid)
        headers = {"Content-Type": ICS_CONTENT_TYPE}
        etag = strip_etag(payload.get("etag"))
        if etag:
            headers["If-Match"] = f'"{etag}"'
        response = self._client.put(url, ics, headers)
        status = int(getattr(response, "status", 0) or 0)
        if status >= 400:
            raise GatewayError(f"PUT {url} failed: HTTP {status}", code="HTTP_ERROR", status=status)
        response_headers = getattr(response, "headers", None) or {}
        return {"href": url, "etag": strip_etag(response_headers.get("ETag") or response_headers.get("etag"))}

    def _delete_event(self, request: GatewayRequest) -> dict[str, Any]:
        payload = request.payload or {}
        uid = str(payload.get("uid") or "").strip()
        if not uid:
            raise GatewayError("Event uid is required.", code="BAD_REQUEST")
        url = event_object_url(str(request.calendar_ref or ""), uid)
        response = self._client.delete(url)
        status = int(getattr(response, "status", 0) or 0)
        if status == 404:
            return {"deleted": True, "missing": True}
        if status >= 400:
            raise GatewayError(f"DELETE {url} failed: HTTP {status}", code="HTTP_ERROR", status=status)
        return {"deleted": True}

    def _create_calendar(self, request: GatewayRequest) -> dict[str, Any]:
        payload = request.payload or {}
        name = str(payload.get("name") or "").strip()
        if not name:
            raise GatewayError("Calendar name is required.", code="BAD_REQUEST")
        calendar = self._principal.make_calendar(name=name)
        color = str(payload.get("color") or "")
        if color:
            try:
                calendar.set_properties([ical.CalendarColor(color)])
            except DAVError as exc:
                logger.warning("Could not set colour on new calendar %s: %s", name, exc)
        return {"calendarUrl": normalize_calendar_ref(str(calendar.url)), "displayName": name, "color": color}

    def _delete_calendar(self, request: GatewayRequest) -> dict[str, Any]:
        calendar = self._calendar(request.calendar_ref)
        try:
            calendar.delete()
        except NotFoundError:
            return {"deleted": True, "missing": True}
        return {"deleted": True}
