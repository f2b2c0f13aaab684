from __future__ import annotations

import re
import uuid
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Any
from urllib.parse import unquote, urlsplit


DEFAULT_EVENT_COLOR = "#3b82f6"
SOURCE_MANUAL = "manual"
SOURCE_REMOTE = "caldav"

CATEGORY_EVENT = "event"
CATEGORY_ROUTINE = "routine"
CATEGORY_TODO = "todo"

ACTION_CREATE = "create"
ACTION_UPDATE = "update"
ACTION_DELETE = "delete"
ACTION_TOGGLE = "toggle"

CALENDAR_TYPES = {"local", "subscription", "caldav"}

_TIME_PATTERN = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_iso_datetime(value: str | datetime | None) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return _ensure_tz(parsed)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).isoformat()


def parse_iso_date(value: str | date | None) -> date | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value).strip()[:10])


def normalize_time(value: str | time | None) -> str:
    """Return ``HH:MM`` or an empty string for "no time"."""
    if value is None:
        return ""
    if isinstance(value, time):
        return value.strftime("%H:%M")
    text = str(value).strip()
    if not text:
        return ""
    if len(text) >= 5 and _TIME_PATTERN.match(text[:5]):
        return text[:5]
    raise ValueError(f"Invalid wall-clock time: {value!r}")


def normalize_calendar_ref(value: str | None) -> str:
    return str(value or "").strip().rstrip("/")


def calendar_path_key(value: str | None) -> str:
    """Decoded URL path without trailing slashes, used to compare collection refs."""
    text = str(value or "").strip()
    if not text:
        return ""
    try:
        path = urlsplit(text).path or text
    except ValueError:
        path = text
    return unquote(path).rstrip("/")


def new_local_id() -> str:
    return str(uuid.uuid4())


@dataclass
class CalDAVConfig:
    server_url: str = ""
    username: str = ""
    password: str = ""
    enabled: bool = False
    selected_calendar_urls: list[str] = field(default_factory=list)
    last_sync_at: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "CalDAVConfig":
        data = data or {}
        selected = data.get("selected_calendar_urls", [])
        if not isinstance(selected, list):
            selected = []
        return cls(
            server_url=str(data.get("server_url", "")).strip(),
            username=str(data.get("username", "")).strip(),
            password=str(data.get("password", "")).strip(),
            enabled=bool(data.get("enabled", False)),
            selected_calendar_urls=[
                normalize_calendar_ref(x) for x in selected if normalize_calendar_ref(x)
            ],
            last_sync_at=str(data.get("last_sync_at", "") or "").strip(),
        )


@dataclass
class GatewayConfig:
    mode: str = "direct"
    proxy_url: str = ""
    session_token: str = ""
    session_expires_at: str = ""
    refresh_url: str = ""
    timeout_seconds: int = 30
    offline_recheck_seconds: int = 30

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "GatewayConfig":
        data = data or {}
        mode = str(data.get("mode", "direct")).strip().lower()
        if mode not in {"direct", "proxy"}:
            mode = "direct"
        return cls(
            mode=mode,
            proxy_url=str(data.get("proxy_url", "")).strip(),
            session_token=str(data.get("session_token", "")).strip(),
            session_expires_at=str(data.get("session_expires_at", "") or "").strip(),
            refresh_url=str(data.get("refresh_url", "")).strip(),
            timeout_seconds=max(1, int(data.get("timeout_seconds", 30))),
            offline_recheck_seconds=max(1, int(data.get("offline_recheck_seconds", 30))),
        )


@dataclass
class SyncConfig:
    unit_days: int = 7
    chunk_size_units: int = 16
    buffer_units: int = 4
    throttle_ms: int = 2000
    periodic_seconds: int = 60
    timezone: str = "UTC"
    default_past_months: int = 1
    default_future_months: int = 3
    debounce_ms: int = 1000

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        return cls(
            unit_days=max(1, int(data.get("unit_days", 7))),
            chunk_size_units=max(1, int(data.get("chunk_size_units", 16))),
            buffer_units=max(0, int(data.get("buffer_units", 4))),
            throttle_ms=max(0, int(data.get("throttle_ms", 2000))),
            periodic_seconds=max(1, int(data.get("periodic_seconds", 60))),
            timezone=str(data.get("timezone", "UTC")).strip() or "UTC",
            default_past_months=max(0, int(data.get("default_past_months", 1))),
            default_future_months=max(0, int(data.get("default_future_months", 3))),
            debounce_ms=max(0, int(data.get("debounce_ms", 1000))),
        )


@dataclass
class DeletionPolicyConfig:
    warn_min_local: int = 5
    warn_ratio: float = 0.8
    strict_warn_min_local: int = 50
    strict_warn_ratio: float = 0.95
    batch_size: int = 50

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "DeletionPolicyConfig":
        data = data or {}
        return cls(
            warn_min_local=max(0, int(data.get("warn_min_local", 5))),
            warn_ratio=min(1.0, max(0.0, float(data.get("warn_ratio", 0.8)))),
            strict_warn_min_local=max(0, int(data.get("strict_warn_min_local", 50))),
            strict_warn_ratio=min(1.0, max(0.0, float(data.get("strict_warn_ratio", 0.95)))),
            batch_size=max(1, int(data.get("batch_size", 50))),
        )


@dataclass
class CacheConfig:
    secret: str = ""
    ttl_seconds: int = 300
    version: str = "v1"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "CacheConfig":
        data = data or {}
        return cls(
            secret=str(data.get("secret", "")).strip(),
            ttl_seconds=max(1, int(data.get("ttl_seconds", 300))),
            version=str(data.get("version", "v1")).strip() or "v1",
        )


@dataclass
class AppConfig:
    caldav: CalDAVConfig = field(default_factory=CalDAVConfig)
    gateway: GatewayConfig = field(default_factory=GatewayConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    deletion_policy: DeletionPolicyConfig = field(default_factory=DeletionPolicyConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            caldav=CalDAVConfig.from_dict(data.get("caldav")),
            gateway=GatewayConfig.from_dict(data.get("gateway")),
            sync=SyncConfig.from_dict(data.get("sync")),
            deletion_policy=DeletionPolicyConfig.from_dict(data.get("deletion_policy")),
            cache=CacheConfig.from_dict(data.get("cache")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_app_config() -> AppConfig:
    return AppConfig()


@dataclass
class Event:
    id: str
    date: date
    title: str = ""
    memo: str = ""
    end_date: date | None = None
    start_time: str = ""
    end_time: str = ""
    color: str = DEFAULT_EVENT_COLOR
    external_uid: str = ""
    calendar_ref: str = ""
    etag: str = ""
    source: str = SOURCE_MANUAL
    extensions: list[str] = field(default_factory=list)

    @property
    def all_day(self) -> bool:
        return not self.start_time and not self.end_time

    @property
    def last_day(self) -> date:
        return self.end_date or self.date

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["date"] = self.date.isoformat()
        payload["end_date"] = self.end_date.isoformat() if self.end_date else None
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Event":
        event_date = parse_iso_date(data.get("date"))
        if event_date is None:
            raise ValueError("event date is required")
        end_date = parse_iso_date(data.get("end_date"))
        if end_date is not None and end_date <= event_date:
            end_date = None
        extensions = data.get("extensions") or []
        return cls(
            id=str(data.get("id") or new_local_id()),
            date=event_date,
            title=str(data.get("title", "") or ""),
            memo=str(data.get("memo", "") or ""),
            end_date=end_date,
            start_time=normalize_time(data.get("start_time")),
            end_time=normalize_time(data.get("end_time")),
            color=str(data.get("color") or DEFAULT_EVENT_COLOR),
            external_uid=str(data.get("external_uid", "") or "").strip(),
            calendar_ref=normalize_calendar_ref(data.get("calendar_ref")),
            etag=strip_etag(data.get("etag")),
            source=str(data.get("source") or SOURCE_MANUAL),
            extensions=[str(x) for x in extensions],
        )

    def clone(self) -> "Event":
        return Event(
            id=self.id,
            date=self.date,
            title=self.title,
            memo=self.memo,
            end_date=self.end_date,
            start_time=self.start_time,
            end_time=self.end_time,
            color=self.color,
            external_uid=self.external_uid,
            calendar_ref=self.calendar_ref,
            etag=self.etag,
            source=self.source,
            extensions=list(self.extensions),
        )

    def with_updates(self, **kwargs: Any) -> "Event":
        copied = self.clone()
        for key, value in kwargs.items():
            setattr(copied, key, value)
        return copied

    def overlaps(self, start: date, end: date) -> bool:
        return self.date <= end and self.last_day >= start

    def check_times(self) -> None:
        if self.end_time and not self.start_time:
            raise ValueError("end_time requires a start_time")


def strip_etag(value: Any) -> str:
    text = str(value or "").strip()
    if text.startswith("W/"):
        text = text[2:]
    return text.strip('"')


@dataclass
class Todo:
    id: str
    title: str = ""
    completed: bool = False
    date: date | None = None
    position: int = 0

    def clone(self) -> "Todo":
        return Todo(id=self.id, title=self.title, completed=self.completed, date=self.date, position=self.position)


@dataclass
class Routine:
    id: str
    name: str = ""
    icon: str = ""
    color: str = DEFAULT_EVENT_COLOR
    days: list[int] = field(default_factory=list)

    def clone(self) -> "Routine":
        return Routine(id=self.id, name=self.name, icon=self.icon, color=self.color, days=list(self.days))


@dataclass
class RoutineCompletion:
    routine_id: str
    date: date
    completed: bool = True


@dataclass
class CalendarMetadata:
    url: str
    display_name: str = ""
    color: str = DEFAULT_EVENT_COLOR
    is_local: bool = False
    is_visible: bool = True
    type: str = "caldav"
    subscription_url: str = ""
    is_shared: bool = False
    is_subscription: bool = False
    read_only: bool = False
    created_from_app: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CalendarMetadata":
        calendar_type = str(data.get("type", "caldav") or "caldav")
        if calendar_type not in CALENDAR_TYPES:
            calendar_type = "caldav"
        return cls(
            url=normalize_calendar_ref(data.get("url")),
            display_name=str(data.get("display_name", "") or ""),
            color=str(data.get("color") or DEFAULT_EVENT_COLOR),
            is_local=bool(data.get("is_local", False)),
            is_visible=bool(data.get("is_visible", True)),
            type=calendar_type,
            subscription_url=str(data.get("subscription_url", "") or ""),
            is_shared=bool(data.get("is_shared", False)),
            is_subscription=bool(data.get("is_subscription", False)),
            read_only=bool(data.get("read_only", False)),
            created_from_app=bool(data.get("created_from_app", False)),
        )


@dataclass(frozen=True)
class SyncRange:
    start: date
    end: date

    def __post_init__(self) -> None:
        if self.end < self.start:
            raise ValueError(f"range end {self.end} precedes start {self.start}")

    def to_dict(self) -> dict[str, str]:
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}


def add_months(value: date, months: int) -> date:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    # Clamp day to the last day of the target month.
    next_month = date(year + (month // 12), month % 12 + 1, 1)
    last_day = (next_month - timedelta(days=1)).day
    return date(year, month, min(value.day, last_day))


def default_full_window(today: date, past_months: int, future_months: int) -> SyncRange:
    return SyncRange(start=add_months(today, -past_months), end=add_months(today, future_months))


@dataclass(frozen=True)
class HistoryAction:
    category: str
    kind: str
    item: Any = None
    previous: Any = None
    description: str = ""


@dataclass
class SyncResult:
    status: str
    message: str
    duration_ms: int
    synced: int
    deleted: int
    trigger: str
    calendars_failed: int = 0
    run_at: datetime = field(default_factory=utc_now)

    @property
    def ok(self) -> bool:
        return self.status == "success"

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "message": self.message,
            "duration_ms": self.duration_ms,
            "synced": self.synced,
            "deleted": self.deleted,
            "calendars_failed": self.calendars_failed,
            "trigger": self.trigger,
            "run_at": serialize_datetime(self.run_at),
        }
