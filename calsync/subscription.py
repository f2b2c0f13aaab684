from __future__ import annotations

import logging
from datetime import timezone, tzinfo

import requests

from calsync.ics_codec import CodecError, events_from_ics
from calsync.models import SOURCE_REMOTE, Event, SyncRange, normalize_calendar_ref

logger = logging.getLogger(__name__)

SUBSCRIPTION_COLOR = "#EF4444"


def _feed_url(url: str) -> str:
    if url.startswith("webcal://"):
        return "https://" + url[len("webcal://") :]
    return url


class SubscriptionFeed:
    """Read-only calendar published as a single ``.ics`` document."""

    def __init__(self, timeout_seconds: int = 30, tz: tzinfo = timezone.utc) -> None:
        self.timeout_seconds = timeout_seconds
        self.tz = tz

    def fetch(self, url: str, sync_range: SyncRange, color: str = SUBSCRIPTION_COLOR) -> list[Event] | None:
        """Events of the feed inside ``sync_range``, or ``None`` when the feed could not be read."""
        try:
            response = requests.get(_feed_url(url), timeout=self.timeout_seconds)
            response.raise_for_status()
        except requests.RequestException as exc:
            logger.warning("Subscription fetch failed for %s: %s", url, exc)
            return None
        try:
            return events_from_ics(
                response.content,
                sync_range=sync_range,
                calendar_ref=normalize_calendar_ref(url),
                default_color=color,
                tz=self.tz,
                source=SOURCE_REMOTE,
            )
        except CodecError as exc:
            logger.warning("Subscription feed %s is not a calendar: %s", url, exc)
            return None
