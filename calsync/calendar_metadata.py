from __future__ import annotations

import logging
import secrets
import threading
import time
from dataclasses import replace
from typing import Any

from calsync.models import CalendarMetadata, calendar_path_key, normalize_calendar_ref
from calsync.state_store import StateStore

logger = logging.getLogger(__name__)


def local_restored_ref() -> str:
    return f"local-restored-{int(time.time() * 1000)}-{secrets.token_hex(5)}"


class CalendarRegistry:
    """Display and configuration records per calendar collection."""

    def __init__(self, state_store: StateStore) -> None:
        self.state_store = state_store
        self._lock = threading.RLock()

    def list(self) -> list[CalendarMetadata]:
        return self.state_store.list_calendar_metadata()

    def get(self, url: str) -> CalendarMetadata | None:
        ref = normalize_calendar_ref(url)
        for item in self.list():
            if item.url == ref:
                return item
        return None

    def upsert(self, metadata: CalendarMetadata) -> CalendarMetadata:
        with self._lock:
            items = self.list()
            for index, item in enumerate(items):
                if item.url == metadata.url:
                    items[index] = metadata
                    break
            else:
                items.append(metadata)
            self.state_store.replace_calendar_metadata(items)
        return metadata

    def update(self, url: str, **changes: Any) -> CalendarMetadata:
        with self._lock:
            current = self.get(url)
            if current is None:
                raise KeyError(url)
            return self.upsert(replace(current, **changes))

    def remove(self, url: str) -> bool:
        ref = normalize_calendar_ref(url)
        with self._lock:
            items = self.list()
            kept = [item for item in items if item.url != ref]
            if len(kept) == len(items):
                return False
            self.state_store.replace_calendar_metadata(kept)
        return True

    def is_read_only(self, url: str) -> bool:
        item = self.get(url)
        return bool(item and (item.read_only or item.is_subscription))

    def reconcile_with_server(self, server_calendars: list[CalendarMetadata]) -> list[CalendarMetadata]:
        """Align local records with the server's live collection list.

        Collections gone from the server are demoted to local calendars when this
        app created them and dropped otherwise. Newly discovered ones are added.
        """
        server_paths = {calendar_path_key(item.url): item for item in server_calendars}
        with self._lock:
            result: list[CalendarMetadata] = []
            known_paths: set[str] = set()
            for item in self.list():
                is_http = item.url.startswith("http")
                if (item.is_local and not is_http) or item.type == "subscription" or item.is_subscription:
                    result.append(item)
                    continue
                path = calendar_path_key(item.url)
                if path in server_paths:
                    known_paths.add(path)
                    result.append(item)
                    continue
                if item.created_from_app:
                    new_ref = local_restored_ref()
                    logger.info("Calendar %r vanished from the server, keeping it as local %s", item.display_name, new_ref)
                    self.state_store.reassign_calendar(item.url, new_ref)
                    result.append(
                        replace(
                            item,
                            url=new_ref,
                            created_from_app=False,
                            is_local=True,
                            type="local",
                        )
                    )
                else:
                    logger.info("Calendar %r vanished from the server, dropping it", item.display_name)
            for path, item in server_paths.items():
                if path not in known_paths:
                    result.append(item)
            self.state_store.replace_calendar_metadata(result)
        return result
