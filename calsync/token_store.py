from __future__ import annotations

import json
import logging
import threading

from calsync.models import normalize_calendar_ref
from calsync.state_store import StateStore

logger = logging.getLogger(__name__)

TOKEN_KEY_PREFIX = "caldavSyncTokens"


def token_store_key(server_url: str, username: str) -> str:
    return f"{TOKEN_KEY_PREFIX}:{server_url}:{username}"


class SyncTokenStore:
    """Per-principal map of calendar ref to opaque sync token, persisted in ``app_meta``."""

    def __init__(self, state_store: StateStore, server_url: str, username: str) -> None:
        self.state_store = state_store
        self.key = token_store_key(server_url, username)
        self._lock = threading.Lock()

    def load(self) -> dict[str, str]:
        raw = self.state_store.get_meta(self.key)
        if not raw:
            return {}
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Discarding unreadable sync token map for %s", self.key)
            return {}
        if not isinstance(data, dict):
            return {}
        return {normalize_calendar_ref(k): str(v) for k, v in data.items() if v}

    def get(self, calendar_ref: str) -> str | None:
        return self.load().get(normalize_calendar_ref(calendar_ref))

    def set(self, calendar_ref: str, token: str | None) -> None:
        ref = normalize_calendar_ref(calendar_ref)
        with self._lock:
            tokens = self.load()
            if token:
                tokens[ref] = token
            else:
                tokens.pop(ref, None)
            self.state_store.set_meta(self.key, json.dumps(tokens, sort_keys=True))

    def clear(self) -> None:
        with self._lock:
            self.state_store.set_meta(self.key, json.dumps({}))
