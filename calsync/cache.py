from __future__ import annotations

import base64
import json
import logging
import time
from typing import Any, Callable

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from calsync.models import CacheConfig
from calsync.state_store import StateStore

logger = logging.getLogger(__name__)

KDF_SALT = b"calsync-cache-salt"
KDF_ITERATIONS = 100_000
GENERATED_KEY_META = "cache_generated_key"

CORE_SNAPSHOT = "core"


def derive_key(secret: str) -> bytes:
    kdf = PBKDF2HMAC(algorithm=hashes.SHA256(), length=32, salt=KDF_SALT, iterations=KDF_ITERATIONS)
    return base64.urlsafe_b64encode(kdf.derive(secret.encode("utf-8")))


def cache_key(version: str, principal: str, purpose: str) -> str | None:
    if not principal:
        return None
    return f"{version}:{principal}:{purpose}"


class SnapshotCache:
    """Encrypted, time-limited snapshots scoped per principal and purpose.

    Reads never raise: a missing, expired, or undecryptable entry reads as ``None``.
    """

    def __init__(
        self,
        state_store: StateStore,
        config: CacheConfig,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.state_store = state_store
        self.config = config
        self.clock = clock
        self._fernet = Fernet(self._key_material())

    def _key_material(self) -> bytes:
        if self.config.secret:
            return derive_key(self.config.secret)
        stored = self.state_store.get_meta(GENERATED_KEY_META)
        if stored:
            return stored.encode("ascii")
        generated = Fernet.generate_key()
        self.state_store.set_meta(GENERATED_KEY_META, generated.decode("ascii"))
        return generated

    def write(self, principal: str, purpose: str, data: Any) -> bool:
        key = cache_key(self.config.version, principal, purpose)
        if key is None:
            return False
        envelope = {"savedAt": int(self.clock() * 1000), "data": data}
        token = self._fernet.encrypt(json.dumps(envelope, ensure_ascii=False).encode("utf-8"))
        self.state_store.set_cache_entry(key, token.decode("ascii"))
        return True

    def read(self, principal: str, purpose: str, ttl_seconds: float | None = None) -> Any | None:
        key = cache_key(self.config.version, principal, purpose)
        if key is None:
            return None
        raw = self.state_store.get_cache_entry(key)
        if not raw:
            return None
        try:
            envelope = json.loads(self._fernet.decrypt(raw.encode("ascii")))
        except (InvalidToken, ValueError, UnicodeError):
            logger.debug("Ignoring undecryptable cache entry %s", key)
            return None
        if not isinstance(envelope, dict) or not envelope.get("savedAt"):
            return None
        ttl = self.config.ttl_seconds if ttl_seconds is None else ttl_seconds
        age_ms = self.clock() * 1000 - float(envelope["savedAt"])
        if age_ms > ttl * 1000:
            return None
        return envelope.get("data")

    def invalidate(self, principal: str, purpose: str) -> None:
        key = cache_key(self.config.version, principal, purpose)
        if key is not None:
            self.state_store.delete_cache_entry(key)
