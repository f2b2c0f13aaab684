from __future__ import annotations

import base64
import json
import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Protocol

import requests

from calsync.config_manager import ConfigManager
from calsync.models import GatewayConfig, parse_iso_datetime, serialize_datetime, utc_now

logger = logging.getLogger(__name__)

ACTIONS = {
    "listCalendars",
    "fetchEvents",
    "getSyncToken",
    "syncCollection",
    "createEvent",
    "updateEvent",
    "deleteEvent",
    "createCalendar",
    "deleteCalendar",
}

REFRESH_MARGIN = timedelta(seconds=60)
REJECT_MARGIN = timedelta(seconds=30)


class GatewayError(RuntimeError):
    def __init__(self, message: str, *, code: str = "GATEWAY_ERROR", status: int | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.status = status


class OfflineError(GatewayError):
    def __init__(self, message: str = "Network is offline") -> None:
        super().__init__(message, code="OFFLINE")


class UnauthorizedError(GatewayError):
    def __init__(self, message: str = "Unauthorized") -> None:
        super().__init__(message, code="UNAUTHORIZED", status=401)


@dataclass
class Credentials:
    server_url: str
    username: str
    password: str
    session_token: str = ""
    session_expires_at: datetime | None = None

    @property
    def principal(self) -> str:
        return f"{self.server_url}:{self.username}"


@dataclass
class GatewayRequest:
    action: str
    server_url: str
    calendar_ref: str | None = None
    payload: dict[str, Any] | None = None

    def to_dict(self, credentials: Credentials) -> dict[str, Any]:
        body: dict[str, Any] = {
            "serverUrl": self.server_url,
            "credentials": {"username": credentials.username, "password": credentials.password},
            "action": self.action,
        }
        if self.calendar_ref is not None:
            body["calendarRef"] = self.calendar_ref
        if self.payload is not None:
            body["payload"] = self.payload
        return body


class Transport(Protocol):
    def send(self, request: GatewayRequest, credentials: Credentials) -> dict[str, Any]:
        ...


def _jwt_expiry(token: str) -> datetime | None:
    parts = token.split(".")
    if len(parts) != 3:
        return None
    padded = parts[1] + "=" * (-len(parts[1]) % 4)
    try:
        claims = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")))
    except (ValueError, UnicodeDecodeError):
        return None
    exp = claims.get("exp") if isinstance(claims, dict) else None
    if not isinstance(exp, (int, float)):
        return None
    return datetime.fromtimestamp(exp, tz=timezone.utc)


class ConnectivityMonitor:
    """Tracks whether the network looked reachable on the last call.

    After ``recheck_seconds`` an offline monitor lets one call through again.
    """

    def __init__(self, recheck_seconds: float = 30) -> None:
        self.recheck_seconds = recheck_seconds
        self._lock = threading.Lock()
        self._offline_since: float | None = None

    def is_online(self) -> bool:
        with self._lock:
            if self._offline_since is None:
                return True
            return time.monotonic() - self._offline_since >= self.recheck_seconds

    def mark_offline(self) -> None:
        with self._lock:
            self._offline_since = time.monotonic()

    def mark_online(self) -> None:
        with self._lock:
            self._offline_since = None


class CredentialProvider:
    def __init__(self, config_manager: ConfigManager) -> None:
        self.config_manager = config_manager
        self._lock = threading.Lock()

    def _load(self) -> Credentials:
        config = self.config_manager.load()
        token = config.gateway.session_token
        expires_at = parse_iso_datetime(config.gateway.session_expires_at) if token else None
        if token and expires_at is None:
            expires_at = _jwt_expiry(token)
        return Credentials(
            server_url=config.caldav.server_url,
            username=config.caldav.username,
            password=config.caldav.password,
            session_token=token,
            session_expires_at=expires_at,
        )

    def get(self) -> Credentials:
        with self._lock:
            credentials = self._load()
            if credentials.session_token and credentials.session_expires_at is not None:
                if credentials.session_expires_at - utc_now() < REFRESH_MARGIN:
                    credentials = self._refresh_locked(credentials)
                if credentials.session_expires_at is not None and (
                    credentials.session_expires_at - utc_now() < REJECT_MARGIN
                ):
                    raise UnauthorizedError("Session expired")
            return credentials

    def refresh(self) -> Credentials:
        with self._lock:
            return self._refresh_locked(self._load())

    def _refresh_locked(self, current: Credentials) -> Credentials:
        gateway = self.config_manager.load().gateway
        if not gateway.refresh_url or not current.session_token:
            # Nothing to exchange; reread settings in case the secret was rotated.
            return self._load()
        try:
            response = requests.post(
                gateway.refresh_url,
                headers={"Authorization": f"Bearer {current.session_token}"},
                timeout=gateway.timeout_seconds,
            )
        except requests.ConnectionError as exc:
            raise OfflineError(f"Network is offline: {exc}") from exc
        except requests.RequestException as exc:
            raise GatewayError(f"Session refresh failed: {exc}", code="REFRESH_FAILED") from exc
        if response.status_code == 401:
            raise UnauthorizedError("Session refresh rejected")
        if not response.ok:
            raise GatewayError(
                f"Session refresh failed: HTTP {response.status_code}",
                code="REFRESH_FAILED",
                status=response.status_code,
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise GatewayError("Session refresh returned invalid JSON", code="REFRESH_FAILED") from exc
        if not isinstance(payload, dict):
            raise GatewayError("Session refresh returned invalid JSON", code="REFRESH_FAILED")
        token = str(payload.get("access_token", "")).strip()
        if not token:
            raise UnauthorizedError("Session refresh returned no token")
        expires_at = _jwt_expiry(token)
        raw_expiry = payload.get("expires_at")
        if isinstance(raw_expiry, (int, float)):
            expires_at = datetime.fromtimestamp(raw_expiry, tz=timezone.utc)
        self.config_manager.update(
            {
                "gateway": {
                    "session_token": token,
                    "session_expires_at": serialize_datetime(expires_at) or "",
                }
            }
        )
        logger.info("Gateway session refreshed")
        return self._load()


class ProxyTransport:
    """Forwards gateway requests to a remote proxy endpoint as JSON."""

    def __init__(self, config: GatewayConfig) -> None:
        self.config = config

    def send(self, request: GatewayRequest, credentials: Credentials) -> dict[str, Any]:
        if not self.config.proxy_url:
            raise GatewayError("Gateway proxy_url is not configured.", code="CONFIG")
        headers = {"Content-Type": "application/json"}
        if credentials.session_token:
            headers["Authorization"] = f"Bearer {credentials.session_token}"
        try:
            response = requests.post(
                self.config.proxy_url,
                headers=headers,
                json=request.to_dict(credentials),
                timeout=self.config.timeout_seconds,
            )
        except requests.ConnectionError as exc:
            raise OfflineError(f"Network is offline: {exc}") from exc
        except requests.Timeout as exc:
            raise GatewayError(f"Gateway timeout: {exc}", code="TIMEOUT") from exc
        if response.status_code == 401:
            raise UnauthorizedError()
        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if not response.ok:
            message = payload.get("error") if isinstance(payload, dict) else None
            raise GatewayError(
                str(message or f"HTTP {response.status_code}: {response.text[:300]}"),
                code="HTTP_ERROR",
                status=response.status_code,
            )
        if not isinstance(payload, dict):
            raise GatewayError("Gateway response root must be an object.", code="BAD_RESPONSE")
        return payload


class Gateway:
    """Single outbound call path for every protocol action."""

    def __init__(
        self,
        transport: Transport,
        credentials: CredentialProvider,
        monitor: ConnectivityMonitor | None = None,
    ) -> None:
        self.transport = transport
        self.credentials = credentials
        self.monitor = monitor or ConnectivityMonitor()

    def call(
        self,
        action: str,
        calendar_ref: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        if action not in ACTIONS:
            raise GatewayError(f"Unsupported gateway action: {action}", code="BAD_ACTION")
        if not self.monitor.is_online():
            raise OfflineError()
        try:
            credentials = self.credentials.get()
            request = GatewayRequest(
                action=action,
                server_url=credentials.server_url,
                calendar_ref=calendar_ref,
                payload=payload,
            )
            try:
                result = self.transport.send(request, credentials)
            except UnauthorizedError:
                logger.info("Gateway %s unauthorized, refreshing credentials once", action)
                credentials = self.credentials.refresh()
                result = self.transport.send(request, credentials)
        except OfflineError:
            self.monitor.mark_offline()
            raise
        self.monitor.mark_online()
        return result
