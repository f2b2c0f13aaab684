from __future__ import annotations

import logging
import threading
import traceback
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import TYPE_CHECKING, Callable

from calsync.caldav_client import CalDAVTransport
from calsync.calendar_metadata import CalendarRegistry
from calsync.config_manager import ConfigManager
from calsync.gateway import (
    ConnectivityMonitor,
    CredentialProvider,
    Gateway,
    GatewayError,
    OfflineError,
    ProxyTransport,
    UnauthorizedError,
)
from calsync.ics_codec import resolve_timezone
from calsync.models import (
    DEFAULT_EVENT_COLOR,
    AppConfig,
    CalendarMetadata,
    SyncRange,
    SyncResult,
    default_full_window,
    normalize_calendar_ref,
)
from calsync.protocol import DeltaResult, ProtocolAdapter
from calsync.reconciler import Reconciler
from calsync.state_store import StateStore
from calsync.subscription import SubscriptionFeed
from calsync.token_store import SyncTokenStore

if TYPE_CHECKING:
    from calsync.local_store import LocalStore

logger = logging.getLogger(__name__)


@dataclass
class CalendarOutcome:
    calendar_ref: str
    synced: int
    deleted: int
    mode: str


class SyncEngine:
    """One synchronization pass over the selected calendars.

    At most one pass runs at a time; an overlapping call returns a ``skipped``
    result immediately instead of queueing.
    """

    def __init__(
        self,
        config_manager: ConfigManager,
        state_store: StateStore,
        adapter_factory: Callable[[AppConfig], ProtocolAdapter] | None = None,
        subscription_feed: SubscriptionFeed | None = None,
        today: Callable[[], date] | None = None,
    ) -> None:
        self.config_manager = config_manager
        self.state_store = state_store
        self.calendars = CalendarRegistry(state_store)
        self.monitor = ConnectivityMonitor()
        self.local_store: LocalStore | None = None
        self._adapter_factory = adapter_factory or self._build_adapter
        self._subscription_feed = subscription_feed
        self._today = today or (lambda: datetime.now(timezone.utc).date())
        self._run_lock = threading.Lock()

    def _build_adapter(self, config: AppConfig) -> ProtocolAdapter:
        self.monitor.recheck_seconds = config.gateway.offline_recheck_seconds
        if config.gateway.mode == "proxy":
            transport = ProxyTransport(config.gateway)
        else:
            transport = CalDAVTransport(timeout_seconds=config.gateway.timeout_seconds)
        gateway = Gateway(transport, CredentialProvider(self.config_manager), self.monitor)
        return ProtocolAdapter(gateway, resolve_timezone(config.sync.timezone))

    def adapter(self) -> ProtocolAdapter:
        return self._adapter_factory(self.config_manager.load())

    @property
    def in_progress(self) -> bool:
        return self._run_lock.locked()

    def default_window(self, config: AppConfig) -> SyncRange:
        return default_full_window(
            self._today(),
            config.sync.default_past_months,
            config.sync.default_future_months,
        )

    def refresh_calendars(self) -> list[CalendarMetadata]:
        discovered = self.adapter().discover_calendars()
        return self.calendars.reconcile_with_server(discovered)

    def run_once(
        self,
        trigger: str = "manual",
        sync_range: SyncRange | None = None,
        force_full: bool = False,
    ) -> SyncResult:
        if not self._run_lock.acquire(blocking=False):
            logger.debug("Sync pass already in flight, ignoring %s trigger", trigger)
            return SyncResult(
                status="skipped",
                message="sync already in progress",
                duration_ms=0,
                synced=0,
                deleted=0,
                trigger=trigger,
            )
        try:
            return self._run_locked(trigger, sync_range, force_full)
        finally:
            self._run_lock.release()

    def _run_locked(self, trigger: str, sync_range: SyncRange | None, force_full: bool) -> SyncResult:
        started_at = datetime.now(timezone.utc)
        config = self.config_manager.load()
        if not config.caldav.enabled or not config.caldav.server_url or not config.caldav.username:
            return SyncResult("skipped", "CalDAV sync is disabled.", 0, 0, 0, trigger)
        calendar_refs = list(dict.fromkeys(config.caldav.selected_calendar_urls))
        if not calendar_refs:
            return SyncResult("skipped", "No calendars selected.", 0, 0, 0, trigger)

        run_id = self.state_store.start_sync_run(trigger=trigger)
        synced = 0
        deleted = 0
        failed = 0
        offline = 0
        try:
            adapter = self._adapter_factory(config)
            tokens = SyncTokenStore(self.state_store, config.caldav.server_url, config.caldav.username)
            reconciler = Reconciler(self.state_store, config.deletion_policy)
            metadata = {item.url: item for item in self.calendars.list()}
            for ref in calendar_refs:
                try:
                    outcome = self._sync_calendar(
                        adapter=adapter,
                        reconciler=reconciler,
                        tokens=tokens,
                        calendar_ref=ref,
                        metadata=metadata.get(normalize_calendar_ref(ref)),
                        config=config,
                        sync_range=sync_range,
                        force_full=force_full,
                        run_id=run_id,
                    )
                except UnauthorizedError:
                    # Later calendars would only hit the same revoked credential.
                    raise
                except OfflineError:
                    offline += 1
                    logger.debug("Offline while syncing %s", ref)
                    continue
                except Exception as exc:
                    failed += 1
                    logger.warning("Sync failed for %s: %s", ref, exc)
                    self.state_store.record_audit_event(
                        calendar_ref=ref,
                        uid="sync",
                        action="calendar_error",
                        details={"trigger": trigger, "error": f"{type(exc).__name__}: {exc}"},
                        run_id=run_id,
                    )
                    continue
                synced += outcome.synced
                deleted += outcome.deleted

            duration_ms = int((datetime.now(timezone.utc) - started_at).total_seconds() * 1000)
            all_failed = failed + offline == len(calendar_refs)
            status = "error" if all_failed else "success"
            if offline and all_failed:
                message = "Network is offline"
            else:
                message = f"Synced {synced} events, deleted {deleted} across {len(calendar_refs)} calendars."
                if failed or offline:
                    message += f" {failed + offline} calendars failed."
            self.state_store.finish_sync_run(
                run_id=run_id,
                status=status,
                message=message,
                duration_ms=duration_ms,
                synced=synced,
                deleted=deleted,
                calendars_failed=failed + offline,
            )
            if status == "success":
                self.config_manager.record_last_sync(started_at.isoformat())
                self._refresh_local_store(sync_range or self.default_window(config))
            return SyncResult(
                status=status,
                message=f"{message} run_id={run_id}",
                duration_ms=duration_ms,
                synced=synced,
                deleted=deleted,
                trigger=trigger,
                calendars_failed=failed + offline,
            )
        except Exception as exc:
            duration_ms = int((datetime.now(timezone.utc) - started_at).total_seconds() * 1000)
            error_message = f"{type(exc).__name__}: {exc}"
            if isinstance(exc, UnauthorizedError):
                logger.warning("Sync aborted, credentials rejected: %s", exc)
            else:
                logger.exception("Sync pass failed")
            self.state_store.finish_sync_run(
                run_id=run_id,
                status="error",
                message=error_message,
                duration_ms=duration_ms,
                synced=synced,
                deleted=deleted,
                calendars_failed=failed + offline,
            )
            self.state_store.record_audit_event(
                calendar_ref="system",
                uid="sync",
                action="run_error",
                details={
                    "trigger": trigger,
                    "error": error_message,
                    "traceback": traceback.format_exc(limit=5),
                },
                run_id=run_id,
            )
            return SyncResult(
                status="error",
                message=error_message,
                duration_ms=duration_ms,
                synced=synced,
                deleted=deleted,
                trigger=trigger,
                calendars_failed=failed + offline,
            )

    def _refresh_local_store(self, sync_range: SyncRange) -> None:
        if self.local_store is None:
            return
        self.local_store.apply_server_load(
            sync_range,
            self.state_store.list_events_in_range(sync_range.start, sync_range.end),
        )

    def _sync_calendar(
        self,
        *,
        adapter: ProtocolAdapter,
        reconciler: Reconciler,
        tokens: SyncTokenStore,
        calendar_ref: str,
        metadata: CalendarMetadata | None,
        config: AppConfig,
        sync_range: SyncRange | None,
        force_full: bool,
        run_id: int,
    ) -> CalendarOutcome:
        ref = normalize_calendar_ref(calendar_ref)
        color = metadata.color if metadata else DEFAULT_EVENT_COLOR
        window = sync_range or self.default_window(config)

        if metadata is not None and metadata.is_subscription:
            return self._sync_subscription(reconciler, ref, metadata, config, window, run_id)

        delta: DeltaResult | None = None
        token = None if force_full else tokens.get(ref)
        if token:
            try:
                delta = adapter.fetch_delta(ref, token, expansion_range=window, default_color=color)
            except (UnauthorizedError, OfflineError):
                raise
            except GatewayError as exc:
                logger.warning("Delta sync failed for %s, falling back to full fetch: %s", ref, exc)
                delta = None
        if delta is not None and delta.has_deletions:
            logger.info("Delta for %s reports deletions, running a full fetch", ref)
            delta = None

        if delta is not None:
            records = delta.events
            full_range = None
        else:
            full_range = window
            records = adapter.fetch_events(ref, full_range, default_color=color)

        stats = reconciler.merge(ref, records)
        deleted = 0
        if full_range is not None:
            deleted = reconciler.delete_removed(ref, records, full_range, run_id=run_id)

        # The token only moves once this calendar's merge has completed.
        next_token = delta.sync_token if delta is not None else None
        if next_token is None and full_range is not None:
            try:
                next_token = adapter.fetch_sync_token(ref)
            except (UnauthorizedError, OfflineError):
                raise
            except GatewayError as exc:
                logger.warning("Could not fetch a fresh sync token for %s: %s", ref, exc)
        if next_token:
            tokens.set(ref, next_token)

        return CalendarOutcome(
            calendar_ref=ref,
            synced=stats.synced,
            deleted=deleted,
            mode="delta" if delta is not None else "full",
        )

    def _sync_subscription(
        self,
        reconciler: Reconciler,
        ref: str,
        metadata: CalendarMetadata,
        config: AppConfig,
        window: SyncRange,
        run_id: int,
    ) -> CalendarOutcome:
        feed = self._subscription_feed or SubscriptionFeed(
            timeout_seconds=config.gateway.timeout_seconds,
            tz=resolve_timezone(config.sync.timezone),
        )
        records = feed.fetch(metadata.subscription_url or ref, window, color=metadata.color)
        if records is None:
            raise GatewayError(f"Subscription feed unavailable: {ref}", code="FEED_UNAVAILABLE")
        stats = reconciler.merge(ref, records)
        deleted = reconciler.delete_removed(ref, records, window, run_id=run_id)
        return CalendarOutcome(calendar_ref=ref, synced=stats.synced, deleted=deleted, mode="subscription")
