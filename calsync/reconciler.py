from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable

from calsync.models import SOURCE_REMOTE, DeletionPolicyConfig, Event, SyncRange, new_local_id, normalize_calendar_ref
from calsync.state_store import StateStore

logger = logging.getLogger(__name__)

MERGE_FIELD_ORDER = ("title", "date", "memo", "start_time", "end_time", "end_date", "color", "etag", "extensions")


@dataclass
class MergeOutcome:
    action: str
    event: Event
    changed_fields: list[str] = field(default_factory=list)


@dataclass
class MergeStats:
    created: int = 0
    updated: int = 0
    attached: int = 0
    unchanged: int = 0
    duplicates: int = 0
    failed: int = 0

    @property
    def synced(self) -> int:
        return self.created + self.updated + self.attached

    def add(self, outcome: MergeOutcome) -> None:
        counter = {
            "created": "created",
            "updated": "updated",
            "attached": "attached",
            "unchanged": "unchanged",
            "duplicate": "duplicates",
        }[outcome.action]
        setattr(self, counter, getattr(self, counter) + 1)


@dataclass(frozen=True)
class DeletionDecision:
    candidates: list[Event]
    blocked: bool
    reason: str
    ratio: float = 0.0
    warning: str = ""


def identity_key(event: Event) -> str:
    if event.external_uid:
        return event.external_uid
    return f"{event.title}|{event.date.isoformat()}|{event.start_time}|{event.end_time}"


def diff_fields(current: Event, incoming: Event) -> dict[str, Any]:
    changes: dict[str, Any] = {}
    for name in MERGE_FIELD_ORDER:
        new_value = getattr(incoming, name)
        if getattr(current, name) != new_value:
            changes[name] = new_value
    return changes


def evaluate_deletions(
    local: list[Event],
    fetched: list[Event],
    policy: DeletionPolicyConfig,
) -> DeletionDecision:
    """Decide which local sync-origin events a full fetch says were removed.

    An empty fetch never deletes anything. A high removal ratio only warns.
    """
    if not fetched:
        return DeletionDecision(candidates=[], blocked=bool(local), reason="empty_fetch")
    fetched_keys = {identity_key(event) for event in fetched}
    candidates = [event for event in local if identity_key(event) not in fetched_keys]
    if not candidates:
        return DeletionDecision(candidates=[], blocked=False, reason="nothing_removed")
    ratio = len(candidates) / len(local) if local else 0.0
    warning = ""
    if len(local) >= policy.strict_warn_min_local and ratio > policy.strict_warn_ratio:
        warning = (
            f"Deleting {len(candidates)} of {len(local)} local events ({ratio:.0%}); "
            "this looks like a near-total wipe"
        )
    elif len(local) >= policy.warn_min_local and ratio > policy.warn_ratio:
        warning = f"Deleting {len(candidates)} of {len(local)} local events ({ratio:.0%})"
    return DeletionDecision(candidates=candidates, blocked=False, reason="removed", ratio=ratio, warning=warning)


class Reconciler:
    def __init__(self, repository: StateStore, policy: DeletionPolicyConfig | None = None) -> None:
        self.repository = repository
        self.policy = policy or DeletionPolicyConfig()

    def merge_record(self, incoming: Event, calendar_ref: str) -> MergeOutcome:
        ref = normalize_calendar_ref(calendar_ref)
        record = incoming.with_updates(calendar_ref=ref, source=SOURCE_REMOTE)
        if record.external_uid:
            existing = self.repository.find_by_uid(record.external_uid, ref)
            if existing is not None:
                changes = diff_fields(existing, record)
                if not changes:
                    return MergeOutcome(action="unchanged", event=existing)
                self.repository.update_event_fields(existing.id, changes)
                return MergeOutcome(
                    action="updated",
                    event=existing.with_updates(**changes),
                    changed_fields=list(changes),
                )
            legacy = self.repository.find_legacy_match(
                title=record.title,
                event_date=record.date,
                start_time=record.start_time,
                end_time=record.end_time,
                calendar_ref=ref,
            )
            if legacy is not None:
                changes = {"external_uid": record.external_uid}
                changes.update(diff_fields(legacy, record))
                self.repository.update_event_fields(legacy.id, changes)
                return MergeOutcome(
                    action="attached",
                    event=legacy.with_updates(**changes),
                    changed_fields=list(changes),
                )
        elif self.repository.exists_by_fields(record):
            return MergeOutcome(action="duplicate", event=record)

        created = self.repository.insert_event(record.with_updates(id=new_local_id()))
        return MergeOutcome(action="created", event=created)

    def merge(self, calendar_ref: str, records: Iterable[Event]) -> MergeStats:
        stats = MergeStats()
        for record in records:
            try:
                outcome = self.merge_record(record, calendar_ref)
            except (ValueError, KeyError) as exc:
                stats.failed += 1
                logger.warning("Skipping record %s in %s: %s", record.external_uid or record.title, calendar_ref, exc)
                continue
            stats.add(outcome)
        return stats

    def delete_removed(
        self,
        calendar_ref: str,
        fetched: list[Event],
        sync_range: SyncRange,
        run_id: int | None = None,
    ) -> int:
        """Remove local sync-origin events in ``sync_range`` that a full fetch no longer returns."""
        ref = normalize_calendar_ref(calendar_ref)
        local = self.repository.list_sync_origin_in_range(ref, sync_range.start, sync_range.end)
        decision = evaluate_deletions(local, fetched, self.policy)
        if decision.blocked:
            logger.warning(
                "Skipping deletion check for %s: server returned no events but %s exist locally",
                ref,
                len(local),
            )
            self.repository.record_audit_event(
                calendar_ref=ref,
                uid="sync",
                action="deletion_blocked",
                details={"reason": decision.reason, "local_count": len(local), **sync_range.to_dict()},
                run_id=run_id,
            )
            return 0
        if not decision.candidates:
            return 0
        if decision.warning:
            logger.warning("%s in %s", decision.warning, ref)

        deleted = 0
        batch_size = max(1, self.policy.batch_size)
        for offset in range(0, len(decision.candidates), batch_size):
            batch = decision.candidates[offset : offset + batch_size]
            try:
                deleted += self.repository.delete_events(event.id for event in batch)
            except Exception:
                logger.exception("Deleting batch %s-%s for %s failed", offset, offset + len(batch), ref)
                continue
        self.repository.record_audit_event(
            calendar_ref=ref,
            uid="sync",
            action="remote_deletions",
            details={
                "candidates": len(decision.candidates),
                "deleted": deleted,
                "local_count": len(local),
                "ratio": round(decision.ratio, 4),
                "warning": decision.warning,
                "uids": [identity_key(event) for event in decision.candidates[:100]],
            },
            run_id=run_id,
        )
        return deleted
