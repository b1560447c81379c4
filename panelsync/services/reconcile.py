"""
Reconciliation service.

Replays the records of a snapshot against a live user panel: accounts whose
credential already exists remotely are updated in place, everything else is
created under the first free username. Runs strictly in file order over one
session and one identity index.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Optional

import config
from panelsync.exceptions import (
    AuthExpired,
    CollisionCeilingReached,
    Conflict,
    MissingIdentifier,
    PanelError,
    PanelUnreachable,
    ReconciliationAborted,
)
from panelsync.identity import IdentityIndex, IndexMutation, MutationKind, normalize_identifier
from panelsync.models.user import ImportBatch, UserRecord
from panelsync.quota import normalize_epoch, refill

logger = logging.getLogger(__name__)

# failures that make every later record fail the same way
FATAL_ERRORS = (AuthExpired, PanelUnreachable)


class RecordState(str, Enum):
    pending = "pending"
    resolved_update = "resolved_update"
    resolved_create = "resolved_create"
    succeeded = "succeeded"
    failed = "failed"


@dataclass
class RecordOutcome:
    position: int
    original_username: str
    username: str = ""
    email: str = ""
    state: RecordState = RecordState.pending
    error: str = ""
    resolved_as: Optional[RecordState] = None

    @property
    def action(self) -> Optional[str]:
        if self.state != RecordState.succeeded:
            return None
        return "updated" if self.resolved_as == RecordState.resolved_update else "created"


@dataclass
class ReconcileSummary:
    total: int = 0
    created: int = 0
    updated: int = 0
    failed: int = 0
    outcomes: list[RecordOutcome] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return self.created + self.updated + self.failed

    @property
    def succeeded(self) -> int:
        return self.created + self.updated


def sanitize_username(value: str, position: int) -> str:
    username = (value or "").lower().replace(" ", "_").strip()
    return username or f"user_{position}"


def prepare_records(records: Iterable[UserRecord], group_ids: Optional[list[int]] = None) -> list[UserRecord]:
    """Copies of `records` with quotas refilled, usage reset and expiries in seconds."""
    prepared = []
    for record in records:
        record = record.model_copy(deep=True)
        if group_ids is not None:
            record.group_ids = list(group_ids)
        refill(record)
        record.expire = normalize_epoch(record.expire)
        prepared.append(record)
    return prepared


class ReconciliationEngine:
    def __init__(self, client, logger: Optional[logging.Logger] = None, attempt_ceiling: Optional[int] = None):
        self.client = client
        self.logger = logger or logging.getLogger(__name__)
        self.attempt_ceiling = attempt_ceiling or config.USERNAME_ATTEMPTS
        self.index: Optional[IdentityIndex] = None

    def reconcile(
        self,
        batch: ImportBatch,
        listing: Optional[list[UserRecord]] = None,
        group_ids: Optional[list[int]] = None,
    ) -> ReconcileSummary:
        """
        Import every record of `batch`.

        `listing` is the panel's current account list; it is fetched when not
        given. `group_ids`, when given, replaces the groups of every record.
        Raises `ReconciliationAborted` carrying the partial summary when the
        panel stops accepting our credentials or cannot be reached at all.
        """
        summary = ReconcileSummary(total=len(batch.records))
        if not batch.count_matches:
            self.logger.warning(
                "Snapshot declares %d user(s) but contains %d; importing %d",
                batch.declared_total,
                len(batch.records),
                len(batch.records),
            )

        records = prepare_records(batch.records, group_ids)

        try:
            self.index = self._build_index(listing)
        except FATAL_ERRORS as exc:
            raise ReconciliationAborted(summary, exc) from exc

        for position, record in enumerate(records, start=1):
            outcome = RecordOutcome(position=position, original_username=record.username)
            summary.outcomes.append(outcome)
            try:
                self._reconcile_one(record, outcome)
            except FATAL_ERRORS as exc:
                if outcome.state == RecordState.succeeded:
                    # the update itself was committed
                    outcome.error = f"updated, but group cleanup was interrupted: {exc}"
                    self._succeed(summary, outcome)
                else:
                    self._fail(summary, outcome, exc)
                raise ReconciliationAborted(summary, exc) from exc
            except PanelError as exc:
                self._fail(summary, outcome, exc)
                continue

            self._succeed(summary, outcome)

        self.logger.info(
            "Import finished: %d created, %d updated, %d failed of %d",
            summary.created,
            summary.updated,
            summary.failed,
            summary.total,
        )
        return summary

    def _succeed(self, summary: ReconcileSummary, outcome: RecordOutcome) -> None:
        outcome.state = RecordState.succeeded
        if outcome.resolved_as == RecordState.resolved_update:
            summary.updated += 1
        else:
            summary.created += 1

    def _fail(self, summary: ReconcileSummary, outcome: RecordOutcome, exc: Exception) -> None:
        outcome.state = RecordState.failed
        outcome.error = str(exc)
        summary.failed += 1
        self.logger.error("[%d/%d] %s failed: %s", outcome.position, summary.total, outcome.username, exc)

    def _build_index(self, listing: Optional[list[UserRecord]]) -> IdentityIndex:
        if listing is not None:
            return IdentityIndex.build(listing)
        try:
            return IdentityIndex.build(self.client.fetch_listing())
        except FATAL_ERRORS:
            raise
        except PanelError as exc:
            self.logger.warning("Could not prefetch existing users: %s", exc)
            return IdentityIndex(stale=True)

    def _refresh_index(self) -> None:
        try:
            listing = self.client.fetch_listing()
        except FATAL_ERRORS:
            raise
        except PanelError as exc:
            self.logger.debug("Unable to refresh users list: %s", exc)
            return
        self.index = IdentityIndex.build(listing)

    def _lookup(self, identifier: str) -> Optional[UserRecord]:
        existing = self.index.lookup(identifier)
        if existing is None and self.index.stale:
            self.logger.debug("Identifier %s not found in stale index, refreshing", identifier)
            self._refresh_index()
            existing = self.index.lookup(identifier)
        return existing

    def _reconcile_one(self, record: UserRecord, outcome: RecordOutcome) -> None:
        original = record.username
        record.username = sanitize_username(original, outcome.position)
        outcome.username = record.username
        outcome.email = record.email or original or f"User_{outcome.position}"
        self.logger.info("[%d] Processing %s (original: %s)", outcome.position, record.username, original)

        identifier = normalize_identifier(record.identifier)
        if not identifier:
            raise MissingIdentifier(record.username)

        existing = self._lookup(identifier)
        if existing is not None:
            outcome.resolved_as = outcome.state = RecordState.resolved_update
            self._update(record, existing, outcome)
        else:
            outcome.resolved_as = outcome.state = RecordState.resolved_create
            self._create(record)
            outcome.username = record.username

    def _update(self, record: UserRecord, existing: UserRecord, outcome: RecordOutcome) -> None:
        self.logger.debug("Found %s under existing username %s", record.identifier, existing.username)
        self.client.update_user(existing.username, record)
        record.id = existing.id
        self.index.apply(IndexMutation(MutationKind.updated, record, previous_username=existing.username))
        outcome.state = RecordState.succeeded

        if not record.group_ids:
            try:
                self.client.clear_user_groups(record.username, user_id=existing.id or None)
            except FATAL_ERRORS:
                raise
            except PanelError as exc:
                self.logger.warning("Could not clear groups of %s: %s", record.username, exc)

    def _create(self, record: UserRecord) -> None:
        base = record.username
        for attempt in range(self.attempt_ceiling):
            candidate = base if attempt == 0 else f"{base}_{attempt}"
            if self.index.lookup_by_username(candidate) is not None:
                self.logger.debug("Username %s already taken, trying next", candidate)
                continue

            record.username = candidate
            try:
                self.client.create_user(record)
            except Conflict:
                self.logger.debug("Panel reports %s already exists, trying next", candidate)
                self.index.apply(IndexMutation(MutationKind.reserved, UserRecord(username=candidate)))
                continue

            if candidate != base:
                self.logger.info("Created %s (renamed from %s)", candidate, base)
            self.index.apply(IndexMutation(MutationKind.created, record))
            return

        raise CollisionCeilingReached(base, self.attempt_ceiling)
