"""
Inbound import service.

Listeners are matched against the panel by tag or port. A match is updated
with its client list rewritten in full; anything else is created.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from panelsync.exceptions import AuthExpired, PanelError, PanelUnreachable, ReconciliationAborted
from panelsync.identity import ListenerIndex
from panelsync.models.inbound import InboundBatch, InboundRecord, PanelInbound
from panelsync.quota import refill
from panelsync.services.reconcile import RecordOutcome, RecordState, ReconcileSummary

logger = logging.getLogger(__name__)


@dataclass
class InboundImportSummary(ReconcileSummary):
    total_users: int = 0
    updated_ids: list[int] = field(default_factory=list)


def prepare_inbounds(inbounds: list[InboundRecord]) -> list[InboundRecord]:
    prepared = []
    for inbound in inbounds:
        inbound = inbound.model_copy(deep=True)
        for client in inbound.clients:
            refill(client)
        prepared.append(inbound)
    return prepared


class InboundReconciler:
    def __init__(self, client, logger: Optional[logging.Logger] = None):
        self.client = client
        self.logger = logger or logging.getLogger(__name__)
        self.index: Optional[ListenerIndex] = None

    def reconcile(self, batch: InboundBatch, existing: Optional[list[PanelInbound]] = None) -> InboundImportSummary:
        summary = InboundImportSummary(total=len(batch.inbounds), total_users=batch.total_users)
        inbounds = prepare_inbounds(batch.inbounds)

        try:
            if existing is None:
                existing = self.client.fetch_inbounds()
        except (AuthExpired, PanelUnreachable) as exc:
            raise ReconciliationAborted(summary, exc) from exc
        self.index = ListenerIndex.build(existing)
        self.logger.debug("Found %d existing inbound(s)", len(existing))

        for position, inbound in enumerate(inbounds, start=1):
            outcome = RecordOutcome(position=position, original_username=inbound.remark, username=inbound.remark)
            summary.outcomes.append(outcome)
            self.logger.info("[%d/%d] Processing %s (port %d)", position, summary.total, inbound.remark, inbound.port)
            try:
                self._reconcile_one(inbound, outcome, summary)
            except (AuthExpired, PanelUnreachable) as exc:
                self._fail(summary, outcome, exc)
                raise ReconciliationAborted(summary, exc) from exc
            except PanelError as exc:
                self._fail(summary, outcome, exc)

        self.logger.info(
            "Inbound import finished: %d created, %d updated, %d failed of %d",
            summary.created,
            summary.updated,
            summary.failed,
            summary.total,
        )
        return summary

    def _fail(self, summary: InboundImportSummary, outcome: RecordOutcome, exc: Exception) -> None:
        outcome.state = RecordState.failed
        outcome.error = str(exc)
        summary.failed += 1
        self.logger.error("Inbound %s failed: %s", outcome.username, exc)

    def _reconcile_one(self, inbound: InboundRecord, outcome: RecordOutcome, summary: InboundImportSummary) -> None:
        match = self.index.match(inbound.port, inbound.tag)
        if match is not None:
            outcome.resolved_as = outcome.state = RecordState.resolved_update
            self.logger.debug("Port/tag conflict, updating inbound %d", match)
            self.client.update_inbound(match, inbound)
            self.index.replace(match, inbound.port, inbound.tag)
            summary.updated += 1
            summary.updated_ids.append(match)
        else:
            outcome.resolved_as = outcome.state = RecordState.resolved_create
            new_id = self.client.add_inbound(inbound)
            self.index.register(new_id or inbound.id, inbound.port, inbound.tag)
            summary.created += 1
        outcome.state = RecordState.succeeded
