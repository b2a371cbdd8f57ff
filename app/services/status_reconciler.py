"""Campaign status reconciler.

Recomputes ``total_count`` / ``sent_count`` / ``failed_count`` from the task
rows and derives the campaign status from them. The stored aggregates are a
cache: they are overwritten on every pass, never incremented, so a missed or
failed pass heals on the next one.

Status derivation (``derive_status``):
  processed >= total and total > 0  -> completed
  0 < processed < total             -> in_progress
  otherwise                         -> unchanged

``completed`` and ``paused`` campaigns are never moved by the automatic path.
"""
from __future__ import annotations

from dataclasses import dataclass

from app.errors import TaskStoreError
from app.models.db.enums import CampaignStatus, TaskStatus
from app.services.task_store import TaskStore
from app.utils import get_logger

logger = get_logger(__name__)

# statuses the automatic pass leaves alone
FROZEN_CAMPAIGN_STATUSES = frozenset({CampaignStatus.COMPLETED, CampaignStatus.PAUSED})


def derive_status(current: CampaignStatus, sent: int, failed: int, total: int) -> CampaignStatus:
    processed = sent + failed
    if total > 0 and processed >= total:
        return CampaignStatus.COMPLETED
    if 0 < processed < total:
        return CampaignStatus.IN_PROGRESS
    return current


@dataclass(slots=True)
class ReconcileOutcome:
    campaign_id: int
    previous_status: CampaignStatus | None
    status: CampaignStatus | None
    total: int = 0
    sent: int = 0
    failed: int = 0
    skipped: bool = False
    status_changed: bool = False

    def as_dict(self) -> dict:
        return {
            "campaign_id": self.campaign_id,
            "previous_status": self.previous_status.value if self.previous_status else None,
            "status": self.status.value if self.status else None,
            "total": self.total,
            "sent": self.sent,
            "failed": self.failed,
            "skipped": self.skipped,
            "status_changed": self.status_changed,
        }


class StatusReconciler:
    def __init__(self, store: TaskStore):
        self.store = store

    def reconcile_campaign(self, campaign_id: int, *, force: bool = False) -> ReconcileOutcome:
        """Recompute one campaign's aggregates and, when warranted, its status.

        ``force`` is the on-demand path: counts of a completed or paused
        campaign are refreshed too, but its status is kept.
        """
        state = self.store.get_campaign_state(campaign_id)
        if state is None or state.is_deleted:
            return ReconcileOutcome(campaign_id=campaign_id, previous_status=None, status=None, skipped=True)

        frozen = state.status in FROZEN_CAMPAIGN_STATUSES
        if frozen and not force:
            return ReconcileOutcome(
                campaign_id=campaign_id,
                previous_status=state.status,
                status=state.status,
                total=state.total_count,
                sent=state.sent_count,
                failed=state.failed_count,
                skipped=True,
            )

        total = self.store.count_all(campaign_id)
        sent = self.store.count_by_status(campaign_id, TaskStatus.SENT)
        failed = self.store.count_by_status(campaign_id, TaskStatus.FAILED)

        target = state.status if frozen else derive_status(state.status, sent, failed, total)
        changed = False
        if target != state.status:
            changed = self.store.save_campaign_aggregates(
                campaign_id,
                total=total,
                sent=sent,
                failed=failed,
                new_status=target,
                expected_status=state.status,
            )
            if not changed:
                # someone else (pause, another reconciler) moved the status first
                logger.info("Campaign status changed concurrently; counts refreshed only", campaign_id=campaign_id)
                target = state.status
        else:
            self.store.save_campaign_aggregates(campaign_id, total=total, sent=sent, failed=failed)

        if changed:
            logger.info(
                "Campaign status updated",
                campaign_id=campaign_id,
                previous_status=state.status.value,
                status=target.value,
                total=total,
                sent=sent,
                failed=failed,
            )
        else:
            logger.debug("Campaign aggregates refreshed", campaign_id=campaign_id, total=total, sent=sent, failed=failed)

        return ReconcileOutcome(
            campaign_id=campaign_id,
            previous_status=state.status,
            status=target,
            total=total,
            sent=sent,
            failed=failed,
            status_changed=changed,
        )

    def reconcile_all(self) -> list[ReconcileOutcome]:
        """One pass over every reconcilable campaign.

        A failure listing campaigns propagates; a failure on a single
        campaign is logged and the pass moves on.
        """
        campaign_ids = self.store.list_reconcilable_campaigns()
        outcomes: list[ReconcileOutcome] = []
        for campaign_id in campaign_ids:
            try:
                outcomes.append(self.reconcile_campaign(campaign_id))
            except TaskStoreError as e:
                logger.error("Campaign reconciliation failed", campaign_id=campaign_id, error=str(e), exc_info=True)
        return outcomes


__all__ = ["StatusReconciler", "ReconcileOutcome", "derive_status", "FROZEN_CAMPAIGN_STATUSES"]
