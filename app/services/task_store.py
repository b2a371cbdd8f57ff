"""Task store adapter: atomic claim, outcome recording and count queries.

The dispatcher and the status reconciler only talk to the database through
this module. Every public method opens its own short-lived session from the
injected factory, so a single ``TaskStore`` can be shared by the scheduler
thread and request handlers.

Claim protocol (compare-and-swap):
  1. select the oldest eligible row (pending, not deleted, due_at <= now)
  2. ``UPDATE ... SET status='processing' WHERE id=:id AND status='pending'``
  3. rowcount == 1 -> this caller owns the task; otherwise another claimer won
     the row, so re-select. Each lost race means the eligible set shrank,
     which bounds the loop.

No in-process locking is involved; exclusivity comes from the conditional
update, so several dispatcher processes may share one database.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy import select, update, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.errors import TaskStoreError
from app.models.db.campaigns import Campaign
from app.models.db.email_tasks import EmailTask
from app.models.db.enums import CampaignStatus, TaskStatus, RECONCILABLE_CAMPAIGN_STATUSES
from app.utils import get_logger
from app.utils.time import utc_now, ensure_utc

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class TaskSnapshot:
    """A claimed task as it was immediately before the claim update."""
    id: int
    campaign_id: int
    email: str
    message: str
    subject: str | None
    due_at: datetime
    status: TaskStatus
    sender_name: str | None = None


@dataclass(frozen=True, slots=True)
class CampaignState:
    id: int
    status: CampaignStatus
    is_deleted: bool
    total_count: int
    sent_count: int
    failed_count: int


class TaskStore:
    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    # ----------------------------- claim / outcome ----------------------------- #
    def claim_next_due(self, now: datetime | None = None) -> TaskSnapshot | None:
        """Atomically move the oldest due pending task to ``processing``.

        Returns the pre-update snapshot, or None when nothing is due.
        """
        now = ensure_utc(now or utc_now())
        session = self._session_factory()
        try:
            while True:
                candidate = session.execute(
                    select(EmailTask, Campaign.sender_name)
                    .join(Campaign, Campaign.id == EmailTask.campaign_id)
                    .where(
                        EmailTask.status == TaskStatus.PENDING,
                        EmailTask.is_deleted.is_(False),
                        EmailTask.due_at <= now,
                    )
                    .order_by(EmailTask.due_at.asc(), EmailTask.id.asc())
                    .limit(1)
                ).first()
                if candidate is None:
                    session.commit()
                    return None

                task, sender_name = candidate
                snapshot = TaskSnapshot(
                    id=task.id,
                    campaign_id=task.campaign_id,
                    email=task.email,
                    message=task.message,
                    subject=task.subject,
                    due_at=ensure_utc(task.due_at),
                    status=task.status,
                    sender_name=sender_name,
                )
                result = session.execute(
                    update(EmailTask)
                    .where(
                        EmailTask.id == snapshot.id,
                        EmailTask.status == TaskStatus.PENDING,
                        EmailTask.is_deleted.is_(False),
                    )
                    .values(status=TaskStatus.PROCESSING, claimed_at=now)
                    .execution_options(synchronize_session=False)
                )
                session.commit()
                if result.rowcount == 1:
                    logger.debug("Task claimed", task_id=snapshot.id, campaign_id=snapshot.campaign_id)
                    return snapshot
                logger.debug("Task claim lost to concurrent claimer", task_id=snapshot.id)
                session.expire_all()
        except SQLAlchemyError as e:
            session.rollback()
            raise TaskStoreError("claim_next_due", e) from e
        finally:
            session.close()

    def record_outcome(
        self,
        task_id: int,
        success: bool,
        reason: str | None = None,
        *,
        now: datetime | None = None,
    ) -> bool:
        """Terminalize a claimed task. Only ``processing`` rows move; returns whether one did."""
        now = ensure_utc(now or utc_now())
        if success:
            values = {"status": TaskStatus.SENT, "completed_at": now, "failure_reason": None}
        else:
            values = {"status": TaskStatus.FAILED, "completed_at": now, "failure_reason": reason}

        session = self._session_factory()
        try:
            result = session.execute(
                update(EmailTask)
                .where(EmailTask.id == task_id, EmailTask.status == TaskStatus.PROCESSING)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise TaskStoreError("record_outcome", e) from e
        finally:
            session.close()

        updated = result.rowcount == 1
        if not updated:
            logger.warning("Outcome not recorded: task is not processing", task_id=task_id, success=success)
        return updated

    # --------------------------------- counts --------------------------------- #
    def count_by_status(self, campaign_id: int, status: TaskStatus) -> int:
        return self._count("count_by_status", EmailTask.campaign_id == campaign_id, EmailTask.status == status)

    def count_all(self, campaign_id: int) -> int:
        return self._count("count_all", EmailTask.campaign_id == campaign_id)

    def _count(self, operation: str, *criteria) -> int:
        session = self._session_factory()
        try:
            total = session.execute(
                select(func.count(EmailTask.id)).where(EmailTask.is_deleted.is_(False), *criteria)
            ).scalar_one()
            return int(total)
        except SQLAlchemyError as e:
            raise TaskStoreError(operation, e) from e
        finally:
            session.close()

    # ------------------------------ campaign rows ------------------------------ #
    def list_reconcilable_campaigns(self) -> list[int]:
        session = self._session_factory()
        try:
            rows = session.execute(
                select(Campaign.id)
                .where(
                    Campaign.is_deleted.is_(False),
                    Campaign.status.in_(list(RECONCILABLE_CAMPAIGN_STATUSES)),
                )
                .order_by(Campaign.id.asc())
            ).scalars().all()
            return list(rows)
        except SQLAlchemyError as e:
            raise TaskStoreError("list_reconcilable_campaigns", e) from e
        finally:
            session.close()

    def get_campaign_state(self, campaign_id: int) -> CampaignState | None:
        session = self._session_factory()
        try:
            campaign = session.get(Campaign, campaign_id)
            if campaign is None:
                return None
            return CampaignState(
                id=campaign.id,
                status=campaign.status,
                is_deleted=bool(campaign.is_deleted),
                total_count=campaign.total_count or 0,
                sent_count=campaign.sent_count or 0,
                failed_count=campaign.failed_count or 0,
            )
        except SQLAlchemyError as e:
            raise TaskStoreError("get_campaign_state", e) from e
        finally:
            session.close()

    def save_campaign_aggregates(
        self,
        campaign_id: int,
        *,
        total: int,
        sent: int,
        failed: int,
        new_status: CampaignStatus | None = None,
        expected_status: CampaignStatus | None = None,
    ) -> bool:
        """Write recomputed counts unconditionally; change status only if it is still ``expected_status``.

        Returns whether the status change was applied (False when none was requested).
        """
        session = self._session_factory()
        try:
            session.execute(
                update(Campaign)
                .where(Campaign.id == campaign_id)
                .values(total_count=total, sent_count=sent, failed_count=failed)
                .execution_options(synchronize_session=False)
            )
            status_changed = False
            if new_status is not None:
                stmt = update(Campaign).where(Campaign.id == campaign_id)
                if expected_status is not None:
                    stmt = stmt.where(Campaign.status == expected_status)
                result = session.execute(
                    stmt.values(status=new_status).execution_options(synchronize_session=False)
                )
                status_changed = result.rowcount == 1
            session.commit()
            return status_changed
        except SQLAlchemyError as e:
            session.rollback()
            raise TaskStoreError("save_campaign_aggregates", e) from e
        finally:
            session.close()

    # --------------------------- administrative recovery ----------------------- #
    def requeue_stale_processing(self, older_than: timedelta, *, now: datetime | None = None) -> int:
        """Move tasks stuck in ``processing`` longer than ``older_than`` back to ``pending``.

        Manual recovery only: a task requeued while its original claimer is
        still sending can be delivered twice.
        """
        now = ensure_utc(now or utc_now())
        cutoff = now - older_than
        session = self._session_factory()
        try:
            result = session.execute(
                update(EmailTask)
                .where(
                    EmailTask.status == TaskStatus.PROCESSING,
                    EmailTask.is_deleted.is_(False),
                    EmailTask.claimed_at.is_not(None),
                    EmailTask.claimed_at < cutoff,
                )
                .values(status=TaskStatus.PENDING, claimed_at=None)
                .execution_options(synchronize_session=False)
            )
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise TaskStoreError("requeue_stale_processing", e) from e
        finally:
            session.close()
        requeued = int(result.rowcount or 0)
        logger.info("Stale processing tasks requeued", requeued=requeued, cutoff=cutoff.isoformat())
        return requeued


__all__ = ["TaskStore", "TaskSnapshot", "CampaignState"]
