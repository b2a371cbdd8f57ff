"""One dispatch tick: claim due tasks, send them, record outcomes, reconcile.

A tick claims at most ``batch_limit`` tasks. Each task is claimed, sent and
terminalized before the next claim, so an aborted tick leaves at most one
task in ``processing``. A store failure aborts the whole tick, reconciliation
included; the next tick retries from the database state.
"""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from app.config import DISPATCH_SETTINGS
from app.errors import TaskStoreError
from app.services.mail_sender import MailSender, SendResult
from app.services.status_reconciler import StatusReconciler
from app.services.task_store import TaskStore, TaskSnapshot
from app.utils import get_logger, log_performance
from app.utils.time import utc_now, ensure_utc

logger = get_logger(__name__)


@dataclass(slots=True)
class TickResult:
    started_at: datetime
    finished_at: datetime | None = None
    claimed: int = 0
    sent: int = 0
    failed: int = 0
    aborted: bool = False
    error: str | None = None
    campaigns_reconciled: int = 0
    reconcile_error: str | None = None
    task_ids: list[int] = field(default_factory=list)

    @property
    def duration_ms(self) -> float:
        if self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds() * 1000

    def as_dict(self) -> dict:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "claimed": self.claimed,
            "sent": self.sent,
            "failed": self.failed,
            "aborted": self.aborted,
            "error": self.error,
            "campaigns_reconciled": self.campaigns_reconciled,
            "reconcile_error": self.reconcile_error,
            "duration_ms": round(self.duration_ms, 2),
        }


class Dispatcher:
    def __init__(
        self,
        store: TaskStore,
        sender: MailSender,
        reconciler: StatusReconciler,
        *,
        batch_limit: int | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        limit = int(DISPATCH_SETTINGS["batch_limit"] if batch_limit is None else batch_limit)
        if limit < 1:
            raise ValueError("batch_limit must be >= 1")
        self.store = store
        self.sender = sender
        self.reconciler = reconciler
        self.batch_limit = limit
        self.clock = clock

    def run_tick(self, now: datetime | None = None) -> TickResult:
        """Run one bounded batch. Never raises for store, send or reconcile failures."""
        now = ensure_utc(now or self.clock())
        result = TickResult(started_at=self.clock())
        perf_start = time.perf_counter()

        while result.claimed < self.batch_limit:
            try:
                task = self.store.claim_next_due(now)
            except TaskStoreError as e:
                result.aborted = True
                result.error = str(e)
                logger.error("Claim failed; aborting tick", error=str(e), exc_info=True)
                return self._finish(result, perf_start)
            if task is None:
                break
            result.claimed += 1
            result.task_ids.append(task.id)
            try:
                self._deliver(task, result)
            except TaskStoreError as e:
                # the task stays in processing; only the admin requeue moves it back
                result.aborted = True
                result.error = str(e)
                logger.error("Recording outcome failed; aborting tick", task_id=task.id, error=str(e), exc_info=True)
                return self._finish(result, perf_start)

        if result.claimed == 0:
            logger.debug("No tasks due", now=now.isoformat())
        elif result.claimed >= self.batch_limit:
            logger.info("Batch limit reached; remaining due tasks wait for the next tick", batch_limit=self.batch_limit)

        try:
            outcomes = self.reconciler.reconcile_all()
            result.campaigns_reconciled = len(outcomes)
        except TaskStoreError as e:
            result.reconcile_error = str(e)
            logger.error("Status reconciliation failed; aggregates stay stale until next tick", error=str(e), exc_info=True)

        return self._finish(result, perf_start)

    def _finish(self, result: TickResult, perf_start: float) -> TickResult:
        result.finished_at = self.clock()
        elapsed_ms = (time.perf_counter() - perf_start) * 1000
        logger.info(
            "Dispatch tick finished",
            claimed=result.claimed,
            sent=result.sent,
            failed=result.failed,
            aborted=result.aborted,
            campaigns_reconciled=result.campaigns_reconciled,
        )
        log_performance("dispatch_tick", elapsed_ms, {"claimed": result.claimed})
        return result

    def _deliver(self, task: TaskSnapshot, result: TickResult) -> None:
        try:
            outcome = self.sender.send(task)
        except Exception as e:
            reason = str(e) or type(e).__name__
            logger.warning("Send raised; recording task as failed", task_id=task.id, error=reason, exc_info=True)
            outcome = SendResult.failure(reason)

        if not self.store.record_outcome(task.id, outcome.success, outcome.reason):
            # requeued by the admin recovery while the send was in flight
            logger.warning("Send outcome dropped; task no longer processing", task_id=task.id, success=outcome.success)
            return
        if outcome.success:
            result.sent += 1
            logger.info("Task sent", task_id=task.id, campaign_id=task.campaign_id)
        else:
            result.failed += 1
            logger.warning("Task failed", task_id=task.id, campaign_id=task.campaign_id, reason=outcome.reason)


__all__ = ["Dispatcher", "TickResult"]
