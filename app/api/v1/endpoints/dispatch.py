"""
Dispatch administration endpoints: manual tick, scheduler status, stale-task recovery.

All routes require the admin bearer token.
"""
from datetime import timedelta
from typing import Optional
from fastapi import APIRouter, Depends, Request
import time
from app.api.deps import require_admin_token, get_scheduler, get_task_store
from app.config import DISPATCH_SETTINGS
from app.jobs.scheduler import DispatchScheduler
from app.models.schemas.base import ResponseBase
from app.models.schemas.dispatch import StaleRecoveryRequest
from app.services.task_store import TaskStore
from app.utils import get_logger, log_business_event, log_performance

router = APIRouter(dependencies=[Depends(require_admin_token)])
logger = get_logger(__name__)

@router.post(
    "/run",
    response_model=ResponseBase,
    summary="Run one dispatch tick now",
    description="Runs exactly one tick synchronously through the same claim/send/record/reconcile path as the timer",
)
def run_dispatch_tick(
    request: Request,
    scheduler: DispatchScheduler = Depends(get_scheduler),
) -> ResponseBase:
    request_id = getattr(request.state, "request_id", "unknown")
    logger.info("Manual dispatch tick requested", request_id=request_id)

    result = scheduler.run_once()

    log_business_event(
        event_type="manual_tick_triggered",
        details={"claimed": result.claimed, "sent": result.sent, "failed": result.failed, "aborted": result.aborted},
        request_id=request_id,
    )
    message = "Dispatch tick aborted by a task store failure" if result.aborted else "Dispatch tick completed"
    return ResponseBase(success=not result.aborted, message=message, data=result.as_dict())

@router.get(
    "/status",
    response_model=ResponseBase,
    summary="Dispatch scheduler status",
)
def dispatch_status(scheduler: DispatchScheduler = Depends(get_scheduler)) -> ResponseBase:
    return ResponseBase(data=scheduler.snapshot())

@router.post(
    "/recover-stale",
    response_model=ResponseBase,
    summary="Requeue tasks stuck in processing",
    description=(
        "Administrative recovery after a crash mid-send: tasks claimed longer ago than the threshold "
        "go back to pending. A task whose send is in fact still running may be delivered twice."
    ),
)
def recover_stale_tasks(
    request: Request,
    body: Optional[StaleRecoveryRequest] = None,
    store: TaskStore = Depends(get_task_store),
) -> ResponseBase:
    start_time = time.time()
    minutes = (body.older_than_minutes if body else None) or int(DISPATCH_SETTINGS["stale_processing_minutes"])
    requeued = store.requeue_stale_processing(timedelta(minutes=minutes))

    duration_ms = (time.time() - start_time) * 1000
    log_performance(operation="recover_stale_tasks", duration_ms=duration_ms, additional_data={"requeued": requeued})
    log_business_event(
        event_type="stale_tasks_requeued",
        details={"older_than_minutes": minutes, "requeued": requeued},
        request_id=getattr(request.state, "request_id", "unknown"),
    )
    return ResponseBase(
        message=f"{requeued} stale task(s) requeued",
        data={"older_than_minutes": minutes, "requeued": requeued},
    )
