"""
Campaign and email task endpoints (the ingestion boundary of the dispatch engine).

Task creation nudges a campaign from ``draft`` to ``scheduled``; every other
campaign status change is left to the status reconciler, apart from the
explicit pause/resume operations.
"""
from typing import List, Optional
from fastapi import APIRouter, Depends, HTTPException, status, Query, Request
from sqlalchemy import update
from sqlalchemy.orm import Session
import time
from app.api.deps import get_db, get_campaign_or_404, get_reconciler
from app.models.db import Campaign, EmailTask
from app.models.db.enums import CampaignStatus, TaskStatus
from app.models.schemas.base import ResponseBase
from app.models.schemas.campaigns import CampaignCreate, CampaignRead
from app.models.schemas.tasks import EmailTaskBulkCreate, EmailTaskRead, EmailTaskUpdate
from app.services.status_reconciler import StatusReconciler
from app.utils import get_logger, log_business_event, log_performance
from app.utils.time import utc_now, ensure_utc

router = APIRouter()
logger = get_logger(__name__)

def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or request.headers.get("X-Request-ID", "unknown")

def _get_task_or_404(db: Session, campaign_id: int, task_id: int) -> EmailTask:
    task = db.query(EmailTask).filter(
        EmailTask.id == task_id,
        EmailTask.campaign_id == campaign_id,
        EmailTask.is_deleted == False,  # noqa: E712
    ).first()
    if not task:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Task with id {task_id} not found in campaign {campaign_id}",
        )
    return task

# ------------------------------------------------------------------ campaigns

@router.post(
    "/",
    response_model=CampaignRead,
    status_code=status.HTTP_201_CREATED,
    summary="Create new campaign",
    description="Create an empty campaign in draft status; tasks are added separately",
)
def create_campaign(
    campaign_data: CampaignCreate,
    request: Request,
    db: Session = Depends(get_db),
) -> CampaignRead:
    start_time = time.time()
    request_id = _request_id(request)

    campaign = Campaign(**campaign_data.model_dump(), status=CampaignStatus.DRAFT)
    db.add(campaign)
    db.commit()
    db.refresh(campaign)

    log_business_event(
        event_type="campaign_created",
        details={"campaign_id": campaign.id, "campaign_name": campaign.name},
        request_id=request_id,
    )
    duration_ms = (time.time() - start_time) * 1000
    log_performance(operation="create_campaign", duration_ms=duration_ms, additional_data={"campaign_id": campaign.id})
    logger.info("Campaign created", campaign_id=campaign.id, request_id=request_id)

    return CampaignRead.model_validate(campaign)

@router.get(
    "/",
    response_model=List[CampaignRead],
    summary="List campaigns",
)
def list_campaigns(
    status_filter: Optional[CampaignStatus] = Query(None, alias="status"),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
) -> List[CampaignRead]:
    query = db.query(Campaign).filter(Campaign.is_deleted == False)  # noqa: E712
    if status_filter:
        query = query.filter(Campaign.status == status_filter)
    campaigns = query.order_by(Campaign.created_at.desc(), Campaign.id.desc()).offset(offset).limit(limit).all()
    return [CampaignRead.model_validate(c) for c in campaigns]

@router.get(
    "/{campaign_id}",
    response_model=CampaignRead,
    summary="Get campaign by ID",
)
def get_campaign(campaign: Campaign = Depends(get_campaign_or_404)) -> CampaignRead:
    return CampaignRead.model_validate(campaign)

@router.delete(
    "/{campaign_id}",
    response_model=ResponseBase,
    summary="Soft-delete a campaign and its tasks",
)
def delete_campaign(
    request: Request,
    campaign: Campaign = Depends(get_campaign_or_404),
    db: Session = Depends(get_db),
) -> ResponseBase:
    now = utc_now()
    result = db.execute(
        update(EmailTask)
        .where(EmailTask.campaign_id == campaign.id, EmailTask.is_deleted == False)  # noqa: E712
        .values(is_deleted=True, deleted_at=now)
        .execution_options(synchronize_session=False)
    )
    campaign.is_deleted = True
    campaign.deleted_at = now
    db.commit()

    log_business_event(
        event_type="campaign_deleted",
        details={"campaign_id": campaign.id, "tasks_deleted": result.rowcount},
        request_id=_request_id(request),
    )
    return ResponseBase(
        message=f"Campaign {campaign.id} deleted",
        data={"campaign_id": campaign.id, "tasks_deleted": result.rowcount},
    )

@router.post(
    "/{campaign_id}/pause",
    response_model=CampaignRead,
    summary="Pause a campaign",
    description="Freezes the campaign status; the automatic reconciliation pass skips paused campaigns",
)
def pause_campaign(
    request: Request,
    campaign: Campaign = Depends(get_campaign_or_404),
    db: Session = Depends(get_db),
) -> CampaignRead:
    if campaign.status == CampaignStatus.COMPLETED:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Completed campaigns cannot be paused")
    if campaign.status != CampaignStatus.PAUSED:
        previous = campaign.status
        campaign.status = CampaignStatus.PAUSED
        db.commit()
        db.refresh(campaign)
        log_business_event(
            event_type="campaign_paused",
            details={"campaign_id": campaign.id, "previous_status": previous.value},
            request_id=_request_id(request),
        )
    return CampaignRead.model_validate(campaign)

@router.post(
    "/{campaign_id}/resume",
    response_model=CampaignRead,
    summary="Resume a paused campaign",
    description="Returns the campaign to scheduled and immediately derives its real status from the tasks",
)
def resume_campaign(
    request: Request,
    campaign: Campaign = Depends(get_campaign_or_404),
    db: Session = Depends(get_db),
    reconciler: StatusReconciler = Depends(get_reconciler),
) -> CampaignRead:
    if campaign.status != CampaignStatus.PAUSED:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Campaign is '{campaign.status.value}', only paused campaigns can be resumed",
        )
    campaign.status = CampaignStatus.SCHEDULED
    db.commit()

    outcome = reconciler.reconcile_campaign(campaign.id)
    log_business_event(
        event_type="campaign_resumed",
        details={"campaign_id": campaign.id, "status": outcome.status.value if outcome.status else None},
        request_id=_request_id(request),
    )
    db.refresh(campaign)
    return CampaignRead.model_validate(campaign)

@router.post(
    "/{campaign_id}/recalculate",
    response_model=ResponseBase,
    summary="Recalculate campaign counts on demand",
    description="Runs the status reconciler for this campaign immediately, independent of the dispatch timer",
)
def recalculate_campaign(
    request: Request,
    campaign: Campaign = Depends(get_campaign_or_404),
    reconciler: StatusReconciler = Depends(get_reconciler),
) -> ResponseBase:
    start_time = time.time()
    outcome = reconciler.reconcile_campaign(campaign.id, force=True)
    duration_ms = (time.time() - start_time) * 1000
    log_performance(operation="recalculate_campaign", duration_ms=duration_ms, additional_data={"campaign_id": campaign.id})
    log_business_event(
        event_type="campaign_recalculated",
        details=outcome.as_dict(),
        request_id=_request_id(request),
    )
    return ResponseBase(message="Campaign counts recalculated", data=outcome.as_dict())

# ---------------------------------------------------------------------- tasks

@router.get(
    "/{campaign_id}/tasks",
    response_model=List[EmailTaskRead],
    summary="List a campaign's email tasks",
)
def list_campaign_tasks(
    campaign: Campaign = Depends(get_campaign_or_404),
    status_filter: Optional[TaskStatus] = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
) -> List[EmailTaskRead]:
    query = db.query(EmailTask).filter(
        EmailTask.campaign_id == campaign.id,
        EmailTask.is_deleted == False,  # noqa: E712
    )
    if status_filter:
        query = query.filter(EmailTask.status == status_filter)
    tasks = query.order_by(EmailTask.due_at.asc(), EmailTask.id.asc()).offset(offset).limit(limit).all()
    return [EmailTaskRead.model_validate(t) for t in tasks]

@router.post(
    "/{campaign_id}/tasks",
    response_model=ResponseBase,
    status_code=status.HTTP_201_CREATED,
    summary="Add email tasks to a campaign",
)
def add_campaign_tasks(
    payload: EmailTaskBulkCreate,
    request: Request,
    campaign: Campaign = Depends(get_campaign_or_404),
    db: Session = Depends(get_db),
    reconciler: StatusReconciler = Depends(get_reconciler),
) -> ResponseBase:
    start_time = time.time()
    request_id = _request_id(request)

    if campaign.status == CampaignStatus.COMPLETED:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Cannot add tasks to a completed campaign",
        )

    tasks = [
        EmailTask(
            campaign_id=campaign.id,
            email=item.email,
            subject=item.subject,
            message=item.message,
            due_at=ensure_utc(item.due_at),
            status=TaskStatus.PENDING,
        )
        for item in payload.tasks
    ]
    db.add_all(tasks)
    if campaign.status == CampaignStatus.DRAFT:
        campaign.status = CampaignStatus.SCHEDULED
    db.flush()
    task_ids = [t.id for t in tasks]
    db.commit()

    outcome = reconciler.reconcile_campaign(campaign.id, force=True)

    duration_ms = (time.time() - start_time) * 1000
    log_business_event(
        event_type="tasks_ingested",
        details={"campaign_id": campaign.id, "task_count": len(task_ids)},
        request_id=request_id,
    )
    log_performance(operation="add_campaign_tasks", duration_ms=duration_ms, additional_data={"task_count": len(task_ids)})

    return ResponseBase(
        message=f"{len(task_ids)} task(s) added",
        data={"campaign_id": campaign.id, "task_ids": task_ids, "campaign": outcome.as_dict()},
    )

@router.put(
    "/{campaign_id}/tasks/{task_id}",
    response_model=EmailTaskRead,
    summary="Edit a pending email task",
)
def update_campaign_task(
    task_id: int,
    changes: EmailTaskUpdate,
    campaign: Campaign = Depends(get_campaign_or_404),
    db: Session = Depends(get_db),
) -> EmailTaskRead:
    task = _get_task_or_404(db, campaign.id, task_id)
    if task.status != TaskStatus.PENDING:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Only pending tasks can be edited (task is '{task.status.value}')",
        )
    values = changes.model_dump(exclude_unset=True, exclude_none=True)
    if "due_at" in values:
        values["due_at"] = ensure_utc(values["due_at"])

    if values:
        # status guard again: the dispatcher may claim the row between read and write
        result = db.execute(
            update(EmailTask)
            .where(EmailTask.id == task.id, EmailTask.status == TaskStatus.PENDING)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            db.rollback()
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="Task was claimed for sending before the edit was applied",
            )
        db.commit()
    db.refresh(task)
    logger.info("Task updated", task_id=task.id, campaign_id=campaign.id, fields=sorted(values))
    return EmailTaskRead.model_validate(task)

@router.delete(
    "/{campaign_id}/tasks/{task_id}",
    response_model=ResponseBase,
    summary="Soft-delete an email task",
)
def delete_campaign_task(
    task_id: int,
    request: Request,
    campaign: Campaign = Depends(get_campaign_or_404),
    db: Session = Depends(get_db),
    reconciler: StatusReconciler = Depends(get_reconciler),
) -> ResponseBase:
    task = _get_task_or_404(db, campaign.id, task_id)
    result = db.execute(
        update(EmailTask)
        .where(EmailTask.id == task.id, EmailTask.status != TaskStatus.PROCESSING)
        .values(is_deleted=True, deleted_at=utc_now())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Task is currently being sent and cannot be deleted",
        )
    db.commit()

    outcome = reconciler.reconcile_campaign(campaign.id, force=True)
    log_business_event(
        event_type="task_deleted",
        details={"campaign_id": campaign.id, "task_id": task_id},
        request_id=_request_id(request),
    )
    return ResponseBase(
        message=f"Task {task_id} deleted",
        data={"task_id": task_id, "campaign": outcome.as_dict()},
    )
