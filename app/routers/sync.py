"""
Manual and scheduled reconciliation triggers.

Accepts a tenant session (reconciles that tenant, 30-day window) or the
scheduler's X-API-Key (all tenants or the body's user_id, 7-day window).
"""
import logging
from typing import Callable, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import func
from sqlalchemy.orm import Session

from app.auth.dependencies import SyncScope, get_current_user, get_sync_scope
from app.config import settings
from app.database import get_db
from app.dependencies import get_connector_factory, get_gateway
from app.integrations.telegram import GatewayError, TelegramGateway
from app.models.event import Event
from app.models.student import Student
from app.models.user import User
from app.schemas.sync import (
    SyncRequest,
    SyncResponse,
    SyncResults,
    SweepResponse,
    SweepResults,
    SyncRun,
    SyncStatusResponse,
)
from app.services.normalization import as_utc
from app.services.reconciliation import sweep_group
from app.services.sync import SyncResult, enabled_platforms, record_sync_run, sync_all_users, sync_window

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sync", tags=["Sync"])


@router.post("/students", response_model=SyncResponse)
def sync_students(
    body: Optional[SyncRequest] = None,
    scope: SyncScope = Depends(get_sync_scope),
    db: Session = Depends(get_db),
    gateway: TelegramGateway = Depends(get_gateway),
    connector_for: Callable = Depends(get_connector_factory),
):
    """Reconcile recent sales into students and Telegram membership."""
    body = body or SyncRequest()
    lookback = settings.sync_lookback_days_manual if scope.is_session else settings.sync_lookback_days_scheduled
    start, end = sync_window(lookback)
    start = as_utc(body.start_date) or start
    end = as_utc(body.end_date) or end
    if start >= end:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="start_date must be before end_date")

    user_id = scope.resolve(body.user_id)
    platforms = [body.platform] if body.platform else enabled_platforms()

    result = SyncResult()
    try:
        for platform in platforms:
            sync_all_users(
                db, connector_for(platform), gateway, start, end,
                user_ids=[user_id] if user_id is not None else None,
                result=result,
            )
    except Exception as e:
        db.rollback()
        logger.exception("Student sync failed")
        record_sync_run(db, "sync.students", {"error": str(e)}, user_id=user_id)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error": "Failed to sync students", "details": str(e)},
        )

    record_sync_run(db, "sync.students", result.to_dict(), user_id=user_id)
    return SyncResponse(
        success=True,
        message=f"Sync completed: {result.created} created, {result.updated} updated",
        start_date=start,
        end_date=end,
        results=SyncResults(**result.to_dict()),
    )


@router.post("/group", response_model=SweepResponse)
def sync_group(
    body: Optional[SyncRequest] = None,
    scope: SyncScope = Depends(get_sync_scope),
    db: Session = Depends(get_db),
    gateway: TelegramGateway = Depends(get_gateway),
):
    """Remove group members whose enrollments no longer entitle them to stay."""
    body = body or SyncRequest()
    user_id = scope.resolve(body.user_id)
    try:
        result = sweep_group(db, gateway, user_id=user_id)
    except GatewayError as e:
        logger.error("Group sweep aborted, cannot list chat administrators: %s", e)
        record_sync_run(db, "sync.group", {"error": str(e)}, user_id=user_id)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"error": "Failed to sync group", "details": str(e)},
        )

    record_sync_run(db, "sync.group", result.to_dict(), user_id=user_id)
    return SweepResponse(
        success=True,
        message=f"Group sync completed: {result.removed} removed, {result.kept} kept",
        results=SweepResults(**result.to_dict()),
    )


@router.get("/status", response_model=SyncStatusResponse)
def sync_status(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Telegram status counts for the tenant's students and its latest sync runs."""
    rows = (
        db.query(Student.telegram_status, func.count(Student.id))
        .filter(Student.user_id == current_user.id)
        .group_by(Student.telegram_status)
        .all()
    )
    counts = {telegram_status.value: count for telegram_status, count in rows}

    runs = (
        db.query(Event)
        .filter(Event.type.in_(["sync.students", "sync.group"]), Event.user_id == current_user.id)
        .order_by(Event.created_at.desc(), Event.id.desc())
        .limit(10)
        .all()
    )
    return SyncStatusResponse(
        total_students=sum(counts.values()),
        students=counts,
        last_runs=[
            SyncRun(type=e.type, status=e.status.value, created_at=e.created_at, summary=e.payload or {})
            for e in runs
        ],
    )
