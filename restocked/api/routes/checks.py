"""Operator endpoints for the check and email cycles."""

import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, ConfigDict
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from restocked.api.deps import get_database, require_admin_api_key
from restocked.db.models import CheckRun
from restocked.worker.lease_lock import CHECK_SCHEDULER_LOCK, EMAIL_DELIVERY_LOCK
from restocked.worker.tasks import task_runner

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/checks", tags=["checks"])


class CheckRunResponse(BaseModel):
    """Response model for a check run."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    run_id: str
    trigger: str
    status: str
    skip_reason: Optional[str]
    started_at: datetime
    finished_at: Optional[datetime]
    duration_ms: Optional[int]
    products_selected: int
    products_checked: int
    products_skipped: int
    products_failed: int
    changes_detected: int
    notifications_created: int
    errors: list
    error_message: Optional[str]


class EmailRunResponse(BaseModel):
    run_id: str
    skipped: bool
    skip_reason: Optional[str]
    selected: int
    sent: int
    suppressed: int
    failed: int
    permanently_failed: int


@router.post(
    "/run",
    response_model=CheckRunResponse,
    dependencies=[Depends(require_admin_api_key)],
)
async def run_checks():
    """Run a check cycle now and return its summary (skipped if one is already running)."""
    try:
        check_run = await task_runner.run_checks(trigger="manual")
    except SQLAlchemyError as e:
        logger.error(f"Manual check run failed on the database: {e}")
        raise HTTPException(status_code=503, detail="Database unavailable")
    return CheckRunResponse.model_validate(check_run)


@router.get(
    "/runs",
    response_model=List[CheckRunResponse],
    dependencies=[Depends(require_admin_api_key)],
)
async def list_check_runs(
    status: Optional[str] = None,
    limit: int = Query(50, ge=1, le=500),
    db: AsyncSession = Depends(get_database),
):
    """List recent check runs, optionally filtered by status."""
    query = select(CheckRun).order_by(CheckRun.started_at.desc(), CheckRun.id.desc()).limit(limit)
    if status:
        query = query.where(CheckRun.status == status)

    result = await db.execute(query)
    return [CheckRunResponse.model_validate(run) for run in result.scalars().all()]


@router.get("/locks", dependencies=[Depends(require_admin_api_key)])
async def get_locks():
    """Current state of the scheduler locks."""
    if task_runner.lock_manager is None:
        await task_runner.initialize()
    try:
        return {
            name: await task_runner.lock_manager.get_lock_info(name)
            for name in (CHECK_SCHEDULER_LOCK, EMAIL_DELIVERY_LOCK)
        }
    except SQLAlchemyError as e:
        logger.error(f"Failed to read lock state: {e}")
        raise HTTPException(status_code=503, detail="Database unavailable")


@router.post(
    "/email/run",
    response_model=EmailRunResponse,
    dependencies=[Depends(require_admin_api_key)],
)
async def run_email_delivery():
    """Run an email delivery cycle now."""
    try:
        summary = await task_runner.deliver_emails()
    except SQLAlchemyError as e:
        logger.error(f"Manual email run failed on the database: {e}")
        raise HTTPException(status_code=503, detail="Database unavailable")
    return EmailRunResponse(
        run_id=summary.run_id,
        skipped=summary.skipped,
        skip_reason=summary.skip_reason,
        selected=summary.selected,
        sent=summary.sent,
        suppressed=summary.suppressed,
        failed=summary.failed,
        permanently_failed=summary.permanently_failed,
    )
