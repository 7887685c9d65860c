"""
Crew assignment endpoints - a worker accepts, declines or drops an offer.
Chat-bot webhooks resolve the worker's reply to a request id and call these.
"""
import logging
import uuid
from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from fieldops.database import get_db
from fieldops.schemas.api import ActionResponse
from fieldops.services.assignments import (
    accept_assignment,
    cancel_accepted_assignment,
    decline_assignment,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/assignments", tags=["assignments"])


def _parse_request_id(request_id: str) -> uuid.UUID:
    try:
        return uuid.UUID(request_id)
    except (ValueError, AttributeError):
        raise HTTPException(status_code=400, detail="Invalid request ID format")


def _store_error(action: str, request_id: str, error: Exception) -> JSONResponse:
    logger.error("Assignment %s failed for %s: %s", action, request_id[:8], str(error))
    return JSONResponse(
        status_code=500,
        content=ActionResponse(success=False, error=str(error)).model_dump(),
    )


@router.post("/{request_id}/accept", response_model=ActionResponse)
async def accept(request_id: str, db: AsyncSession = Depends(get_db)):
    """First accept wins; later accepts for the same job come back unsuccessful."""
    request_uuid = _parse_request_id(request_id)
    try:
        result = await accept_assignment(db, request_uuid)
    except SQLAlchemyError as e:
        await db.rollback()
        return _store_error("accept", request_id, e)

    if not result["accepted"]:
        if result["reason"] == "request not found":
            raise HTTPException(status_code=404, detail="Assignment request not found")
        return ActionResponse(success=False, error=result["reason"], data=result)
    return ActionResponse(success=True, message="Job accepted", data=result)


@router.post("/{request_id}/decline", response_model=ActionResponse)
async def decline(request_id: str, db: AsyncSession = Depends(get_db)):
    request_uuid = _parse_request_id(request_id)
    try:
        declined = await decline_assignment(db, request_uuid)
        await db.flush()
    except SQLAlchemyError as e:
        await db.rollback()
        return _store_error("decline", request_id, e)

    if not declined:
        return ActionResponse(success=False, error="request is not pending")
    return ActionResponse(success=True, message="Job declined")


@router.post("/{request_id}/cancel", response_model=ActionResponse)
async def cancel(request_id: str, db: AsyncSession = Depends(get_db)):
    """An accepted worker drops the job; the timeout monitor re-broadcasts it."""
    request_uuid = _parse_request_id(request_id)
    try:
        cancelled = await cancel_accepted_assignment(db, request_uuid)
        await db.flush()
    except SQLAlchemyError as e:
        await db.rollback()
        return _store_error("cancel", request_id, e)

    if not cancelled:
        return ActionResponse(success=False, error="request is not accepted")
    return ActionResponse(success=True, message="Assignment cancelled")
