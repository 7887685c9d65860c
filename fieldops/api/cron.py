"""
Cron endpoints - the worker cycles as stateless HTTP triggers for deployments
that run no in-process workers. Each call does one bounded cycle.

Auth: Authorization: Bearer <CRON_SECRET>.
"""
import hmac
import logging
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from fieldops.config import get_settings
from fieldops.workers.task_runner import process_cycle
from fieldops.workers.timeout_monitor import check_timeouts_once

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/cron", tags=["cron"])

bearer_scheme = HTTPBearer(auto_error=False)


async def verify_cron_secret(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> None:
    """Reject unless the bearer token matches CRON_SECRET. An unset secret rejects everything."""
    secret = get_settings().cron_secret
    token = credentials.credentials if credentials else ""
    if not secret or not hmac.compare_digest(token.encode(), secret.encode()):
        raise HTTPException(status_code=401, detail="Unauthorized")


@router.post("/process-scheduled-tasks", dependencies=[Depends(verify_cron_secret)])
async def process_scheduled_tasks():
    try:
        counts = await process_cycle()
    except Exception as e:
        logger.error("Cron task cycle failed: %s", str(e))
        return JSONResponse(status_code=500, content={"success": False, "error": str(e)})
    return {"success": True, **counts}


@router.post("/check-timeouts", dependencies=[Depends(verify_cron_secret)])
async def check_timeouts():
    try:
        summary = await check_timeouts_once()
    except Exception as e:
        logger.error("Cron timeout pass failed: %s", str(e))
        return JSONResponse(status_code=500, content={"success": False, "error": str(e)})
    return {"success": True, **summary}
