"""
API router - aggregates all route modules.
"""
from fastapi import APIRouter
from fieldops.api.health import router as health_router
from fieldops.api.leads import router as leads_router
from fieldops.api.assignments import router as assignments_router
from fieldops.api.jobs import router as jobs_router
from fieldops.api.appointments import router as appointments_router
from fieldops.api.cron import router as cron_router

api_router = APIRouter()
api_router.include_router(health_router)
api_router.include_router(leads_router)
api_router.include_router(assignments_router)
api_router.include_router(jobs_router)
api_router.include_router(appointments_router)
api_router.include_router(cron_router)
