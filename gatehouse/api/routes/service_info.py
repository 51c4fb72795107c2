"""Self Probe — liveness: answers whenever the process can serve HTTP."""

from fastapi import APIRouter, Request

router = APIRouter(prefix="/api/v1/self", tags=["health"])


@router.get("")
async def self_check(request: Request):
    settings = request.app.state.settings
    return {
        "status": "ok",
        "service": "gatehouse-api",
        "version": request.app.version,
        "environment": settings.environment,
    }
