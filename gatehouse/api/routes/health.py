"""Health Probe — reports whether the Bootstrapper reached Serving.

Invariants:
    - GET /api/v1/health bypasses admission (never rate-limited, never gated)
    - 200 only while Serving AND storage is Connected; otherwise 503 with the phase

Design Decisions:
    - Reads state only; never touches the store on the probe path, so a slow
      database cannot make the probe itself hang (storage supervision lives in
      the Bootstrapper)
"""

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

router = APIRouter(prefix="/api/v1/health", tags=["health"])


@router.get("")
async def health_check(request: Request):
    """Readiness of the lifecycle layer."""
    boot = request.app.state.bootstrapper
    storage = boot.connector.state.value
    body = {
        "phase": boot.phase.value,
        "checks": {
            "storage": storage,
            "rate_limiter": "ready" if boot.rate_limiter is not None else "pending",
        },
    }
    if boot.is_serving and boot.connector.is_connected:
        return {"status": "ok", **body}
    return JSONResponse(status_code=503, content={"status": "unavailable", **body})
