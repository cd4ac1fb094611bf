from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from typing import Any

router = APIRouter()


@router.get("/redis")
async def redis_health(request: Request) -> Any:
    """Return Redis connection health. If `REDIS_URL` is not configured, returns status `not_configured`.

    This endpoint is safe for quick verification after deploying the backend.
    """
    redis = getattr(request.app.state, "redis", None)
    if redis is None:
        return JSONResponse({"status": "not_configured", "details": "REDIS_URL not set"}, status_code=200)

    try:
        ok = await redis.ping()
        if ok:
            return {"status": "ok", "redis": "connected"}
        return JSONResponse({"status": "error", "redis": "ping_failed"}, status_code=503)
    except Exception as e:
        return JSONResponse({"status": "error", "error": str(e)}, status_code=503)
