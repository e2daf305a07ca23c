"""Health check and status endpoints."""

import time

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from trustcore.auth.dependencies import get_services
from trustcore.container import ServiceContainer

# Module-level variable to track application start time
_app_start_time = time.time()

router = APIRouter(tags=["Health"])


@router.get("/status")
async def get_status(services: ServiceContainer = Depends(get_services)) -> JSONResponse:
    """
    Health check endpoint for monitoring and load balancers.

    Reports "degraded" while the shared store is unreachable; the rate
    limiter keeps working from its process-local fallback during that time.

    Returns:
        JSONResponse with status, version, uptime and store health
    """
    store_ok = await services.durable_store.ping()
    fallback_active = getattr(services.limiter_store, "degraded", False)

    return JSONResponse(
        status_code=200,
        content={
            "status": "ok" if store_ok and not fallback_active else "degraded",
            "version": services.settings.api_version,
            "uptime_seconds": int(time.time() - _app_start_time),
            "store": {
                "backend": services.durable_store.name,
                "reachable": store_ok,
                "fallback_active": fallback_active,
            },
        },
    )
