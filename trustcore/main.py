"""FastAPI application entry point."""

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError

from trustcore.config import Settings, settings
from trustcore.container import ServiceContainer, build_services
from trustcore.exceptions import TrustCoreError
from trustcore.handlers.exception_handler import (
    generic_exception_handler,
    trustcore_exception_handler,
    validation_exception_handler,
)
from trustcore.logging.config import configure_logging, get_logger
from trustcore.middleware.logging import LoggingMiddleware
from trustcore.routes import security, status

logger = get_logger(__name__)

DESCRIPTION = """
## Trust Core API

Access control for a trading platform.

- **MFA**: TOTP enrollment, verification and single-use recovery codes
- **API keys**: scoped keys with IP whitelists and per-key rate limits
- **Audit**: append-only security trail with per-record integrity digests

### Authentication

Management endpoints expect the session gateway to set `X-User-ID`.
API-key endpoints expect `X-API-Key` and `X-API-Secret` headers.

### Rate Limits

Responses carry `X-RateLimit-Limit`, `X-RateLimit-Remaining` and
`X-RateLimit-Reset`; 429 and 423 responses include `Retry-After`.
"""


def create_app(
    services: ServiceContainer | None = None, config: Settings | None = None
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        services: Prebuilt container (tests pass one); built at startup if omitted
        config: Settings to build from (defaults to the global settings)

    Returns:
        Configured FastAPI app
    """
    config = config or settings

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        # Fails fast on a missing or placeholder SESSION_SECRET
        config.require_session_secret()
        container = services or build_services(config)
        app.state.services = container
        await container.start()
        try:
            yield
        finally:
            await container.stop()

    app = FastAPI(
        title=config.api_title,
        version=config.api_version,
        description=DESCRIPTION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    # Services are reachable before startup when passed in
    if services is not None:
        app.state.services = services

    app.add_middleware(LoggingMiddleware)

    app.add_exception_handler(TrustCoreError, trustcore_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

    app.include_router(status.router)
    app.include_router(security.router)

    @app.get("/", tags=["Root"])
    async def root() -> dict[str, str]:
        """
        Root endpoint with API information.

        Returns:
            Dict with welcome message and docs link
        """
        return {
            "message": f"Welcome to {config.api_title}",
            "version": config.api_version,
            "docs": "/docs",
            "health": "/status",
        }

    return app


configure_logging()
app = create_app()
