"""
Pars Ops API
"""
from typing import Optional

import structlog
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from pars.config import Settings
from pars.services.update_orchestrator import UpdateOrchestrator

logger = structlog.get_logger(__name__)


def _validation_message(exc: RequestValidationError) -> str:
    """First validation problem, naming the offending field"""
    errors = exc.errors()
    if not errors:
        return "Invalid request data"

    first = errors[0]
    if first.get("type") == "json_invalid":
        return "Invalid JSON body"

    loc = [str(part) for part in first.get("loc", ()) if part not in ("body", "query")]
    field = ".".join(loc) or "body"
    return f"Invalid {field}: {first.get('msg', 'invalid value')}"


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    message = _validation_message(exc)
    logger.warning("request_validation_failed", path=request.url.path, error=message)
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": message})


async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail},
        headers=getattr(exc, "headers", None),
    )


async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("unhandled_api_error", path=request.url.path)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content={"error": "Internal server error"}
    )


def create_app(settings: Settings, orchestrator: Optional[UpdateOrchestrator] = None) -> FastAPI:
    """Create and configure FastAPI application"""

    app = FastAPI(
        title=settings.api_title,
        version=settings.api_version,
        description="""
# Pars Tabela Ops API

Self-update and rollback of the Pars Tabela storefront deployment.

- **Status** - deployed version, tool availability and the latest run
- **Check** - commits waiting on the remote branch
- **Execute / Rollback** - runs streamed as Server-Sent Events (`init`, `step`, `complete`)
- **History** - update log and recorded backups

All `/api/admin/update` endpoints require an admin bearer token.
        """,
        docs_url="/docs" if settings.api_docs_enabled else None,
        redoc_url="/redoc" if settings.api_docs_enabled else None,
        openapi_tags=[
            {"name": "system", "description": "Daemon health."},
            {"name": "updates", "description": "Update and rollback of the managed deployment."},
        ],
    )

    if orchestrator is not None:
        app.state.orchestrator = orchestrator

    if settings.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    @app.get(
        "/health",
        summary="Health Check",
        description="Check if the daemon is running. Use this endpoint for monitoring and health checks.",
        tags=["system"],
    )
    async def health_check():
        """Health check endpoint for monitoring"""
        return {
            "status": "healthy",
            "version": settings.api_version,
            "service": "pars-ops",
        }

    # Register API routers
    from pars.api.routes import updates

    app.include_router(updates.router, prefix="/api/admin/update", tags=["updates"])

    return app
