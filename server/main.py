"""
FlowForge backend: prompt-built API workflows, persisted as graphs and run on demand.

FastAPI application with dependency injection, a graph mutation engine and a
sequential execution interpreter that streams its log over WebSockets.
"""

from datetime import datetime, timezone
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from core.container import container
from core.logging import configure_logging, get_logger
from routers import workflow, websocket
from services.errors import GraphValidationError, WorkflowError

# Initialize settings and logging
settings = container.settings()
configure_logging(settings)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management."""
    # Startup
    logger.info("Starting FlowForge services")

    await container.database().startup()
    await container.broadcaster().startup()

    logger.info("Services started successfully",
                node_types=len(container.handler_registry()))
    yield

    # Shutdown
    await container.broadcaster().shutdown()
    await container.database().shutdown()
    logger.info("Services shutdown complete")


# Create FastAPI app
app = FastAPI(
    title="FlowForge",
    version="1.0.0",
    description="Generate, mutate and execute backend API workflows",
    lifespan=lifespan,
    default_response_class=ORJSONResponse
)


# Error kind -> HTTP status. Failed executions are not errors (200, success=false).
ERROR_STATUS = {
    "validation": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "not_found": status.HTTP_404_NOT_FOUND,
    "conflict": status.HTTP_409_CONFLICT,
    "configuration": status.HTTP_503_SERVICE_UNAVAILABLE,
    "handler": status.HTTP_502_BAD_GATEWAY,
}


@app.exception_handler(WorkflowError)
async def workflow_error_handler(request: Request, exc: WorkflowError):
    status_code = ERROR_STATUS.get(exc.kind, status.HTTP_500_INTERNAL_SERVER_ERROR)
    content = {"success": False, "error": str(exc), "kind": exc.kind}
    if isinstance(exc, GraphValidationError):
        content["violations"] = exc.violation_dicts()

    logger.info("Request failed", path=request.url.path, kind=exc.kind,
                status_code=status_code, error=str(exc))
    return ORJSONResponse(status_code=status_code, content=content)


class CatchAllExceptionsMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception as e:
            logger.error(f"Unhandled exception: {type(e).__name__}: {str(e)}",
                         path=request.url.path, exc_info=True)
            return ORJSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={
                    "success": False,
                    "error": f"{type(e).__name__}: {str(e)}",
                    "kind": "internal",
                }
            )


# Exception middleware first, CORS outermost
app.add_middleware(CatchAllExceptionsMiddleware)

logger.info("Configuring CORS middleware",
            origins_count=len(settings.cors_origins),
            origins=settings.cors_origins)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(workflow.router)
app.include_router(websocket.router)


@app.get("/health")
async def health_check():
    """Detailed health check."""
    broadcaster = container.broadcaster()
    return {
        "status": "OK",
        "service": "flowforge",
        "version": app.version,
        "environment": "development" if settings.is_development else "production",
        "node_types": container.handler_registry().types(),
        "log_stream": {
            "running": broadcaster.running,
            "subscribers": broadcaster.subscriber_count(),
            "dropped": broadcaster.dropped,
        },
        "proposals_configured": bool(settings.llm_api_key),
        "mail_configured": container.mailer().configured,
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


if __name__ == "__main__":
    import uvicorn
    logger.info("Starting FlowForge services",
                host=settings.host, port=settings.port, debug=settings.debug)
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        reload_dirs=["."] if settings.debug else None,
        reload_excludes=["*.pyc", "__pycache__", "*.log", "*.db"] if settings.debug else None,
        workers=1 if settings.debug else settings.workers
    )
