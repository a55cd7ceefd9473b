"""
Approval Portal API Application Factory
"""

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .. import __version__
from ..exceptions import PortalError
from ..logging_config import get_logger
from .legacy import router as legacy_router
from .templates import router as templates_router
from .workflows import router as workflows_router


logger = get_logger("portal.api")


async def portal_error_handler(request: Request, exc: PortalError) -> JSONResponse:
    """Map portal errors onto their HTTP status with a {"detail", "error"} body"""
    if exc.http_status >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}", exc_info=exc)
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Report malformed request bodies as 400 ValidationError, like the engine's own checks"""
    errors = [
        {"loc": [str(part) for part in error.get("loc", ())], "msg": error.get("msg", "")}
        for error in exc.errors()
    ]
    detail = "; ".join(
        f"{'.'.join(e['loc'])}: {e['msg']}" if e["loc"] else e["msg"] for e in errors
    ) or "Invalid request"
    return JSONResponse(
        status_code=400,
        content={"detail": detail, "error": "ValidationError", "details": {"errors": errors}}
    )


def create_app() -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="Approval Portal Workflow API",
        description="Template-driven approval workflows for portal requests",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(PortalError, portal_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)

    # Include routers
    app.include_router(templates_router, prefix="/workflows/templates", tags=["Templates"])
    app.include_router(workflows_router, prefix="/workflows", tags=["Workflows"])
    app.include_router(legacy_router, prefix="/legacy", tags=["Legacy"])

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "approval_portal_api",
            "version": __version__
        }

    # Root endpoint
    @app.get("/")
    async def get_api_info():
        """Get API information"""
        return {
            "name": "Approval Portal Workflow API",
            "version": __version__,
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "instances": "/workflows/instances",
                "templates": "/workflows/templates",
                "legacy": "/legacy/{entityType}/{entityId}/action",
            }
        }

    return app


app = create_app()


def run_server(host: str = "0.0.0.0", port: int = 8090, debug: bool = False, workers: int = 1):
    """Run the FastAPI server"""
    import uvicorn

    uvicorn.run(
        "approval_portal.api:app",
        host=host,
        port=port,
        reload=debug,
        workers=workers,
        log_level="info"
    )
