"""
FastAPI Application Entry Point
Permission check routes, error handlers and metrics
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from workshop_rbac.api.v1 import permissions
from workshop_rbac.core.config import settings
from workshop_rbac.core.exceptions import AppException
from workshop_rbac.core.logging import get_logger, setup_logging
from workshop_rbac.monitoring.metrics import get_metrics

# Setup logging
setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """Application lifespan management"""
    logger.info(f"Starting {settings.APP_NAME}...")
    logger.info(f"Environment: {settings.ENVIRONMENT}")

    from workshop_rbac.db.session import close_db, init_db
    from workshop_rbac.services.rbac.factory import get_authorization_service, shutdown_services

    await init_db()
    get_authorization_service()
    logger.info("All services initialized successfully")

    yield

    logger.info("Shutting down...")
    try:
        await shutdown_services()
        await close_db()
        logger.info("Shutdown complete")
    except Exception as e:
        logger.error(f"Error during shutdown: {e}")


app = FastAPI(
    title=settings.APP_NAME,
    description="Role based permission resolution for multi-tenant workshops",
    version=settings.APP_VERSION,
    docs_url="/docs" if settings.DEBUG else None,
    redoc_url="/redoc" if settings.DEBUG else None,
    openapi_url="/openapi.json" if settings.DEBUG else None,
    lifespan=lifespan,
)


@app.exception_handler(AppException)
async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """Handle application-specific exceptions"""
    return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()})


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handle validation errors"""
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "error": {
                "code": "validation_error",
                "message": "Invalid request parameters",
                "details": {"errors": exc.errors()},
                "timestamp": None,
            }
        },
    )


app.include_router(
    permissions.router,
    prefix="/api/v1/permissions",
    tags=["Permissions"],
)


@app.get("/health", tags=["Health"])
async def health_check():
    return {"status": "healthy", "version": settings.APP_VERSION}


@app.get("/metrics", tags=["Health"])
async def metrics():
    return Response(content=get_metrics(), media_type="text/plain; version=0.0.4")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "workshop_rbac.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level="info",
    )
