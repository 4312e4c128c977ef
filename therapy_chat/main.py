from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict

from dotenv import load_dotenv
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from starlette.exceptions import HTTPException as StarletteHTTPException

from therapy_chat.api.v1.api import api_router
from therapy_chat.core.config import settings
from therapy_chat.core.config.logging import get_logger
from therapy_chat.core.exceptions import ServiceError
from therapy_chat.core.limiter import limiter
from therapy_chat.core.metrics import setup_metrics
from therapy_chat.core.middleware import LoggingContextMiddleware, MetricsMiddleware
from therapy_chat.services import scheduler
from therapy_chat.services.database import database_service
from therapy_chat.services.realtime import realtime_hub

# Load environment variables
load_dotenv()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Handle application startup and shutdown events.
    """
    logger.info(
        "application_startup",
        project_name=settings.PROJECT_NAME,
        version=settings.VERSION,
        api_prefix=settings.API_V1_STR,
        environment=settings.ENVIRONMENT.value,
    )
    realtime_hub.start()

    yield

    logger.info("application_shutdown")
    await scheduler.stop_all()
    await realtime_hub.close()


app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    description="Therapy Chat API",
    openapi_url=f"{settings.API_V1_STR}/openapi.json",
    lifespan=lifespan,
)

# 1. Prometheus metrics
setup_metrics(app)

# 2. Logging context middleware (first to bind context, last to clear it)
app.add_middleware(LoggingContextMiddleware)

# 3. Request metrics middleware
app.add_middleware(MetricsMiddleware)

# 4. CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# 5. Rate limiter
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


# ==================================================
# Error handlers: every error body is {"error": ...}
# ==================================================
@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    log = logger.error if exc.status_code >= 500 else logger.warning
    log("service_error", path=request.url.path, status_code=exc.status_code, error=exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_body())


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """
    Pydantic errors become a 400 with one issue per invalid field.
    """
    logger.warning("validation_error", path=request.url.path, errors=str(exc.errors()))

    # ["body", "email"] -> "email"
    issues = []
    for error in exc.errors():
        loc = " -> ".join(str(part) for part in error["loc"] if part != "body")
        issues.append({"field": loc, "message": error["msg"]})
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": "Invalid input", "issues": issues},
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error("unhandled_exception", path=request.url.path, error=str(exc), exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "Internal server error"},
    )


app.include_router(api_router, prefix=settings.API_V1_STR)


@app.get("/")
@limiter.limit(settings.RATE_LIMIT_ENDPOINTS["root"][0])
async def root(request: Request):
    """
    Root endpoint for basic connectivity tests.
    """
    logger.info("root_endpoint_called")
    return {
        "name": settings.PROJECT_NAME,
        "version": settings.VERSION,
        "environment": settings.ENVIRONMENT.value,
        "docs_url": "/docs",
    }


@app.get("/health")
@limiter.limit(settings.RATE_LIMIT_ENDPOINTS["health"][0])
async def health_check(request: Request) -> Dict[str, Any]:
    """
    Validates that the API and the database are responsive.
    """
    db_healthy = await database_service.health_check()
    status_code = status.HTTP_200_OK if db_healthy else status.HTTP_503_SERVICE_UNAVAILABLE

    return JSONResponse(
        status_code=status_code,
        content={
            "status": "healthy" if db_healthy else "degraded",
            "components": {
                "api": "healthy",
                "database": "healthy" if db_healthy else "unhealthy",
            },
            "timestamp": datetime.now().isoformat(),
        },
    )
