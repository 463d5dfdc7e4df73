import logging
import os
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# Import models so every table is registered with Base before create_all
from . import models  # noqa: F401
from .config import FRONTEND_URL
from .database import Base, engine
from .domain.bookings.router import catalog_router, workers_router
from .domain.bookings.router import router as bookings_router
from .domain.coverage.router import router as coverage_router
from .domain.payments.router import router as payments_router
from .exceptions import BookingSystemError
from .routes.maintenance import router as maintenance_router
from .routes.realtime import router as realtime_router
from .routes.webhooks import router as webhooks_router
from .wiring import build_container

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Reduce verbosity of third-party libraries
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Application starting up...")
    try:
        Base.metadata.create_all(bind=engine, checkfirst=True)
        logger.info("Database tables created successfully")
    except Exception as e:
        # Several uvicorn workers can race on the first create_all
        error_msg = str(e)
        if "already exists" in error_msg or "duplicate key" in error_msg:
            logger.info("Database tables already exist (created by another worker)")
        else:
            logger.error(f"Failed to create database tables: {e}")

    # Tests install their own container before startup
    if getattr(app.state, "container", None) is None:
        app.state.container = build_container()

    yield
    await app.state.container.publisher.close()
    logger.info("Application shutting down...")


app = FastAPI(title="TV Mount Booking API", version="1.0.0", lifespan=lifespan)


@app.exception_handler(BookingSystemError)
async def booking_error_handler(request: Request, exc: BookingSystemError):
    """Domain errors carry their own status code and a customer-safe message"""
    if exc.status_code >= 500:
        logger.error(f"❌ {request.method} {request.url.path} - {type(exc).__name__}: {exc}")
    else:
        logger.warning(f"⚠️ {request.method} {request.url.path} - {type(exc).__name__}: {exc}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.public_message, "detail": exc.public_message},
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.warning(f"Validation error for {request.url.path}: {exc.errors()}")
    return JSONResponse(status_code=422, content={"detail": jsonable_errors(exc)})


def jsonable_errors(exc: RequestValidationError) -> list:
    # ctx can hold the raw ValueError raised by a validator
    return [{k: v for k, v in error.items() if k != "ctx"} for error in exc.errors()]


@app.middleware("http")
async def log_requests(request: Request, call_next):
    try:
        response = await call_next(request)
        return response
    except Exception as e:
        logger.error(f"{request.method} {request.url.path} - Error: {str(e)}")
        raise


# CORS Configuration
ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS", f"{FRONTEND_URL},http://localhost:3000").split(",")
logger.info(f"CORS allowed origins: {ALLOWED_ORIGINS}")

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS", "PATCH"],
    allow_headers=["*"],
)

# Routes
app.include_router(bookings_router)
app.include_router(workers_router)
app.include_router(catalog_router)
app.include_router(coverage_router)
app.include_router(payments_router)
app.include_router(webhooks_router)
app.include_router(maintenance_router)
app.include_router(realtime_router)


@app.get("/")
def root():
    return {"message": "TV Mount Booking API is running"}


@app.get("/health")
def health():
    return {"status": "healthy"}


@app.get("/health/redis")
async def redis_health_check():
    """Check Redis connectivity for monitoring"""
    from .redis_client import get_redis_client, redis_configured

    if not redis_configured():
        return {"status": "disabled", "redis": {"connected": False}}
    try:
        redis_client = get_redis_client()

        start_time = time.time()
        redis_client.ping()
        response_time = (time.time() - start_time) * 1000

        info = redis_client.info()
        return {
            "status": "healthy",
            "redis": {
                "connected": True,
                "response_time_ms": round(response_time, 2),
                "version": info.get("redis_version", "unknown"),
                "connected_clients": info.get("connected_clients", 0),
            },
        }
    except Exception as e:
        return {"status": "unhealthy", "redis": {"connected": False, "error": str(e)}}
