import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from . import models
from .database import engine
from .exceptions import BookingEngineError
from .routers import booking_router, payment_router

import redis.asyncio as redis
from fastapi_limiter import FastAPILimiter
from .config import settings

# Setup logger
logger = logging.getLogger("booking_service")

# Create database tables on startup
# Alembic owns the schema in deployed environments; this covers local runs
models.Base.metadata.create_all(bind=engine)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manages application startup and shutdown events.
    """
    logger.info("Booking engine starting up...")

    redis_client = None
    try:
        redis_client = redis.from_url(settings.REDIS_URL, encoding="utf-8")
        await FastAPILimiter.init(redis_client)
        logger.info("FastAPILimiter initialized with Redis.")
    except Exception as e:
        logger.error(f"Failed to initialize FastAPILimiter: {e}")

    yield  # The application is now running

    logger.info("Booking engine shutting down...")
    if redis_client is not None:
        await redis_client.aclose()


app = FastAPI(
    title="Rental Booking Engine API",
    description="Prices stays, manages bookings and reconciles milestone payments.",
    version="1.0.0",
    lifespan=lifespan
)


@app.exception_handler(BookingEngineError)
async def booking_engine_error_handler(request: Request, exc: BookingEngineError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


app.include_router(booking_router.router)
app.include_router(payment_router.router)


@app.get("/")
def read_root():
    return {"message": "Welcome to the Rental Booking Engine"}
