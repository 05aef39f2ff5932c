import asyncio
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from . import models
from .database import engine
from .errors import BookingError
from .routers import booking_router, listing_router, internal_router
from .outbox_poller import run_outbox_poller
from .expiry_sweeper import run_expiry_sweeper

import redis.asyncio as redis
from fastapi_limiter import FastAPILimiter
from .config import settings

logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger("booking_service")

# Alembic owns the schema in deployed environments; this covers local runs
models.Base.metadata.create_all(bind=engine)


async def _stop_task(task: asyncio.Task, name: str) -> None:
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        logger.info(f"{name} task successfully cancelled.")
    except Exception as e:
        logger.error(f"Error during {name} shutdown: {e}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manages application startup and shutdown events.
    """
    logger.info("Starting background tasks...")

    redis_client = redis.from_url(settings.REDIS_URL, encoding="utf-8")
    try:
        await FastAPILimiter.init(redis_client)
        logger.info("FastAPILimiter initialized with Redis.")
    except Exception as e:
        logger.error(f"Failed to initialize FastAPILimiter: {e}")

    poller_task = asyncio.create_task(run_outbox_poller())
    sweeper_task = asyncio.create_task(run_expiry_sweeper())

    yield

    logger.info("Shutting down background tasks...")
    await redis_client.aclose()
    await _stop_task(poller_task, "Outbox poller")
    await _stop_task(sweeper_task, "Expiry sweeper")


app = FastAPI(
    title="Booking Service API",
    description="Booking requests with payment holds, document gating and hold expiry.",
    version="1.0.0",
    lifespan=lifespan
)


@app.exception_handler(BookingError)
async def booking_error_handler(request: Request, exc: BookingError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


app.include_router(booking_router.router)
app.include_router(listing_router.router)
app.include_router(internal_router.router)


@app.get("/")
def read_root():
    return {"message": "Welcome to the Booking Service"}
