import asyncio
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from . import models
from .database import engine
from .errors import TourServiceError
from .routers import tour_router
from .outbox_poller import run_outbox_poller
from .tour_scheduler import run_tour_scheduler

import redis.asyncio as redis
from fastapi_limiter import FastAPILimiter
from .config import settings

# Setup logger
logger = logging.getLogger("tour_service")

# Create database tables on startup
models.Base.metadata.create_all(bind=engine)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manages application startup and shutdown events.
    """
    logger.info("Starting background tasks...")

    redis_client = None
    try:
        redis_client = redis.from_url(settings.REDIS_URL, encoding="utf-8")
        await FastAPILimiter.init(redis_client)
        logger.info("FastAPILimiter initialized with Redis.")
    except Exception as e:
        logger.error(f"Failed to initialize FastAPILimiter: {e}")

    # Relays committed tour events to Kafka
    poller_task = asyncio.create_task(run_outbox_poller())

    # Expires tour requests nobody confirmed in time
    scheduler_task = asyncio.create_task(run_tour_scheduler())

    yield  # The application is now running

    # --- Code to run on shutdown ---
    logger.info("Shutting down background tasks...")

    if redis_client is not None:
        await redis_client.close()

    # Cancel both tasks
    poller_task.cancel()
    scheduler_task.cancel()

    # Await their cancellation to allow for graceful shutdown
    try:
        await poller_task
    except asyncio.CancelledError:
        logger.info("Outbox poller task successfully cancelled.")
    except Exception as e:
        logger.error(f"Error during outbox poller shutdown: {e}")

    try:
        await scheduler_task
    except asyncio.CancelledError:
        logger.info("Tour scheduler task successfully cancelled.")
    except Exception as e:
        logger.error(f"Error during tour scheduler shutdown: {e}")


# Create the FastAPI app instance, passing the lifespan manager
app = FastAPI(
    title="Tour Scheduling Service API",
    description="Schedules property tours between requesters and agents.",
    version="1.0.0",
    lifespan=lifespan
)


@app.exception_handler(TourServiceError)
async def tour_service_error_handler(request: Request, exc: TourServiceError):
    """Returns every rejected action as {"detail": ..., "kind": ...}."""
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


app.include_router(tour_router.router)


@app.get("/")
def read_root():
    return {"message": "Welcome to the Tour Scheduling Service"}
