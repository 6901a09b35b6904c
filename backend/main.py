#!/usr/bin/env python3
"""
bgshift Backend - Blue-green canary rollouts for container services

Accepts CloudFormation-style templates with a blue-green hook, creates the
stack they describe and rolls task definition changes out through test
traffic, a canary step, a bake period and a termination wait, rolling back
on hook failures and health alarms.

All timers live in the database; a restarted process resumes in-flight
rollouts where they stopped.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from config.paths import ensure_data_dirs
from config.settings import AppConfig, setup_logging, HealthCheckFilter
from database import DatabaseManager
from event_bus import get_event_bus, reset_event_bus
from rollout import (
    InMemoryLoadBalancer, InMemoryMetricSource, InMemoryPlatform, RolloutExecutor,
    ValidationHookRunner, routes as rollout_routes,
)
from rollout.scheduler import DurableScheduler

# Configure logging
setup_logging()
logger = logging.getLogger(__name__)


# Global instances (initialized in lifespan)
db: Optional[DatabaseManager] = None
executor: Optional[RolloutExecutor] = None
scheduler_task: Optional[asyncio.Task] = None


def build_drivers(driver: str):
    """Platform, load balancer and metric source for the configured driver"""
    if driver == 'memory':
        return (
            InMemoryPlatform(region=AppConfig.REGION, account_id=AppConfig.ACCOUNT_ID),
            InMemoryLoadBalancer(),
            InMemoryMetricSource(),
        )
    raise ValueError(f"Unknown driver: {driver}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle"""
    # Startup
    # Validate configuration early to fail fast on misconfiguration
    AppConfig.validate()

    logger.info("Starting bgshift backend...")

    # Reapply health check filter to uvicorn access logger (must be done after uvicorn starts)
    uvicorn_access = logging.getLogger("uvicorn.access")
    uvicorn_access.addFilter(HealthCheckFilter())

    global db, executor, scheduler_task
    ensure_data_dirs()
    db = DatabaseManager(AppConfig.DATABASE_URL)
    event_bus = get_event_bus(db)

    platform, load_balancer, metric_source = build_drivers(AppConfig.DRIVER)
    logger.info(f"Using '{AppConfig.DRIVER}' driver")

    scheduler = DurableScheduler(db, poll_interval=AppConfig.SCHEDULER_POLL_SECONDS)
    executor = RolloutExecutor(
        db,
        event_bus,
        platform,
        load_balancer,
        metric_source,
        hook_runner=ValidationHookRunner(AppConfig.HOOK_TIMEOUT_SECONDS),
        scheduler=scheduler,
    )

    rollout_routes.set_rollout_executor(executor)
    rollout_routes.set_database_manager(db)

    # Define task exception handler for background tasks
    def _handle_task_exception(task: asyncio.Task):
        """Handle exceptions from background tasks"""
        try:
            task.result()  # Raises exception if task failed
        except asyncio.CancelledError:
            pass  # Normal shutdown, don't log
        except Exception as e:
            logger.error(f"Background task failed: {e}", exc_info=True)

    resumed = await executor.recover()
    if resumed:
        logger.info(f"Resuming {resumed} interrupted rollouts/stacks")

    scheduler_task = asyncio.create_task(scheduler.start())
    scheduler_task.add_done_callback(_handle_task_exception)
    logger.info("Durable scheduler task started")

    yield
    # Shutdown
    logger.info("Shutting down bgshift backend...")

    scheduler.stop()
    if scheduler_task and not scheduler_task.done():
        scheduler_task.cancel()
        try:
            await scheduler_task
        except asyncio.CancelledError:
            logger.info("Scheduler task cancelled successfully")
        except Exception as e:
            logger.error(f"Error during scheduler task shutdown: {e}")

    reset_event_bus()

    # Dispose SQLAlchemy engine (run in thread pool to avoid blocking event loop)
    try:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, db.dispose)
        logger.info("SQLAlchemy engine disposed")
    except Exception as e:
        logger.error(f"Error disposing database engine: {e}")


app = FastAPI(
    title="bgshift API",
    version="1.0.0",
    lifespan=lifespan
)


# Custom exception handler for Pydantic validation errors
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """
    Custom handler for Pydantic validation errors.
    Returns user-friendly error messages with field-level details.
    """
    errors = []
    for error in exc.errors():
        field = " -> ".join(str(x) for x in error['loc'])
        errors.append({
            "field": field,
            "message": error['msg'],
            "type": error['type']
        })

    logger.warning(f"Validation failed for {request.url.path}: {errors}")

    return JSONResponse(
        status_code=422,
        content={
            "detail": "Invalid request data",
            "errors": errors
        }
    )


# ==================== API Routes ====================

app.include_router(rollout_routes.stack_router)
app.include_router(rollout_routes.rollout_router)
app.include_router(rollout_routes.template_router)


@app.get("/health")
async def health_check():
    """Health check endpoint - no authentication required"""
    return {"status": "healthy", "service": "bgshift-backend"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=AppConfig.HOST, port=AppConfig.PORT)
