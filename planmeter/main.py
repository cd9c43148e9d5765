import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from dotenv import load_dotenv

# Load env from planmeter/.env before settings are read
package_dir = os.path.dirname(os.path.abspath(__file__))
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv(dotenv_path=os.path.join(package_dir, ".env"))

from planmeter.core.config import settings, validate_config
from planmeter.core.database import create_all_tables
from planmeter.core.logging import configure_logging
from planmeter.core.middleware.request_id import RequestIdMiddleware
from planmeter.core.middleware.metrics import MetricsMiddleware
from planmeter.core.validation import validate_env
from planmeter.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from planmeter.api import health, metrics, subscriptions, entitlements
from planmeter.features.plans.service import seed_plans

configure_logging(settings.ENV)
validate_env()
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("planmeter")
    logger.info("Starting planmeter...")
    if settings.SEED_DEFAULT_PLANS:
        create_all_tables()
        seed_plans()
    try:
        yield
    finally:
        logging.getLogger("planmeter").info("Stopping planmeter...")


app = FastAPI(title="planmeter", lifespan=lifespan)

# Middlewares
app.add_middleware(RequestIdMiddleware)
app.add_middleware(MetricsMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(HTTPException, http_error_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.include_router(health.router, tags=["health"])
app.include_router(metrics.router, tags=["metrics"])
app.include_router(subscriptions.router, tags=["subscriptions"])
app.include_router(entitlements.router, tags=["entitlements"])


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("planmeter.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
