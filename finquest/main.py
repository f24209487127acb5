import logging
import os
import time
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

# Load env from finquest/.env before settings are read
package_dir = os.path.dirname(os.path.abspath(__file__))
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv(dotenv_path=os.path.join(package_dir, ".env"))

from finquest.core.config import settings, validate_config  # noqa: E402
from finquest.core.database import create_all_tables  # noqa: E402
from finquest.core.errors import (  # noqa: E402
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from finquest.core.logging import configure_logging  # noqa: E402
from finquest.core.middleware.metrics import MetricsMiddleware  # noqa: E402
from finquest.core.middleware.request_id import RequestIdMiddleware  # noqa: E402
from finquest.core.middleware.tracing import TracingMiddleware  # noqa: E402
from finquest.core.tracing import setup_tracing  # noqa: E402
from finquest.api import challenges, goals, health, metrics, points, transactions  # noqa: E402


configure_logging(settings.ENV)
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))
setup_tracing(enabled=settings.OTEL_ENABLED)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("finquest")
    logger.info("Starting FinQuest backend...")
    app.state.startup_time = time.time()
    if settings.DATABASE_URL:
        create_all_tables()
    try:
        yield
    finally:
        logger.info("Stopping FinQuest backend...")


app = FastAPI(title="FinQuest - Challenge Engine", lifespan=lifespan)

# Middlewares
app.add_middleware(RequestIdMiddleware)
app.add_middleware(TracingMiddleware)
app.add_middleware(MetricsMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(HTTPException, http_error_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

# CORS (adjust origins in production)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(challenges.router)
app.include_router(transactions.router)
app.include_router(goals.router)
app.include_router(points.router)
app.include_router(health.root_router)
app.include_router(metrics.router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("finquest.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
