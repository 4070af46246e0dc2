import logging
import os
import time
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

# Load env from the project .env before settings are read
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

from legalinsight.core.config import settings, validate_config
from legalinsight.core.database import create_all_tables
from legalinsight.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    request_validation_error_handler,
    unhandled_exception_handler,
)
from legalinsight.core.logging import configure_logging
from legalinsight.core.middleware.request_id import RequestIdMiddleware
from legalinsight.core.validation import validate_env
from legalinsight.api import (
    admin,
    billing,
    documents,
    entitlements,
    health,
    notifications,
    plans,
    promo,
    referrals,
)

configure_logging(settings.ENV)
validate_env()
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("legalinsight")
    logger.info("Starting Legal Insight entitlements service...")
    app.state.startup_time = time.time()
    create_all_tables()
    try:
        yield
    finally:
        logging.getLogger("legalinsight").info("Stopping Legal Insight entitlements service...")


app = FastAPI(title="Legal Insight AI - Entitlements", lifespan=lifespan)

# Middlewares
app.add_middleware(RequestIdMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(HTTPException, http_error_handler)
app.add_exception_handler(RequestValidationError, request_validation_error_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

# CORS (adjust origins in production)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.root_router, tags=["health"])
app.include_router(plans.router, tags=["plans"])
app.include_router(entitlements.router, tags=["entitlements"])
app.include_router(documents.router, tags=["documents"])
app.include_router(billing.router, tags=["billing"])
app.include_router(promo.router, tags=["promo"])
app.include_router(referrals.router, tags=["referrals"])
app.include_router(notifications.router, tags=["notifications"])
app.include_router(admin.router, tags=["admin"])


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("legalinsight.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
