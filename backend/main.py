from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from sqlalchemy.exc import SQLAlchemyError
from contextlib import asynccontextmanager
import logging

from core.config import settings, validate_startup_environment
from core.database import initialize_db, db_manager
from core.utils.logging import setup_logging
# Import exceptions and handlers
from core.exceptions import (
    APIException,
    api_exception_handler,
    http_exception_handler,
    validation_exception_handler,
    sqlalchemy_exception_handler,
    general_exception_handler
)
from routes import health_router, pipeline_router

setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup event
    logger.info("Validating environment configuration...")
    validation_result = validate_startup_environment()
    for warning in validation_result.warnings:
        logger.warning(warning)
    if not validation_result.is_valid:
        logger.error(f"Environment validation failed: {validation_result.error_message}")
        if settings.ENVIRONMENT != "local":
            raise RuntimeError("Invalid environment configuration. Please check your .env file.")
        logger.warning("Continuing with invalid environment configuration in local mode")

    initialize_db(settings.SQLALCHEMY_DATABASE_URI, settings.ENVIRONMENT == "local")
    yield
    # Shutdown event
    await db_manager.dispose()


app = FastAPI(
    title="Order Pipeline API",
    description="Payment reconciliation, retry scheduling, duplicate cleanup and order splitting.",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.include_router(health_router, prefix="/v1")
app.include_router(pipeline_router, prefix="/v1")


@app.get("/")
async def read_root():
    return {
        "service": "Order Pipeline API",
        "status": "Running",
        "version": "1.0.0",
    }


# Register exception handlers
app.add_exception_handler(APIException, api_exception_handler)
app.add_exception_handler(SQLAlchemyError, sqlalchemy_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(StarletteHTTPException, http_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(Exception, general_exception_handler)
