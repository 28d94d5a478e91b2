"""
FastAPI application entry point.
"""

import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from spendsense.config import settings
from spendsense.api.router import api_router
from spendsense.exceptions import (
    AccountNotFoundError,
    GroupInUseError,
    InvalidInputError,
    MappingNotFoundError,
    MerchantGroupNotFoundError,
    RecurringPatternNotFoundError,
    StoreError,
)

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

NOT_FOUND_ERRORS = (
    AccountNotFoundError,
    MerchantGroupNotFoundError,
    MappingNotFoundError,
    RecurringPatternNotFoundError,
)


# Create FastAPI app
app = FastAPI(
    title=settings.app_name,
    version="1.0.0",
    description="Merchant grouping and recurring payment detection for transaction histories",
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_url],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(InvalidInputError)
async def invalid_input_handler(request: Request, exc: InvalidInputError):
    status_code = 404 if isinstance(exc, NOT_FOUND_ERRORS) else 400
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


@app.exception_handler(GroupInUseError)
async def group_in_use_handler(request: Request, exc: GroupInUseError):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError):
    logger.warning("Store error on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=503,
        content={"detail": str(exc), "retryable": exc.retryable},
    )


# Include API router
app.include_router(api_router, prefix="/api/v1")


@app.get("/")
def read_root():
    """Root endpoint."""
    return {
        "name": settings.app_name,
        "version": "1.0.0",
        "status": "running"
    }


@app.get("/api/v1/health")
def health_check():
    """Health check endpoint."""
    return {
        "status": "ok",
        "app_name": settings.app_name
    }
