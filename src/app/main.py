# src/app/main.py
from __future__ import annotations
import logging
import sys
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from src.app.config import settings
from src.app.domain.errors import (
    ConversionApiError,
    ErrorKind,
    ForbiddenError,
    RateLimitExceededError,
)
from src.app.routers.auth import router as auth_router
from src.app.routers.v1.admin import router as admin_router
from src.app.routers.v1.conversions import router as conversions_router
from src.app.routers.v1.quota import router as quota_router
from src.app.routers.v1.templates import router as templates_router

# Plain stdout logging, suitable for dev and containers
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)

logger = logging.getLogger(__name__)

STATUS_BY_KIND = {
    ErrorKind.AUTHORIZATION: 401,
    ErrorKind.VALIDATION: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.QUOTA_EXCEEDED: 403,
    ErrorKind.RATE_LIMITED: 429,
    ErrorKind.CONVERSION_FAILED: 502,
    ErrorKind.CONFIGURATION: 500,
}

app = FastAPI(title="File Conversion API", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.FRONTEND_CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(auth_router)
app.include_router(conversions_router)
app.include_router(quota_router)
app.include_router(templates_router)
app.include_router(admin_router)


def status_for(error: ConversionApiError) -> int:
    if isinstance(error, ForbiddenError):
        return 403
    return STATUS_BY_KIND.get(error.kind, 500)


@app.exception_handler(ConversionApiError)
async def conversion_api_error_handler(request: Request, exc: ConversionApiError) -> JSONResponse:
    status_code = status_for(exc)
    if status_code >= 500:
        logger.error("%s %s failed: %s (%s)", request.method, request.url.path, exc.message, exc.code)
    else:
        logger.info("%s %s rejected: %s (%s)", request.method, request.url.path, exc.message, exc.code)

    headers = None
    if isinstance(exc, RateLimitExceededError):
        headers = {"Retry-After": str(exc.retry_after_seconds)}

    return JSONResponse(
        status_code=status_code,
        content={"code": exc.code, "detail": exc.message},
        headers=headers,
    )


@app.get("/health")
def health():
    return {"ok": True}
