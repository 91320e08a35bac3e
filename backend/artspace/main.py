from __future__ import annotations

import logging
import os
from typing import Iterable, Optional
from urllib.parse import urlsplit

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .database import lifespan
from .routes import conflicts, group_bookings, magic_links, webhooks

app = FastAPI(title="Artspace API", lifespan=lifespan)

logger = logging.getLogger(__name__)


def _normalize_origin(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    trimmed = value.strip()
    if not trimmed:
        return None
    parsed = urlsplit(trimmed)
    if not parsed.scheme or not parsed.netloc:
        return None
    return f"{parsed.scheme}://{parsed.netloc}"


def _collect_cors_origins() -> list[str]:
    origin_keys: Iterable[str] = ("FRONTEND_APP_URL", "PUBLIC_APP_URL", "SUPABASE_URL")
    origins = {
        origin
        for origin in (_normalize_origin(os.getenv(key)) for key in origin_keys)
        if origin
    }

    extra_origins = os.getenv("ADDITIONAL_CORS_ORIGINS")
    if extra_origins:
        for candidate in extra_origins.split(","):
            normalized = _normalize_origin(candidate)
            if normalized:
                origins.add(normalized)

    if not origins:
        # Local development defaults when nothing is configured.
        origins.update({"http://localhost:3000", "http://127.0.0.1:3000"})
        logger.debug(
            "CORS origins not configured; defaulting to local development origins: %s",
            sorted(origins),
        )
    else:
        logger.debug("Configured CORS origins: %s", sorted(origins))

    return sorted(origins)


allowed_origins = _collect_cors_origins()

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["*"],
)


def _cors_headers(request: Request) -> dict[str, str]:
    headers: dict[str, str] = {}
    origin = request.headers.get("origin")
    if origin and origin in allowed_origins:
        headers["Access-Control-Allow-Origin"] = origin
        headers["Access-Control-Allow-Credentials"] = "true"
    return headers


# Exception handlers keep CORS headers on error responses.
@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail},
        headers=_cors_headers(request),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Schema failures are reported as 400 with the first problem as the message."""

    errors = jsonable_encoder(exc.errors())
    message = "Invalid request"
    if errors:
        first = errors[0]
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"{location}: {first.get('msg')}" if location else str(first.get("msg"))
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": message, "details": errors},
        headers=_cors_headers(request),
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.error(
        "Unhandled exception on %s %s: %s",
        request.method,
        request.url.path,
        exc,
        exc_info=True,
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "Internal server error"},
        headers=_cors_headers(request),
    )


app.include_router(group_bookings.router)
app.include_router(conflicts.router)
app.include_router(magic_links.router)
app.include_router(webhooks.router)


@app.get("/")
async def root():
    return {"message": "Artspace API is running"}
