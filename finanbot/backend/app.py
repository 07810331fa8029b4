from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from finanbot.core.database import init_db
from finanbot.core.errors import FinanBotError, UpstreamError
from .config import settings
from .routers import auth, chat, dashboard, open_finance, webhooks

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger("finanbot.backend")

UPSTREAM_USER_MESSAGE = "Sync failed, please try again"


def _error_response(status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": {"code": code, "message": message}},
    )


async def _handle_app_error(request: Request, exc: FinanBotError) -> JSONResponse:
    if isinstance(exc, UpstreamError):
        logger.error(
            "Upstream failure on %s %s (provider=%s status=%s): %s",
            request.method,
            request.url.path,
            exc.provider,
            exc.status,
            exc.message,
        )
        return _error_response(exc.status_code, exc.code, UPSTREAM_USER_MESSAGE)
    logger.info("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.message)
    return _error_response(exc.status_code, exc.code, exc.message)


async def _handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    message = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
    return _error_response(400, "VALIDATION_ERROR", message)


async def _handle_unexpected(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return _error_response(500, "INTERNAL_SERVER_ERROR", "Internal server error")


def create_app() -> FastAPI:
    app = FastAPI(title=settings.title, version=settings.version)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(FinanBotError, _handle_app_error)
    app.add_exception_handler(RequestValidationError, _handle_validation_error)
    app.add_exception_handler(Exception, _handle_unexpected)

    app.include_router(auth.router)
    app.include_router(open_finance.router)
    app.include_router(dashboard.router)
    app.include_router(chat.router)
    app.include_router(webhooks.router)

    @app.get("/health")
    async def health():
        return {"status": "OK", "version": settings.version, "provider": settings.aggregator_provider}

    @app.on_event("startup")
    def _on_startup() -> None:
        logger.info("Bootstrapping FinanBot backend")
        init_db()

    return app


app = create_app()
