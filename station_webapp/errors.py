from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from station.auth import AuthError


logger = logging.getLogger(__name__)


class APIError(Exception):
    def __init__(self, code: str, status: int = 400, extra: Optional[Dict[str, Any]] = None):
        self.code = code
        self.status = status
        self.extra = extra or {}
        super().__init__(code)


class AlreadyClaimedError(APIError):
    def __init__(self, resources: Dict[str, Any], daily: Dict[str, Any]):
        super().__init__("already_claimed", 409, {"resources": resources, "daily": daily})


class InvalidPayloadError(APIError):
    def __init__(self):
        super().__init__("invalid_payload", 400)


class NotFoundError(APIError):
    def __init__(self):
        super().__init__("not_found", 404)


class ConflictError(APIError):
    def __init__(self):
        super().__init__("state_conflict", 409)


def error_response(exc: APIError, headers: Optional[Dict[str, str]] = None) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status,
        content={"error": exc.code, **exc.extra},
        headers=headers,
    )


def register_error_handlers(
    app: FastAPI, cors_headers: Callable[[Optional[str]], Dict[str, str]]
) -> None:
    @app.exception_handler(APIError)
    async def api_error_handler(request: Request, exc: APIError):
        return error_response(exc)

    @app.exception_handler(AuthError)
    async def auth_error_handler(request: Request, exc: AuthError):
        logger.info("auth rejected: %s (%s)", exc.code, exc)
        return error_response(APIError(exc.code, 401))

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        logger.info("invalid payload on %s: %s", request.url.path, exc.errors())
        return error_response(InvalidPayloadError())

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        if exc.status_code in (404, 405):
            return error_response(NotFoundError())
        return error_response(APIError("http_error", exc.status_code))

    # Runs outside the middleware stack, so CORS headers are added here.
    @app.exception_handler(Exception)
    async def generic_error_handler(request: Request, exc: Exception):
        logger.exception("unhandled error on %s %s", request.method, request.url.path)
        return error_response(
            APIError("internal_error", 500),
            headers=cors_headers(request.headers.get("origin")),
        )
