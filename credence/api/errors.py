"""Exception handlers mapping errors to ``{error, error_code, request_id}`` bodies."""

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from credence.errors import CredenceError

logger = logging.getLogger(__name__)

_STATUS_CODES = {
    400: "VALIDATION_ERROR",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    413: "VALIDATION_ERROR",
    422: "VALIDATION_ERROR",
    429: "RATE_LIMITED",
    503: "UNAVAILABLE",
}


def error_response(request: Request, status_code: int, message: str, error_code: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "error": message,
            "error_code": error_code,
            "request_id": getattr(request.state, "request_id", None),
        },
    )


async def credence_error_handler(request: Request, exc: CredenceError) -> JSONResponse:
    if exc.http_status >= 500:
        logger.error("%s on %s: %s", exc.error_code, request.url.path, exc.detail or exc.safe_message)
    else:
        logger.info("%s on %s: %s", exc.error_code, request.url.path, exc.detail or exc.safe_message)
    return error_response(request, exc.http_status, exc.safe_message, exc.error_code)


async def http_error_handler(request: Request, exc: HTTPException) -> JSONResponse:
    code = _STATUS_CODES.get(exc.status_code, "INTERNAL_ERROR")
    response = error_response(request, exc.status_code, str(exc.detail), code)
    if exc.headers:
        response.headers.update(exc.headers)
    return response


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    message = "Invalid request."
    if errors:
        first = errors[0]
        loc = ".".join(str(p) for p in first.get("loc", ()) if p not in ("body", "query", "header", "path"))
        msg = first.get("msg", message)
        message = f"{loc}: {msg}" if loc else msg
    return error_response(request, 400, message, "VALIDATION_ERROR")


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(CredenceError, credence_error_handler)
    app.add_exception_handler(HTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
