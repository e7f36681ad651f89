"""
Operational errors and the handlers that turn them into JSON responses.

Anything raised as an ``AppError`` is trusted: its message goes to the client
with its status code. Everything else is logged in full and reported as a
generic 500.
"""

import logging
from typing import Optional

from bson.errors import InvalidId
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from pymongo.errors import DuplicateKeyError
from starlette.exceptions import HTTPException as StarletteHTTPException

log = logging.getLogger(__name__)


class AppError(Exception):
    status_code = 500

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.is_operational = True

    @property
    def status(self) -> str:
        return "fail" if str(self.status_code).startswith("4") else "error"


class BadRequestError(AppError):
    status_code = 400


class EmptyCartError(BadRequestError):
    def __init__(self, message: str = "Your cart is empty"):
        super().__init__(message)


class AmountTooLowError(BadRequestError):
    pass


class InvalidStatusTransitionError(BadRequestError):
    pass


class AuthenticationError(AppError):
    status_code = 401


class PermissionDeniedError(AppError):
    status_code = 403


class NotFoundError(AppError):
    status_code = 404


class TransactionNotFoundError(NotFoundError):
    def __init__(self, message: str = "Transaction not found"):
        super().__init__(message)


class ConflictError(AppError):
    status_code = 409


class GatewayError(AppError):
    status_code = 502


class GatewayUnavailableError(GatewayError):
    pass


class GatewayRejectedError(GatewayError):
    """The payment gateway answered with a non-success status code."""

    def __init__(self, code, reason: str):
        super().__init__(f"Payment request failed: {reason}")
        self.code = code
        self.reason = reason


class SmsError(GatewayError):
    pass


def _body(status: str, message: str, **extra) -> dict:
    return {"status": status, "message": message, **extra}


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(AppError)
    async def handle_app_error(request: Request, exc: AppError):
        if exc.status_code >= 500:
            log.error("%s %s -> %s: %s", request.method, request.url.path, exc.status_code, exc.message)
        else:
            log.info("%s %s -> %s: %s", request.method, request.url.path, exc.status_code, exc.message)
        return JSONResponse(status_code=exc.status_code, content=_body(exc.status, exc.message))

    @app.exception_handler(DuplicateKeyError)
    async def handle_duplicate_key(request: Request, exc: DuplicateKeyError):
        details = getattr(exc, "details", None) or {}
        value = details.get("keyValue") or details.get("errmsg") or str(exc)
        message = f"Duplicate field value: {value}. Please use another value."
        log.info("Duplicate key on %s: %s", request.url.path, value)
        return JSONResponse(status_code=400, content=_body("fail", message))

    @app.exception_handler(InvalidId)
    async def handle_invalid_id(request: Request, exc: InvalidId):
        return JSONResponse(status_code=400, content=_body("fail", f"Invalid id: {exc}"))

    # models built inside a route from already validated input fail the same way
    @app.exception_handler(ValidationError)
    @app.exception_handler(RequestValidationError)
    async def handle_validation(request: Request, exc):
        errors = [
            {"field": ".".join(str(p) for p in err.get("loc", ()) if p != "body"), "message": err.get("msg")}
            for err in exc.errors()
        ]
        message = "Invalid input data. " + ". ".join(f"{e['field']}: {e['message']}" for e in errors)
        return JSONResponse(status_code=400, content=_body("fail", message, errors=errors))

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404 and exc.detail == "Not Found":
            message = f"Can't find {request.url.path} on this server!"
        else:
            message = str(exc.detail)
        status = "fail" if exc.status_code < 500 else "error"
        return JSONResponse(status_code=exc.status_code, content=_body(status, message), headers=exc.headers)

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception):
        log.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content=_body("error", "Something went wrong"))
