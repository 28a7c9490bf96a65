# errors.py — API envelope and error taxonomy
# Every failure leaves the API as {success: false, error, message}. The
# error codes are part of the public contract; messages are for humans.

import json
import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded

logger = logging.getLogger("berth.errors")


def ok(data: Any = None, message: Optional[str] = None) -> Dict[str, Any]:
    body: Dict[str, Any] = {"success": True}
    if data is not None:
        body["data"] = data
    if message:
        body["message"] = message
    return body


class APIError(Exception):
    status_code = 500
    error = "internal_error"
    message = "Internal server error"

    def __init__(
        self,
        message: Optional[str] = None,
        error: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message or self.message
        self.error = error or self.error
        if status_code is not None:
            self.status_code = status_code
        self.details = details
        super().__init__(self.message)

    def to_body(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "success": False,
            "error": self.error,
            "message": self.message,
        }
        if self.details:
            body.update(self.details)
        return body


class ValidationFailed(APIError):
    status_code = 400
    error = "validation_error"
    message = "Request validation failed"


class Unauthorized(APIError):
    status_code = 401
    error = "unauthorized"
    message = "Authentication required"


class Forbidden(APIError):
    status_code = 403
    error = "forbidden"
    message = "Insufficient permissions"


class NotFound(APIError):
    status_code = 404
    error = "not_found"
    message = "Resource not found"


class Conflict(APIError):
    status_code = 409
    error = "conflict"
    message = "Resource already exists"


class UpstreamError(APIError):
    status_code = 502
    error = "upstream_error"
    message = "Agent request failed"


class UpstreamTimeout(UpstreamError):
    status_code = 504
    error = "upstream_timeout"
    message = "Agent did not respond in time"


class ServiceUnavailable(APIError):
    status_code = 503
    error = "service_unavailable"
    message = "Service unavailable"


def _clean_validation_errors(exc: RequestValidationError) -> list:
    errors = []
    for err in exc.errors():
        clean_err = {
            "loc": list(err.get("loc", [])),
            "msg": str(err.get("msg", "")),
            "type": str(err.get("type", "unknown")),
        }
        if "input" in err:
            try:
                json.dumps(err["input"])
                clean_err["input"] = err["input"]
            except (TypeError, ValueError):
                clean_err["input"] = str(err["input"])
        errors.append(clean_err)
    return errors


def install_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(APIError)
    async def api_error_handler(request: Request, exc: APIError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.error}: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_body())

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = _clean_validation_errors(exc)
        first = errors[0]["msg"] if errors else "Invalid request"
        return JSONResponse(
            status_code=400,
            content={
                "success": False,
                "error": "validation_error",
                "message": first,
                "details": errors,
            },
        )

    @app.exception_handler(RateLimitExceeded)
    async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
        return JSONResponse(
            status_code=429,
            content={
                "success": False,
                "error": "rate_limited",
                "message": f"Rate limit exceeded: {exc.detail}",
            },
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={
                "success": False,
                "error": "internal_error",
                "message": "Internal server error",
                "request_id": getattr(request.state, "request_id", None),
            },
        )
