"""
Client-facing API errors. Every auth error renders as
{"data": null, "error": {"code", "message", "status"[, "detail"]}}; no stack traces or secrets.
"""
import logging

from fastapi import Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)

MISSING_PARAMS = "MISSING_PARAMS"
INVALID_STATE = "INVALID_STATE"
TOKEN_EXCHANGE_FAILED = "TOKEN_EXCHANGE_FAILED"
PROFILE_FETCH_FAILED = "PROFILE_FETCH_FAILED"
UNAUTHORIZED = "UNAUTHORIZED"
UNKNOWN_PROVIDER = "UNKNOWN_PROVIDER"
RATE_LIMITED = "RATE_LIMITED"
INTERNAL_ERROR = "INTERNAL_ERROR"


class ApiError(Exception):
    def __init__(
        self,
        code: str,
        message: str,
        status: int = 400,
        *,
        detail: str | None = None,
        headers: dict[str, str] | None = None,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status = status
        self.detail = detail
        self.headers = headers

    def to_dict(self) -> dict:
        error = {"code": self.code, "message": self.message, "status": self.status}
        if self.detail:
            error["detail"] = self.detail
        return {"data": None, "error": error}


async def api_error_handler(request: Request, exc: ApiError) -> JSONResponse:
    return JSONResponse(exc.to_dict(), status_code=exc.status, headers=exc.headers)


async def storage_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Storage failures fail only the current request; details stay in the server log."""
    logger.error("Storage error on %s %s: %s", request.method, request.url.path, type(exc).__name__)
    error = ApiError(INTERNAL_ERROR, "Internal error", 500)
    return JSONResponse(error.to_dict(), status_code=error.status)
