from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse


class ApiError(Exception):
    status_code = 500
    kind = "internal"

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        body = {"detail": self.message, "kind": self.kind}
        body.update(self.details)
        return body


class ValidationError(ApiError):
    status_code = 400
    kind = "validation"


class NotFoundError(ApiError):
    status_code = 404
    kind = "not_found"


class ConflictError(ApiError):
    status_code = 409
    kind = "conflict"

    def __init__(self, message: str, conflicts: list[dict] | None = None, **details: Any):
        super().__init__(message, conflicts=list(conflicts or []), **details)

    @property
    def conflicts(self) -> list[dict]:
        return self.details["conflicts"]


class AuthenticationError(ApiError):
    status_code = 401
    kind = "authentication"


class AuthorizationError(ApiError):
    status_code = 403
    kind = "authorization"

    def __init__(self, message: str = "Insufficient permissions", required: list[str] | None = None, mode: str = "all"):
        super().__init__(message, required=list(required or []), mode=mode)


class RateLimitError(ApiError):
    status_code = 429
    kind = "rate_limited"

    def __init__(self, message: str, retry_after: int):
        super().__init__(message, retry_after=int(retry_after))


async def api_error_handler(request: Request, exc: ApiError) -> JSONResponse:
    headers = None
    if isinstance(exc, AuthenticationError):
        headers = {"WWW-Authenticate": "Bearer"}
    elif isinstance(exc, RateLimitError):
        headers = {"Retry-After": str(exc.details["retry_after"])}
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ApiError, api_error_handler)
