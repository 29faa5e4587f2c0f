import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class CostControlError(Exception):
    """Base class for errors raised by the financial services."""

    status_code = 400

    def __init__(self, detail: str, **extra: Any) -> None:
        super().__init__(detail)
        self.detail = detail
        self.extra: Dict[str, Any] = extra


class ValidationError(CostControlError):
    """Client input or a business rule was violated."""

    status_code = 422


class NotFoundError(CostControlError):
    status_code = 404


class PermissionDeniedError(CostControlError):
    status_code = 403


class ConflictError(CostControlError):
    """The resource is already in a state that forbids the operation."""

    status_code = 409


class TransactionFailure(CostControlError):
    """The ledger transaction could not commit. Safe to retry with the same payload."""

    status_code = 503

    def __init__(self, detail: str, **extra: Any) -> None:
        extra.setdefault("retryable", True)
        super().__init__(detail, **extra)


class RecalculationFailure(CostControlError):
    """Derived aggregates could not be recomputed. Logged, never returned to callers."""

    status_code = 500

    def __init__(self, target: str, entity_id: Optional[int], detail: str) -> None:
        super().__init__(detail, target=target, entity_id=entity_id)
        self.target = target
        self.entity_id = entity_id


def _json_safe(value: Any) -> Any:
    if isinstance(value, dict):
        return {key: _json_safe(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(item) for item in value]
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    return str(value)


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(CostControlError)
    async def domain_exception_handler(request: Request, exc: CostControlError) -> JSONResponse:  # type: ignore[override]
        payload: Dict[str, Any] = {"detail": exc.detail, "path": str(request.url)}
        payload.update(_json_safe(exc.extra))
        return JSONResponse(status_code=exc.status_code, content=payload)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:  # type: ignore[override]
        return JSONResponse(
            status_code=422,
            content={
                "detail": "Validation failed.",
                "errors": _json_safe(exc.errors()),
                "path": str(request.url),
            },
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:  # type: ignore[override]
        logger.error("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
        return JSONResponse(
            status_code=500,
            content={
                "detail": "Internal server error.",
                "path": str(request.url),
            },
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:  # type: ignore[override]
        payload: Dict[str, Any] = {"detail": exc.detail or "HTTP error.", "path": str(request.url)}
        if exc.headers:
            payload["headers"] = exc.headers
        return JSONResponse(status_code=exc.status_code, content=payload)
