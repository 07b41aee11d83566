"""Global exception handling for the admin API."""

import structlog
from fastapi import Request
from fastapi.responses import JSONResponse

from src.domains.threats.models import RuleConditionError

logger = structlog.get_logger()

# Checked in order; the first matching type wins
_CLIENT_ERRORS: tuple[tuple[type[Exception], int, str], ...] = (
    (RuleConditionError, 422, "invalid_rule_condition"),
    (ValueError, 400, "bad_request"),
    (PermissionError, 403, "forbidden"),
    (LookupError, 404, "not_found"),
)


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    request_id = getattr(request.state, "request_id", "unknown")

    for exc_type, status_code, error in _CLIENT_ERRORS:
        if isinstance(exc, exc_type):
            logger.warning(error, request_id=request_id, path=request.url.path, error=str(exc))
            return JSONResponse(
                status_code=status_code,
                content={"error": error, "message": str(exc), "request_id": request_id},
            )

    logger.exception("unhandled_exception", request_id=request_id, path=request.url.path)
    return JSONResponse(
        status_code=500,
        content={
            "error": "internal_server_error",
            "message": "An unexpected error occurred",
            "request_id": request_id,
        },
    )
