import logging

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse

from app.ingest.errors import PipelineError
from app.observability.middleware import get_request_id

logger = logging.getLogger(__name__)


def as_http_500(e: Exception) -> HTTPException:
    """Log exception and return a generic 500 HTTPException (no internal details leaked).
    Why available: Centralized error handling so API never leaks stack traces or internal state to clients."""
    logger.error("Unhandled error", exc_info=e)
    return HTTPException(status_code=500, detail="Internal server error")


async def pipeline_error_handler(request: Request, exc: PipelineError) -> JSONResponse:
    """Render a PipelineError as {detail, errorCode, details} with the status its class declares."""
    if exc.status_code >= 500:
        logger.warning(
            "[%s] %s %s -> %s: %s",
            get_request_id(request), request.method, request.url.path, exc.error_code, exc.message,
        )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def check_request_size(request: Request, max_kb: int) -> None:
    """Reject bodies above max_kb with 413 based on the Content-Length header.
    Why available: Chunk endpoints mirror the host's request ceiling so oversized chunks fail fast and visibly."""
    length = request.headers.get("content-length")
    if length is not None and length.isdigit() and int(length) > max_kb * 1024:
        raise HTTPException(
            status_code=413,
            detail=f"Request body exceeds {max_kb} KB; use a smaller chunk size.",
        )
