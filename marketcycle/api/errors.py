import math

import structlog
from fastapi import Request
from fastapi.responses import JSONResponse

from marketcycle.errors import MarketCycleError

logger = structlog.get_logger(__name__)


async def market_cycle_error_handler(request: Request, exc: MarketCycleError) -> JSONResponse:
    """
    Render any ``MarketCycleError`` as ``{"error": exc.to_dict()}`` with the
    error's own HTTP status. Rate-limit errors also carry ``Retry-After``.
    """
    body = exc.to_dict()
    log = logger.error if exc.http_status >= 500 else logger.warning
    log(
        "api_error",
        method=request.method,
        path=request.url.path,
        status_code=exc.http_status,
        error_code=exc.error_code,
        message=body["message"],
    )

    headers = {}
    retry_after = body.get("retry_after")
    if retry_after:
        headers["Retry-After"] = str(math.ceil(retry_after))
    return JSONResponse(status_code=exc.http_status, content={"error": body}, headers=headers)
