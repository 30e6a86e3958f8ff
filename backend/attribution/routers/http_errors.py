import logging
from typing import NoReturn

from fastapi import HTTPException

from attribution.errors import (
    AttributionConflictError,
    AttributionError,
    AttributionNotFoundError,
    AttributionPermissionError,
    AttributionStoreUnavailableError,
)

logger = logging.getLogger(__name__)


def raise_attribution_http_error(exc: Exception) -> NoReturn:
    if isinstance(exc, AttributionStoreUnavailableError):
        logger.warning("Attribution store unavailable: %s", exc)
        raise HTTPException(status_code=503, detail="Attribution store unavailable, retry later")
    if isinstance(exc, AttributionNotFoundError):
        raise HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, AttributionPermissionError):
        raise HTTPException(status_code=403, detail=str(exc))
    if isinstance(exc, AttributionConflictError):
        raise HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, AttributionError):
        raise HTTPException(status_code=400, detail=str(exc))
    raise exc
