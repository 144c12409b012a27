"""API key check for the internal front end that calls this service."""

import secrets
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request

from mediarelay.config import settings
from mediarelay.services import logger


async def verify_api_key(
    request: Request,
    x_api_key: Optional[str] = Header(None, alias="X-API-Key"),
) -> str:
    """
    Reject requests whose X-API-Key header does not match API_KEY.

    An unset API_KEY rejects everything rather than leaving the service open.
    """
    if not settings.API_KEY or not x_api_key or not secrets.compare_digest(x_api_key, settings.API_KEY):
        logger.warn(
            "Rejected request with invalid API key",
            "api",
            {"path": request.url.path, "client": request.client.host if request.client else None},
        )
        raise HTTPException(status_code=401, detail="Invalid API key")
    return x_api_key


api_key_dependency = Depends(verify_api_key)
