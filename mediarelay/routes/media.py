"""Request lifecycle endpoints: resolve, deliver, report delivery failure."""

from fastapi import APIRouter, Depends, HTTPException, Request, Response

from mediarelay.middleware.auth import api_key_dependency
from mediarelay.models.schemas import DeliverRequest, DeliverResponse, ResolveRequest, ResolveResponse
from mediarelay.services import logger
from mediarelay.services.media_service import MediaService
from mediarelay.utils.exceptions import (
    AllProvidersFailedError,
    BackendUnavailableError,
    DownloadError,
    FormatNotFoundError,
    InvalidSourceRefError,
    MediaRelayError,
    NoFormatsFoundError,
    SourceUnavailableError,
    StaleHandleError,
    UploadTooLargeError,
    get_error_response,
)


router = APIRouter(tags=["media"], dependencies=[api_key_dependency])

# Checked in order; subclasses before their bases
ERROR_STATUS = (
    (InvalidSourceRefError, 400),
    (FormatNotFoundError, 404),
    (NoFormatsFoundError, 404),
    (SourceUnavailableError, 404),
    (UploadTooLargeError, 413),
    (StaleHandleError, 409),
    (BackendUnavailableError, 502),
    (DownloadError, 502),
    (AllProvidersFailedError, 502),
)


def status_for(error: Exception) -> int:
    for error_type, status_code in ERROR_STATUS:
        if isinstance(error, error_type):
            return status_code
    return 500


def error_to_http(error: Exception) -> HTTPException:
    status_code = status_for(error)
    if isinstance(error, MediaRelayError):
        logger.warn(
            f"Request failed: {error.message}",
            "api",
            {"error_code": error.error_code, "status": status_code},
        )
    else:
        logger.error(
            f"Unexpected error: {error}",
            "api",
            {"error_type": type(error).__name__},
        )
    return HTTPException(status_code=status_code, detail=get_error_response(error))


def get_media_service(request: Request) -> MediaService:
    return request.app.state.context.service


@router.post(
    "/api/resolve",
    response_model=ResolveResponse,
    responses={
        400: {"description": "Invalid link or kind"},
        401: {"description": "Invalid API key"},
        502: {"description": "Upstream unavailable"},
    },
)
async def resolve_endpoint(
    request: ResolveRequest,
    service: MediaService = Depends(get_media_service),
) -> ResolveResponse:
    """Parse the link, look up its title and return the cache key to deliver."""
    logger.info(f"Resolve request: {request.url}", "api", {"kind": request.kind, "quality": request.quality})
    try:
        resolved = await service.resolve(request.url, request.kind, request.quality)
    except Exception as e:
        raise error_to_http(e)

    key = resolved.cache_key
    return ResolveResponse(
        title=resolved.title,
        cache_key=str(key),
        source_kind=key.source.kind.value,
        source_id=key.source.source_id,
    )


@router.post(
    "/api/deliver",
    response_model=DeliverResponse,
    responses={
        404: {"description": "Format or source unavailable"},
        409: {"description": "Cached handle was stale and has been invalidated"},
        413: {"description": "File too large"},
        502: {"description": "All providers failed"},
        500: {"description": "Upload failed"},
    },
)
async def deliver_endpoint(
    request: DeliverRequest,
    service: MediaService = Depends(get_media_service),
) -> DeliverResponse:
    """
    Deliver a cache key: cached handle on a hit, download + upload on a miss.

    A handle the store no longer recognises is invalidated on the spot and
    answered with 409, so the caller's retry takes the miss path.
    """
    try:
        handle = await service.deliver(request.cache_key)
        try:
            url = await service.object_store.signed_url(handle)
        except StaleHandleError:
            await service.report_delivery_failure(request.cache_key)
            raise
    except Exception as e:
        raise error_to_http(e)

    return DeliverResponse(cache_key=request.cache_key, handle=handle, url=url)


@router.post("/api/deliver/failure", status_code=204)
async def delivery_failure_endpoint(
    request: DeliverRequest,
    service: MediaService = Depends(get_media_service),
) -> Response:
    """Report that a delivered handle was rejected downstream."""
    try:
        await service.report_delivery_failure(request.cache_key)
    except Exception as e:
        raise error_to_http(e)
    return Response(status_code=204)
