"""API route definitions."""

from __future__ import annotations

import logging
from http import HTTPStatus
from typing import TYPE_CHECKING, Annotated

from fastapi import APIRouter, Header, Request, Response, status
from fastapi.responses import JSONResponse

from imagex.api.schemas import ErrorResponse, HealthResponse
from imagex.errors import ImageHandlerError
from imagex.processing import PoolSaturatedError
from imagex.request.models import RequestEvent

if TYPE_CHECKING:
    from imagex.config import Settings
    from imagex.pipeline.handler import ImageHandler
    from imagex.processing import ProcessingPool
    from imagex.request.models import ImageRequestInfo
    from imagex.request.resolver import ImageRequest

logger = logging.getLogger(__name__)

health_router = APIRouter(prefix="/api/v1")
image_router = APIRouter()

_OCTET_STREAM = "application/octet-stream"


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_processing_pool(request: Request) -> ProcessingPool:
    pool: ProcessingPool = request.app.state.processing_pool
    return pool


def _get_image_request(request: Request) -> ImageRequest:
    image_request: ImageRequest = request.app.state.image_request
    return image_request


def _get_image_handler(request: Request) -> ImageHandler:
    handler: ImageHandler = request.app.state.image_handler
    return handler


def _error_response(error: ImageHandlerError) -> JSONResponse:
    return JSONResponse(status_code=int(error.status_code), content=error.to_dict())


def render(image_request: ImageRequest, handler: ImageHandler, event: RequestEvent) -> tuple[bytes, ImageRequestInfo]:
    """Resolve and process one request; runs in a worker thread."""
    info = image_request.setup(event)
    return handler.process(info), info


@health_router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    settings = _get_settings(request)
    stats = _get_processing_pool(request).stats()
    return HealthResponse(
        status="ok",
        source_buckets=len(settings.allowed_buckets),
        max_concurrent=stats.capacity,
        active_requests=stats.active,
        queued_requests=stats.queued,
        rejected_requests=stats.rejected,
    )


@image_router.get(
    "/{path:path}",
    response_class=Response,
    responses={
        status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse},
        status.HTTP_403_FORBIDDEN: {"model": ErrorResponse},
        status.HTTP_404_NOT_FOUND: {"model": ErrorResponse},
        status.HTTP_500_INTERNAL_SERVER_ERROR: {"model": ErrorResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
    },
    summary="Render an image",
)
async def render_image(
    request: Request,
    path: str,
    signature: str | None = None,
    accept: Annotated[str | None, Header()] = None,
) -> Response:
    """Resolve a Default, Thumbor or custom image path and return the edited image."""
    settings = _get_settings(request)
    pool = _get_processing_pool(request)
    event = RequestEvent(path=f"/{path}", signature=signature, accept=accept)

    try:
        body, info = await pool.run(render, _get_image_request(request), _get_image_handler(request), event)
    except PoolSaturatedError:
        return _error_response(
            ImageHandlerError(
                HTTPStatus.SERVICE_UNAVAILABLE,
                "TooManyRequests",
                "The service is busy. Please retry the request later.",
            )
        )
    except ImageHandlerError as error:
        logger.info("Request %s failed: %s %s", event.path, error.code, error.message)
        return _error_response(error)
    except Exception:
        logger.exception("Unexpected failure processing %s", event.path)
        return _error_response(
            ImageHandlerError(
                HTTPStatus.INTERNAL_SERVER_ERROR,
                "InternalError",
                "Internal error. Please contact the system administrator.",
            )
        )

    return Response(
        content=body,
        media_type=info.response_content_type or _OCTET_STREAM,
        headers={"Cache-Control": settings.cache_control},
    )
