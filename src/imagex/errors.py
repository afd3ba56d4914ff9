"""Error taxonomy and the pattern-based remapper for engine/detector failures.

Every failure that leaves the core is an ``ImageHandlerError`` carrying an
HTTP status, a stable code (e.g. ``SmartCrop::FaceIndexOutOfRange``) and a
human-readable message. Low-level errors are matched against ordered tables
of substring patterns; the first match wins, otherwise the call site's
default error is used.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import StrEnum
from http import HTTPStatus
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

logger = logging.getLogger(__name__)


class ErrorKind(StrEnum):
    BAD_REQUEST = "BadRequest"
    FORBIDDEN = "Forbidden"
    NOT_FOUND = "NotFound"
    INTERNAL_SERVER_ERROR = "InternalServerError"
    SERVICE_UNAVAILABLE = "ServiceUnavailable"


_KIND_BY_STATUS: dict[HTTPStatus, ErrorKind] = {
    HTTPStatus.BAD_REQUEST: ErrorKind.BAD_REQUEST,
    HTTPStatus.FORBIDDEN: ErrorKind.FORBIDDEN,
    HTTPStatus.NOT_FOUND: ErrorKind.NOT_FOUND,
    HTTPStatus.INTERNAL_SERVER_ERROR: ErrorKind.INTERNAL_SERVER_ERROR,
    HTTPStatus.SERVICE_UNAVAILABLE: ErrorKind.SERVICE_UNAVAILABLE,
}


class ImageHandlerError(Exception):
    """Domain error propagated to the entrypoint."""

    def __init__(self, status_code: HTTPStatus | int, code: str, message: str) -> None:
        super().__init__(message)
        self.status_code = HTTPStatus(status_code)
        self.code = code
        self.message = message

    @property
    def kind(self) -> ErrorKind:
        if self.status_code in _KIND_BY_STATUS:
            return _KIND_BY_STATUS[self.status_code]
        if self.status_code >= HTTPStatus.INTERNAL_SERVER_ERROR:
            return ErrorKind.INTERNAL_SERVER_ERROR
        return ErrorKind.BAD_REQUEST

    def to_dict(self) -> dict[str, object]:
        return {"status": int(self.status_code), "code": self.code, "message": self.message}

    def __repr__(self) -> str:
        return f"ImageHandlerError({int(self.status_code)}, {self.code!r}, {self.message!r})"


@dataclass(frozen=True)
class ErrorMapping:
    """A substring pattern and the domain error it maps to."""

    pattern: str
    status_code: HTTPStatus
    code: str
    message: str | Callable[[BaseException], str]

    def build(self, error: BaseException) -> ImageHandlerError:
        message = self.message(error) if callable(self.message) else self.message
        return ImageHandlerError(self.status_code, self.code, message)


def map_error(
    error: BaseException,
    default: ImageHandlerError,
    mappings: Sequence[ErrorMapping] = (),
) -> ImageHandlerError:
    """Translate a low-level failure into the closest domain error."""
    if isinstance(error, ImageHandlerError):
        return error

    logger.error("%s: %s", type(error).__name__, error)
    text = str(error)
    for mapping in mappings:
        if mapping.pattern in text:
            return mapping.build(error)
    return default


PROCESSING_ERROR_MAPPINGS: tuple[ErrorMapping, ...] = (
    ErrorMapping(
        pattern="Image to composite must have same dimensions or smaller",
        status_code=HTTPStatus.BAD_REQUEST,
        code="BadRequest",
        message=lambda error: str(error).replace("composite", "overlay"),
    ),
    ErrorMapping(
        pattern="Bitstream not supported by this decoder",
        status_code=HTTPStatus.BAD_REQUEST,
        code="BadRequest",
        message="Invalid base image. AVIF images with a bit-depth other than 8 are not supported for image edits.",
    ),
)

FACE_INDEX_ERROR_MAPPINGS: tuple[ErrorMapping, ...] = (
    ErrorMapping(
        pattern="index out of range",
        status_code=HTTPStatus.BAD_REQUEST,
        code="SmartCrop::FaceIndexOutOfRange",
        message=(
            "You have provided a FaceIndex value that exceeds the length of the zero-based detectedFaces array. "
            "Please specify a value that is in-range."
        ),
    ),
)


def cannot_access_bucket(subject: str = "bucket") -> ImageHandlerError:
    return ImageHandlerError(
        HTTPStatus.FORBIDDEN,
        "ImageBucket::CannotAccessBucket",
        f"The {subject} you specified could not be accessed. "
        "Please check that the bucket is specified in your IMAGEX_SOURCE_BUCKETS.",
    )


def cannot_find_bucket() -> ImageHandlerError:
    return ImageHandlerError(
        HTTPStatus.NOT_FOUND,
        "ImageBucket::CannotFindBucket",
        "The bucket you specified could not be found. Please check the spelling of the bucket name in your request.",
    )
