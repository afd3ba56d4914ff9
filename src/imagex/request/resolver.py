"""Request resolver: turns an inbound path into an ``ImageRequestInfo``.

Format detection order:
    1. DEFAULT  - the path is base64-encoded JSON with a ``key``.
    2. THUMBOR  - the path carries ``filters:`` segments or ends in an image extension.
    3. CUSTOM   - anything else; requires a verified signature and may be
                  rewritten into Thumbor form by a configured regex.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import re
from collections.abc import Mapping
from http import HTTPStatus
from typing import TYPE_CHECKING, Any

from imagex.errors import ImageHandlerError, cannot_access_bucket, cannot_find_bucket
from imagex.request.content_type import infer_image_type
from imagex.request.models import ImageEdits, ImageFormatType, ImageRequestInfo, RequestType
from imagex.request.thumbor import ThumborMapper, bucket_segments, has_filters, has_image_extension, strip_to_key
from imagex.storage import ObjectAccessDeniedError, ObjectNotFoundError, StorageError

if TYPE_CHECKING:
    from imagex.config import Settings
    from imagex.request.models import RequestEvent
    from imagex.request.signature import SignatureVerifier
    from imagex.storage import StorageFetch

logger = logging.getLogger(__name__)

_BASE64 = re.compile(r"^[A-Za-z0-9+/]*$")
_JS_REGEX = re.compile(r"^/(?P<body>.+)/(?P<flags>[a-z]*)$", re.DOTALL)
_REGEX_FLAGS = {"i": re.IGNORECASE, "m": re.MULTILINE, "s": re.DOTALL}
MAX_EFFORT = 6


def _b64decode(value: str) -> bytes:
    """Decode standard or URL-safe base64, tolerating missing or extra padding."""
    value = value.replace("-", "+").replace("_", "/").rstrip("=")
    if not _BASE64.match(value) or len(value) % 4 == 1:
        raise ValueError("path is not base64 encoded")
    return base64.b64decode(value + "=" * (-len(value) % 4))


def _compile_rewrite(pattern: str, substitution: str) -> tuple[re.Pattern[str], str, int]:
    """Compile a rewrite rule; ``/body/flags`` form is accepted and ``$1`` references are supported.

    Returns the pattern, the substitution and the replacement count (0 = all).
    """
    count = 0
    match = _JS_REGEX.match(pattern)
    if match:
        flags = 0
        for flag in match["flags"]:
            flags |= _REGEX_FLAGS.get(flag, 0)
        count = 0 if "g" in match["flags"] else 1
        compiled = re.compile(match["body"], flags)
    else:
        compiled = re.compile(pattern)
    return compiled, re.sub(r"\$(\d+)", r"\\\1", substitution), count


class ImageRequest:
    """Resolves request type, bucket, key, edits and output options."""

    def __init__(
        self,
        settings: Settings,
        storage: StorageFetch,
        signature_verifier: SignatureVerifier | None = None,
        thumbor_mapper: ThumborMapper | None = None,
    ) -> None:
        self._settings = settings
        self._allowed_buckets = settings.allowed_buckets
        self._storage = storage
        self._signature_verifier = signature_verifier
        self._thumbor = thumbor_mapper or ThumborMapper()
        self._rewrite = None
        if settings.rewrite_match_pattern and settings.rewrite_substitution is not None:
            self._rewrite = _compile_rewrite(settings.rewrite_match_pattern, settings.rewrite_substitution)

    # -- Public API ---------------------------------------------------------

    def setup(self, event: RequestEvent) -> ImageRequestInfo:
        """Resolve an inbound request and fetch its source image."""
        request_type = self.parse_request_type(event)
        self.validate_request_signature(event, request_type)

        bucket = self.parse_image_bucket(event, request_type)
        key = self.parse_image_key(event, request_type)
        edits = self.parse_image_edits(event, request_type)
        original_image = self.get_original_image(bucket, key)

        info = ImageRequestInfo(
            request_type=request_type,
            bucket=bucket,
            key=key,
            edits=edits,
            original_image=original_image,
            content_type=infer_image_type(original_image),
            output_format=self.parse_output_format(event, request_type),
            effort=self.parse_effort(event, request_type),
        )
        logger.info(
            "Resolved %s request for s3://%s/%s (edits=%s, output=%s)",
            request_type,
            bucket,
            key,
            list(edits),
            info.output_format,
        )
        return info

    def decode_request(self, event: RequestEvent) -> dict[str, Any]:
        """Decode a DEFAULT request path into its JSON object."""
        if not event.path:
            raise ImageHandlerError(
                HTTPStatus.BAD_REQUEST,
                "DecodeRequest::CannotReadPath",
                "The URL path you provided could not be read. Please ensure that it is properly formed "
                "according to the solution documentation.",
            )

        encoded = event.path[1:] if event.path.startswith("/") else event.path
        try:
            decoded = json.loads(_b64decode(encoded))
        except (ValueError, binascii.Error) as error:
            raise self._cannot_decode() from error
        if not isinstance(decoded, dict):
            raise self._cannot_decode()
        return decoded

    def parse_request_type(self, event: RequestEvent) -> RequestType:
        if self._is_default_request(event):
            return RequestType.DEFAULT
        if has_filters(event.path) or has_image_extension(event.path):
            return RequestType.THUMBOR
        return RequestType.CUSTOM

    def validate_request_signature(self, event: RequestEvent, request_type: RequestType) -> None:
        """Check the request signature where one is required.

        CUSTOM requests always need one; other types only when signing is enabled.
        """
        if request_type is not RequestType.CUSTOM and not self._settings.enable_signature:
            return

        if self._signature_verifier is None:
            if request_type is RequestType.CUSTOM:
                raise ImageHandlerError(
                    HTTPStatus.BAD_REQUEST,
                    "RequestTypeError",
                    "The type of request you are making could not be processed. Please ensure that your original "
                    "image is of a supported file type (jpg/jpeg, png, tiff/tif, webp, svg, gif, avif) and that "
                    "your image request is provided in the correct syntax.",
                )
            raise ImageHandlerError(
                HTTPStatus.INTERNAL_SERVER_ERROR,
                "SignatureValidationFailure",
                "Signature validation failed.",
            )

        if not event.signature:
            raise ImageHandlerError(
                HTTPStatus.BAD_REQUEST,
                "AuthorizationQueryParametersError",
                "Query-string requires the signature parameter.",
            )

        if not self._signature_verifier.verify(event.path, event.signature):
            raise ImageHandlerError(HTTPStatus.FORBIDDEN, "SignatureDoesNotMatch", "Signature does not match.")

    def parse_image_bucket(self, event: RequestEvent, request_type: RequestType) -> str:
        """Resolve the source bucket under the allow-list."""
        if request_type is RequestType.DEFAULT:
            decoded = self.decode_request(event)
            bucket = decoded.get("bucket")
            if bucket is not None:
                if bucket not in self._allowed_buckets:
                    raise cannot_access_bucket()
                return str(bucket)
            return self._default_bucket()

        if request_type in (RequestType.THUMBOR, RequestType.CUSTOM):
            segments = bucket_segments(event.path)
            for name in segments:
                if name in self._allowed_buckets:
                    return name
            if self._allowed_buckets.first is not None:
                return self._allowed_buckets.first
            if segments:
                raise cannot_access_bucket()

        raise cannot_find_bucket()

    def parse_image_key(self, event: RequestEvent, request_type: RequestType) -> str:
        if request_type is RequestType.DEFAULT:
            key = self.decode_request(event).get("key")
            if isinstance(key, str) and key.lstrip("/"):
                return key.lstrip("/")
        elif request_type in (RequestType.THUMBOR, RequestType.CUSTOM):
            path = self._custom_path(event.path) if request_type is RequestType.CUSTOM else event.path
            key = strip_to_key(path)
            if key:
                return key

        raise ImageHandlerError(
            HTTPStatus.NOT_FOUND,
            "ImageEdits::CannotFindImage",
            "The image you specified could not be found. Please check your request syntax as well as the bucket "
            "you specified to ensure it exists.",
        )

    def parse_image_edits(self, event: RequestEvent, request_type: RequestType) -> ImageEdits:
        if request_type is RequestType.DEFAULT:
            raw = self.decode_request(event).get("edits") or {}
            if not isinstance(raw, Mapping):
                raise self._invalid_edit("edits must be an object")
            try:
                return ImageEdits.from_mapping(raw)
            except (ValueError, TypeError) as error:
                raise self._invalid_edit(str(error)) from error

        if request_type is RequestType.CUSTOM:
            return self._thumbor.map_path_to_edits(self._custom_path(event.path))
        return self._thumbor.map_path_to_edits(event.path)

    def parse_output_format(self, event: RequestEvent, request_type: RequestType) -> ImageFormatType | None:
        """Output format from the Accept header (auto WebP) or the DEFAULT body."""
        if self._settings.auto_webp and event.accept and "image/webp" in event.accept:
            return ImageFormatType.WEBP

        if request_type is RequestType.DEFAULT:
            value = self.decode_request(event).get("outputFormat")
            if value is None:
                return None
            try:
                return ImageFormatType(str(value).lower())
            except ValueError as error:
                raise self._invalid_edit(f"unsupported output format {value}") from error
        return None

    def parse_effort(self, event: RequestEvent, request_type: RequestType) -> int | None:
        """WebP encoder effort from the DEFAULT body, an integer in [0, 6]."""
        if request_type is not RequestType.DEFAULT:
            return None
        value = self.decode_request(event).get("effort")
        if value is None:
            return None
        if isinstance(value, bool) or not isinstance(value, int | float) or value != int(value):
            raise self._invalid_effort()
        if not 0 <= int(value) <= MAX_EFFORT:
            raise self._invalid_effort()
        return int(value)

    def get_original_image(self, bucket: str, key: str) -> bytes:
        try:
            return self._storage.get(bucket, key)
        except ObjectNotFoundError as error:
            raise ImageHandlerError(
                HTTPStatus.NOT_FOUND,
                "NoSuchKey",
                "The specified key does not exist.",
            ) from error
        except ObjectAccessDeniedError as error:
            raise ImageHandlerError(HTTPStatus.FORBIDDEN, "AccessDenied", "Access denied.") from error
        except StorageError as error:
            raise ImageHandlerError(
                HTTPStatus.INTERNAL_SERVER_ERROR,
                "StorageFailure",
                "The original image could not be retrieved. Please contact the system administrator.",
            ) from error

    # -- Internal -----------------------------------------------------------

    def _is_default_request(self, event: RequestEvent) -> bool:
        try:
            decoded = self.decode_request(event)
        except ImageHandlerError:
            return False
        return isinstance(decoded.get("key"), str)

    def _default_bucket(self) -> str:
        if self._allowed_buckets.first is None:
            raise cannot_find_bucket()
        return self._allowed_buckets.first

    def _custom_path(self, path: str) -> str:
        if self._rewrite is None:
            return path
        pattern, substitution, count = self._rewrite
        return pattern.sub(substitution, path, count=count)

    @staticmethod
    def _cannot_decode() -> ImageHandlerError:
        return ImageHandlerError(
            HTTPStatus.BAD_REQUEST,
            "DecodeRequest::CannotDecodeRequest",
            "The image request you provided could not be decoded. Please check that your request is base64 "
            "encoded properly and refers to a valid image.",
        )

    @staticmethod
    def _invalid_edit(detail: str) -> ImageHandlerError:
        return ImageHandlerError(HTTPStatus.BAD_REQUEST, "ImageEdits::InvalidEdit", f"Invalid image edits: {detail}")

    @staticmethod
    def _invalid_effort() -> ImageHandlerError:
        return ImageHandlerError(
            HTTPStatus.BAD_REQUEST,
            "ImageEdits::InvalidEffort",
            f"The effort you provided is invalid. Please provide an integer between 0 and {MAX_EFFORT}.",
        )
