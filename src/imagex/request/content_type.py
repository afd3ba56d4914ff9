"""Infer an image content type from its leading bytes."""

from __future__ import annotations

from http import HTTPStatus

from imagex.errors import ImageHandlerError
from imagex.request.models import ContentType

_SIGNATURES: tuple[tuple[bytes, ContentType], ...] = (
    (b"\x89PNG\r\n\x1a\n", ContentType.PNG),
    (b"\xff\xd8\xff", ContentType.JPEG),
    (b"GIF87a", ContentType.GIF),
    (b"GIF89a", ContentType.GIF),
    (b"II*\x00", ContentType.TIFF),
    (b"MM\x00*", ContentType.TIFF),
)

_FTYP_BRANDS: dict[bytes, ContentType] = {
    b"avif": ContentType.AVIF,
    b"avis": ContentType.AVIF,
    b"heic": ContentType.HEIC,
    b"heix": ContentType.HEIC,
    b"mif1": ContentType.HEIC,
    b"msf1": ContentType.HEIC,
}


def infer_image_type(data: bytes) -> ContentType:
    """Return the content type for image bytes.

    Raises:
        ImageHandlerError: If the bytes match no supported image signature.
    """
    for signature, content_type in _SIGNATURES:
        if data.startswith(signature):
            return content_type

    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return ContentType.WEBP

    if data[4:8] == b"ftyp" and data[8:12] in _FTYP_BRANDS:
        return _FTYP_BRANDS[data[8:12]]

    head = data[:256].lstrip()
    if head.startswith(b"<svg") or (head.startswith(b"<?xml") and b"<svg" in data[:1024]):
        return ContentType.SVG

    raise ImageHandlerError(
        HTTPStatus.INTERNAL_SERVER_ERROR,
        "RequestTypeError",
        "The file does not have an extension and the file type could not be inferred. "
        "Please ensure that your original image is of a supported file type "
        "(jpg/jpeg, png, tiff/tif, webp, svg, gif, avif, heic).",
    )
