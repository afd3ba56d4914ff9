"""Tests for the error taxonomy and remapper."""

from __future__ import annotations

from http import HTTPStatus

from imagex.errors import (
    FACE_INDEX_ERROR_MAPPINGS,
    PROCESSING_ERROR_MAPPINGS,
    ErrorKind,
    ImageHandlerError,
    cannot_access_bucket,
    cannot_find_bucket,
    map_error,
)

DEFAULT = ImageHandlerError(HTTPStatus.INTERNAL_SERVER_ERROR, "ProcessingFailure", "Image processing failed.")


class TestImageHandlerError:
    def test_to_dict(self) -> None:
        error = ImageHandlerError(400, "Crop::AreaOutOfBounds", "bad crop")
        assert error.to_dict() == {"status": 400, "code": "Crop::AreaOutOfBounds", "message": "bad crop"}
        assert str(error) == "bad crop"

    def test_kinds(self) -> None:
        assert ImageHandlerError(400, "c", "m").kind is ErrorKind.BAD_REQUEST
        assert cannot_access_bucket().kind is ErrorKind.FORBIDDEN
        assert cannot_find_bucket().kind is ErrorKind.NOT_FOUND
        assert DEFAULT.kind is ErrorKind.INTERNAL_SERVER_ERROR
        assert ImageHandlerError(502, "c", "m").kind is ErrorKind.INTERNAL_SERVER_ERROR

    def test_bucket_subject(self) -> None:
        assert cannot_access_bucket("overlay image bucket").message.startswith(
            "The overlay image bucket you specified could not be accessed."
        )
        assert "IMAGEX_SOURCE_BUCKETS" in cannot_access_bucket().message


class TestMapError:
    def test_domain_errors_pass_through(self) -> None:
        error = ImageHandlerError(403, "AccessDenied", "Access denied.")
        assert map_error(error, DEFAULT, PROCESSING_ERROR_MAPPINGS) is error

    def test_unmatched_falls_back_to_default(self) -> None:
        assert map_error(RuntimeError("kaboom"), DEFAULT, PROCESSING_ERROR_MAPPINGS) is DEFAULT

    def test_composite_dimensions(self) -> None:
        error = map_error(
            ValueError("Image to composite must have same dimensions or smaller"), DEFAULT, PROCESSING_ERROR_MAPPINGS
        )
        assert error.status_code == HTTPStatus.BAD_REQUEST
        assert error.code == "BadRequest"
        assert error.message == "Image to overlay must have same dimensions or smaller"

    def test_avif_bitstream(self) -> None:
        error = map_error(OSError("heif: Bitstream not supported by this decoder"), DEFAULT, PROCESSING_ERROR_MAPPINGS)
        assert error.status_code == HTTPStatus.BAD_REQUEST
        assert "AVIF" in error.message

    def test_face_index(self) -> None:
        error = map_error(IndexError("list index out of range"), DEFAULT, FACE_INDEX_ERROR_MAPPINGS)
        assert error.status_code == HTTPStatus.BAD_REQUEST
        assert error.code == "SmartCrop::FaceIndexOutOfRange"

    def test_first_matching_pattern_wins(self) -> None:
        text = "Image to composite must have same dimensions or smaller; Bitstream not supported by this decoder"
        error = map_error(RuntimeError(text), DEFAULT, PROCESSING_ERROR_MAPPINGS)
        assert "overlay" in error.message
