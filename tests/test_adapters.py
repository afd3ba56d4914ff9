"""Tests for the S3 storage, Rekognition detector and signature adapters."""

from __future__ import annotations

import io
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from imagex.geometry import BoundingBox
from imagex.request.signature import HmacSignatureVerifier
from imagex.storage import ObjectAccessDeniedError, ObjectNotFoundError, S3Storage, StorageError
from imagex.vision.detector import ModerationLabel
from imagex.vision.rekognition import RekognitionDetector


def _client_error(code: str) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, "GetObject")


class TestS3Storage:
    def test_get_returns_body(self) -> None:
        client = MagicMock()
        client.get_object.return_value = {"Body": io.BytesIO(b"image-bytes")}
        assert S3Storage(client).get("bucket", "key.jpg") == b"image-bytes"
        client.get_object.assert_called_once_with(Bucket="bucket", Key="key.jpg")

    @pytest.mark.parametrize(
        ("code", "exception"),
        [
            ("NoSuchKey", ObjectNotFoundError),
            ("404", ObjectNotFoundError),
            ("AccessDenied", ObjectAccessDeniedError),
            ("403", ObjectAccessDeniedError),
            ("SlowDown", StorageError),
        ],
    )
    def test_client_errors(self, code: str, exception: type[StorageError]) -> None:
        client = MagicMock()
        client.get_object.side_effect = _client_error(code)
        with pytest.raises(exception):
            S3Storage(client).get("bucket", "key.jpg")


class TestRekognitionDetector:
    def test_detect_faces(self) -> None:
        client = MagicMock()
        client.detect_faces.return_value = {
            "FaceDetails": [
                {"BoundingBox": {"Left": 0.1, "Top": 0.2, "Width": 0.3, "Height": 0.4}, "Confidence": 99.5},
                {"BoundingBox": {"Left": -0.05, "Top": 0.9, "Width": 0.2, "Height": 0.3}, "Confidence": 80},
            ]
        }
        faces = RekognitionDetector(client).detect_faces(b"img")

        client.detect_faces.assert_called_once_with(Image={"Bytes": b"img"}, Attributes=["DEFAULT"])
        assert faces[0].box == BoundingBox(0.1, 0.2, 0.3, 0.4)
        assert faces[0].confidence == 99.5
        assert faces[1].box.left == -0.05

    def test_detect_faces_empty(self) -> None:
        client = MagicMock()
        client.detect_faces.return_value = {"FaceDetails": []}
        assert RekognitionDetector(client).detect_faces(b"img") == []

    def test_detect_moderation_labels(self) -> None:
        client = MagicMock()
        client.detect_moderation_labels.return_value = {
            "ModerationLabels": [
                {"Name": "Violence", "Confidence": 91.0, "ParentName": ""},
                {"Name": "Graphic Violence", "Confidence": 88.0, "ParentName": "Violence"},
            ]
        }
        labels = RekognitionDetector(client).detect_moderation_labels(b"img", 75)

        client.detect_moderation_labels.assert_called_once_with(Image={"Bytes": b"img"}, MinConfidence=75)
        assert labels == [
            ModerationLabel("Violence", 91.0),
            ModerationLabel("Graphic Violence", 88.0, "Violence"),
        ]


class TestHmacSignatureVerifier:
    def test_round_trip(self) -> None:
        verifier = HmacSignatureVerifier("secret")
        assert verifier.verify("/image.jpg", verifier.sign("/image.jpg"))

    def test_other_secret_fails(self) -> None:
        signature = HmacSignatureVerifier("other").sign("/image.jpg")
        assert not HmacSignatureVerifier("secret").verify("/image.jpg", signature)

    def test_known_digest(self) -> None:
        # HMAC-SHA256("key", "The quick brown fox jumps over the lazy dog")
        assert HmacSignatureVerifier("key").sign("The quick brown fox jumps over the lazy dog") == (
            "f7bc83f430538424b13298e6aa6fb143ef4d59a14946175997479dbc2d1a3cd8"
        )
