"""Amazon Rekognition implementation of the vision detector."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import boto3

from imagex.geometry import BoundingBox
from imagex.vision.detector import DetectedFace, ModerationLabel

if TYPE_CHECKING:
    from imagex.config import Settings

logger = logging.getLogger(__name__)


class RekognitionDetector:
    """VisionDetector backed by a Rekognition client."""

    def __init__(self, client: Any) -> None:
        self._client = client

    @classmethod
    def from_settings(cls, settings: Settings) -> RekognitionDetector:
        return cls(boto3.client("rekognition", region_name=settings.aws_region))

    def detect_faces(self, image: bytes) -> list[DetectedFace]:
        response = self._client.detect_faces(Image={"Bytes": image}, Attributes=["DEFAULT"])
        faces = [
            DetectedFace(box=_bounding_box(detail.get("BoundingBox", {})), confidence=float(detail.get("Confidence", 0)))
            for detail in response.get("FaceDetails", [])
        ]
        logger.debug("Rekognition detected %d face(s)", len(faces))
        return faces

    def detect_moderation_labels(self, image: bytes, min_confidence: float) -> list[ModerationLabel]:
        response = self._client.detect_moderation_labels(Image={"Bytes": image}, MinConfidence=min_confidence)
        return [
            ModerationLabel(
                name=label["Name"],
                confidence=float(label.get("Confidence", 0)),
                parent_name=label.get("ParentName") or None,
            )
            for label in response.get("ModerationLabels", [])
        ]


def _bounding_box(raw: dict[str, float]) -> BoundingBox:
    return BoundingBox(
        left=float(raw.get("Left", 0)),
        top=float(raw.get("Top", 0)),
        width=float(raw.get("Width", 0)),
        height=float(raw.get("Height", 0)),
    )
