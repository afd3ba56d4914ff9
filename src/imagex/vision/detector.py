"""Vision detector protocol: face detection and moderation labels."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from imagex.geometry import BoundingBox


@dataclass(frozen=True)
class DetectedFace:
    """A detected face.

    The box is in fractions of the image size as reported by the detector;
    it may fall partly outside [0, 1] and is clamped by the caller.
    """

    box: BoundingBox
    confidence: float


@dataclass(frozen=True)
class ModerationLabel:
    """A single moderation label with its confidence (0-100)."""

    name: str
    confidence: float
    parent_name: str | None = None


class VisionDetector(Protocol):
    """Protocol for face and moderation-label detection on JPEG or PNG bytes."""

    def detect_faces(self, image: bytes) -> list[DetectedFace]:
        """Detect faces, ordered by decreasing confidence."""
        ...

    def detect_moderation_labels(self, image: bytes, min_confidence: float) -> list[ModerationLabel]:
        """Return moderation labels detected with at least ``min_confidence``."""
        ...
