"""Image engine protocol.

The engine owns decoding, pixel operations and encoding. The pipeline only
sequences calls against an opaque, mutable image handle.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

    from imagex.geometry import CropArea, Ellipse


class EngineError(Exception):
    """Raised for invalid or unsupported input and failed operations."""


@dataclass(frozen=True)
class OpenOptions:
    fail_on_error: bool = False
    animated: bool = False
    limit_input_pixels: int | bool = True
    strip_metadata: bool = False


@dataclass(frozen=True)
class ImageMetadata:
    """Current state of an image handle; ``format`` is the format it will encode to.

    ``encoder_options`` are the options last given to ``to_format`` for that format.
    """

    width: int
    height: int
    format: str | None
    pages: int = 1
    orientation: int | None = None
    encoder_options: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RawPixels:
    width: int
    height: int
    channels: int


@dataclass(frozen=True)
class CompositeLayer:
    """One layer to composite onto an image.

    ``input`` is encoded image bytes, raw pixel bytes (with ``raw``) or an
    elliptical mask. ``left``/``top`` of None let the engine centre that axis.
    """

    input: bytes | Ellipse
    left: int | None = None
    top: int | None = None
    blend: str = "over"
    tile: bool = False
    raw: RawPixels | None = None


class ImageEngine(Protocol):
    """Protocol for image decoding, editing and encoding."""

    def open(self, data: bytes, options: OpenOptions) -> Any:
        """Decode bytes into a mutable image handle.

        Raises:
            EngineError: If the bytes are not a supported image or exceed the pixel limit.
        """
        ...

    def metadata(self, image: Any) -> ImageMetadata:
        """Return dimensions, target format, page count and orientation."""
        ...

    def resize(self, image: Any, options: Mapping[str, Any]) -> None:
        """Resize with width/height/fit/background/withoutEnlargement options."""
        ...

    def extract(self, image: Any, area: CropArea) -> None:
        """Extract a pixel rectangle; raises EngineError if it leaves the image."""
        ...

    def composite(self, image: Any, layers: Sequence[CompositeLayer]) -> None:
        """Composite layers onto the image in order."""
        ...

    def rotate(self, image: Any, degrees: float | None = None) -> None:
        """Rotate clockwise by ``degrees``; None orients from metadata."""
        ...

    def auto_orient(self, image: Any) -> None:
        """Apply the embedded EXIF orientation."""
        ...

    def blur(self, image: Any, sigma: float) -> None:
        ...

    def to_format(self, image: Any, fmt: str, **options: Any) -> None:
        """Set the output format; options merge into those already set for that format."""
        ...

    def trim(self, image: Any) -> None:
        """Remove a transparent or uniform border."""
        ...

    def apply_filter(self, image: Any, name: str, value: Any) -> None:
        """Apply a simple named filter with its single argument."""
        ...

    def encode(self, image: Any) -> bytes:
        """Encode the image in its output format."""
        ...
