"""Shared fakes and fixtures."""

from __future__ import annotations

import io
import itertools
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import pytest
from PIL import Image

from imagex.config import Settings
from imagex.geometry import Ellipse
from imagex.pipeline.engine import EngineError, ImageMetadata
from imagex.storage import ObjectNotFoundError
from imagex.vision.detector import DetectedFace, ModerationLabel

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

    from imagex.geometry import CropArea
    from imagex.pipeline.engine import CompositeLayer, OpenOptions

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def make_settings(**overrides: object) -> Settings:
    defaults: dict[str, object] = {
        "source_buckets": "bucket-a,bucket-b",
        "max_concurrent": 2,
    }
    defaults.update(overrides)
    return Settings(**defaults)  # type: ignore[arg-type]


def png_bytes(width: int = 8, height: int = 4, color: tuple[int, ...] = (255, 0, 0), mode: str = "RGB") -> bytes:
    buffer = io.BytesIO()
    Image.new(mode, (width, height), color).save(buffer, format="PNG")
    return buffer.getvalue()


# ---------------------------------------------------------------------------
# Recording image engine
# ---------------------------------------------------------------------------


@dataclass
class FakeImage:
    width: int
    height: int
    format: str | None
    pages: int = 1
    orientation: int | None = None
    format_options: dict[str, dict[str, Any]] = field(default_factory=dict)


@dataclass(frozen=True)
class FakeSource:
    width: int
    height: int
    format: str | None
    pages: int = 1
    orientation: int | None = None


@dataclass
class FakeEngine:
    """In-memory ImageEngine that tracks dimensions and records every call."""

    sources: dict[bytes, FakeSource] = field(default_factory=dict)
    calls: list[tuple[Any, ...]] = field(default_factory=list)
    _counter: itertools.count[int] = field(default_factory=itertools.count)

    def register(self, data: bytes, width: int, height: int, fmt: str | None = "jpeg", **kwargs: Any) -> bytes:
        self.sources[data] = FakeSource(width, height, fmt, **kwargs)
        return data

    def names(self) -> list[str]:
        return [call[0] for call in self.calls]

    def calls_to(self, name: str) -> list[tuple[Any, ...]]:
        return [call for call in self.calls if call[0] == name]

    def open(self, data: bytes, options: OpenOptions) -> FakeImage:
        self.calls.append(("open", options))
        source = self.sources.get(data)
        if source is None:
            raise EngineError("Input buffer contains unsupported image format")
        return FakeImage(source.width, source.height, source.format, source.pages, source.orientation)

    def metadata(self, image: FakeImage) -> ImageMetadata:
        return ImageMetadata(
            image.width,
            image.height,
            image.format,
            image.pages,
            image.orientation,
            dict(image.format_options.get(image.format or "", {})),
        )

    def resize(self, image: FakeImage, options: Mapping[str, Any]) -> None:
        self.calls.append(("resize", dict(options)))
        width, height = options.get("width"), options.get("height")
        if width is not None and height is not None:
            if options.get("fit") == "inside":
                scale = min(width / image.width, height / image.height)
                image.width, image.height = round(image.width * scale), round(image.height * scale)
            else:
                image.width, image.height = int(width), int(height)
        elif width is not None:
            image.height = round(image.height * width / image.width)
            image.width = int(width)
        elif height is not None:
            image.width = round(image.width * height / image.height)
            image.height = int(height)

    def extract(self, image: FakeImage, area: CropArea) -> None:
        self.calls.append(("extract", area))
        if (
            area.left < 0
            or area.top < 0
            or area.width <= 0
            or area.height <= 0
            or area.left + area.width > image.width
            or area.top + area.height > image.height
        ):
            raise EngineError("extract_area: bad extract area")
        image.width, image.height = area.width, area.height

    def composite(self, image: FakeImage, layers: Sequence[CompositeLayer]) -> None:
        self.calls.append(("composite", list(layers)))
        for layer in layers:
            if isinstance(layer.input, Ellipse) or layer.raw is not None or layer.blend != "over":
                continue
            overlay = self.sources[layer.input]
            if overlay.width > image.width or overlay.height > image.height:
                raise EngineError("Image to composite must have same dimensions or smaller")

    def rotate(self, image: FakeImage, degrees: float | None = None) -> None:
        self.calls.append(("rotate", degrees))
        if degrees is not None and degrees % 180 == 90:
            image.width, image.height = image.height, image.width

    def auto_orient(self, image: FakeImage) -> None:
        self.calls.append(("auto_orient",))
        image.orientation = 1

    def blur(self, image: FakeImage, sigma: float) -> None:
        self.calls.append(("blur", sigma))

    def to_format(self, image: FakeImage, fmt: str, **options: Any) -> None:
        self.calls.append(("to_format", fmt, options))
        image.format_options.setdefault(fmt, {}).update(options)
        image.format = fmt

    def trim(self, image: FakeImage) -> None:
        self.calls.append(("trim",))

    def apply_filter(self, image: FakeImage, name: str, value: Any) -> None:
        self.calls.append(("apply_filter", name, value))

    def encode(self, image: FakeImage) -> bytes:
        self.calls.append(("encode",))
        data = f"encoded-{next(self._counter)}-{image.format}-{image.width}x{image.height}".encode()
        self.register(data, image.width, image.height, image.format, pages=image.pages)
        return data


# ---------------------------------------------------------------------------
# Storage and detector fakes
# ---------------------------------------------------------------------------


@dataclass
class FakeStorage:
    objects: dict[tuple[str, str], bytes] = field(default_factory=dict)
    requested: list[tuple[str, str]] = field(default_factory=list)

    def get(self, bucket: str, key: str) -> bytes:
        self.requested.append((bucket, key))
        try:
            return self.objects[(bucket, key)]
        except KeyError:
            raise ObjectNotFoundError(f"{bucket}/{key}") from None


@dataclass
class FakeDetector:
    faces: list[DetectedFace] = field(default_factory=list)
    labels: list[ModerationLabel] = field(default_factory=list)
    error: Exception | None = None
    calls: list[tuple[Any, ...]] = field(default_factory=list)

    def detect_faces(self, image: bytes) -> list[DetectedFace]:
        self.calls.append(("detect_faces", image))
        if self.error is not None:
            raise self.error
        return self.faces

    def detect_moderation_labels(self, image: bytes, min_confidence: float) -> list[ModerationLabel]:
        self.calls.append(("detect_moderation_labels", image, min_confidence))
        if self.error is not None:
            raise self.error
        return self.labels


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def settings() -> Settings:
    return make_settings()


@pytest.fixture()
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture()
def storage() -> FakeStorage:
    return FakeStorage()


@pytest.fixture()
def detector() -> FakeDetector:
    return FakeDetector()
