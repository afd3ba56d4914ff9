"""Normalized request and edit models shared by the resolver and the pipeline."""

from __future__ import annotations

from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any, TypeVar

from pydantic import BaseModel, ConfigDict, Field

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator


class RequestType(StrEnum):
    DEFAULT = "Default"
    THUMBOR = "Thumbor"
    CUSTOM = "Custom"


class ImageFormatType(StrEnum):
    JPG = "jpg"
    JPEG = "jpeg"
    PNG = "png"
    WEBP = "webp"
    TIFF = "tiff"
    HEIF = "heif"
    GIF = "gif"
    AVIF = "avif"
    RAW = "raw"


class ImageFitType(StrEnum):
    COVER = "cover"
    CONTAIN = "contain"
    FILL = "fill"
    INSIDE = "inside"
    OUTSIDE = "outside"


class ContentType(StrEnum):
    PNG = "image/png"
    JPEG = "image/jpeg"
    WEBP = "image/webp"
    TIFF = "image/tiff"
    GIF = "image/gif"
    SVG = "image/svg+xml"
    AVIF = "image/avif"
    HEIC = "image/heic"
    OCTET_STREAM = "application/octet-stream"


_CONTENT_TYPE_BY_FORMAT: dict[str, ContentType] = {
    "jpg": ContentType.JPEG,
    "jpeg": ContentType.JPEG,
    "png": ContentType.PNG,
    "webp": ContentType.WEBP,
    "tiff": ContentType.TIFF,
    "heif": ContentType.HEIC,
    "gif": ContentType.GIF,
    "avif": ContentType.AVIF,
    "raw": ContentType.OCTET_STREAM,
}


# ---------------------------------------------------------------------------
# Rotation: absent / strip metadata / explicit degrees
# ---------------------------------------------------------------------------


class RotateMode(StrEnum):
    AUTO_ORIENT = "auto_orient"
    STRIP_METADATA = "strip_metadata"
    DEGREES = "degrees"


@dataclass(frozen=True)
class RotateEdit:
    """Three-state rotation request.

    AUTO_ORIENT: rotate requested without a value, orient from EXIF.
    STRIP_METADATA: explicit null, open without metadata and do not rotate.
    DEGREES: explicit angle, including 0.
    """

    mode: RotateMode
    degrees: float | None = None

    @classmethod
    def auto_orient(cls) -> RotateEdit:
        return cls(RotateMode.AUTO_ORIENT)

    @classmethod
    def strip_metadata(cls) -> RotateEdit:
        return cls(RotateMode.STRIP_METADATA)

    @classmethod
    def by(cls, degrees: float) -> RotateEdit:
        return cls(RotateMode.DEGREES, float(degrees))


# ---------------------------------------------------------------------------
# Edit parameter models
# ---------------------------------------------------------------------------


class EditModel(BaseModel):
    """Base for edit parameters; unknown keys are kept and forwarded to the engine."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")


class ResizeEdit(EditModel):
    width: float | None = None
    height: float | None = None
    fit: ImageFitType | None = None
    ratio: float | None = None

    def to_options(self) -> dict[str, Any]:
        """Engine resize options; ``ratio`` is a multiplier, never an engine option."""
        return self.model_dump(mode="json", exclude_none=True, exclude={"ratio"})


class CropEdit(EditModel):
    model_config = ConfigDict(extra="ignore")

    left: int
    top: int
    width: int
    height: int


class OverlayOptions(EditModel):
    left: str | int | None = None
    top: str | int | None = None


class OverlayEdit(EditModel):
    bucket: str
    key: str
    w_ratio: str | int | None = Field(default=None, alias="wRatio")
    h_ratio: str | int | None = Field(default=None, alias="hRatio")
    alpha: str | int | None = None
    options: OverlayOptions | None = None


class SmartCropEdit(EditModel):
    face_index: int | None = Field(default=None, alias="faceIndex")
    padding: float | None = None


class RoundCropEdit(EditModel):
    top: float | None = None
    left: float | None = None
    rx: float | None = None
    ry: float | None = None


class ContentModerationEdit(EditModel):
    min_confidence: float | None = Field(default=None, alias="minConfidence")
    blur: float | None = None
    moderation_labels: list[str] | None = Field(default=None, alias="moderationLabels")


M = TypeVar("M", bound=EditModel)


def parse_toggle(value: object, model: type[M]) -> M | None:
    """Resolve a ``bool | object`` edit: True or an object enables it, anything else disables it."""
    if value is True:
        return model()
    if isinstance(value, Mapping):
        return model.model_validate(dict(value))
    return None


def parse_rotate(value: object) -> RotateEdit:
    if value is None:
        return RotateEdit.strip_metadata()
    if isinstance(value, bool):
        raise ValueError("rotate must be a number or null")
    return RotateEdit.by(float(value))  # type: ignore[arg-type]


def parse_animated(value: object) -> bool:
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return value is True


_TOGGLE_EDITS: dict[str, type[EditModel]] = {
    "smartCrop": SmartCropEdit,
    "roundCrop": RoundCropEdit,
    "contentModeration": ContentModerationEdit,
}


def parse_edit(name: str, value: Any) -> Any:
    """Convert a raw decoded edit value into its typed form."""
    if name == "resize":
        if not isinstance(value, Mapping):
            raise ValueError("resize must be an object")
        return ResizeEdit.model_validate(dict(value))
    if name == "crop":
        if not isinstance(value, Mapping):
            raise ValueError("crop must be an object")
        return CropEdit.model_validate(dict(value))
    if name == "overlayWith":
        if not isinstance(value, Mapping):
            raise ValueError("overlayWith must be an object")
        return OverlayEdit.model_validate(dict(value))
    if name in _TOGGLE_EDITS:
        return parse_toggle(value, _TOGGLE_EDITS[name])
    if name == "rotate":
        return parse_rotate(value)
    if name == "animated":
        return parse_animated(value)
    return value


class ImageEdits(MutableMapping[str, Any]):
    """Ordered edit mapping: iteration order is application order.

    Setting an existing name replaces its value in place, so a later
    duplicate wins without moving the edit.
    """

    def __init__(self, items: Iterable[tuple[str, Any]] = ()) -> None:
        self._edits: dict[str, Any] = {}
        for name, value in items:
            self._edits[name] = value

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> ImageEdits:
        """Build typed edits from a decoded JSON object; resize set to null counts as absent."""
        edits = cls()
        for name, value in raw.items():
            if name == "resize" and value is None:
                continue
            edits[name] = parse_edit(name, value)
        return edits

    def __getitem__(self, name: str) -> Any:
        return self._edits[name]

    def __setitem__(self, name: str, value: Any) -> None:
        self._edits[name] = value

    def __delitem__(self, name: str) -> None:
        del self._edits[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._edits)

    def __len__(self) -> int:
        return len(self._edits)

    def __repr__(self) -> str:
        return f"ImageEdits({list(self._edits.items())!r})"

    @property
    def resize(self) -> ResizeEdit | None:
        return self._edits.get("resize")

    @property
    def rotate(self) -> RotateEdit | None:
        return self._edits.get("rotate")

    @property
    def strips_metadata(self) -> bool:
        rotate = self.rotate
        return rotate is not None and rotate.mode is RotateMode.STRIP_METADATA

    def ensure_resize(self) -> ResizeEdit:
        """Return the resize edit, creating an empty one at the end if absent."""
        resize = self.resize
        if resize is None:
            resize = ResizeEdit()
            self._edits["resize"] = resize
        return resize


@dataclass(frozen=True)
class RequestEvent:
    """The parts of an inbound HTTP request the resolver needs."""

    path: str
    signature: str | None = None
    accept: str | None = None


@dataclass(frozen=True)
class ImageRequestInfo:
    """A resolved, bucket-validated request ready for the edit pipeline.

    Only ``edits`` may change after construction (the pipeline injects a
    default resize).
    """

    request_type: RequestType
    bucket: str
    key: str
    edits: ImageEdits
    original_image: bytes
    content_type: str | None = None
    output_format: ImageFormatType | None = None
    effort: int | None = None

    @property
    def response_content_type(self) -> str | None:
        if self.output_format is not None:
            return _CONTENT_TYPE_BY_FORMAT[self.output_format]
        to_format = self.edits.get("toFormat")
        if isinstance(to_format, str) and to_format in _CONTENT_TYPE_BY_FORMAT:
            return _CONTENT_TYPE_BY_FORMAT[to_format]
        return self.content_type
