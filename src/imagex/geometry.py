"""Geometry helpers for smart crop, round crop and overlay placement.

Pure functions, no I/O. Bounding boxes are fractions of the image size;
crop areas are pixels.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass

_LEADING_INT = re.compile(r"^\s*([+-]?\d+)")
_ZERO_TO_HUNDRED = re.compile(r"^(100|[1-9]?\d)$")


@dataclass(frozen=True)
class BoundingBox:
    """A region expressed as fractions of the image width/height."""

    left: float
    top: float
    width: float
    height: float

    @classmethod
    def full(cls) -> BoundingBox:
        return cls(left=0.0, top=0.0, width=1.0, height=1.0)


@dataclass(frozen=True)
class CropArea:
    """A pixel rectangle to extract."""

    left: int
    top: int
    width: int
    height: int


@dataclass(frozen=True)
class Ellipse:
    """An elliptical mask centred at (cx, cy) in pixels."""

    cx: float
    cy: float
    rx: float
    ry: float


def round_half_up(value: float) -> int:
    """Round to the nearest integer with halves rounded up (2.5 -> 3, -2.5 -> -2)."""
    return math.floor(value + 0.5)


def parse_int(value: object) -> int | None:
    """Parse the leading integer of a value ("12px" -> 12), None when there is none."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return None if math.isnan(value) or math.isinf(value) else math.trunc(value)
    match = _LEADING_INT.match(str(value))
    return int(match.group(1)) if match else None


def _clamp_unit(value: float) -> float:
    return min(max(value, 0.0), 1.0)


def clamp_bounding_box(box: BoundingBox) -> BoundingBox:
    """Clamp each component to [0, 1] and shrink the box so it ends inside the image."""
    left = _clamp_unit(box.left)
    top = _clamp_unit(box.top)
    width = _clamp_unit(box.width)
    height = _clamp_unit(box.height)

    if left + width > 1:
        width = 1 - left
    if top + height > 1:
        height = 1 - top

    return BoundingBox(left=left, top=top, width=width, height=height)


def get_crop_area(box: BoundingBox, padding: float, image_width: int, image_height: int) -> CropArea:
    """Convert a normalized box plus padding into a pixel crop area within the image."""
    left = math.floor(box.left * image_width - padding)
    top = math.floor(box.top * image_height - padding)
    width = math.floor(box.width * image_width + padding * 2)
    height = math.floor(box.height * image_height + padding * 2)

    left = max(left, 0)
    top = max(top, 0)
    width = min(width, image_width - left)
    height = min(height, image_height - top)

    return CropArea(left=left, top=top, width=width, height=height)


def calc_overlay_offset(edit_offset: str | int | float | None, image_size: int, overlay_size: int) -> int | None:
    """Resolve an overlay ``left``/``top`` option to pixels.

    Accepts a plain integer or a string suffixed with ``p`` (percent of the
    base dimension). Negative values are measured from the far edge.
    Returns None when the option is absent or unparseable.
    """
    if edit_offset is None:
        return None

    text = str(edit_offset)
    if text.endswith("p"):
        percent = parse_int(text[:-1])
        if percent is None:
            return None
        if percent < 0:
            return math.floor(image_size + (image_size * percent) / 100 - overlay_size)
        return math.floor((image_size * percent) / 100)

    offset = parse_int(text)
    if offset is None:
        return None
    if offset < 0:
        return image_size + offset - overlay_size
    return offset


def is_zero_to_hundred(value: object) -> bool:
    return value is not None and not isinstance(value, bool) and bool(_ZERO_TO_HUNDRED.match(str(value)))


def overlay_dimension(image_size: int, ratio: object) -> int | None:
    """Overlay bound for one axis; None (unconstrained) when the ratio is outside 0-100."""
    if not is_zero_to_hundred(ratio):
        return None
    return math.floor((image_size * int(str(ratio))) / 100)


def overlay_opacity(alpha: object) -> float:
    """Opacity for an overlay alpha; out-of-range alpha means fully opaque."""
    alpha_value = int(str(alpha)) if is_zero_to_hundred(alpha) else 0
    return 1 - alpha_value / 100


def round_crop_ellipse(
    width: int,
    height: int,
    top: float | None = None,
    left: float | None = None,
    rx: float | None = None,
    ry: float | None = None,
) -> Ellipse:
    """Ellipse for a round crop; unset or negative parameters fall back to a centred circle."""
    radius = min(width, height) / 2
    return Ellipse(
        cx=left if _valid_round_param(left) else width / 2,
        cy=top if _valid_round_param(top) else height / 2,
        rx=rx if _valid_round_param(rx) else radius,
        ry=ry if _valid_round_param(ry) else radius,
    )


def _valid_round_param(value: float | None) -> bool:
    return value is not None and value >= 0
