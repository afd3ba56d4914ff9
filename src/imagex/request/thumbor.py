"""Thumbor-style URL parsing.

A Thumbor path looks like::

    /fit-in/300x200/filters:grayscale():quality(80)/filters:rotate(90)/s3:bucket/key.jpg

Filter segments are merged in path order into one ``ImageEdits``; a filter
that appears twice keeps its first position and its last value.
"""

from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING
from urllib.parse import unquote

from imagex.request.models import (
    CropEdit,
    ImageEdits,
    ImageFitType,
    OverlayEdit,
    OverlayOptions,
    RotateEdit,
    RoundCropEdit,
    SmartCropEdit,
)

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)

FILTER_SEGMENT = re.compile(r"filters:((?:\w+\([^)]*\):?)+)")
FILTER_CALL = re.compile(r"(\w+)\(([^)]*)\)")
CROP_SEGMENT = re.compile(r"(?:^|/)(\d+)x(\d+):(\d+)x(\d+)(?=/)")
SIZE_SEGMENT = re.compile(r"(?:^|/)(-?)(\d+)x(-?)(\d+)(?=/)")
FIT_IN_SEGMENT = re.compile(r"(?:^|/)fit-in(?=/)")
SMART_SEGMENT = re.compile(r"(?:^|/)smart(?=/)")
BUCKET_SEGMENT = re.compile(r"(?:^|/)s3:([^/]+)")
IMAGE_EXTENSION = re.compile(r"\.(jpe?g|png|webp|tiff?|svg|gif|avif)$", re.IGNORECASE)
HEX_COLOR = re.compile(r"^(?:[0-9a-fA-F]{3}|[0-9a-fA-F]{6}|[0-9a-fA-F]{8})$")

OUTPUT_FORMATS = {"jpg": "jpeg", "jpeg": "jpeg", "png": "png", "webp": "webp", "tiff": "tiff", "heif": "heif", "gif": "gif", "avif": "avif"}
QUALITY_FORMATS = {"jpeg", "png", "webp", "tiff", "heif", "avif"}


def has_filters(path: str) -> bool:
    return FILTER_SEGMENT.search(path) is not None


def has_image_extension(path: str) -> bool:
    return IMAGE_EXTENSION.search(path.rstrip("/")) is not None


def bucket_segments(path: str) -> list[str]:
    """Names of every ``s3:<name>`` segment, in path order."""
    return BUCKET_SEGMENT.findall(path)


def strip_to_key(path: str) -> str:
    """Remove every Thumbor control segment from a path, leaving the object key."""
    key = CROP_SEGMENT.sub("", path)
    key = SIZE_SEGMENT.sub("", key)
    key = FILTER_SEGMENT.sub("", key)
    key = FIT_IN_SEGMENT.sub("", key)
    key = SMART_SEGMENT.sub("", key)
    key = re.sub(r"(?:^|/)unsafe(?=/)", "", key)
    key = re.sub(r"(?:^|/)s3:[^/]+(?=/)", "", key)
    key = re.sub(r"/+", "/", key).lstrip("/")
    return unquote(key)


def _file_format(path: str) -> str:
    last = path.rstrip("/").rsplit("/", 1)[-1]
    if "." not in last:
        return ""
    extension = last.rsplit(".", 1)[-1].lower()
    return OUTPUT_FORMATS.get(extension, extension)


def _color(value: str) -> str:
    value = value.strip()
    return f"#{value}" if HEX_COLOR.match(value) else value


def _split_args(args: str) -> list[str]:
    return [arg.strip() for arg in args.split(",")] if args.strip() else []


def _optional_float(value: str | None) -> float | None:
    if value is None or value == "":
        return None
    return float(value)


class ThumborMapper:
    """Maps Thumbor URL paths to ordered image edits."""

    def __init__(self) -> None:
        self._filters: dict[str, Callable[[str, str, ImageEdits], None]] = {
            "animated": self._animated,
            "autojpg": self._autojpg,
            "background_color": self._background_color,
            "blur": self._blur,
            "fill": self._fill,
            "format": self._format,
            "grayscale": self._grayscale,
            "no_upscale": self._no_upscale,
            "proportion": self._proportion,
            "quality": self._quality,
            "rgb": self._rgb,
            "rotate": self._rotate,
            "round_crop": self._round_crop,
            "sharpen": self._sharpen,
            "smart_crop": self._smart_crop,
            "stretch": self._stretch,
            "strip_exif": self._strip_metadata,
            "strip_icc": self._strip_metadata,
            "upscale": self._upscale,
            "watermark": self._watermark,
        }

    def map_path_to_edits(self, path: str) -> ImageEdits:
        """Parse size, crop and filter segments of a Thumbor path into edits."""
        file_format = _file_format(path)
        edits = ImageEdits()

        self._map_crop(path, edits)
        self._map_resize(path, edits)
        if FIT_IN_SEGMENT.search(path):
            edits.ensure_resize().fit = ImageFitType.INSIDE
        if SMART_SEGMENT.search(path):
            edits["smartCrop"] = SmartCropEdit()

        for segment in FILTER_SEGMENT.findall(path):
            for name, args in FILTER_CALL.findall(segment):
                self.map_filter(name, args, file_format, edits)
        return edits

    def map_filter(self, name: str, args: str, file_format: str, edits: ImageEdits) -> None:
        """Apply one ``name(args)`` filter to the edits; unknown or malformed filters are ignored."""
        handler = self._filters.get(name)
        if handler is None:
            logger.debug("Ignoring unsupported filter %s", name)
            return
        try:
            handler(args, file_format, edits)
        except ValueError:
            logger.warning("Ignoring filter %s with invalid arguments %r", name, args)

    # -- Path segments ------------------------------------------------------

    @staticmethod
    def _map_crop(path: str, edits: ImageEdits) -> None:
        match = CROP_SEGMENT.search(path)
        if match is None:
            return
        left, top, right, bottom = (int(group) for group in match.groups())
        edits["crop"] = CropEdit(left=left, top=top, width=right - left, height=bottom - top)

    @staticmethod
    def _map_resize(path: str, edits: ImageEdits) -> None:
        match = SIZE_SEGMENT.search(path)
        if match is None:
            return
        flop, width, flip, height = match.groups()
        width_value, height_value = int(width), int(height)

        resize = edits.ensure_resize()
        if width_value == 0 or height_value == 0:
            resize.fit = ImageFitType.INSIDE
        resize.width = width_value or None
        resize.height = height_value or None

        if flop:
            edits["flop"] = True
        if flip:
            edits["flip"] = True

    # -- Filters ------------------------------------------------------------

    @staticmethod
    def _animated(args: str, _file_format: str, edits: ImageEdits) -> None:
        edits["animated"] = args.strip().lower() != "false"

    @staticmethod
    def _autojpg(_args: str, _file_format: str, edits: ImageEdits) -> None:
        edits["toFormat"] = "jpeg"

    @staticmethod
    def _background_color(args: str, _file_format: str, edits: ImageEdits) -> None:
        color = _color(args)
        edits.ensure_resize().background = color
        edits["flatten"] = {"background": color}

    @staticmethod
    def _blur(args: str, _file_format: str, edits: ImageEdits) -> None:
        parts = _split_args(args)
        radius = float(parts[0])
        sigma = _optional_float(parts[1]) if len(parts) > 1 else None
        edits["blur"] = sigma if sigma is not None else radius / 2

    @staticmethod
    def _fill(args: str, _file_format: str, edits: ImageEdits) -> None:
        resize = edits.ensure_resize()
        resize.fit = ImageFitType.CONTAIN
        resize.background = _color(args)

    @staticmethod
    def _format(args: str, _file_format: str, edits: ImageEdits) -> None:
        output_format = OUTPUT_FORMATS.get(args.strip().lower())
        if output_format is None:
            raise ValueError(f"unsupported format {args}")
        edits["toFormat"] = output_format

    @staticmethod
    def _grayscale(_args: str, _file_format: str, edits: ImageEdits) -> None:
        edits["greyscale"] = True

    @staticmethod
    def _no_upscale(_args: str, _file_format: str, edits: ImageEdits) -> None:
        edits.ensure_resize().withoutEnlargement = True

    @staticmethod
    def _proportion(args: str, _file_format: str, edits: ImageEdits) -> None:
        edits.ensure_resize().ratio = float(args)

    @staticmethod
    def _quality(args: str, file_format: str, edits: ImageEdits) -> None:
        quality = int(args)
        target = edits.get("toFormat") or file_format
        if target in QUALITY_FORMATS:
            edits[target] = {"quality": quality}

    @staticmethod
    def _rgb(args: str, _file_format: str, edits: ImageEdits) -> None:
        red, green, blue = (255 * (float(part) / 100) for part in _split_args(args))
        edits["tint"] = {"r": red, "g": green, "b": blue}

    @staticmethod
    def _rotate(args: str, _file_format: str, edits: ImageEdits) -> None:
        edits["rotate"] = RotateEdit.by(float(args)) if args.strip() else RotateEdit.auto_orient()

    @staticmethod
    def _round_crop(args: str, _file_format: str, edits: ImageEdits) -> None:
        parts = _split_args(args) + [""] * 4
        top, left, rx, ry = (_optional_float(part) for part in parts[:4])
        edits["roundCrop"] = RoundCropEdit(top=top, left=left, rx=rx, ry=ry)

    @staticmethod
    def _sharpen(args: str, _file_format: str, edits: ImageEdits) -> None:
        parts = _split_args(args)
        radius = float(parts[1]) if len(parts) > 1 else 0.0
        edits["sharpen"] = 1 + radius / 2

    @staticmethod
    def _smart_crop(args: str, _file_format: str, edits: ImageEdits) -> None:
        parts = _split_args(args) + ["", ""]
        face_index = int(parts[0]) if parts[0] else None
        padding = _optional_float(parts[1])
        edits["smartCrop"] = SmartCropEdit(face_index=face_index, padding=padding)

    @staticmethod
    def _stretch(_args: str, _file_format: str, edits: ImageEdits) -> None:
        resize = edits.ensure_resize()
        if resize.fit != ImageFitType.INSIDE:
            resize.fit = ImageFitType.FILL

    @staticmethod
    def _strip_metadata(_args: str, _file_format: str, edits: ImageEdits) -> None:
        edits["rotate"] = RotateEdit.strip_metadata()

    @staticmethod
    def _upscale(_args: str, _file_format: str, edits: ImageEdits) -> None:
        edits.ensure_resize().fit = ImageFitType.INSIDE

    @staticmethod
    def _watermark(args: str, _file_format: str, edits: ImageEdits) -> None:
        parts = _split_args(args)
        if len(parts) < 2:
            raise ValueError("watermark requires a bucket and a key")
        parts += [""] * (7 - len(parts))
        bucket, key, left, top, alpha, w_ratio, h_ratio = parts[:7]
        edits["overlayWith"] = OverlayEdit(
            bucket=bucket,
            key=key,
            alpha=alpha or None,
            wRatio=w_ratio or None,
            hRatio=h_ratio or None,
            options=OverlayOptions(left=left or None, top=top or None),
        )
