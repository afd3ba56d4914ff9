"""Pillow implementation of the image engine.

Operations are applied eagerly to every frame held by a ``PillowImage``;
animated sources keep all frames only when opened with ``animated=True``.
"""

from __future__ import annotations

import io
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from PIL import Image, ImageChops, ImageColor, ImageDraw, ImageFilter, ImageOps, ImageSequence

from imagex.geometry import Ellipse
from imagex.pipeline.engine import EngineError, ImageMetadata

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from imagex.geometry import CropArea
    from imagex.pipeline.engine import CompositeLayer, OpenOptions

logger = logging.getLogger(__name__)

# Matches the default input pixel limit of libvips-based engines (0x3FFF * 0x3FFF).
DEFAULT_PIXEL_LIMIT = 268_402_689
ORIENTATION_TAG = 0x0112

_FORMAT_ALIASES = {"jpg": "jpeg", "tif": "tiff", "heic": "heif"}
OUTPUT_FORMATS = frozenset({"jpeg", "png", "webp", "gif", "tiff", "avif", "heif", "raw"})
_PIL_FORMATS = {
    "jpeg": "JPEG",
    "png": "PNG",
    "webp": "WEBP",
    "gif": "GIF",
    "tiff": "TIFF",
    "avif": "AVIF",
    "heif": "HEIF",
}
_METADATA_FORMATS = frozenset({"jpeg", "png", "webp", "tiff", "avif", "heif"})
_ANIMATED_FORMATS = frozenset({"gif", "webp"})

_ORIENTATION_TRANSPOSES = {
    2: Image.Transpose.FLIP_LEFT_RIGHT,
    3: Image.Transpose.ROTATE_180,
    4: Image.Transpose.FLIP_TOP_BOTTOM,
    5: Image.Transpose.TRANSPOSE,
    6: Image.Transpose.ROTATE_270,
    7: Image.Transpose.TRANSVERSE,
    8: Image.Transpose.ROTATE_90,
}

# Encoder option names accepted from edits, translated to Pillow save() keywords.
_SAVE_OPTIONS = {
    "quality": "quality",
    "lossless": "lossless",
    "progressive": "progressive",
    "compressionLevel": "compress_level",
    "optimise": "optimize",
    "optimize": "optimize",
    "effort": "method",
}

_BLACK = (0, 0, 0, 255)


@dataclass
class PillowImage:
    """Mutable image handle: decoded frames plus what is needed to encode them again."""

    frames: list[Image.Image]
    format: str | None
    pages: int = 1
    durations: list[int] = field(default_factory=list)
    loop: int | None = None
    exif: Image.Exif | None = None
    icc_profile: bytes | None = None
    orientation: int | None = None
    save_options: dict[str, Any] = field(default_factory=dict)
    format_options: dict[str, dict[str, Any]] = field(default_factory=dict)

    @property
    def size(self) -> tuple[int, int]:
        return self.frames[0].size

    def map_frames(self, operation: Callable[[Image.Image], Image.Image]) -> None:
        self.frames = [operation(frame) for frame in self.frames]


def normalize_format(fmt: str | None) -> str | None:
    if fmt is None:
        return None
    name = fmt.lower()
    return _FORMAT_ALIASES.get(name, name)


def parse_color(value: object, default: tuple[int, int, int, int] = _BLACK) -> tuple[int, int, int, int]:
    """Resolve a CSS color string or an ``{r, g, b, alpha}`` object to RGBA."""
    if value is None or value is True:
        return default
    if isinstance(value, Mapping):
        alpha = float(value.get("alpha", 1))
        return (
            int(value.get("r", 0)),
            int(value.get("g", 0)),
            int(value.get("b", 0)),
            round(255 * alpha),
        )
    try:
        color = ImageColor.getrgb(str(value))
    except ValueError as error:
        raise EngineError(f"Unable to parse color from {value!r}") from error
    return color if len(color) == 4 else (*color, 255)  # type: ignore[return-value]


def _normalize_mode(frame: Image.Image) -> Image.Image:
    if frame.mode in ("RGB", "RGBA", "L"):
        return frame
    if frame.mode in ("LA", "PA") or (frame.mode == "P" and "transparency" in frame.info):
        return frame.convert("RGBA")
    return frame.convert("RGB")


def _has_alpha(frame: Image.Image) -> bool:
    return "A" in frame.getbands()


def _scaled(size: tuple[int, int], scale: float) -> tuple[int, int]:
    return max(1, round(size[0] * scale)), max(1, round(size[1] * scale))


class PillowEngine:
    """ImageEngine backed by Pillow."""

    def __init__(self) -> None:
        # Pixel limits are enforced per call in open().
        Image.MAX_IMAGE_PIXELS = None
        self._filters: dict[str, Callable[[PillowImage, Any], None]] = {
            "flip": self._flip,
            "flop": self._flop,
            "sharpen": self._sharpen,
            "median": self._median,
            "blur": self._blur_filter,
            "flatten": self._flatten,
            "negate": self._negate,
            "normalise": self._normalise,
            "normalize": self._normalise,
            "greyscale": self._greyscale,
            "grayscale": self._greyscale,
            "tint": self._tint,
            "threshold": self._threshold,
            "gamma": self._gamma,
            "removeAlpha": self._remove_alpha,
            "ensureAlpha": self._ensure_alpha,
            "toFormat": self._to_format_filter,
        }
        for fmt in ("jpeg", "png", "webp", "tiff", "gif", "avif", "heif"):
            self._filters[fmt] = self._format_filter(fmt)

    # -- Decode / encode ----------------------------------------------------

    def open(self, data: bytes, options: OpenOptions) -> PillowImage:
        try:
            source = Image.open(io.BytesIO(data))
        except (OSError, ValueError, Image.DecompressionBombError) as error:
            raise EngineError(f"Input buffer contains unsupported image format: {error}") from error

        width, height = source.size
        limit = self._pixel_limit(options.limit_input_pixels)
        if limit is not None and width * height > limit:
            raise EngineError("Input image exceeds pixel limit")

        pages = getattr(source, "n_frames", 1)
        exif = source.getexif()
        orientation = exif.get(ORIENTATION_TAG)
        try:
            if options.animated and pages > 1:
                frames: list[Image.Image] = []
                durations: list[int] = []
                for frame in ImageSequence.Iterator(source):
                    frames.append(frame.convert("RGBA"))
                    durations.append(int(frame.info.get("duration", 100)))
            else:
                source.load()
                frames = [_normalize_mode(source.copy())]
                durations = []
        except (OSError, ValueError, SyntaxError) as error:
            raise EngineError(f"Input image could not be decoded: {error}") from error

        image = PillowImage(
            frames=frames,
            format=normalize_format(source.format),
            pages=pages,
            durations=durations,
            loop=source.info.get("loop"),
            exif=None if options.strip_metadata or not exif else exif,
            icc_profile=None if options.strip_metadata else source.info.get("icc_profile"),
            orientation=None if options.strip_metadata else orientation,
        )
        logger.debug("Opened %s image %dx%d (%d page(s))", image.format, width, height, pages)
        return image

    def metadata(self, image: PillowImage) -> ImageMetadata:
        width, height = image.size
        return ImageMetadata(
            width=width,
            height=height,
            format=image.format,
            pages=image.pages,
            orientation=image.orientation,
            encoder_options=dict(image.format_options.get(image.format or "", {})),
        )

    def encode(self, image: PillowImage) -> bytes:
        fmt = image.format or "png"
        if fmt == "raw":
            return b"".join(frame.tobytes() for frame in image.frames)

        pil_format = _PIL_FORMATS.get(fmt)
        if pil_format is None:
            raise EngineError(f"Unsupported output format {fmt}")

        frames = image.frames
        if fmt == "jpeg":
            frames = [self._flattened(frame, _BLACK) for frame in frames]

        save_options: dict[str, Any] = dict(image.save_options)
        if fmt in _METADATA_FORMATS:
            if image.exif is not None:
                save_options["exif"] = image.exif.tobytes()
            if image.icc_profile:
                save_options["icc_profile"] = image.icc_profile
        if len(frames) > 1 and fmt in _ANIMATED_FORMATS:
            save_options["save_all"] = True
            save_options["append_images"] = frames[1:]
            if image.durations:
                save_options["duration"] = image.durations
            save_options["loop"] = image.loop if image.loop is not None else 0

        buffer = io.BytesIO()
        try:
            frames[0].save(buffer, format=pil_format, **save_options)
        except (OSError, ValueError, KeyError) as error:
            raise EngineError(f"Could not encode image as {fmt}: {error}") from error
        return buffer.getvalue()

    def to_format(self, image: PillowImage, fmt: str, **options: Any) -> None:
        name = normalize_format(fmt)
        if name not in OUTPUT_FORMATS:
            raise EngineError(f"Unsupported output format {fmt}")
        remembered = image.format_options.setdefault(name, {})
        remembered.update(options)
        image.format = name
        image.save_options = {
            _SAVE_OPTIONS[key]: value for key, value in remembered.items() if key in _SAVE_OPTIONS
        }

    # -- Geometry -----------------------------------------------------------

    def resize(self, image: PillowImage, options: Mapping[str, Any]) -> None:
        width = options.get("width")
        height = options.get("height")
        if width is None and height is None:
            return

        fit = options.get("fit") or "cover"
        background = parse_color(options.get("background"))
        source_size = image.size
        source_width, source_height = source_size

        if width is None or height is None:
            scale = width / source_width if width is not None else height / source_height
            if options.get("withoutEnlargement"):
                scale = min(scale, 1.0)
            target = _scaled(source_size, scale)
            image.map_frames(lambda frame: frame.resize(target, Image.Resampling.LANCZOS))
            return

        width, height = int(width), int(height)
        if fit == "fill":
            target = (width, height)
            if options.get("withoutEnlargement"):
                target = (min(width, source_width), min(height, source_height))
            image.map_frames(lambda frame: frame.resize(target, Image.Resampling.LANCZOS))
            return

        width_scale, height_scale = width / source_width, height / source_height
        scale = min(width_scale, height_scale) if fit in ("inside", "contain") else max(width_scale, height_scale)
        if options.get("withoutEnlargement"):
            scale = min(scale, 1.0)
        target = _scaled(source_size, scale)

        if fit in ("inside", "outside"):
            image.map_frames(lambda frame: frame.resize(target, Image.Resampling.LANCZOS))
        elif fit == "cover":
            box_size = (min(width, target[0]), min(height, target[1]))
            image.map_frames(
                lambda frame: ImageOps.fit(frame, box_size, Image.Resampling.LANCZOS)
                if frame.size != box_size
                else frame
            )
        elif fit == "contain":
            image.map_frames(lambda frame: self._contained(frame, target, (width, height), background))
        else:
            raise EngineError(f"Expected valid fit but received {fit}")

    @staticmethod
    def _contained(
        frame: Image.Image,
        target: tuple[int, int],
        box_size: tuple[int, int],
        background: tuple[int, int, int, int],
    ) -> Image.Image:
        resized = frame.resize(target, Image.Resampling.LANCZOS)
        box_size = (max(box_size[0], target[0]), max(box_size[1], target[1]))
        mode = "RGBA" if _has_alpha(resized) or background[3] < 255 else "RGB"
        canvas = Image.new(mode, box_size, background if mode == "RGBA" else background[:3])
        offset = ((box_size[0] - target[0]) // 2, (box_size[1] - target[1]) // 2)
        canvas.paste(resized.convert(mode), offset, resized.convert("RGBA") if mode == "RGBA" else None)
        return canvas

    def extract(self, image: PillowImage, area: CropArea) -> None:
        width, height = image.size
        if (
            area.left < 0
            or area.top < 0
            or area.width <= 0
            or area.height <= 0
            or area.left + area.width > width
            or area.top + area.height > height
        ):
            raise EngineError("extract_area: bad extract area")
        box = (area.left, area.top, area.left + area.width, area.top + area.height)
        image.map_frames(lambda frame: frame.crop(box))

    def rotate(self, image: PillowImage, degrees: float | None = None) -> None:
        if degrees is None:
            self.auto_orient(image)
            return
        angle = float(degrees) % 360
        if angle == 0:
            return
        # Pillow rotates counter-clockwise.
        image.map_frames(lambda frame: frame.rotate(-angle, resample=Image.Resampling.BICUBIC, expand=True))

    def auto_orient(self, image: PillowImage) -> None:
        transpose = _ORIENTATION_TRANSPOSES.get(image.orientation or 1)
        if transpose is not None:
            image.map_frames(lambda frame: frame.transpose(transpose))
        if image.orientation:
            image.orientation = 1
        if image.exif is not None and ORIENTATION_TAG in image.exif:
            image.exif[ORIENTATION_TAG] = 1

    def trim(self, image: PillowImage) -> None:
        frame = image.frames[0]
        if _has_alpha(frame):
            bbox = frame.getchannel("A").getbbox()
        else:
            background = Image.new(frame.mode, frame.size, frame.getpixel((0, 0)))
            bbox = ImageChops.difference(frame, background).getbbox()
        if bbox is None or bbox == (0, 0, *frame.size):
            return
        image.map_frames(lambda current: current.crop(bbox))

    # -- Compositing --------------------------------------------------------

    def composite(self, image: PillowImage, layers: Sequence[CompositeLayer]) -> None:
        for layer in layers:
            if isinstance(layer.input, Ellipse):
                mask = self._ellipse_mask(image.size, layer.input)
                image.map_frames(lambda frame, mask=mask: self._dest_in(frame, mask))
                continue

            overlay = self._layer_image(layer)
            if layer.tile:
                overlay = self._tiled(overlay, image.size)

            if layer.blend == "dest-in":
                mask = self._positioned(overlay, image.size, layer.left or 0, layer.top or 0).getchannel("A")
                image.map_frames(lambda frame, mask=mask: self._dest_in(frame, mask))
            elif layer.blend in ("over", "dest-over"):
                width, height = image.size
                if overlay.width > width or overlay.height > height:
                    raise EngineError("Image to composite must have same dimensions or smaller")
                left = layer.left if layer.left is not None else (width - overlay.width) // 2
                top = layer.top if layer.top is not None else (height - overlay.height) // 2
                canvas = self._positioned(overlay, image.size, left, top)
                image.map_frames(lambda frame, canvas=canvas, blend=layer.blend: self._over(frame, canvas, blend))
            else:
                raise EngineError(f"Unsupported blend mode {layer.blend}")

    @staticmethod
    def _layer_image(layer: CompositeLayer) -> Image.Image:
        if layer.raw is not None:
            mode = {1: "L", 2: "LA", 3: "RGB", 4: "RGBA"}.get(layer.raw.channels)
            if mode is None:
                raise EngineError(f"Unsupported raw channel count {layer.raw.channels}")
            return Image.frombytes(mode, (layer.raw.width, layer.raw.height), layer.input).convert("RGBA")
        try:
            return Image.open(io.BytesIO(layer.input)).convert("RGBA")
        except (OSError, ValueError) as error:
            raise EngineError(f"Composite input contains unsupported image format: {error}") from error

    @staticmethod
    def _tiled(tile: Image.Image, size: tuple[int, int]) -> Image.Image:
        canvas = Image.new("RGBA", size, (0, 0, 0, 0))
        for top in range(0, size[1], tile.height):
            for left in range(0, size[0], tile.width):
                canvas.paste(tile, (left, top))
        return canvas

    @staticmethod
    def _positioned(overlay: Image.Image, size: tuple[int, int], left: int, top: int) -> Image.Image:
        canvas = Image.new("RGBA", size, (0, 0, 0, 0))
        canvas.paste(overlay, (left, top))
        return canvas

    @staticmethod
    def _ellipse_mask(size: tuple[int, int], ellipse: Ellipse) -> Image.Image:
        mask = Image.new("L", size, 0)
        ImageDraw.Draw(mask).ellipse(
            (ellipse.cx - ellipse.rx, ellipse.cy - ellipse.ry, ellipse.cx + ellipse.rx, ellipse.cy + ellipse.ry),
            fill=255,
        )
        return mask

    @staticmethod
    def _dest_in(frame: Image.Image, mask: Image.Image) -> Image.Image:
        result = frame.convert("RGBA")
        result.putalpha(ImageChops.multiply(result.getchannel("A"), mask))
        return result

    @staticmethod
    def _over(frame: Image.Image, canvas: Image.Image, blend: str) -> Image.Image:
        base = frame.convert("RGBA")
        result = Image.alpha_composite(base, canvas) if blend == "over" else Image.alpha_composite(canvas, base)
        return result if _has_alpha(frame) else result.convert("RGB")

    @staticmethod
    def _flattened(frame: Image.Image, background: tuple[int, int, int, int]) -> Image.Image:
        if not _has_alpha(frame):
            return frame if frame.mode in ("RGB", "L") else frame.convert("RGB")
        canvas = Image.new("RGBA", frame.size, (*background[:3], 255))
        return Image.alpha_composite(canvas, frame.convert("RGBA")).convert("RGB")

    # -- Filters ------------------------------------------------------------

    def blur(self, image: PillowImage, sigma: float) -> None:
        image.map_frames(lambda frame: frame.filter(ImageFilter.GaussianBlur(sigma)))

    def apply_filter(self, image: PillowImage, name: str, value: Any) -> None:
        operation = self._filters.get(name)
        if operation is None:
            raise EngineError(f"Unsupported filter {name}")
        operation(image, value)

    @staticmethod
    def _enabled(value: Any) -> bool:
        return value is None or bool(value)

    def _flip(self, image: PillowImage, value: Any) -> None:
        if self._enabled(value):
            image.map_frames(ImageOps.flip)

    def _flop(self, image: PillowImage, value: Any) -> None:
        if self._enabled(value):
            image.map_frames(ImageOps.mirror)

    def _sharpen(self, image: PillowImage, value: Any) -> None:
        if value is None or value is True:
            image.map_frames(lambda frame: frame.filter(ImageFilter.SHARPEN))
        elif value is not False:
            radius = float(value["sigma"] if isinstance(value, Mapping) else value)
            image.map_frames(lambda frame: frame.filter(ImageFilter.UnsharpMask(radius=radius, percent=150)))

    def _median(self, image: PillowImage, value: Any) -> None:
        size = 3 if value is None or value is True else int(value)
        if size % 2 == 0:
            size += 1
        image.map_frames(lambda frame: frame.filter(ImageFilter.MedianFilter(size)))

    def _blur_filter(self, image: PillowImage, value: Any) -> None:
        if value is None or value is True:
            image.map_frames(lambda frame: frame.filter(ImageFilter.BoxBlur(1)))
        elif value is not False:
            self.blur(image, float(value))

    def _flatten(self, image: PillowImage, value: Any) -> None:
        if value is False:
            return
        background = parse_color(value.get("background") if isinstance(value, Mapping) else value)
        image.map_frames(lambda frame: self._flattened(frame, background))

    def _negate(self, image: PillowImage, value: Any) -> None:
        if self._enabled(value):
            image.map_frames(lambda frame: self._per_color(frame, ImageOps.invert))

    def _normalise(self, image: PillowImage, value: Any) -> None:
        if self._enabled(value):
            image.map_frames(lambda frame: self._per_color(frame, ImageOps.autocontrast))

    def _greyscale(self, image: PillowImage, value: Any) -> None:
        if self._enabled(value):
            image.map_frames(lambda frame: frame.convert("LA" if _has_alpha(frame) else "L"))

    def _tint(self, image: PillowImage, value: Any) -> None:
        color = parse_color(value)

        def tint(frame: Image.Image) -> Image.Image:
            tinted = ImageOps.colorize(frame.convert("L"), black=(0, 0, 0), white=color[:3], mid=None)
            if _has_alpha(frame):
                tinted.putalpha(frame.getchannel("A"))
            return tinted

        image.map_frames(tint)

    def _threshold(self, image: PillowImage, value: Any) -> None:
        level = 128 if value is None or value is True else int(value)
        image.map_frames(lambda frame: frame.convert("L").point(lambda pixel: 255 if pixel >= level else 0))

    def _gamma(self, image: PillowImage, value: Any) -> None:
        gamma = 2.2 if value is None or value is True else float(value)
        if gamma <= 0:
            raise EngineError(f"Expected positive gamma but received {gamma}")
        table = [round(255 * (level / 255) ** (1 / gamma)) for level in range(256)]
        image.map_frames(lambda frame: self._per_color(frame, lambda color: color.point(table * len(color.getbands()))))

    def _remove_alpha(self, image: PillowImage, value: Any) -> None:
        if self._enabled(value):
            image.map_frames(lambda frame: frame.convert("RGB") if _has_alpha(frame) else frame)

    def _ensure_alpha(self, image: PillowImage, value: Any) -> None:
        def ensure(frame: Image.Image) -> Image.Image:
            if _has_alpha(frame):
                return frame
            result = frame.convert("RGBA")
            if isinstance(value, int | float) and not isinstance(value, bool):
                result.putalpha(round(255 * float(value)))
            return result

        image.map_frames(ensure)

    def _to_format_filter(self, image: PillowImage, value: Any) -> None:
        if isinstance(value, Mapping):
            options = dict(value)
            self.to_format(image, str(options.pop("format")), **options)
        else:
            self.to_format(image, str(value))

    def _format_filter(self, fmt: str) -> Callable[[PillowImage, Any], None]:
        def apply(image: PillowImage, value: Any) -> None:
            self.to_format(image, fmt, **(dict(value) if isinstance(value, Mapping) else {}))

        return apply

    @staticmethod
    def _per_color(frame: Image.Image, operation: Callable[[Image.Image], Image.Image]) -> Image.Image:
        if not _has_alpha(frame):
            return operation(frame)
        alpha = frame.getchannel("A")
        color = operation(frame.convert("RGB" if frame.mode == "RGBA" else "L"))
        color.putalpha(alpha)
        return color

    @staticmethod
    def _pixel_limit(limit: int | bool) -> int | None:
        if limit is True:
            return DEFAULT_PIXEL_LIMIT
        if limit is False:
            return None
        return int(limit)
