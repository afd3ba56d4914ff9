"""Edit pipeline: applies an ordered edit mapping to a source image.

Resize always runs first. The remaining edits follow mapping order, each
working on the result of the previous one. Face-aware and per-frame edits
are skipped for animated sources.
"""

from __future__ import annotations

import logging
import math
from contextlib import contextmanager
from dataclasses import dataclass, replace
from http import HTTPStatus
from typing import TYPE_CHECKING, Any

from imagex.errors import (
    FACE_INDEX_ERROR_MAPPINGS,
    PROCESSING_ERROR_MAPPINGS,
    ImageHandlerError,
    cannot_access_bucket,
    map_error,
)
from imagex.geometry import (
    BoundingBox,
    CropArea,
    calc_overlay_offset,
    clamp_bounding_box,
    get_crop_area,
    overlay_dimension,
    overlay_opacity,
    round_crop_ellipse,
    round_half_up,
)
from imagex.pipeline.engine import CompositeLayer, EngineError, OpenOptions, RawPixels
from imagex.request.models import ContentType, ImageFitType, ImageFormatType, RotateMode

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator

    from imagex.config import Settings
    from imagex.pipeline.engine import ImageEngine, ImageMetadata
    from imagex.request.models import (
        ContentModerationEdit,
        CropEdit,
        ImageEdits,
        ImageRequestInfo,
        OverlayEdit,
        ResizeEdit,
        RotateEdit,
        RoundCropEdit,
        SmartCropEdit,
    )
    from imagex.storage import StorageFetch
    from imagex.vision.detector import ModerationLabel, VisionDetector

logger = logging.getLogger(__name__)

# Simple filters forwarded to the engine with their single argument.
PASSTHROUGH_FILTERS = frozenset(
    {
        "flip",
        "flop",
        "sharpen",
        "median",
        "blur",
        "flatten",
        "negate",
        "normalise",
        "normalize",
        "greyscale",
        "grayscale",
        "tint",
        "threshold",
        "gamma",
        "removeAlpha",
        "ensureAlpha",
        "toFormat",
        "jpeg",
        "png",
        "webp",
        "tiff",
        "gif",
        "avif",
        "heif",
    }
)

ANIMATION_UNSUPPORTED_EDITS = frozenset({"rotate", "smartCrop", "roundCrop", "contentModeration"})
DETECTOR_FORMATS = ("jpeg", "png")
DEFAULT_MIN_CONFIDENCE = 75
DEFAULT_BLUR = 50
MIN_BLUR = 0.3
MAX_BLUR = 1000

_ENGINE_FORMATS: dict[str, str] = {fmt.value: fmt.value for fmt in ImageFormatType}


@dataclass(frozen=True)
class DetectorImage:
    """Encoded bytes the vision detector accepts, with the format to restore."""

    data: bytes
    width: int
    height: int
    source_format: str | None


@contextmanager
def detector_compatible_image(engine: ImageEngine, image: Any) -> Iterator[DetectorImage]:
    """Yield a JPEG/PNG encoding of the image, restoring its original format on exit."""
    source = engine.metadata(image)
    source_format = source.format
    transcoded = source_format not in DETECTOR_FORMATS
    if transcoded:
        engine.to_format(image, "png")
    try:
        metadata = engine.metadata(image)
        yield DetectorImage(
            data=engine.encode(image),
            width=metadata.width,
            height=metadata.height,
            source_format=source_format,
        )
    finally:
        if transcoded and source_format is not None:
            engine.to_format(image, source_format, **source.encoder_options)


def convert_image_format_type(output_format: str) -> str:
    """Engine format name for an output format."""
    try:
        return _ENGINE_FORMATS[str(output_format)]
    except KeyError:
        raise ImageHandlerError(
            HTTPStatus.INTERNAL_SERVER_ERROR,
            "UnsupportedOutputImageFormatException",
            f"Format to {output_format} not supported",
        ) from None


class ImageHandler:
    """Applies image edits through an image engine."""

    def __init__(
        self,
        settings: Settings,
        engine: ImageEngine,
        storage: StorageFetch,
        detector: VisionDetector,
    ) -> None:
        self._engine = engine
        self._storage = storage
        self._detector = detector
        self._allowed_buckets = settings.allowed_buckets
        self._limit_input_pixels = settings.limit_input_pixels
        self._edit_handlers: dict[str, Callable[[Any, ImageEdits], Any]] = {
            "overlayWith": self._apply_overlay_with,
            "smartCrop": self._apply_smart_crop,
            "roundCrop": self._apply_round_crop,
            "contentModeration": self._apply_content_moderation,
            "crop": self._apply_crop,
            "rotate": self._apply_rotate,
        }

    # -- Public API ---------------------------------------------------------

    def process(self, request_info: ImageRequestInfo) -> bytes:
        """Apply the request's edits and output format; untouched bytes when there is nothing to do."""
        original_image = request_info.original_image
        edits = request_info.edits
        options = OpenOptions(
            fail_on_error=False,
            animated=request_info.content_type == ContentType.GIF,
            limit_input_pixels=self._limit_input_pixels,
        )

        try:
            if not edits:
                if request_info.output_format is None:
                    return original_image
                image = self._instantiate_image(original_image, edits, options)
                self._modify_image_output(image, request_info)
                return self._engine.encode(image)

            animated = edits.get("animated")
            if animated is not None:
                options = replace(options, animated=bool(animated))
            image = self._instantiate_image(original_image, edits, options)

            if options.animated:
                metadata = self._engine.metadata(image)
                if metadata.pages <= 1:
                    options = replace(options, animated=False)
                    image = self._instantiate_image(original_image, edits, options)

            image = self.apply_edits(image, edits, options.animated)
            self._modify_image_output(image, request_info)
            return self._engine.encode(image)
        except ImageHandlerError:
            raise
        except Exception as error:
            raise map_error(
                error,
                ImageHandlerError(HTTPStatus.INTERNAL_SERVER_ERROR, "ProcessingFailure", "Image processing failed."),
                PROCESSING_ERROR_MAPPINGS,
            ) from error

    def apply_edits(self, image: Any, edits: ImageEdits, is_animation: bool) -> Any:
        """Apply resize, then every other edit in mapping order; returns the final handle."""
        logger.debug("Applying edits %s (animated=%s)", list(edits), is_animation)
        self._apply_resize(image, edits)

        for name, value in list(edits.items()):
            if name == "resize" or self._skip_edit(name, is_animation):
                continue
            handler = self._edit_handlers.get(name)
            if handler is not None:
                image = handler(image, edits)
            elif name in PASSTHROUGH_FILTERS:
                self._engine.apply_filter(image, name, value)
        return image

    def get_overlay_image(
        self,
        bucket: str,
        key: str,
        w_ratio: object,
        h_ratio: object,
        alpha: object,
        source_metadata: ImageMetadata,
    ) -> bytes:
        """Fetch an overlay, size it relative to the base image and apply its alpha."""
        if bucket not in self._allowed_buckets:
            raise cannot_access_bucket("overlay image bucket")

        try:
            data = self._storage.get(bucket, key)
            resize_options: dict[str, Any] = {"fit": ImageFitType.INSIDE.value}
            width = overlay_dimension(source_metadata.width, w_ratio)
            if width is not None:
                resize_options["width"] = width
            height = overlay_dimension(source_metadata.height, h_ratio)
            if height is not None:
                resize_options["height"] = height

            opacity = overlay_opacity(alpha)
            overlay = self._engine.open(data, OpenOptions(limit_input_pixels=self._limit_input_pixels))
            self._engine.resize(overlay, resize_options)
            self._engine.composite(
                overlay,
                [
                    CompositeLayer(
                        input=bytes([255, 255, 255, int(255 * opacity)]),
                        raw=RawPixels(width=1, height=1, channels=4),
                        tile=True,
                        blend="dest-in",
                    )
                ],
            )
            self._engine.to_format(overlay, "png")
            return self._engine.encode(overlay)
        except ImageHandlerError:
            raise
        except Exception as error:
            raise map_error(
                error,
                ImageHandlerError(
                    HTTPStatus.BAD_REQUEST,
                    "OverlayImageException",
                    "The overlay image could not be applied. Please contact the system administrator.",
                ),
            ) from error

    def get_bounding_box(self, image: bytes, face_index: int) -> BoundingBox:
        """Clamped box of the requested face; the whole image when no face is found."""
        try:
            faces = self._detector.detect_faces(image)
            if not faces:
                return BoundingBox.full()
            if face_index < 0:
                raise IndexError("face index out of range")
            return clamp_bounding_box(faces[face_index].box)
        except ImageHandlerError:
            raise
        except Exception as error:
            raise map_error(
                error,
                ImageHandlerError(
                    HTTPStatus.INTERNAL_SERVER_ERROR,
                    "SmartCrop::Error",
                    "Smart Crop could not be applied. Please contact the system administrator.",
                ),
                FACE_INDEX_ERROR_MAPPINGS,
            ) from error

    def detect_inappropriate_content(self, image: bytes, min_confidence: float | None) -> list[ModerationLabel]:
        try:
            return self._detector.detect_moderation_labels(
                image,
                min_confidence if min_confidence is not None else DEFAULT_MIN_CONFIDENCE,
            )
        except Exception as error:
            raise map_error(
                error,
                ImageHandlerError(
                    HTTPStatus.INTERNAL_SERVER_ERROR,
                    "Rekognition::DetectModerationLabelsError",
                    "Rekognition call failed. Please contact the system administrator.",
                ),
            ) from error

    # -- Instantiation and output ------------------------------------------

    def _instantiate_image(self, original_image: bytes, edits: ImageEdits, options: OpenOptions) -> Any:
        try:
            if edits.strips_metadata:
                return self._engine.open(original_image, replace(options, strip_metadata=True))
            image = self._engine.open(original_image, options)
            self._engine.metadata(image)
            return image
        except Exception as error:
            raise map_error(
                error,
                ImageHandlerError(
                    HTTPStatus.BAD_REQUEST,
                    "InstantiationError",
                    "Input image could not be instantiated. Please choose a valid image.",
                ),
            ) from error

    def _modify_image_output(self, image: Any, request_info: ImageRequestInfo) -> None:
        output_format = request_info.output_format
        if output_format is None:
            return
        if output_format == ImageFormatType.WEBP and request_info.effort is not None:
            self._engine.to_format(image, "webp", effort=request_info.effort)
        else:
            self._engine.to_format(image, convert_image_format_type(output_format))

    @staticmethod
    def _skip_edit(name: str, is_animation: bool) -> bool:
        return is_animation and name in ANIMATION_UNSUPPORTED_EDITS

    # -- Edits --------------------------------------------------------------

    def _apply_resize(self, image: Any, edits: ImageEdits) -> None:
        resize = edits.resize
        if resize is None:
            resize = edits.ensure_resize()
            resize.fit = ImageFitType.INSIDE
        else:
            self._validate_resize_inputs(resize)
            if resize.ratio:
                self._resolve_resize_ratio(image, resize)
        self._engine.resize(image, resize.to_options())

    def _resolve_resize_ratio(self, image: Any, resize: ResizeEdit) -> None:
        ratio = resize.ratio or 1
        if resize.width is None or resize.height is None:
            metadata = self._engine.metadata(image)
            width = resize.width if resize.width is not None else metadata.width
            height = resize.height if resize.height is not None else metadata.height
        else:
            width, height = resize.width, resize.height

        resize.width = round_half_up(width * ratio)
        resize.height = round_half_up(height * ratio)
        resize.ratio = None
        if not resize.fit:
            resize.fit = ImageFitType.INSIDE
        self._validate_resize_inputs(resize)

    @staticmethod
    def _validate_resize_inputs(resize: ResizeEdit) -> None:
        for axis in ("width", "height"):
            value = getattr(resize, axis)
            if value is None:
                continue
            try:
                rounded = round_half_up(float(value))
            except (TypeError, ValueError, OverflowError):
                rounded = 0
            if rounded <= 0:
                raise ImageHandlerError(HTTPStatus.BAD_REQUEST, "InvalidResizeException", "The image size is invalid.")
            setattr(resize, axis, rounded)

    def _apply_overlay_with(self, image: Any, edits: ImageEdits) -> Any:
        overlay_edit: OverlayEdit = edits["overlayWith"]
        # Resize already ran, so these are the post-resize dimensions.
        metadata = self._engine.metadata(image)

        overlay = self.get_overlay_image(
            overlay_edit.bucket,
            overlay_edit.key,
            overlay_edit.w_ratio,
            overlay_edit.h_ratio,
            overlay_edit.alpha,
            metadata,
        )
        overlay_metadata = self._engine.metadata(self._engine.open(overlay, OpenOptions()))

        left = top = None
        extra: dict[str, Any] = {}
        if overlay_edit.options is not None:
            extra = overlay_edit.options.model_extra or {}
            left = calc_overlay_offset(overlay_edit.options.left, metadata.width, overlay_metadata.width)
            top = calc_overlay_offset(overlay_edit.options.top, metadata.height, overlay_metadata.height)

        layer = CompositeLayer(
            input=overlay,
            left=left,
            top=top,
            blend=str(extra.get("blend", "over")),
            tile=bool(extra.get("tile", False)),
        )
        self._engine.composite(image, [layer])
        return image

    def _apply_smart_crop(self, image: Any, edits: ImageEdits) -> Any:
        smart_crop: SmartCropEdit | None = edits["smartCrop"]
        if smart_crop is None:
            return image

        face_index = smart_crop.face_index if smart_crop.face_index is not None else 0
        padding = smart_crop.padding if smart_crop.padding is not None else 0

        with detector_compatible_image(self._engine, image) as compatible:
            bounding_box = self.get_bounding_box(compatible.data, face_index)
            crop_area = get_crop_area(bounding_box, padding, compatible.width, compatible.height)
            try:
                self._engine.extract(image, crop_area)
            except EngineError as error:
                raise ImageHandlerError(
                    HTTPStatus.BAD_REQUEST,
                    "SmartCrop::PaddingOutOfBounds",
                    "The padding value you provided exceeds the boundaries of the original image. Please try "
                    "choosing a smaller value or applying padding via Sharp for greater specificity.",
                ) from error
        return image

    def _apply_round_crop(self, image: Any, edits: ImageEdits) -> Any:
        round_crop: RoundCropEdit | None = edits["roundCrop"]
        if round_crop is None:
            return image

        metadata = self._engine.metadata(image)
        ellipse = round_crop_ellipse(
            metadata.width,
            metadata.height,
            top=round_crop.top,
            left=round_crop.left,
            rx=round_crop.rx,
            ry=round_crop.ry,
        )
        self._engine.composite(image, [CompositeLayer(input=ellipse, blend="dest-in")])

        # Finalize the mask and reopen, so later edits see the masked pixels as their input.
        self._engine.to_format(image, "png")
        masked = self._engine.open(self._engine.encode(image), OpenOptions(limit_input_pixels=self._limit_input_pixels))
        self._engine.trim(masked)
        if metadata.format is not None and (metadata.format != "png" or metadata.encoder_options):
            self._engine.to_format(masked, metadata.format, **metadata.encoder_options)
        return masked

    def _apply_content_moderation(self, image: Any, edits: ImageEdits) -> Any:
        moderation: ContentModerationEdit | None = edits["contentModeration"]
        if moderation is None:
            return image

        with detector_compatible_image(self._engine, image) as compatible:
            labels = self.detect_inappropriate_content(compatible.data, moderation.min_confidence)
            self._blur_image(image, moderation.blur, moderation.moderation_labels, labels)
        return image

    def _blur_image(
        self,
        image: Any,
        blur: float | None,
        moderation_labels: list[str] | None,
        found_labels: list[ModerationLabel],
    ) -> None:
        blur_value = math.ceil(blur) if blur is not None else DEFAULT_BLUR
        if not MIN_BLUR <= blur_value <= MAX_BLUR:
            return

        if moderation_labels is not None:
            if any(label.name in moderation_labels for label in found_labels):
                self._engine.blur(image, blur_value)
        elif found_labels:
            self._engine.blur(image, blur_value)

    def _apply_crop(self, image: Any, edits: ImageEdits) -> Any:
        crop: CropEdit = edits["crop"]
        try:
            self._engine.extract(image, CropArea(left=crop.left, top=crop.top, width=crop.width, height=crop.height))
        except EngineError as error:
            raise ImageHandlerError(
                HTTPStatus.BAD_REQUEST,
                "Crop::AreaOutOfBounds",
                "The cropping area you provided exceeds the boundaries of the original image. Please try choosing "
                "a correct cropping value.",
            ) from error
        return image

    def _apply_rotate(self, image: Any, edits: ImageEdits) -> Any:
        rotate: RotateEdit = edits["rotate"]
        if rotate.mode is RotateMode.AUTO_ORIENT:
            self._engine.auto_orient(image)
        elif rotate.mode is RotateMode.DEGREES:
            self._engine.rotate(image, rotate.degrees)
        return image
