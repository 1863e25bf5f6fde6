"""Decode downloaded images and produce the standard derivative sizes."""

import io
from dataclasses import dataclass, field
from typing import Optional

from PIL import Image, ImageOps, UnidentifiedImageError

from vocabimages.errors import ProcessingFailed
from vocabimages.utils.logger import logger as LOGGER

MIN_DIMENSION = 100
MAX_INPUT_BYTES = 50 * 1024 * 1024
WEBP_QUALITY = 85


@dataclass(frozen=True)
class SizeSpec:
    """Target box for a derivative; ``cover`` crops to fill it exactly."""
    name: str
    width: int
    height: int
    cover: bool = False


DEFAULT_SIZES = (
    SizeSpec("thumbnail", 150, 150, cover=True),
    SizeSpec("small", 400, 400),
    SizeSpec("medium", 800, 800),
    SizeSpec("large", 1200, 1200),
)

CONTENT_TYPES = {
    "jpeg": "image/jpeg",
    "png": "image/png",
    "webp": "image/webp",
    "gif": "image/gif",
    "bmp": "image/bmp",
    "tiff": "image/tiff",
}


@dataclass
class ImageInfo:
    """Decoded properties of a source image."""
    width: int
    height: int
    format: str
    size_bytes: int
    mode: str = "RGB"
    has_alpha: bool = False


@dataclass
class Derivative:
    """One encoded rendition of an image."""
    name: str
    data: bytes
    width: int
    height: int
    format: str

    @property
    def size_bytes(self) -> int:
        return len(self.data)

    @property
    def content_type(self) -> str:
        return CONTENT_TYPES.get(self.format, "application/octet-stream")

    @property
    def extension(self) -> str:
        return "jpg" if self.format == "jpeg" else self.format


@dataclass
class DerivativeSet:
    """Source image info plus every derivative that could be produced."""
    info: ImageInfo
    derivatives: dict[str, Derivative] = field(default_factory=dict)
    failures: dict[str, str] = field(default_factory=dict)

    @property
    def primary(self) -> Derivative:
        for name in ("large", "original"):
            if name in self.derivatives:
                return self.derivatives[name]
        return next(iter(self.derivatives.values()))


def _open(data: bytes) -> Image.Image:
    try:
        img = Image.open(io.BytesIO(data))
        img.load()
    except (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError) as e:
        raise ProcessingFailed(f"Cannot decode image: {e}") from e
    return img


def probe_image(data: bytes) -> ImageInfo:
    """Decode just enough of an image to describe it.

    Raises:
        ProcessingFailed: If the bytes are not a readable image
    """
    img = _open(data)
    return ImageInfo(
        width=img.width,
        height=img.height,
        format=(img.format or "").lower(),
        size_bytes=len(data),
        mode=img.mode,
        has_alpha="A" in img.getbands() or "transparency" in img.info,
    )


class DerivativeGenerator:
    """Produces thumbnail/small/medium/large WebP renditions and keeps the original.

    Fit-inside sizes never enlarge; the thumbnail is center-cropped to fill its box.
    Individual size failures are logged and skipped, but at least one
    derivative must be produced.
    """

    def __init__(self, sizes: tuple[SizeSpec, ...] = DEFAULT_SIZES, quality: int = WEBP_QUALITY,
                 min_dimension: int = MIN_DIMENSION, max_bytes: int = MAX_INPUT_BYTES, keep_original: bool = True):
        self.sizes = sizes
        self.quality = quality
        self.min_dimension = min_dimension
        self.max_bytes = max_bytes
        self.keep_original = keep_original

    def generate(self, data: bytes) -> DerivativeSet:
        if not data:
            raise ProcessingFailed("Empty image data")
        if len(data) > self.max_bytes:
            raise ProcessingFailed(f"Image too large: {len(data)} bytes (max {self.max_bytes})")

        img = _open(data)
        source_format = (img.format or "").lower()
        img = ImageOps.exif_transpose(img)

        if img.width < self.min_dimension or img.height < self.min_dimension:
            raise ProcessingFailed(
                f"Image too small: {img.width}x{img.height} (min {self.min_dimension}x{self.min_dimension})"
            )

        info = ImageInfo(
            width=img.width,
            height=img.height,
            format=source_format,
            size_bytes=len(data),
            mode=img.mode,
            has_alpha="A" in img.getbands() or "transparency" in img.info,
        )
        result = DerivativeSet(info=info)
        base = self._prepare(img, info.has_alpha)

        for spec in self.sizes:
            try:
                result.derivatives[spec.name] = self._render(base, spec)
            except (OSError, ValueError) as e:
                LOGGER.warning(f"Failed to generate {spec.name} derivative: {e}")
                result.failures[spec.name] = str(e)

        if self.keep_original:
            result.derivatives["original"] = Derivative(
                name="original", data=data, width=info.width, height=info.height, format=source_format or "jpeg"
            )

        if not result.derivatives:
            raise ProcessingFailed(f"No derivative could be generated: {result.failures}")
        return result

    def _prepare(self, img: Image.Image, has_alpha: bool) -> Image.Image:
        target_mode = "RGBA" if has_alpha else "RGB"
        if img.mode != target_mode:
            img = img.convert(target_mode)
        return img

    def _render(self, img: Image.Image, spec: SizeSpec) -> Derivative:
        if spec.cover:
            resized = ImageOps.fit(img, (spec.width, spec.height), method=Image.LANCZOS)
        else:
            resized = img.copy()
            resized.thumbnail((spec.width, spec.height), Image.LANCZOS)

        buffer = io.BytesIO()
        resized.save(buffer, format="WEBP", quality=self.quality)
        return Derivative(
            name=spec.name, data=buffer.getvalue(), width=resized.width, height=resized.height, format="webp"
        )
