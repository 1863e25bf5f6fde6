"""Weighted quality scoring for candidate images.

Four components, each on a 0-10 scale, are combined into an overall score:

* technical: resolution, aspect ratio, encoding format and compression
* relevance: how well filename, source tags and description match the item
* aesthetic: a baseline adjusted for framing, size and visual emptiness
* usability: fitness for web display and for teaching material
"""

import io
import math
import re
from dataclasses import dataclass, field
from typing import Callable, Optional

import numpy as np
from PIL import Image

from vocabimages.catalog.models import QualityScore
from vocabimages.processing.derivatives import ImageInfo, probe_image
from vocabimages.utils.logger import logger as LOGGER

DEFAULT_WEIGHTS = {"technical": 0.35, "relevance": 0.25, "aesthetic": 0.20, "usability": 0.20}
NEUTRAL_SCORE = 5.0

# Educational value per category. Unknown categories use the default.
EDUCATIONAL_VALUE = {"default": 8.0}


@dataclass
class ScoringContext:
    """What the image is supposed to show and what the source said about it."""
    item_name: str
    category: str = ""
    filename: str = ""
    tags: list[str] = field(default_factory=list)
    description: Optional[str] = None
    source_id: Optional[str] = None


def _clamp(value) -> float:
    try:
        value = float(value)
    except (TypeError, ValueError):
        return NEUTRAL_SCORE
    if math.isnan(value) or math.isinf(value):
        return NEUTRAL_SCORE
    return round(min(10.0, max(0.0, value)), 2)


def neutral_score(weights: Optional[dict[str, float]] = None, reason: str = "") -> QualityScore:
    """Score used when an image could not be assessed at all."""
    return QualityScore(
        overall=NEUTRAL_SCORE,
        technical=NEUTRAL_SCORE,
        relevance=NEUTRAL_SCORE,
        aesthetic=NEUTRAL_SCORE,
        usability=NEUTRAL_SCORE,
        weights=dict(weights or DEFAULT_WEIGHTS),
        details={"error": reason} if reason else {},
        notes=["Default score, assessment failed"],
    )


def _normalize_format(fmt: Optional[str]) -> str:
    fmt = (fmt or "").lower()
    return "jpeg" if fmt == "jpg" else fmt


def score_resolution(width: int, height: int) -> float:
    pixels = width * height
    if pixels < 160_000:
        return 3.0
    if pixels < 640_000:
        return 6.0
    if pixels < 1_440_000:
        return 8.0
    return 9.0


def score_aspect_ratio(width: int, height: int) -> float:
    if height <= 0:
        return 4.0
    ratio = width / height
    if 0.75 <= ratio <= 1.33:
        return 9.0
    if 0.5 <= ratio <= 2.0:
        return 7.0
    return 4.0


def score_format(fmt: str) -> float:
    fmt = _normalize_format(fmt)
    if fmt in ("webp", "jpeg"):
        return 9.0
    if fmt == "png":
        return 8.0
    if fmt in ("tiff", "bmp"):
        return 6.0
    return 4.0


def score_file_size(size_bytes: int, width: int, height: int) -> float:
    """Score compression by bytes per pixel."""
    pixels = width * height
    if pixels <= 0:
        return 4.0
    bytes_per_pixel = size_bytes / pixels
    if bytes_per_pixel < 0.5:
        return 5.0
    if bytes_per_pixel < 2.0:
        return 9.0
    if bytes_per_pixel < 5.0:
        return 7.0
    return 4.0


def _words(text: str) -> list[str]:
    return [w for w in re.split(r"[^a-z0-9]+", text.lower()) if len(w) > 2]


def score_text_relevance(text: Optional[str], item_name: str) -> float:
    """Score how well free text refers to the item.

    Missing text is neutral. Containing the full item name scores 9; otherwise
    the share of item words (longer than two characters) found in the text is
    mapped onto 4..8.
    """
    if not text or not text.strip():
        return NEUTRAL_SCORE

    haystack = text.lower().replace("_", " ").replace("-", " ")
    needle = item_name.lower().strip()
    if needle and needle in haystack:
        return 9.0

    item_words = _words(item_name)
    if not item_words:
        return 4.0
    text_words = set(_words(haystack))
    matched = sum(1 for w in item_words if w in text_words)
    return 4.0 + 4.0 * matched / len(item_words)


def find_relevant_terms(text: Optional[str], item_name: str) -> list[str]:
    if not text:
        return []
    text_words = set(_words(text))
    return [w for w in _words(item_name) if w in text_words]


def pixel_statistics(image_bytes: bytes) -> dict:
    """Brightness, contrast and colorfulness of a downsampled copy of the image."""
    with Image.open(io.BytesIO(image_bytes)) as img:
        img = img.convert("RGB")
        img.thumbnail((256, 256))
        rgb = np.asarray(img, dtype=np.float32)

    gray = rgb @ np.array([0.299, 0.587, 0.114], dtype=np.float32)
    rg = rgb[..., 0] - rgb[..., 1]
    yb = 0.5 * (rgb[..., 0] + rgb[..., 1]) - rgb[..., 2]
    colorfulness = math.sqrt(float(rg.std()) ** 2 + float(yb.std()) ** 2) + 0.3 * math.sqrt(
        float(rg.mean()) ** 2 + float(yb.mean()) ** 2
    )

    return {
        "brightness": round(float(gray.mean()), 2),
        "contrast": round(float(gray.std()), 2),
        "colorfulness": round(colorfulness, 2),
    }


class QualityScorer:
    """Scores images on a 0-10 scale.

    Args:
        weights: Component weights, must sum to 1.0
        educational_value: Per-category usability constants
    """

    def __init__(self, weights: Optional[dict[str, float]] = None, educational_value: Optional[dict] = None):
        self.weights = dict(weights or DEFAULT_WEIGHTS)
        if set(self.weights) != set(DEFAULT_WEIGHTS):
            raise ValueError(f"Weights must cover exactly {sorted(DEFAULT_WEIGHTS)}")
        if abs(sum(self.weights.values()) - 1.0) > 1e-6:
            raise ValueError(f"Weights must sum to 1.0, got {sum(self.weights.values())}")
        self.educational_value = dict(educational_value or EDUCATIONAL_VALUE)

    def score(self, image_bytes: bytes, info: Optional[ImageInfo], context: ScoringContext) -> QualityScore:
        """Score an image.

        Args:
            image_bytes: Encoded image as downloaded
            info: Decoded dimensions and format, probed from the bytes when None
            context: Item and source metadata used for relevance

        Returns:
            QualityScore with components and overall rounded to two decimals.
            A component that cannot be computed falls back to the neutral 5.0.
        """
        if info is None:
            info = probe_image(image_bytes)

        details: dict = {
            "width": info.width,
            "height": info.height,
            "format": _normalize_format(info.format),
            "size_bytes": info.size_bytes,
        }
        notes: list[str] = []

        try:
            details.update(pixel_statistics(image_bytes))
        except Exception as e:
            LOGGER.warning(f"Pixel statistics unavailable for {context.item_name}: {e}")

        technical = self._component("technical", self._technical, info, details, notes)
        relevance = self._component("relevance", self._relevance, context, details, notes)
        aesthetic = self._component("aesthetic", self._aesthetic, info, details, notes)
        usability = self._component("usability", self._usability, info, context, details)

        overall = _clamp(
            technical * self.weights["technical"]
            + relevance * self.weights["relevance"]
            + aesthetic * self.weights["aesthetic"]
            + usability * self.weights["usability"]
        )

        return QualityScore(
            overall=overall,
            technical=technical,
            relevance=relevance,
            aesthetic=aesthetic,
            usability=usability,
            weights=dict(self.weights),
            details=details,
            notes=notes,
        )

    def _component(self, name: str, func: Callable[..., float], *args) -> float:
        try:
            return _clamp(func(*args))
        except Exception as e:
            LOGGER.warning(f"{name} scoring failed, using neutral score: {e}")
            return NEUTRAL_SCORE

    def _technical(self, info: ImageInfo, details: dict, notes: list[str]) -> float:
        resolution = score_resolution(info.width, info.height)
        aspect = score_aspect_ratio(info.width, info.height)
        fmt = score_format(info.format)
        size = score_file_size(info.size_bytes, info.width, info.height)
        details["technical"] = {"resolution": resolution, "aspect_ratio": aspect, "format": fmt, "file_size": size}

        if resolution <= 3.0:
            notes.append(f"Low resolution ({info.width}x{info.height})")
        if aspect <= 4.0:
            notes.append("Extreme aspect ratio")
        return 0.4 * resolution + 0.2 * aspect + 0.2 * fmt + 0.2 * size

    def _relevance(self, context: ScoringContext, details: dict, notes: list[str]) -> float:
        filename = score_text_relevance(context.filename, context.item_name)
        tags = score_text_relevance(" ".join(context.tags), context.item_name) if context.tags else NEUTRAL_SCORE
        description = score_text_relevance(context.description, context.item_name)

        matched = set(find_relevant_terms(context.filename, context.item_name))
        matched.update(find_relevant_terms(" ".join(context.tags), context.item_name))
        matched.update(find_relevant_terms(context.description, context.item_name))
        details["relevance"] = {
            "filename": filename,
            "tags": tags,
            "description": description,
            "matched_terms": sorted(matched),
        }

        if tags >= 9.0:
            notes.append(f"Tagged as '{context.item_name}'")
        return 0.3 * filename + 0.4 * tags + 0.3 * description

    def _aesthetic(self, info: ImageInfo, details: dict, notes: list[str]) -> float:
        good_ratio = info.height > 0 and 0.75 <= info.width / info.height <= 1.33
        decent_resolution = info.width >= 400 and info.height >= 400
        score = 7.0
        if not good_ratio:
            score -= 1.0
        if not decent_resolution:
            score -= 1.0

        contrast = details.get("contrast")
        empty = contrast is not None and contrast < 2.0
        if empty:
            score -= 2.0
            notes.append("Image appears visually empty")

        details["aesthetic"] = {
            "has_good_aspect_ratio": good_ratio,
            "has_decent_resolution": decent_resolution,
            "visually_empty": empty,
        }
        return score

    def _usability(self, info: ImageInfo, context: ScoringContext, details: dict) -> float:
        if 400 <= info.width <= 2000 and 400 <= info.height <= 2000:
            web = 9.0
        elif info.width >= 200 and info.height >= 200:
            web = 7.0
        else:
            web = 4.0

        fmt = _normalize_format(info.format)
        if fmt in ("webp", "jpeg"):
            format_fitness = 9.0
        elif fmt == "png":
            format_fitness = 8.0
        else:
            format_fitness = 6.0

        educational = self.educational_value.get(
            (context.category or "").lower(), self.educational_value.get("default", 8.0)
        )
        details["usability"] = {"web": web, "format": format_fitness, "educational": educational}
        return 0.4 * web + 0.3 * format_fitness + 0.3 * educational
