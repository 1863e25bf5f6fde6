"""Tests for quality scoring."""

import io
from unittest.mock import patch

import numpy as np
import pytest
from PIL import Image

from vocabimages.processing.derivatives import ImageInfo
from vocabimages.quality.scorer import (
    DEFAULT_WEIGHTS,
    QualityScorer,
    ScoringContext,
    neutral_score,
    score_aspect_ratio,
    score_file_size,
    score_format,
    score_resolution,
    score_text_relevance,
)


def _noise_jpeg(width, height, seed=0):
    rng = np.random.default_rng(seed)
    pixels = rng.integers(0, 256, size=(height, width, 3), dtype=np.uint8)
    buffer = io.BytesIO()
    Image.fromarray(pixels).save(buffer, format="JPEG", quality=90)
    return buffer.getvalue()


def _solid_png(width, height):
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), color=(200, 30, 30)).save(buffer, format="PNG")
    return buffer.getvalue()


def test_resolution_buckets():
    assert score_resolution(300, 300) == 3.0
    assert score_resolution(400, 400) == 6.0
    assert score_resolution(1000, 1000) == 8.0
    assert score_resolution(1200, 1200) == 9.0


def test_aspect_ratio_buckets():
    assert score_aspect_ratio(800, 800) == 9.0
    assert score_aspect_ratio(1600, 1000) == 7.0
    assert score_aspect_ratio(3000, 1000) == 4.0
    assert score_aspect_ratio(100, 0) == 4.0


def test_format_scores():
    assert score_format("jpeg") == 9.0
    assert score_format("JPG") == 9.0
    assert score_format("webp") == 9.0
    assert score_format("png") == 8.0
    assert score_format("bmp") == 6.0
    assert score_format("gif") == 4.0


def test_file_size_scores_bytes_per_pixel():
    assert score_file_size(100, 100, 100) == 5.0
    assert score_file_size(10_000, 100, 100) == 9.0
    assert score_file_size(30_000, 100, 100) == 7.0
    assert score_file_size(60_000, 100, 100) == 4.0


def test_text_relevance():
    assert score_text_relevance(None, "apple") == 5.0
    assert score_text_relevance("   ", "apple") == 5.0
    assert score_text_relevance("A red apple on a table", "apple") == 9.0
    assert score_text_relevance("red_apple_01.jpg", "red apple") == 9.0
    assert score_text_relevance("apple pie", "red apple") == 6.0
    assert score_text_relevance("a banana", "red apple") == 4.0


def test_score_components_in_range_and_reconstruct_overall():
    data = _noise_jpeg(640, 480)
    scorer = QualityScorer()
    context = ScoringContext(item_name="apple", category="fruits", filename="apple.jpg", tags=["apple", "fruit"])

    score = scorer.score(data, None, context)

    for value in (score.overall, *score.breakdown.values()):
        assert 0.0 <= value <= 10.0
    weighted = sum(score.breakdown[k] * w for k, w in DEFAULT_WEIGHTS.items())
    assert score.overall == pytest.approx(weighted, abs=0.01)
    assert score.weights == DEFAULT_WEIGHTS
    assert score.details["width"] == 640
    assert score.details["relevance"]["matched_terms"] == ["apple"]


def test_relevance_neutral_without_metadata():
    data = _noise_jpeg(400, 400)
    score = QualityScorer().score(data, None, ScoringContext(item_name="apple"))

    assert score.relevance == 5.0


def test_visually_empty_image_loses_aesthetic_points():
    data = _solid_png(800, 800)
    score = QualityScorer().score(data, None, ScoringContext(item_name="apple"))

    assert score.aesthetic == 5.0
    assert score.details["aesthetic"]["visually_empty"] is True


def test_uses_supplied_info():
    data = _noise_jpeg(400, 400)
    info = ImageInfo(width=1600, height=1200, format="jpeg", size_bytes=len(data))

    score = QualityScorer().score(data, info, ScoringContext(item_name="apple"))

    assert score.details["width"] == 1600
    assert score.details["technical"]["resolution"] == 9.0


def test_failed_component_defaults_to_neutral():
    data = _noise_jpeg(400, 400)
    with patch("vocabimages.quality.scorer.score_resolution", side_effect=RuntimeError("boom")):
        score = QualityScorer().score(data, None, ScoringContext(item_name="apple"))

    assert score.technical == 5.0
    assert 0.0 <= score.overall <= 10.0


def test_weights_must_sum_to_one():
    with pytest.raises(ValueError):
        QualityScorer(weights={"technical": 0.5, "relevance": 0.5, "aesthetic": 0.5, "usability": 0.5})
    with pytest.raises(ValueError):
        QualityScorer(weights={"technical": 1.0})


def test_neutral_score():
    score = neutral_score(reason="decode error")

    assert score.overall == 5.0
    assert score.details["error"] == "decode error"
