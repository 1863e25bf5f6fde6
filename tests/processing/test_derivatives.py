"""Tests for derivative generation."""

import io
from unittest.mock import patch

import pytest
from PIL import Image

from vocabimages.errors import ProcessingFailed
from vocabimages.processing.derivatives import DerivativeGenerator, probe_image


def _image_bytes(width, height, fmt="JPEG", mode="RGB"):
    color = (10, 120, 200, 128) if mode == "RGBA" else (10, 120, 200)
    buffer = io.BytesIO()
    Image.new(mode, (width, height), color=color).save(buffer, format=fmt)
    return buffer.getvalue()


def _decode(data):
    with Image.open(io.BytesIO(data)) as img:
        return img.format, img.size


def test_generates_all_sizes():
    data = _image_bytes(1600, 1200)

    result = DerivativeGenerator().generate(data)

    sizes = {name: (d.width, d.height) for name, d in result.derivatives.items()}
    assert sizes == {
        "thumbnail": (150, 150),
        "small": (400, 300),
        "medium": (800, 600),
        "large": (1200, 900),
        "original": (1600, 1200),
    }
    assert _decode(result.derivatives["medium"].data) == ("WEBP", (800, 600))
    assert result.derivatives["original"].data == data
    assert result.info.format == "jpeg"
    assert result.primary.name == "large"


def test_does_not_enlarge_small_images():
    result = DerivativeGenerator().generate(_image_bytes(300, 200))

    assert (result.derivatives["large"].width, result.derivatives["large"].height) == (300, 200)
    assert (result.derivatives["small"].width, result.derivatives["small"].height) == (300, 200)
    assert (result.derivatives["thumbnail"].width, result.derivatives["thumbnail"].height) == (150, 150)


def test_keeps_alpha_channel():
    result = DerivativeGenerator().generate(_image_bytes(500, 500, fmt="PNG", mode="RGBA"))

    assert result.info.has_alpha is True
    with Image.open(io.BytesIO(result.derivatives["small"].data)) as img:
        assert img.mode == "RGBA"


def test_content_type_and_extension():
    result = DerivativeGenerator().generate(_image_bytes(400, 400))

    assert result.derivatives["small"].content_type == "image/webp"
    assert result.derivatives["small"].extension == "webp"
    assert result.derivatives["original"].content_type == "image/jpeg"
    assert result.derivatives["original"].extension == "jpg"


def test_rejects_tiny_images():
    with pytest.raises(ProcessingFailed, match="too small"):
        DerivativeGenerator().generate(_image_bytes(80, 300))


def test_rejects_undecodable_data():
    with pytest.raises(ProcessingFailed):
        DerivativeGenerator().generate(b"definitely not an image")
    with pytest.raises(ProcessingFailed):
        DerivativeGenerator().generate(b"")


def test_rejects_oversized_input():
    with pytest.raises(ProcessingFailed, match="too large"):
        DerivativeGenerator(max_bytes=100).generate(_image_bytes(400, 400))


def test_single_size_failure_is_skipped():
    generator = DerivativeGenerator()
    original_render = generator._render

    def flaky(img, spec):
        if spec.name == "medium":
            raise OSError("encoder crashed")
        return original_render(img, spec)

    with patch.object(generator, "_render", side_effect=flaky):
        result = generator.generate(_image_bytes(1000, 1000))

    assert "medium" not in result.derivatives
    assert "large" in result.derivatives
    assert result.failures == {"medium": "encoder crashed"}


def test_all_sizes_failing_raises():
    generator = DerivativeGenerator(keep_original=False)

    with patch.object(generator, "_render", side_effect=OSError("no encoder")):
        with pytest.raises(ProcessingFailed):
            generator.generate(_image_bytes(400, 400))


def test_probe_image():
    data = _image_bytes(640, 480, fmt="PNG")

    info = probe_image(data)

    assert (info.width, info.height, info.format, info.size_bytes) == (640, 480, "png", len(data))
