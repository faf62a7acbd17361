"""Unit tests for the image validator and its raw header walkers."""

import io
import os

import pytest
from PIL import Image

from conftest import make_png
from uploadguard.models.findings import FindingKind
from uploadguard.models.policy import ResourceLimits
from uploadguard.validators.image import (
    ImageValidator,
    find_format_end,
    has_trailer_walker,
    read_declared_dimensions,
)


def kinds(outcome):
    return [f.kind for f in outcome.findings]


def encode(fmt: str, size=(20, 10)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", size, "blue").save(buffer, format=fmt)
    return buffer.getvalue()


def animated_gif(frame_count: int) -> bytes:
    frames = [Image.new("L", (8, 8), (index * 37) % 256) for index in range(frame_count)]
    buffer = io.BytesIO()
    frames[0].save(buffer, format="GIF", save_all=True, append_images=frames[1:], duration=20, loop=0)
    return buffer.getvalue()


@pytest.fixture
def validator() -> ImageValidator:
    return ImageValidator()


class TestHeaderWalkers:
    @pytest.mark.parametrize("fmt", ["PNG", "GIF", "BMP", "JPEG"])
    def test_declared_dimensions(self, fmt: str) -> None:
        assert read_declared_dimensions(encode(fmt)) == (20, 10)

    @pytest.mark.parametrize("fmt", ["PNG", "GIF", "BMP", "JPEG"])
    def test_format_end_is_file_end(self, fmt: str) -> None:
        data = encode(fmt)
        assert find_format_end(data) == len(data)

    def test_unknown_format(self) -> None:
        assert read_declared_dimensions(b"hello") is None
        assert find_format_end(b"hello") is None


class TestImageValidator:
    def test_clean_png(self, validator, limits) -> None:
        outcome = validator.validate(make_png(), limits)
        assert outcome.findings == ()

    def test_appended_random_payload(self, validator) -> None:
        png = make_png()
        data = png + os.urandom(16384)
        outcome = validator.validate(data, ResourceLimits(entropy_threshold=7.5))
        appended = [f for f in outcome.findings if f.kind == FindingKind.APPENDED_DATA]
        assert appended and appended[0].offset == len(png)
        regions = [f for f in outcome.findings if f.kind == FindingKind.HIGH_ENTROPY_REGION]
        # Adjacent high-entropy windows merge into a single region
        assert len(regions) == 1

    def test_oversized_dimensions(self, validator) -> None:
        outcome = validator.validate(make_png((16, 16)), ResourceLimits(max_image_pixels=100))
        assert FindingKind.OVERSIZED_DIMENSIONS in kinds(outcome)

    def test_file_larger_than_any_encoding(self, validator, limits) -> None:
        data = make_png((1, 1)) + b"\x00" * (80 * 1024)
        outcome = validator.validate(data, limits)
        assert FindingKind.DIMENSION_SIZE_MISMATCH in kinds(outcome)
        assert FindingKind.APPENDED_DATA in kinds(outcome)

    def test_garbage_after_signature_is_inconclusive(self, validator, limits) -> None:
        outcome = validator.validate(b"\x89PNG\r\n\x1a\n" + b"\x00" * 20, limits)
        assert FindingKind.MALFORMED_STRUCTURE in kinds(outcome)
        assert outcome.inconclusive

    def test_truncated_png(self, validator, limits) -> None:
        data = make_png((64, 64))
        outcome = validator.validate(data[:-12], limits)
        assert FindingKind.MALFORMED_STRUCTURE in kinds(outcome)

    @pytest.mark.parametrize("fmt", ["TIFF", "ICO"])
    def test_formats_without_trailer_are_clean(self, validator, limits, fmt: str) -> None:
        data = encode(fmt, size=(16, 16))
        assert not has_trailer_walker(data)
        outcome = validator.validate(data, limits)
        assert FindingKind.MALFORMED_STRUCTURE not in kinds(outcome)


class TestFrameCeiling:
    def test_animation_over_frame_limit(self, validator) -> None:
        outcome = validator.validate(animated_gif(6), ResourceLimits(max_image_frames=3))
        frame_findings = [f for f in outcome.findings if f.detail and "frames" in f.detail]
        assert len(frame_findings) == 1
        assert frame_findings[0].kind == FindingKind.OVERSIZED_DIMENSIONS

    def test_animation_within_frame_limit(self, validator) -> None:
        outcome = validator.validate(animated_gif(6), ResourceLimits(max_image_frames=10))
        assert not [f for f in outcome.findings if f.detail and "frames" in f.detail]

    def test_still_image_counts_as_one_frame(self, validator) -> None:
        outcome = validator.validate(make_png(), ResourceLimits(max_image_frames=1))
        assert outcome.findings == ()
