"""
Image structural validator

- Pillow ``verify()`` for container integrity (no full pixel decode)
- dimensions parsed straight from the raw header (PNG IHDR, GIF screen
  descriptor, BMP info header, JPEG SOFn) and compared with Pillow's view
- pixel-count ceiling and a file-size vs. uncompressed-size plausibility check
- bytes after the format trailer (PNG IEND, JPEG EOI, GIF trailer, BMP/WebP
  declared length)
- frame count of animated containers against a ceiling
- sliding-window entropy for candidate hidden payloads
"""

import io
import struct
import warnings
from typing import Optional, Tuple

from PIL import Image, ImageSequence, UnidentifiedImageError

from uploadguard.models.findings import FindingKind, Severity
from uploadguard.models.policy import ResourceLimits
from uploadguard.services.file_entropy import FileEntropyService
from uploadguard.utils.logger import get_logger
from uploadguard.validators.base import BaseValidator, FindingCollector, ValidationBudget

logger = get_logger(__name__)

PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"
# 16-bit RGBA is the widest common pixel layout
MAX_BYTES_PER_PIXEL = 8
# Headers, palettes, ICC profiles and metadata
CONTAINER_SLACK_BYTES = 64 * 1024
JPEG_SOF_MARKERS = frozenset(range(0xC0, 0xD0)) - {0xC4, 0xC8, 0xCC}

Dimensions = Tuple[int, int]


def read_declared_dimensions(data: bytes) -> Optional[Dimensions]:
    """Width and height as declared by the raw header, or None when unparseable."""
    try:
        if data.startswith(PNG_SIGNATURE) and data[12:16] == b"IHDR":
            return struct.unpack(">II", data[16:24])
        if data[:6] in (b"GIF87a", b"GIF89a"):
            return struct.unpack("<HH", data[6:10])
        if data.startswith(b"BM"):
            dib_size = struct.unpack("<I", data[14:18])[0]
            if dib_size == 12:
                return struct.unpack("<HH", data[18:22])
            width, height = struct.unpack("<ii", data[18:26])
            return abs(width), abs(height)
        if data.startswith(b"\xff\xd8"):
            return _jpeg_dimensions(data)
    except struct.error:
        return None
    return None


def _jpeg_dimensions(data: bytes) -> Optional[Dimensions]:
    pos = 2
    while pos + 4 <= len(data):
        if data[pos] != 0xFF:
            return None
        marker = data[pos + 1]
        if marker == 0xFF:
            pos += 1
            continue
        if marker in (0xD8, 0x01) or 0xD0 <= marker <= 0xD7:
            pos += 2
            continue
        length = struct.unpack(">H", data[pos + 2:pos + 4])[0]
        if marker in JPEG_SOF_MARKERS:
            height, width = struct.unpack(">HH", data[pos + 5:pos + 9])
            return width, height
        if marker in (0xDA, 0xD9):
            return None
        pos += 2 + length
    return None


def has_trailer_walker(data: bytes) -> bool:
    """True for formats whose logical end can be located; TIFF and ICO have none."""
    return (
        data.startswith((PNG_SIGNATURE, b"\xff\xd8", b"BM"))
        or data[:6] in (b"GIF87a", b"GIF89a")
        or (data.startswith(b"RIFF") and data[8:12] == b"WEBP")
    )


def find_format_end(data: bytes) -> Optional[int]:
    """
    Offset just past the format's logical end (trailer), or None when the
    structure cannot be walked (unknown format or truncated).
    """
    try:
        if data.startswith(PNG_SIGNATURE):
            return _png_end(data)
        if data[:6] in (b"GIF87a", b"GIF89a"):
            return _gif_end(data)
        if data.startswith(b"\xff\xd8"):
            return _jpeg_end(data)
        if data.startswith(b"BM"):
            declared = struct.unpack("<I", data[2:6])[0]
            return declared if 0 < declared <= len(data) else None
        if data.startswith(b"RIFF") and data[8:12] == b"WEBP":
            declared = struct.unpack("<I", data[4:8])[0] + 8
            declared += declared % 2
            return declared if declared <= len(data) else None
    except (struct.error, IndexError):
        return None
    return None


def _png_end(data: bytes) -> Optional[int]:
    pos = len(PNG_SIGNATURE)
    while pos + 12 <= len(data):
        length = struct.unpack(">I", data[pos:pos + 4])[0]
        chunk_type = data[pos + 4:pos + 8]
        pos += 12 + length
        if chunk_type == b"IEND":
            return pos if pos <= len(data) else None
    return None


def _gif_end(data: bytes) -> Optional[int]:
    flags = data[10]
    pos = 13
    if flags & 0x80:
        pos += 3 * (2 ** ((flags & 0x07) + 1))
    while pos < len(data):
        block = data[pos]
        if block == 0x3B:
            return pos + 1
        if block == 0x21:
            pos = _skip_gif_sub_blocks(data, pos + 2)
        elif block == 0x2C:
            local_flags = data[pos + 9]
            pos += 10
            if local_flags & 0x80:
                pos += 3 * (2 ** ((local_flags & 0x07) + 1))
            pos = _skip_gif_sub_blocks(data, pos + 1)
        else:
            return None
    return None


def _skip_gif_sub_blocks(data: bytes, pos: int) -> int:
    while True:
        size = data[pos]
        pos += 1
        if size == 0:
            return pos
        pos += size


def _jpeg_end(data: bytes) -> Optional[int]:
    pos = 2
    while pos + 2 <= len(data):
        if data[pos] != 0xFF:
            return None
        marker = data[pos + 1]
        if marker == 0xFF:
            pos += 1
            continue
        if marker == 0xD9:
            return pos + 2
        if 0xD0 <= marker <= 0xD7 or marker == 0x01:
            pos += 2
            continue
        length = struct.unpack(">H", data[pos + 2:pos + 4])[0]
        pos += 2 + length
        if marker == 0xDA:
            pos = _skip_entropy_coded(data, pos)
            if pos < 0:
                return None
    return None


def _skip_entropy_coded(data: bytes, pos: int) -> int:
    """Advance to the next real marker; stuffed 0xFF00 and RSTn are scan data."""
    while True:
        pos = data.find(b"\xff", pos)
        if pos < 0 or pos + 1 >= len(data):
            return -1
        following = data[pos + 1]
        if following == 0x00 or 0xD0 <= following <= 0xD7 or following == 0xFF:
            pos += 1
            continue
        return pos


class ImageValidator(BaseValidator):
    name = "image"

    def __init__(self, entropy_service: Optional[FileEntropyService] = None) -> None:
        self.entropy_service = entropy_service or FileEntropyService()

    def inspect(
        self,
        data: bytes,
        limits: ResourceLimits,
        budget: ValidationBudget,
        collector: FindingCollector,
    ) -> None:
        if not budget.charge(len(data)):
            return

        declared = read_declared_dimensions(data)
        pillow_size = self._verify_with_pillow(data, declared, collector)
        if declared is None and pillow_size is None:
            self.inconclusive(collector, "image header could not be parsed")
            return

        if declared is not None and pillow_size is not None and declared != tuple(pillow_size):
            collector.emit(
                FindingKind.HEADER_MISMATCH,
                Severity.HIGH,
                f"header declares {declared[0]}x{declared[1]}, decoder reports "
                f"{pillow_size[0]}x{pillow_size[1]}",
            )

        width, height = declared if declared is not None else pillow_size
        pixels = width * height
        if pixels > limits.max_image_pixels:
            collector.emit(
                FindingKind.OVERSIZED_DIMENSIONS,
                Severity.MEDIUM,
                f"{width}x{height} ({pixels} pixels) exceeds limit {limits.max_image_pixels}",
            )

        upper_bound = pixels * MAX_BYTES_PER_PIXEL + CONTAINER_SLACK_BYTES
        if len(data) > upper_bound:
            collector.emit(
                FindingKind.DIMENSION_SIZE_MISMATCH,
                Severity.MEDIUM,
                f"{len(data)} bytes is larger than any {width}x{height} encoding ({upper_bound} bytes)",
            )

        if pillow_size is not None:
            frames = self._count_frames(data, limits, budget)
            if frames is not None and frames > limits.max_image_frames:
                collector.emit(
                    FindingKind.OVERSIZED_DIMENSIONS,
                    Severity.MEDIUM,
                    f"more than {limits.max_image_frames} frames (stopped counting at {frames})",
                )
            if budget.exhausted:
                return

        end = find_format_end(data)
        if end is None:
            if has_trailer_walker(data) and not collector.has(FindingKind.MALFORMED_STRUCTURE):
                collector.emit(
                    FindingKind.MALFORMED_STRUCTURE,
                    Severity.LOW,
                    "could not locate the image trailer",
                )
        elif end < len(data):
            collector.emit(
                FindingKind.APPENDED_DATA,
                Severity.MEDIUM,
                f"{len(data) - end} bytes follow the image trailer",
                offset=end,
            )

        if budget.expired():
            return
        regions = self.entropy_service.high_entropy_regions(
            data,
            threshold=limits.entropy_threshold,
            window=limits.entropy_window,
            checkpoint=budget.charge,
        )
        for region in regions:
            collector.emit(
                FindingKind.HIGH_ENTROPY_REGION,
                Severity.LOW,
                f"{region['length']} bytes with entropy up to {region['max_entropy']:.3f} bits/byte",
                offset=region["offset"],
            )

    def _verify_with_pillow(
        self,
        data: bytes,
        declared: Optional[Dimensions],
        collector: FindingCollector,
    ) -> Optional[Tuple[int, int]]:
        try:
            with warnings.catch_warnings():
                warnings.simplefilter("ignore", Image.DecompressionBombWarning)
                with Image.open(io.BytesIO(data)) as img:
                    size = img.size
                    img.verify()
            return size
        except Image.DecompressionBombError as exc:
            # Our own pixel ceiling reports this from the declared header
            logger.debug("Pillow refused oversized image: %s", exc)
            if declared is None:
                collector.emit(FindingKind.OVERSIZED_DIMENSIONS, Severity.MEDIUM, str(exc))
            return None
        except UnidentifiedImageError as exc:
            collector.emit(FindingKind.MALFORMED_STRUCTURE, Severity.MEDIUM, f"unrecognised image container: {exc}")
        except (OSError, SyntaxError, ValueError, struct.error, EOFError, IndexError) as exc:
            collector.emit(FindingKind.MALFORMED_STRUCTURE, Severity.MEDIUM, f"image failed verification: {exc}")
        return None

    def _count_frames(self, data: bytes, limits: ResourceLimits, budget: ValidationBudget) -> Optional[int]:
        """
        Count frames of an animated container, stopping one past the limit
        or at the deadline. Still images count as one frame.
        """
        try:
            with warnings.catch_warnings():
                warnings.simplefilter("ignore", Image.DecompressionBombWarning)
                with Image.open(io.BytesIO(data)) as img:
                    if not getattr(img, "is_animated", False):
                        return 1
                    count = 0
                    for _ in ImageSequence.Iterator(img):
                        count += 1
                        if count > limits.max_image_frames or budget.expired():
                            break
                    return count
        except (
            Image.DecompressionBombError, OSError, SyntaxError, ValueError, struct.error, EOFError, IndexError
        ) as exc:
            logger.debug("Frame walk stopped early: %s", exc)
            return None
