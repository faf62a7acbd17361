"""
MIME Sniffing Service - content-only media type detection

Detection order (first specific answer wins):
- Built-in magic signature table (deterministic, independent of libmagic version)
- ZIP local-header inspection to tell OOXML / ODF / APK / JAR apart from plain ZIP
- filetype library
- Printable-text heuristic (HTML, XML, SVG, JSON, scripts, plain text)
- python-magic, when libmagic is installed (lazy, thread-safe, cached)

Design decisions:
- Only a bounded prefix is inspected; magic numbers live in the first few KB
- Filenames are never consulted; extension disagreement is reported elsewhere
- sniff() never raises: anything unrecognised is "unknown/octet-stream"
"""

import asyncio
import hashlib
import json
import struct
import threading
from typing import Any, Dict, Optional, Tuple, cast

try:
    import magic
    MAGIC_AVAILABLE = True
except ImportError:
    MAGIC_AVAILABLE = False
    magic = None

import filetype

from uploadguard.models.reports import UNKNOWN_MEDIA_TYPE, SniffResult
from uploadguard.utils.logger import get_logger

logger = get_logger(__name__)

SNIFF_PREFIX_BYTES = 16384
MAGIC_DISPLAY_BYTES = 8

EXECUTABLE_MEDIA_TYPES = frozenset({
    "application/x-executable",
    "application/x-dosexec",
    "application/x-mach-binary",
    "application/x-sharedlib",
})

ZIP_FAMILY_MEDIA_TYPES = frozenset({
    "application/zip",
    "application/java-archive",
    "application/vnd.android.package-archive",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    "application/vnd.oasis.opendocument.text",
    "application/vnd.oasis.opendocument.spreadsheet",
    "application/vnd.oasis.opendocument.presentation",
    "application/epub+zip",
})

ARCHIVE_MEDIA_TYPES = ZIP_FAMILY_MEDIA_TYPES | frozenset({
    "application/x-tar",
    "application/gzip",
    "application/x-bzip2",
    "application/x-xz",
})

ODF_MEDIA_TYPE_PREFIX = "application/vnd.oasis.opendocument."

# DIB header sizes for BITMAPCOREHEADER through BITMAPV5HEADER
BMP_DIB_HEADER_SIZES = frozenset({12, 40, 52, 56, 108, 124})

# (offset, signature, media type, description); longest/most specific first
SIGNATURES: Tuple[Tuple[int, bytes, str, str], ...] = (
    (0, b"%PDF-", "application/pdf", "PDF document"),
    (0, b"\x89PNG\r\n\x1a\n", "image/png", "PNG image"),
    (0, b"\xff\xd8\xff", "image/jpeg", "JPEG image"),
    (0, b"GIF87a", "image/gif", "GIF image (87a)"),
    (0, b"GIF89a", "image/gif", "GIF image (89a)"),
    (0, b"II*\x00", "image/tiff", "TIFF image (little-endian)"),
    (0, b"MM\x00*", "image/tiff", "TIFF image (big-endian)"),
    (0, b"\x00\x00\x01\x00", "image/x-icon", "ICO icon"),
    (0, b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1", "application/x-ole-storage", "OLE2 compound document"),
    (0, b"Rar!\x1a\x07", "application/vnd.rar", "RAR archive"),
    (0, b"7z\xbc\xaf\x27\x1c", "application/x-7z-compressed", "7-Zip archive"),
    (0, b"\xfd7zXZ\x00", "application/x-xz", "XZ compressed"),
    (0, b"\x1f\x8b\x08", "application/gzip", "Gzip compressed"),
    (0, b"BZh", "application/x-bzip2", "Bzip2 compressed"),
    (257, b"ustar", "application/x-tar", "POSIX tar archive"),
    (0, b"\x7fELF", "application/x-executable", "ELF executable"),
    (0, b"\xfe\xed\xfa\xce", "application/x-mach-binary", "Mach-O executable (32-bit)"),
    (0, b"\xfe\xed\xfa\xcf", "application/x-mach-binary", "Mach-O executable (64-bit)"),
    (0, b"\xce\xfa\xed\xfe", "application/x-mach-binary", "Mach-O executable (32-bit LE)"),
    (0, b"\xcf\xfa\xed\xfe", "application/x-mach-binary", "Mach-O executable (64-bit LE)"),
    (0, b"\xca\xfe\xba\xbe", "application/x-mach-binary", "Mach-O universal binary"),
    (0, b"MZ", "application/x-dosexec", "DOS/Windows executable"),
    (0, b"ID3", "audio/mpeg", "MP3 audio"),
    (0, b"OggS", "audio/ogg", "Ogg audio"),
    (0, b"fLaC", "audio/flac", "FLAC audio"),
    (0, b"BM", "image/bmp", "BMP image"),
)

# Aliases produced by filetype/libmagic mapped onto the names used above
MEDIA_TYPE_ALIASES = {
    "image/jpg": "image/jpeg",
    "image/x-ms-bmp": "image/bmp",
    "image/vnd.microsoft.icon": "image/x-icon",
    "application/x-zip-compressed": "application/zip",
    "application/x-gzip": "application/gzip",
    "application/x-rar-compressed": "application/vnd.rar",
    "application/x-rar": "application/vnd.rar",
    "application/x-msdownload": "application/x-dosexec",
    "application/x-elf": "application/x-executable",
    "application/x-pie-executable": "application/x-executable",
    "application/x-bzip": "application/x-bzip2",
    "text/x-shellscript": "text/x-script",
    "text/x-python": "text/x-script",
}

GENERIC_MEDIA_TYPES = frozenset({
    "application/octet-stream",
    "application/x-empty",
    "inode/x-empty",
    "unknown",
    "",
    UNKNOWN_MEDIA_TYPE,
})

# Expected filename extensions per media type, used for mismatch reporting
MEDIA_TYPE_EXTENSIONS: Dict[str, Tuple[str, ...]] = {
    "application/pdf": (".pdf",),
    "image/png": (".png",),
    "image/jpeg": (".jpg", ".jpeg", ".jpe", ".jfif"),
    "image/gif": (".gif",),
    "image/bmp": (".bmp", ".dib"),
    "image/webp": (".webp",),
    "image/tiff": (".tif", ".tiff"),
    "image/x-icon": (".ico",),
    "image/svg+xml": (".svg",),
    "application/zip": (".zip",),
    "application/java-archive": (".jar",),
    "application/vnd.android.package-archive": (".apk",),
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": (".docx",),
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet": (".xlsx",),
    "application/vnd.openxmlformats-officedocument.presentationml.presentation": (".pptx",),
    "application/x-tar": (".tar",),
    "application/gzip": (".gz", ".tgz"),
    "application/x-bzip2": (".bz2", ".tbz2"),
    "application/x-xz": (".xz", ".txz"),
    "application/x-7z-compressed": (".7z",),
    "application/vnd.rar": (".rar",),
    "application/x-executable": (".bin", ".elf", ".so", ".out"),
    "application/x-dosexec": (".exe", ".dll", ".sys", ".scr", ".com"),
    "application/x-mach-binary": (".dylib", ".bin"),
    "text/plain": (".txt", ".text", ".log", ".md", ".csv", ".ini", ".cfg", ".conf"),
    "text/html": (".html", ".htm"),
    "text/xml": (".xml",),
    "application/json": (".json",),
    "audio/mpeg": (".mp3",),
    "audio/ogg": (".ogg", ".oga"),
    "audio/wav": (".wav",),
}


def is_zip_family(media_type: str) -> bool:
    return media_type in ZIP_FAMILY_MEDIA_TYPES or media_type.startswith(ODF_MEDIA_TYPE_PREFIX)


def is_archive_media_type(media_type: str) -> bool:
    """True for every container the archive validator walks."""
    return media_type in ARCHIVE_MEDIA_TYPES or is_zip_family(media_type)


def looks_like_pe(sample: bytes) -> bool:
    """MZ stub whose e_lfanew points at a "PE\\0\\0" header inside the sample."""
    if len(sample) < 64 or not sample.startswith(b"MZ"):
        return False
    (pe_offset,) = struct.unpack_from("<I", sample, 0x3C)
    return pe_offset >= 64 and sample[pe_offset:pe_offset + 4] == b"PE\x00\x00"


def looks_like_bmp(sample: bytes) -> bool:
    """BITMAPFILEHEADER followed by a DIB header of a known size."""
    if len(sample) < 18 or not sample.startswith(b"BM"):
        return False
    file_size, _, _, pixel_offset, dib_size = struct.unpack_from("<IHHII", sample, 2)
    if dib_size not in BMP_DIB_HEADER_SIZES:
        return False
    headers = 14 + dib_size
    # Some writers leave the file size field zeroed
    return (file_size == 0 or file_size >= headers) and pixel_offset >= headers


# Two-byte magics that need a header check before they are believed
STRUCTURE_CHECKS = {
    "application/x-dosexec": looks_like_pe,
    "image/bmp": looks_like_bmp,
}


def structure_holds(media_type: str, sample: bytes) -> bool:
    check = STRUCTURE_CHECKS.get(media_type)
    return check is None or check(sample)


def normalize_media_type(media_type: Optional[str]) -> str:
    """Strip parameters, lower-case and fold known aliases."""
    if not media_type:
        return UNKNOWN_MEDIA_TYPE
    normalized = media_type.split(";")[0].strip().lower()
    normalized = MEDIA_TYPE_ALIASES.get(normalized, normalized)
    if normalized in GENERIC_MEDIA_TYPES:
        return UNKNOWN_MEDIA_TYPE
    return normalized


def magic_signature(data: bytes) -> str:
    """Hex rendering of the leading bytes, e.g. ``"25 50 44 46"``."""
    return " ".join(f"{byte:02X}" for byte in data[:MAGIC_DISPLAY_BYTES])


def extension_mismatch(media_type: str, extension: Optional[str]) -> bool:
    """
    True when the claimed extension is not one we expect for the sniffed type.

    Unknown media types and types without an expectation table never mismatch.
    """
    if extension is None:
        return False
    expected = MEDIA_TYPE_EXTENSIONS.get(media_type)
    if not expected:
        return False
    return extension.lower() not in expected


class MimeSniffingService:
    """
    Identify the true media type of a byte buffer from its content alone.
    """

    CACHE_MAX_SIZE = 1024

    def __init__(self, use_libmagic: bool = True):
        # Thread safety lock for magic library (init + detection)
        self._magic_lock = threading.Lock()
        self._magic: Optional[Any] = None
        self._magic_available = MAGIC_AVAILABLE and use_libmagic
        self._magic_init_attempted = False
        self._magic_init_error: Optional[str] = None

        # Cache for repeated samples (keyed by sample hash)
        self._magic_cache: Dict[str, str] = {}

    def _ensure_magic_initialized(self) -> bool:
        """Lazily initialize python-magic (thread-safe singleton pattern)."""
        if self._magic_init_attempted:
            return self._magic_available

        with self._magic_lock:
            if self._magic_init_attempted:
                return self._magic_available
            self._magic_init_attempted = True

            if not self._magic_available:
                self._magic_init_error = "python-magic/libmagic not available"
                logger.debug("libmagic detection disabled: %s", self._magic_init_error)
                return False

            try:
                self._magic = cast(Any, magic).Magic(mime=True)
                self._magic_available = True
                logger.debug("python-magic initialized")
            except Exception as exc:
                self._magic_available = False
                self._magic_init_error = str(exc)
                logger.warning("Failed to initialize python-magic: %s", exc)
            return self._magic_available

    async def sniff_mime(self, file_data: bytes) -> SniffResult:
        return await asyncio.to_thread(self.sniff, file_data)

    def sniff(self, file_data: bytes) -> SniffResult:
        """
        Return the sniffed media type for ``file_data``.

        Only the first ``SNIFF_PREFIX_BYTES`` are examined. Never raises.
        """
        try:
            sample = bytes(file_data[:SNIFF_PREFIX_BYTES])
        except Exception as exc:
            logger.debug("Unreadable sniff input: %s", exc)
            return SniffResult()

        signature = magic_signature(sample)
        if not sample:
            return SniffResult(magic=signature, description="Empty input")

        try:
            media_type, description, source = self._detect(sample)
        except Exception as exc:
            logger.error("MIME sniffing failed: %s", exc, exc_info=True)
            media_type, description, source = UNKNOWN_MEDIA_TYPE, "Detection error", "none"

        return SniffResult(
            media_type=media_type,
            magic=signature,
            description=description,
            source=source,
        )

    def _detect(self, sample: bytes) -> Tuple[str, str, str]:
        media_type, description = self._manual_signature_detection(sample)
        if media_type != UNKNOWN_MEDIA_TYPE:
            return media_type, description, "signature"

        filetype_mime = self._detect_with_filetype(sample)
        if filetype_mime != UNKNOWN_MEDIA_TYPE:
            return filetype_mime, f"filetype: {filetype_mime}", "filetype"

        text_mime = self._detect_text_format(sample)
        if text_mime:
            return text_mime, f"Text content ({text_mime})", "text"

        magic_mime = self._detect_with_magic(sample)
        if magic_mime != UNKNOWN_MEDIA_TYPE and structure_holds(magic_mime, sample):
            return magic_mime, f"libmagic: {magic_mime}", "libmagic"

        return UNKNOWN_MEDIA_TYPE, "No matching signature found", "none"

    def _manual_signature_detection(self, sample: bytes) -> Tuple[str, str]:
        if sample.startswith(b"PK\x03\x04"):
            return self._detect_zip_based_format(sample)
        if sample.startswith(b"PK\x05\x06"):
            return "application/zip", "Empty ZIP archive"

        if sample.startswith(b"RIFF") and len(sample) >= 12:
            return self._detect_riff_format(sample)

        if len(sample) >= 12 and sample[4:8] == b"ftyp":
            brand = sample[8:12]
            if brand in (b"isom", b"mp41", b"mp42", b"mmp4", b"avc1", b"iso2"):
                return "video/mp4", "MP4 video"
            if brand in (b"qt  ",):
                return "video/quicktime", "QuickTime video"

        for offset, sig_bytes, media_type, description in SIGNATURES:
            if sample[offset:offset + len(sig_bytes)] != sig_bytes:
                continue
            if not structure_holds(media_type, sample):
                continue
            return media_type, description

        if sample.startswith(b"#!"):
            return "text/x-script", "Script with shebang"

        return UNKNOWN_MEDIA_TYPE, "No matching signature found"

    def _detect_zip_based_format(self, sample: bytes) -> Tuple[str, str]:
        """
        Walk the local file headers visible in the prefix and look for the
        marker members of ZIP-based container formats.
        """
        names = []
        offset = 0
        first_member: Optional[Tuple[str, bytes]] = None
        while offset + 30 <= len(sample) and len(names) < 64:
            if sample[offset:offset + 4] != b"PK\x03\x04":
                break
            (_, _, flags, method, _, _, _, compressed_size, _, name_len, extra_len) = struct.unpack(
                "<IHHHHHIIIHH", sample[offset:offset + 30]
            )
            name_start = offset + 30
            name = sample[name_start:name_start + name_len].decode("utf-8", errors="replace")
            data_start = name_start + name_len + extra_len
            names.append(name)
            if first_member is None and method == 0:
                first_member = (name, sample[data_start:data_start + min(compressed_size, 128)])
            # Sizes live in the data descriptor when bit 3 is set; stop walking there
            if flags & 0x08:
                break
            offset = data_start + compressed_size

        if first_member and first_member[0] == "mimetype":
            declared = first_member[1].decode("ascii", errors="ignore").strip().lower()
            # The marker only refines the container; it never routes a ZIP elsewhere
            if is_zip_family(declared):
                return declared, f"OpenDocument ({declared})"
            logger.debug("Ignoring non-container mimetype member %r", declared[:64])

        if "[Content_Types].xml" in names or any(n.startswith(("word/", "xl/", "ppt/")) for n in names):
            if any(n.startswith("word/") for n in names):
                return "application/vnd.openxmlformats-officedocument.wordprocessingml.document", "Word document"
            if any(n.startswith("xl/") for n in names):
                return "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet", "Excel spreadsheet"
            if any(n.startswith("ppt/") for n in names):
                return "application/vnd.openxmlformats-officedocument.presentationml.presentation", "PowerPoint presentation"

        if "AndroidManifest.xml" in names:
            return "application/vnd.android.package-archive", "Android APK"
        if "META-INF/MANIFEST.MF" in names:
            return "application/java-archive", "JAR file"

        return "application/zip", "ZIP archive"

    def _detect_riff_format(self, sample: bytes) -> Tuple[str, str]:
        format_id = sample[8:12]
        if format_id == b"WEBP":
            return "image/webp", "WebP image"
        if format_id == b"WAVE":
            return "audio/wav", "WAV audio"
        if format_id == b"AVI ":
            return "video/x-msvideo", "AVI video"
        return UNKNOWN_MEDIA_TYPE, f"Unknown RIFF format: {format_id!r}"

    def _detect_with_filetype(self, sample: bytes) -> str:
        try:
            kind = filetype.guess(sample)
        except Exception as exc:
            logger.debug("filetype detection failed: %s", exc)
            return UNKNOWN_MEDIA_TYPE
        if kind is None:
            return UNKNOWN_MEDIA_TYPE
        media_type = normalize_media_type(kind.mime)
        return media_type if structure_holds(media_type, sample) else UNKNOWN_MEDIA_TYPE

    def _detect_text_format(self, sample: bytes) -> Optional[str]:
        """Recognise printable text and refine common text-based formats."""
        if b"\x00" in sample:
            return None
        try:
            text = sample.decode("utf-8")
        except UnicodeDecodeError as exc:
            # A multi-byte sequence may be cut at the end of the prefix
            if exc.start < len(sample) - 4:
                return None
            text = sample[:exc.start].decode("utf-8")
        if not text:
            return None

        printable = sum(1 for ch in text if ch.isprintable() or ch in "\r\n\t\f")
        if printable / len(text) < 0.95:
            return None

        lowered = text.lstrip().lower()
        if lowered.startswith("<!doctype html") or "<html" in lowered[:1024]:
            return "text/html"
        if lowered.startswith("<?xml"):
            return "image/svg+xml" if "<svg" in lowered else "text/xml"
        if lowered.startswith("<svg"):
            return "image/svg+xml"
        if lowered[:1] in ("{", "[") and len(sample) < SNIFF_PREFIX_BYTES:
            try:
                json.loads(text)
                return "application/json"
            except ValueError:
                pass
        return "text/plain"

    def _detect_with_magic(self, sample: bytes) -> str:
        if not self._ensure_magic_initialized():
            return UNKNOWN_MEDIA_TYPE

        sample_hash = hashlib.sha256(sample).hexdigest()
        cached = self._magic_cache.get(sample_hash)
        if cached is not None:
            return cached

        try:
            with self._magic_lock:
                detected = cast(Any, self._magic).from_buffer(sample)
        except Exception as exc:
            logger.warning("libmagic detection failed: %s", exc)
            return UNKNOWN_MEDIA_TYPE

        result = normalize_media_type(detected)
        with self._magic_lock:
            if len(self._magic_cache) >= self.CACHE_MAX_SIZE:
                oldest_key = next(iter(self._magic_cache))
                del self._magic_cache[oldest_key]
            self._magic_cache[sample_hash] = result
        return result
