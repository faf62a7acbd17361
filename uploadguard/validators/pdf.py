"""
PDF structural validator

Checks the document skeleton without rendering or executing anything:
- header and %%EOF trailer
- indirect object count and page count against limits
- cross-reference table / stream presence and startxref offset sanity
- stream filter chains (length, unknown filters) and bounded FlateDecode inflation
- active content (/JavaScript, /JS, /Launch, /SubmitForm, ...), embedded files, encryption
- pypdf strict parse as an independent cross-check
"""

import io
import re
import zlib
from typing import List, Optional, Tuple

from pypdf import PdfReader
from pypdf.errors import PdfReadError

from uploadguard.models.findings import FindingKind, Severity
from uploadguard.models.policy import ResourceLimits
from uploadguard.utils.logger import get_logger
from uploadguard.validators.base import BaseValidator, FindingCollector, ValidationBudget

logger = get_logger(__name__)

MAX_FILTER_CHAIN = 3
MAX_REPORTED_STREAMS = 16
INFLATE_CHUNK = 64 * 1024
# Small, highly repetitive streams legitimately exceed any ratio
MIN_INFLATION_REPORT_BYTES = 1024 * 1024
TRAILER_WINDOW = 1024
STREAM_DICT_LOOKBACK = 4096

OBJ_RE = re.compile(rb"(?<![0-9])(\d{1,10})\s+(\d{1,5})\s+obj\b")
STARTXREF_RE = re.compile(rb"startxref\s+(\d+)")
XREF_TABLE_RE = re.compile(rb"(?:^|[\r\n])xref\s*[\r\n]")
XREF_STREAM_RE = re.compile(rb"/Type\s*/XRef\b")
PAGE_RE = re.compile(rb"/Type\s*/Page(?![A-Za-z])")
STREAM_RE = re.compile(rb"(?<![A-Za-z])stream\r?\n")
FILTER_RE = re.compile(rb"/Filter\s*(\[[^\]]*\]|/[A-Za-z0-9.]+)")
FILTER_NAME_RE = re.compile(rb"/([A-Za-z0-9.]+)")
NAME_ESCAPE_RE = re.compile(rb"#([0-9A-Fa-f]{2})")

KNOWN_FILTERS = frozenset({
    b"FlateDecode", b"Fl",
    b"LZWDecode", b"LZW",
    b"ASCIIHexDecode", b"AHx",
    b"ASCII85Decode", b"A85",
    b"RunLengthDecode", b"RL",
    b"CCITTFaxDecode", b"CCF",
    b"JBIG2Decode",
    b"DCTDecode", b"DCT",
    b"JPXDecode",
    b"Crypt",
})

ACTIVE_CONTENT_PATTERNS = (
    (b"/JavaScript", re.compile(rb"/JavaScript(?![A-Za-z])")),
    (b"/JS", re.compile(rb"/JS(?![A-Za-z])")),
    (b"/Launch", re.compile(rb"/Launch(?![A-Za-z])")),
    (b"/SubmitForm", re.compile(rb"/SubmitForm(?![A-Za-z])")),
    (b"/ImportData", re.compile(rb"/ImportData(?![A-Za-z])")),
    (b"/RichMedia", re.compile(rb"/RichMedia(?![A-Za-z])")),
)
EMBEDDED_FILE_RE = re.compile(rb"/(?:EmbeddedFiles?|FileAttachment)(?![A-Za-z])")
ENCRYPT_RE = re.compile(rb"/Encrypt(?![A-Za-z])")


def _unescape_names(data: bytes) -> bytes:
    """Resolve ``#xx`` escapes so obfuscated names like ``/J#61vaScript`` match."""
    if b"#" not in data:
        return data
    return NAME_ESCAPE_RE.sub(lambda m: bytes([int(m.group(1), 16)]), data)


class PdfValidator(BaseValidator):
    name = "pdf"

    def inspect(
        self,
        data: bytes,
        limits: ResourceLimits,
        budget: ValidationBudget,
        collector: FindingCollector,
    ) -> None:
        if not budget.charge(len(data)):
            return

        if not data.startswith(b"%PDF-"):
            collector.emit(FindingKind.MALFORMED_STRUCTURE, Severity.HIGH, "missing %PDF- header", offset=0)
            self.inconclusive(collector, "not a PDF document")
            return

        if b"%%EOF" not in data[-TRAILER_WINDOW:]:
            collector.emit(
                FindingKind.MALFORMED_STRUCTURE,
                Severity.MEDIUM,
                "no %%EOF marker at end of file (truncated document)",
            )

        object_count = len(OBJ_RE.findall(data))
        if object_count == 0:
            collector.emit(FindingKind.MALFORMED_STRUCTURE, Severity.MEDIUM, "no indirect objects found")
        elif object_count > limits.max_pdf_objects:
            collector.emit(
                FindingKind.EXCESSIVE_OBJECTS,
                Severity.MEDIUM,
                f"{object_count} indirect objects exceeds limit {limits.max_pdf_objects}",
            )

        self._check_xref(data, collector)
        if budget.expired():
            return

        self._check_streams(data, limits, budget, collector)
        if budget.exhausted:
            return

        normalized = _unescape_names(data)
        self._check_indicators(normalized, collector)

        page_count = self._cross_check(data, budget, collector)
        if page_count is None:
            page_count = len(PAGE_RE.findall(normalized))
        if page_count > limits.max_pdf_pages:
            collector.emit(
                FindingKind.EXCESSIVE_OBJECTS,
                Severity.MEDIUM,
                f"{page_count} pages exceeds limit {limits.max_pdf_pages}",
            )

    # ---------------- cross-reference ----------------
    def _check_xref(self, data: bytes, collector: FindingCollector) -> None:
        has_table = XREF_TABLE_RE.search(data) is not None
        has_stream = XREF_STREAM_RE.search(data) is not None
        if not has_table and not has_stream:
            collector.emit(FindingKind.MALFORMED_XREF, Severity.MEDIUM, "no cross-reference table or stream")

        offsets = STARTXREF_RE.findall(data)
        if not offsets:
            collector.emit(FindingKind.MALFORMED_XREF, Severity.MEDIUM, "missing startxref")
            return

        offset = int(offsets[-1])
        if offset >= len(data):
            collector.emit(
                FindingKind.MALFORMED_XREF,
                Severity.MEDIUM,
                f"startxref offset {offset} beyond end of file ({len(data)} bytes)",
                offset=offset,
            )
            return

        target = data[offset:offset + 64].lstrip()
        if not (target.startswith(b"xref") or OBJ_RE.match(target)):
            collector.emit(
                FindingKind.MALFORMED_XREF,
                Severity.MEDIUM,
                f"startxref offset {offset} does not point at a cross-reference section",
                offset=offset,
            )

    # ---------------- streams & filters ----------------
    def _check_streams(
        self,
        data: bytes,
        limits: ResourceLimits,
        budget: ValidationBudget,
        collector: FindingCollector,
    ) -> None:
        reported = 0
        for match in STREAM_RE.finditer(data):
            if reported >= MAX_REPORTED_STREAMS or budget.expired():
                return
            start = match.end()
            dictionary = self._stream_dictionary(data, match.start())
            chain = self._filter_chain(dictionary)
            if not chain:
                continue

            unknown = [name for name in chain if name not in KNOWN_FILTERS]
            if len(chain) > MAX_FILTER_CHAIN or unknown:
                reason = (
                    f"unknown filter(s) {', '.join(n.decode('latin-1') for n in unknown)}"
                    if unknown
                    else f"{len(chain)} chained filters"
                )
                collector.emit(FindingKind.SUSPICIOUS_FILTER_CHAIN, Severity.HIGH, reason, offset=start)
                reported += 1
                continue

            if chain[0] not in (b"FlateDecode", b"Fl"):
                continue
            end = data.find(b"endstream", start)
            raw = data[start:end if end != -1 else len(data)]
            if self._inflate_exceeds_ratio(raw, start, limits, budget, collector):
                reported += 1
            if budget.exhausted:
                return

    def _stream_dictionary(self, data: bytes, stream_pos: int) -> bytes:
        window_start = max(0, stream_pos - STREAM_DICT_LOOKBACK)
        window = data[window_start:stream_pos]
        obj_pos = window.rfind(b"obj")
        return window[obj_pos + 3:] if obj_pos != -1 else window

    def _filter_chain(self, dictionary: bytes) -> List[bytes]:
        match = FILTER_RE.search(_unescape_names(dictionary))
        if match is None:
            return []
        return FILTER_NAME_RE.findall(match.group(1))

    def _inflate_exceeds_ratio(
        self,
        raw: bytes,
        offset: int,
        limits: ResourceLimits,
        budget: ValidationBudget,
        collector: FindingCollector,
    ) -> bool:
        ceiling = max(int(limits.max_expansion_ratio * max(len(raw), 1)), MIN_INFLATION_REPORT_BYTES)
        inflater = zlib.decompressobj()
        produced = 0
        view = memoryview(raw)
        pos = 0
        tail = b""
        try:
            while not inflater.eof:
                if tail:
                    piece = tail
                else:
                    piece = view[pos:pos + INFLATE_CHUNK]
                    pos += len(piece)
                chunk = inflater.decompress(piece, INFLATE_CHUNK)
                tail = inflater.unconsumed_tail
                produced += len(chunk)
                if produced > ceiling:
                    collector.emit(
                        FindingKind.SUSPICIOUS_FILTER_CHAIN,
                        Severity.HIGH,
                        f"FlateDecode stream inflates beyond {limits.max_expansion_ratio:g}x "
                        f"({len(raw)} compressed bytes, stopped at {produced})",
                        offset=offset,
                    )
                    return True
                if not budget.charge(len(chunk)):
                    return False
                if not chunk and not tail and pos >= len(raw):
                    break
        except zlib.error as exc:
            collector.emit(
                FindingKind.MALFORMED_STRUCTURE,
                Severity.LOW,
                f"corrupt FlateDecode stream: {exc}",
                offset=offset,
            )
        return False

    # ---------------- indicators ----------------
    def _check_indicators(self, data: bytes, collector: FindingCollector) -> None:
        tokens = [token.decode("ascii") for token, pattern in ACTIVE_CONTENT_PATTERNS if pattern.search(data)]
        if tokens:
            collector.emit(
                FindingKind.ACTIVE_CONTENT,
                Severity.HIGH,
                f"active content markers: {', '.join(tokens)}",
            )
        embedded = EMBEDDED_FILE_RE.search(data)
        if embedded:
            collector.emit(
                FindingKind.EMBEDDED_FILE,
                Severity.MEDIUM,
                "document carries embedded files",
                offset=embedded.start(),
            )
        encrypt = ENCRYPT_RE.search(data)
        if encrypt:
            collector.emit(
                FindingKind.ENCRYPTED_CONTENT,
                Severity.LOW,
                "document is encrypted; content could not be fully inspected",
                offset=encrypt.start(),
            )

    # ---------------- parser cross-check ----------------
    def _cross_check(
        self, data: bytes, budget: ValidationBudget, collector: FindingCollector
    ) -> Optional[int]:
        """Parse with pypdf in strict mode; returns the page count when it succeeds."""
        if budget.expired():
            return None
        try:
            reader = PdfReader(io.BytesIO(data), strict=True)
            if reader.is_encrypted:
                return None
            return len(reader.pages)
        except PdfReadError as exc:
            kind, detail = self._classify_parse_error(exc)
        except Exception as exc:
            logger.debug("pypdf rejected document: %s", exc)
            kind, detail = FindingKind.MALFORMED_STRUCTURE, f"parser rejected document: {exc}"

        if not collector.has(kind):
            collector.emit(kind, Severity.MEDIUM, detail)
        return None

    def _classify_parse_error(self, exc: Exception) -> Tuple[str, str]:
        message = str(exc)
        if "xref" in message.lower() or "cross" in message.lower():
            return FindingKind.MALFORMED_XREF, f"parser: {message}"
        return FindingKind.MALFORMED_STRUCTURE, f"parser: {message}"
