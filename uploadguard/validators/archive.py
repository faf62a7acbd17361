"""
Archive structural validator

Handles ZIP (and ZIP-based containers), TAR, and single-stream gzip / bzip2 /
xz, including the usual .tar.gz / .tar.bz2 / .tar.xz layering.

Every byte produced by decompression is counted against two ceilings:
- ``max_expansion_ratio`` x the compressed input size (decompression bombs)
- the run's byte budget (``max_bytes_processed``)
Expansion stops the moment either is crossed; declared sizes (ZIP central
directory, gzip ISIZE) are checked first so obvious bombs never inflate.

Nested archives are detected by content and inspected recursively up to
``max_nested_depth``. A compression layer wrapping a tarball is part of the
same archive and does not count as nesting.
"""

import bz2
import io
import lzma
import re
import struct
import tarfile
import zipfile
import zlib
from typing import Optional

from uploadguard.models.findings import FindingKind, ResourceLimitKind, Severity
from uploadguard.models.policy import ResourceLimits
from uploadguard.services.mime_sniffing import (
    MimeSniffingService,
    is_archive_media_type,
    is_zip_family,
)
from uploadguard.utils.logger import get_logger
from uploadguard.validators.base import BaseValidator, FindingCollector, ValidationBudget

logger = get_logger(__name__)

READ_CHUNK = 64 * 1024
# Tiny archives of repetitive text routinely exceed any ratio
MIN_EXPANSION_CEILING = 64 * 1024
MAX_REPORTED_ENTRIES = 32

DRIVE_LETTER_RE = re.compile(r"^[A-Za-z]:")
S_IFMT = 0o170000
S_IFLNK = 0o120000

COMPRESSED_STREAM_KINDS = {
    "application/gzip": "gzip",
    "application/x-bzip2": "bzip2",
    "application/x-xz": "xz",
}


def is_traversal_name(name: str) -> bool:
    """Absolute paths, drive letters, backslashes or ``..`` segments."""
    if not name:
        return False
    if "\\" in name or name.startswith("/") or DRIVE_LETTER_RE.match(name):
        return True
    return ".." in name.split("/")


class ExpansionMeter:
    """Cumulative decompressed-byte counter shared by every layer of one archive."""

    def __init__(self, compressed_size: int, ratio: float) -> None:
        self.compressed_size = compressed_size
        self.ratio = ratio
        self.ceiling = max(int(ratio * max(compressed_size, 1)), MIN_EXPANSION_CEILING)
        self.produced = 0

    def exceeds(self, declared: int) -> bool:
        return self.produced + declared > self.ceiling

    def trip(self, budget: ValidationBudget, produced: int, declared: bool = False) -> None:
        source = "declares" if declared else "expanded to"
        budget.trip(
            ResourceLimitKind.EXPANSION,
            f"archive {source} {produced} bytes from {self.compressed_size} "
            f"(ratio ceiling {self.ratio:g}x, {self.ceiling} bytes)",
        )

    def add(self, amount: int, budget: ValidationBudget) -> bool:
        self.produced += amount
        if self.produced > self.ceiling:
            self.trip(budget, self.produced)
            return False
        return budget.charge(amount)


class ArchiveValidator(BaseValidator):
    name = "archive"

    def __init__(self, sniffer: Optional[MimeSniffingService] = None) -> None:
        self.sniffer = sniffer or MimeSniffingService(use_libmagic=False)

    def inspect(
        self,
        data: bytes,
        limits: ResourceLimits,
        budget: ValidationBudget,
        collector: FindingCollector,
    ) -> None:
        if not budget.charge(len(data)):
            return
        meter = ExpansionMeter(len(data), limits.max_expansion_ratio)
        media_type = self.sniffer.sniff(data).media_type
        self._inspect_container(data, media_type, 0, "", limits, budget, collector, meter)

    def _inspect_container(
        self,
        data: bytes,
        media_type: str,
        depth: int,
        label: str,
        limits: ResourceLimits,
        budget: ValidationBudget,
        collector: FindingCollector,
        meter: ExpansionMeter,
    ) -> None:
        if is_zip_family(media_type):
            self._walk_zip(data, depth, label, limits, budget, collector, meter)
        elif media_type == "application/x-tar":
            self._walk_tar(data, depth, label, limits, budget, collector, meter)
        elif media_type in COMPRESSED_STREAM_KINDS:
            payload = self._decompress_stream(
                COMPRESSED_STREAM_KINDS[media_type], data, label, budget, collector, meter
            )
            if payload is None or budget.exhausted:
                return
            inner_type = self.sniffer.sniff(payload).media_type
            if inner_type == "application/x-tar":
                self._walk_tar(payload, depth, label, limits, budget, collector, meter)
            elif is_archive_media_type(inner_type):
                self._descend(payload, inner_type, depth, f"{label}<{media_type}>", limits, budget, collector, meter)
        elif depth == 0:
            self.inconclusive(collector, f"unsupported archive format {media_type}")

    def _descend(
        self,
        data: bytes,
        media_type: str,
        depth: int,
        label: str,
        limits: ResourceLimits,
        budget: ValidationBudget,
        collector: FindingCollector,
        meter: ExpansionMeter,
    ) -> None:
        if depth + 1 > limits.max_nested_depth:
            collector.emit(
                FindingKind.NESTED_DEPTH_EXCEEDED,
                Severity.HIGH,
                f"{label or 'entry'} is an archive nested deeper than {limits.max_nested_depth}",
            )
            return
        self._inspect_container(data, media_type, depth + 1, f"{label}!", limits, budget, collector, meter)

    # ---------------- ZIP ----------------
    def _walk_zip(
        self,
        data: bytes,
        depth: int,
        label: str,
        limits: ResourceLimits,
        budget: ValidationBudget,
        collector: FindingCollector,
        meter: ExpansionMeter,
    ) -> None:
        try:
            archive = zipfile.ZipFile(io.BytesIO(data))
        except (zipfile.BadZipFile, zipfile.LargeZipFile, OSError, ValueError, EOFError) as exc:
            collector.emit(FindingKind.MALFORMED_STRUCTURE, Severity.MEDIUM, f"{label}unreadable ZIP: {exc}")
            if depth == 0:
                self.inconclusive(collector, "ZIP central directory could not be read")
            return

        with archive:
            infos = archive.infolist()
            if len(infos) > limits.max_archive_entries:
                collector.emit(
                    FindingKind.TOO_MANY_ENTRIES,
                    Severity.MEDIUM,
                    f"{label}{len(infos)} entries exceeds limit {limits.max_archive_entries}",
                )
                infos = infos[: limits.max_archive_entries]

            declared = sum(info.file_size for info in infos)
            if meter.exceeds(declared):
                meter.trip(budget, meter.produced + declared, declared=True)
                return

            reported = 0
            for info in infos:
                if budget.exhausted or budget.expired():
                    return
                entry = f"{label}{info.filename}"
                reported += self._check_entry_name(info.filename, entry, collector, reported)

                if (info.external_attr >> 16) & S_IFMT == S_IFLNK:
                    collector.emit(FindingKind.SYMLINK_ENTRY, Severity.MEDIUM, f"{entry} is a symbolic link")
                    continue
                if info.flag_bits & 0x1:
                    if not collector.has(FindingKind.ENCRYPTED_CONTENT):
                        collector.emit(
                            FindingKind.ENCRYPTED_CONTENT,
                            Severity.LOW,
                            f"{entry} is encrypted and cannot be inspected",
                        )
                    continue
                if info.is_dir():
                    continue

                try:
                    with archive.open(info) as stream:
                        content = self._read_member(stream, entry, budget, meter, count_expansion=True)
                except (zipfile.BadZipFile, zlib.error, NotImplementedError, RuntimeError, EOFError, OSError) as exc:
                    collector.emit(
                        FindingKind.MALFORMED_STRUCTURE, Severity.MEDIUM, f"{entry}: {exc}"
                    )
                    continue
                if content is None:
                    return
                self._maybe_descend(content, depth, entry, limits, budget, collector, meter)

    # ---------------- TAR ----------------
    def _walk_tar(
        self,
        data: bytes,
        depth: int,
        label: str,
        limits: ResourceLimits,
        budget: ValidationBudget,
        collector: FindingCollector,
        meter: ExpansionMeter,
    ) -> None:
        try:
            archive = tarfile.open(fileobj=io.BytesIO(data), mode="r:")
        except (tarfile.TarError, OSError, EOFError, ValueError) as exc:
            collector.emit(FindingKind.MALFORMED_STRUCTURE, Severity.MEDIUM, f"{label}unreadable tar: {exc}")
            if depth == 0:
                self.inconclusive(collector, "tar headers could not be read")
            return

        count = 0
        reported = 0
        with archive:
            try:
                for member in archive:
                    if budget.exhausted or budget.expired():
                        return
                    count += 1
                    if count > limits.max_archive_entries:
                        collector.emit(
                            FindingKind.TOO_MANY_ENTRIES,
                            Severity.MEDIUM,
                            f"{label}more than {limits.max_archive_entries} entries",
                        )
                        return
                    entry = f"{label}{member.name}"
                    reported += self._check_entry_name(member.name, entry, collector, reported)

                    if member.issym() or member.islnk():
                        collector.emit(
                            FindingKind.SYMLINK_ENTRY,
                            Severity.MEDIUM,
                            f"{entry} links to {member.linkname}",
                        )
                        if is_traversal_name(member.linkname):
                            collector.emit(
                                FindingKind.PATH_TRAVERSAL,
                                Severity.HIGH,
                                f"{entry} link target escapes the extraction root: {member.linkname}",
                            )
                        continue
                    if not member.isfile():
                        continue

                    stream = archive.extractfile(member)
                    if stream is None:
                        continue
                    with stream:
                        content = self._read_member(stream, entry, budget, meter, count_expansion=False)
                    if content is None:
                        return
                    self._maybe_descend(content, depth, entry, limits, budget, collector, meter)
            except (tarfile.TarError, OSError, EOFError, ValueError) as exc:
                collector.emit(FindingKind.MALFORMED_STRUCTURE, Severity.MEDIUM, f"{label}corrupt tar member: {exc}")

    # ---------------- compressed single streams ----------------
    def _decompress_stream(
        self,
        kind: str,
        data: bytes,
        label: str,
        budget: ValidationBudget,
        collector: FindingCollector,
        meter: ExpansionMeter,
    ) -> Optional[bytes]:
        if kind == "gzip" and len(data) >= 18:
            # ISIZE: uncompressed length modulo 2**32 of the last member
            declared = struct.unpack("<I", data[-4:])[0]
            if meter.exceeds(declared):
                meter.trip(budget, meter.produced + declared, declared=True)
                return None

        output = bytearray()
        try:
            if kind == "gzip":
                ok = self._inflate_gzip(data, output, budget, meter)
            else:
                decompressor = bz2.BZ2Decompressor() if kind == "bzip2" else lzma.LZMADecompressor()
                ok = self._drain(decompressor, data, output, budget, meter)
        except (zlib.error, OSError, EOFError, lzma.LZMAError, ValueError) as exc:
            collector.emit(FindingKind.MALFORMED_STRUCTURE, Severity.MEDIUM, f"{label}corrupt {kind} stream: {exc}")
            return None
        if not ok:
            if not budget.exhausted:
                collector.emit(FindingKind.MALFORMED_STRUCTURE, Severity.MEDIUM, f"{label}truncated {kind} stream")
            return None
        return bytes(output)

    def _inflate_gzip(
        self, data: bytes, output: bytearray, budget: ValidationBudget, meter: ExpansionMeter
    ) -> bool:
        view = memoryview(data)
        start = 0
        while start < len(data):
            inflater = zlib.decompressobj(16 + zlib.MAX_WBITS)
            pos = start
            tail = b""
            while not inflater.eof:
                # The unconsumed tail always ends at ``pos``
                if tail:
                    piece = tail
                else:
                    piece = view[pos:pos + READ_CHUNK]
                    pos += len(piece)
                chunk = inflater.decompress(piece, READ_CHUNK)
                tail = inflater.unconsumed_tail
                output.extend(chunk)
                if not meter.add(len(chunk), budget):
                    return False
                if not chunk and not tail and pos >= len(data):
                    return False
            # Concatenated gzip members; anything else trailing is ignored
            start = pos - len(inflater.unused_data)
            if data[start:start + 2] != b"\x1f\x8b":
                break
        return True

    def _drain(
        self, decompressor, data: bytes, output: bytearray, budget: ValidationBudget, meter: ExpansionMeter
    ) -> bool:
        feed = data
        while not decompressor.eof:
            chunk = decompressor.decompress(feed, READ_CHUNK)
            feed = b""
            output.extend(chunk)
            if not meter.add(len(chunk), budget):
                return False
            if decompressor.needs_input:
                return False
        return True

    # ---------------- shared ----------------
    def _read_member(
        self,
        stream,
        entry: str,
        budget: ValidationBudget,
        meter: ExpansionMeter,
        count_expansion: bool,
    ) -> Optional[bytes]:
        """
        Read one member in chunks. Only archive-looking members are kept in
        memory; the rest are streamed through the counters and dropped.
        Returns None when a ceiling stopped the read.
        """
        first = stream.read(READ_CHUNK)
        if not self._count(len(first), budget, meter, count_expansion):
            return None
        keep = is_archive_media_type(self.sniffer.sniff(first).media_type)
        buffer = bytearray(first) if keep else bytearray()
        while first:
            chunk = stream.read(READ_CHUNK)
            if not chunk:
                break
            if not self._count(len(chunk), budget, meter, count_expansion):
                logger.debug("Stopped reading %s at ceiling", entry)
                return None
            if keep:
                buffer.extend(chunk)
        return bytes(buffer)

    def _count(self, amount: int, budget: ValidationBudget, meter: ExpansionMeter, count_expansion: bool) -> bool:
        if count_expansion:
            return meter.add(amount, budget)
        return budget.charge(amount)

    def _maybe_descend(
        self,
        content: bytes,
        depth: int,
        entry: str,
        limits: ResourceLimits,
        budget: ValidationBudget,
        collector: FindingCollector,
        meter: ExpansionMeter,
    ) -> None:
        if not content:
            return
        media_type = self.sniffer.sniff(content).media_type
        if is_archive_media_type(media_type):
            self._descend(content, media_type, depth, entry, limits, budget, collector, meter)

    def _check_entry_name(self, name: str, entry: str, collector: FindingCollector, reported: int) -> int:
        if not is_traversal_name(name):
            return 0
        if reported < MAX_REPORTED_ENTRIES:
            collector.emit(
                FindingKind.PATH_TRAVERSAL,
                Severity.HIGH,
                f"{entry} escapes the extraction root",
            )
        return 1
