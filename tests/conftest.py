"""Shared fixtures and payload builders for the uploadguard test suite.

Builders synthesise small, deterministic inputs: PDFs with correct
cross-reference offsets, Pillow-generated PNGs, ZIP and gzip decompression
bombs, and tarballs with crafted members.
"""

from __future__ import annotations

import gzip
import io
import os
import tarfile
import zipfile
from typing import Dict, Iterable, List, Optional, Tuple

import pytest
from PIL import Image

from uploadguard.models.policy import Policy, ResourceLimits

MIB = 1024 * 1024

CATALOG = b"<< /Type /Catalog /Pages 2 0 R >>"
PAGES = b"<< /Type /Pages /Kids [3 0 R] /Count 1 >>"
PAGE = b"<< /Type /Page /Parent 2 0 R /MediaBox [0 0 72 72] >>"


def build_pdf(bodies: Iterable[bytes]) -> bytes:
    """Serialise numbered objects with an exact xref table and startxref."""
    bodies = list(bodies)
    out = bytearray(b"%PDF-1.4\n")
    offsets: List[int] = []
    for number, body in enumerate(bodies, 1):
        offsets.append(len(out))
        out += b"%d 0 obj\n" % number + body + b"\nendobj\n"
    xref_offset = len(out)
    out += b"xref\n0 %d\n" % (len(bodies) + 1)
    out += b"0000000000 65535 f \n"
    for offset in offsets:
        out += b"%010d 00000 n \n" % offset
    out += b"trailer\n<< /Size %d /Root 1 0 R >>\nstartxref\n%d\n%%%%EOF\n" % (len(bodies) + 1, xref_offset)
    return bytes(out)


def simple_pdf() -> bytes:
    return build_pdf([CATALOG, PAGES, PAGE])


def stream_object(payload: bytes, filters: bytes) -> bytes:
    return (
        b"<< /Length %d /Filter %s >>\nstream\n" % (len(payload), filters)
        + payload
        + b"\nendstream"
    )


def make_png(size: Tuple[int, int] = (16, 16), color: str = "red") -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, format="PNG")
    return buffer.getvalue()


def make_zip(members: Dict[str, bytes], compression: int = zipfile.ZIP_DEFLATED) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=compression) as archive:
        for name, payload in members.items():
            archive.writestr(name, payload)
    return buffer.getvalue()


def make_zip_bomb(expanded_size: int = 4 * MIB) -> bytes:
    return make_zip({"zeros.bin": b"\x00" * expanded_size})


def make_marked_zip(declared: bytes, members: Dict[str, bytes]) -> bytes:
    """ZIP whose first member is a stored ``mimetype`` marker, ODF style."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        archive.writestr("mimetype", declared, compress_type=zipfile.ZIP_STORED)
        for name, payload in members.items():
            archive.writestr(name, payload, compress_type=zipfile.ZIP_DEFLATED)
    return buffer.getvalue()


def make_tar(
    members: Dict[str, bytes],
    links: Optional[Dict[str, str]] = None,
    compression: str = "",
) -> bytes:
    buffer = io.BytesIO()
    mode = f"w:{compression}" if compression else "w"
    with tarfile.open(fileobj=buffer, mode=mode) as archive:
        for name, payload in members.items():
            info = tarfile.TarInfo(name)
            info.size = len(payload)
            archive.addfile(info, io.BytesIO(payload))
        for name, target in (links or {}).items():
            info = tarfile.TarInfo(name)
            info.type = tarfile.SYMTYPE
            info.linkname = target
            archive.addfile(info)
    return buffer.getvalue()


def make_gzip_bomb(expanded_size: int = 8 * MIB) -> bytes:
    """Gzip stream whose ISIZE trailer lies, so only streaming inflation can catch it."""
    data = bytearray(gzip.compress(b"\x00" * expanded_size))
    data[-4:] = (16).to_bytes(4, "little")
    return bytes(data)


def elf_binary() -> bytes:
    return b"\x7fELF\x02\x01\x01\x00" + b"\x00" * 56 + os.urandom(256)


@pytest.fixture
def limits() -> ResourceLimits:
    return ResourceLimits()


@pytest.fixture
def policy() -> Policy:
    return Policy()
