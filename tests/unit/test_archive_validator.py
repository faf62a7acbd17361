"""Unit tests for the archive validator: bombs, traversal, links, nesting."""

import gzip

import pytest

from conftest import MIB, make_gzip_bomb, make_tar, make_zip, make_zip_bomb
from uploadguard.models.findings import FindingKind, ResourceLimitKind
from uploadguard.models.policy import ResourceLimits
from uploadguard.validators.archive import ArchiveValidator, ExpansionMeter, is_traversal_name
from uploadguard.validators.base import ValidationBudget


def kinds(outcome):
    return [f.kind for f in outcome.findings]


def limit_findings(outcome, limit):
    return [
        f for f in outcome.findings
        if f.kind == FindingKind.RESOURCE_LIMIT_EXCEEDED and f.limit == limit
    ]


@pytest.fixture
def validator() -> ArchiveValidator:
    return ArchiveValidator()


class TestTraversalNames:
    @pytest.mark.parametrize(
        "name",
        ["../etc/passwd", "a/../../b", "/abs/path", "C:/Windows/x", "dir\\file", ".."],
    )
    def test_flagged(self, name: str) -> None:
        assert is_traversal_name(name)

    @pytest.mark.parametrize("name", ["a/b/c.txt", "..hidden", "dir/", "a..b"])
    def test_not_flagged(self, name: str) -> None:
        assert not is_traversal_name(name)


class TestExpansionMeter:
    def test_floor_applies_to_tiny_archives(self) -> None:
        meter = ExpansionMeter(compressed_size=10, ratio=2)
        assert meter.ceiling == 64 * 1024

    def test_add_trips_expansion(self) -> None:
        budget = ValidationBudget(5, 10 * MIB)
        meter = ExpansionMeter(compressed_size=1024, ratio=100)
        assert meter.add(100 * 1024, budget) is True
        assert meter.add(1, budget) is False
        assert budget.breach == ResourceLimitKind.EXPANSION


class TestZip:
    def test_clean_zip(self, validator, limits) -> None:
        outcome = validator.validate(make_zip({"a.txt": b"hello", "dir/b.txt": b"world"}), limits)
        assert outcome.findings == ()

    def test_declared_size_bomb_stops_before_inflating(self, validator, limits) -> None:
        data = make_zip_bomb(4 * MIB)
        outcome = validator.validate(data, limits)
        assert len(limit_findings(outcome, ResourceLimitKind.EXPANSION)) == 1
        assert outcome.bytes_processed == len(data)

    def test_ratio_ceiling_from_limits(self, validator) -> None:
        data = make_zip({"data.bin": b"A" * (512 * 1024)})
        assert limit_findings(validator.validate(data, ResourceLimits(max_expansion_ratio=50)), "expansion")
        assert not limit_findings(validator.validate(data, ResourceLimits(max_expansion_ratio=5000)), "expansion")

    def test_path_traversal(self, validator, limits) -> None:
        outcome = validator.validate(make_zip({"../../evil.sh": b"#!/bin/sh"}), limits)
        traversal = [f for f in outcome.findings if f.kind == FindingKind.PATH_TRAVERSAL]
        assert len(traversal) == 1 and "../../evil.sh" in traversal[0].detail

    def test_too_many_entries(self, validator) -> None:
        data = make_zip({f"f{i}.txt": b"x" for i in range(5)})
        outcome = validator.validate(data, ResourceLimits(max_archive_entries=3))
        assert FindingKind.TOO_MANY_ENTRIES in kinds(outcome)

    def test_nested_archives_within_depth(self, validator, limits) -> None:
        inner = make_zip({"inner.txt": b"payload"})
        outer = make_zip({"inner.zip": inner})
        assert validator.validate(outer, limits).findings == ()

    def test_nested_depth_exceeded(self, validator) -> None:
        level2 = make_zip({"deep.txt": b"payload"})
        level1 = make_zip({"level2.zip": level2})
        outer = make_zip({"level1.zip": level1})
        outcome = validator.validate(outer, ResourceLimits(max_nested_depth=1))
        nested = [f for f in outcome.findings if f.kind == FindingKind.NESTED_DEPTH_EXCEEDED]
        assert len(nested) == 1
        assert "level2.zip" in nested[0].detail

    def test_corrupt_zip_is_inconclusive(self, validator, limits) -> None:
        outcome = validator.validate(b"PK\x03\x04" + b"\x00" * 40, limits)
        assert FindingKind.MALFORMED_STRUCTURE in kinds(outcome)
        assert outcome.inconclusive


class TestTar:
    def test_clean_tar(self, validator, limits) -> None:
        assert validator.validate(make_tar({"a.txt": b"hello"}), limits).findings == ()

    def test_symlink_escaping_root(self, validator, limits) -> None:
        data = make_tar({"a.txt": b"hello"}, links={"link": "/etc/passwd"})
        found = kinds(validator.validate(data, limits))
        assert FindingKind.SYMLINK_ENTRY in found
        assert FindingKind.PATH_TRAVERSAL in found

    def test_compressed_tar_is_not_nesting(self, validator) -> None:
        data = make_tar({"a.txt": b"hello"}, compression="gz")
        outcome = validator.validate(data, ResourceLimits(max_nested_depth=0))
        assert outcome.findings == ()

    def test_traversal_inside_compressed_tar(self, validator, limits) -> None:
        data = make_tar({"../escape.txt": b"x"}, compression="bz2")
        assert FindingKind.PATH_TRAVERSAL in kinds(validator.validate(data, limits))


class TestCompressedStreams:
    def test_gzip_bomb_with_lying_trailer_halts_early(self, validator, limits) -> None:
        data = make_gzip_bomb(8 * MIB)
        outcome = validator.validate(data, limits)
        assert limit_findings(outcome, ResourceLimitKind.EXPANSION)
        # Stopped at the ceiling instead of inflating all 8 MiB
        assert outcome.bytes_processed < 2 * MIB

    def test_truncated_gzip(self, validator, limits) -> None:
        # Short enough that no ISIZE trailer is present
        data = gzip.compress(b"hello world" * 100)[:16]
        assert FindingKind.MALFORMED_STRUCTURE in kinds(validator.validate(data, limits))

    def test_multi_member_gzip_is_clean(self, validator, limits) -> None:
        data = gzip.compress(b"first member\n" * 50) + gzip.compress(b"second member\n" * 50)
        assert validator.validate(data, limits).findings == ()

    def test_bomb_in_a_later_member_is_inflated(self, validator, limits) -> None:
        data = gzip.compress(b"harmless\n") + make_gzip_bomb(8 * MIB)
        assert limit_findings(validator.validate(data, limits), ResourceLimitKind.EXPANSION)

    def test_compressed_tar_spanning_many_chunks(self, validator, limits) -> None:
        lines = b"".join(b"record %08d %s\n" % (i, str(i * 7919).encode()) for i in range(60000))
        data = make_tar({"records.log": lines, "notes.txt": b"done"}, compression="gz")
        assert len(data) > 64 * 1024
        outcome = validator.validate(data, limits)
        assert outcome.findings == ()
        assert outcome.bytes_processed >= len(lines)

    def test_unsupported_format_is_inconclusive(self, validator, limits) -> None:
        outcome = validator.validate(b"Rar!\x1a\x07\x00" + b"\x00" * 32, limits)
        assert outcome.inconclusive
