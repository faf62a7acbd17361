"""Command-line behaviour: outputs, exit statuses and policy errors."""

import json

from conftest import elf_binary, make_png
from uploadguard.cli import expand_paths, main


class TestScan:
    def test_clean_directory_exits_zero(self, tmp_path, capsys) -> None:
        (tmp_path / "b.txt").write_bytes(b"second")
        (tmp_path / "sub").mkdir()
        (tmp_path / "sub" / "a.txt").write_bytes(b"first")
        status = main(["scan", str(tmp_path)])
        assert status == 0
        lines = [json.loads(line) for line in capsys.readouterr().out.splitlines()]
        assert [line["identifier"] for line in lines] == [
            str(tmp_path / "b.txt"),
            str(tmp_path / "sub" / "a.txt"),
        ]
        assert all(line["decision"]["outcome"] == "ALLOW" for line in lines)

    def test_denied_file_exits_one(self, tmp_path) -> None:
        path = tmp_path / "tool"
        path.write_bytes(elf_binary())
        summary = tmp_path / "summary.json"
        report = tmp_path / "report.jsonl"
        status = main(["scan", str(path), "--json", str(report), "--summary", str(summary)])
        assert status == 1
        assert json.loads(summary.read_text())["by_decision"]["DENY"] == 1
        assert json.loads(report.read_text().splitlines()[0])["decision"]["outcome"] == "DENY"

    def test_fail_on_warn_exits_three(self, tmp_path) -> None:
        path = tmp_path / "photo.txt"
        path.write_bytes(make_png())
        assert main(["scan", str(path)]) == 0
        assert main(["scan", str(path), "--fail-on", "warn"]) == 3

    def test_fail_on_none_ignores_denials(self, tmp_path) -> None:
        path = tmp_path / "tool"
        path.write_bytes(elf_binary())
        assert main(["scan", str(path), "--fail-on", "none"]) == 0

    def test_missing_file_exits_two(self, tmp_path) -> None:
        assert main(["scan", str(tmp_path / "absent.bin")]) == 2

    def test_invalid_policy_exits_four(self, tmp_path) -> None:
        policy = tmp_path / "policy.yaml"
        policy.write_text("rules:\n  a: {when: {size_gt: 1}, outcome: maybe}\n")
        (tmp_path / "a.txt").write_bytes(b"x")
        assert main(["scan", str(tmp_path / "a.txt"), "--policy", str(policy)]) == 4

    def test_text_format(self, tmp_path, capsys) -> None:
        path = tmp_path / "a.txt"
        path.write_bytes(b"hello")
        assert main(["scan", str(path), "--format", "text"]) == 0
        out = capsys.readouterr().out
        assert "decision: ALLOW" in out
        assert "[Summary]" in out


def test_expand_paths_sorts_directory_contents(tmp_path) -> None:
    for name in ("c", "a", "b"):
        (tmp_path / name).write_bytes(b"x")
    assert [name for name, _ in expand_paths([str(tmp_path)])] == [
        str(tmp_path / "a"),
        str(tmp_path / "b"),
        str(tmp_path / "c"),
    ]
