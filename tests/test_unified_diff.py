import re

import pytest

from aitool_cli.colors import Colors
from aitool_cli.unified_diff import EditKind, colorize_diff, compute_edits, unified_diff


def _hunk_count(text: str) -> int:
    return len(re.findall(r"^@@", text, flags=re.MULTILINE))


def test_identical_inputs_produce_empty_string():
    text = '{"a": 1}\n'
    assert unified_diff(text, text, "a/f", "b/f") == ""
    assert unified_diff("", "", "a", "b") == ""


def test_headers_and_markers():
    result = unified_diff("hello\n", "world\n", "a/file", "b/file")

    lines = result.split("\n")
    assert lines[0] == "--- a/file"
    assert lines[1] == "+++ b/file"
    assert "-hello" in lines
    assert "+world" in lines


def test_added_line_from_empty_text():
    assert "+new line" in unified_diff("", "new line\n", "a", "b")


def test_context_lines_have_leading_space():
    result = unified_diff("ctx\nold\nctx\n", "ctx\nnew\nctx\n", "a", "b")
    assert [line for line in result.split("\n") if line.startswith(" ctx")]


def test_hunk_header_format():
    result = unified_diff("a\nb\nc\n", "a\nx\nc\n", "a", "b")
    assert re.search(r"^@@ -1,4 \+1,4 @@$", result, flags=re.MULTILINE)


def test_context_window_excludes_distant_lines():
    shared = "\n".join(f"line{i}" for i in range(1, 11))
    result = unified_diff(shared + "\nold\n", shared + "\nnew\n", "a", "b", 3)

    assert " line7\n" not in result
    assert " line8\n" in result
    assert " line9\n" in result
    assert " line10\n" in result


def test_nearby_changes_merge_into_one_hunk():
    result = unified_diff("a\nb\nc\nd\ne\nf\ng\n", "A\nb\nc\nd\ne\nf\nG\n", "a", "b", 3)
    assert _hunk_count(result) == 1


def test_distant_changes_produce_two_hunks():
    from_lines = [f"line{i}" for i in range(1, 21)]
    to_lines = list(from_lines)
    to_lines[0] = "CHANGED"
    to_lines[19] = "CHANGED"

    result = unified_diff("\n".join(from_lines), "\n".join(to_lines), "a", "b", 3)

    assert _hunk_count(result) == 2
    assert "@@ -1,4 +1,4 @@" in result
    assert "@@ -17,4 +17,4 @@" in result


def test_compute_edits_annotates_line_numbers():
    edits = compute_edits(["a", "b", "c"], ["a", "c", "d"])

    assert [(e.kind, e.text) for e in edits] == [
        (EditKind.EQUAL, "a"),
        (EditKind.DELETE, "b"),
        (EditKind.EQUAL, "c"),
        (EditKind.INSERT, "d"),
    ]
    assert edits[1].from_line == 2
    assert edits[3].to_line == 3


def test_colorize_headers_bold_dim():
    result = colorize_diff("--- a/file\n+++ b/file")
    first, second = result.split("\n")
    assert first == Colors.BOLD + Colors.DIM + "--- a/file" + Colors.RESET
    assert second == Colors.BOLD + Colors.DIM + "+++ b/file" + Colors.RESET


def test_colorize_hunks_and_changes():
    assert colorize_diff("@@ -1,1 +1,1 @@") == Colors.CYAN + "@@ -1,1 +1,1 @@" + Colors.RESET
    assert colorize_diff("-removed line") == Colors.RED + "-removed line" + Colors.RESET
    assert colorize_diff("+added line") == Colors.GREEN + "+added line" + Colors.RESET


def test_colorize_leaves_context_unstyled():
    line = " unchanged line"
    assert colorize_diff(line) == line


def _two_insertions(gap: int):
    """Insert a line before line 1 and another after `gap` unchanged lines."""
    from_lines = [f"line{i}" for i in range(1, 21)]
    to_lines = ["X"] + from_lines[:gap] + ["Y"] + from_lines[gap:]
    return "\n".join(from_lines), "\n".join(to_lines)


@pytest.mark.parametrize("gap", [6, 7, 8])
def test_changes_within_three_context_windows_share_a_hunk(gap):
    from_text, to_text = _two_insertions(gap)

    result = unified_diff(from_text, to_text, "a", "b", 3)

    assert _hunk_count(result) == 1
    assert f"@@ -1,{gap + 3} +1,{gap + 5} @@" in result


def test_changes_nine_lines_apart_split():
    from_text, to_text = _two_insertions(9)

    result = unified_diff(from_text, to_text, "a", "b", 3)

    assert _hunk_count(result) == 2
    assert "@@ -1,3 +1,4 @@" in result
    assert "@@ -7,6 +8,7 @@" in result
