"""
Line-based unified diff used for `agent configure --dry-run` previews.

The edit script comes from a longest-common-subsequence table, so the output
is a minimal diff. Rendering follows the `diff -u` conventions exactly because
the preview may be piped into other tools.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import List, Sequence, Tuple

from aitool_cli.colors import Colors


class EditKind(enum.Enum):
    EQUAL = " "
    DELETE = "-"
    INSERT = "+"


@dataclass
class Edit:
    """One step of an edit script.

    ``from_line`` is valid for EQUAL and DELETE edits, ``to_line`` for EQUAL
    and INSERT edits. Both are 1-based.
    """
    kind: EditKind
    text: str
    from_line: int = 0
    to_line: int = 0


def compute_edits(from_lines: Sequence[str], to_lines: Sequence[str]) -> List[Edit]:
    """Compute the shortest edit script between two line sequences."""
    m = len(from_lines)
    n = len(to_lines)

    dp = [[0] * (n + 1) for _ in range(m + 1)]
    for i in range(1, m + 1):
        row, prev = dp[i], dp[i - 1]
        for j in range(1, n + 1):
            if from_lines[i - 1] == to_lines[j - 1]:
                row[j] = prev[j - 1] + 1
            else:
                row[j] = max(prev[j], row[j - 1])

    # Backtrack from (m, n); ties prefer insertions.
    edits: List[Edit] = []
    i, j = m, n
    while i > 0 or j > 0:
        if i > 0 and j > 0 and from_lines[i - 1] == to_lines[j - 1]:
            edits.append(Edit(EditKind.EQUAL, from_lines[i - 1]))
            i -= 1
            j -= 1
        elif j > 0 and (i == 0 or dp[i][j - 1] >= dp[i - 1][j]):
            edits.append(Edit(EditKind.INSERT, to_lines[j - 1]))
            j -= 1
        else:
            edits.append(Edit(EditKind.DELETE, from_lines[i - 1]))
            i -= 1
    edits.reverse()

    return _annotate(edits)


def _annotate(edits: List[Edit]) -> List[Edit]:
    from_line = 1
    to_line = 1
    for edit in edits:
        edit.from_line = from_line
        edit.to_line = to_line
        if edit.kind is not EditKind.INSERT:
            from_line += 1
        if edit.kind is not EditKind.DELETE:
            to_line += 1
    return edits


def _hunk_ranges(edits: List[Edit], context: int) -> List[Tuple[int, int]]:
    """Group change indices into inclusive (start, end) ranges of edit indices."""
    change_idxs = [idx for idx, e in enumerate(edits) if e.kind is not EditKind.EQUAL]
    if not change_idxs:
        return []

    last = len(edits) - 1
    ranges: List[Tuple[int, int]] = []
    start = max(0, change_idxs[0] - context)
    end = min(last, change_idxs[0] + context)

    for idx in change_idxs[1:]:
        # Left-expanded start against the hunk end widened by one more context window:
        # changes separated by fewer than 3 * context unchanged lines share a hunk.
        if idx - context <= end + context:
            end = min(last, idx + context)
        else:
            ranges.append((start, end))
            start = max(0, idx - context)
            end = min(last, idx + context)

    ranges.append((start, end))
    return ranges


def _render_hunk(hunk: List[Edit]) -> str:
    from_start = next((e.from_line for e in hunk if e.kind is not EditKind.INSERT), 0)
    to_start = next((e.to_line for e in hunk if e.kind is not EditKind.DELETE), 0)

    from_count = 0
    to_count = 0
    lines = []
    for edit in hunk:
        if edit.kind is not EditKind.INSERT:
            from_count += 1
        if edit.kind is not EditKind.DELETE:
            to_count += 1
        lines.append(edit.kind.value + edit.text)

    header = f"@@ -{from_start},{from_count} +{to_start},{to_count} @@"
    return "\n".join([header] + lines)


def unified_diff(
    from_text: str,
    to_text: str,
    from_label: str,
    to_label: str,
    context: int = 3,
) -> str:
    """
    Produce a unified diff between two texts.

    Returns an empty string when the texts are identical.
    """
    if from_text == to_text:
        return ""

    edits = compute_edits(from_text.split("\n"), to_text.split("\n"))
    ranges = _hunk_ranges(edits, context)
    if not ranges:
        return ""

    hunks = [_render_hunk(edits[start:end + 1]) for start, end in ranges]
    return "\n".join([f"--- {from_label}", f"+++ {to_label}"] + hunks)


def colorize_diff(diff_text: str) -> str:
    """Wrap unified diff lines in terminal color codes for display."""
    out = []
    for line in diff_text.split("\n"):
        if line.startswith("---") or line.startswith("+++"):
            out.append(Colors.BOLD + Colors.DIM + line + Colors.RESET)
        elif line.startswith("@@"):
            out.append(Colors.CYAN + line + Colors.RESET)
        elif line.startswith("-"):
            out.append(Colors.RED + line + Colors.RESET)
        elif line.startswith("+"):
            out.append(Colors.GREEN + line + Colors.RESET)
        else:
            out.append(line)
    return "\n".join(out)
