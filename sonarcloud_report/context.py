"""Source context around uncovered lines.

Usage:
    ranges = build_context_ranges(details.uncovered_lines, context=2)
    lines  = render_context(details.uncovered_lines, 2, read_source(path))
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Mapping

from sonarcloud_report.models import UncoveredLine

MARK_UNCOVERED = "uncovered"
MARK_NEW = "new"


@dataclass(frozen=True)
class ContextLine:
    number: int
    code: str
    mark: str | None = None


def _line_number(item: int | UncoveredLine) -> int:
    return item.line if isinstance(item, UncoveredLine) else int(item)


def build_context_ranges(lines: Iterable[int | UncoveredLine], context: int) -> list[tuple[int, int]]:
    """Merge uncovered line numbers and *context* lines around them into ranges.

    Returns sorted, disjoint, non-adjacent ``(start, end)`` pairs, 1-indexed
    and inclusive. Ranges that overlap or touch are merged.
    """
    if context < 0:
        raise ValueError("context must be >= 0")

    numbers = sorted(_line_number(item) for item in lines)
    if not numbers:
        return []

    ranges: list[tuple[int, int]] = []
    start, end = max(1, numbers[0] - context), numbers[0] + context
    for number in numbers[1:]:
        cand_start, cand_end = max(1, number - context), number + context
        if cand_start <= end + 1:
            end = max(end, cand_end)
        else:
            ranges.append((start, end))
            start, end = cand_start, cand_end
    ranges.append((start, end))
    return ranges


def _truncate(code: str, truncate: int) -> str:
    if truncate <= 0 or len(code) <= truncate:
        return code
    # no room for an ellipsis below four characters
    if truncate <= 3:
        return code[:truncate]
    return code[:truncate - 3] + "..."


def render_context(
    uncovered: Iterable[UncoveredLine],
    context: int,
    source: Mapping[int, str] | None = None,
    truncate: int = 0,
) -> list[ContextLine | None]:
    """Lay out the lines to display for one file.

    Each range from :func:`build_context_ranges` contributes its lines in
    order; ``None`` separates consecutive ranges. Uncovered lines are marked
    ``"uncovered"`` (or ``"new"`` for new code), context lines are unmarked.
    Without *source*, only the uncovered lines themselves can be shown.
    """
    by_number = {line.line: line for line in uncovered}
    out: list[ContextLine | None] = []

    for start, end in build_context_ranges(by_number.values(), context):
        if out:
            out.append(None)
        for number in range(start, end + 1):
            line = by_number.get(number)
            if source is not None and number in source:
                code = source[number]
            elif line is not None:
                code = line.code
            else:
                continue
            mark = None
            if line is not None:
                mark = MARK_NEW if line.is_new else MARK_UNCOVERED
            out.append(ContextLine(number, _truncate(code, truncate), mark))
    return out


def read_source(path: str | Path) -> dict[int, str] | None:
    """Read a local checkout of *path* as ``{line_number: text}``, or ``None``."""
    p = Path(path)
    if not p.is_file():
        return None
    try:
        text = p.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return None
    return {i: line for i, line in enumerate(text.splitlines(), start=1)}
