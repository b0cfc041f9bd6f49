from __future__ import annotations

import re

from board_tap.errors import ExtractionError

Record = dict[str, str | None]


def extract(text: str, pattern: re.Pattern[str], multi: bool = False) -> list[Record]:
    """Apply a module pattern to raw source output.

    The pattern is searched across the whole text, so it may span lines.
    Single-match mode returns exactly one record and raises
    :class:`ExtractionError` when nothing matches. Multi-match mode returns one
    record per non-overlapping match, possibly none.
    """
    if multi:
        return [_record(match) for match in pattern.finditer(text)]
    match = pattern.search(text)
    if match is None:
        raise ExtractionError(f"pattern {pattern.pattern!r} did not match")
    return [_record(match)]


def _record(match: re.Match[str]) -> Record:
    return {name: match.group(name) for name in match.re.groupindex}
