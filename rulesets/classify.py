"""
classify.py

Line classification for host list streams.

Leading comment lines form the header region and are passed through; once the
first data line has been seen, later comments are dropped. The "data started"
latch lives in a ParseState owned by a single stream pass.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from rulesets import utils


class LineKind(Enum):
    BLANK = "blank"
    HEADER = "header"
    COMMENT = "comment"
    DATA = "data"


@dataclass
class ParseState:
    """Per-pass parser state; `data_started` only ever goes False -> True."""

    data_started: bool = False


def classify_line(line: str, state: ParseState) -> LineKind:
    """
    Classify one raw line and update `state`.

    Order matters: blank check, then comment check, then data.
    """
    if utils.is_blank_line(line):
        return LineKind.BLANK
    if utils.is_comment_line(line):
        return LineKind.COMMENT if state.data_started else LineKind.HEADER
    state.data_started = True
    return LineKind.DATA


__all__ = ["LineKind", "ParseState", "classify_line"]
