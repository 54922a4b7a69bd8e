# utils.py
"""
Shared helpers for turning third-party host lists into canonical rule text.

This module provides:
- Field separator configuration and first-column host token extraction
- Blank/comment line detection
- Atomic output writing for one or more destination files
- Per-file statistics keys and summary formatting
- Directory mirroring with optional process-pool parallelism

Example Usage:
    from rulesets.utils import compile_separator, extract_host_token

    sep = compile_separator(",")
    extract_host_token("example.com:443 # ads,1", sep)  # Returns: "example.com:443"
"""

from __future__ import annotations

import logging
import os
import re
import tempfile
from concurrent.futures import ProcessPoolExecutor
from contextlib import ExitStack, contextmanager
from pathlib import Path
from types import SimpleNamespace
from typing import Callable, Iterator, Mapping, Sequence, TextIO

logging.basicConfig(level=logging.INFO, format="%(levelname)s:%(name)s:%(message)s")
logger = logging.getLogger(__name__)


# -------------------------
# Precompiled regexes & constants
# -------------------------

# Canonical rule syntax
DOMAIN_SUFFIX_PREFIX = "+."
COMMENT_MARKER = "#"
IPV4_MAX_PREFIX = 32
IPV6_MAX_PREFIX = 128

# awk-style default: a single space means "runs of whitespace"
DEFAULT_SEPARATOR = r"\s+"
IO_BUFFER_SIZE = 131072  # 128KB buffer for file I/O

NORMALIZE_STATS_KEYS = SimpleNamespace(
    LINES_IN="lines_in",
    HEADERS_KEPT="headers_kept",
    COMMENTS_DROPPED="comments_dropped",
    BLANK_DROPPED="blank_dropped",
    DATA_LINES="data_lines",
    DOMAIN_OUT="domain_out",
    IP_OUT="ip_out",
    REJECTED="rejected",
)

NORMALIZE_SUMMARY_ORDER = (
    NORMALIZE_STATS_KEYS.LINES_IN,
    NORMALIZE_STATS_KEYS.HEADERS_KEPT,
    NORMALIZE_STATS_KEYS.COMMENTS_DROPPED,
    NORMALIZE_STATS_KEYS.BLANK_DROPPED,
    NORMALIZE_STATS_KEYS.DATA_LINES,
    NORMALIZE_STATS_KEYS.DOMAIN_OUT,
    NORMALIZE_STATS_KEYS.IP_OUT,
    NORMALIZE_STATS_KEYS.REJECTED,
)

_DEFAULT_SEPARATOR_RE = re.compile(DEFAULT_SEPARATOR)
_INLINE_COMMENT_RE = re.compile(r"\s*#.*$", flags=re.DOTALL)
# data line used to reject separators with zero-width matches
_SEPARATOR_SAMPLE_LINE = "ads.example.com,1.2.3.4:80/24;x|y\t z # note"


# -------------------------
# Basic helpers
# -------------------------


def new_stats(**extra: int | str) -> dict[str, int | str]:
    """Return a zeroed stats dict carrying every NORMALIZE_STATS_KEYS entry."""
    stats: dict[str, int | str] = dict(extra)
    for key in NORMALIZE_SUMMARY_ORDER:
        stats[key] = 0
    return stats


def strip_line_ending(line: str) -> str:
    """Remove the trailing newline (and carriage return) only."""
    return line.rstrip("\r\n")


def is_blank_line(line: str | None) -> bool:
    """True if line is None or only whitespace."""
    return line is None or line.strip() == ""


def is_comment_line(line: str | None) -> bool:
    """True if the first non-whitespace character is '#'."""
    if not line:
        return False
    return line.lstrip().startswith(COMMENT_MARKER)


def compile_separator(separator: str | None = None, literal: bool = False) -> re.Pattern[str]:
    """
    Compile the field separator used to cut a line into columns.

    None and a single space both select the default (one or more whitespace
    characters). With `literal=True` the separator is matched verbatim.

    Raises ValueError for an empty separator, an invalid regex, or a pattern
    that can match the empty string (zero-width matches such as `\\b` included,
    checked against a sample data line).
    """
    if separator is None or separator == " ":
        return _DEFAULT_SEPARATOR_RE
    if separator == "":
        raise ValueError("Field separator must not be empty")
    pattern = re.escape(separator) if literal else separator
    try:
        compiled = re.compile(pattern)
    except re.error as exc:
        raise ValueError(f"Invalid field separator {separator!r}: {exc}") from exc
    zero_width = any(m.end() == m.start() for m in compiled.finditer(_SEPARATOR_SAMPLE_LINE))
    if zero_width or compiled.fullmatch(""):
        raise ValueError(f"Field separator {separator!r} matches the empty string")
    return compiled


def extract_host_token(line: str, separator: re.Pattern[str] | None = None) -> str:
    """
    Return the host token of a data line: the first column with any inline
    '#' comment removed and surrounding whitespace trimmed.
    """
    sep = separator or _DEFAULT_SEPARATOR_RE
    text = strip_line_ending(line).lstrip()
    first = sep.split(text, maxsplit=1)[0]
    first = _INLINE_COMMENT_RE.sub("", first)
    return first.strip()


# -------------------------
# Filesystem helpers
# -------------------------


@contextmanager
def atomic_writers(
    targets: Mapping[str, Path], encoding: str = "utf-8", newline: str = "\n"
) -> Iterator[dict[str, TextIO]]:
    """
    Open one temporary file per target and yield them keyed like `targets`.

    On normal exit every temp file replaces its target; on error all temp
    files are removed and no target is touched.
    """
    tmp_paths: dict[str, Path] = {}
    try:
        with ExitStack() as stack:
            handles: dict[str, TextIO] = {}
            for key, target in targets.items():
                target = Path(target)
                target.parent.mkdir(parents=True, exist_ok=True)
                fh = stack.enter_context(
                    tempfile.NamedTemporaryFile(
                        "w",
                        encoding=encoding,
                        errors="surrogateescape",
                        newline=newline,
                        dir=target.parent,
                        prefix=".tmp_rules_",
                        delete=False,
                        buffering=IO_BUFFER_SIZE,
                    )
                )
                tmp_paths[key] = Path(fh.name)
                handles[key] = fh
            yield handles
        for key, target in targets.items():
            tmp_paths[key].replace(Path(target))
            del tmp_paths[key]
    finally:
        for tmp_path in tmp_paths.values():
            tmp_path.unlink(missing_ok=True)


def atomic_write_text(target: Path, text: str, encoding: str = "utf-8") -> None:
    """Atomically write `text` to `target`."""
    with atomic_writers({"out": Path(target)}, encoding=encoding) as handles:
        handles["out"].write(text)


def list_text_rule_files(directory: str | Path) -> list[Path]:
    """Return alphabetical list of *.txt files inside `directory`."""
    base = Path(directory)
    if not base.is_dir():
        raise FileNotFoundError(f"Input directory not found: {directory}")
    return [
        entry
        for entry in sorted(base.iterdir(), key=lambda p: p.name.lower())
        if entry.is_file() and entry.suffix.lower() == ".txt"
    ]


def summarize_stats(
    stats_list: list[dict[str, int | str]], keys: Sequence[str]
) -> dict[str, int]:
    """Aggregate totals for the provided keys across a list of stats dicts."""
    return {key: sum(int(s.get(key, 0)) for s in stats_list) for key in keys}


def format_summary(
    label: str, stats_list: list[dict[str, int | str]], keys: Sequence[str]
) -> str:
    """Return a space-joined summary string for CLI output."""
    totals = summarize_stats(stats_list, keys)
    parts = [f"{label}: files={len(stats_list)}"]
    parts.extend(f"{key}={totals.get(key, 0)}" for key in keys)
    return " ".join(parts)


def process_text_rule_files(
    input_path: str | Path,
    output_path: str | Path,
    job_builder: Callable[[Path, Path], tuple],
    worker: Callable[[tuple], dict[str, int | str]],
    parallel: bool = True,
) -> list[dict[str, int | str]]:
    """
    Apply a worker to text files under input_path, mirroring input/output layout.

    job_builder should return the argument tuple expected by worker.
    """
    inp = Path(input_path)
    outp = Path(output_path)
    results: list[dict[str, int | str]] = []

    if inp.is_dir():
        outp.mkdir(parents=True, exist_ok=True)
        pairs = [(entry, outp / entry.name) for entry in list_text_rule_files(inp)]
        if not pairs:
            return results
        jobs = [job_builder(src, dest) for src, dest in pairs]
        if parallel and len(jobs) > 1:
            max_workers = min(os.cpu_count() or 1, len(jobs))
            with ProcessPoolExecutor(max_workers=max_workers) as executor:
                for res in executor.map(worker, jobs):
                    results.append(res)
        else:
            for job in jobs:
                results.append(worker(job))
    elif inp.is_file():
        dest = outp / inp.name if outp.is_dir() else outp
        results.append(worker(job_builder(inp, dest)))
    else:
        raise FileNotFoundError(f"Input path not found: {input_path}")

    return results


# Exports
# -------------------------

__all__ = [
    # Functions
    "new_stats",
    "strip_line_ending",
    "is_blank_line",
    "is_comment_line",
    "compile_separator",
    "extract_host_token",
    "atomic_writers",
    "atomic_write_text",
    "list_text_rule_files",
    "summarize_stats",
    "format_summary",
    "process_text_rule_files",
    # Constants
    "DOMAIN_SUFFIX_PREFIX",
    "COMMENT_MARKER",
    "IPV4_MAX_PREFIX",
    "IPV6_MAX_PREFIX",
    "DEFAULT_SEPARATOR",
    "IO_BUFFER_SIZE",
    "NORMALIZE_STATS_KEYS",
    "NORMALIZE_SUMMARY_ORDER",
]
