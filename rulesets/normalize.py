#!/usr/bin/env python3
"""
normalize.py

Convert host list lines into canonical rule text.

Two rule forms are produced:
  domain  — `+.example.com` (the domain and all of its subdomains)
  ip      — `1.2.3.4/32`, `2001:db8::/32` (CIDR blocks)

Input lines are classified first (see classify.py): blank lines are dropped,
leading comments are preserved, later comments are dropped and everything
else is a data line. Only the first column of a data line is consulted.
Lines that yield no rule are dropped silently.

Modes:
  domain  — data lines -> domain rules
  ip      — data lines -> CIDR rules
  mixed   — every data line is offered to both normalizers, two outputs

Usage:
    python -m rulesets.normalize domain INPUT OUTPUT [--sep SEP]
    python -m rulesets.normalize ip INPUT OUTPUT [--ipv4-only]
    python -m rulesets.normalize mixed INPUT DOMAIN_OUTPUT IP_OUTPUT

INPUT and OUTPUT may be "-" for stdin/stdout in domain and ip modes.
"""

from __future__ import annotations

import argparse
import io
import ipaddress
import logging
import re
import sys
from os import PathLike
from pathlib import Path
from typing import Iterable, Iterator, Mapping, TextIO

from rulesets import utils
from rulesets.classify import LineKind, ParseState, classify_line

IO_BUFFER_SIZE = utils.IO_BUFFER_SIZE
NS_KEYS = utils.NORMALIZE_STATS_KEYS

logging.basicConfig(
    level=logging.INFO, format="%(levelname)s:%(name)s:%(message)s"
)
logger = logging.getLogger(__name__)

DOMAIN = "domain"
IP = "ip"
MIXED = "mixed"
MODES = (DOMAIN, IP, MIXED)

# where header comments go in mixed mode
HEADERS_BOTH = "both"
HEADERS_DOMAIN = "domain"
MIXED_HEADER_POLICIES = (HEADERS_BOTH, HEADERS_DOMAIN)

_CHANNELS = {
    DOMAIN: (DOMAIN,),
    IP: (IP,),
    MIXED: (DOMAIN, IP),
}

# Domain grammar
_PORT_SUFFIX_RE = re.compile(r":[0-9]+\Z")
_DOMAIN_RE = re.compile(r"\.?[A-Za-z0-9-]+(?:\.[A-Za-z0-9-]+)*")
_DIGITS_AND_DOTS_RE = re.compile(r"[0-9.]+")

# IP grammar (all anchored at the token start via .match)
_IPV4_PREFIX_RE = re.compile(r"[0-9]{1,3}(?:\.[0-9]{1,3}){3}")
_BRACKETED_IPV6_RE = re.compile(r"\[([0-9A-Fa-f:]+)\]")
_BARE_IPV6_RE = re.compile(r"[0-9A-Fa-f:]+")
_PORT_PREFIX_RE = re.compile(r":[0-9]+")
# leading zeros are dropped; more than three significant digits is never a valid prefix
_CIDR_SUFFIX_RE = re.compile(r"/0*([0-9]{1,3})")


# ----------------------------------------
# Normalizers
# ----------------------------------------
def normalize_domain(token: str) -> str | None:
    """
    Return a domain-suffix rule for `token`, or None if it is not a domain.

    Accepts bare TLDs (`org`), domains (`example.com`), a single leading dot
    (`.example.com`) and a trailing port (`example.com:443`). Rejects empty
    labels, paths, invalid characters and anything made only of digits and
    dots (`1.2.3.4`, `123`).
    """
    host = _PORT_SUFFIX_RE.sub("", token)
    if not _DOMAIN_RE.fullmatch(host):
        return None
    # validate first, then exclude IP-looking strings
    if _DIGITS_AND_DOTS_RE.fullmatch(host):
        return None
    if host.startswith("."):
        return "+" + host
    return utils.DOMAIN_SUFFIX_PREFIX + host


def _split_ip_token(token: str, allow_ipv6: bool) -> tuple[str, str, int] | None:
    """Return (address, rest, max_prefix) for the leading address, or None."""
    m = _IPV4_PREFIX_RE.match(token)
    if m:
        return m.group(0), token[m.end():], utils.IPV4_MAX_PREFIX
    if not allow_ipv6:
        return None

    m = _BRACKETED_IPV6_RE.match(token)
    if m:
        address = m.group(1)
    else:
        m = _BARE_IPV6_RE.match(token)
        # a run without ':' is a plain number, never an address
        if not m or ":" not in m.group(0):
            return None
        address = m.group(0)

    try:
        ipaddress.IPv6Address(address)
    except ValueError:
        return None
    return address, token[m.end():], utils.IPV6_MAX_PREFIX


def normalize_ip(token: str, allow_ipv6: bool = True) -> str | None:
    """
    Return a CIDR rule for `token`, or None if it is not an address.

    Recognized shapes, in order: dotted-quad IPv4, `[IPv6]`, bare IPv6. The
    address may be followed by `:port`, then by `/prefix`, in that order.
    Without a prefix the host length (/32 or /128) is used.
    """
    parsed = _split_ip_token(token, allow_ipv6)
    if parsed is None:
        return None
    address, rest, max_prefix = parsed

    port = _PORT_PREFIX_RE.match(rest)
    if port:
        rest = rest[port.end():]

    if not rest:
        prefix = max_prefix
    else:
        cidr = _CIDR_SUFFIX_RE.fullmatch(rest)
        if not cidr:
            return None
        prefix = int(cidr.group(1))

    if not 0 <= prefix <= max_prefix:
        return None
    return f"{address}/{prefix}"


# ----------------------------------------
# Stream driver
# ----------------------------------------
def output_channels(mode: str) -> tuple[str, ...]:
    """Return the output channel names produced by `mode`."""
    try:
        return _CHANNELS[mode]
    except (KeyError, TypeError):
        raise ValueError(
            f"Unknown mode {mode!r}; expected one of {', '.join(MODES)}"
        ) from None


def _header_channels(mode: str, mixed_headers: str) -> tuple[str, ...]:
    if mixed_headers not in MIXED_HEADER_POLICIES:
        raise ValueError(
            f"Unknown mixed header policy {mixed_headers!r}; "
            f"expected one of {', '.join(MIXED_HEADER_POLICIES)}"
        )
    if mode == MIXED and mixed_headers == HEADERS_DOMAIN:
        return (DOMAIN,)
    return output_channels(mode)


def _resolve_separator(separator: str | re.Pattern[str] | None) -> re.Pattern[str]:
    if isinstance(separator, re.Pattern):
        return separator
    return utils.compile_separator(separator)


def iter_rules(
    lines: Iterable[str],
    mode: str = DOMAIN,
    separator: str | re.Pattern[str] | None = None,
    *,
    allow_ipv6: bool = True,
    mixed_headers: str = HEADERS_BOTH,
    stats: dict[str, int | str] | None = None,
) -> Iterator[tuple[str, str]]:
    """
    Yield (channel, text) pairs for `lines` in input order.

    Configuration (mode, separator, header policy) is validated eagerly, so
    errors surface before the first line is read.
    """
    channels = output_channels(mode)
    headers_to = _header_channels(mode, mixed_headers)
    sep = _resolve_separator(separator)
    if stats is None:
        stats = utils.new_stats()
    for key in utils.NORMALIZE_SUMMARY_ORDER:
        stats.setdefault(key, 0)
    return _iter_rules(lines, channels, headers_to, sep, allow_ipv6, stats)


def _iter_rules(
    lines: Iterable[str],
    channels: tuple[str, ...],
    headers_to: tuple[str, ...],
    sep: re.Pattern[str],
    allow_ipv6: bool,
    stats: dict[str, int | str],
) -> Iterator[tuple[str, str]]:
    state = ParseState()
    want_domain = DOMAIN in channels
    want_ip = IP in channels

    for line in lines:
        stats[NS_KEYS.LINES_IN] += 1
        kind = classify_line(line, state)

        if kind is LineKind.BLANK:
            stats[NS_KEYS.BLANK_DROPPED] += 1
            continue
        if kind is LineKind.COMMENT:
            stats[NS_KEYS.COMMENTS_DROPPED] += 1
            continue
        if kind is LineKind.HEADER:
            stats[NS_KEYS.HEADERS_KEPT] += 1
            text = utils.strip_line_ending(line)
            for channel in headers_to:
                yield channel, text
            continue

        stats[NS_KEYS.DATA_LINES] += 1
        token = utils.extract_host_token(line, sep)
        emitted = False

        if want_domain:
            rule = normalize_domain(token)
            if rule is not None:
                stats[NS_KEYS.DOMAIN_OUT] += 1
                emitted = True
                yield DOMAIN, rule
        if want_ip:
            rule = normalize_ip(token, allow_ipv6=allow_ipv6)
            if rule is not None:
                stats[NS_KEYS.IP_OUT] += 1
                emitted = True
                yield IP, rule

        if not emitted:
            stats[NS_KEYS.REJECTED] += 1


def normalize_stream(
    lines: Iterable[str],
    outputs: Mapping[str, TextIO],
    mode: str = DOMAIN,
    separator: str | re.Pattern[str] | None = None,
    *,
    allow_ipv6: bool = True,
    mixed_headers: str = HEADERS_BOTH,
    stats: dict[str, int | str] | None = None,
) -> dict[str, int | str]:
    """
    Write canonical lines for `lines` to `outputs` (channel -> text stream).

    Returns the stats dict that was filled in.
    """
    missing = [ch for ch in output_channels(mode) if ch not in outputs]
    if missing:
        raise ValueError(f"Missing output stream(s) for: {', '.join(missing)}")
    if stats is None:
        stats = utils.new_stats()
    for channel, text in iter_rules(
        lines,
        mode,
        separator,
        allow_ipv6=allow_ipv6,
        mixed_headers=mixed_headers,
        stats=stats,
    ):
        outputs[channel].write(text + "\n")
    return stats


def normalize_text(
    text: str,
    mode: str = DOMAIN,
    separator: str | re.Pattern[str] | None = None,
    *,
    allow_ipv6: bool = True,
    mixed_headers: str = HEADERS_BOTH,
    stats: dict[str, int | str] | None = None,
) -> dict[str, list[str]]:
    """Return canonical lines per channel for an in-memory document."""
    result: dict[str, list[str]] = {ch: [] for ch in output_channels(mode)}
    for channel, line in iter_rules(
        io.StringIO(text),
        mode,
        separator,
        allow_ipv6=allow_ipv6,
        mixed_headers=mixed_headers,
        stats=stats,
    ):
        result[channel].append(line)
    return result


# ----------------------------------------
# Files
# ----------------------------------------
def process_file(
    in_path: PathLike | str,
    out_paths: Mapping[str, PathLike | str],
    mode: str = DOMAIN,
    separator: str | re.Pattern[str] | None = None,
    allow_ipv6: bool = True,
    mixed_headers: str = HEADERS_BOTH,
) -> dict[str, int | str]:
    """
    Normalize one file and write each channel's output atomically.

    `out_paths` maps channel names ("domain", "ip") to destination files.
    Returns per-file statistics.
    """
    in_path_p = Path(in_path)
    channels = output_channels(mode)
    missing = [ch for ch in channels if ch not in out_paths]
    if missing:
        raise ValueError(f"Missing output path(s) for: {', '.join(missing)}")
    targets = {ch: Path(out_paths[ch]) for ch in channels}
    sep = _resolve_separator(separator)
    _header_channels(mode, mixed_headers)

    stats = utils.new_stats(
        in_path=str(in_path_p),
        out_path=", ".join(str(p) for p in targets.values()),
        mode=mode,
    )
    with in_path_p.open(
        "r", encoding="utf-8", errors="surrogateescape", buffering=IO_BUFFER_SIZE
    ) as inp, utils.atomic_writers(targets) as outputs:
        normalize_stream(
            inp,
            outputs,
            mode,
            sep,
            allow_ipv6=allow_ipv6,
            mixed_headers=mixed_headers,
            stats=stats,
        )
    return stats


def _process_file_worker(
    args: tuple[Path, dict[str, Path], str, re.Pattern[str], bool, str]
) -> dict[str, int | str]:
    """Worker function for parallel processing."""
    in_path, out_paths, mode, sep, allow_ipv6, mixed_headers = args
    return process_file(in_path, out_paths, mode, sep, allow_ipv6, mixed_headers)


def transform(
    input_path: PathLike | str,
    output_path: PathLike | str,
    mode: str = DOMAIN,
    separator: str | re.Pattern[str] | None = None,
    ip_output_path: PathLike | str | None = None,
    allow_ipv6: bool = True,
    mixed_headers: str = HEADERS_BOTH,
    parallel: bool = True,
) -> list[dict[str, int | str]]:
    """
    Normalize either a single file or all .txt files in a directory.
    Returns a list of per-file statistics.

    Args:
        input_path: Input file or directory
        output_path: Output file or directory (domain output in mixed mode)
        mode: "domain", "ip" or "mixed"
        separator: Field separator regex (default: runs of whitespace)
        ip_output_path: IP output file or directory, mixed mode only
        allow_ipv6: Accept IPv6 addresses in the ip normalizer
        mixed_headers: Header comment destination in mixed mode
        parallel: Use parallel processing for directories (default: True)
    """
    channels = output_channels(mode)
    _header_channels(mode, mixed_headers)
    sep = _resolve_separator(separator)
    if mode == MIXED and ip_output_path is None:
        raise ValueError("mixed mode requires an IP output path")

    inp = Path(input_path)
    ip_out = Path(ip_output_path) if ip_output_path is not None else None
    if inp.is_dir() and ip_out is not None:
        ip_out.mkdir(parents=True, exist_ok=True)

    def _build_job_args(src: Path, dest: Path) -> tuple:
        out_paths = {channels[0]: dest}
        if mode == MIXED:
            out_paths[IP] = ip_out / src.name if ip_out.is_dir() else ip_out
        return src, out_paths, mode, sep, allow_ipv6, mixed_headers

    return utils.process_text_rule_files(
        inp,
        Path(output_path),
        job_builder=_build_job_args,
        worker=_process_file_worker,
        parallel=parallel,
    )


def _print_summary(stats_list: list[dict[str, int | str]]) -> None:
    """Log aggregate statistics for all processed files."""
    summary = utils.format_summary(
        "normalize", stats_list, utils.NORMALIZE_SUMMARY_ORDER
    )
    logger.info(summary)


# ----------------------------------------
# CLI
# ----------------------------------------
def _build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        description="Convert host lists into domain-suffix and IP-CIDR rule text."
    )
    ap.add_argument("mode", choices=MODES, help="Which rule form(s) to extract")
    ap.add_argument("input", help="Input file or directory ('-' for stdin)")
    ap.add_argument("output", help="Output file or directory ('-' for stdout)")
    ap.add_argument(
        "ip_output", nargs="?", default=None, help="IP output path (mixed mode only)"
    )
    ap.add_argument(
        "--sep",
        default=None,
        help="Field separator regex (default: one or more whitespace characters)",
    )
    ap.add_argument(
        "--literal-sep",
        action="store_true",
        help="Treat --sep as a literal string rather than a regex",
    )
    ap.add_argument(
        "--ipv4-only", action="store_true", help="Reject IPv6 addresses in ip output"
    )
    ap.add_argument(
        "--mixed-headers",
        choices=MIXED_HEADER_POLICIES,
        default=HEADERS_BOTH,
        help="Where header comments go in mixed mode (default: both outputs)",
    )
    ap.add_argument(
        "--no-parallel", action="store_true", help="Process directory inputs serially"
    )
    return ap


def _run_stdio(args: argparse.Namespace, sep: re.Pattern[str]) -> dict[str, int | str]:
    """Handle '-' input/output for single-output modes."""
    channel = output_channels(args.mode)[0]
    if args.input == "-":
        inp: TextIO = io.TextIOWrapper(
            sys.stdin.buffer, encoding="utf-8", errors="surrogateescape"
        )
    else:
        inp = open(args.input, "r", encoding="utf-8", errors="surrogateescape")
    with inp:
        if args.output == "-":
            stats = normalize_stream(
                inp,
                {channel: sys.stdout},
                args.mode,
                sep,
                allow_ipv6=not args.ipv4_only,
            )
            sys.stdout.flush()
            return stats
        with utils.atomic_writers({channel: Path(args.output)}) as outputs:
            return normalize_stream(
                inp, outputs, args.mode, sep, allow_ipv6=not args.ipv4_only
            )


def main(argv: list[str] | None = None) -> int:
    ap = _build_parser()
    args = ap.parse_args(argv)

    if args.mode == MIXED:
        if args.ip_output is None:
            ap.error("mixed mode requires DOMAIN_OUTPUT and IP_OUTPUT")
        if "-" in (args.input, args.output, args.ip_output):
            ap.error("mixed mode does not support stdin/stdout")
    elif args.ip_output is not None:
        ap.error(f"{args.mode} mode takes a single output")

    try:
        sep = utils.compile_separator(args.sep, literal=args.literal_sep)
    except ValueError as exc:
        ap.error(str(exc))

    try:
        if args.mode != MIXED and "-" in (args.input, args.output):
            stats_list = [_run_stdio(args, sep)]
        else:
            stats_list = transform(
                args.input,
                args.output,
                args.mode,
                sep,
                ip_output_path=args.ip_output,
                allow_ipv6=not args.ipv4_only,
                mixed_headers=args.mixed_headers,
                parallel=not args.no_parallel,
            )
    except Exception as exc:
        logger.exception("ERROR in normalize: %s", exc)
        return 1

    _print_summary(stats_list)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
