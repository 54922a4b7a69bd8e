#!/usr/bin/env python3
"""
pipeline.py

Download host list sources and write canonical rule text for each.

Jobs:
  domain  — download, normalize to `+.domain` rules, write OUT
  ip      — download, normalize to CIDR rules, write OUT
  mixed   — download once, write domain rules to OUT and CIDR rules to IP_OUT

A `.mrs` destination is written as its `.txt` sibling; compiling the text into
a binary ruleset is left to the rule compiler.

Usage:
    python -m rulesets.pipeline domain URL OUT [--sep SEP]
    python -m rulesets.pipeline ip URL OUT [--sep SEP] [--ipv4-only]
    python -m rulesets.pipeline mixed URL DOMAIN_OUT IP_OUT [--sep SEP]
    python -m rulesets.pipeline sources sources.json [--concurrency N]

sources.json is a list of objects:
    {"kind": "mixed", "url": "...", "out": "rules/a.mrs", "ip_out": "rules/a-ip.mrs", "sep": ","}
"""

from __future__ import annotations

import argparse
import asyncio
import io
import json
import logging
import re
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import aiohttp

from rulesets import normalize, utils
from rulesets.fetch_sources import (
    DEFAULT_RETRIES,
    DEFAULT_RETRY_DELAY,
    DEFAULT_TIMEOUT,
    FetchError,
    env_settings,
    fetch_bytes,
    non_negative,
)

DOMAIN = normalize.DOMAIN
IP = normalize.IP
MIXED = normalize.MIXED

DEFAULT_CONCURRENCY = 8
COMPILED_SUFFIX = ".mrs"

_TAGS = {DOMAIN: "D", IP: "I", MIXED: "D+I"}
_SOURCE_KEYS = {"kind", "url", "out", "ip_out", "sep"}

logger = logging.getLogger("pipeline")


# ----------------------------------------
# Helpers
# ----------------------------------------
def _configure_logging() -> logging.Logger:
    """Return configured pipeline logger with a clean, single-line format."""
    logging.basicConfig(
        level=logging.INFO, format="%(message)s", force=True, stream=sys.stdout
    )
    return logging.getLogger("pipeline")


def text_target(path: str | Path) -> Path:
    """Map a compiled ruleset path (`x.mrs`) to the text file it is built from."""
    p = Path(path)
    if p.suffix == COMPILED_SUFFIX:
        return p.with_suffix(".txt")
    return p


@dataclass
class Source:
    """One list to download and normalize."""

    kind: str
    url: str
    out: Path
    ip_out: Path | None = None
    sep: str | None = None
    pattern: re.Pattern[str] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        normalize.output_channels(self.kind)
        if not self.url:
            raise ValueError("source url must not be empty")
        self.out = Path(self.out)
        if self.kind == MIXED:
            if self.ip_out is None:
                raise ValueError(f"mixed source {self.url} requires ip_out")
            self.ip_out = Path(self.ip_out)
        elif self.ip_out is not None:
            raise ValueError(f"{self.kind} source {self.url} takes no ip_out")
        # fail on a bad separator before anything is fetched
        self.pattern = utils.compile_separator(self.sep)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Source:
        if not isinstance(data, dict):
            raise ValueError(f"source entry must be an object, got {type(data).__name__}")
        unknown = set(data) - _SOURCE_KEYS
        if unknown:
            raise ValueError(f"unknown source key(s): {', '.join(sorted(unknown))}")
        for key in ("kind", "url", "out"):
            if key not in data:
                raise ValueError(f"source entry missing {key!r}")
        return cls(
            kind=data["kind"],
            url=data["url"],
            out=data["out"],
            ip_out=data.get("ip_out"),
            sep=data.get("sep"),
        )

    def targets(self) -> dict[str, Path]:
        """Return channel -> text output path."""
        if self.kind == MIXED:
            return {DOMAIN: text_target(self.out), IP: text_target(self.ip_out)}
        return {self.kind: text_target(self.out)}

    def label(self) -> str:
        names = " + ".join(p.name for p in self.targets().values())
        return f"  [{_TAGS[self.kind]}] {names}"


def load_sources(path: str | Path) -> list[Source]:
    """Load and validate a JSON list of sources."""
    with Path(path).open("r", encoding="utf-8") as fh:
        raw = json.load(fh)
    if not isinstance(raw, list):
        raise ValueError(f"{path}: expected a JSON list of sources")
    sources: list[Source] = []
    for idx, entry in enumerate(raw):
        try:
            sources.append(Source.from_dict(entry))
        except ValueError as exc:
            raise ValueError(f"{path}: source #{idx}: {exc}") from exc
    return sources


def write_rules(
    data: bytes,
    source: Source,
    allow_ipv6: bool = True,
    mixed_headers: str = normalize.HEADERS_BOTH,
) -> dict[str, int | str]:
    """Normalize downloaded bytes and write the source's text outputs."""
    text = data.decode("utf-8", errors="surrogateescape")
    targets = source.targets()
    stats = utils.new_stats(
        in_path=source.url,
        out_path=", ".join(str(p) for p in targets.values()),
        mode=source.kind,
    )
    with utils.atomic_writers(targets) as outputs:
        normalize.normalize_stream(
            io.StringIO(text),
            outputs,
            source.kind,
            source.pattern,
            allow_ipv6=allow_ipv6,
            mixed_headers=mixed_headers,
            stats=stats,
        )
    return stats


# ----------------------------------------
# Pipeline core
# ----------------------------------------
async def process_source(
    session: aiohttp.ClientSession,
    source: Source,
    *,
    retries: int = DEFAULT_RETRIES,
    retry_delay: float = DEFAULT_RETRY_DELAY,
    timeout: float = DEFAULT_TIMEOUT,
    allow_ipv6: bool = True,
    mixed_headers: str = normalize.HEADERS_BOTH,
) -> dict[str, int | str]:
    """Download one source (once, even in mixed mode) and write its outputs."""
    logger.info(source.label())
    data = await fetch_bytes(
        session, source.url, retries=retries, retry_delay=retry_delay, timeout=timeout
    )
    return write_rules(data, source, allow_ipv6, mixed_headers)


async def run_sources(
    sources: list[Source],
    *,
    concurrency: int = DEFAULT_CONCURRENCY,
    **options: Any,
) -> tuple[list[dict[str, int | str]], list[tuple[Source, str]]]:
    """
    Process all sources concurrently over one session.

    Returns (stats for successful sources in input order, [(source, reason)]
    for failed ones). One failing source does not stop the others.
    """
    if concurrency < 1:
        raise ValueError(f"concurrency must be at least 1, got {concurrency}")
    if options.get("retries", 0) < 0:
        raise ValueError(f"retries must not be negative, got {options['retries']}")
    mixed_headers = options.get("mixed_headers", normalize.HEADERS_BOTH)
    if mixed_headers not in normalize.MIXED_HEADER_POLICIES:
        raise ValueError(f"Unknown mixed header policy {mixed_headers!r}")
    sem = asyncio.Semaphore(concurrency)
    connector = aiohttp.TCPConnector(limit=concurrency)

    async def _run_one(session: aiohttp.ClientSession, source: Source):
        async with sem:
            try:
                return await process_source(session, source, **options)
            except (FetchError, OSError) as exc:
                return exc

    async with aiohttp.ClientSession(connector=connector) as session:
        outcomes = await asyncio.gather(*(_run_one(session, s) for s in sources))

    stats_list: list[dict[str, int | str]] = []
    failures: list[tuple[Source, str]] = []
    for source, outcome in zip(sources, outcomes):
        if isinstance(outcome, Exception):
            failures.append((source, str(outcome)))
        else:
            stats_list.append(outcome)
    return stats_list, failures


def _proc_one(source: Source, **options: Any) -> dict[str, int | str]:
    async def _run() -> dict[str, int | str]:
        async with aiohttp.ClientSession() as session:
            return await process_source(session, source, **options)

    return asyncio.run(_run())


def proc_domain(url: str, out: str | Path, sep: str | None = None, **options: Any) -> dict[str, int | str]:
    """Download a domain list and write `+.domain` rules."""
    return _proc_one(Source(DOMAIN, url, out, sep=sep), **options)


def proc_ip(url: str, out: str | Path, sep: str | None = None, **options: Any) -> dict[str, int | str]:
    """Download an IP list and write CIDR rules."""
    return _proc_one(Source(IP, url, out, sep=sep), **options)


def proc_mixed(
    url: str,
    domain_out: str | Path,
    ip_out: str | Path,
    sep: str | None = None,
    **options: Any,
) -> dict[str, int | str]:
    """Download a list once and split it into domain and CIDR rules."""
    return _proc_one(Source(MIXED, url, domain_out, ip_out=ip_out, sep=sep), **options)


# CLI entrypoint
# ----------------------------------------
def _build_parser(settings: dict[str, float] | None = None) -> argparse.ArgumentParser:
    if settings is None:
        settings = {"retries": DEFAULT_RETRIES, "retry_delay": DEFAULT_RETRY_DELAY, "timeout": DEFAULT_TIMEOUT}
    ap = argparse.ArgumentParser(
        description="Download host lists and write canonical rule text."
    )
    ap.add_argument("-r", "--retry", type=non_negative(int), default=settings["retries"], help="Extra download attempts")
    ap.add_argument("-d", "--delay", type=non_negative(float), default=settings["retry_delay"], help="Delay between attempts (seconds)")
    ap.add_argument("-t", "--timeout", type=non_negative(float), default=settings["timeout"], help="Request timeout (seconds)")
    ap.add_argument("--ipv4-only", action="store_true", help="Reject IPv6 addresses in ip output")
    ap.add_argument(
        "--mixed-headers",
        choices=normalize.MIXED_HEADER_POLICIES,
        default=normalize.HEADERS_BOTH,
        help="Where header comments go for mixed sources",
    )
    sub = ap.add_subparsers(dest="command", required=True)

    for kind in (DOMAIN, IP):
        p = sub.add_parser(kind, help=f"Process one {kind} list")
        p.add_argument("url")
        p.add_argument("out")
        p.add_argument("--sep", default=None, help="Field separator regex")

    p = sub.add_parser(MIXED, help="Process one mixed list into two outputs")
    p.add_argument("url")
    p.add_argument("out")
    p.add_argument("ip_out")
    p.add_argument("--sep", default=None, help="Field separator regex")

    p = sub.add_parser("sources", help="Process every source in a JSON file")
    p.add_argument("file")
    p.add_argument("--concurrency", type=int, default=DEFAULT_CONCURRENCY)
    return ap


def main(argv: list[str] | None = None) -> int:
    try:
        settings = env_settings()
    except ValueError as exc:
        print(f"[FATAL] {exc}", file=sys.stderr)
        return 2
    ap = _build_parser(settings)
    args = ap.parse_args(argv)
    if getattr(args, "concurrency", DEFAULT_CONCURRENCY) < 1:
        ap.error("--concurrency must be at least 1")
    log = _configure_logging()

    try:
        if args.command == "sources":
            sources = load_sources(args.file)
        else:
            sources = [
                Source(
                    kind=args.command,
                    url=args.url,
                    out=args.out,
                    ip_out=getattr(args, "ip_out", None),
                    sep=args.sep,
                )
            ]
    except (OSError, ValueError) as exc:
        print(f"[FATAL] {exc}", file=sys.stderr)
        return 2

    start = time.perf_counter()
    log.info(f"Processing {len(sources)} source(s)")
    stats_list, failures = asyncio.run(
        run_sources(
            sources,
            concurrency=getattr(args, "concurrency", DEFAULT_CONCURRENCY),
            retries=args.retry,
            retry_delay=args.delay,
            timeout=args.timeout,
            allow_ipv6=not args.ipv4_only,
            mixed_headers=args.mixed_headers,
        )
    )
    log.info(utils.format_summary("pipeline", stats_list, utils.NORMALIZE_SUMMARY_ORDER))

    if failures:
        log.info("Failed sources:")
        for source, reason in failures:
            log.info(f"  - {source.url}")
            log.info(f"    Reason: {reason}")
    log.info(f"Finished in {time.perf_counter() - start:.2f}s")
    return 1 if failures else 0


if __name__ == "__main__":
    raise SystemExit(main())
