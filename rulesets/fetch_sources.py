#!/usr/bin/env python3
"""
fetch_sources.py

Asynchronous downloader for host list sources with retry logic.

Behavior:
 - Uses aiohttp for downloads; one session can serve many concurrent fetches.
 - Sends a User-Agent header and, when GITHUB_TOKEN is set, an
   `Authorization: token ...` header.
 - Retries transient failures (network, timeout, 429, 5xx) with a fixed delay.
 - Other HTTP errors fail immediately.

Environment overrides (read by the CLI entrypoints):
  DL_RETRY        extra attempts after the first one (default 1)
  DL_RETRY_DELAY  seconds between attempts (default 3)
  DL_TIMEOUT      total request timeout in seconds (default 60)

Usage:
    python -m rulesets.fetch_sources [-r RETRY] [-d DELAY] [-t TIMEOUT] URL [OUTPUT]
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path

import aiohttp

from rulesets import utils


# ----------------------------------------
# Constants
# ----------------------------------------
CHUNK_SIZE = utils.IO_BUFFER_SIZE
USER_AGENT = "GitHub-Actions"
CONNECT_TIMEOUT = 10
MAX_REDIRECTS = 10

logger = logging.getLogger(__name__)


class FetchError(Exception):
    """Raised when a source cannot be downloaded."""


def _env_number(name: str, default: float, cast: type = int) -> float:
    """Read a numeric override from the environment."""
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = cast(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None
    if value < 0:
        raise ValueError(f"{name} must not be negative, got {raw!r}")
    return value


DEFAULT_RETRIES = 1
DEFAULT_RETRY_DELAY = 3.0
DEFAULT_TIMEOUT = 60.0


def env_settings() -> dict[str, float]:
    """
    Return download settings with DL_* environment overrides applied.

    Read on each call so a bad value surfaces as a ValueError in the caller's
    error handling, not at import.
    """
    return {
        "retries": int(_env_number("DL_RETRY", DEFAULT_RETRIES)),
        "retry_delay": float(_env_number("DL_RETRY_DELAY", DEFAULT_RETRY_DELAY, float)),
        "timeout": float(_env_number("DL_TIMEOUT", DEFAULT_TIMEOUT, float)),
    }


def non_negative(cast: type):
    """Return an argparse `type` callable that rejects values below zero."""

    def _parse(raw: str):
        try:
            value = cast(raw)
        except ValueError:
            raise argparse.ArgumentTypeError(f"invalid number: {raw!r}") from None
        if value < 0:
            raise argparse.ArgumentTypeError(f"must not be negative: {raw!r}")
        return value

    return _parse


# ----------------------------------------
# Helpers
# ----------------------------------------
def _should_retry_status(status: int) -> bool:
    """Return True if HTTP status is retryable."""
    return status == 429 or 500 <= status < 600


def build_headers(token: str | None = None) -> dict[str, str]:
    """Return request headers; `token` defaults to $GITHUB_TOKEN."""
    if token is None:
        token = os.environ.get("GITHUB_TOKEN")
    headers = {"User-Agent": USER_AGENT}
    if token:
        headers["Authorization"] = f"token {token}"
    return headers


# ----------------------------------------
# Fetch single URL
# ----------------------------------------
async def fetch_bytes(
    session: aiohttp.ClientSession,
    url: str,
    *,
    retries: int = DEFAULT_RETRIES,
    retry_delay: float = DEFAULT_RETRY_DELAY,
    timeout: float = DEFAULT_TIMEOUT,
    token: str | None = None,
) -> bytes:
    """
    Download `url` and return the response body.

    Makes at most `retries + 1` attempts. Raises FetchError with the last
    failure reason once attempts are exhausted or a non-retryable HTTP status
    is received.
    """
    if retries < 0:
        raise ValueError(f"retries must not be negative, got {retries}")
    headers = build_headers(token)
    timeout_obj = aiohttp.ClientTimeout(total=timeout, connect=CONNECT_TIMEOUT)
    attempt = 0
    last_reason = "unknown error"

    while attempt <= retries:
        attempt += 1
        try:
            async with session.get(
                url,
                headers=headers,
                timeout=timeout_obj,
                allow_redirects=True,
                max_redirects=MAX_REDIRECTS,
            ) as resp:
                if resp.status == 200:
                    chunks: list[bytes] = []
                    async for chunk in resp.content.iter_chunked(CHUNK_SIZE):
                        chunks.append(chunk)
                    return b"".join(chunks)

                last_reason = f"HTTP {resp.status}"
                if not _should_retry_status(resp.status):
                    break
        except asyncio.TimeoutError:
            last_reason = "Timeout - server did not respond in time"
        except aiohttp.ClientSSLError as ex:
            # not transient
            last_reason = f"SSL certificate error - {ex}"
            break
        except aiohttp.ClientError as ex:
            last_reason = f"Connection error - {type(ex).__name__}"

        if attempt <= retries:
            logger.warning(
                "Fetch attempt %d/%d failed for %s: %s",
                attempt,
                retries + 1,
                url,
                last_reason,
            )
            await asyncio.sleep(retry_delay)

    raise FetchError(f"{url}: {last_reason}")


async def download(
    url: str,
    output: Path | None = None,
    *,
    retries: int = DEFAULT_RETRIES,
    retry_delay: float = DEFAULT_RETRY_DELAY,
    timeout: float = DEFAULT_TIMEOUT,
    token: str | None = None,
) -> bytes:
    """Fetch one URL with its own session; write it atomically to `output` if given."""
    async with aiohttp.ClientSession() as session:
        data = await fetch_bytes(
            session,
            url,
            retries=retries,
            retry_delay=retry_delay,
            timeout=timeout,
            token=token,
        )
    if output is not None:
        _write_bytes_atomic(Path(output), data)
    return data


def _write_bytes_atomic(target: Path, data: bytes) -> None:
    text = data.decode("utf-8", errors="surrogateescape")
    # newline="" keeps the body byte-for-byte, line endings included
    with utils.atomic_writers({"out": target}, newline="") as handles:
        handles["out"].write(text)


# ----------------------------------------
# CLI
# ----------------------------------------
def main(argv: list[str] | None = None) -> int:
    """CLI entrypoint: download one URL to a file or stdout."""
    try:
        settings = env_settings()
    except ValueError as exc:
        logger.error("bad download setting: %s", exc)
        return 2

    parser = argparse.ArgumentParser(description="Download a host list source")
    parser.add_argument(
        "-r",
        "--retry",
        type=non_negative(int),
        default=settings["retries"],
        help="Extra attempts",
    )
    parser.add_argument(
        "-d",
        "--delay",
        type=non_negative(float),
        default=settings["retry_delay"],
        help="Delay between attempts (seconds)",
    )
    parser.add_argument(
        "-t",
        "--timeout",
        type=non_negative(float),
        default=settings["timeout"],
        help="Request timeout (seconds)",
    )
    parser.add_argument("url", help="Source URL")
    parser.add_argument("output", nargs="?", default=None, help="Output file")
    args = parser.parse_args(argv)

    try:
        data = asyncio.run(
            download(
                args.url,
                Path(args.output) if args.output else None,
                retries=args.retry,
                retry_delay=args.delay,
                timeout=args.timeout,
            )
        )
    except (FetchError, OSError) as exc:
        logger.error("fetch failed: %s", exc)
        return 1

    if args.output is None:
        sys.stdout.buffer.write(data)
        sys.stdout.flush()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
