"""Retry/backoff helpers and the shared outbound httpx client.

Intended use:
- One place for timeouts, connection limits, backoff and User-Agent.
- `retry_async` wraps a single remote call (or a whole fetch step) and re-invokes it
  on RemoteRateLimited / RemoteTransient with bounded exponential backoff.

Notes:
- Classification of HTTP responses into the error taxonomy lives in the Google client;
  this module only decides whether and when to try again.
"""

from __future__ import annotations

import asyncio
import logging
import os
import random
from collections.abc import Awaitable, Callable, Mapping, MutableMapping
from dataclasses import dataclass
from typing import TypeVar

import httpx

from ..errors import RETRYABLE, RemoteError

log = logging.getLogger(__name__)

__all__ = [
    "RetryConfig",
    "backoff_delay",
    "create_client",
    "retry_async",
]

T = TypeVar("T")


@dataclass(frozen=True)
class RetryConfig:
    max_retries: int = 4
    backoff_initial_sec: float = 1.0
    backoff_factor: float = 2.0
    backoff_max_sec: float = 60.0
    jitter_frac: float = 0.2  # +/- 20%


def _user_agent() -> str:
    return "calmirror/0.1"


def create_client(
    *,
    base_url: str | None = None,
    timeout: float = 30.0,
    headers: Mapping[str, str] | None = None,
    verify: bool | str = True,
    max_connections: int = 8,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.AsyncClient:
    """Create the shared async client used for every provider call.

    `max_connections` should match the outbound concurrency cap so the pool never
    opens more sockets than requests allowed in flight.
    """
    if verify is False and os.getenv("CALMIRROR_ENVIRONMENT") == "production":
        raise ValueError(
            "SSL certificate verification cannot be disabled in production environment."
        )
    if verify is False:
        log.warning("SSL certificate verification is DISABLED; use only for development.")

    base_headers: MutableMapping[str, str] = {"User-Agent": _user_agent()}
    if headers:
        base_headers.update(headers)
    limits = httpx.Limits(
        max_keepalive_connections=max_connections, max_connections=max_connections
    )
    kwargs: dict[str, object] = {
        "timeout": timeout,
        "headers": base_headers,
        "limits": limits,
    }
    if base_url is not None:
        kwargs["base_url"] = base_url
    if transport is not None:
        kwargs["transport"] = transport
    else:
        kwargs["verify"] = verify
    return httpx.AsyncClient(**kwargs)  # type: ignore[arg-type]


def backoff_delay(attempt: int, retry: RetryConfig) -> float:
    # attempt starts at 1
    base = retry.backoff_initial_sec * (retry.backoff_factor ** (attempt - 1))
    base = min(base, retry.backoff_max_sec)
    jitter = base * retry.jitter_frac
    return max(0.0, base + random.uniform(-jitter, jitter))


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    *,
    retry: RetryConfig | None = None,
    retry_on: tuple[type[RemoteError], ...] = RETRYABLE,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    what: str = "remote-call",
) -> T:
    """Await `fn()` and retry it on retryable remote errors.

    Makes at most `max_retries + 1` attempts; the last error propagates unchanged.
    """
    cfg = retry or RetryConfig()
    attempt = 1
    while True:
        try:
            return await fn()
        except retry_on as exc:
            if attempt > cfg.max_retries:
                log.warning(
                    "retries-exhausted %s attempts=%d error=%s", what, attempt, exc
                )
                raise
            delay = backoff_delay(attempt, cfg)
            log.info(
                "retrying %s attempt=%d delay=%.2fs error=%s",
                what,
                attempt,
                delay,
                type(exc).__name__,
            )
            await sleep(delay)
            attempt += 1
