"""HTTP utilities and a small caller-side retry wrapper.

Intended use:
- Provide a single place for timeouts, redirects, connection limits and User-Agent.
- Retries live with the caller (the orchestrator), never inside the fetcher:
  `call_with_retries` re-invokes a callable on transient feed errors with
  exponential backoff and jitter.
"""

from __future__ import annotations

import logging
import os
import random
from collections.abc import Callable, Mapping, MutableMapping
from dataclasses import dataclass
from time import sleep
from typing import TypeVar

import httpx

from ..errors import FetchTimeout, TransportError

log = logging.getLogger(__name__)

__all__ = [
    "RetryConfig",
    "call_with_retries",
    "create_client",
]

T = TypeVar("T")


@dataclass(frozen=True)
class RetryConfig:
    max_retries: int = 3
    backoff_initial_sec: float = 1.0
    backoff_factor: float = 2.0
    jitter_frac: float = 0.2  # +/- 20%
    retry_on: tuple[type[BaseException], ...] = (FetchTimeout, TransportError)


def _user_agent() -> str:
    return "c2g/0.1 (+canvas feed sync)"


def create_client(
    *,
    timeout: float = 20.0,
    headers: Mapping[str, str] | None = None,
    verify: bool | str = True,
    max_redirects: int = 3,
    transport: httpx.BaseTransport | None = None,
) -> httpx.Client:
    """Create a configured httpx client.

    `transport` lets tests plug in an ``httpx.MockTransport``.
    """
    if verify is False and os.getenv("C2G_ENVIRONMENT") == "production":
        raise ValueError(
            "SSL certificate verification cannot be disabled in production environment. "
            "Set C2G_ENVIRONMENT to 'development' or 'test' to allow insecure connections."
        )
    if verify is False:
        log.warning("SSL certificate verification is DISABLED; use only for development.")

    base_headers: MutableMapping[str, str] = {
        "User-Agent": _user_agent(),
        "Accept": "text/calendar,text/plain,*/*",
    }
    if headers:
        base_headers.update(headers)
    return httpx.Client(
        timeout=timeout,
        headers=base_headers,
        verify=verify,
        follow_redirects=True,
        max_redirects=max_redirects,
        limits=httpx.Limits(max_keepalive_connections=2, max_connections=4),
        transport=transport,
    )


def _should_retry(exc: BaseException, retry: RetryConfig) -> bool:
    return isinstance(exc, retry.retry_on)


def _sleep_backoff(attempt: int, retry: RetryConfig) -> None:
    # attempt starts at 1
    base = retry.backoff_initial_sec * (retry.backoff_factor ** (attempt - 1))
    jitter = base * retry.jitter_frac
    delay = base + random.uniform(-jitter, jitter)
    if delay > 0:
        sleep(delay)


def call_with_retries(fn: Callable[[], T], retry: RetryConfig | None = None) -> T:
    """Call `fn`, retrying up to `retry.max_retries` times on retryable errors."""
    cfg = retry or RetryConfig()
    attempt = 0
    while True:
        try:
            return fn()
        except Exception as exc:
            attempt += 1
            if not _should_retry(exc, cfg) or attempt > cfg.max_retries:
                raise
            log.warning(
                "retrying-after-error attempt=%d/%d err=%s",
                attempt,
                cfg.max_retries,
                type(exc).__name__,
            )
            _sleep_backoff(attempt, cfg)
