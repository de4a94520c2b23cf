"""Feed fetcher: download the raw ICS text of a Canvas calendar feed.

Checks before any network traffic (InvalidSource on failure)
- scheme must be https, no embedded credentials
- host must fully match one of the configured allow-list patterns
- path must start with the configured prefix (Canvas: /feeds/calendars/)

Transport constraints
- bounded timeout (FetchTimeout)
- declared Content-Length and streamed body capped at max_bytes (TooLarge)
- redirects are walked one hop at a time (bounded); each Location is
  checked against the same rules before it is requested
- any other network failure or non-2xx status -> TransportError

No retry here; the caller owns retry policy.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from urllib.parse import urlparse

import httpx

from ..config import FeedConfig
from ..errors import FetchTimeout, InvalidSource, TooLarge, TransportError
from ..utils.http import create_client

__all__ = ["FeedFetcher"]

log = logging.getLogger(__name__)

MAX_URL_LENGTH = 2048


class FeedFetcher:
    def __init__(
        self,
        *,
        allowed_hosts: Sequence[str],
        path_prefix: str = "/feeds/calendars/",
        timeout: float = 20.0,
        max_bytes: int = 5 * 1024 * 1024,
        max_redirects: int = 3,
        client: httpx.Client | None = None,
    ) -> None:
        self._host_patterns = [re.compile(p, re.IGNORECASE) for p in allowed_hosts]
        self.path_prefix = path_prefix
        self.timeout = timeout
        self.max_bytes = max_bytes
        self.max_redirects = max_redirects
        self._client = client

    @classmethod
    def from_config(cls, cfg: FeedConfig, client: httpx.Client | None = None) -> FeedFetcher:
        return cls(
            allowed_hosts=cfg.allowed_hosts,
            path_prefix=cfg.path_prefix,
            timeout=cfg.timeout_sec,
            max_bytes=cfg.max_bytes,
            client=client,
        )

    # -------------
    # Validation
    # -------------

    def validate_url(self, url: str) -> str:
        """Return the stripped URL if it passes the allow-list, else raise InvalidSource."""
        candidate = (url or "").strip()
        if not candidate:
            raise InvalidSource("Feed URL is empty")
        if len(candidate) > MAX_URL_LENGTH:
            raise InvalidSource("Feed URL is too long")
        if any(ch.isspace() or ord(ch) < 32 for ch in candidate):
            raise InvalidSource("Feed URL contains whitespace or control characters")

        parsed = urlparse(candidate)
        if parsed.scheme.lower() != "https":
            raise InvalidSource("Feed URL must use https")
        if parsed.username or parsed.password:
            raise InvalidSource("Feed URL must not embed credentials")
        host = (parsed.hostname or "").lower()
        if not host or not any(p.fullmatch(host) for p in self._host_patterns):
            raise InvalidSource(f"Feed host '{host}' is not an allowed calendar host")
        if self.path_prefix and not parsed.path.startswith(self.path_prefix):
            raise InvalidSource("Feed URL is not a calendar feed URL")
        return candidate

    # -------------
    # Fetch
    # -------------

    def fetch(self, url: str) -> str:
        """Fetch and decode the feed body."""
        target = self.validate_url(url)
        client = self._client or create_client(timeout=self.timeout)
        try:
            return self._download(client, target)
        finally:
            if self._client is None:
                client.close()

    def _download(self, client: httpx.Client, url: str) -> str:
        current = url
        try:
            for _hop in range(self.max_redirects + 1):
                with client.stream(
                    "GET", current, timeout=self.timeout, follow_redirects=False
                ) as resp:
                    if resp.is_redirect:
                        # Next hop must pass the allow-list before it is requested
                        location = resp.headers.get("Location", "")
                        current = self.validate_url(str(resp.url.join(location)))
                        log.debug("feed-redirect", extra={"feed_url": current})
                        continue
                    if resp.status_code < 200 or resp.status_code >= 300:
                        raise TransportError(f"Feed request failed with HTTP {resp.status_code}")
                    body = self._read_body(resp)
                    encoding = resp.encoding or "utf-8"
                    break
            else:
                raise TransportError(f"Feed redirected more than {self.max_redirects} times")
        except httpx.TimeoutException as exc:
            raise FetchTimeout(f"Feed request timed out after {self.timeout}s") from exc
        except httpx.HTTPError as exc:
            raise TransportError(f"Feed request failed: {type(exc).__name__}") from exc

        log.debug("feed-fetched bytes=%d", len(body), extra={"feed_url": current})
        return body.decode(encoding, errors="replace")

    def _read_body(self, resp: httpx.Response) -> bytes:
        declared = resp.headers.get("Content-Length")
        if declared and declared.isdigit() and int(declared) > self.max_bytes:
            raise TooLarge(f"Feed Content-Length exceeds {self.max_bytes} bytes")

        chunks: list[bytes] = []
        received = 0
        for chunk in resp.iter_bytes(chunk_size=64 * 1024):
            received += len(chunk)
            if received > self.max_bytes:
                raise TooLarge(f"Feed body exceeds {self.max_bytes} bytes")
            chunks.append(chunk)
        return b"".join(chunks)
