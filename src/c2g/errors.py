"""Error taxonomy for c2g.

Kinds
- Feed errors: the run cannot start (InvalidSource, FetchTimeout, TooLarge,
  TransportError, MalformedFeed). Transport-type errors may be retried by the
  caller; the fetcher itself never retries.
- AuthorizationError / CollectionMissing: fatal to one destination pass only.
- Anything raised by a single downstream mutation is item-scoped and is
  recorded in the report instead of propagating.
"""

from __future__ import annotations

__all__ = [
    "AuthorizationError",
    "C2GError",
    "CollectionMissing",
    "FeedError",
    "FetchTimeout",
    "InvalidSource",
    "MalformedFeed",
    "TooLarge",
    "TransportError",
    "error_message",
]


class C2GError(RuntimeError):
    pass


class FeedError(C2GError):
    pass


class InvalidSource(FeedError):
    pass


class FetchTimeout(FeedError):
    pass


class TooLarge(FeedError):
    pass


class TransportError(FeedError):
    pass


class MalformedFeed(FeedError):
    pass


class AuthorizationError(C2GError):
    pass


class CollectionMissing(C2GError):
    pass


def error_message(exc: BaseException) -> str:
    """Short human-readable message for reports (never the exception object)."""
    msg = str(exc).strip()
    return msg or type(exc).__name__
