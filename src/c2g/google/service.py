"""Shared plumbing for the Google API clients.

- Discovery services are built lazily, one per thread: the underlying
  httplib2 transport is not thread-safe and the reconcile engine issues
  mutations from a worker pool.
- `http_status` extracts the HTTP status from googleapiclient errors.
"""

from __future__ import annotations

import threading
from typing import Any

from googleapiclient.discovery import build as gapi_build
from googleapiclient.errors import HttpError

from ..errors import AuthorizationError

__all__ = ["ThreadLocalService", "http_status", "is_gone", "raise_for_auth"]


class ThreadLocalService:
    def __init__(self, api: str, version: str, credentials: Any) -> None:
        self.api = api
        self.version = version
        self._credentials = credentials
        self._local = threading.local()

    def get(self) -> Any:
        svc = getattr(self._local, "svc", None)
        if svc is None:
            svc = gapi_build(
                self.api, self.version, credentials=self._credentials, cache_discovery=False
            )
            self._local.svc = svc
        return svc


def http_status(exc: BaseException) -> int | None:
    code = getattr(exc, "status_code", None) or getattr(getattr(exc, "resp", None), "status", None)
    try:
        return int(code) if code is not None else None
    except (TypeError, ValueError):
        return None


def is_gone(exc: BaseException) -> bool:
    """404/410: the remote object no longer exists."""
    return isinstance(exc, HttpError) and http_status(exc) in (404, 410)


def raise_for_auth(exc: BaseException) -> None:
    """Re-raise 401/403 as AuthorizationError; other errors are left to the caller."""
    if isinstance(exc, HttpError) and http_status(exc) in (401, 403):
        raise AuthorizationError(
            f"Google API rejected credentials (HTTP {http_status(exc)})"
        ) from exc
