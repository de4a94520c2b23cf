"""Structured logging with optional JSON output and secret redaction.

Exports:
- setup_logging(level: str = "INFO", json: bool = False) -> None
- mask_secrets(text: str) -> str

Redaction:
- Email addresses: local-part masked except first/last char: a***z@example.edu
- OAuth tokens logged as ``access_token: ...`` style text are partially masked
- Canvas feed URLs carry a per-user secret in the path
  (``/feeds/calendars/user_<secret>.ics``); the secret keeps its first 4 chars

Notes:
- Feed URLs are secrets: anyone holding one can read the calendar. Log them only
  through this module's handlers.
"""

from __future__ import annotations

import json
import logging
import os
import re
import sys
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any, ClassVar

__all__ = ["JsonFormatter", "RedactingFilter", "mask_secrets", "setup_logging"]


_EMAIL_RE = re.compile(r"(?P<user>[A-Za-z0-9._%+-]{1,64})@(?P<host>[A-Za-z0-9.-]+\.[A-Za-z]{2,})")
_TOKEN_RE = re.compile(
    r"(?i)(?P<key>(?:access|refresh|id|auth)[_\- ]?token)\s*[:=]\s*(?P<val>[A-Za-z0-9\-_\.]{10,})"
)
_FEED_RE = re.compile(r"(?P<path>/feeds/calendars/user_)(?P<secret>[A-Za-z0-9]+)")


def _mask_email(match: re.Match[str]) -> str:
    user = match.group("user")
    host = match.group("host")
    if len(user) <= 2:
        return f"*@{host}"
    return f"{user[0]}***{user[-1]}@{host}"


def _mask_token(match: re.Match[str]) -> str:
    val = match.group("val")
    return f"{match.group('key')}: {val[:4]}********{val[-4:]}"


def _mask_feed(match: re.Match[str]) -> str:
    secret = match.group("secret")
    return f"{match.group('path')}{secret[:4]}****"


def mask_secrets(text: str) -> str:
    """Mask emails, OAuth tokens and feed URL secrets in freeform text."""
    if not text:
        return text
    t = _FEED_RE.sub(_mask_feed, text)
    t = _TOKEN_RE.sub(_mask_token, t)
    return _EMAIL_RE.sub(_mask_email, t)


class RedactingFilter(logging.Filter):
    """Redacts secrets in record messages and selected extras."""

    EXTRA_KEYS_TO_MASK: ClassVar[set[str]] = {"email", "feed_url", "url", "access_token"}

    def filter(self, record: logging.LogRecord) -> bool:  # type: ignore[override]
        if isinstance(record.msg, str):
            if record.args:
                # Render first so secrets passed as %-args are masked too
                try:
                    record.msg = record.msg % record.args
                    record.args = ()
                except (TypeError, ValueError):
                    pass
            record.msg = mask_secrets(record.msg)
            record._redacted = True

        for k in self.EXTRA_KEYS_TO_MASK:
            val = record.__dict__.get(k)
            if isinstance(val, str):
                record.__dict__[k] = mask_secrets(val)
        return True


class JsonFormatter(logging.Formatter):
    """Minimal JSON formatter.

    Fields: ts (ISO8601), level, name, msg, funcName, lineno, module, plus
    custom extras (strings redacted, primitives kept, mappings truncated).
    """

    _DEFAULT_ATTRS: ClassVar[set[str]] = set(vars(logging.LogRecord("", 0, "", 0, "", (), None)))

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        msg = record.getMessage()
        base: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "name": record.name,
            "msg": msg if getattr(record, "_redacted", False) else mask_secrets(msg),
        }
        for attr in ("funcName", "lineno", "module"):
            base[attr] = getattr(record, attr, None)

        for k, v in record.__dict__.items():
            if k in self._DEFAULT_ATTRS or k in {"msg", "args", "_redacted", "message"}:
                continue
            if isinstance(v, str):
                base[k] = mask_secrets(v)
            elif isinstance(v, int | float | bool) or v is None:
                base[k] = v
            elif isinstance(v, Mapping):
                base[k] = {
                    str(kk): (mask_secrets(vv) if isinstance(vv, str) else vv)
                    for kk, vv in list(v.items())[:20]
                }
            else:
                base[k] = f"[{type(v).__name__}]"

        if record.exc_info:
            base["exc"] = mask_secrets(self.formatException(record.exc_info))
        return json.dumps(base, ensure_ascii=False, default=str)


def setup_logging(level: str = "INFO", json: bool = False) -> None:
    """Configure root logger for CLI execution.

    - Level from config or CLI flag (DEBUG/INFO/WARNING/ERROR)
    - JSON or console formatting
    - Redaction filter applied on the handler
    """
    if os.getenv("C2G_FORCE_JSON_LOGS", "").lower() in {"1", "true", "yes"}:
        json = True

    # Reset handlers in case of repeated setup in tests
    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)

    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.addFilter(RedactingFilter())

    if json:
        fmt: logging.Formatter = JsonFormatter()
    else:
        fmt = logging.Formatter(
            fmt="%(asctime)s %(levelname)s %(name)s: %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S%z",
        )
    handler.setFormatter(fmt)
    root.addHandler(handler)

    for noisy in ("urllib3", "httpx", "httpcore", "googleapiclient", "google"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
