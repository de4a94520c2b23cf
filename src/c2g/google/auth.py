"""Google OAuth helper utilities.

Responsibilities
- Load OAuth client credentials from file or env
  (GOOGLE_CREDENTIALS_JSON / GOOGLE_CREDENTIALS_FILE)
- Read/write user token to google_cfg.token_store (0600)
- Refresh access tokens as needed (headless thereafter)
- Provide ready-to-use google Credentials for the Calendar and Tasks clients

Notes
- Initial interactive flow requires a local browser (run on a workstation once).
  It creates/updates the token_store (mounted under /data in Docker).
- Subsequent runs refresh headlessly using the refresh token.
- Every failure to obtain usable credentials surfaces as AuthorizationError.

Security
- Never log raw tokens; the logging filter redacts token-like strings.
"""

from __future__ import annotations

import json
import logging
import os
import stat
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from google.auth.exceptions import GoogleAuthError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import InstalledAppFlow

from ..config import GoogleConfig
from ..errors import AuthorizationError

__all__ = [
    "SCOPES_ALL",
    "SCOPES_CALENDAR",
    "SCOPES_TASKS",
    "get_credentials",
]

log = logging.getLogger(__name__)

# Read/write: c2g creates calendars, task lists and their items
SCOPES_CALENDAR: list[str] = [
    "https://www.googleapis.com/auth/calendar",
]
SCOPES_TASKS: list[str] = [
    "https://www.googleapis.com/auth/tasks",
]
SCOPES_ALL: list[str] = SCOPES_CALENDAR + SCOPES_TASKS


def _read_client_config(google_cfg: GoogleConfig) -> dict[str, Any]:
    """Load OAuth client credentials JSON from env or file.

    Priority:
    - GOOGLE_CREDENTIALS_JSON (inline JSON)
    - GOOGLE_CREDENTIALS_FILE (path)
    - google_cfg.credentials_file
    """
    env_inline = os.getenv("GOOGLE_CREDENTIALS_JSON")
    if env_inline:
        try:
            return json.loads(env_inline)
        except json.JSONDecodeError as exc:
            raise AuthorizationError("Invalid JSON in GOOGLE_CREDENTIALS_JSON") from exc

    file_path = os.getenv("GOOGLE_CREDENTIALS_FILE") or google_cfg.credentials_file
    if not file_path:
        raise AuthorizationError(
            "Google credentials not provided. Set GOOGLE_CREDENTIALS_JSON, "
            "GOOGLE_CREDENTIALS_FILE or google.credentials_file"
        )
    p = Path(file_path)
    if not p.exists():
        raise AuthorizationError(f"Google credentials file not found: {p}")
    with p.open("r", encoding="utf-8") as fh:
        return json.load(fh)


def _load_saved_credentials(token_store: str, scopes: Sequence[str]) -> Credentials | None:
    """Return Credentials from the token store if present and readable, else None."""
    p = Path(token_store)
    if not p.exists():
        return None
    try:
        return Credentials.from_authorized_user_file(str(p), scopes=list(scopes))
    except (ValueError, OSError) as exc:
        log.warning("token-store-unreadable %s", type(exc).__name__)
        return None


def _save_credentials(token_store: str, creds: Credentials) -> None:
    p = Path(token_store)
    if p.parent and not p.parent.exists():
        p.parent.mkdir(parents=True, exist_ok=True)
    with p.open("w", encoding="utf-8") as fh:
        fh.write(creds.to_json())
    try:
        p.chmod(stat.S_IRUSR | stat.S_IWUSR)
    except OSError:
        log.warning("token-store-chmod-failed")


def _interactive_flow(client_config: dict[str, Any], scopes: Sequence[str]) -> Credentials:
    """Run installed app flow with local server for user consent (interactive)."""
    flow = InstalledAppFlow.from_client_config(client_config, scopes=list(scopes))
    # Random free port, localhost only
    return flow.run_local_server(
        open_browser=True, host="localhost", port=0, authorization_prompt_message=""
    )


def _refresh_if_needed(creds: Credentials) -> None:
    """Refresh access token if expired and refresh token is present."""
    if getattr(creds, "expired", False) and getattr(creds, "refresh_token", None):
        creds.refresh(Request())


def get_credentials(
    google_cfg: GoogleConfig,
    scopes: Sequence[str] = SCOPES_ALL,
    *,
    allow_interactive: bool | None = None,
) -> Credentials:
    """Return Google OAuth credentials ready for use with google-api-python-client.

    Behavior:
    - Try token_store; refresh if needed.
    - If not usable and interactive is allowed, run browser consent and store token.
    - Otherwise raise AuthorizationError.
    """
    interactive = google_cfg.allow_interactive if allow_interactive is None else allow_interactive

    creds = _load_saved_credentials(google_cfg.token_store, scopes)
    if creds:
        try:
            _refresh_if_needed(creds)
        except GoogleAuthError as exc:
            log.warning("token-refresh-failed %s", type(exc).__name__)
        else:
            if getattr(creds, "valid", False):
                # Persist any refreshed expiry / access token
                try:
                    _save_credentials(google_cfg.token_store, creds)
                except OSError:
                    log.warning("token-store-write-failed")
                return creds

    if not interactive:
        raise AuthorizationError(
            "No valid Google token found and interactive consent is disabled. "
            "Run `c2g sync` locally once to create the token store."
        )
    client_config = _read_client_config(google_cfg)
    try:
        creds = _interactive_flow(client_config, scopes)
    except (GoogleAuthError, ValueError) as exc:
        raise AuthorizationError(f"Google consent flow failed: {type(exc).__name__}") from exc
    _save_credentials(google_cfg.token_store, creds)
    return creds
