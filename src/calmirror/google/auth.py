"""Google OAuth helpers.

Responsibilities
- Load OAuth client credentials from file or env (GOOGLE_CREDENTIALS_JSON / GOOGLE_CREDENTIALS_FILE)
- Read/write the authorized-user token at google_cfg.token_store
- Hand out bearer tokens to the async Calendar client, refreshing when expired

Notes
- The initial consent flow needs a local browser (run once on a developer machine);
  later runs refresh headlessly with the stored refresh token.
- A refresh that Google rejects (revoked grant, missing scope) is a RemoteFatal: the
  sync run cannot proceed without operator action.

Security
- Never log raw tokens; the logging filter redacts token-like strings.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from collections.abc import Sequence
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

from ..config import GoogleConfig
from ..errors import RemoteFatal, RemoteTransient

if TYPE_CHECKING:  # pragma: no cover
    from google.oauth2.credentials import Credentials

__all__ = [
    "SCOPES_CALENDAR",
    "CredentialsTokenProvider",
    "TokenProvider",
    "get_credentials",
]

log = logging.getLogger(__name__)

# read/write: the mutation service creates, updates and deletes events
SCOPES_CALENDAR: list[str] = [
    "https://www.googleapis.com/auth/calendar",
]


class TokenProvider(Protocol):
    async def get_access_token(self, *, force_refresh: bool = False) -> str: ...


def _read_client_config(google_cfg: GoogleConfig) -> dict[str, Any]:
    """OAuth client secrets: inline GOOGLE_CREDENTIALS_JSON, else a file.

    The file comes from GOOGLE_CREDENTIALS_FILE or google.credentials_file.
    """
    inline = os.getenv("GOOGLE_CREDENTIALS_JSON")
    if inline:
        try:
            return json.loads(inline)
        except json.JSONDecodeError as exc:
            raise ValueError("GOOGLE_CREDENTIALS_JSON is not valid JSON") from exc

    source = os.getenv("GOOGLE_CREDENTIALS_FILE") or google_cfg.credentials_file
    if not source:
        raise ValueError(
            "No OAuth client secrets configured: set GOOGLE_CREDENTIALS_JSON, "
            "GOOGLE_CREDENTIALS_FILE or google.credentials_file"
        )
    path = Path(source).expanduser()
    if not path.is_file():
        raise FileNotFoundError(f"OAuth client secrets file not found: {path}")
    return json.loads(path.read_text(encoding="utf-8"))


def _load_saved_credentials(token_store: str, scopes: Sequence[str]) -> Credentials | None:
    from google.oauth2.credentials import Credentials

    path = Path(token_store)
    if not path.is_file():
        return None
    try:
        return Credentials.from_authorized_user_file(str(path), scopes=list(scopes))
    except (ValueError, json.JSONDecodeError) as exc:
        log.warning("token-store-unreadable path=%s error=%s", path, exc)
        return None


def _save_credentials(token_store: str, creds: Credentials) -> None:
    """Write the authorized-user JSON readable by the owner only."""
    path = Path(token_store)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as fh:
        fh.write(creds.to_json())
    os.chmod(path, 0o600)


def _interactive_flow(client_config: dict[str, Any], scopes: Sequence[str]) -> Credentials:
    from google_auth_oauthlib.flow import InstalledAppFlow

    flow = InstalledAppFlow.from_client_config(client_config, scopes=list(scopes))
    return flow.run_local_server(
        open_browser=True, host="localhost", port=0, authorization_prompt_message=""
    )


def get_credentials(
    google_cfg: GoogleConfig,
    scopes: Sequence[str] = SCOPES_CALENDAR,
    *,
    allow_interactive: bool = False,
) -> Credentials:
    """Return stored Google credentials, running the consent flow only when allowed.

    The token is not refreshed here; CredentialsTokenProvider refreshes lazily.
    """
    creds = _load_saved_credentials(google_cfg.token_store, scopes)
    if creds is not None and (creds.valid or creds.refresh_token):
        return creds

    if not allow_interactive:
        raise RuntimeError(
            "No usable Google token found. Run `calmirror login` once on a machine with a browser."
        )
    creds = _interactive_flow(_read_client_config(google_cfg), scopes)
    _save_credentials(google_cfg.token_store, creds)
    return creds


class CredentialsTokenProvider:
    """Bearer tokens from google-auth Credentials, refreshed off the event loop."""

    def __init__(self, credentials: Credentials, token_store: str | None = None) -> None:
        self._creds = credentials
        self._token_store = token_store
        self._lock = asyncio.Lock()

    async def get_access_token(self, *, force_refresh: bool = False) -> str:
        if not force_refresh and self._creds.valid and self._creds.token:
            return str(self._creds.token)
        async with self._lock:
            if not force_refresh and self._creds.valid and self._creds.token:
                return str(self._creds.token)
            await asyncio.to_thread(self._refresh)
            return str(self._creds.token)

    def _refresh(self) -> None:
        from google.auth.exceptions import RefreshError, TransportError
        from google.auth.transport.requests import Request

        if not self._creds.refresh_token:
            raise RemoteFatal("Google token expired and no refresh token is stored")
        try:
            self._creds.refresh(Request())
        except RefreshError as exc:
            raise RemoteFatal(f"Google token refresh rejected: {exc}") from exc
        except TransportError as exc:
            raise RemoteTransient(f"Google token refresh failed: {exc}") from exc
        if self._token_store:
            _save_credentials(self._token_store, self._creds)
