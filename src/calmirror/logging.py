"""Structured logging with optional JSON output and secret redaction.

Exports:
- setup_logging(level: str = "INFO", json: bool = False) -> None
- mask_secrets(text: str) -> str

Redaction:
- Bearer / access / refresh tokens and client secrets: keep first and last 4 chars.
- E-mail addresses in free text: local-part masked except first/last char. Calendar ids
  are often e-mail addresses, so they are passed as the `gcal_id` extra instead of being
  formatted into messages; that extra is an identifier and is kept verbatim.
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
_BEARER_RE = re.compile(r"(?i)(?P<key>bearer)(?P<sep>\s+)(?P<val>[A-Za-z0-9\-_\.~+/]{8,}=*)")
_SECRET_RE = re.compile(
    r"(?i)(?P<key>(?:access|refresh|id)[_\- ]?token|client[_\- ]?secret)(?P<sep>\s*[:=]\s*|\s+)(?P<val>[A-Za-z0-9\-_\.~+/]{8,})"
)

_DEFAULT_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {
    "message",
    "asctime",
    "_redacted",
}


def _mask_value(val: str) -> str:
    if len(val) <= 8:
        return "********"
    return f"{val[:4]}********{val[-4:]}"


def _mask_email(match: re.Match[str]) -> str:
    user = match.group("user")
    masked_user = "*" if len(user) <= 2 else f"{user[0]}***{user[-1]}"
    return f"{masked_user}@{match.group('host')}"


def _mask_keyed(match: re.Match[str]) -> str:
    return f"{match.group('key')}{match.group('sep')}{_mask_value(match.group('val'))}"


def mask_secrets(text: str) -> str:
    """Mask tokens, client secrets and e-mail addresses in freeform text."""
    if not text:
        return text
    t = _BEARER_RE.sub(_mask_keyed, text)
    t = _SECRET_RE.sub(_mask_keyed, t)
    return _EMAIL_RE.sub(_mask_email, t)


class RedactingFilter(logging.Filter):
    """Redact secrets in the formatted message and in known extra keys."""

    SECRET_EXTRAS: ClassVar[frozenset[str]] = frozenset(
        {"access_token", "refresh_token", "id_token", "client_secret", "authorization"}
    )

    def filter(self, record: logging.LogRecord) -> bool:  # type: ignore[override]
        if isinstance(record.msg, str) and not getattr(record, "_redacted", False):
            if record.args:
                try:
                    record.msg = record.msg % record.args
                    record.args = ()
                except (TypeError, ValueError):
                    pass
            record.msg = mask_secrets(record.msg)
            record._redacted = True
        for key in self.SECRET_EXTRAS & record.__dict__.keys():
            val = record.__dict__[key]
            if isinstance(val, str):
                record.__dict__[key] = _mask_value(val)
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per line: ts, level, name, msg, location and any extras."""

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        base: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "name": record.name,
            "msg": record.getMessage(),
            "module": record.module,
            "funcName": record.funcName,
            "lineno": record.lineno,
        }
        for k, v in record.__dict__.items():
            if k in _DEFAULT_ATTRS:
                continue
            if isinstance(v, str | int | float | bool) or v is None:
                base[k] = v
            elif isinstance(v, Mapping):
                base[k] = {str(kk): vv for kk, vv in list(v.items())[:20]}
            else:
                base[k] = f"[{type(v).__name__}]"
        if record.exc_info:
            base["exc"] = self.formatException(record.exc_info)
        return json.dumps(base, ensure_ascii=False, default=str)


def setup_logging(level: str = "INFO", json: bool = False) -> None:
    """Configure the root logger for CLI execution.

    - Level from config or CLI flag (DEBUG/INFO/WARNING/ERROR)
    - JSON or console formatting; CALMIRROR_FORCE_JSON_LOGS=1 forces JSON
    - Redaction filter on the handler
    """
    if os.getenv("CALMIRROR_FORCE_JSON_LOGS", "").lower() in {"1", "true", "yes"}:
        json = True

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

    for noisy in ("httpx", "httpcore", "google", "urllib3"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
