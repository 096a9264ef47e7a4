"""
Shared cookie helpers for the browser-context cookie.

Design:
    The cookie carries only an opaque client id. Everything it identifies
    (resolver state, guest record, remembered credentials) stays server-side.
"""

from __future__ import annotations

import re
import secrets

_CLIENT_ID_RE = re.compile(r"^[A-Za-z0-9_-]{24,64}$")


def cookie_opts(environment: str) -> dict:
    """Return cookie flags for the given environment.

    Returns a mapping with keys:
      - secure: False only in dev/test so plain-http local setups work
      - samesite: "lax"
      - httponly: True
    """
    env = (environment or "").lower()
    return {"secure": env not in {"dev", "development", "test"}, "samesite": "lax", "httponly": True}


def new_client_id() -> str:
    return secrets.token_urlsafe(24)


def is_valid_client_id(value: str | None) -> bool:
    """Client ids name per-browser files on disk; only accept our own format."""
    return bool(value) and bool(_CLIENT_ID_RE.match(value or ""))
