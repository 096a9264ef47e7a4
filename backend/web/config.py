"""
Startup security checks for the shuttle identity service.

Why: Prevent accidental insecure deployments. Development stays permissive;
production and staging must run against a real identity provider over TLS.

The guard reads the given settings and raises `SystemExit` on fatal
misconfiguration.
"""
from __future__ import annotations

from shuttle_identity.config import Settings

MIN_PROD_BCRYPT_ROUNDS = 10


def _is_placeholder(value: str | None) -> bool:
    val = (value or "").strip()
    return not val or val.upper().startswith(("CHANGE_ME", "DUMMY"))


def ensure_secure_config_on_startup(settings: Settings) -> None:
    """Fail fast on insecure production configuration.

    Checks (prod-like environments only):
    - The in-memory backend is not allowed; accounts would vanish on restart.
    - SHUTTLE_SUPABASE_URL must be set and use https.
    - Anon and service role keys must be set and not placeholders.
    - Driver password hashing must use at least 10 bcrypt rounds.
    """
    if not settings.is_prod_like:
        return

    if settings.backend != "supabase":
        raise SystemExit("Refusing to start: SHUTTLE_BACKEND=memory is not allowed in production/staging.")

    url = (settings.supabase_url or "").strip().lower()
    if not url:
        raise SystemExit("Refusing to start: SHUTTLE_SUPABASE_URL is unset in production.")
    if not url.startswith("https://"):
        raise SystemExit("Refusing to start: SHUTTLE_SUPABASE_URL must use https in production (got http).")

    if _is_placeholder(settings.supabase_anon_key):
        raise SystemExit("Refusing to start: SHUTTLE_SUPABASE_ANON_KEY is unset or a placeholder in production.")
    if _is_placeholder(settings.supabase_service_role_key):
        raise SystemExit(
            "Refusing to start: SHUTTLE_SUPABASE_SERVICE_ROLE_KEY is unset or a placeholder in production."
        )

    if settings.bcrypt_rounds < MIN_PROD_BCRYPT_ROUNDS:
        raise SystemExit(
            f"Refusing to start: SHUTTLE_BCRYPT_ROUNDS must be at least {MIN_PROD_BCRYPT_ROUNDS} in production."
        )
