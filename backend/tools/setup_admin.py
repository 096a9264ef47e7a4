"""
Provision an admin account for the shuttle tracker.

Why:
    The resolver never creates admins; `admin_sign_in` only accepts accounts
    listed in the `admins` collection. Operators run this once per admin:

        python -m tools.setup_admin --email ops@knust.edu.gh --name "Ops Admin"

    The password is prompted (hidden, confirmed, min 6 characters). The
    command creates the identity-provider account, writes `users/<uid>` with
    role admin and `admins/<uid>`, then signs out again.
"""
from __future__ import annotations

from typing import Iterable

import click
import structlog

from shuttle_identity.config import get_settings
from shuttle_identity.domain import ADMINS_COLLECTION, USERS_COLLECTION, normalize_email, now_utc
from shuttle_identity.errors import ProviderError
from shuttle_identity.passwords import MIN_PASSWORD_LENGTH
from shuttle_identity.ports import DocumentStore, IdentityProvider

logger = structlog.get_logger("shuttle_identity.tools")

DEFAULT_PERMISSIONS = ("manage_drivers", "manage_shuttles", "manage_routes", "manage_users", "view_reports")


def setup_admin(
    provider: IdentityProvider,
    documents: DocumentStore,
    *,
    email: str,
    name: str,
    password: str,
    permissions: Iterable[str] = DEFAULT_PERMISSIONS,
) -> str:
    """Create the admin and return its uid.

    Raises ValueError on invalid input and ProviderError when the identity
    provider rejects the account (e.g. `email_in_use`).
    """
    email = normalize_email(email)
    name = (name or "").strip()
    if not email or not name or not password:
        raise ValueError("All fields are required")
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValueError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")

    user = provider.create_account(email, password)
    try:
        try:
            provider.update_display_name(name)
        except ProviderError as exc:
            logger.warning("admin_display_name_failed", uid=user.uid, code=exc.code)
        now = now_utc().isoformat()
        with documents.transaction():
            documents.set(
                USERS_COLLECTION,
                user.uid,
                {"id": user.uid, "email": email, "name": name, "role": "admin", "createdAt": now, "updatedAt": now},
            )
            documents.set(
                ADMINS_COLLECTION,
                user.uid,
                {"id": user.uid, "email": email, "name": name, "role": "admin", "permissions": list(permissions)},
            )
    finally:
        provider.sign_out()
    logger.info("admin_created", uid=user.uid)
    return user.uid


@click.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.option("--email", required=True, help="Admin email address (used to sign in).")
@click.option("--name", required=True, help="Admin display name.")
@click.password_option("--password", help="Admin password (min 6 characters).")
def cli(email: str, name: str, password: str) -> None:
    """Create an admin account against the configured backend.

    Behaviour:
        - Refuses to run against the in-memory backend (nothing would persist).
        - Prints the new uid on success; exits non-zero on failure.
    """
    from web.wiring import build_adapters

    settings = get_settings()
    if settings.backend == "memory":
        click.echo("SHUTTLE_BACKEND=memory keeps nothing; configure the supabase backend first.", err=True)
        raise click.Abort()
    adapters = build_adapters(settings)
    click.echo("Creating admin account...")
    try:
        uid = setup_admin(
            adapters.provider_factory(),
            adapters.documents,
            email=email,
            name=name,
            password=password,
        )
    except ValueError as exc:
        raise click.BadParameter(str(exc))
    except ProviderError as exc:
        if exc.code == "email_in_use":
            click.echo("This email is already registered. Use a different email.", err=True)
        else:
            click.echo(f"Error setting up admin: {exc.code}", err=True)
        raise click.Abort()
    click.echo(f"Admin account created: {uid}")
    click.echo("Please change the password after first login.")


if __name__ == "__main__":  # pragma: no cover
    cli()
