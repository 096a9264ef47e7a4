"Shuttle tracker identity service"
from __future__ import annotations

from contextlib import asynccontextmanager
import logging
import os
import sys
from typing import Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from shuttle_identity.config import Settings, get_settings
from shuttle_identity.errors import AuthError, DocumentStoreError

from web.auth_utils import cookie_opts, is_valid_client_id, new_client_id
from web.config import ensure_secure_config_on_startup
from web.routes.auth import auth_router
from web.routes.drivers import drivers_router
from web.wiring import Adapters, ResolverRegistry, build_adapters


def _should_load_dotenv() -> bool:
    """Decide if we should load a local .env file.

    - Never load under pytest to avoid contaminating test env.
    - Allow explicit opt-out via SHUTTLE_ENABLE_DOTENV (default true outside
      pytest).
    """
    if "pytest" in sys.modules or os.getenv("PYTEST_CURRENT_TEST"):
        return False
    flag = (os.getenv("SHUTTLE_ENABLE_DOTENV", "true") or "").strip().lower()
    return flag in ("1", "true", "yes")


if _should_load_dotenv():
    from dotenv import load_dotenv

    load_dotenv()


logger = structlog.get_logger("shuttle_identity.web")

# Domain error code -> HTTP status
ERROR_STATUS = {
    "duplicate_email": 409,
    "driver_id_taken": 409,
    "invalid_email": 400,
    "weak_password": 400,
    "operation_not_allowed": 400,
    "invalid_credentials": 401,
    "not_authenticated": 401,
    "account_disabled": 403,
    "access_denied": 403,
    "not_driver": 403,
    "incorrect_password": 400,
    "driver_not_found": 404,
    "not_found": 404,
    "too_many_attempts": 429,
    "provisioning_failed": 502,
    "service_unavailable": 502,
}


def _private_no_store() -> dict:
    return {"Cache-Control": "private, no-store"}


def configure_logging(level: str = "INFO") -> None:
    """Configure structlog once per process: JSON lines with level and timestamp."""
    numeric = logging.getLevelName((level or "INFO").upper())
    if not isinstance(numeric, int):
        numeric = logging.INFO
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric),
        cache_logger_on_first_use=True,
    )


def create_app(settings: Optional[Settings] = None, adapters: Optional[Adapters] = None) -> FastAPI:
    """Build the FastAPI app.

    Tests pass their own settings/adapters; production reads SHUTTLE_* env.
    """
    settings = settings or get_settings()
    ensure_secure_config_on_startup(settings)
    configure_logging(settings.log_level)

    registry = ResolverRegistry(adapters or build_adapters(settings), settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        registry.close()

    app = FastAPI(
        title="Shuttle Identity",
        description="Session resolver for the shuttle tracker",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.registry = registry

    @app.middleware("http")
    async def client_context(request: Request, call_next):
        """Attach the client id and keep the client cookie alive.

        Routes fetch the resolver for `request.state.client_id` themselves, so
        requests that never touch a session (e.g. `/health`) create none.
        """
        client_id = request.cookies.get(settings.cookie_name)
        issued = not is_valid_client_id(client_id)
        if issued:
            client_id = new_client_id()
        request.state.client_id = client_id
        response = await call_next(request)
        if issued:
            opts = cookie_opts(settings.environment)
            response.set_cookie(
                key=settings.cookie_name,
                value=client_id,
                httponly=opts["httponly"],
                secure=opts["secure"],
                samesite=opts["samesite"],
                path="/",
                max_age=settings.cookie_max_age,
            )
        response.headers.setdefault("Cache-Control", "private, no-store")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        return response

    @app.exception_handler(AuthError)
    async def auth_error_handler(request: Request, exc: AuthError):
        status = ERROR_STATUS.get(exc.code, 400)
        return JSONResponse({"error": exc.code, "detail": exc.message}, status_code=status, headers=_private_no_store())

    @app.exception_handler(DocumentStoreError)
    async def store_error_handler(request: Request, exc: DocumentStoreError):
        logger.error("document_store_failed", path=request.url.path, code=exc.code)
        body = {"error": "service_unavailable", "detail": "Service temporarily unavailable. Please try again later"}
        return JSONResponse(body, status_code=502, headers=_private_no_store())

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        return JSONResponse({"error": "bad_request", "detail": str(exc)}, status_code=400, headers=_private_no_store())

    @app.get("/health")
    async def health():
        return JSONResponse({"status": "healthy"}, headers=_private_no_store())

    app.include_router(auth_router)
    app.include_router(drivers_router)
    logger.info("app_created", environment=settings.environment, backend=settings.backend)
    return app


app = create_app()
