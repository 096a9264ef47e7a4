"""
Authentication and profile routes (router-only module).

Why:
    UI pages (student/guest map, driver portal, admin back-office) call these
    endpoints instead of talking to the identity provider directly. Each
    request carries the browser's `shuttle_client` cookie; the middleware in
    `web.main` attaches it as `request.state.client_id` and routes fetch that
    browser's `SessionResolver` from the app's registry on first use.

Notes:
    - Domain errors propagate to the app-level handler, which renders
      `{"error": code, "detail": message}`.
    - Every response is `Cache-Control: private, no-store`.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Request
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field

from shuttle_identity.errors import NotDriver
from shuttle_identity.resolver import SessionResolver


auth_router = APIRouter(tags=["Auth"])  # explicit paths, no prefix


class RegisterPayload(BaseModel):
    email: str
    password: str
    name: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    student_id: Optional[str] = None
    department: Optional[str] = None
    level: Optional[str] = None


class LoginPayload(BaseModel):
    email: str
    password: str
    remember: bool = False


class AdminLoginPayload(BaseModel):
    email: str
    password: str


class DriverLoginPayload(BaseModel):
    driver_id: str = Field(min_length=1)
    password: str
    remember: bool = False


class DriverPasswordPayload(BaseModel):
    current_password: str
    new_password: str


def _private_no_store() -> dict:
    return {"Cache-Control": "private, no-store"}


def _json_private(payload, *, status_code: int = 200) -> JSONResponse:
    return JSONResponse(content=payload, status_code=status_code, headers=_private_no_store())


def _resolver(request: Request) -> SessionResolver:
    return request.app.state.registry.get(request.state.client_id)


@auth_router.get("/api/me")
async def me(request: Request):
    """Return `{state, isLoading, session}` for the calling browser."""
    return _json_private(_resolver(request).snapshot())


@auth_router.post("/auth/register")
async def register(request: Request, payload: RegisterPayload):
    """Create a student account. Registration does not sign in.

    Behavior:
        - 201 with `{uid}` on success
        - 409 duplicate email, 400 invalid email or weak password
    """
    profile = {
        "name": payload.name,
        "firstName": payload.first_name,
        "lastName": payload.last_name,
        "studentId": payload.student_id,
        "department": payload.department,
        "level": payload.level,
    }
    profile = {k: v for k, v in profile.items() if v is not None}
    uid = _resolver(request).sign_up(payload.email, payload.password, profile)
    return _json_private({"uid": uid}, status_code=201)


@auth_router.post("/auth/login")
async def login(request: Request, payload: LoginPayload):
    resolver = _resolver(request)
    resolver.sign_in(payload.email, payload.password, remember=payload.remember)
    return _json_private(resolver.snapshot())


@auth_router.post("/auth/admin/login")
async def admin_login(request: Request, payload: AdminLoginPayload):
    """Admin sign-in; 403 `access_denied` when the account is not an admin."""
    resolver = _resolver(request)
    resolver.admin_sign_in(payload.email, payload.password)
    return _json_private(resolver.snapshot())


@auth_router.post("/auth/driver/login")
async def driver_login(request: Request, payload: DriverLoginPayload):
    resolver = _resolver(request)
    resolver.driver_sign_in(payload.driver_id, payload.password, remember=payload.remember)
    return _json_private(resolver.snapshot())


@auth_router.post("/auth/guest")
async def guest(request: Request):
    resolver = _resolver(request)
    resolver.continue_as_guest()
    return _json_private(resolver.snapshot())


@auth_router.post("/auth/logout")
async def logout(request: Request):
    resolver = _resolver(request)
    resolver.sign_out()
    return _json_private(resolver.snapshot())


@auth_router.get("/auth/credentials/{surface}")
async def get_credentials(request: Request, surface: str):
    """Remembered login-form values for `student` or `driver` (400 otherwise)."""
    cred = _resolver(request).load_credentials(surface)
    return _json_private({"remembered": cred is not None, "credentials": cred.to_dict() if cred else None})


@auth_router.delete("/auth/credentials/{surface}")
async def clear_credentials(request: Request, surface: str):
    _resolver(request).clear_credentials(surface)
    return Response(status_code=204, headers=_private_no_store())


@auth_router.patch("/api/me/profile")
async def update_profile(request: Request, patch: Dict[str, Any] = Body(...)):
    """Merge `patch` into the caller's profile document.

    Allowed keys: name, firstName, lastName, studentId, department, level, email.
    """
    session = _resolver(request).update_user_profile(patch)
    return _json_private(session.to_dict())


@auth_router.get("/api/me/driver")
async def driver_details(request: Request):
    resolver = _resolver(request)
    if not resolver.is_driver or resolver.session is None:
        raise NotDriver()
    account = resolver.get_driver_details(resolver.session.email)
    if account is None:
        return _json_private({"error": "not_found", "detail": "Driver profile not found"}, status_code=404)
    return _json_private(account.public_dict())


@auth_router.patch("/api/me/driver-profile")
async def update_driver_profile(request: Request, patch: Dict[str, Any] = Body(...)):
    """Allowed keys: name, email, phone, vehicleNumber, route, currentStatus."""
    session = _resolver(request).update_driver_profile(patch)
    return _json_private(session.to_dict())


@auth_router.post("/api/me/driver-password")
async def change_driver_password(request: Request, payload: DriverPasswordPayload):
    _resolver(request).change_driver_password(payload.current_password, payload.new_password)
    return Response(status_code=204, headers=_private_no_store())
