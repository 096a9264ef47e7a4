"""
Admin driver management routes.

Why:
    Admins create drivers out-of-band with a Driver ID and password; the
    driver's identity-provider account is provisioned on first sign-in.

Permissions:
    Caller must hold an admin session (401 without a session, 403 otherwise).
"""
from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Request
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field

from shuttle_identity.drivers import DriverDirectory


drivers_router = APIRouter(tags=["Drivers"])


class DriverCreatePayload(BaseModel):
    driver_id: str = Field(min_length=1, max_length=64)
    email: str
    name: str = Field(min_length=1, max_length=200)
    password: str
    phone: Optional[str] = None
    vehicle_number: Optional[str] = None
    route: Optional[str] = None
    is_active: bool = True


class DriverStatusPayload(BaseModel):
    status: str


def _private_no_store() -> dict:
    return {"Cache-Control": "private, no-store"}


def _require_admin(request: Request) -> tuple[Optional[DriverDirectory], Optional[JSONResponse]]:
    resolver = request.app.state.registry.get(request.state.client_id)
    if resolver.session is None or not resolver.is_authenticated:
        return None, JSONResponse({"error": "unauthenticated"}, status_code=401, headers=_private_no_store())
    if not resolver.is_admin:
        return None, JSONResponse({"error": "forbidden"}, status_code=403, headers=_private_no_store())
    return resolver.drivers, None


@drivers_router.get("/admin/drivers")
async def list_drivers(request: Request, limit: int = 50):
    directory, error = _require_admin(request)
    if error:
        return error
    limit = max(1, min(200, int(limit or 50)))
    items = [d.public_dict() for d in directory.list_drivers(limit=limit)]
    return JSONResponse({"items": items}, headers=_private_no_store())


@drivers_router.post("/admin/drivers")
async def create_driver(request: Request, payload: DriverCreatePayload):
    """Create a driver.

    Behavior:
        - 201 with the driver (password omitted)
        - 409 when the Driver ID or email is taken
        - 400 on weak password or malformed email
    """
    directory, error = _require_admin(request)
    if error:
        return error
    account = directory.create_driver(
        driver_id=payload.driver_id,
        email=payload.email,
        name=payload.name,
        password=payload.password,
        phone=payload.phone,
        vehicle_number=payload.vehicle_number,
        route=payload.route,
        is_active=payload.is_active,
    )
    return JSONResponse(account.public_dict(), status_code=201, headers=_private_no_store())


@drivers_router.patch("/admin/drivers/{driver_id}")
async def update_driver(request: Request, driver_id: str, patch: Dict[str, Any] = Body(...)):
    directory, error = _require_admin(request)
    if error:
        return error
    account = directory.update_driver(driver_id, patch)
    return JSONResponse(account.public_dict(), headers=_private_no_store())


@drivers_router.delete("/admin/drivers/{driver_id}")
async def delete_driver(request: Request, driver_id: str):
    directory, error = _require_admin(request)
    if error:
        return error
    directory.delete_driver(driver_id)
    return Response(status_code=204, headers=_private_no_store())


@drivers_router.post("/admin/drivers/{driver_id}/toggle")
async def toggle_driver(request: Request, driver_id: str):
    directory, error = _require_admin(request)
    if error:
        return error
    account = directory.toggle_active(driver_id)
    return JSONResponse(account.public_dict(), headers=_private_no_store())


@drivers_router.post("/admin/drivers/{driver_id}/status")
async def set_driver_status(request: Request, driver_id: str, payload: DriverStatusPayload):
    directory, error = _require_admin(request)
    if error:
        return error
    account = directory.set_status(driver_id, payload.status)
    return JSONResponse(account.public_dict(), headers=_private_no_store())
