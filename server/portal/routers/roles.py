from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from portal.auth.deps import get_current_user, get_permission_service, require_permission
from portal.models.user import User
from portal.schemas.role import RoleCreateRequest, RoleOut, RoleReorderRequest, RoleUpdateRequest
from portal.services.permission_store import BackendError, RoleExistsError, RoleNotFoundError
from portal.services.permissions import PermissionService, RolePermissionSetupError

router = APIRouter(prefix="/roles", tags=["roles"])


def _backend_unavailable(exc: BackendError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_502_BAD_GATEWAY,
        detail={"message": str(exc), "code": "backend_unavailable"},
    )


@router.get("", response_model=list[RoleOut])
def list_roles(
    service: PermissionService = Depends(get_permission_service),
    _: User = Depends(require_permission("roles", "read")),
) -> list[RoleOut]:
    try:
        roles = service.list_roles()
    except BackendError as exc:
        raise _backend_unavailable(exc) from exc
    return [RoleOut.model_validate(role) for role in roles]


@router.get("/assignable", response_model=list[RoleOut])
def list_assignable_roles(
    service: PermissionService = Depends(get_permission_service),
    user: User = Depends(get_current_user),
) -> list[RoleOut]:
    try:
        roles = service.list_assignable_roles(is_super_admin=user.is_super_admin)
    except BackendError as exc:
        raise _backend_unavailable(exc) from exc
    return [RoleOut.model_validate(role) for role in roles]


@router.post("", response_model=RoleOut, status_code=status.HTTP_201_CREATED)
def add_role(
    payload: RoleCreateRequest,
    service: PermissionService = Depends(get_permission_service),
    user: User = Depends(require_permission("roles", "create")),
) -> RoleOut:
    if payload.admin_only and not user.is_super_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Only super admins can add admin-only roles")
    try:
        record = service.add_role(payload.role_name, payload.role_label, payload.admin_only)
    except ValueError as exc:
        status_code = status.HTTP_409_CONFLICT if isinstance(exc, RoleExistsError) else status.HTTP_400_BAD_REQUEST
        raise HTTPException(status_code=status_code, detail=str(exc)) from exc
    except RolePermissionSetupError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"message": str(exc), "code": "role_permissions_missing", "role": exc.role},
        ) from exc
    except BackendError as exc:
        raise _backend_unavailable(exc) from exc
    return RoleOut.model_validate(record)


@router.patch("/{role}", response_model=RoleOut)
def update_role(
    role: str,
    payload: RoleUpdateRequest,
    service: PermissionService = Depends(get_permission_service),
    user: User = Depends(require_permission("roles", "update")),
) -> RoleOut:
    changes = payload.model_dump(exclude_unset=True, exclude_none=True)
    if not changes:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No changes supplied")
    if "admin_only" in changes and not user.is_super_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Only super admins can change admin-only roles")
    try:
        record = service.update_role(role, **changes)
    except RoleNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except BackendError as exc:
        raise _backend_unavailable(exc) from exc
    return RoleOut.model_validate(record)


@router.post("/reorder", response_model=list[RoleOut])
def reorder_roles(
    payload: RoleReorderRequest,
    service: PermissionService = Depends(get_permission_service),
    _: User = Depends(require_permission("roles", "update")),
) -> list[RoleOut]:
    try:
        service.reorder_roles((item.name, item.sort_order) for item in payload.roles)
        roles = service.list_roles()
    except RoleNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except BackendError as exc:
        raise _backend_unavailable(exc) from exc
    return [RoleOut.model_validate(role) for role in roles]
