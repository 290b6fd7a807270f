from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from portal.auth.deps import get_current_user, get_permission_context, get_permission_service, require_permission
from portal.models.user import User
from portal.schemas.permission import (
    PermissionActionOut,
    PermissionMatrixResponse,
    PermissionModuleOut,
    PermissionResetResponse,
    PermissionToggleRequest,
)
from portal.services.permission_store import BackendError, RoleNotFoundError, UnknownPermissionTargetError
from portal.services.permissions import PermissionContext, PermissionService, sidebar_modules

router = APIRouter(prefix="/permissions", tags=["permissions"])


def _backend_unavailable(exc: BackendError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_502_BAD_GATEWAY,
        detail={"message": str(exc), "code": "backend_unavailable"},
    )


@router.get("/me", response_model=PermissionMatrixResponse)
def my_permissions(
    user: User = Depends(get_current_user),
    context: PermissionContext = Depends(get_permission_context),
) -> PermissionMatrixResponse:
    return PermissionMatrixResponse(role=user.role, permissions=context.matrix)


@router.get("/me/sidebar", response_model=list[PermissionModuleOut])
def my_sidebar(context: PermissionContext = Depends(get_permission_context)) -> list[PermissionModuleOut]:
    try:
        modules = sidebar_modules(context)
    except BackendError as exc:
        raise _backend_unavailable(exc) from exc
    return [PermissionModuleOut.model_validate(module) for module in modules]


@router.get("/modules", response_model=list[PermissionModuleOut])
def list_modules(
    service: PermissionService = Depends(get_permission_service),
    _: User = Depends(get_current_user),
) -> list[PermissionModuleOut]:
    try:
        modules = service.list_modules()
    except BackendError as exc:
        raise _backend_unavailable(exc) from exc
    return [PermissionModuleOut.model_validate(module) for module in modules]


@router.get("/actions", response_model=list[PermissionActionOut])
def list_actions(
    service: PermissionService = Depends(get_permission_service),
    _: User = Depends(get_current_user),
) -> list[PermissionActionOut]:
    try:
        actions = service.list_actions()
    except BackendError as exc:
        raise _backend_unavailable(exc) from exc
    return [PermissionActionOut.model_validate(action) for action in actions]


@router.get("/roles/{role}", response_model=PermissionMatrixResponse)
def role_permissions(
    role: str,
    service: PermissionService = Depends(get_permission_service),
    _: User = Depends(require_permission("roles", "read")),
) -> PermissionMatrixResponse:
    try:
        if service.get_role(role) is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Role not found")
        grid = service.get_role_permissions(role)
    except BackendError as exc:
        raise _backend_unavailable(exc) from exc
    return PermissionMatrixResponse(role=role, permissions=grid)


@router.put("/roles/{role}/{module}/{action}", response_model=PermissionMatrixResponse)
def toggle_role_permission(
    role: str,
    module: str,
    action: str,
    payload: PermissionToggleRequest,
    service: PermissionService = Depends(get_permission_service),
    _: User = Depends(require_permission("roles", "update")),
) -> PermissionMatrixResponse:
    try:
        service.toggle_permission(role, module, action, payload.enabled)
    except RoleNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except UnknownPermissionTargetError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except BackendError as exc:
        raise _backend_unavailable(exc) from exc
    return PermissionMatrixResponse(role=role, permissions=service.get_matrix(role) or {})


@router.post("/roles/{role}/reset", response_model=PermissionResetResponse)
def reset_role_permissions(
    role: str,
    service: PermissionService = Depends(get_permission_service),
    _: User = Depends(require_permission("roles", "update")),
) -> PermissionResetResponse:
    try:
        restored = service.reset_to_defaults(role)
    except RoleNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except BackendError as exc:
        raise _backend_unavailable(exc) from exc
    return PermissionResetResponse(role=role, restored=restored)
