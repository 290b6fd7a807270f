from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Iterable, Iterator

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from portal.models.permission import DefaultRolePermission, PermissionAction, PermissionModule, RolePermission
from portal.models.role import Role

logger = logging.getLogger(__name__)

ROLE_UPDATABLE_FIELDS = {"label", "admin_only", "is_active", "sort_order"}


class BackendError(Exception):
    """Raised when the data store cannot complete a request."""


class RoleNotFoundError(LookupError):
    pass


class RoleExistsError(ValueError):
    pass


class UnknownPermissionTargetError(LookupError):
    """Raised when a write names a module or action the registry does not know."""


@dataclass(frozen=True)
class PermissionGrant:
    module: str
    action: str
    enabled: bool


@dataclass(frozen=True)
class RoleRecord:
    id: int
    name: str
    label: str
    admin_only: bool
    is_active: bool
    sort_order: int

    @classmethod
    def from_model(cls, role: Role) -> "RoleRecord":
        return cls(
            id=role.id,
            name=role.name,
            label=role.label,
            admin_only=bool(role.admin_only),
            is_active=bool(role.is_active),
            sort_order=role.sort_order or 0,
        )


@dataclass(frozen=True)
class ModuleRecord:
    id: int
    name: str
    label: str
    description: str | None
    is_active: bool
    show_in_sidebar: bool
    sort_order: int


@dataclass(frozen=True)
class ActionRecord:
    id: int
    name: str
    label: str
    description: str | None
    is_active: bool


class PermissionStore:
    """SQL-backed access to roles, the module/action registry and role grants."""

    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    @contextmanager
    def _session(self, operation: str) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
        except SQLAlchemyError as exc:
            session.rollback()
            logger.warning("backend_request_failed", extra={"operation": operation, "error": str(exc)})
            raise BackendError(f"{operation} failed") from exc
        finally:
            session.close()

    def fetch_role_permissions(self, role: str) -> list[PermissionGrant]:
        with self._session("fetch_role_permissions") as session:
            rows = (
                session.query(PermissionModule.name, PermissionAction.name, RolePermission.enabled)
                .select_from(RolePermission)
                .join(PermissionModule, PermissionModule.id == RolePermission.module_id)
                .join(PermissionAction, PermissionAction.id == RolePermission.action_id)
                .filter(RolePermission.role == role)
                .all()
            )
            return [PermissionGrant(module=module, action=action, enabled=bool(enabled)) for module, action, enabled in rows]

    def list_roles(self) -> list[RoleRecord]:
        with self._session("list_roles") as session:
            roles = session.query(Role).order_by(Role.sort_order.asc(), Role.name.asc()).all()
            return [RoleRecord.from_model(role) for role in roles]

    def get_role(self, name: str) -> RoleRecord | None:
        with self._session("get_role") as session:
            role = session.query(Role).filter(Role.name == name).first()
            return RoleRecord.from_model(role) if role else None

    def list_modules(self) -> list[ModuleRecord]:
        with self._session("list_modules") as session:
            modules = session.query(PermissionModule).order_by(PermissionModule.sort_order.asc(), PermissionModule.label.asc()).all()
            return [
                ModuleRecord(
                    id=module.id,
                    name=module.name,
                    label=module.label,
                    description=module.description,
                    is_active=bool(module.is_active),
                    show_in_sidebar=bool(module.show_in_sidebar),
                    sort_order=module.sort_order or 0,
                )
                for module in modules
            ]

    def list_actions(self) -> list[ActionRecord]:
        with self._session("list_actions") as session:
            actions = session.query(PermissionAction).order_by(PermissionAction.label.asc()).all()
            return [
                ActionRecord(
                    id=action.id,
                    name=action.name,
                    label=action.label,
                    description=action.description,
                    is_active=bool(action.is_active),
                )
                for action in actions
            ]

    def insert_role(self, name: str, label: str, admin_only: bool) -> RoleRecord:
        with self._session("insert_role") as session:
            if session.query(Role.id).filter(Role.name == name).first():
                raise RoleExistsError(f"Role '{name}' already exists")
            next_order = (session.query(Role.sort_order).order_by(Role.sort_order.desc()).limit(1).scalar() or 0) + 1
            role = Role(name=name, label=label, admin_only=admin_only, is_active=True, sort_order=next_order)
            session.add(role)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise RoleExistsError(f"Role '{name}' already exists") from exc
            session.refresh(role)
            return RoleRecord.from_model(role)

    def seed_role_permissions(self, role: str) -> int:
        """Write one row per module and action for ``role``.

        Rows default to disabled; matching ``default_role_permissions`` rows
        override the baseline.
        """

        with self._session("seed_role_permissions") as session:
            defaults = {
                (row.module_id, row.action_id): bool(row.enabled)
                for row in session.query(DefaultRolePermission).filter(DefaultRolePermission.role == role)
            }
            existing = {
                (row.module_id, row.action_id)
                for row in session.query(RolePermission).filter(RolePermission.role == role)
            }
            action_ids = [action_id for action_id, in session.query(PermissionAction.id).all()]
            created = 0
            for module_id, in session.query(PermissionModule.id).all():
                for action_id in action_ids:
                    if (module_id, action_id) in existing:
                        continue
                    session.add(
                        RolePermission(
                            role=role,
                            module_id=module_id,
                            action_id=action_id,
                            enabled=defaults.get((module_id, action_id), False),
                        )
                    )
                    created += 1
            session.commit()
            return created

    def upsert_permission(self, role: str, module: str, action: str, enabled: bool) -> None:
        with self._session("upsert_permission") as session:
            module_row = session.query(PermissionModule).filter(PermissionModule.name == module).first()
            action_row = session.query(PermissionAction).filter(PermissionAction.name == action).first()
            if module_row is None or action_row is None:
                raise UnknownPermissionTargetError(f"Unknown permission target {module}.{action}")
            if session.query(Role.id).filter(Role.name == role).first() is None:
                raise RoleNotFoundError(f"Role '{role}' not found")
            row = (
                session.query(RolePermission)
                .filter(
                    RolePermission.role == role,
                    RolePermission.module_id == module_row.id,
                    RolePermission.action_id == action_row.id,
                )
                .first()
            )
            if row is None:
                row = RolePermission(role=role, module_id=module_row.id, action_id=action_row.id)
                session.add(row)
            row.enabled = enabled
            session.commit()

    def reset_role_permissions(self, role: str) -> int:
        with self._session("reset_role_permissions") as session:
            if session.query(Role.id).filter(Role.name == role).first() is None:
                raise RoleNotFoundError(f"Role '{role}' not found")
            # Row-by-row so change capture sees every delete.
            for row in session.query(RolePermission).filter(RolePermission.role == role).all():
                session.delete(row)
            session.flush()
            defaults = session.query(DefaultRolePermission).filter(DefaultRolePermission.role == role).all()
            for default in defaults:
                session.add(
                    RolePermission(
                        role=role,
                        module_id=default.module_id,
                        action_id=default.action_id,
                        enabled=default.enabled,
                    )
                )
            session.commit()
            return len(defaults)

    def update_role(self, name: str, changes: dict[str, Any]) -> RoleRecord:
        unknown = set(changes) - ROLE_UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unsupported role fields: {', '.join(sorted(unknown))}")
        with self._session("update_role") as session:
            role = session.query(Role).filter(Role.name == name).first()
            if role is None:
                raise RoleNotFoundError(f"Role '{name}' not found")
            for key, value in changes.items():
                setattr(role, key, value)
            session.commit()
            session.refresh(role)
            return RoleRecord.from_model(role)

    def reorder_roles(self, orders: Iterable[tuple[str, int]]) -> None:
        with self._session("reorder_roles") as session:
            wanted = dict(orders)
            roles = session.query(Role).filter(Role.name.in_(list(wanted))).all()
            missing = set(wanted) - {role.name for role in roles}
            if missing:
                raise RoleNotFoundError(f"Roles not found: {', '.join(sorted(missing))}")
            for role in roles:
                role.sort_order = wanted[role.name]
            session.commit()
