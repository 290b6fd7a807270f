from __future__ import annotations

from sqlalchemy.orm import Session, sessionmaker

from portal.models.permission import DefaultRolePermission, PermissionAction, PermissionModule, RolePermission
from portal.models.role import Role
from portal.scripts import seed_permissions
from portal.services.permission_store import PermissionStore
from portal.services.permissions import PermissionService


def _seed(db: Session, session_factory: sessionmaker) -> int:
    modules = seed_permissions.ensure_modules(db)
    actions = seed_permissions.ensure_actions(db)
    seed_permissions.ensure_roles(db)
    seed_permissions.ensure_default_grants(db, modules, actions)
    store = PermissionStore(session_factory)
    return sum(store.seed_role_permissions(role) for role, _, _ in seed_permissions.ROLES)


def test_seeding_is_idempotent(db_session: Session, session_factory: sessionmaker) -> None:
    first = _seed(db_session, session_factory)
    second = _seed(db_session, session_factory)

    grid_size = len(seed_permissions.MODULES) * len(seed_permissions.ACTIONS)
    assert first == grid_size * len(seed_permissions.ROLES)
    assert second == 0
    assert db_session.query(PermissionModule).count() == len(seed_permissions.MODULES)
    assert db_session.query(PermissionAction).count() == len(seed_permissions.ACTIONS)
    assert db_session.query(Role).count() == len(seed_permissions.ROLES)
    assert db_session.query(DefaultRolePermission).count() == grid_size * len(seed_permissions.ROLES)
    assert db_session.query(RolePermission).count() == grid_size * len(seed_permissions.ROLES)


def test_seeded_cadet_matches_default_grants(db_session: Session, session_factory: sessionmaker) -> None:
    _seed(db_session, session_factory)
    service = PermissionService(PermissionStore(session_factory))

    context = service.context_for("cadet")

    assert context.has_permission("tasks", "read") is True
    assert context.has_permission("tasks", "create") is False
    assert context.has_permission("inventory", "read") is False
    assert service.has_permission("admin", "users", "bulk_import") is False
    service.fetch_permission_matrix("admin")
    assert service.has_permission("admin", "users", "bulk_import") is True
