from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from portal.core.db import Base, SessionLocal, engine
from portal.models.permission import DefaultRolePermission, PermissionAction, PermissionModule
from portal.models.role import Role
from portal.models.user import User
from portal.services.permission_store import PermissionStore

logger = logging.getLogger(__name__)

# name, label, show_in_sidebar
MODULES = [
    ("tasks", "Tasks", True),
    ("cadets", "Cadets", True),
    ("inventory", "Inventory", True),
    ("incidents", "Incidents", True),
    ("competitions", "Competitions", True),
    ("email", "Email Automation", True),
    ("roles", "Roles & Permissions", True),
    ("users", "Users", True),
]

ACTIONS = [
    ("read", "Read"),
    ("view", "View details"),
    ("create", "Create"),
    ("update", "Update"),
    ("delete", "Delete"),
    ("sidebar", "Show in sidebar"),
    ("assign", "Assign"),
    ("bulk_import", "Bulk import"),
]

# name, label, admin_only
ROLES = [
    ("admin", "Admin", True),
    ("instructor", "Instructor", False),
    ("command_staff", "Command Staff", False),
    ("cadet", "Cadet", False),
]

BROWSE = ("read", "view", "sidebar")
EDIT = BROWSE + ("create", "update")

DEFAULT_GRANTS: dict[str, dict[str, tuple[str, ...]]] = {
    "admin": {module: tuple(action for action, _ in ACTIONS) for module, _, _ in MODULES},
    "instructor": {
        "tasks": EDIT + ("assign",),
        "cadets": EDIT,
        "incidents": EDIT,
        "competitions": EDIT,
        "inventory": BROWSE,
        "email": BROWSE,
    },
    "command_staff": {
        "tasks": EDIT + ("assign",),
        "cadets": EDIT + ("assign",),
        "incidents": EDIT,
        "competitions": EDIT,
        "inventory": EDIT + ("assign",),
    },
    "cadet": {
        "tasks": BROWSE,
        "competitions": BROWSE,
    },
}

SUPER_ADMIN_EMAIL = "superadmin@example.com"


def ensure_modules(db: Session) -> dict[str, PermissionModule]:
    modules: dict[str, PermissionModule] = {}
    for index, (name, label, show_in_sidebar) in enumerate(MODULES, start=1):
        module = db.query(PermissionModule).filter_by(name=name).first()
        if module is None:
            module = PermissionModule(name=name, label=label, show_in_sidebar=show_in_sidebar, sort_order=index)
            db.add(module)
        modules[name] = module
    db.commit()
    return modules


def ensure_actions(db: Session) -> dict[str, PermissionAction]:
    actions: dict[str, PermissionAction] = {}
    for name, label in ACTIONS:
        action = db.query(PermissionAction).filter_by(name=name).first()
        if action is None:
            action = PermissionAction(name=name, label=label)
            db.add(action)
        actions[name] = action
    db.commit()
    return actions


def ensure_roles(db: Session) -> None:
    for index, (name, label, admin_only) in enumerate(ROLES, start=1):
        if db.query(Role).filter_by(name=name).first() is None:
            db.add(Role(name=name, label=label, admin_only=admin_only, sort_order=index))
    db.commit()


def ensure_default_grants(
    db: Session,
    modules: dict[str, PermissionModule],
    actions: dict[str, PermissionAction],
) -> int:
    created = 0
    for role, grants in DEFAULT_GRANTS.items():
        existing = {
            (row.module_id, row.action_id)
            for row in db.query(DefaultRolePermission).filter(DefaultRolePermission.role == role)
        }
        for module_name, module in modules.items():
            granted = grants.get(module_name, ())
            for action_name, action in actions.items():
                if (module.id, action.id) in existing:
                    continue
                db.add(
                    DefaultRolePermission(
                        role=role,
                        module_id=module.id,
                        action_id=action.id,
                        enabled=action_name in granted,
                    )
                )
                created += 1
    db.commit()
    return created


def ensure_super_admin(db: Session) -> User:
    user = db.query(User).filter_by(email=SUPER_ADMIN_EMAIL).first()
    if user is None:
        user = User(email=SUPER_ADMIN_EMAIL, first_name="Super", last_name="Admin", role="admin", is_active=True)
        db.add(user)
    user.is_super_admin = True
    db.commit()
    return user


def main() -> None:
    logging.basicConfig(level=logging.INFO)
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        modules = ensure_modules(db)
        actions = ensure_actions(db)
        ensure_roles(db)
        defaults = ensure_default_grants(db, modules, actions)
        ensure_super_admin(db)
    finally:
        db.close()

    store = PermissionStore(SessionLocal)
    seeded = sum(store.seed_role_permissions(role) for role, _, _ in ROLES)
    logger.info("permissions_seeded", extra={"default_rows": defaults, "role_rows": seeded})


if __name__ == "__main__":
    main()
