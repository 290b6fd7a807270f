from __future__ import annotations

import os

os.environ["DATABASE_URL"] = "sqlite+pysqlite:///:memory:"
os.environ["SCHEDULER_ENABLED"] = "false"

from collections.abc import Callable, Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from portal.auth.deps import get_current_user, get_permission_service
from portal.core.db import Base, get_db
from portal.main import app, build_permission_service
from portal.models.permission import PermissionAction, PermissionModule, RolePermission
from portal.models.role import Role
from portal.models.user import User
from portal.services.permissions import PermissionService
from portal.services.realtime import RealtimeHub

SQLALCHEMY_TEST_URL = "sqlite+pysqlite:///:memory:"
engine = create_engine(
    SQLALCHEMY_TEST_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)

MODULES = ("tasks", "email", "roles", "inventory")
ACTIONS = ("read", "view", "create", "update", "delete", "sidebar")


def override_get_db() -> Generator[Session, None, None]:
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture(autouse=True)
def setup_database() -> Generator[None, None, None]:
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def db_session(permission_service: PermissionService) -> Generator[Session, None, None]:
    session = TestingSessionLocal()
    try:
        yield session
        session.commit()
    finally:
        session.close()


@pytest.fixture()
def realtime_hub() -> RealtimeHub:
    return RealtimeHub()


@pytest.fixture()
def permission_service(realtime_hub: RealtimeHub) -> Generator[PermissionService, None, None]:
    service = build_permission_service(TestingSessionLocal, realtime_hub)
    yield service
    service.close()


@pytest.fixture()
def client(db_session: Session, permission_service: PermissionService) -> Generator[TestClient, None, None]:
    app.dependency_overrides.clear()
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_permission_service] = lambda: permission_service
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture()
def authorize(client: TestClient):
    def _apply(user: User):
        app.dependency_overrides[get_current_user] = lambda: user

    yield _apply
    app.dependency_overrides.pop(get_current_user, None)


@pytest.fixture()
def registry(db_session: Session) -> tuple[dict[str, PermissionModule], dict[str, PermissionAction]]:
    modules: dict[str, PermissionModule] = {}
    for index, name in enumerate(MODULES, start=1):
        module = PermissionModule(name=name, label=name.title(), sort_order=index)
        db_session.add(module)
        modules[name] = module
    actions: dict[str, PermissionAction] = {}
    for name in ACTIONS:
        action = PermissionAction(name=name, label=name.title())
        db_session.add(action)
        actions[name] = action
    db_session.commit()
    return modules, actions


@pytest.fixture()
def make_role(db_session: Session) -> Callable[..., Role]:
    def _make(name: str, *, label: str | None = None, admin_only: bool = False, sort_order: int = 0) -> Role:
        role = Role(name=name, label=label or name.title(), admin_only=admin_only, sort_order=sort_order)
        db_session.add(role)
        db_session.commit()
        db_session.refresh(role)
        return role

    return _make


@pytest.fixture()
def make_user(db_session: Session) -> Callable[..., User]:
    def _make(email: str, role: str | None, *, is_super_admin: bool = False, first_name: str = "Test") -> User:
        user = User(
            email=email,
            first_name=first_name,
            last_name="User",
            role=role,
            is_active=True,
            is_super_admin=is_super_admin,
        )
        db_session.add(user)
        db_session.commit()
        db_session.refresh(user)
        return user

    return _make


@pytest.fixture()
def grant(db_session: Session, registry) -> Callable[..., None]:
    modules, actions = registry

    def _grant(role: str, module: str, *action_names: str, enabled: bool = True) -> None:
        for action_name in action_names:
            db_session.add(
                RolePermission(
                    role=role,
                    module_id=modules[module].id,
                    action_id=actions[action_name].id,
                    enabled=enabled,
                )
            )
        db_session.commit()

    return _grant


@pytest.fixture()
def super_admin(make_role, make_user) -> User:
    make_role("admin", admin_only=True)
    return make_user("super@example.com", "admin", is_super_admin=True, first_name="Super")


@pytest.fixture()
def session_factory() -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)
