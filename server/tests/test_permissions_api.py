from __future__ import annotations

from fastapi import status
from sqlalchemy.orm import Session

from portal.models.permission import DefaultRolePermission, RolePermission


def test_my_permissions_returns_role_matrix(client, authorize, make_role, make_user, grant) -> None:
    make_role("cadet")
    grant("cadet", "tasks", "read", "sidebar")
    grant("cadet", "tasks", "create", enabled=False)
    authorize(make_user("cadet@example.com", "cadet"))

    response = client.get("/permissions/me")

    assert response.status_code == status.HTTP_200_OK
    body = response.json()
    assert body["role"] == "cadet"
    assert body["permissions"] == {"tasks": {"read": True, "sidebar": True, "create": False}}


def test_user_without_role_gets_empty_matrix(client, authorize, make_user, registry) -> None:
    authorize(make_user("norole@example.com", None))

    response = client.get("/permissions/me")

    assert response.status_code == status.HTTP_200_OK
    assert response.json() == {"role": None, "permissions": {}}


def test_sidebar_lists_visible_modules_in_order(client, authorize, make_role, make_user, grant) -> None:
    make_role("cadet")
    grant("cadet", "inventory", "sidebar")
    grant("cadet", "tasks", "sidebar")
    grant("cadet", "email", "read")
    authorize(make_user("cadet@example.com", "cadet"))

    response = client.get("/permissions/me/sidebar")

    assert response.status_code == status.HTTP_200_OK
    assert [module["name"] for module in response.json()] == ["tasks", "inventory"]


def test_registry_endpoints(client, authorize, make_role, make_user, registry) -> None:
    make_role("cadet")
    authorize(make_user("cadet@example.com", "cadet"))

    modules = client.get("/permissions/modules")
    actions = client.get("/permissions/actions")

    assert modules.status_code == status.HTTP_200_OK
    assert [module["name"] for module in modules.json()] == ["tasks", "email", "roles", "inventory"]
    assert {action["name"] for action in actions.json()} == {"read", "view", "create", "update", "delete", "sidebar"}


def test_role_grid_requires_roles_permission(client, authorize, make_role, make_user, registry) -> None:
    make_role("cadet")
    authorize(make_user("cadet@example.com", "cadet"))

    response = client.get("/permissions/roles/cadet")

    assert response.status_code == status.HTTP_403_FORBIDDEN


def test_role_grid_fills_every_module_and_action(client, authorize, super_admin, make_role, grant) -> None:
    make_role("cadet")
    grant("cadet", "tasks", "read")
    authorize(super_admin)

    response = client.get("/permissions/roles/cadet")

    assert response.status_code == status.HTTP_200_OK
    grid = response.json()["permissions"]
    assert set(grid) == {"tasks", "email", "roles", "inventory"}
    assert grid["tasks"]["read"] is True
    assert grid["tasks"]["delete"] is False
    assert all(value is False for value in grid["inventory"].values())


def test_role_grid_unknown_role(client, authorize, super_admin, registry) -> None:
    authorize(super_admin)

    response = client.get("/permissions/roles/ghost")

    assert response.status_code == status.HTTP_404_NOT_FOUND


def test_roles_module_grant_allows_grid_access(client, authorize, make_role, make_user, grant) -> None:
    make_role("instructor")
    make_role("cadet")
    grant("instructor", "roles", "read")
    authorize(make_user("instructor@example.com", "instructor"))

    response = client.get("/permissions/roles/cadet")

    assert response.status_code == status.HTTP_200_OK


def test_toggle_permission_persists_and_reconciles(
    client, authorize, super_admin, make_role, make_user, grant, db_session: Session
) -> None:
    make_role("cadet")
    grant("cadet", "tasks", "read")
    cadet = make_user("cadet@example.com", "cadet")
    authorize(super_admin)

    response = client.put("/permissions/roles/cadet/tasks/create", json={"enabled": True})

    assert response.status_code == status.HTTP_200_OK
    assert response.json()["permissions"]["tasks"]["create"] is True
    rows = db_session.query(RolePermission).filter(RolePermission.role == "cadet").all()
    assert {(row.module.name, row.action.name, row.enabled) for row in rows} == {
        ("tasks", "read", True),
        ("tasks", "create", True),
    }

    authorize(cadet)
    assert client.get("/permissions/me").json()["permissions"]["tasks"]["create"] is True


def test_toggle_unknown_target_is_rejected(client, authorize, super_admin, make_role, registry) -> None:
    make_role("cadet")
    authorize(super_admin)

    response = client.put("/permissions/roles/cadet/ghost_module/read", json={"enabled": True})

    assert response.status_code == status.HTTP_400_BAD_REQUEST
    grid = client.get("/permissions/roles/cadet").json()["permissions"]
    assert "ghost_module" not in grid


def test_toggle_unknown_role(client, authorize, super_admin, registry, permission_service) -> None:
    authorize(super_admin)

    for name in ("ghost0", "ghost1", "ghost2"):
        response = client.put(f"/permissions/roles/{name}/tasks/read", json={"enabled": True})
        assert response.status_code == status.HTTP_404_NOT_FOUND

    assert not any(permission_service.is_loaded(name) for name in ("ghost0", "ghost1", "ghost2"))


def test_reset_restores_defaults(client, authorize, super_admin, make_role, grant, registry, db_session: Session) -> None:
    modules, actions = registry
    make_role("cadet")
    grant("cadet", "tasks", "read", "create", "delete")
    db_session.add(
        DefaultRolePermission(role="cadet", module_id=modules["tasks"].id, action_id=actions["read"].id, enabled=True)
    )
    db_session.commit()
    authorize(super_admin)

    response = client.post("/permissions/roles/cadet/reset")

    assert response.status_code == status.HTTP_200_OK
    assert response.json() == {"role": "cadet", "restored": 1}
    grid = client.get("/permissions/roles/cadet").json()["permissions"]
    assert grid["tasks"]["read"] is True
    assert grid["tasks"]["create"] is False
    assert grid["tasks"]["delete"] is False
