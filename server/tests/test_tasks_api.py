from __future__ import annotations

import pytest
from fastapi import status


@pytest.fixture()
def instructor(make_role, make_user, grant):
    make_role("instructor")
    grant("instructor", "tasks", "read", "view", "create", "update", "delete")
    return make_user("instructor@example.com", "instructor", first_name="Ines")


@pytest.fixture()
def cadet(make_role, make_user, grant):
    make_role("cadet")
    grant("cadet", "tasks", "read", "view")
    return make_user("cadet@example.com", "cadet", first_name="Cal")


def test_instructor_manages_tasks(client, authorize, instructor, cadet) -> None:
    authorize(instructor)

    created = client.post(
        "/tasks",
        json={"title": "  Polish boots ", "due_date": "2026-11-02", "assigned_to_id": cadet.id},
    )

    assert created.status_code == status.HTTP_201_CREATED
    task = created.json()
    assert task["title"] == "Polish boots"
    assert task["assigned_by_id"] == instructor.id
    assert task["status"] == "not_started"

    updated = client.patch(f"/tasks/{task['id']}", json={"status": "completed", "priority": None})
    assert updated.status_code == status.HTTP_200_OK
    assert updated.json()["status"] == "completed"
    assert updated.json()["priority"] == "medium"

    assert client.delete(f"/tasks/{task['id']}").status_code == status.HTTP_204_NO_CONTENT
    assert client.get(f"/tasks/{task['id']}").status_code == status.HTTP_404_NOT_FOUND


def test_cadet_can_read_but_not_write(client, authorize, instructor, cadet) -> None:
    authorize(instructor)
    task_id = client.post("/tasks", json={"title": "Drill practice", "assigned_to_id": cadet.id}).json()["id"]

    authorize(cadet)

    assert client.get("/tasks").status_code == status.HTTP_200_OK
    assert client.get(f"/tasks/{task_id}").status_code == status.HTTP_200_OK
    assert client.post("/tasks", json={"title": "Sneaky"}).status_code == status.HTTP_403_FORBIDDEN
    assert client.patch(f"/tasks/{task_id}", json={"status": "done"}).status_code == status.HTTP_403_FORBIDDEN
    assert client.delete(f"/tasks/{task_id}").status_code == status.HTTP_403_FORBIDDEN


def test_list_filters(client, authorize, instructor, cadet) -> None:
    authorize(instructor)
    client.post("/tasks", json={"title": "Later", "due_date": "2026-12-01"})
    client.post("/tasks", json={"title": "Sooner", "due_date": "2026-11-01", "assigned_to_id": cadet.id})
    client.post("/tasks", json={"title": "Someday", "status": "in_progress"})

    ordered = client.get("/tasks").json()
    mine = client.get("/tasks", params={"assigned_to_id": cadet.id}).json()
    in_progress = client.get("/tasks", params={"status": "in_progress"}).json()

    assert [task["title"] for task in ordered] == ["Sooner", "Later", "Someday"]
    assert [task["title"] for task in mine] == ["Sooner"]
    assert [task["title"] for task in in_progress] == ["Someday"]


def test_unknown_assignee_rejected(client, authorize, instructor) -> None:
    authorize(instructor)

    response = client.post("/tasks", json={"title": "Orphan", "assigned_to_id": 999})

    assert response.status_code == status.HTTP_400_BAD_REQUEST


def test_revoked_grant_takes_effect_on_next_request(client, authorize, cadet, super_admin) -> None:
    authorize(cadet)
    assert client.get("/tasks").status_code == status.HTTP_200_OK

    authorize(super_admin)
    revoke = client.put("/permissions/roles/cadet/tasks/read", json={"enabled": False})
    assert revoke.status_code == status.HTTP_200_OK

    authorize(cadet)
    assert client.get("/tasks").status_code == status.HTTP_403_FORBIDDEN
