from __future__ import annotations

import pytest
from fastapi import status
from sqlalchemy.orm import Session

from portal.models.email import EmailQueueItem, EmailRule, EmailTemplate
from portal.models.task import Task
from portal.services.email_rules import (
    apply_rules,
    conditions_match,
    resolve_recipient,
    subscribe_email_rules,
    unsubscribe_email_rules,
)
from portal.services.realtime import RealtimeHub


@pytest.fixture()
def task_template(db_session: Session) -> EmailTemplate:
    template = EmailTemplate(
        name="Task assigned",
        subject="New task: {{title}}",
        body="<p>Hi {{assigned_to.first_name}}, {{title}} is yours.</p>",
        source_table="tasks",
        variables_used=["title", "assigned_to.first_name"],
    )
    db_session.add(template)
    db_session.commit()
    db_session.refresh(template)
    return template


@pytest.fixture()
def rules_listening(permission_service, session_factory, realtime_hub: RealtimeHub):
    subscribe_email_rules(session_factory, realtime_hub)
    yield realtime_hub
    unsubscribe_email_rules(realtime_hub)


def _rule_payload(template_id: int, **overrides) -> dict:
    payload = {
        "name": "Notify assignee",
        "template_id": template_id,
        "source_table": "tasks",
        "trigger_event": "insert",
        "recipient_config": {"recipient_type": "field", "recipient_field": "assigned_to.email"},
    }
    payload.update(overrides)
    return payload


def _queued(db: Session) -> list[EmailQueueItem]:
    db.expire_all()
    return db.query(EmailQueueItem).order_by(EmailQueueItem.id.asc()).all()


def test_create_and_fetch_rule(client, authorize, super_admin, task_template) -> None:
    authorize(super_admin)

    response = client.post("/email-rules", json=_rule_payload(task_template.id))

    assert response.status_code == status.HTTP_201_CREATED
    body = response.json()
    assert body["created_by_id"] == super_admin.id
    assert body["trigger_conditions"] == {}
    assert body["recipient_config"]["recipient_field"] == "assigned_to.email"

    fetched = client.get(f"/email-rules/{body['id']}")
    assert fetched.status_code == status.HTTP_200_OK
    assert fetched.json()["name"] == "Notify assignee"


def test_rule_endpoints_follow_email_permissions(
    client, authorize, make_role, make_user, grant, task_template
) -> None:
    make_role("clerk")
    clerk = make_user("clerk@example.com", "clerk")
    grant("clerk", "email", "read")
    authorize(clerk)

    assert client.get("/email-rules").status_code == status.HTTP_200_OK
    response = client.post("/email-rules", json=_rule_payload(task_template.id))
    assert response.status_code == status.HTTP_403_FORBIDDEN


def test_rule_rejects_template_for_another_table(client, authorize, super_admin, task_template) -> None:
    authorize(super_admin)

    response = client.post("/email-rules", json=_rule_payload(task_template.id, source_table="users"))

    assert response.status_code == status.HTTP_400_BAD_REQUEST


def test_rule_rejects_unknown_template(client, authorize, super_admin) -> None:
    authorize(super_admin)

    response = client.post("/email-rules", json=_rule_payload(9999))

    assert response.status_code == status.HTTP_400_BAD_REQUEST


@pytest.mark.parametrize(
    "recipient_config",
    [
        {"recipient_type": "field"},
        {"recipient_type": "static"},
        {"recipient_type": "static", "static_email": "not-an-address"},
    ],
)
def test_rule_requires_a_usable_recipient(client, authorize, super_admin, task_template, recipient_config) -> None:
    authorize(super_admin)

    response = client.post("/email-rules", json=_rule_payload(task_template.id, recipient_config=recipient_config))

    assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY


def test_update_rule_and_list_active_only(client, authorize, super_admin, task_template) -> None:
    authorize(super_admin)
    rule_id = client.post("/email-rules", json=_rule_payload(task_template.id)).json()["id"]

    response = client.patch(f"/email-rules/{rule_id}", json={"is_active": False, "trigger_event": "update"})

    assert response.status_code == status.HTTP_200_OK
    assert response.json()["trigger_event"] == "update"
    assert client.get("/email-rules", params={"include_inactive": False}).json() == []
    assert [rule["id"] for rule in client.get("/email-rules").json()] == [rule_id]


def test_bulk_status_and_delete(client, authorize, super_admin, task_template) -> None:
    authorize(super_admin)
    ids = [
        client.post("/email-rules", json=_rule_payload(task_template.id, name=f"Rule {n}")).json()["id"]
        for n in range(3)
    ]

    paused = client.post("/email-rules/bulk/status", json={"rule_ids": ids[:2], "is_active": False})
    assert paused.json() == {"updated": 2}
    active = client.get("/email-rules", params={"include_inactive": False}).json()
    assert [rule["id"] for rule in active] == [ids[2]]

    removed = client.post("/email-rules/bulk/delete", json={"rule_ids": [ids[0], 12345]})
    assert removed.json() == {"updated": 1}
    assert client.get(f"/email-rules/{ids[0]}").status_code == status.HTTP_404_NOT_FOUND

    assert client.post("/email-rules/bulk/delete", json={"rule_ids": []}).status_code == (
        status.HTTP_422_UNPROCESSABLE_ENTITY
    )


def test_new_task_queues_email_for_assignee(
    client, authorize, super_admin, make_user, task_template, rules_listening, db_session
) -> None:
    authorize(super_admin)
    assignee = make_user("ada@example.com", None, first_name="Ada")
    rule_id = client.post("/email-rules", json=_rule_payload(task_template.id)).json()["id"]

    response = client.post("/tasks", json={"title": "Inspect uniforms", "assigned_to_id": assignee.id})

    assert response.status_code == status.HTTP_201_CREATED
    queued = _queued(db_session)
    assert len(queued) == 1
    assert queued[0].recipient_email == "ada@example.com"
    assert queued[0].rule_id == rule_id
    assert queued[0].record_id == response.json()["id"]
    assert queued[0].subject == "New task: Inspect uniforms"


def test_rule_conditions_and_inactive_rules_filter_sends(
    client, authorize, super_admin, make_user, task_template, rules_listening, db_session
) -> None:
    authorize(super_admin)
    assignee = make_user("ada@example.com", None, first_name="Ada")
    client.post("/email-rules", json=_rule_payload(task_template.id, trigger_conditions={"priority": "high"}))
    client.post(
        "/email-rules",
        json=_rule_payload(
            task_template.id,
            name="Paused",
            is_active=False,
            recipient_config={"recipient_type": "static", "static_email": "desk@example.com"},
        ),
    )

    client.post("/tasks", json={"title": "Routine", "priority": "low", "assigned_to_id": assignee.id})
    assert _queued(db_session) == []

    client.post("/tasks", json={"title": "Urgent", "priority": "high", "assigned_to_id": assignee.id})
    queued = _queued(db_session)
    assert [item.recipient_email for item in queued] == ["ada@example.com"]


def test_update_rule_fires_on_patch_only(
    client, authorize, super_admin, make_user, task_template, rules_listening, db_session
) -> None:
    authorize(super_admin)
    assignee = make_user("ada@example.com", None, first_name="Ada")
    client.post(
        "/email-rules",
        json=_rule_payload(task_template.id, trigger_event="update", trigger_conditions={"status": "done"}),
    )
    task_id = client.post("/tasks", json={"title": "Inspect uniforms", "assigned_to_id": assignee.id}).json()["id"]
    assert _queued(db_session) == []

    client.patch(f"/tasks/{task_id}", json={"status": "done"})

    queued = _queued(db_session)
    assert len(queued) == 1
    assert queued[0].recipient_email == "ada@example.com"


def test_apply_rules_skips_records_without_recipient(db_session, task_template) -> None:
    task = Task(title="Unassigned", status="not_started", priority="medium")
    db_session.add(task)
    db_session.add(
        EmailRule(
            name="Notify assignee",
            template_id=task_template.id,
            source_table="tasks",
            trigger_event="insert",
            trigger_conditions={},
            recipient_config={"recipient_type": "field", "recipient_field": "assigned_to.email"},
        )
    )
    db_session.commit()

    assert apply_rules(db_session, "tasks", "insert", task.id) == []
    assert apply_rules(db_session, "tasks", "delete", task.id) == []


def test_conditions_and_recipients_read_record_paths() -> None:
    record = {"status": "done", "assigned_to": {"email": "ada@example.com"}}

    assert conditions_match({"status": "done"}, record)
    assert not conditions_match({"status": "open"}, record)
    assert not conditions_match({"assigned_by.email": "x@example.com"}, record)
    assert resolve_recipient({"recipient_type": "field", "recipient_field": "assigned_to.email"}, record) == (
        "ada@example.com"
    )
    assert resolve_recipient({"recipient_type": "static", "static_email": "desk@example.com"}, record) == (
        "desk@example.com"
    )
    assert resolve_recipient({"recipient_type": "field", "recipient_field": "status"}, record) is None
