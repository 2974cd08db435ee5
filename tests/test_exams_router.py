from datetime import timedelta

import pytest

from examhub.core.errors import ConflictError
from examhub.models import Exam, ExamAction, ExamStatus
from examhub.schemas.exam import ExamCreate
from examhub.services.actions import STALE_STATE_MESSAGE
from examhub.services.exam_store import TransitionEntry

from conftest import NOW

BASE = "/api/v1/exams"


def exam_payload(**overrides) -> dict:
    payload = {
        "title": "Mathematics Paper 1",
        "class_id": 10,
        "start_time": (NOW + timedelta(days=1, hours=1)).isoformat(),
        "end_time": (NOW + timedelta(days=1, hours=3)).isoformat(),
    }
    payload.update(overrides)
    return payload


async def create_exam(client, headers, **overrides) -> dict:
    response = await client.post(BASE, json=exam_payload(**overrides), headers=headers)
    assert response.status_code == 201
    return response.json()


async def submit_and_approve(client, headers, exam_id: int, publish_now: bool = False) -> dict:
    response = await client.post(f"{BASE}/{exam_id}/submit", json={"confirmed": True}, headers=headers)
    assert response.status_code == 200
    response = await client.post(
        f"{BASE}/{exam_id}/approve", json={"confirmed": True, "publish_now": publish_now}, headers=headers
    )
    assert response.status_code == 200
    return response.json()["exam"]


@pytest.mark.asyncio
async def test_create_exam(client, operator_headers):
    data = await create_exam(client, operator_headers)
    assert data["status"] == "DRAFT"
    assert data["dynamic_status"] == "DRAFT"
    assert data["school_id"] == 1
    assert data["version"] == 1
    assert data["available_actions"] == ["DELETE", "SUBMIT_FOR_APPROVAL"]


@pytest.mark.asyncio
async def test_create_exam_rejects_inverted_window(client, operator_headers):
    payload = exam_payload(end_time=(NOW - timedelta(days=1)).isoformat())
    response = await client.post(BASE, json=payload, headers=operator_headers)
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_missing_operator_headers(client):
    response = await client.get(f"{BASE}/1")
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_approval_flow(client, operator_headers):
    exam = await create_exam(client, operator_headers)
    approved = await submit_and_approve(client, operator_headers, exam["id"])
    assert approved["status"] == "APPROVED"
    assert approved["approver_id"] == "admin-1"
    assert approved["dynamic_status"] == "SCHEDULED"
    assert approved["version"] == 3

    response = await client.post(f"{BASE}/{exam['id']}/publish", json={"confirmed": True}, headers=operator_headers)
    assert response.status_code == 200
    assert response.json()["exam"]["status"] == "PUBLISHED"

    history = await client.get(f"{BASE}/{exam['id']}/history", headers=operator_headers)
    assert [entry["action"] for entry in history.json()] == ["SUBMIT_FOR_APPROVAL", "APPROVE", "PUBLISH"]


@pytest.mark.asyncio
async def test_action_requires_confirmation(client, operator_headers):
    exam = await create_exam(client, operator_headers)
    response = await client.post(f"{BASE}/{exam['id']}/submit", json={}, headers=operator_headers)
    assert response.status_code == 422
    assert response.json()["detail"]["field"] == "confirmed"


@pytest.mark.asyncio
async def test_second_approval_conflicts(client, operator_headers):
    exam = await create_exam(client, operator_headers)
    await submit_and_approve(client, operator_headers, exam["id"])

    response = await client.post(f"{BASE}/{exam['id']}/approve", json={"confirmed": True}, headers=operator_headers)
    assert response.status_code == 409
    assert response.json()["detail"]["message"] == STALE_STATE_MESSAGE


@pytest.mark.asyncio
async def test_retried_request_is_idempotent(client, operator_headers):
    exam = await create_exam(client, operator_headers)
    await client.post(f"{BASE}/{exam['id']}/submit", json={"confirmed": True}, headers=operator_headers)

    body = {"confirmed": True, "request_id": "approve-1"}
    first = await client.post(f"{BASE}/{exam['id']}/approve", json=body, headers=operator_headers)
    retry = await client.post(f"{BASE}/{exam['id']}/approve", json=body, headers=operator_headers)

    assert first.status_code == 200
    assert retry.status_code == 200
    assert retry.json()["exam"]["version"] == first.json()["exam"]["version"]


@pytest.mark.asyncio
async def test_stale_expected_version(client, operator_headers):
    exam = await create_exam(client, operator_headers)
    await client.post(f"{BASE}/{exam['id']}/submit", json={"confirmed": True}, headers=operator_headers)

    response = await client.post(
        f"{BASE}/{exam['id']}/approve",
        json={"confirmed": True, "expected_version": exam["version"]},
        headers=operator_headers,
    )
    assert response.status_code == 409


@pytest.mark.asyncio
async def test_reject_and_resubmit(client, operator_headers):
    exam = await create_exam(client, operator_headers)
    await client.post(f"{BASE}/{exam['id']}/submit", json={"confirmed": True}, headers=operator_headers)

    response = await client.post(f"{BASE}/{exam['id']}/reject", json={"confirmed": True}, headers=operator_headers)
    assert response.status_code == 422
    assert response.json()["detail"]["field"] == "reason"

    response = await client.post(
        f"{BASE}/{exam['id']}/reject",
        json={"confirmed": True, "reason": "Clashes with sports day"},
        headers=operator_headers,
    )
    assert response.status_code == 200
    rejected = response.json()["exam"]
    assert rejected["status"] == "REJECTED"
    assert rejected["rejection_reason"] == "Clashes with sports day"
    assert rejected["available_actions"] == ["DELETE", "RESUBMIT"]

    response = await client.post(f"{BASE}/{exam['id']}/resubmit", json={"confirmed": True}, headers=operator_headers)
    assert response.json()["exam"]["status"] == "PENDING_APPROVAL"


@pytest.mark.asyncio
async def test_schedule_conflict(client, operator_headers):
    first = await create_exam(client, operator_headers, title="Biology")
    await submit_and_approve(client, operator_headers, first["id"])

    second = await create_exam(client, operator_headers, title="Chemistry")
    await client.post(f"{BASE}/{second['id']}/submit", json={"confirmed": True}, headers=operator_headers)
    response = await client.post(f"{BASE}/{second['id']}/approve", json={"confirmed": True}, headers=operator_headers)

    assert response.status_code == 409
    detail = response.json()["detail"]
    assert detail["error"] == "schedule_conflict"
    assert [c["id"] for c in detail["conflicts"]] == [first["id"]]


@pytest.mark.asyncio
async def test_manual_control_flow(client, operator_headers, clock):
    exam = await create_exam(client, operator_headers)
    await submit_and_approve(client, operator_headers, exam["id"], publish_now=True)
    url = f"{BASE}/{exam['id']}"

    clock.set(NOW + timedelta(days=1, hours=1, minutes=1))
    assert (await client.get(url, headers=operator_headers)).json()["dynamic_status"] == "ACTIVE"

    response = await client.post(f"{url}/manual-control", json={"confirmed": True}, headers=operator_headers)
    assert response.json()["action"] == "ENABLE_MANUAL_CONTROL"
    assert response.json()["exam"]["dynamic_status"] == "APPROVED"

    availability = (await client.get(f"{url}/availability", headers=operator_headers)).json()
    assert availability["can_start"] is False

    response = await client.post(f"{url}/make-live", json={"confirmed": True}, headers=operator_headers)
    assert response.json()["exam"]["dynamic_status"] == "ACTIVE"

    clock.set(NOW + timedelta(days=2))
    availability = (await client.get(f"{url}/availability", headers=operator_headers)).json()
    assert availability["can_start"] is True
    assert availability["time_remaining_seconds"] == 0

    response = await client.post(f"{url}/mark-completed", json={"confirmed": True}, headers=operator_headers)
    assert response.json()["exam"]["dynamic_status"] == "COMPLETED"

    response = await client.post(f"{url}/manual-control", json={"confirmed": True}, headers=operator_headers)
    assert response.json()["action"] == "DISABLE_MANUAL_CONTROL"


@pytest.mark.asyncio
async def test_generic_action_endpoint(client, operator_headers):
    exam = await create_exam(client, operator_headers)
    response = await client.post(
        f"{BASE}/{exam['id']}/actions",
        json={"action": "SUBMIT_FOR_APPROVAL", "confirmed": True},
        headers=operator_headers,
    )
    assert response.status_code == 200
    assert response.json()["message"] == "Exam submitted for approval"


@pytest.mark.asyncio
async def test_delete(client, operator_headers):
    draft = await create_exam(client, operator_headers)
    approved = await create_exam(client, operator_headers, title="History")
    await submit_and_approve(client, operator_headers, approved["id"])

    response = await client.delete(f"{BASE}/{approved['id']}", params={"confirmed": True}, headers=operator_headers)
    assert response.status_code == 400

    response = await client.delete(f"{BASE}/{draft['id']}", headers=operator_headers)
    assert response.status_code == 422

    response = await client.delete(f"{BASE}/{draft['id']}", params={"confirmed": True}, headers=operator_headers)
    assert response.status_code == 204

    response = await client.get(f"{BASE}/{draft['id']}", headers=operator_headers)
    assert response.status_code == 404

    history = await client.get(f"{BASE}/{approved['id']}/history", headers=operator_headers)
    assert history.status_code == 200


@pytest.mark.asyncio
async def test_history_survives_delete(client, operator_headers):
    exam = await create_exam(client, operator_headers)
    url = f"{BASE}/{exam['id']}/history"

    response = await client.get(url, headers=operator_headers)
    assert response.status_code == 200
    assert response.json() == []

    await client.post(f"{BASE}/{exam['id']}/submit", json={"confirmed": True}, headers=operator_headers)
    await client.post(
        f"{BASE}/{exam['id']}/reject", json={"confirmed": True, "reason": "Duplicate"}, headers=operator_headers
    )
    response = await client.delete(f"{BASE}/{exam['id']}", params={"confirmed": True}, headers=operator_headers)
    assert response.status_code == 204

    response = await client.get(url, headers=operator_headers)
    assert response.status_code == 200
    entries = response.json()
    assert [entry["action"] for entry in entries] == ["SUBMIT_FOR_APPROVAL", "REJECT", "DELETE"]
    assert entries[-1]["to_status"] is None
    assert entries[-1]["school_id"] == 1

    other_school = {"X-Operator-Id": "admin-2", "X-School-Id": "2"}
    assert (await client.get(url, headers=other_school)).status_code == 404


@pytest.mark.asyncio
async def test_exams_are_scoped_to_school(client, operator_headers):
    exam = await create_exam(client, operator_headers)
    other_school = {"X-Operator-Id": "admin-2", "X-School-Id": "2"}

    assert (await client.get(f"{BASE}/{exam['id']}", headers=other_school)).status_code == 404
    response = await client.post(f"{BASE}/{exam['id']}/submit", json={"confirmed": True}, headers=other_school)
    assert response.status_code == 404
    assert (await client.get(BASE, headers=other_school)).json()["total"] == 0


@pytest.mark.asyncio
async def test_list_filters(client, operator_headers, clock):
    draft = await create_exam(client, operator_headers, title="Draft")
    running = await create_exam(
        client,
        operator_headers,
        title="Running",
        class_id=11,
        start_time=(NOW - timedelta(hours=1)).isoformat(),
        end_time=(NOW + timedelta(hours=1)).isoformat(),
    )
    await submit_and_approve(client, operator_headers, running["id"])

    response = await client.get(BASE, headers=operator_headers)
    assert response.json()["total"] == 2

    response = await client.get(BASE, params={"status": "DRAFT"}, headers=operator_headers)
    assert [item["id"] for item in response.json()["items"]] == [draft["id"]]

    response = await client.get(BASE, params={"dynamic_status": "ACTIVE"}, headers=operator_headers)
    data = response.json()
    assert [item["id"] for item in data["items"]] == [running["id"]]
    assert data["total_pages"] == 1

    response = await client.get(BASE, params={"page": 2, "page_size": 1}, headers=operator_headers)
    assert len(response.json()["items"]) == 1


@pytest.mark.asyncio
async def test_bulk_action(client, operator_headers):
    first = await create_exam(client, operator_headers, class_id=1)
    second = await create_exam(client, operator_headers, class_id=2)
    await client.post(f"{BASE}/{first['id']}/submit", json={"confirmed": True}, headers=operator_headers)

    response = await client.post(
        f"{BASE}/bulk-action",
        json={"exam_ids": [first["id"], second["id"]], "action": "APPROVE", "confirmed": True},
        headers=operator_headers,
    )

    assert response.status_code == 200
    data = response.json()
    assert (data["succeeded"], data["failed"]) == (1, 1)
    assert data["results"][1]["error"] == "invalid_transition"


@pytest.mark.asyncio
async def test_sql_store_compare_and_swap_rejects_stale_version(sql_store):
    exam = await sql_store.create(
        1,
        ExamCreate(title="Geography", start_time=NOW, end_time=NOW + timedelta(hours=2)),
        NOW,
    )
    entry = TransitionEntry(action=ExamAction.SUBMIT_FOR_APPROVAL, performed_by="teacher-1")
    updated = await sql_store.compare_and_swap(
        exam.id, ExamStatus.DRAFT, exam.version, {"status": ExamStatus.PENDING_APPROVAL}, entry, NOW
    )
    assert updated.version == exam.version + 1

    with pytest.raises(ConflictError):
        await sql_store.compare_and_swap(
            exam.id, ExamStatus.DRAFT, exam.version, {"status": ExamStatus.PENDING_APPROVAL}, entry, NOW
        )
    assert (await sql_store.get(exam.id)).status == ExamStatus.PENDING_APPROVAL
    assert len(await sql_store.history(exam.id)) == 1


@pytest.mark.asyncio
async def test_sql_store_refuses_to_delete_attempted_exam(sql_store):
    exam = await sql_store.create(
        1,
        ExamCreate(title="Art", start_time=NOW, end_time=NOW + timedelta(hours=1)),
        NOW,
    )
    await sql_store.session.execute(
        Exam.__table__.update().where(Exam.id == exam.id).values(students_attempted=2)
    )
    await sql_store.session.commit()

    entry = TransitionEntry(action=ExamAction.DELETE, performed_by="teacher-1")
    with pytest.raises(ConflictError):
        await sql_store.delete_if(exam.id, ExamStatus.DRAFT, exam.version, entry, NOW)
    assert (await sql_store.get(exam.id)).students_attempted == 2
