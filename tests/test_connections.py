"""
tests/test_connections.py
Connection lifecycle: request → accept / reject, re-request after
rejection, disconnect, and the notifications each transition emits.
"""

import pytest
from httpx import AsyncClient
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from services.connection import service as connection_service
from shared.exceptions import ValidationFailed
from shared.models.models import ConnectionRequest, ConnectionStatus, Notification, NotificationType, Profile
from shared.realtime.feed import ChangeAction, ChangeFilter, LocalChangeFeed
from tests.conftest import auth_headers


async def _row_count(db: AsyncSession, student: Profile, tutor: Profile) -> int:
    return await db.scalar(
        select(func.count(ConnectionRequest.id)).where(
            ConnectionRequest.student_id == student.id,
            ConnectionRequest.tutor_id == tutor.id,
        )
    )


async def _request(client: AsyncClient, student: Profile, tutor: Profile, message: str = None):
    return await client.post(
        "/connections",
        headers=auth_headers(student),
        json={"tutor_id": str(tutor.id), "message": message},
    )


async def _respond(client: AsyncClient, tutor: Profile, student: Profile, decision: str):
    return await client.post(
        f"/connections/{student.id}/respond",
        headers=auth_headers(tutor),
        json={"decision": decision},
    )


# ── Request ────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_request_creates_pending_and_notifies_tutor(
    client: AsyncClient, student: Profile, tutor: Profile
):
    response = await _request(client, student, tutor, "help with calculus")
    assert response.status_code == 201
    data = response.json()
    assert data["status"] == ConnectionStatus.PENDING.value
    assert data["message"] == "help with calculus"

    notifs = (await client.get("/notifications", headers=auth_headers(tutor))).json()
    assert notifs["total"] == 1
    assert notifs["items"][0]["type"] == NotificationType.CONNECTION_REQUEST.value
    assert notifs["items"][0]["related_id"] == data["id"]
    assert student.full_name in notifs["items"][0]["message"]


@pytest.mark.asyncio
async def test_duplicate_pending_request_rejected(
    client: AsyncClient, student: Profile, tutor: Profile, db: AsyncSession
):
    assert (await _request(client, student, tutor)).status_code == 201

    response = await _request(client, student, tutor, "second try")
    assert response.status_code == 409
    body = response.json()
    assert body["code"] == "state_conflict"
    assert body["current_status"] == ConnectionStatus.PENDING.value
    assert await _row_count(db, student, tutor) == 1


@pytest.mark.asyncio
async def test_request_while_accepted_rejected(
    client: AsyncClient, student: Profile, tutor: Profile, connection: ConnectionRequest, db: AsyncSession
):
    response = await _request(client, student, tutor)
    assert response.status_code == 409
    assert response.json()["current_status"] == ConnectionStatus.ACCEPTED.value
    assert await _row_count(db, student, tutor) == 1


@pytest.mark.asyncio
async def test_request_after_rejection_reopens_same_row(
    client: AsyncClient, student: Profile, tutor: Profile, db: AsyncSession
):
    first = (await _request(client, student, tutor, "first")).json()
    assert (await _respond(client, tutor, student, "reject")).json()["status"] == "REJECTED"

    response = await _request(client, student, tutor, "please reconsider")
    assert response.status_code == 201
    data = response.json()
    assert data["id"] == first["id"]
    assert data["status"] == ConnectionStatus.PENDING.value
    assert data["message"] == "please reconsider"
    assert data["responded_at"] is None
    assert await _row_count(db, student, tutor) == 1


@pytest.mark.asyncio
async def test_cannot_request_non_tutor(
    client: AsyncClient, student: Profile, other_student: Profile
):
    response = await _request(client, student, other_student)
    assert response.status_code == 422
    assert response.json()["code"] == "validation_error"


@pytest.mark.asyncio
async def test_tutor_cannot_request_connection(client: AsyncClient, tutor: Profile, other_tutor: Profile):
    response = await _request(client, tutor, other_tutor)
    assert response.status_code == 403


# ── Respond ────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_accept_notifies_student_and_clears_tutor_badge(
    client: AsyncClient, student: Profile, tutor: Profile
):
    await _request(client, student, tutor, "help with calculus")
    unread = await client.get("/notifications/unread-count", headers=auth_headers(tutor))
    assert unread.json()["unread"] == 1

    response = await _respond(client, tutor, student, "accept")
    assert response.status_code == 200
    assert response.json()["status"] == ConnectionStatus.ACCEPTED.value
    assert response.json()["responded_at"] is not None

    tutor_unread = await client.get("/notifications/unread-count", headers=auth_headers(tutor))
    assert tutor_unread.json()["unread"] == 0

    notifs = (await client.get("/notifications", headers=auth_headers(student))).json()
    assert [n["type"] for n in notifs["items"]] == [NotificationType.CONNECTION_ACCEPTED.value]
    assert notifs["items"][0]["action_url"] == f"/dashboard/student/tutors/{tutor.id}"


@pytest.mark.asyncio
async def test_reject_sends_no_notification_by_default(
    client: AsyncClient, student: Profile, tutor: Profile
):
    await _request(client, student, tutor)
    response = await _respond(client, tutor, student, "reject")
    assert response.json()["status"] == ConnectionStatus.REJECTED.value

    notifs = (await client.get("/notifications", headers=auth_headers(student))).json()
    assert notifs["total"] == 0


@pytest.mark.asyncio
async def test_reject_notification_when_enabled(
    client: AsyncClient, student: Profile, tutor: Profile, monkeypatch
):
    monkeypatch.setattr(settings, "NOTIFY_ON_CONNECTION_REJECTED", True)
    await _request(client, student, tutor)
    await _respond(client, tutor, student, "reject")

    notifs = (await client.get("/notifications", headers=auth_headers(student))).json()
    assert [n["type"] for n in notifs["items"]] == [NotificationType.CONNECTION_REJECTED.value]


@pytest.mark.asyncio
@pytest.mark.parametrize("first, second", [("accept", "reject"), ("reject", "accept"), ("accept", "accept")])
async def test_respond_only_valid_while_pending(
    client: AsyncClient, student: Profile, tutor: Profile, first: str, second: str
):
    await _request(client, student, tutor)
    settled = (await _respond(client, tutor, student, first)).json()["status"]

    response = await _respond(client, tutor, student, second)
    assert response.status_code == 409
    assert response.json()["current_status"] == settled

    status = await client.get(
        "/connections/status",
        headers=auth_headers(student),
        params={"student_id": str(student.id), "tutor_id": str(tutor.id)},
    )
    assert status.json()["status"] == settled


@pytest.mark.asyncio
async def test_only_addressed_tutor_can_respond(
    client: AsyncClient, student: Profile, tutor: Profile, other_tutor: Profile
):
    await _request(client, student, tutor)

    response = await _respond(client, other_tutor, student, "accept")
    assert response.status_code == 404

    response = await _respond(client, student, student, "accept")
    assert response.status_code == 403


# ── Status / listings / disconnect ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_query_status_none_then_pending(client: AsyncClient, student: Profile, tutor: Profile):
    params = {"student_id": str(student.id), "tutor_id": str(tutor.id)}
    response = await client.get("/connections/status", headers=auth_headers(tutor), params=params)
    assert response.json()["status"] == ConnectionStatus.NONE.value

    await _request(client, student, tutor)
    response = await client.get("/connections/status", headers=auth_headers(tutor), params=params)
    assert response.json()["status"] == ConnectionStatus.PENDING.value


@pytest.mark.asyncio
async def test_query_status_forbidden_for_third_party(
    client: AsyncClient, student: Profile, tutor: Profile, other_student: Profile
):
    response = await client.get(
        "/connections/status",
        headers=auth_headers(other_student),
        params={"student_id": str(student.id), "tutor_id": str(tutor.id)},
    )
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_list_incoming_and_connections(
    client: AsyncClient, student: Profile, other_student: Profile, tutor: Profile
):
    await _request(client, student, tutor)
    await _request(client, other_student, tutor)
    await _respond(client, tutor, other_student, "accept")

    incoming = (await client.get("/connections/incoming", headers=auth_headers(tutor))).json()
    assert [c["student_id"] for c in incoming] == [str(student.id)]

    accepted = await client.get(
        "/connections", headers=auth_headers(tutor), params={"as_role": "tutor", "status": "ACCEPTED"}
    )
    assert [c["student_id"] for c in accepted.json()] == [str(other_student.id)]

    mine = (await client.get("/connections", headers=auth_headers(student))).json()
    assert len(mine) == 1 and mine[0]["tutor_id"] == str(tutor.id)


@pytest.mark.asyncio
async def test_student_disconnect_deletes_row(
    client: AsyncClient, student: Profile, tutor: Profile, connection: ConnectionRequest, db: AsyncSession
):
    response = await client.delete(f"/connections/{tutor.id}", headers=auth_headers(student))
    assert response.status_code == 200
    assert await _row_count(db, student, tutor) == 0

    # A fresh request starts over
    assert (await _request(client, student, tutor)).status_code == 201


@pytest.mark.asyncio
async def test_tutor_cannot_disconnect(
    client: AsyncClient, student: Profile, tutor: Profile, connection: ConnectionRequest
):
    response = await client.delete(f"/connections/{student.id}", headers=auth_headers(tutor))
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_disconnect_without_connection_is_404(client: AsyncClient, student: Profile, tutor: Profile):
    response = await client.delete(f"/connections/{tutor.id}", headers=auth_headers(student))
    assert response.status_code == 404


# ── Best-effort side effects ───────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_notification_failure_does_not_fail_request(
    client: AsyncClient, student: Profile, tutor: Profile, db: AsyncSession, monkeypatch
):
    def broken_notification(**kwargs):
        raise SQLAlchemyError("notifications table unavailable")

    monkeypatch.setattr("services.notification.service.Notification", broken_notification)

    response = await _request(client, student, tutor, "help with calculus")
    assert response.status_code == 201
    assert response.json()["status"] == ConnectionStatus.PENDING.value
    assert await _row_count(db, student, tutor) == 1
    assert await db.scalar(select(func.count(Notification.id))) == 0


@pytest.mark.asyncio
async def test_transitions_publish_change_events(
    db: AsyncSession, student: Profile, tutor: Profile, feed: LocalChangeFeed
):
    subscription = await feed.subscribe(
        "connection_requests", ChangeFilter({"tutor_id": tutor.id})
    )
    async with subscription:
        await connection_service.request_connection(db, student, tutor.id, "hi")
        await connection_service.respond_to_connection(db, tutor, student.id, "accept")

        inserted = await subscription.get(timeout=1)
        updated = await subscription.get(timeout=1)

    assert inserted.action == ChangeAction.INSERT
    assert inserted.row["status"] == "PENDING"
    assert updated.action == ChangeAction.UPDATE
    assert updated.row["status"] == "ACCEPTED"
    assert feed.subscriber_count("connection_requests") == 0


@pytest.mark.asyncio
async def test_accept_publishes_cleared_request_notification(
    db: AsyncSession, student: Profile, tutor: Profile, feed: LocalChangeFeed
):
    subscription = await feed.subscribe(
        "notifications", ChangeFilter({"user_id": tutor.id}, actions=[ChangeAction.UPDATE])
    )
    async with subscription:
        connection = await connection_service.request_connection(db, student, tutor.id, "hi")
        request_notif = await db.scalar(
            select(Notification).where(
                Notification.user_id == tutor.id,
                Notification.type == NotificationType.CONNECTION_REQUEST,
                Notification.related_id == str(connection.id),
            )
        )
        await connection_service.respond_to_connection(db, tutor, student.id, "accept")
        event = await subscription.get(timeout=1)

    assert event.action == ChangeAction.UPDATE
    assert event.row["id"] == str(request_notif.id)
    assert event.row["is_read"] is True
    assert event.row["read_at"] is not None


@pytest.mark.asyncio
async def test_unknown_decision_is_validation_error(db: AsyncSession, student: Profile, tutor: Profile):
    await connection_service.request_connection(db, student, tutor.id)

    with pytest.raises(ValidationFailed):
        await connection_service.respond_to_connection(db, tutor, student.id, "maybe")

    status = await connection_service.query_status(db, student.id, tutor.id)
    assert status == ConnectionStatus.PENDING
