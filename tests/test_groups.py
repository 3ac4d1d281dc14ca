"""
tests/test_groups.py
Study group membership and invitations.
"""

import pytest
from httpx import AsyncClient
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from services.group import service as group_service
from shared.exceptions import StateConflict
from shared.models.models import NotificationType, Profile, ProfileRole, StudyGroupMember
from tests.conftest import auth_headers, make_profile


async def _create(client: AsyncClient, creator: Profile, name: str = "Calculus Crew", max_members: int = 20):
    return await client.post(
        "/groups",
        headers=auth_headers(creator),
        json={"name": name, "subject": "Calculus", "max_members": max_members},
    )


@pytest.mark.asyncio
async def test_creator_is_first_member(client: AsyncClient, db: AsyncSession, student: Profile):
    response = await _create(client, student)
    assert response.status_code == 201
    group = response.json()
    assert group["creator_id"] == str(student.id)

    mine = await client.get("/groups/mine", headers=auth_headers(student))
    assert [g["id"] for g in mine.json()] == [group["id"]]


@pytest.mark.asyncio
async def test_join_leave_and_rejoin(client: AsyncClient, student: Profile, tutor: Profile):
    group = (await _create(client, student)).json()

    assert (await client.post(f"/groups/{group['id']}/join", headers=auth_headers(tutor))).status_code == 200
    again = await client.post(f"/groups/{group['id']}/join", headers=auth_headers(tutor))
    assert again.status_code == 409

    assert (await client.post(f"/groups/{group['id']}/leave", headers=auth_headers(tutor))).status_code == 200
    assert (await client.get("/groups/mine", headers=auth_headers(tutor))).json() == []

    rejoin = await client.post(f"/groups/{group['id']}/join", headers=auth_headers(tutor))
    assert rejoin.status_code == 200
    assert len((await client.get("/groups/mine", headers=auth_headers(tutor))).json()) == 1


@pytest.mark.asyncio
async def test_leave_when_not_member_is_404(client: AsyncClient, student: Profile, tutor: Profile):
    group = (await _create(client, student)).json()
    response = await client.post(f"/groups/{group['id']}/leave", headers=auth_headers(tutor))
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_full_group_refuses_joins(
    client: AsyncClient, student: Profile, other_student: Profile, tutor: Profile
):
    group = (await _create(client, student, max_members=2)).json()
    assert (await client.post(f"/groups/{group['id']}/join", headers=auth_headers(tutor))).status_code == 200

    response = await client.post(f"/groups/{group['id']}/join", headers=auth_headers(other_student))
    assert response.status_code == 409


@pytest.mark.asyncio
async def test_join_rolled_back_when_capacity_filled_concurrently(
    db: AsyncSession, student: Profile, tutor: Profile, monkeypatch
):
    group = await group_service.create_group(db, student, "Tiny Table", max_members=1)
    group_id, tutor_id = group.id, tutor.id
    real_count = group_service._active_member_count
    calls = []

    async def stale_then_real(session, gid):
        calls.append(gid)
        # First read races a concurrent join and sees an empty group
        if len(calls) == 1:
            return 0
        return await real_count(session, gid)

    monkeypatch.setattr(group_service, "_active_member_count", stale_then_real)

    with pytest.raises(StateConflict):
        await group_service.join_group(db, tutor, group_id)

    assert len(calls) == 2
    assert not await group_service.is_active_member(db, group_id, tutor_id)
    members = await db.scalar(
        select(func.count(StudyGroupMember.id)).where(StudyGroupMember.group_id == group_id)
    )
    assert members == 1


@pytest.mark.asyncio
async def test_invite_notifies_invitee(client: AsyncClient, student: Profile, other_student: Profile):
    group = (await _create(client, student)).json()

    response = await client.post(
        f"/groups/{group['id']}/invite",
        headers=auth_headers(student),
        json={"user_id": str(other_student.id)},
    )
    assert response.status_code == 200

    notifs = (await client.get("/notifications", headers=auth_headers(other_student))).json()
    assert notifs["items"][0]["type"] == NotificationType.GROUP_INVITE.value
    assert notifs["items"][0]["related_id"] == group["id"]
    assert notifs["items"][0]["action_url"].endswith(group["id"])


@pytest.mark.asyncio
async def test_non_member_cannot_invite(
    client: AsyncClient, student: Profile, other_student: Profile, tutor: Profile
):
    group = (await _create(client, student)).json()
    response = await client.post(
        f"/groups/{group['id']}/invite",
        headers=auth_headers(tutor),
        json={"user_id": str(other_student.id)},
    )
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_inviting_existing_member_conflicts(client: AsyncClient, student: Profile, tutor: Profile):
    group = (await _create(client, student)).json()
    await client.post(f"/groups/{group['id']}/join", headers=auth_headers(tutor))

    response = await client.post(
        f"/groups/{group['id']}/invite",
        headers=auth_headers(student),
        json={"user_id": str(tutor.id)},
    )
    assert response.status_code == 409


@pytest.mark.asyncio
async def test_membership_check(db: AsyncSession, student: Profile):
    outsider = await make_profile(db, ProfileRole.STUDENT, "Pat Outsider")
    group = await group_service.create_group(db, student, "Biology")

    assert await group_service.is_active_member(db, group.id, student.id)
    assert not await group_service.is_active_member(db, group.id, outsider.id)
