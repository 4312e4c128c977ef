"""Tests for team invites and admin therapist invites."""

import uuid

import pytest
from sqlmodel import select

from therapy_chat.core.config import settings
from therapy_chat.models.database import AdminAuditLog, InviteLog, TeamMember, User
from therapy_chat.services.database import database_service

TEAM_ID = str(uuid.uuid4())


@pytest.fixture
def inviter(make_user):
    return make_user(role="therapist", email="lead@example.com", full_name="Dr. Lead")


@pytest.fixture
def admin(make_user):
    return make_user(role="admin", email="admin@example.com", full_name="Admin")


def _invite(client, headers, email="new@example.com", team_id=TEAM_ID):
    return client.post("/api/v1/invites/invite", json={"email": email, "team_id": team_id}, headers=headers)


def _invites():
    with database_service.session() as session:
        return list(session.exec(select(InviteLog)).all())


# ==================================================
# Team invites
# ==================================================
def test_invite_sends_link_and_stays_pending(client, inviter, auth_headers, sent_emails):
    response = _invite(client, auth_headers(inviter), email="New@Example.com")
    assert response.status_code == 200
    assert response.json() == {"success": True}

    [invite] = _invites()
    assert invite.status == "pending"
    assert invite.to_email == "new@example.com"
    assert invite.team_id == TEAM_ID

    [email] = sent_emails
    assert email["to"] == "new@example.com"
    assert email["subject"] == "Dr. Lead invited you to collaborate"
    assert f"{settings.SITE_URL}/join-team?" in email["html"]
    assert invite.token in email["html"]


def test_cannot_invite_yourself(client, inviter, auth_headers, sent_emails):
    response = _invite(client, auth_headers(inviter), email="lead@example.com")
    assert response.status_code == 400
    assert response.json() == {"error": "You cannot invite yourself."}
    assert sent_emails == []


def test_second_invite_to_same_team_conflicts(client, inviter, auth_headers, sent_emails):
    headers = auth_headers(inviter)
    assert _invite(client, headers).status_code == 200

    again = _invite(client, headers)
    assert again.status_code == 409
    assert again.json() == {"error": "Already invited"}
    assert len(sent_emails) == 1


def test_hourly_invite_limit(client, inviter, auth_headers, sent_emails, monkeypatch):
    monkeypatch.setattr(settings, "INVITES_PER_HOUR", 1)
    headers = auth_headers(inviter)
    assert _invite(client, headers, email="one@example.com").status_code == 200

    response = _invite(client, headers, email="two@example.com")
    assert response.status_code == 429
    assert response.json() == {"error": "Too many invites. Please try later."}


def test_email_failure_marks_invite_failed(client, inviter, auth_headers, sent_emails):
    sent_emails.fail = True
    response = _invite(client, auth_headers(inviter))
    assert response.status_code == 500
    assert response.json() == {"error": "Email delivery failed"}

    [invite] = _invites()
    assert invite.status == "failed"
    assert invite.last_error.startswith("Email delivery failed")


def test_invite_requires_valid_body(client, inviter, auth_headers):
    response = _invite(client, auth_headers(inviter), team_id="not-a-uuid")
    assert response.status_code == 400
    assert response.json()["error"] == "Invalid input"


# ==================================================
# Joining a team
# ==================================================
def _join(client, token, headers=None, email="new@example.com"):
    return client.post(
        "/api/v1/invites/join-team",
        json={"email": email, "team_id": TEAM_ID, "token": token},
        headers=headers or {},
    )


def test_join_team_promotes_and_records_membership(client, inviter, make_user, auth_headers, sent_emails):
    _invite(client, auth_headers(inviter))
    [invite] = _invites()
    joiner = make_user(email="new@example.com")

    response = _join(client, invite.token, auth_headers(joiner))
    assert response.status_code == 200
    assert response.json() == {"success": True}

    with database_service.session() as session:
        assert session.get(User, joiner.id).role == "therapist"
        members = session.exec(select(TeamMember).where(TeamMember.team_id == TEAM_ID)).all()
        assert [m.user_id for m in members] == [joiner.id]
        accepted = session.get(InviteLog, invite.id)
        assert accepted.status == "accepted"
        assert accepted.accepted_at is not None

    rejoin = _join(client, invite.token, auth_headers(joiner))
    assert rejoin.status_code == 403
    assert rejoin.json() == {"error": "Invalid or expired invite."}


def test_join_team_with_wrong_token(client, inviter, make_user, auth_headers, sent_emails):
    _invite(client, auth_headers(inviter))
    joiner = make_user(email="new@example.com")

    response = _join(client, "forged-token", auth_headers(joiner))
    assert response.status_code == 403
    assert response.json() == {"error": "Invalid or expired invite."}


def test_join_team_needs_a_signed_in_user(client, inviter, auth_headers, sent_emails):
    _invite(client, auth_headers(inviter))
    [invite] = _invites()

    response = _join(client, invite.token)
    assert response.status_code == 401
    assert response.json() == {"error": "Unauthorized"}
    assert _invites()[0].status == "pending"


# ==================================================
# Therapist invites
# ==================================================
def test_admin_invites_therapist(client, admin, auth_headers, sent_emails):
    response = client.post(
        "/api/v1/admin/invite-therapist", json={"email": "doc@example.com"}, headers=auth_headers(admin)
    )
    assert response.status_code == 200

    [invite] = _invites()
    assert invite.status == "sent"
    assert invite.team_id is None
    assert sent_emails[0]["subject"] == "Admin invited you to join as a therapist"
    assert f"invite_id={invite.id}" in sent_emails[0]["html"]

    with database_service.session() as session:
        [audit] = session.exec(select(AdminAuditLog)).all()
    assert audit.action == "Sent Therapist Invite"
    assert audit.actor_id == admin.id


def test_therapist_invite_is_admin_only(client, inviter, auth_headers, sent_emails):
    response = client.post(
        "/api/v1/admin/invite-therapist", json={"email": "doc@example.com"}, headers=auth_headers(inviter)
    )
    assert response.status_code == 403
    assert sent_emails == []


def test_therapist_invite_takes_email_or_invite_id(client, admin, auth_headers):
    response = client.post(
        "/api/v1/admin/invite-therapist",
        json={"email": "doc@example.com", "invite_id": str(uuid.uuid4())},
        headers=auth_headers(admin),
    )
    assert response.status_code == 400


def test_duplicate_therapist_invite(client, admin, auth_headers, sent_emails):
    headers = auth_headers(admin)
    client.post("/api/v1/admin/invite-therapist", json={"email": "doc@example.com"}, headers=headers)
    again = client.post("/api/v1/admin/invite-therapist", json={"email": "doc@example.com"}, headers=headers)
    assert again.status_code == 409
    assert again.json() == {"error": "Invite already sent to this email"}


def test_retry_therapist_invite_until_limit(client, admin, persist, auth_headers, sent_emails):
    invite = persist(InviteLog(to_email="doc@example.com", inviter_id=admin.id, status="failed", retry_count=2))
    headers = auth_headers(admin)

    retried = client.post("/api/v1/admin/invite-therapist", json={"invite_id": invite.id}, headers=headers)
    assert retried.status_code == 200
    with database_service.session() as session:
        stored = session.get(InviteLog, invite.id)
        assert stored.status == "sent"
        assert stored.retry_count == 3
        assert stored.last_retry_at is not None

    blocked = client.post("/api/v1/admin/invite-therapist", json={"invite_id": invite.id}, headers=headers)
    assert blocked.status_code == 429
    assert blocked.json() == {"error": "Retry limit reached (3)"}
    assert len(sent_emails) == 1


def test_retry_unknown_invite(client, admin, auth_headers):
    response = client.post(
        "/api/v1/admin/invite-therapist", json={"invite_id": str(uuid.uuid4())}, headers=auth_headers(admin)
    )
    assert response.status_code == 404


def test_failed_retry_is_audited(client, admin, persist, auth_headers, sent_emails):
    invite = persist(InviteLog(to_email="doc@example.com", inviter_id=admin.id, status="failed"))
    sent_emails.fail = True

    response = client.post("/api/v1/admin/invite-therapist", json={"invite_id": invite.id}, headers=auth_headers(admin))
    assert response.status_code == 500
    assert response.json() == {"error": "Failed to send invite"}

    with database_service.session() as session:
        assert session.get(InviteLog, invite.id).retry_count == 1
        [audit] = session.exec(select(AdminAuditLog)).all()
    assert audit.action == "Send Invite Failed"


def test_accept_invite_marks_sent_invites(client, make_user, persist, auth_headers):
    doctor = make_user(email="doc@example.com")
    sent = persist(InviteLog(to_email="doc@example.com", status="sent"))
    failed = persist(InviteLog(to_email="doc@example.com", status="failed"))

    response = client.post("/api/v1/admin/accept-invite", headers=auth_headers(doctor))
    assert response.status_code == 200

    with database_service.session() as session:
        assert session.get(InviteLog, sent.id).status == "accepted"
        assert session.get(InviteLog, failed.id).status == "failed"
