from datetime import timedelta
from typing import Optional
from urllib.parse import urlencode

from therapy_chat.core.config import settings
from therapy_chat.core.config.logging import get_logger
from therapy_chat.core.exceptions import (
    AuthenticationError,
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    RetryLimitError,
    ServiceError,
    UpstreamError,
    ValidationFailedError,
)
from therapy_chat.models.database import InviteLog, User
from therapy_chat.services.database import DatabaseService, database_service
from therapy_chat.services.email import EmailService, email_service
from therapy_chat.utils.dates import ensure_utc, utc_now

logger = get_logger(__name__)


def _display_name(user: User) -> str:
    return user.full_name or user.email or "Therapy Chat"


# ==================================================
# Invite Service
# ==================================================
class InviteService:
    """
    Team invites (token links, accepted through join-team) and admin invites
    that turn the recipient into a therapist.
    """

    def __init__(self, db: Optional[DatabaseService] = None, email: Optional[EmailService] = None):
        self.db = db or database_service
        self.email = email or email_service

    # --------------------------------------------------
    # Team invites
    # --------------------------------------------------
    async def invite_to_team(self, inviter: User, to_email: str, team_id: str, ip_address: Optional[str] = None) -> InviteLog:
        to_email = to_email.lower()
        if to_email == inviter.email.lower():
            raise ValidationFailedError("You cannot invite yourself.")

        if await self.db.find_invite(to_email, team_id) is not None:
            raise ConflictError("Already invited")

        since = utc_now() - timedelta(hours=1)
        if await self.db.count_invites_since(inviter.id, since) >= settings.INVITES_PER_HOUR:
            raise RetryLimitError("Too many invites. Please try later.")

        invite = await self.db.create_invite(
            to_email=to_email,
            team_id=team_id,
            inviter_id=inviter.id,
            ip_address=ip_address,
        )
        query = urlencode({"team_id": team_id, "email": to_email, "token": invite.token})
        link = f"{settings.SITE_URL}/join-team?{query}"
        from_name = _display_name(inviter)

        try:
            await self.email.send(
                to_email,
                f"{from_name} invited you to collaborate",
                f'<p>{from_name} invited you to a shared session:</p><p><a href="{link}">Join Session</a></p>',
            )
        except UpstreamError as e:
            await self.db.update_invite(invite.id, status="failed", last_error=e.message)
            logger.error("team_invite_email_failed", invite_id=invite.id, error=e.message)
            raise ServiceError("Email delivery failed") from e

        logger.info("team_invite_sent", invite_id=invite.id, team_id=team_id, inviter_id=inviter.id)
        return invite

    async def join_team(self, user: Optional[User], to_email: str, team_id: str, token: str) -> None:
        """Accept exactly the pending invite matching email, team and token."""
        invite = await self.db.find_pending_invite(to_email.lower(), team_id, token)
        if invite is None:
            raise PermissionDeniedError("Invalid or expired invite.")
        if user is None:
            raise AuthenticationError("Unauthorized")

        await self.db.update_user_role(user.id, "therapist")
        await self.db.add_team_member(team_id, user.id)
        await self.db.update_invite(invite.id, status="accepted", accepted_at=utc_now())
        logger.info("team_joined", invite_id=invite.id, team_id=team_id, user_id=user.id)

    # --------------------------------------------------
    # Admin (therapist) invites
    # --------------------------------------------------
    async def _send_therapist_invite(self, invite: InviteLog, from_name: str) -> None:
        link = f"{settings.SITE_URL}/accept-invite?{urlencode({'invite_id': invite.id})}"
        await self.email.send(
            invite.to_email,
            f"{from_name} invited you to join as a therapist",
            f'<p>{from_name} invited you to join as a therapist.</p><p><a href="{link}">Accept invite</a></p>',
        )

    async def retry_therapist_invite(self, admin: User, invite_id: str) -> InviteLog:
        invite = await self.db.get_invite(invite_id)
        if invite is None:
            raise NotFoundError("Invite not found")

        expired = utc_now() - ensure_utc(invite.created_at) >= timedelta(days=settings.INVITE_EXPIRY_DAYS)
        if not expired and invite.retry_count >= settings.INVITE_RETRY_LIMIT:
            raise RetryLimitError(f"Retry limit reached ({settings.INVITE_RETRY_LIMIT})")

        now = utc_now()
        try:
            await self._send_therapist_invite(invite, _display_name(admin))
        except UpstreamError as e:
            await self.db.update_invite(
                invite.id,
                retry_count=invite.retry_count + 1,
                last_retry_at=now,
                last_error=e.message,
                status="failed",
            )
            await self.db.log_admin_audit(admin.id, "Send Invite Failed", f"Invite ID: {invite.id}", e.message)
            raise ServiceError("Failed to send invite") from e

        invite = await self.db.update_invite(
            invite.id,
            retry_count=invite.retry_count + 1,
            last_retry_at=now,
            last_error=None,
            status="sent",
        )
        await self.db.log_admin_audit(admin.id, "Sent Therapist Invite", f"Invite ID: {invite.id}", f"Sent to {invite.to_email}")
        return invite

    async def create_therapist_invite(self, admin: User, to_email: str) -> InviteLog:
        to_email = to_email.lower()
        if await self.db.find_invite(to_email) is not None:
            raise ConflictError("Invite already sent to this email")

        invite = await self.db.create_invite(to_email=to_email, inviter_id=admin.id)
        try:
            await self._send_therapist_invite(invite, _display_name(admin))
        except UpstreamError as e:
            await self.db.update_invite(invite.id, status="failed", last_error=e.message)
            await self.db.log_admin_audit(admin.id, "Send Invite Failed", f"New Invite to {to_email}", e.message)
            raise ServiceError("Failed to send invite") from e

        invite = await self.db.update_invite(invite.id, status="sent")
        await self.db.log_admin_audit(admin.id, "Sent Therapist Invite", f"New Invite ID: {invite.id}", f"Sent to {to_email}")
        return invite

    async def accept_admin_invite(self, user: User) -> int:
        accepted = await self.db.accept_sent_invites(user.email.lower(), utc_now())
        logger.info("admin_invites_accepted", user_id=user.id, accepted=accepted)
        return accepted


invite_service = InviteService()
