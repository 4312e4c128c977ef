from typing import Optional

from fastapi import APIRouter, Depends, Request

from therapy_chat.api.v1.auth import get_current_user, get_optional_user, require_roles
from therapy_chat.core.config import settings
from therapy_chat.core.config.logging import get_logger
from therapy_chat.core.limiter import limiter
from therapy_chat.models.user import User
from therapy_chat.schemas.invite import AdminInviteRequest, InviteRequest, JoinTeamRequest
from therapy_chat.services.invites import invite_service

logger = get_logger(__name__)

router = APIRouter()
admin_router = APIRouter()


# ==================================================
# Team invites
# ==================================================
@router.post("/invite")
@limiter.limit(settings.RATE_LIMIT_ENDPOINTS["invite"][0])
async def invite(request: Request, body: InviteRequest, user: User = Depends(get_current_user)):
    ip_address = request.headers.get("x-forwarded-for") or (request.client.host if request.client else "unknown")
    await invite_service.invite_to_team(user, str(body.email), str(body.team_id), ip_address=ip_address)
    return {"success": True}


@router.post("/join-team")
async def join_team(body: JoinTeamRequest, user: Optional[User] = Depends(get_optional_user)):
    await invite_service.join_team(user, str(body.email), str(body.team_id), body.token)
    return {"success": True}


# ==================================================
# Therapist invites (admin)
# ==================================================
@admin_router.post("/invite-therapist")
@limiter.limit(settings.RATE_LIMIT_ENDPOINTS["invite"][0])
async def invite_therapist(request: Request, body: AdminInviteRequest, admin: User = Depends(require_roles("admin"))):
    if body.invite_id:
        await invite_service.retry_therapist_invite(admin, str(body.invite_id))
    else:
        await invite_service.create_therapist_invite(admin, str(body.email))
    return {"success": True}


@admin_router.post("/accept-invite")
async def accept_invite(user: User = Depends(get_current_user)):
    await invite_service.accept_admin_invite(user)
    return {"success": True}
