from typing import Callable, List, Optional

from fastapi import (
    APIRouter,
    Depends,
    Form,
    Header,
    HTTPException,
    Query,
    Request,
)
from fastapi.security import (
    HTTPAuthorizationCredentials,
    HTTPBearer,
)

from therapy_chat.core.config import settings
from therapy_chat.core.config.logging import bind_context, logger
from therapy_chat.core.limiter import limiter
from therapy_chat.models.session import ChatSession
from therapy_chat.models.user import User
from therapy_chat.schemas.auth import (
    SessionCreate,
    SessionRename,
    SessionResponse,
    TokenResponse,
    UserCreate,
    UserProfile,
    UserResponse,
)
from therapy_chat.services.database import database_service
from therapy_chat.utils.auth import create_access_token, verify_token
from therapy_chat.utils.sanitization import (
    sanitize_email,
    sanitize_string,
    validate_password_strength,
)

router = APIRouter()
security = HTTPBearer(auto_error=False)


# ==================================================
# Dependencies
# ==================================================
async def _resolve_user(credentials: Optional[HTTPAuthorizationCredentials]) -> Optional[User]:
    if credentials is None:
        return None
    token = sanitize_string(credentials.credentials)
    try:
        user_id = verify_token(token)
    except ValueError:
        return None
    if user_id is None:
        return None
    return await database_service.get_user(user_id)


async def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> User:
    """
    Dependency that validates the JWT token and returns the current user.
    """
    user = await _resolve_user(credentials)
    if user is None:
        logger.warning("unauthorized_request", has_credentials=credentials is not None)
        raise HTTPException(
            status_code=401,
            detail="Unauthorized",
            headers={"WWW-Authenticate": "Bearer"},
        )
    request.state.user_id = user.id
    bind_context(user_id=user.id, role=user.role)
    return user


async def get_optional_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Optional[User]:
    """Like `get_current_user`, but anonymous callers get None instead of a 401."""
    user = await _resolve_user(credentials)
    if user is not None:
        bind_context(user_id=user.id)
    return user


def require_roles(*roles: str) -> Callable:
    """Dependency factory restricting a route to the given roles."""

    async def dependency(user: User = Depends(get_current_user)) -> User:
        if user.role not in roles:
            logger.warning("forbidden_role", user_id=user.id, role=user.role, required=list(roles))
            raise HTTPException(status_code=403, detail="Forbidden")
        return user

    return dependency


async def require_service_key(x_service_key: Optional[str] = Header(default=None)) -> None:
    """Backend functions are called by the scheduler / workers with the shared service key."""
    if x_service_key != settings.SERVICE_ROLE_KEY:
        logger.warning("invalid_service_key")
        raise HTTPException(status_code=401, detail="Unauthorized")


def can_view_session(session: ChatSession, user: User) -> bool:
    return user.role == "admin" or session.user_id == user.id or user.id in (session.shared_with or [])


async def get_accessible_session(session_id: str, user: User) -> ChatSession:
    session = await database_service.get_session(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    if not can_view_session(session, user):
        logger.warning("session_access_denied", session_id=session_id, user_id=user.id)
        raise HTTPException(status_code=403, detail="Forbidden")
    bind_context(session_id=session.id)
    return session


def _session_response(session: ChatSession) -> SessionResponse:
    return SessionResponse(
        session_id=session.id,
        title=session.title,
        summary=session.summary,
        goal=session.goal,
        shared_with=session.shared_with or [],
        created_at=session.created_at,
    )


# ==================================================
# Accounts
# ==================================================
@router.post("/register", response_model=UserResponse)
@limiter.limit(settings.RATE_LIMIT_ENDPOINTS["register"][0])
async def register_user(request: Request, user_data: UserCreate):
    """
    Register a new user.
    """
    try:
        email = sanitize_email(user_data.email)
        password = user_data.password.get_secret_value()
        validate_password_strength(password)
    except ValueError as ve:
        logger.warning("registration_validation_failed", error=str(ve))
        raise HTTPException(status_code=400, detail=str(ve))

    if await database_service.get_user_by_email(email):
        raise HTTPException(status_code=400, detail="Email already registered")

    user = await database_service.create_user(
        email=email,
        password=User.hash_password(password),
        full_name=sanitize_string(user_data.full_name) if user_data.full_name else None,
    )
    token = create_access_token(user.id)
    logger.info("user_registered", user_id=user.id)
    return UserResponse(id=user.id, email=user.email, role=user.role, token=token)


@router.post("/login", response_model=TokenResponse)
@limiter.limit(settings.RATE_LIMIT_ENDPOINTS["login"][0])
async def login(
    request: Request,
    username: str = Form(...),
    password: str = Form(...),
    grant_type: str = Form(default="password"),
):
    """
    Authenticate user and return JWT token.
    """
    if sanitize_string(grant_type) != "password":
        raise HTTPException(status_code=400, detail="Unsupported grant type")

    user = await database_service.get_user_by_email(sanitize_string(username).strip().lower())
    if not user or not user.verify_password(password):
        logger.warning("login_failed", email=username)
        raise HTTPException(
            status_code=401,
            detail="Incorrect email or password",
            headers={"WWW-Authenticate": "Bearer"},
        )

    token = create_access_token(user.id)
    logger.info("user_logged_in", user_id=user.id)
    return TokenResponse(access_token=token.access_token, token_type="bearer", expires_at=token.expires_at)


@router.get("/me", response_model=UserProfile)
async def read_me(user: User = Depends(get_current_user)):
    return UserProfile.model_validate(user)


@router.get("/users/search")
async def search_users(
    query: str = Query(default=""),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    user: User = Depends(require_roles("therapist", "admin")),
):
    """Find users by name or email, paginated."""
    users = await database_service.search_users(query.strip(), offset=(page - 1) * limit, limit=limit)
    return {"users": [UserProfile.model_validate(u).model_dump() for u in users]}


# ==================================================
# Sessions
# ==================================================
@router.post("/session", response_model=SessionResponse)
async def create_session(body: SessionCreate, user: User = Depends(get_current_user)):
    """
    Create a new chat session for the authenticated user.
    """
    session = await database_service.create_session(
        user_id=user.id,
        title=sanitize_string(body.title),
        goal=body.goal,
        shared_with=body.shared_with,
    )
    logger.info("session_created", session_id=session.id, user_id=user.id)
    return _session_response(session)


@router.get("/sessions", response_model=List[SessionResponse])
async def get_user_sessions(user: User = Depends(get_current_user)):
    """
    Retrieve all chat sessions owned by the user, oldest first.
    """
    sessions = await database_service.get_user_sessions(user.id)
    return [_session_response(session) for session in sessions]


@router.patch("/session/{session_id}/title", response_model=SessionResponse)
async def rename_session(session_id: str, body: SessionRename, user: User = Depends(get_current_user)):
    session = await get_accessible_session(session_id, user)
    if session.user_id != user.id:
        raise HTTPException(status_code=403, detail="Cannot modify other sessions")

    session = await database_service.update_session_title(session.id, sanitize_string(body.title))
    logger.info("session_renamed", session_id=session.id)
    return _session_response(session)
