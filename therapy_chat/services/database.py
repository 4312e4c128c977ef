from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Type

from sqlalchemy import delete, func, or_, text
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.pool import StaticPool
from sqlalchemy.sql import Select
from sqlmodel import Session, SQLModel, col, create_engine, select

from therapy_chat.core.config import settings
from therapy_chat.core.config.logging import get_logger
from therapy_chat.core.exceptions import ConflictError, NotFoundError
from therapy_chat.models.database import (
    AdminAuditLog,
    Annotation,
    ChatSession,
    EmotionLog,
    FineTuneEvent,
    FineTuneLock,
    FineTuneSnapshot,
    InviteLog,
    Message,
    TeamMember,
    User,
)
from therapy_chat.services.realtime import RealtimeHub, realtime_hub
from therapy_chat.utils.dates import utc_now

logger = get_logger(__name__)


# ==================================================
# Database Service
# ==================================================
class DatabaseService:
    """
    Owns the engine and every query the application runs.
    Writes to `messages` and `emotion_logs` are published to the realtime hub.
    """

    def __init__(self, database_url: Optional[str] = None, hub: Optional[RealtimeHub] = None):
        url = database_url or settings.DATABASE_URL
        engine_kwargs: Dict[str, Any] = {"echo": settings.DB_ECHO, "pool_pre_ping": True}
        if url.startswith("sqlite"):
            engine_kwargs["connect_args"] = {"check_same_thread": False}
            if url in ("sqlite://", "sqlite:///:memory:"):
                # One shared connection, otherwise every checkout gets an empty database
                engine_kwargs["poolclass"] = StaticPool
        self.engine = create_engine(url, **engine_kwargs)
        self.hub = hub or realtime_hub
        self.create_tables()
        logger.info("database_initialized", dialect=self.engine.dialect.name)

    def create_tables(self) -> None:
        SQLModel.metadata.create_all(self.engine)

    def reset(self) -> None:
        """Drop and recreate every table (used by tests and local tooling)."""
        SQLModel.metadata.drop_all(self.engine)
        SQLModel.metadata.create_all(self.engine)

    def session(self) -> Session:
        return Session(self.engine, expire_on_commit=False)

    async def health_check(self) -> bool:
        try:
            with self.session() as session:
                session.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as e:
            logger.error("database_health_check_failed", error=str(e))
            return False

    # --------------------------------------------------
    # Helpers
    # --------------------------------------------------
    def _upsert(
        self,
        session: Session,
        model: Type[SQLModel],
        values: Dict[str, Any],
        conflict_columns: Sequence[str],
        update_columns: Optional[Iterable[str]] = None,
    ) -> None:
        """INSERT ... ON CONFLICT for the dialects we run on."""
        dialect = session.get_bind().dialect.name
        if dialect == "postgresql":
            insert = postgresql.insert
        elif dialect == "sqlite":
            insert = sqlite.insert
        else:
            raise NotImplementedError(f"upsert not supported for dialect {dialect}")

        row = model(**values).model_dump()
        stmt = insert(model.__table__).values(**row)
        if update_columns:
            stmt = stmt.on_conflict_do_update(
                index_elements=list(conflict_columns),
                set_={column: stmt.excluded[column] for column in update_columns},
            )
        else:
            stmt = stmt.on_conflict_do_nothing(index_elements=list(conflict_columns))
        session.execute(stmt)

    def _save(self, instance: SQLModel) -> SQLModel:
        with self.session() as session:
            session.add(instance)
            session.commit()
            session.refresh(instance)
            return instance

    async def _update(self, model: Type[SQLModel], row_id: str, **fields: Any) -> Any:
        with self.session() as session:
            instance = session.get(model, row_id)
            if instance is None:
                raise NotFoundError(f"{model.__name__} not found")
            for key, value in fields.items():
                setattr(instance, key, value)
            session.add(instance)
            session.commit()
            session.refresh(instance)
            return instance

    # --------------------------------------------------
    # Users
    # --------------------------------------------------
    async def create_user(
        self,
        email: str,
        password: str = "",
        full_name: Optional[str] = None,
        role: str = "user",
    ) -> User:
        user = User(email=email, hashed_password=password, full_name=full_name, role=role)
        return self._save(user)

    async def get_user(self, user_id: str) -> Optional[User]:
        with self.session() as session:
            return session.get(User, user_id)

    async def get_user_by_email(self, email: str) -> Optional[User]:
        with self.session() as session:
            return session.exec(select(User).where(User.email == email)).first()

    async def get_users(self, user_ids: Sequence[str], role: Optional[str] = None) -> List[User]:
        if not user_ids:
            return []
        with self.session() as session:
            query = select(User).where(col(User.id).in_(list(user_ids)))
            if role:
                query = query.where(User.role == role)
            return list(session.exec(query).all())

    async def search_users(self, term: str, offset: int = 0, limit: int = 10) -> List[User]:
        with self.session() as session:
            pattern = f"%{term}%"
            query = (
                select(User)
                .where(or_(col(User.full_name).ilike(pattern), col(User.email).ilike(pattern)))
                .order_by(col(User.email).asc())
                .offset(offset)
                .limit(limit)
            )
            return list(session.exec(query).all())

    async def update_user_role(self, user_id: str, role: str) -> User:
        return await self._update(User, user_id, role=role)

    # --------------------------------------------------
    # Sessions
    # --------------------------------------------------
    async def create_session(
        self,
        user_id: str,
        title: str = "",
        goal: Optional[str] = None,
        shared_with: Optional[List[str]] = None,
        session_id: Optional[str] = None,
    ) -> ChatSession:
        chat_session = ChatSession(
            user_id=user_id,
            title=title,
            goal=goal,
            shared_with=list(shared_with or []),
        )
        if session_id:
            chat_session.id = session_id
        return self._save(chat_session)

    async def get_session(self, session_id: str) -> Optional[ChatSession]:
        with self.session() as session:
            return session.get(ChatSession, session_id)

    async def get_user_sessions(self, user_id: str) -> List[ChatSession]:
        with self.session() as session:
            query = (
                select(ChatSession)
                .where(ChatSession.user_id == user_id)
                .order_by(col(ChatSession.created_at).asc())
            )
            return list(session.exec(query).all())

    async def update_session_title(self, session_id: str, title: str) -> ChatSession:
        return await self._update(ChatSession, session_id, title=title)

    async def update_session_summary(self, session_id: str, summary: str) -> ChatSession:
        return await self._update(ChatSession, session_id, summary=summary)

    async def mark_session_reviewed(self, session_id: str, reviewed: bool = True) -> ChatSession:
        return await self._update(ChatSession, session_id, reviewed=reviewed)

    # --------------------------------------------------
    # Messages
    # --------------------------------------------------
    async def create_message(
        self, session_id: str, role: str, content: str, message_id: Optional[str] = None
    ) -> Message:
        """Insert a message. A client-chosen id that already exists returns the stored row."""
        if message_id:
            existing = await self.get_message(message_id)
            if existing is not None:
                if existing.session_id != session_id:
                    raise ConflictError("Message id already in use")
                return existing
            message = self._save(Message(id=message_id, session_id=session_id, role=role, content=content))
        else:
            message = self._save(Message(session_id=session_id, role=role, content=content))
        await self.hub.publish_change("messages", "INSERT", message.model_dump(mode="json"))
        return message

    async def get_message(self, message_id: str) -> Optional[Message]:
        with self.session() as session:
            return session.get(Message, message_id)

    async def get_messages(self, session_id: str, limit: Optional[int] = None) -> List[Message]:
        """Messages oldest first; with `limit`, only the most recent `limit` of them."""
        with self.session() as session:
            query = select(Message).where(Message.session_id == session_id)
            if limit:
                query = query.order_by(col(Message.created_at).desc()).limit(limit)
                return list(reversed(session.exec(query).all()))
            query = query.order_by(col(Message.created_at).asc())
            return list(session.exec(query).all())

    async def count_messages(self, session_id: str) -> int:
        with self.session() as session:
            query = select(func.count()).select_from(Message).where(Message.session_id == session_id)
            return int(session.exec(query).one())

    async def get_recent_messages_for_sessions(self, session_ids: Sequence[str], limit: int) -> List[Message]:
        """The last `limit` messages across the given sessions, oldest first."""
        if not session_ids:
            return []
        with self.session() as session:
            query = (
                select(Message)
                .where(col(Message.session_id).in_(list(session_ids)))
                .order_by(col(Message.created_at).desc())
                .limit(limit)
            )
            return list(reversed(session.exec(query).all()))

    # --------------------------------------------------
    # Emotion logs & annotations
    # --------------------------------------------------
    async def create_emotion_log(self, **fields: Any) -> EmotionLog:
        log = self._save(EmotionLog(**fields))
        await self.hub.publish_change("emotion_logs", "INSERT", log.model_dump(mode="json"))
        return log

    async def get_session_emotion_logs(self, session_id: str) -> List[EmotionLog]:
        with self.session() as session:
            query = (
                select(EmotionLog)
                .where(EmotionLog.session_id == session_id)
                .order_by(col(EmotionLog.created_at).asc())
            )
            return list(session.exec(query).all())

    async def upsert_annotation(self, **fields: Any) -> Annotation:
        """One correction per (source_id, source_type, updated_by); later writes replace it."""
        fields.setdefault("updated_at", utc_now())
        conflict = ("source_id", "source_type", "updated_by")
        updatable = [key for key in fields if key not in conflict]
        with self.session() as session:
            self._upsert(session, Annotation, fields, conflict, update_columns=updatable)
            session.commit()
            query = select(Annotation).where(
                Annotation.source_id == fields["source_id"],
                Annotation.source_type == fields["source_type"],
                Annotation.updated_by == fields["updated_by"],
            )
            return session.exec(query).one()

    async def latest_data_change(self) -> Optional[datetime]:
        """Newest emotion-log insert or annotation update."""
        with self.session() as session:
            last_log = session.exec(select(func.max(EmotionLog.created_at))).one()
            last_annotation = session.exec(select(func.max(Annotation.updated_at))).one()
        candidates = [value for value in (last_log, last_annotation) if value is not None]
        return max(candidates) if candidates else None

    # --------------------------------------------------
    # Training view
    # --------------------------------------------------
    async def fetch_rows(self, query: Select) -> List[Dict[str, Any]]:
        with self.session() as session:
            return [dict(row) for row in session.execute(query).mappings().all()]

    async def count_rows(self, query: Select) -> int:
        with self.session() as session:
            count_query = select(func.count()).select_from(query.order_by(None).limit(None).subquery())
            return int(session.execute(count_query).scalar_one())

    # --------------------------------------------------
    # Snapshots, locks, events
    # --------------------------------------------------
    async def insert_snapshot(self, snapshot: FineTuneSnapshot) -> FineTuneSnapshot:
        """Insert relying on the (filter_hash, data_version) unique constraint."""
        try:
            return self._save(snapshot)
        except IntegrityError as e:
            logger.warning("snapshot_duplicate_rejected", filter_hash=snapshot.filter_hash, error=str(e.orig))
            raise ConflictError("A snapshot with the same filters already exists.") from e

    async def get_snapshot(self, snapshot_id: str) -> Optional[FineTuneSnapshot]:
        with self.session() as session:
            return session.get(FineTuneSnapshot, snapshot_id)

    async def get_snapshot_by_job(self, job_id: str) -> Optional[FineTuneSnapshot]:
        with self.session() as session:
            return session.exec(select(FineTuneSnapshot).where(FineTuneSnapshot.job_id == job_id)).first()

    async def find_snapshot_by_hash(self, filter_hash: str) -> Optional[FineTuneSnapshot]:
        with self.session() as session:
            query = select(FineTuneSnapshot).where(FineTuneSnapshot.filter_hash == filter_hash).limit(1)
            return session.exec(query).first()

    async def latest_snapshot_created_at(self) -> Optional[datetime]:
        with self.session() as session:
            return session.exec(select(func.max(FineTuneSnapshot.created_at))).one()

    async def update_snapshot(self, snapshot_id: str, **fields: Any) -> FineTuneSnapshot:
        return await self._update(FineTuneSnapshot, snapshot_id, **fields)

    async def delete_snapshot(self, snapshot_id: str) -> None:
        """Drop a snapshot that never got a job, freeing its (filter_hash, data_version) key."""
        with self.session() as session:
            session.execute(delete(FineTuneSnapshot).where(col(FineTuneSnapshot.id) == snapshot_id))
            session.commit()

    async def get_active_export_lock(self, user_id: str, filter_hash: str, now: datetime) -> Optional[FineTuneLock]:
        with self.session() as session:
            query = (
                select(FineTuneLock)
                .where(
                    FineTuneLock.user_id == user_id,
                    FineTuneLock.filter_hash == filter_hash,
                    FineTuneLock.locked_until > now,
                )
                .order_by(col(FineTuneLock.created_at).desc())
            )
            return session.exec(query).first()

    async def get_active_snapshot_lock(self, snapshot_id: str, now: datetime) -> Optional[FineTuneLock]:
        with self.session() as session:
            query = select(FineTuneLock).where(
                FineTuneLock.snapshot_id == snapshot_id,
                FineTuneLock.expires_at > now,
            )
            return session.exec(query).first()

    async def create_lock(self, **fields: Any) -> FineTuneLock:
        return self._save(FineTuneLock(**fields))

    async def delete_expired_locks(self, now: datetime) -> int:
        with self.session() as session:
            result = session.execute(delete(FineTuneLock).where(col(FineTuneLock.locked_until) < now))
            session.commit()
            return result.rowcount or 0

    async def upsert_event(self, ignore_duplicates: bool = False, **fields: Any) -> None:
        """Record a job event; one row per (snapshot_id, job_id)."""
        conflict = ("snapshot_id", "job_id")
        updatable = None if ignore_duplicates else [key for key in fields if key not in conflict]
        with self.session() as session:
            self._upsert(session, FineTuneEvent, fields, conflict, update_columns=updatable)
            session.commit()

    async def latest_event_for_job(self, job_id: str) -> Optional[FineTuneEvent]:
        with self.session() as session:
            query = (
                select(FineTuneEvent)
                .where(FineTuneEvent.job_id == job_id)
                .order_by(col(FineTuneEvent.created_at).desc())
            )
            return session.exec(query).first()

    async def latest_event_for_snapshot(self, snapshot_id: str) -> Optional[FineTuneEvent]:
        with self.session() as session:
            query = (
                select(FineTuneEvent)
                .where(FineTuneEvent.snapshot_id == snapshot_id)
                .order_by(col(FineTuneEvent.created_at).desc())
            )
            return session.exec(query).first()

    async def get_snapshot_events(self, snapshot_id: str) -> List[FineTuneEvent]:
        with self.session() as session:
            query = select(FineTuneEvent).where(FineTuneEvent.snapshot_id == snapshot_id)
            return list(session.exec(query).all())

    # --------------------------------------------------
    # Invites & teams
    # --------------------------------------------------
    async def create_invite(self, **fields: Any) -> InviteLog:
        return self._save(InviteLog(**fields))

    async def get_invite(self, invite_id: str) -> Optional[InviteLog]:
        with self.session() as session:
            return session.get(InviteLog, invite_id)

    async def find_invite(self, to_email: str, team_id: Optional[str] = None) -> Optional[InviteLog]:
        with self.session() as session:
            query = select(InviteLog).where(InviteLog.to_email == to_email)
            if team_id is not None:
                query = query.where(InviteLog.team_id == team_id)
            return session.exec(query.order_by(col(InviteLog.created_at).desc())).first()

    async def find_pending_invite(self, to_email: str, team_id: str, token: str) -> Optional[InviteLog]:
        with self.session() as session:
            query = select(InviteLog).where(
                InviteLog.to_email == to_email,
                InviteLog.team_id == team_id,
                InviteLog.token == token,
                InviteLog.status == "pending",
            )
            return session.exec(query).first()

    async def count_invites_since(self, inviter_id: str, since: datetime) -> int:
        with self.session() as session:
            query = (
                select(func.count())
                .select_from(InviteLog)
                .where(InviteLog.inviter_id == inviter_id, InviteLog.created_at >= since)
            )
            return int(session.exec(query).one())

    async def update_invite(self, invite_id: str, **fields: Any) -> InviteLog:
        return await self._update(InviteLog, invite_id, **fields)

    async def accept_sent_invites(self, to_email: str, accepted_at: datetime) -> int:
        with self.session() as session:
            invites = session.exec(
                select(InviteLog).where(InviteLog.to_email == to_email, InviteLog.status == "sent")
            ).all()
            for invite in invites:
                invite.status = "accepted"
                invite.accepted_at = accepted_at
                session.add(invite)
            session.commit()
            return len(invites)

    async def add_team_member(self, team_id: str, user_id: str) -> None:
        with self.session() as session:
            self._upsert(session, TeamMember, {"team_id": team_id, "user_id": user_id}, ("team_id", "user_id"))
            session.commit()

    async def is_team_member(self, team_id: str, user_id: str) -> bool:
        with self.session() as session:
            query = select(TeamMember).where(TeamMember.team_id == team_id, TeamMember.user_id == user_id)
            return session.exec(query).first() is not None

    async def log_admin_audit(
        self,
        actor_id: Optional[str],
        action: str,
        details: Optional[str] = None,
        note: Optional[str] = None,
    ) -> AdminAuditLog:
        entry = self._save(AdminAuditLog(actor_id=actor_id, action=action, details=details, note=note))
        logger.info("admin_audit_logged", action=action, actor_id=actor_id)
        return entry

    async def get_audit_logs(self) -> List[AdminAuditLog]:
        with self.session() as session:
            return list(session.exec(select(AdminAuditLog).order_by(col(AdminAuditLog.created_at).asc())).all())


database_service = DatabaseService()
