"""Immutable application state for API consumers."""

from typing import Any, Dict, FrozenSet, Iterable, List, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from therapy_chat.schemas.auth import UserProfile

T = TypeVar("T")


class AppState(BaseModel):
    """
    Snapshot of what a signed-in client knows.

    Setters never mutate; each returns a new snapshot, so a caller holding an
    older one keeps seeing the old values.
    """

    model_config = ConfigDict(frozen=True)

    token: Optional[str] = None
    profile: Optional[UserProfile] = None
    loading: bool = False
    sidebar_open: bool = True
    active_snapshot_id: Optional[str] = None
    retry_locks: FrozenSet[str] = Field(default_factory=frozenset)

    @property
    def is_authenticated(self) -> bool:
        return self.token is not None

    def with_session(self, token: str, profile: Optional[UserProfile] = None) -> "AppState":
        return self.model_copy(update={"token": token, "profile": profile})

    def signed_out(self) -> "AppState":
        return AppState(sidebar_open=self.sidebar_open)

    def with_loading(self, loading: bool) -> "AppState":
        return self.model_copy(update={"loading": loading})

    def toggle_sidebar(self) -> "AppState":
        return self.model_copy(update={"sidebar_open": not self.sidebar_open})

    def with_active_snapshot(self, snapshot_id: Optional[str]) -> "AppState":
        return self.model_copy(update={"active_snapshot_id": snapshot_id})

    def lock_retry(self, snapshot_id: str) -> "AppState":
        return self.model_copy(update={"retry_locks": self.retry_locks | {snapshot_id}})

    def unlock_retry(self, snapshot_id: str) -> "AppState":
        return self.model_copy(update={"retry_locks": self.retry_locks - {snapshot_id}})

    def is_retry_locked(self, snapshot_id: str) -> bool:
        return snapshot_id in self.retry_locks


def _key_of(record: Any, key: str) -> Any:
    if isinstance(record, dict):
        return record.get(key)
    return getattr(record, key, None)


def reconcile(provisional: Iterable[T], authoritative: Iterable[T], key: str = "id") -> List[T]:
    """
    Merge optimistic records with the server's copies by primary key.

    Authoritative records replace provisional ones with the same key and keep
    the provisional position. Provisional-only records stay where they were;
    authoritative-only records are appended in server order.
    """
    confirmed: Dict[Any, T] = {}
    for record in authoritative:
        confirmed[_key_of(record, key)] = record

    merged: List[T] = []
    seen = set()
    for record in provisional:
        record_key = _key_of(record, key)
        if record_key in seen:
            continue
        seen.add(record_key)
        merged.append(confirmed.get(record_key, record))

    for record_key, record in confirmed.items():
        if record_key not in seen:
            seen.add(record_key)
            merged.append(record)
    return merged
