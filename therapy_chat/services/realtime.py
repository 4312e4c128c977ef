"""
In-process realtime hub.

Channels carry two kinds of traffic:
- presence: every subscriber may `track()` a metadata dict under its presence key;
  all subscribers of the channel receive a `sync` callback whenever that state changes.
- row changes: the database service publishes INSERT/UPDATE notifications per table,
  which are fanned out to listeners whose column filter matches the record.

`PresenceTracker` and `SessionDataSubscription` are the two consumers used by the
WebSocket endpoint.
"""
import asyncio
import inspect
import itertools
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple, Union

from therapy_chat.core.config import settings
from therapy_chat.core.config.logging import get_logger
from therapy_chat.schemas.presence import PresenceMeta

logger = get_logger(__name__)

# Channel states
SUBSCRIBED = "SUBSCRIBED"
CHANNEL_ERROR = "CHANNEL_ERROR"
CLOSED = "CLOSED"

# Activity values published by the presence tracker
TYPING_ACTIVITY = "Typing…"
IDLE_ACTIVITY = "Idle"

Callback = Callable[..., Union[None, Awaitable[None]]]

_channel_ids = itertools.count(1)


async def _invoke(callback: Optional[Callback], *args: Any) -> None:
    """Call a sync or async callback."""
    if callback is None:
        return
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


# ==================================================
# Channel
# ==================================================
class RealtimeChannel:
    def __init__(self, hub: "RealtimeHub", name: str, presence_key: Optional[str] = None):
        self.hub = hub
        self.name = name
        self.presence_key = presence_key
        self.id = next(_channel_ids)
        self.state = CLOSED
        self._change_listeners: List[Tuple[str, str, Dict[str, Any], Callback]] = []
        self._sync_listeners: List[Callback] = []

    def on_change(
        self,
        event: str,
        table: str,
        callback: Callback,
        filter: Optional[Dict[str, Any]] = None,
    ) -> "RealtimeChannel":
        """Listen to `event` ("INSERT" / "UPDATE") on `table`, optionally filtered by column equality."""
        self._change_listeners.append((event.upper(), table, dict(filter or {}), callback))
        return self

    def on_presence_sync(self, callback: Callback) -> "RealtimeChannel":
        self._sync_listeners.append(callback)
        return self

    async def subscribe(self, callback: Optional[Callback] = None) -> str:
        """Attach to the hub; `callback` receives the resulting status."""
        try:
            self.hub._attach(self)
            self.state = SUBSCRIBED
        except RuntimeError as e:
            self.state = CHANNEL_ERROR
            logger.error("realtime_subscribe_failed", channel=self.name, error=str(e))
        await _invoke(callback, self.state)
        return self.state

    async def track(self, meta: Dict[str, Any]) -> None:
        """Publish (merge) this subscriber's presence metadata."""
        if self.state != SUBSCRIBED:
            raise RuntimeError(f"channel {self.name} is not subscribed")
        if self.presence_key is None:
            raise RuntimeError(f"channel {self.name} has no presence key")
        await self.hub._track(self, meta)

    def presence_state(self) -> Dict[str, List[Dict[str, Any]]]:
        return self.hub._presence_state(self.name)

    async def _dispatch_change(self, table: str, event: str, record: Dict[str, Any]) -> None:
        for listen_event, listen_table, column_filter, callback in self._change_listeners:
            if listen_table != table or listen_event != event:
                continue
            if any(record.get(column) != value for column, value in column_filter.items()):
                continue
            await _invoke(callback, record)

    async def _dispatch_sync(self) -> None:
        for callback in self._sync_listeners:
            await _invoke(callback)


# ==================================================
# Hub
# ==================================================
class RealtimeHub:
    """Owns channels, replicated presence state and row-change fan-out."""

    def __init__(self):
        self._channels: Dict[str, Set[RealtimeChannel]] = {}
        # channel name -> presence key -> channel id -> meta
        self._presence: Dict[str, Dict[str, Dict[int, Dict[str, Any]]]] = {}
        self._closed = False

    def channel(self, name: str, presence_key: Optional[str] = None) -> RealtimeChannel:
        return RealtimeChannel(self, name, presence_key=presence_key)

    async def remove_channel(self, channel: RealtimeChannel) -> None:
        members = self._channels.get(channel.name)
        if members is not None:
            members.discard(channel)
            if not members:
                del self._channels[channel.name]
        channel.state = CLOSED

        presence = self._presence.get(channel.name, {})
        entries = presence.get(channel.presence_key or "", {})
        if channel.id in entries:
            del entries[channel.id]
            if not entries:
                del presence[channel.presence_key]
            if not presence:
                self._presence.pop(channel.name, None)
            await self._sync(channel.name)

    async def publish_change(self, table: str, event: str, record: Dict[str, Any]) -> None:
        """Fan a row change out to every channel listening for it."""
        for members in list(self._channels.values()):
            for channel in list(members):
                try:
                    await channel._dispatch_change(table, event.upper(), record)
                except Exception as e:
                    # One broken listener must not block the writer
                    logger.error(
                        "realtime_listener_failed",
                        channel=channel.name,
                        table=table,
                        error=str(e),
                        exc_info=True,
                    )

    def start(self) -> None:
        self._closed = False

    async def close(self) -> None:
        self._closed = True
        for members in list(self._channels.values()):
            for channel in list(members):
                channel.state = CLOSED
        self._channels.clear()
        self._presence.clear()

    def channel_count(self) -> int:
        return sum(len(members) for members in self._channels.values())

    # --------------------------------------------------
    # Internal API used by RealtimeChannel
    # --------------------------------------------------
    def _attach(self, channel: RealtimeChannel) -> None:
        if self._closed:
            raise RuntimeError("realtime hub is closed")
        self._channels.setdefault(channel.name, set()).add(channel)

    async def _track(self, channel: RealtimeChannel, meta: Dict[str, Any]) -> None:
        entries = self._presence.setdefault(channel.name, {}).setdefault(channel.presence_key, {})
        entries[channel.id] = {**entries.get(channel.id, {}), **meta}
        await self._sync(channel.name)

    def _presence_state(self, name: str) -> Dict[str, List[Dict[str, Any]]]:
        return {
            key: [dict(meta) for meta in entries.values()]
            for key, entries in self._presence.get(name, {}).items()
        }

    async def _sync(self, name: str) -> None:
        for channel in list(self._channels.get(name, ())):
            await channel._dispatch_sync()


realtime_hub = RealtimeHub()


# ==================================================
# Presence Tracker
# ==================================================
class PresenceTracker:
    """
    Joins the presence channel of a chat session and keeps a debounced view of
    who else is online and who of them is typing.
    """

    def __init__(
        self,
        hub: RealtimeHub,
        session_id: str,
        user_id: str,
        *,
        name: Optional[str] = None,
        avatar: Optional[str] = None,
        on_change: Optional[Callable[[List[PresenceMeta], List[PresenceMeta]], Any]] = None,
        debounce: Optional[float] = None,
    ):
        self.hub = hub
        self.session_id = session_id
        self.user_id = user_id
        self.name = name or "Anonymous"
        self.avatar = avatar or ""
        self.on_change = on_change
        self.debounce = settings.PRESENCE_DEBOUNCE_SECONDS if debounce is None else debounce

        self.others: List[PresenceMeta] = []
        self.typing: List[PresenceMeta] = []
        self._channel: Optional[RealtimeChannel] = None
        self._pending: Optional[asyncio.Task] = None

    @property
    def channel_name(self) -> str:
        return f"presence:chat-{self.session_id}"

    async def join(self) -> None:
        channel = self.hub.channel(self.channel_name, presence_key=self.user_id)
        channel.on_presence_sync(self._schedule_update)
        self._channel = channel
        await channel.subscribe(self._on_status)

    async def _on_status(self, status: str) -> None:
        if status == SUBSCRIBED and self._channel is not None:
            await self._channel.track(
                {
                    "typing": False,
                    "name": self.name,
                    "avatar": self.avatar,
                    "activity": IDLE_ACTIVITY,
                }
            )

    async def set_typing(self, typing: bool) -> None:
        if self._channel is None or self._channel.state != SUBSCRIBED:
            return
        await self._channel.track(
            {"typing": typing, "activity": TYPING_ACTIVITY if typing else IDLE_ACTIVITY}
        )

    async def leave(self) -> None:
        if self._pending is not None:
            self._pending.cancel()
            self._pending = None
        if self._channel is not None:
            channel, self._channel = self._channel, None
            await self.hub.remove_channel(channel)

    def _schedule_update(self) -> None:
        # Collapse bursts of sync events into one recomputation
        if self._pending is not None and not self._pending.done():
            self._pending.cancel()
        self._pending = asyncio.get_running_loop().create_task(self._debounced_update())
        self._pending.add_done_callback(self._log_update_failure)

    def _log_update_failure(self, task: asyncio.Task) -> None:
        if task.cancelled() or task.exception() is None:
            return
        logger.error("presence_update_failed", session_id=self.session_id, error=str(task.exception()))

    async def _debounced_update(self) -> None:
        await asyncio.sleep(self.debounce)
        self.refresh()
        await _invoke(self.on_change, self.others, self.typing)

    def refresh(self) -> None:
        """Recompute `others` / `typing` from the channel's replicated state."""
        if self._channel is None:
            self.others, self.typing = [], []
            return
        others: List[PresenceMeta] = []
        for key, metas in self._channel.presence_state().items():
            if key == self.user_id or not metas:
                continue
            first = metas[0]
            others.append(
                PresenceMeta(
                    id=key,
                    name=first.get("name") or "Anonymous",
                    avatar=first.get("avatar") or "",
                    activity=first.get("activity") or "Active",
                    typing=any(bool(meta.get("typing")) for meta in metas),
                )
            )
        self.others = others
        self.typing = [p for p in others if p.activity == TYPING_ACTIVITY]


# ==================================================
# Session Data Subscription
# ==================================================
class SessionDataSubscription:
    """
    Follows message and emotion-log changes for one session.
    Callbacks only fire for therapist viewers; `wait_until_ready()` lets a writer
    hold a side-effecting write until the listeners are attached.
    """

    def __init__(
        self,
        hub: RealtimeHub,
        session_id: str,
        viewer_role: Optional[str],
        *,
        on_new_message: Optional[Callback] = None,
        on_update_message: Optional[Callback] = None,
        on_new_log: Optional[Callback] = None,
    ):
        self.hub = hub
        self.session_id = session_id
        self.viewer_role = viewer_role
        self.on_new_message = on_new_message
        self.on_update_message = on_update_message
        self.on_new_log = on_new_log

        self._channel: Optional[RealtimeChannel] = None
        self._ready: Optional[asyncio.Event] = None

    @property
    def is_therapist(self) -> bool:
        return self.viewer_role == "therapist"

    @property
    def is_ready(self) -> bool:
        return self._ready is not None and self._ready.is_set()

    async def subscribe(self) -> None:
        self._ready = asyncio.Event()
        scope = {"session_id": self.session_id}
        channel = self.hub.channel(f"session:{self.session_id}")
        channel.on_change("INSERT", "messages", self._gated(lambda: self.on_new_message), filter=scope)
        channel.on_change("UPDATE", "messages", self._gated(lambda: self.on_update_message), filter=scope)
        channel.on_change("INSERT", "emotion_logs", self._gated(lambda: self.on_new_log), filter=scope)
        self._channel = channel
        await channel.subscribe(self._on_status)

    async def wait_until_ready(self) -> None:
        if self._ready is None:
            return
        await self._ready.wait()

    async def close(self) -> None:
        if self._channel is not None:
            channel, self._channel = self._channel, None
            await self.hub.remove_channel(channel)
        if self._ready is not None:
            self._ready.clear()

    def _gated(self, get_callback: Callable[[], Optional[Callback]]) -> Callback:
        async def handler(record: Dict[str, Any]) -> None:
            if self.is_therapist:
                await _invoke(get_callback(), record)
        return handler

    async def _on_status(self, status: str) -> None:
        if status == SUBSCRIBED and self._ready is not None:
            self._ready.set()
        elif status == CHANNEL_ERROR:
            logger.error("session_subscription_failed", session_id=self.session_id)
