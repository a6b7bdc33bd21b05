"""Broadcast/relay engine.

Takes decoded inbound events from a connection, applies the per-kind policy
(persist chat, update presence, relay signaling) and pushes the resulting
frames to one or many registered connections.

All closure paths (transport close, send failure, heartbeat timeout) go
through ``RelayEngine.close``, which runs at most once per connection.
Voice departures go through ``_leave``, which announces at most once per
presence session.
"""
import asyncio
import functools
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple
from constants import (
    ANNOUNCE_ALL_DEPARTURES,
    CHAT_ROOM,
    DEFAULT_CHAT_USER,
    DEFAULT_PRESENCE_USER,
    ECHO_CHAT_TO_SENDER,
    MAX_CID_LENGTH,
    MAX_FRAME_BYTES,
    MAX_TEXT_LENGTH,
    MAX_USER_LENGTH,
    SEND_PRESENCE_SNAPSHOT,
    SEND_TIMEOUT_SECONDS,
)
from relay.events import (
    Malformed,
    OutboundFrame,
    PongEvent,
    SendEvent,
    SignalEvent,
    TypingEvent,
    VoiceJoinEvent,
    VoiceLeaveEvent,
    VoiceMuteEvent,
    decode_frame,
    message_frame,
    presence_snapshot_frame,
    self_id_frame,
    signal_frame,
    typing_frame,
    voice_join_frame,
    voice_leave_frame,
    voice_mute_frame,
)
from relay.presence import PresenceState
from relay.registry import LIVENESS_ACK, Connection, ConnectionRegistry
from logging_config import get_logger

logger = get_logger(__name__)

WS_NORMAL_CLOSURE = 1000
WS_GOING_AWAY = 1001
WS_INTERNAL_ERROR = 1011


@dataclass(frozen=True)
class RelayPolicy:
    # chat is echoed so clients can confirm delivery by cid; typing and voice never are
    echo_chat_to_sender: bool = ECHO_CHAT_TO_SENDER
    # announce voice-leave on close even for connections that never joined voice
    announce_all_departures: bool = ANNOUNCE_ALL_DEPARTURES
    send_presence_snapshot: bool = SEND_PRESENCE_SNAPSHOT
    max_user_length: int = MAX_USER_LENGTH
    max_text_length: int = MAX_TEXT_LENGTH
    max_cid_length: int = MAX_CID_LENGTH
    max_frame_bytes: int = MAX_FRAME_BYTES
    send_timeout: float = SEND_TIMEOUT_SECONDS


@dataclass(frozen=True)
class PublishResult:
    message: dict
    persisted: bool


Predicate = Callable[[Connection], bool]


def everyone(connection: Connection) -> bool:
    return True


def exclude(connection_id: Optional[str]) -> Predicate:
    """Broadcast filter that skips the originating connection."""
    def predicate(connection: Connection) -> bool:
        return connection.id != connection_id
    return predicate


def clean_field(value: Optional[str], limit: int) -> str:
    return (value or "").strip()[:limit]


def now_ms() -> int:
    return int(time.time() * 1000)


class RelayEngine:
    def __init__(
        self,
        registry: Optional[ConnectionRegistry] = None,
        presence: Optional[PresenceState] = None,
        storage=None,
        room: str = CHAT_ROOM,
        policy: Optional[RelayPolicy] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.registry = registry if registry is not None else ConnectionRegistry()
        self.presence = presence if presence is not None else PresenceState()
        self.storage = storage
        self.room = room
        self.policy = policy or RelayPolicy()
        self.clock = clock
        self._handlers: Dict[type, Callable] = {
            SendEvent: self._on_send,
            TypingEvent: self._on_typing,
            VoiceJoinEvent: self._on_voice_join,
            VoiceLeaveEvent: self._on_voice_leave,
            VoiceMuteEvent: self._on_voice_mute,
            SignalEvent: self._on_signal,
            PongEvent: self._on_pong,
        }

    # Connection lifecycle

    async def connect(self, transport) -> str:
        """Register an accepted transport and send it its id (plus the presence snapshot)."""
        connection_id = await self.registry.register(transport)
        logger.info(f"Connection {connection_id} opened ({len(self.registry)} connected)")

        if not await self.send_to(connection_id, self_id_frame(connection_id)):
            return connection_id
        if self.policy.send_presence_snapshot:
            peers = await self.presence.snapshot()
            await self.send_to(connection_id, presence_snapshot_frame(peers))
        return connection_id

    async def close(self, connection_id: str, reason: str = "closed", code: int = WS_NORMAL_CLOSURE,
                    close_transport: bool = True) -> bool:
        """Tear down a connection. Returns False if it was already closing or unknown."""
        connection = await self.registry.lookup(connection_id)
        if connection is None or connection.closing:
            return False
        connection.closing = True

        await self.registry.unregister(connection_id)
        logger.info(f"Connection {connection_id} closed: {reason} ({len(self.registry)} connected)")
        await self._leave(connection, closing=True)

        if close_transport:
            try:
                await asyncio.wait_for(connection.transport.close(code=code), timeout=self.policy.send_timeout)
            except Exception as e:
                logger.debug(f"Error closing transport for {connection_id}: {e!r}")
        return True

    async def _leave(self, connection: Connection, closing: bool = False) -> bool:
        # announce_lock orders this after an in-flight voice-join fan-out
        async with connection.announce_lock:
            if connection.leave_announced:
                await self.presence.remove(connection.id)
                return False
            connection.leave_announced = True

            entry = await self.presence.remove(connection.id)
            if entry is None and closing and not self.policy.announce_all_departures:
                return False
            user = entry.user if entry is not None else None
            _, dead = await self._fanout(voice_leave_frame(connection.id, user), exclude(connection.id))
        await self._close_dead(dead)
        return True

    # Inbound

    async def handle_frame(self, connection_id: str, raw) -> bool:
        """Process one raw inbound frame. Returns True if it decoded to a known event."""
        if await self.registry.touch(connection_id, LIVENESS_ACK) is None:
            return False
        connection = await self.registry.lookup(connection_id)
        if connection is None or connection.closing:
            return False
        return await self.dispatch(connection, decode_frame(raw, self.policy.max_frame_bytes))

    async def dispatch(self, connection: Connection, event) -> bool:
        if isinstance(event, Malformed):
            logger.debug(f"Dropping frame from {connection.id}: {event.reason}")
            return False
        handler = self._handlers[type(event)]
        await handler(connection, event)
        return True

    async def _on_send(self, connection: Connection, event: SendEvent):
        user = clean_field(event.user, self.policy.max_user_length)
        if user:
            connection.declared_user = user
        result = await self.publish_chat(user, event.text, event.cid, origin_id=connection.id)
        if result is None:
            logger.debug(f"Dropping empty chat message from {connection.id}")

    async def _on_typing(self, connection: Connection, event: TypingEvent):
        user = clean_field(event.user, self.policy.max_user_length)
        if user:
            connection.declared_user = user
        user = user or connection.declared_user or DEFAULT_PRESENCE_USER
        await self.broadcast(typing_frame(connection.id, user, event.active), exclude(connection.id))

    async def _on_voice_join(self, connection: Connection, event: VoiceJoinEvent):
        user = clean_field(event.user, self.policy.max_user_length)
        if user:
            connection.declared_user = user
        async with connection.announce_lock:
            entry = await self.presence.upsert(connection.id, user or None)
            if connection.closing:
                # closed while the entry was being written
                await self.presence.remove(connection.id)
                return
            connection.leave_announced = False
            _, dead = await self._fanout(voice_join_frame(connection.id, entry.user), exclude(connection.id))
        await self._close_dead(dead)

    async def _on_voice_leave(self, connection: Connection, event: VoiceLeaveEvent):
        await self._leave(connection)

    async def _on_voice_mute(self, connection: Connection, event: VoiceMuteEvent):
        await self.presence.set_muted(connection.id, event.muted)
        await self.broadcast(voice_mute_frame(connection.id, event.muted), exclude(connection.id))

    async def _on_signal(self, connection: Connection, event: SignalEvent):
        target = await self.registry.lookup(event.to)
        if target is None or not target.open:
            logger.debug(f"Dropping {event.type} from {connection.id}: target {event.to!r} not connected")
            return
        await self.send_to(target.id, signal_frame(event, connection.id))

    async def _on_pong(self, connection: Connection, event: PongEvent):
        pass

    # Chat

    async def publish_chat(self, user: Optional[str], text: Optional[str], cid: Optional[str] = None,
                           origin_id: Optional[str] = None) -> Optional[PublishResult]:
        """Persist and broadcast one chat message. Returns None if the text is empty.

        A storage failure is logged and the message is broadcast anyway.
        """
        user = clean_field(user, self.policy.max_user_length) or DEFAULT_CHAT_USER
        text = clean_field(text, self.policy.max_text_length)
        cid = clean_field(cid, self.policy.max_cid_length) or None
        if not text:
            return None

        ts = self.clock()
        persisted = await self._persist(user, text, ts, cid)
        frame = message_frame(user, text, ts, cid)
        if self.policy.echo_chat_to_sender or origin_id is None:
            predicate = everyone
        else:
            predicate = exclude(origin_id)
        await self.broadcast(frame, predicate)
        return PublishResult(message=frame.data, persisted=persisted)

    async def _persist(self, user: str, text: str, ts: int, cid: Optional[str]) -> bool:
        if self.storage is None:
            return False
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(
                None, functools.partial(self.storage.append_message, self.room, user, text, ts, cid)
            )
            return True
        except Exception as e:
            logger.error(f"Failed to persist chat message from {user} in room {self.room}: {e}", exc_info=True)
            return False

    # Outbound

    async def broadcast(self, frame: OutboundFrame, predicate: Predicate = everyone) -> int:
        """Send ``frame`` to every open connection matching ``predicate``.

        Sends to different peers run concurrently; a failed peer is closed
        after the fan-out completes. Returns the number of successful sends.
        """
        delivered, dead = await self._fanout(frame, predicate)
        await self._close_dead(dead)
        return delivered

    async def _fanout(self, frame: OutboundFrame, predicate: Predicate) -> Tuple[int, List[Connection]]:
        """Deliver without closing anyone; returns (delivered, failed connections)."""
        targets = [c for c in await self.registry.snapshot() if c.open and predicate(c)]
        if not targets:
            return 0, []
        text = frame.encode()
        results = await asyncio.gather(*(self._deliver(c, text) for c in targets))
        dead = [c for c, ok in zip(targets, results) if not ok]
        logger.debug(f"Broadcast {frame.type} to {len(targets) - len(dead)}/{len(targets)} connections")
        return len(targets) - len(dead), dead

    async def _close_dead(self, dead: List[Connection]):
        for connection in dead:
            await self.close(connection.id, reason="send failed", code=WS_INTERNAL_ERROR)

    async def send_to(self, connection_id: str, frame: OutboundFrame) -> bool:
        if await self.try_send(connection_id, frame):
            return True
        await self.close(connection_id, reason="send failed", code=WS_INTERNAL_ERROR)
        return False

    async def try_send(self, connection_id: str, frame: OutboundFrame) -> bool:
        """Unicast that leaves the connection open when the transport does not accept the frame."""
        connection = await self.registry.lookup(connection_id)
        if connection is None or not connection.open:
            return False
        return await self._deliver(connection, frame.encode())

    async def _deliver(self, connection: Connection, text: str) -> bool:
        try:
            async with connection.send_lock:
                await asyncio.wait_for(connection.transport.send_text(text), timeout=self.policy.send_timeout)
            return True
        except Exception as e:
            logger.warning(f"Error sending to connection {connection.id}: {e!r}")
            return False
