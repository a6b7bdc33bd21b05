import asyncio
import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union
from logging_config import get_logger

logger = get_logger(__name__)

LIVENESS_ACK = "ack"
LIVENESS_PING = "ping"


@dataclass(frozen=True)
class Liveness:
    alive: bool = True
    pings_sent: int = 0


def next_liveness(record: Liveness, event: str) -> Liveness:
    """Liveness transition: any inbound traffic is an ack, a sweep ping clears it."""
    if event == LIVENESS_ACK:
        return replace(record, alive=True)
    if event == LIVENESS_PING:
        return replace(record, alive=False, pings_sent=record.pings_sent + 1)
    raise ValueError(f"Unknown liveness event: {event}")


@dataclass(eq=False)
class Connection:
    """Registry entry for one live transport.

    The transport only needs ``send_text(str)`` and ``close(code=...)``
    coroutines, which a Starlette ``WebSocket`` provides.
    """
    id: str
    transport: Any
    liveness: Liveness = field(default_factory=Liveness)
    declared_user: Optional[str] = None
    closing: bool = False
    leave_announced: bool = False
    send_lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)
    # serializes voice-join and voice-leave announcements for this connection
    announce_lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    @property
    def open(self) -> bool:
        return not self.closing


class ConnectionRegistry:
    """Source of truth for who is currently connected.

    Every mutation and every enumeration takes ``_lock``; enumeration works
    on a copy so callers can unregister entries while walking it. No
    transport I/O happens under the lock.
    """

    def __init__(self):
        self._connections: Dict[str, Connection] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._connections)

    def __contains__(self, connection_id: object) -> bool:
        return connection_id in self._connections

    async def register(self, transport) -> str:
        async with self._lock:
            connection_id = uuid.uuid4().hex
            while connection_id in self._connections:
                connection_id = uuid.uuid4().hex
            self._connections[connection_id] = Connection(id=connection_id, transport=transport)
            total = len(self._connections)
        logger.debug(f"Registered connection {connection_id} ({total} connected)")
        return connection_id

    async def unregister(self, connection_id: str) -> Optional[Connection]:
        async with self._lock:
            connection = self._connections.pop(connection_id, None)
            total = len(self._connections)
        if connection is not None:
            logger.debug(f"Unregistered connection {connection_id} ({total} connected)")
        return connection

    async def lookup(self, connection_id: str) -> Optional[Connection]:
        async with self._lock:
            return self._connections.get(connection_id)

    async def snapshot(self) -> List[Connection]:
        async with self._lock:
            return list(self._connections.values())

    async def for_each(self, fn: Callable[[Connection], Union[None, Awaitable[None]]]) -> int:
        """Call ``fn`` for every connection registered at call time."""
        connections = await self.snapshot()
        for connection in connections:
            result = fn(connection)
            if asyncio.iscoroutine(result):
                await result
        return len(connections)

    async def touch(self, connection_id: str, event: str) -> Optional[Liveness]:
        async with self._lock:
            connection = self._connections.get(connection_id)
            if connection is None:
                return None
            connection.liveness = next_liveness(connection.liveness, event)
            return connection.liveness
