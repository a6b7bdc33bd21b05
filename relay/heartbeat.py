import asyncio
from typing import List, Optional
from constants import HEARTBEAT_INTERVAL_SECONDS
from relay.engine import WS_GOING_AWAY, RelayEngine
from relay.events import ping_frame
from relay.registry import LIVENESS_ACK, LIVENESS_PING
from logging_config import get_logger

logger = get_logger(__name__)


class HeartbeatSweeper:
    """Periodic liveness sweep over the registry.

    Each sweep marks every connection not-alive and sends it a ``ping``
    frame. A ping the transport accepts within the send timeout marks the
    connection alive again, as does any inbound frame, so idle clients that
    never answer stay connected. A connection whose ping was not accepted
    and that sent nothing since is force-closed on the next sweep.

    Peers that vanish without a close handshake are detected by the server's
    protocol-level WebSocket keepalive (``WS_PING_INTERVAL_SECONDS``), which
    ends the read loop and goes through the same closure routine.
    """

    def __init__(self, engine: RelayEngine, interval: float = HEARTBEAT_INTERVAL_SECONDS):
        self.engine = engine
        self.interval = interval
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def sweep_once(self) -> List[str]:
        """Run one sweep and return the ids of the connections it closed."""
        expired = []
        pinged = []
        for connection in await self.engine.registry.snapshot():
            if connection.closing:
                continue
            if connection.liveness.alive:
                pinged.append(connection)
            else:
                expired.append(connection)

        results = await asyncio.gather(*(
            self.engine.close(c.id, reason="heartbeat timeout", code=WS_GOING_AWAY) for c in expired
        ))
        closed = [c.id for c, did_close in zip(expired, results) if did_close]

        # mark before sending so a reply that races the send is not overwritten
        for connection in pinged:
            await self.engine.registry.touch(connection.id, LIVENESS_PING)
        ping = ping_frame(self.engine.clock())
        accepted = await asyncio.gather(*(self.engine.try_send(c.id, ping) for c in pinged))
        for connection, ok in zip(pinged, accepted):
            if ok:
                await self.engine.registry.touch(connection.id, LIVENESS_ACK)

        if closed:
            logger.info(f"Heartbeat closed {len(closed)} unresponsive connection(s): {', '.join(closed)}")
        unreachable = len(pinged) - sum(accepted)
        if unreachable:
            logger.warning(f"Heartbeat ping not accepted by {unreachable} connection(s)")
        logger.debug(f"Heartbeat pinged {len(pinged)} connection(s)")
        return closed

    async def _run(self):
        logger.info(f"Heartbeat sweeper started (interval {self.interval}s)")
        try:
            while True:
                await asyncio.sleep(self.interval)
                try:
                    await self.sweep_once()
                except Exception as e:
                    logger.error(f"Heartbeat sweep failed: {e}", exc_info=True)
        except asyncio.CancelledError:
            logger.info("Heartbeat sweeper task cancelled")
            raise

    def start(self) -> asyncio.Task:
        if not self.running:
            self._task = asyncio.create_task(self._run())
        return self._task

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
