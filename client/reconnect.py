import asyncio
from typing import Any, Awaitable, Callable, Optional

from constants import RECONNECT_BASE_DELAY_MS, RECONNECT_MAX_ATTEMPTS, RECONNECT_MAX_DELAY_MS
from errors import Timeout, TransportLost
from logging_config import get_logger

logger = get_logger(__name__)


def backoff_delay_ms(attempt: int) -> int:
    """Delay before reconnect attempt ``attempt`` (1-based): 1s, 2s, 4s, 8s, then 10s."""
    return min(RECONNECT_BASE_DELAY_MS * 2 ** (attempt - 1), RECONNECT_MAX_DELAY_MS)


class ReconnectionController:
    """Brings the signaling transport back after it drops, keeping the seat.

    Only the signaling transport is supervised; open peer channels carry on
    by themselves. A successful reconnect is followed by ``rejoin`` so the
    room record and the host see this peer again, and the attempt counter
    starts over. Once ``max_attempts`` reconnects in a row have failed,
    ``TransportLost`` is raised and nothing more is tried.
    """

    def __init__(
        self,
        transport,
        on_reconnected: Optional[Callable[[dict], Awaitable[Any]]] = None,
        max_attempts: int = RECONNECT_MAX_ATTEMPTS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.transport = transport
        self.on_reconnected = on_reconnected
        self.max_attempts = max_attempts
        self.sleep = sleep
        self.attempt = 0

    async def recover(self) -> dict:
        while self.attempt < self.max_attempts:
            self.attempt += 1
            delay = backoff_delay_ms(self.attempt)
            logger.info(f"Signaling lost, reconnect attempt {self.attempt}/{self.max_attempts} in {delay}ms")
            await self.sleep(delay / 1000)
            try:
                await self.transport.reconnect()
                rejoined = await self.transport.rejoin_room()
            except (TransportLost, Timeout) as e:
                logger.warning(f"Reconnect attempt {self.attempt} failed: {e}")
                continue
            logger.info(f"Signaling restored after {self.attempt} attempt(s)")
            self.attempt = 0
            if self.on_reconnected:
                await self.on_reconnected(rejoined)
            return rejoined

        logger.error(f"Giving up on signaling after {self.max_attempts} attempts")
        raise TransportLost(f"Disconnected after {self.max_attempts} reconnect attempts")

    async def supervise(self) -> None:
        """Run until cancelled, recovering every time the transport reports loss."""
        while True:
            await self.transport.lost.wait()
            await self.recover()
