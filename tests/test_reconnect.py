import asyncio

import pytest

from client.reconnect import ReconnectionController, backoff_delay_ms
from errors import RoomNotFound, Timeout, TransportLost


class ScriptedTransport:
    """Reconnect outcomes are consumed in order; ``None`` means success."""

    def __init__(self, outcomes):
        self.outcomes = list(outcomes)
        self.lost = asyncio.Event()
        self.reconnects = 0
        self.rejoins = 0

    async def reconnect(self):
        self.reconnects += 1
        outcome = self.outcomes.pop(0) if self.outcomes else None
        if outcome is not None:
            raise outcome
        self.lost.clear()

    async def rejoin_room(self):
        self.rejoins += 1
        return {"seat": 2, "seats": [1, 2], "peer_token": "t"}


def test_backoff_schedule():
    assert [backoff_delay_ms(n) for n in range(1, 7)] == [1000, 2000, 4000, 8000, 10000, 10000]


async def test_gives_up_after_five_attempts(recording_sleep):
    transport = ScriptedTransport([TransportLost("down")] * 10)
    controller = ReconnectionController(transport, sleep=recording_sleep)

    with pytest.raises(TransportLost):
        await controller.recover()

    assert recording_sleep.calls == [1.0, 2.0, 4.0, 8.0, 10.0]
    assert transport.reconnects == 5
    assert transport.rejoins == 0


async def test_timeouts_count_as_failed_attempts(recording_sleep):
    transport = ScriptedTransport([Timeout("slow"), None])
    controller = ReconnectionController(transport, sleep=recording_sleep)

    await controller.recover()

    assert recording_sleep.calls == [1.0, 2.0]


async def test_success_rejoins_and_resets(recording_sleep):
    transport = ScriptedTransport([TransportLost("down"), TransportLost("down"), None])
    rejoined = []

    async def on_reconnected(result):
        rejoined.append(result)

    controller = ReconnectionController(transport, on_reconnected=on_reconnected, sleep=recording_sleep)

    result = await controller.recover()

    assert result["seats"] == [1, 2]
    assert rejoined == [result]
    assert transport.rejoins == 1
    assert controller.attempt == 0

    transport.outcomes = [TransportLost("down")]
    await controller.recover()
    assert recording_sleep.calls[3:] == [1.0, 2.0]


async def test_closed_room_stops_recovery(recording_sleep):
    transport = ScriptedTransport([None])

    async def gone():
        raise RoomNotFound("closed")

    transport.rejoin_room = gone
    controller = ReconnectionController(transport, sleep=recording_sleep)

    with pytest.raises(RoomNotFound):
        await controller.recover()
    assert recording_sleep.calls == [1.0]


async def test_supervise_recovers_each_loss(recording_sleep):
    transport = ScriptedTransport([])
    recovered = asyncio.Queue()

    async def on_reconnected(result):
        await recovered.put(result)

    controller = ReconnectionController(transport, on_reconnected=on_reconnected, sleep=recording_sleep)
    task = asyncio.create_task(controller.supervise())

    transport.lost.set()
    await asyncio.wait_for(recovered.get(), timeout=1)
    transport.lost.set()
    await asyncio.wait_for(recovered.get(), timeout=1)

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert transport.rejoins == 2
