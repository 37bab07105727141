import asyncio
import base64

import httpx
import pytest

from client.transport import PollingTransport, WebSocketTransport
from errors import RoomFull, RoomNotFound, SignalingError, Timeout, TransportLost


@pytest.fixture
async def http_client(app_store):
    from app import app

    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        yield client


@pytest.fixture
def make_transport(http_client):
    transports = []

    def make():
        transport = PollingTransport("http://test", http_client=http_client, poll_interval=0.01)
        transports.append(transport)
        return transport

    yield make
    for transport in transports:
        if transport._poll_task:
            transport._poll_task.cancel()


def mock_client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://test")


async def next_message(transport, kind):
    while True:
        message = await asyncio.wait_for(transport.inbox.get(), timeout=2)
        if message.get("type") == kind:
            return message


async def test_create_join_and_relay(make_transport):
    host, guest = make_transport(), make_transport()

    created = await host.create_room()
    joined = await guest.join_room(created["room_code"].lower())
    await host.connect()
    await guest.connect()
    await guest.relay(1, {"type": "chat", "text": "hi"})

    assert joined["seat"] == 2
    assert guest.room_code == created["room_code"]
    assert (await next_message(host, "player-joined"))["seat"] == 2
    chat = await next_message(host, "chat")
    assert (chat["from_seat"], chat["text"]) == (2, "hi")

    await host.disconnect()
    await guest.disconnect()


async def test_server_errors_map_to_classes(make_transport):
    transport = make_transport()

    with pytest.raises(RoomNotFound):
        await transport.join_room("ZZZZZZ")


async def test_full_room_raises(make_transport):
    code = (await make_transport().create_room())["room_code"]
    for _ in range(3):
        await make_transport().join_room(code)

    with pytest.raises(RoomFull):
        await make_transport().join_room(code)


async def test_rejoin_and_leave(make_transport):
    host, guest = make_transport(), make_transport()
    code = (await host.create_room())["room_code"]
    await guest.join_room(code)

    rejoined = await guest.rejoin_room()
    await guest.leave_room()
    await guest.leave_room()

    assert rejoined["seats"] == [1, 2]


async def test_fetch_rom(make_transport, app_store):
    app_store.set_value("roms:demo.nes", base64.b64encode(b"NES\x1a").decode())
    transport = make_transport()

    assert await transport.fetch_rom("demo") == b"NES\x1a"
    assert await transport.fetch_rom("missing") is None


async def test_request_timeout():
    async def hang(request):
        await asyncio.sleep(1)
        return httpx.Response(200, json={})

    async with mock_client(hang) as client:
        transport = PollingTransport("http://test", http_client=client, request_timeout=0.01)
        with pytest.raises(Timeout):
            await transport.create_room()


async def test_unreachable_server_is_transport_lost():
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    async with mock_client(refuse) as client:
        transport = PollingTransport("http://test", http_client=client)
        with pytest.raises(TransportLost):
            await transport.create_room()


async def test_bare_server_error_is_transport_lost():
    async with mock_client(lambda request: httpx.Response(502, text="bad gateway")) as client:
        transport = PollingTransport("http://test", http_client=client)
        with pytest.raises(TransportLost):
            await transport.join_room("K7QX2M")


async def test_unknown_error_code_is_generic():
    body = {"error": "Teapot", "detail": "short and stout"}
    async with mock_client(lambda request: httpx.Response(418, json=body)) as client:
        transport = PollingTransport("http://test", http_client=client)
        with pytest.raises(SignalingError) as excinfo:
            await transport.join_room("K7QX2M")
    assert excinfo.value.message == "short and stout"


async def test_failing_poll_sets_lost():
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    async with mock_client(refuse) as client:
        transport = PollingTransport("http://test", http_client=client, poll_interval=0.01)
        transport.room_code, transport.seat = "K7QX2M", 2
        await transport.connect()
        await asyncio.wait_for(transport.lost.wait(), timeout=1)
        await transport.disconnect()


async def test_reconnect_clears_lost(make_transport):
    transport = make_transport()
    await transport.create_room()
    transport.lost.set()

    await transport.reconnect()

    assert not transport.lost.is_set()
    assert transport._poll_task is not None
    await transport.disconnect()


async def test_websocket_url_follows_base_url():
    transport = WebSocketTransport("https://relay.example.com/")
    transport.room_code, transport.seat, transport.peer_token = "K7QX2M", 2, "abc"

    assert transport.ws_url == "wss://relay.example.com/rooms/K7QX2M/ws?seat=2&token=abc"
    await transport.close()


async def test_websocket_relay_without_socket():
    transport = WebSocketTransport("http://test")

    with pytest.raises(TransportLost):
        await transport.relay(1, {"type": "chat"})
    await transport.close()
