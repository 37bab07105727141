"""Client side of the signaling surface.

Room operations (create, join, rejoin, leave) are plain HTTP requests. How
mailbox messages reach the peer is the transport's business:
``PollingTransport`` polls on a fixed interval, ``WebSocketTransport`` keeps a
socket open and lets the server push. Either way callers read ``inbox`` and
call ``relay``; ``lost`` is set when delivery breaks.
"""
import asyncio
import json
from typing import Optional

import httpx
import websockets
from websockets.exceptions import ConnectionClosed, InvalidHandshake

from constants import POLL_INTERVAL, REQUEST_TIMEOUT, SIGNALING_URL
from errors import SignalingError, Timeout, TransportLost, error_from_code
from logging_config import get_logger

logger = get_logger(__name__)


class SignalingTransport:
    def __init__(
        self,
        base_url: str = SIGNALING_URL,
        http_client: Optional[httpx.AsyncClient] = None,
        request_timeout: float = REQUEST_TIMEOUT,
    ):
        self.base_url = base_url.rstrip("/")
        self.http = http_client or httpx.AsyncClient(base_url=self.base_url)
        self._owns_http = http_client is None
        self.request_timeout = request_timeout

        self.inbox: asyncio.Queue = asyncio.Queue()
        self.lost = asyncio.Event()

        self.room_code: Optional[str] = None
        self.seat: Optional[int] = None
        self.peer_token: Optional[str] = None

    async def _request(self, method: str, path: str, **kwargs) -> dict:
        try:
            response = await asyncio.wait_for(
                self.http.request(method, path, **kwargs), timeout=self.request_timeout
            )
        except (asyncio.TimeoutError, httpx.TimeoutException):
            raise Timeout(f"{method} {path} timed out after {self.request_timeout}s")
        except httpx.TransportError as e:
            raise TransportLost(f"{method} {path} failed: {e}")

        if response.is_error:
            try:
                body = response.json()
            except ValueError:
                body = {}
            if isinstance(body, dict) and body.get("error"):
                raise error_from_code(body["error"], body.get("detail"))
            if response.status_code >= 500:
                raise TransportLost(f"{method} {path} answered {response.status_code}")
            raise SignalingError(f"{method} {path} answered {response.status_code}")
        return response.json()

    def _seat_taken(self, room_code: str, seat: int, peer_token: str) -> None:
        self.room_code = room_code
        self.seat = seat
        self.peer_token = peer_token

    async def create_room(self, code: Optional[str] = None) -> dict:
        result = await self._request("POST", "/rooms", json={"code": code})
        self._seat_taken(result["room_code"], result["seat"], result["peer_token"])
        logger.info(f"Created room {self.room_code}")
        return result

    async def join_room(self, code: str) -> dict:
        code = code.strip().upper()
        result = await self._request("POST", f"/rooms/{code}/join")
        self._seat_taken(code, result["seat"], result["peer_token"])
        logger.info(f"Joined room {code} as seat {self.seat}")
        return result

    async def rejoin_room(self) -> dict:
        return await self._request(
            "POST",
            f"/rooms/{self.room_code}/rejoin",
            json={"seat": self.seat, "peer_token": self.peer_token},
        )

    async def leave_room(self) -> None:
        if not self.room_code:
            return
        await self._request("POST", f"/rooms/{self.room_code}/leave", json={"seat": self.seat})
        logger.info(f"Left room {self.room_code}")

    async def fetch_rom(self, name: str) -> Optional[bytes]:
        try:
            response = await asyncio.wait_for(self.http.get(f"/api/rom/{name}"), timeout=self.request_timeout)
        except (asyncio.TimeoutError, httpx.TimeoutException):
            raise Timeout(f"Fetching ROM {name} timed out")
        except httpx.TransportError as e:
            raise TransportLost(f"Fetching ROM {name} failed: {e}")
        if response.status_code == 404:
            return None
        response.raise_for_status()
        return response.content

    async def connect(self) -> None:
        raise NotImplementedError

    async def disconnect(self) -> None:
        raise NotImplementedError

    async def relay(self, to_seat: int, message: dict) -> None:
        raise NotImplementedError

    async def reconnect(self) -> None:
        await self.disconnect()
        self.lost.clear()
        await self.connect()

    async def close(self) -> None:
        await self.disconnect()
        if self._owns_http:
            await self.http.aclose()


class PollingTransport(SignalingTransport):
    def __init__(self, *args, poll_interval: float = POLL_INTERVAL, **kwargs):
        super().__init__(*args, **kwargs)
        self.poll_interval = poll_interval
        self._poll_task: Optional[asyncio.Task] = None

    async def connect(self) -> None:
        if self._poll_task and not self._poll_task.done():
            return
        self._poll_task = asyncio.create_task(self._poll_loop())
        logger.debug(f"Polling {self.room_code} seat {self.seat} every {self.poll_interval}s")

    async def _poll_loop(self) -> None:
        try:
            while True:
                result = await self._request("GET", f"/rooms/{self.room_code}/poll", params={"seat": self.seat})
                for message in result.get("messages", []):
                    await self.inbox.put(message)
                await asyncio.sleep(self.poll_interval)
        except SignalingError as e:
            logger.warning(f"Polling for {self.room_code} seat {self.seat} lost: {e}")
            self.lost.set()

    async def disconnect(self) -> None:
        if self._poll_task:
            self._poll_task.cancel()
            try:
                await self._poll_task
            except asyncio.CancelledError:
                pass
            self._poll_task = None

    async def relay(self, to_seat: int, message: dict) -> None:
        await self._request(
            "POST",
            f"/rooms/{self.room_code}/relay",
            json={"from_seat": self.seat, "to_seat": to_seat, "message": message},
        )


class WebSocketTransport(SignalingTransport):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._socket = None
        self._reader_task: Optional[asyncio.Task] = None

    @property
    def ws_url(self) -> str:
        ws_base = self.base_url.replace("http://", "ws://").replace("https://", "wss://")
        return f"{ws_base}/rooms/{self.room_code}/ws?seat={self.seat}&token={self.peer_token}"

    async def connect(self) -> None:
        try:
            self._socket = await asyncio.wait_for(websockets.connect(self.ws_url), timeout=self.request_timeout)
        except asyncio.TimeoutError:
            raise Timeout(f"Opening signaling socket for {self.room_code} timed out")
        except (OSError, InvalidHandshake) as e:
            raise TransportLost(f"Opening signaling socket for {self.room_code} failed: {e}")
        self._reader_task = asyncio.create_task(self._read_loop(self._socket))
        logger.info(f"Signaling socket open for {self.room_code} seat {self.seat}")

    async def _read_loop(self, socket) -> None:
        try:
            async for raw in socket:
                try:
                    await self.inbox.put(json.loads(raw))
                except json.JSONDecodeError:
                    logger.warning("Ignoring non-JSON frame on signaling socket")
        except ConnectionClosed as e:
            logger.warning(f"Signaling socket closed: {e}")
        self.lost.set()

    async def disconnect(self) -> None:
        if self._reader_task:
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
            self._reader_task = None
        if self._socket is not None:
            await self._socket.close()
            self._socket = None

    async def relay(self, to_seat: int, message: dict) -> None:
        if self._socket is None:
            raise TransportLost("Signaling socket is not open")
        try:
            await self._socket.send(json.dumps({"to_seat": to_seat, "message": message}))
        except ConnectionClosed as e:
            self.lost.set()
            raise TransportLost(f"Signaling socket closed: {e}")
