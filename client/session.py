"""One peer's view of a room: signaling, pairings, the game protocol and the mirror.

A ``PeerSession`` is used as an async context manager. Inside it runs one task
per loop (signal dispatch, reconnect supervision, latency pings) and every
task is cancelled when the block exits. Anything the application needs to
react to is put on ``events``::

    async with PeerSession(PollingTransport(url)) as session:
        await session.join_room("K7QX2M")
        while True:
            event = await session.events.get()
            ...

Data channel messages are JSON objects with a ``type``: ``input``,
``input-broadcast``, ``game-start``, ``frame``, ``audio``, ``pause``,
``reset``, ``chat``, ``ping``, ``pong``.
"""
import asyncio
import io
import json
import zipfile
from typing import Any, Callable, Dict, List, Optional, Set

from client.codec import AudioCodec, FrameDecoder, FrameEncoder, LatencyMonitor, now_ms
from client.engine import GameEngine
from client.negotiation import NegotiationOrchestrator, PairingState
from client.reconnect import ReconnectionController
from constants import HOST_SEAT, PING_INTERVAL
from errors import RoomNotFound, SignalingError, TransportLost
from logging_config import get_logger
from schemas.signaling import NEGOTIATION_TYPES

logger = get_logger(__name__)

AUDIO_CHUNK_SAMPLES = 1024
# Never forwarded by the host: point-to-point or host-produced only
HOST_ONLY_TYPES = ("frame", "audio", "ping", "pong", "pause", "reset")
# Tried in order when a ROM arrives as a ZIP archive
ROM_EXTENSIONS = (".nes", ".unf", ".unif", ".fds")


def unpack_rom(data: bytes) -> bytes:
    """Return the ROM image itself, pulling it out of a ZIP archive if needed."""
    if data[:2] != b"PK":
        return data
    with zipfile.ZipFile(io.BytesIO(data)) as archive:
        names = [info.filename for info in archive.infolist() if not info.is_dir()]
        for ext in ROM_EXTENSIONS:
            for name in names:
                if name.lower().endswith(ext):
                    return archive.read(name)
        if names:
            return archive.read(names[0])
    raise ValueError("ZIP archive holds no ROM")


class PeerSession:
    def __init__(
        self,
        transport,
        engine: Optional[GameEngine] = None,
        peer_factory: Optional[Callable[[], Any]] = None,
        ping_interval: float = PING_INTERVAL,
        clock: Callable[[], float] = now_ms,
        sleep=asyncio.sleep,
    ):
        self.transport = transport
        self.engine = engine
        self.peer_factory = peer_factory
        self.ping_interval = ping_interval
        self.sleep = sleep

        self.room_code: Optional[str] = None
        self.my_seat = 0
        self.is_host = False
        self.seats: List[int] = []

        self.events: asyncio.Queue = asyncio.Queue()
        self.channels: Dict[int, Any] = {}
        self.latency = LatencyMonitor(clock)
        self.frame_encoder = FrameEncoder()
        self.frame_decoder = FrameDecoder()
        self.input_states: Dict[int, Dict[str, bool]] = {}
        self.paused = False
        self._audio_left: List[float] = []
        self._audio_right: List[float] = []

        self.orchestrator: Optional[NegotiationOrchestrator] = None
        self.reconnector = ReconnectionController(transport, on_reconnected=self._on_reconnected, sleep=sleep)
        self._tasks: Set[asyncio.Task] = set()

    async def __aenter__(self) -> "PeerSession":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.leave()

    # Room membership

    async def create_room(self, code: Optional[str] = None) -> str:
        result = await self.transport.create_room(code)
        self._seated(result["room_code"], result["seat"], [HOST_SEAT])
        await self._open()
        return self.room_code

    async def join_room(self, code: str) -> dict:
        result = await self.transport.join_room(code)
        self._seated(self.transport.room_code, result["seat"], result["seats"])
        await self._open()
        return result

    def _seated(self, room_code: str, seat: int, seats: List[int]) -> None:
        self.room_code = room_code
        self.my_seat = seat
        self.is_host = seat == HOST_SEAT
        self.seats = list(seats)
        self.orchestrator = NegotiationOrchestrator(
            my_seat=seat,
            relay=self.transport.relay,
            peer_factory=self.peer_factory,
            on_channel_open=self._channel_opened,
            on_channel_message=self._channel_message,
            on_channel_close=self._channel_closed,
            on_state_change=self._pairing_changed,
        )

    async def _open(self) -> None:
        await self.transport.connect()
        self._spawn(self._signal_loop(), "signal")
        self._spawn(self._supervise(), "reconnect")
        self._spawn(self._ping_loop(), "ping")

    def _spawn(self, coro, name: str) -> None:
        task = asyncio.create_task(coro, name=f"{name}:{self.room_code}:{self.my_seat}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def leave(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if self.orchestrator:
            await self.orchestrator.close_all()
        self.channels.clear()
        if self.room_code:
            try:
                await self.transport.leave_room()
            except SignalingError as e:
                logger.warning(f"Leave for room {self.room_code} not delivered: {e}")
        await self.transport.close()
        self.room_code = None

    # Background loops

    async def _signal_loop(self) -> None:
        while True:
            message = await self.transport.inbox.get()
            try:
                await self._dispatch_signal(message)
            except Exception as e:
                logger.error(f"Error handling {message.get('type')} signal: {e}", exc_info=True)

    async def _dispatch_signal(self, message: dict) -> None:
        kind = message.get("type")
        if kind in NEGOTIATION_TYPES:
            await self.orchestrator.handle(message)
        elif kind == "player-joined":
            seat = message.get("seat")
            if seat not in self.seats:
                self.seats.append(seat)
            await self.events.put({"type": "player-joined", "seat": seat, "rejoined": bool(message.get("rejoined"))})
            if self.is_host:
                await self.orchestrator.start(seat)
        elif kind == "player-left":
            seat = message.get("seat")
            if seat in self.seats:
                self.seats.remove(seat)
            await self.orchestrator.close(seat)
            self._forget_seat(seat)
            await self.events.put({"type": "player-left", "seat": seat})
        elif kind == "room-closed":
            logger.info(f"Room {self.room_code} closed by host")
            await self.orchestrator.close_all()
            await self.events.put({"type": "room-closed"})
        else:
            await self.events.put(message)

    async def _supervise(self) -> None:
        try:
            await self.reconnector.supervise()
        except TransportLost as e:
            await self.events.put({"type": "disconnected", "reason": str(e)})
        except RoomNotFound:
            await self.events.put({"type": "room-closed"})
        except SignalingError as e:
            logger.warning(f"Rejoin refused: {e}")
            await self.events.put({"type": "disconnected", "reason": str(e)})

    async def _on_reconnected(self, rejoined: dict) -> None:
        self.seats = list(rejoined.get("seats", self.seats))
        await self.events.put({"type": "reconnected", "seats": self.seats})
        if self.is_host:
            for seat in self.seats:
                if seat != HOST_SEAT and self.orchestrator.state(seat) != PairingState.CONNECTED:
                    await self.orchestrator.start(seat)

    async def _ping_loop(self) -> None:
        while True:
            await self.sleep(self.ping_interval)
            self.ping_all()

    def ping_all(self) -> None:
        ping = self.latency.ping()
        for seat in list(self.channels):
            self._send_to(seat, ping)

    # Data channel

    def _channel_opened(self, seat: int, channel) -> None:
        self.channels[seat] = channel
        if self.is_host:
            # the newcomer has no previous frame to apply diffs to
            self.frame_encoder.reset()
        self.events.put_nowait({"type": "connected", "seat": seat})

    def _channel_closed(self, seat: int) -> None:
        self._forget_seat(seat)

    def _forget_seat(self, seat: int) -> None:
        self.channels.pop(seat, None)
        self.input_states.pop(seat, None)
        if self.latency.get(seat) is not None:
            self.latency.clear(seat)
            self.events.put_nowait({"type": "latency-update", "seat": seat, "latency": None})

    def _pairing_changed(self, seat: int, state: PairingState) -> None:
        self.events.put_nowait({"type": "pairing-state", "seat": seat, "state": state.value})

    def _channel_message(self, seat: int, data) -> None:
        try:
            message = json.loads(data)
        except (TypeError, ValueError):
            logger.warning(f"Ignoring non-JSON data from seat {seat}")
            return
        if not isinstance(message, dict):
            return
        message.setdefault("from_seat", seat)
        self.handle_game_message(seat, message)

    def handle_game_message(self, seat: int, message: dict) -> None:
        kind = message.get("type")
        if kind == "ping":
            self._send_to(seat, LatencyMonitor.pong(message))
        elif kind == "pong":
            latency = self.latency.record_pong(seat, message.get("timestamp"))
            if latency is not None:
                self.events.put_nowait({"type": "latency-update", "seat": seat, "latency": latency})
        elif kind == "frame":
            if not self.is_host:
                frame = self.frame_decoder.decode(message.get("frameData"))
                if frame is not None:
                    self.events.put_nowait({"type": "frame", "frame": frame})
        elif kind == "audio":
            if not self.is_host:
                self._receive_audio(message)
        elif kind in ("pause", "reset"):
            if self.is_host:
                logger.debug(f"Ignoring {kind} from seat {seat}")
            else:
                self._apply_control(message)
        elif kind in ("input", "input-broadcast"):
            player = message.get("player", message.get("from_seat", seat))
            button = message.get("button")
            pressed = bool(message.get("pressed"))
            self._update_input_state(player, button, pressed)
            if kind == "input" and self.is_host and self.engine is not None:
                self._press(player, button, pressed)
        else:
            self.events.put_nowait(message)

        if self.is_host and kind not in HOST_ONLY_TYPES:
            self.broadcast(message, exclude=seat)

    def _apply_control(self, message: dict) -> None:
        if message["type"] == "pause":
            self.paused = bool(message.get("paused"))
            self.events.put_nowait({"type": "pause", "paused": self.paused})
        else:
            self.frame_decoder.reset()
            self.events.put_nowait({"type": "reset"})

    def _update_input_state(self, player: int, button: str, pressed: bool) -> None:
        self.input_states.setdefault(player, {})[button] = pressed
        self.events.put_nowait({"type": "input-state", "seat": player, "button": button, "pressed": pressed})

    def _press(self, player: int, button: str, pressed: bool) -> None:
        if pressed:
            self.engine.button_down(player - 1, button)
        else:
            self.engine.button_up(player - 1, button)

    def _receive_audio(self, message: dict) -> None:
        try:
            left = AudioCodec.decode_b64(message["left"])
            right = AudioCodec.decode_b64(message["right"])
        except (KeyError, TypeError, ValueError) as e:
            logger.debug(f"Dropping malformed audio chunk: {e}")
            return
        self.events.put_nowait({"type": "audio", "left": left, "right": right})

    def _send_to(self, seat: int, message: dict) -> bool:
        channel = self.channels.get(seat)
        if channel is None or getattr(channel, "readyState", None) != "open":
            return False
        try:
            channel.send(json.dumps(message))
            return True
        except Exception as e:
            logger.warning(f"Send to seat {seat} failed: {e}")
            return False

    def send(self, message: dict) -> None:
        """Host: to every guest. Guest: to the host."""
        if self.is_host:
            self.broadcast(message)
        else:
            self._send_to(HOST_SEAT, message)

    def broadcast(self, message: dict, exclude: Optional[int] = None) -> int:
        sent = 0
        for seat in list(self.channels):
            if seat != exclude and self._send_to(seat, message):
                sent += 1
        return sent

    def get_latency(self, seat: int) -> Optional[int]:
        return self.latency.get(seat)

    # Host side mirroring and game control

    def attach_engine(self, engine: GameEngine) -> None:
        self.engine = engine
        if self.is_host:
            engine.on_frame = self.send_frame
            engine.on_audio_sample = self.push_audio_sample

    def send_frame(self, frame) -> None:
        if not self.is_host or not self.channels:
            return
        self.broadcast({"type": "frame", "frameData": self.frame_encoder.encode(frame)})

    def push_audio_sample(self, left: float, right: float) -> None:
        self._audio_left.append(left)
        self._audio_right.append(right)
        if len(self._audio_left) >= AUDIO_CHUNK_SAMPLES:
            chunk = {
                "type": "audio",
                "left": AudioCodec.encode_b64(self._audio_left),
                "right": AudioCodec.encode_b64(self._audio_right),
            }
            self._audio_left, self._audio_right = [], []
            if self.is_host:
                self.broadcast(chunk)

    async def start_game(self, rom_name: str) -> bool:
        if not self.is_host or self.engine is None:
            return False
        data = await self.transport.fetch_rom(rom_name)
        if data is None:
            logger.warning(f"ROM {rom_name} not found")
            return False
        try:
            data = unpack_rom(data)
        except (zipfile.BadZipFile, ValueError) as e:
            logger.warning(f"ROM {rom_name} is an unusable archive: {e}")
            return False
        if not self.engine.load_image(data):
            logger.warning(f"Engine rejected ROM {rom_name}")
            return False
        self.frame_encoder.reset()
        self.send({"type": "game-start", "game_name": rom_name})
        logger.info(f"Started {rom_name} in room {self.room_code}")
        return True

    def reset_game(self) -> None:
        """Host only: restart the running game and resend a full frame next."""
        if not self.is_host:
            return
        if self.engine is not None:
            self.engine.reset()
        self.frame_encoder.reset()
        self.send({"type": "reset"})
        logger.info(f"Game reset in room {self.room_code}")

    def toggle_pause(self) -> bool:
        if not self.is_host:
            return self.paused
        self.paused = not self.paused
        if self.engine is not None:
            self.engine.paused = self.paused
        self.send({"type": "pause", "paused": self.paused})
        return self.paused

    def press_button(self, button: str, pressed: bool) -> None:
        """Local player input: applied directly on the host, sent to the host otherwise."""
        self._update_input_state(self.my_seat, button, pressed)
        if self.is_host:
            if self.engine is not None:
                self._press(self.my_seat, button, pressed)
            self.broadcast({"type": "input-broadcast", "player": self.my_seat, "button": button, "pressed": pressed})
        else:
            self._send_to(HOST_SEAT, {"type": "input", "player": self.my_seat, "button": button, "pressed": pressed})
