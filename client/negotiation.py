"""Offer/answer/candidate exchange for every (host, guest) pairing.

The host is always the offerer; guests only answer, so two sides never
offer at once. Each pairing is one ``Pairing`` object moving through
``PairingState``::

    IDLE -> OFFER_SENT -> ANSWER_RECEIVED -> CONNECTED
      \\________________________________________/-> FAILED | DISCONNECTED

On the answering side ANSWER_RECEIVED means both descriptions are in place.
Messages arrive through a best-effort mailbox, so late or duplicate ones are
expected: they are logged and dropped, never raised.

Every offer carries an ``attempt`` number that increases each time the host
restarts a pairing. Answers and candidates from any other attempt are stale.
"""
import asyncio
import inspect
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp

from constants import ICE_SERVERS
from errors import CandidateRejected, NegotiationStale
from logging_config import get_logger

logger = get_logger(__name__)

CHANNEL_LABEL = "gameData"

Relay = Callable[[int, dict], Awaitable[None]]


class PairingState(str, Enum):
    IDLE = "idle"
    OFFER_SENT = "offer-sent"
    ANSWER_RECEIVED = "answer-received"
    CONNECTED = "connected"
    FAILED = "failed"
    DISCONNECTED = "disconnected"


TERMINAL_STATES = (PairingState.FAILED, PairingState.DISCONNECTED)


@dataclass
class Pairing:
    remote_seat: int
    offerer: bool
    pc: Any
    attempt: int = 0
    state: PairingState = PairingState.IDLE
    channel: Any = None
    remote_description_set: bool = False
    remote_sdp: str = ""

    @property
    def finished(self) -> bool:
        return self.state in TERMINAL_STATES


def default_peer_factory(ice_servers: List[str] = ICE_SERVERS) -> Callable[[], RTCPeerConnection]:
    def factory() -> RTCPeerConnection:
        config = RTCConfiguration(iceServers=[RTCIceServer(urls=url) for url in ice_servers])
        return RTCPeerConnection(configuration=config)
    return factory


def local_candidates(sdp: str) -> List[dict]:
    """Split the ICE candidates out of a local description, one dict per candidate."""
    sections: List[List[str]] = []
    for line in sdp.splitlines():
        if line.startswith("m="):
            sections.append([])
        elif sections:
            sections[-1].append(line)

    candidates = []
    for index, lines in enumerate(sections):
        mid = next((line[len("a=mid:"):] for line in lines if line.startswith("a=mid:")), None)
        for line in lines:
            if line.startswith("a=candidate:"):
                candidates.append({"candidate": line[len("a="):], "sdp_mid": mid, "sdp_mline_index": index})
    return candidates


async def _maybe_await(result):
    if inspect.isawaitable(result):
        await result


class NegotiationOrchestrator:
    def __init__(
        self,
        my_seat: int,
        relay: Relay,
        peer_factory: Optional[Callable[[], Any]] = None,
        on_channel_open: Optional[Callable[[int, Any], Any]] = None,
        on_channel_message: Optional[Callable[[int, Any], Any]] = None,
        on_channel_close: Optional[Callable[[int], Any]] = None,
        on_state_change: Optional[Callable[[int, PairingState], Any]] = None,
    ):
        self.my_seat = my_seat
        self.relay = relay
        self.peer_factory = peer_factory or default_peer_factory()
        self.on_channel_open = on_channel_open
        self.on_channel_message = on_channel_message
        self.on_channel_close = on_channel_close
        self.on_state_change = on_state_change
        self.pairings: Dict[int, Pairing] = {}
        self._attempts: Dict[int, int] = {}

    def state(self, remote_seat: int) -> PairingState:
        pairing = self.pairings.get(remote_seat)
        return pairing.state if pairing else PairingState.IDLE

    def _set_state(self, pairing: Pairing, state: PairingState) -> None:
        if pairing.state == state:
            return
        logger.info(f"Pairing {self.my_seat}<->{pairing.remote_seat}: {pairing.state.value} -> {state.value}")
        pairing.state = state
        if self.on_state_change:
            self.on_state_change(pairing.remote_seat, state)

    def _is_current(self, pairing: Pairing) -> bool:
        return self.pairings.get(pairing.remote_seat) is pairing

    # Offerer side

    async def start(self, remote_seat: int) -> None:
        """Open (or restart) the pairing with ``remote_seat`` by sending an offer."""
        existing = self.pairings.get(remote_seat)
        if existing and existing.state == PairingState.CONNECTED:
            logger.debug(f"Pairing with seat {remote_seat} already connected")
            return
        if existing:
            await self._shutdown(existing, PairingState.DISCONNECTED)

        attempt = self._attempts.get(remote_seat, 0) + 1
        self._attempts[remote_seat] = attempt
        pairing = Pairing(remote_seat=remote_seat, offerer=True, pc=self.peer_factory(), attempt=attempt)
        self.pairings[remote_seat] = pairing
        self._watch(pairing)
        self._attach_channel(pairing, pairing.pc.createDataChannel(CHANNEL_LABEL, ordered=True))

        try:
            offer = await pairing.pc.createOffer()
            await pairing.pc.setLocalDescription(offer)
            self._set_state(pairing, PairingState.OFFER_SENT)
            await self.relay(remote_seat, {
                "type": "offer",
                "attempt": attempt,
                "sdp": pairing.pc.localDescription.sdp,
            })
            await self._relay_candidates(pairing)
        except Exception as e:
            logger.error(f"Offer to seat {remote_seat} failed: {e}", exc_info=True)
            await self._shutdown(pairing, PairingState.FAILED)

    # Inbound signaling

    async def handle(self, message: dict) -> None:
        kind = message.get("type")
        from_seat = message.get("from_seat")
        if kind == "offer":
            await self._handle_offer(from_seat, message)
        elif kind == "answer":
            await self._handle_answer(from_seat, message)
        elif kind == "ice-candidate":
            await self._handle_candidate(from_seat, message)
        else:
            logger.debug(f"Orchestrator ignoring {kind} message")

    def _stale(self, from_seat, message: dict, reason: str) -> None:
        error = NegotiationStale(f"{message.get('type')} from seat {from_seat} (attempt {message.get('attempt')}): {reason}")
        logger.warning(f"{error.code}: {error.message}")

    async def _handle_offer(self, from_seat: int, message: dict) -> None:
        attempt = message.get("attempt", 0)
        pairing = self.pairings.get(from_seat)
        if pairing and not pairing.finished:
            if attempt <= pairing.attempt:
                self._stale(from_seat, message, f"pairing is {pairing.state.value}")
                return
            logger.info(f"Seat {from_seat} restarted negotiation (attempt {attempt})")
        if pairing:
            await self._shutdown(pairing, PairingState.DISCONNECTED)

        pairing = Pairing(remote_seat=from_seat, offerer=False, pc=self.peer_factory(), attempt=attempt)
        self.pairings[from_seat] = pairing
        self._watch(pairing)
        pairing.pc.on("datachannel", lambda channel: self._attach_channel(pairing, channel))

        try:
            await pairing.pc.setRemoteDescription(RTCSessionDescription(sdp=message["sdp"], type="offer"))
            pairing.remote_description_set = True
            pairing.remote_sdp = message["sdp"]
            answer = await pairing.pc.createAnswer()
            await pairing.pc.setLocalDescription(answer)
            self._set_state(pairing, PairingState.ANSWER_RECEIVED)
            await self.relay(from_seat, {
                "type": "answer",
                "attempt": attempt,
                "sdp": pairing.pc.localDescription.sdp,
            })
            await self._relay_candidates(pairing)
        except Exception as e:
            logger.error(f"Answering seat {from_seat} failed: {e}", exc_info=True)
            await self._shutdown(pairing, PairingState.FAILED)

    async def _handle_answer(self, from_seat: int, message: dict) -> None:
        pairing = self.pairings.get(from_seat)
        if pairing is None or pairing.state != PairingState.OFFER_SENT:
            self._stale(from_seat, message, f"pairing is {self.state(from_seat).value}")
            return
        if message.get("attempt", 0) != pairing.attempt:
            self._stale(from_seat, message, f"current attempt is {pairing.attempt}")
            return
        try:
            await pairing.pc.setRemoteDescription(RTCSessionDescription(sdp=message["sdp"], type="answer"))
        except Exception as e:
            logger.error(f"Applying answer from seat {from_seat} failed: {e}", exc_info=True)
            await self._shutdown(pairing, PairingState.FAILED)
            return
        pairing.remote_sdp = message["sdp"]
        pairing.remote_description_set = True
        self._set_state(pairing, PairingState.ANSWER_RECEIVED)

    async def _handle_candidate(self, from_seat: int, message: dict) -> None:
        pairing = self.pairings.get(from_seat)
        reason = None
        if pairing is None or pairing.finished:
            reason = "no active pairing"
        elif message.get("attempt", 0) != pairing.attempt:
            reason = f"attempt {message.get('attempt')} is not current"
        elif not pairing.remote_description_set:
            reason = "remote description not set yet"
        if reason:
            self._rejected(from_seat, reason)
            return

        line = message.get("candidate") or ""
        if line and f"a={line}" in pairing.remote_sdp.splitlines():
            logger.debug(f"Candidate from seat {from_seat} already in its description")
            return

        try:
            candidate = candidate_from_sdp(line.split(":", 1)[1] if line.startswith("candidate:") else line)
            candidate.sdpMid = message.get("sdp_mid")
            candidate.sdpMLineIndex = message.get("sdp_mline_index")
            await pairing.pc.addIceCandidate(candidate)
        except Exception as e:
            self._rejected(from_seat, str(e))

    def _rejected(self, from_seat, reason: str) -> None:
        error = CandidateRejected(f"candidate from seat {from_seat}: {reason}")
        logger.warning(f"{error.code}: {error.message}")

    async def _relay_candidates(self, pairing: Pairing) -> None:
        for candidate in local_candidates(pairing.pc.localDescription.sdp):
            if not self._is_current(pairing):
                return
            await self.relay(pairing.remote_seat, {"type": "ice-candidate", "attempt": pairing.attempt, **candidate})

    # Peer connection and channel events

    def _watch(self, pairing: Pairing) -> None:
        async def on_connection_state():
            if not self._is_current(pairing) or pairing.finished:
                return
            state = pairing.pc.connectionState
            if state == "connected":
                self._set_state(pairing, PairingState.CONNECTED)
            elif state == "failed":
                await self._shutdown(pairing, PairingState.FAILED)
            elif state == "closed":
                await self._shutdown(pairing, PairingState.DISCONNECTED)

        pairing.pc.on("connectionstatechange", on_connection_state)

    def _attach_channel(self, pairing: Pairing, channel) -> None:
        pairing.channel = channel
        seat = pairing.remote_seat

        def opened():
            if not self._is_current(pairing):
                return
            logger.info(f"Data channel with seat {seat} open")
            self._set_state(pairing, PairingState.CONNECTED)
            if self.on_channel_open:
                self.on_channel_open(seat, channel)

        def received(data):
            if self.on_channel_message and self._is_current(pairing):
                self.on_channel_message(seat, data)

        def closed():
            logger.info(f"Data channel with seat {seat} closed")
            if self.on_channel_close and self._is_current(pairing):
                self.on_channel_close(seat)

        channel.on("message", received)
        channel.on("close", closed)
        if getattr(channel, "readyState", None) == "open":
            opened()
        else:
            channel.on("open", opened)

    async def _shutdown(self, pairing: Pairing, state: PairingState) -> None:
        if pairing.finished:
            return
        self._set_state(pairing, state)
        if pairing.channel is not None:
            try:
                pairing.channel.close()
            except Exception as e:
                logger.debug(f"Closing channel to seat {pairing.remote_seat}: {e}")
        try:
            await _maybe_await(pairing.pc.close())
        except Exception as e:
            logger.debug(f"Closing peer connection to seat {pairing.remote_seat}: {e}")

    async def close(self, remote_seat: int, state: PairingState = PairingState.DISCONNECTED) -> None:
        pairing = self.pairings.get(remote_seat)
        if pairing:
            await self._shutdown(pairing, state)

    async def close_all(self) -> None:
        await asyncio.gather(*(self._shutdown(p, PairingState.DISCONNECTED) for p in list(self.pairings.values())))
