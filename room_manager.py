"""Room lifecycle: create, join, rejoin and leave, plus the system messages they emit.

A room moves NONE -> OPEN -> CLOSED. Only OPEN rooms (a live record in the
store) accept joins; CLOSED is reached by the host leaving or the record's TTL
running out, after which the code is free again.

Seat 1 is always the host. Guests take the lowest free seat among 2, 3, 4.
"""
import random
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from constants import HOST_SEAT, MAX_SEATS, ROOM_CODE_ALPHABET, ROOM_CODE_LENGTH, ROOM_TTL_SECONDS
from errors import InvalidRoomCode, RoomExists, RoomFull, RoomNotFound
from logging_config import get_logger

logger = get_logger(__name__)

SYSTEM_SEAT = 0
GUEST_SEATS = tuple(range(HOST_SEAT + 1, MAX_SEATS + 1))
CREATE_ATTEMPTS = 10


def generate_room_code(length: int = ROOM_CODE_LENGTH) -> str:
    return "".join(random.choices(ROOM_CODE_ALPHABET, k=length))


def normalize_room_code(code: str) -> str:
    normalized = (code or "").strip().upper()
    if len(normalized) != ROOM_CODE_LENGTH or any(c not in ROOM_CODE_ALPHABET for c in normalized):
        raise InvalidRoomCode(f"Invalid room code {code!r}")
    return normalized


def system_message(message_type: str, to_seat: int, **payload) -> dict:
    return {
        "type": message_type,
        "from_seat": SYSTEM_SEAT,
        "to_seat": to_seat,
        "timestamp": datetime.now().isoformat(),
        **payload,
    }


@dataclass
class Room:
    code: str
    host_token: str
    seats: List[int] = field(default_factory=lambda: [HOST_SEAT])
    seat_tokens: Dict[int, str] = field(default_factory=dict)
    created_at: str = field(default_factory=lambda: datetime.now().isoformat())

    @classmethod
    def from_record(cls, record: dict) -> "Room":
        return cls(
            code=record["code"],
            host_token=record["host_token"],
            seats=sorted(int(s) for s in record.get("seats", [])),
            seat_tokens={int(s): t for s, t in record.get("seat_tokens", {}).items()},
            created_at=record.get("created_at", ""),
        )

    def to_record(self) -> dict:
        return {
            "code": self.code,
            "host_token": self.host_token,
            "seats": sorted(self.seats),
            "seat_tokens": {str(s): t for s, t in self.seat_tokens.items()},
            "created_at": self.created_at,
        }

    def free_seat(self) -> Optional[int]:
        for seat in GUEST_SEATS:
            if seat not in self.seats:
                return seat
        return None

    @property
    def is_full(self) -> bool:
        return self.free_seat() is None


class RoomManager:
    def __init__(self, store, room_ttl: int = ROOM_TTL_SECONDS):
        self.store = store
        self.room_ttl = room_ttl

    def create_room(self, code: Optional[str] = None) -> dict:
        if code is not None:
            candidates = [normalize_room_code(code)]
        else:
            candidates = [generate_room_code() for _ in range(CREATE_ATTEMPTS)]

        for attempt, candidate in enumerate(candidates, start=1):
            host_token = uuid.uuid4().hex
            room = Room(code=candidate, host_token=host_token, seat_tokens={HOST_SEAT: host_token})
            try:
                self.store.create_room(candidate, room.to_record(), ttl=self.room_ttl)
            except RoomExists:
                if code is not None or attempt == len(candidates):
                    logger.warning(f"Create room failed: code {candidate} is taken")
                    raise
                logger.debug(f"Generated code {candidate} collided, retrying")
                continue
            # A stale mailbox from a previous room with this code must not leak in
            self.store.purge_mailbox(candidate, HOST_SEAT)
            logger.info(f"Room {candidate} created")
            return {"room_code": candidate, "peer_token": host_token, "seat": HOST_SEAT}

    def get_room(self, code: str) -> Room:
        record = self.store.get_room(normalize_room_code(code))
        if not record:
            raise RoomNotFound(f"Room {code} not found")
        return Room.from_record(record)

    def join_room(self, code: str) -> dict:
        code = normalize_room_code(code)
        peer_token = uuid.uuid4().hex
        claimed = {}

        def take_seat(record: dict) -> dict:
            room = Room.from_record(record)
            seat = room.free_seat()
            if seat is None:
                raise RoomFull(f"Room {code} is full")
            room.seats.append(seat)
            room.seat_tokens[seat] = peer_token
            claimed["seat"] = seat
            claimed["seats"] = sorted(room.seats)
            return room.to_record()

        try:
            updated = self.store.update_room(code, take_seat, ttl=self.room_ttl)
        except RoomFull:
            logger.warning(f"Join room failed: Room {code} is full")
            raise
        if updated is None:
            logger.warning(f"Join room failed: Room {code} not found")
            raise RoomNotFound(f"Room {code} not found")

        seat = claimed["seat"]
        self.store.purge_mailbox(code, seat)
        self.store.push_message(code, HOST_SEAT, system_message("player-joined", HOST_SEAT, seat=seat))
        logger.info(f"Seat {seat} joined room {code}, seats now {claimed['seats']}")
        return {"peer_token": peer_token, "seat": seat, "seats": claimed["seats"]}

    def rejoin_room(self, code: str, seat: int, peer_token: str) -> dict:
        """Re-announce a peer that lost its signaling transport but kept its seat.

        The seat is re-occupied if it was dropped meanwhile, as long as no one
        else took it. The host is told through a ``player-joined`` message
        flagged ``rejoined``.
        """
        code = normalize_room_code(code)

        def reclaim(record: dict) -> dict:
            room = Room.from_record(record)
            holder = room.seat_tokens.get(seat)
            if seat in room.seats and holder != peer_token:
                raise RoomFull(f"Seat {seat} in room {code} belongs to another peer")
            if seat not in room.seats:
                room.seats.append(seat)
            room.seat_tokens[seat] = peer_token
            return room.to_record()

        updated = self.store.update_room(code, reclaim, ttl=self.room_ttl)
        if updated is None:
            logger.warning(f"Rejoin failed: Room {code} not found")
            raise RoomNotFound(f"Room {code} not found")

        seats = sorted(int(s) for s in updated["seats"])
        if seat != HOST_SEAT:
            self.store.push_message(code, HOST_SEAT, system_message("player-joined", HOST_SEAT, seat=seat, rejoined=True))
        logger.info(f"Seat {seat} rejoined room {code}")
        return {"peer_token": peer_token, "seat": seat, "seats": seats}

    def leave_room(self, code: str, seat: int) -> None:
        try:
            code = normalize_room_code(code)
        except InvalidRoomCode:
            logger.debug(f"Leave for invalid room code {code!r} ignored")
            return
        record = self.store.get_room(code)
        if not record:
            logger.debug(f"Leave for missing room {code} ignored")
            return

        if seat == HOST_SEAT:
            room = Room.from_record(record)
            self.store.delete_room(code)
            self.store.purge_mailbox(code, HOST_SEAT)
            for guest in room.seats:
                if guest != HOST_SEAT:
                    self.store.push_message(code, guest, system_message("room-closed", guest))
            logger.info(f"Host left, room {code} closed")
            return

        left = {}

        def drop_seat(record: dict) -> dict:
            room = Room.from_record(record)
            left["present"] = seat in room.seats
            if seat in room.seats:
                room.seats.remove(seat)
            room.seat_tokens.pop(seat, None)
            return room.to_record()

        self.store.update_room(code, drop_seat, ttl=self.room_ttl)
        self.store.purge_mailbox(code, seat)
        if left.get("present"):
            self.store.push_message(code, HOST_SEAT, system_message("player-left", HOST_SEAT, seat=seat))
            logger.info(f"Seat {seat} left room {code}")
        else:
            logger.debug(f"Seat {seat} was not in room {code}, leave ignored")

    def relay(self, code: str, from_seat: int, to_seat: int, message: dict) -> None:
        code = normalize_room_code(code)
        envelope = {**message, "from_seat": from_seat, "to_seat": to_seat}
        self.store.push_message(code, to_seat, envelope)
        self.store.touch_room(code, ttl=self.room_ttl)

    def poll(self, code: str, seat: int) -> List[dict]:
        code = normalize_room_code(code)
        self.store.touch_room(code, ttl=self.room_ttl)
        return self.store.pop_messages(code, seat)
