from fastapi import APIRouter, Query, Request
from schemas.rooms import (
    AcceptedResponse,
    CreateRoomRequest,
    CreateRoomResponse,
    JoinRoomResponse,
    LeaveRoomRequest,
    PollResponse,
    RejoinRoomRequest,
    RelayRequest,
    RoomDetailsResponse,
)
from backend import store
from constants import MAX_SEATS
from room_manager import RoomManager
from logging_config import get_logger

logger = get_logger(__name__)

rooms_router = APIRouter(prefix="/rooms", tags=["rooms"])

room_manager = RoomManager(store)


def _client_host(request: Request) -> str:
    return request.client.host if request and request.client else "unknown"


@rooms_router.post("", response_model=CreateRoomResponse)
async def create_room(room: CreateRoomRequest, request: Request):
    # Body: { "code": "optional six-char code" }
    # Response: { "room_code": "K7QX2M", "peer_token": "...", "seat": 1 }
    logger.info(f"Room creation request from {_client_host(request)}, code: {room.code}")
    created = room_manager.create_room(room.code)
    return CreateRoomResponse(**created)


@rooms_router.post("/{room_code}/join", response_model=JoinRoomResponse)
async def join_room(room_code: str, request: Request):
    # Response: { "peer_token": "...", "seat": 2, "seats": [1, 2] }
    logger.info(f"Join room request for {room_code} from {_client_host(request)}")
    joined = room_manager.join_room(room_code)
    return JoinRoomResponse(**joined)


@rooms_router.post("/{room_code}/rejoin", response_model=JoinRoomResponse)
async def rejoin_room(room_code: str, rejoin: RejoinRoomRequest, request: Request):
    logger.info(f"Rejoin request for {room_code} seat {rejoin.seat} from {_client_host(request)}")
    rejoined = room_manager.rejoin_room(room_code, rejoin.seat, rejoin.peer_token)
    return JoinRoomResponse(**rejoined)


@rooms_router.post("/{room_code}/leave", response_model=AcceptedResponse)
async def leave_room(room_code: str, leave: LeaveRoomRequest, request: Request):
    # Idempotent: leaving a closed room or an empty seat still succeeds
    logger.info(f"Leave room request for {room_code} seat {leave.seat} from {_client_host(request)}")
    room_manager.leave_room(room_code, leave.seat)
    return AcceptedResponse()


@rooms_router.post("/{room_code}/relay", response_model=AcceptedResponse)
async def relay_message(room_code: str, relay: RelayRequest):
    # Messages are advisory: always accepted, oldest dropped when a mailbox overflows
    logger.debug(f"Relay {relay.message.get('type', 'unknown')} in {room_code}: {relay.from_seat} -> {relay.to_seat}")
    room_manager.relay(room_code, relay.from_seat, relay.to_seat, relay.message)
    return AcceptedResponse()


@rooms_router.get("/{room_code}/poll", response_model=PollResponse)
async def poll_messages(room_code: str, seat: int = Query(..., ge=1, le=MAX_SEATS)):
    messages = room_manager.poll(room_code, seat)
    if messages:
        logger.debug(f"Delivering {len(messages)} messages to {room_code} seat {seat}")
    return PollResponse(messages=messages)


@rooms_router.get("/{room_code}", response_model=RoomDetailsResponse)
async def get_room_details(room_code: str, request: Request):
    """
    Get room details.

    Returns:
    - room_code: Six-character room code
    - seats: Occupied seat numbers, host is seat 1
    - created_at: Room creation timestamp
    - is_full: Whether seats 2-4 are all taken
    """
    logger.info(f"Room details request for {room_code} from {_client_host(request)}")
    room = room_manager.get_room(room_code)
    return RoomDetailsResponse(
        room_code=room.code,
        seats=sorted(room.seats),
        created_at=room.created_at,
        is_full=room.is_full,
    )
