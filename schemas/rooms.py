from pydantic import BaseModel, Field
from typing import Annotated, Any, Dict, List, Optional

from constants import MAX_SEATS

Seat = Annotated[int, Field(ge=1, le=MAX_SEATS)]


class CreateRoomRequest(BaseModel):
    code: Optional[str] = None

class CreateRoomResponse(BaseModel):
    room_code: str
    peer_token: str
    seat: int

class JoinRoomResponse(BaseModel):
    peer_token: str
    seat: int
    seats: List[int]

class RejoinRoomRequest(BaseModel):
    seat: Seat
    peer_token: str

class LeaveRoomRequest(BaseModel):
    seat: Seat

class RelayRequest(BaseModel):
    from_seat: Seat
    to_seat: Seat
    message: Dict[str, Any]

class AcceptedResponse(BaseModel):
    accepted: bool = True

class PollResponse(BaseModel):
    messages: List[Dict[str, Any]]

class RoomDetailsResponse(BaseModel):
    room_code: str
    seats: List[int]
    created_at: str
    is_full: bool
