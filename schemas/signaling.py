from pydantic import BaseModel, Field

from constants import MAX_SEATS

# Message types the negotiation orchestrator consumes; everything else in a
# mailbox is a room notification or application traffic.
NEGOTIATION_TYPES = ("offer", "answer", "ice-candidate")


class SocketRelay(BaseModel):
    """Frame a peer sends up an open WebSocket to relay a message."""
    to_seat: int = Field(ge=1, le=MAX_SEATS)
    message: dict
