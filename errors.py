"""Error taxonomy shared by the signaling server and the peer client.

Every error carries a stable ``code`` that travels over the wire as
``{"error": code}`` so the client can raise the same class again.
"""
from typing import Dict, Optional, Type


class SignalingError(Exception):
    code = "SignalingError"
    status_code = 400

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.code)
        self.message = message or self.code


class RoomNotFound(SignalingError):
    code = "RoomNotFound"
    status_code = 404


class RoomExists(SignalingError):
    code = "RoomExists"
    status_code = 409


class RoomFull(SignalingError):
    code = "RoomFull"
    status_code = 409


class InvalidRoomCode(SignalingError, ValueError):
    code = "InvalidRoomCode"
    status_code = 422


class Timeout(SignalingError):
    code = "Timeout"
    status_code = 504


class TransportLost(SignalingError):
    code = "TransportLost"
    status_code = 503


class NegotiationStale(SignalingError):
    """Late or duplicate offer/answer. Logged, never raised to callers."""
    code = "NegotiationStale"


class CandidateRejected(SignalingError):
    """A remote ICE candidate could not be applied. Logged, never raised to callers."""
    code = "CandidateRejected"


ERRORS_BY_CODE: Dict[str, Type[SignalingError]] = {
    cls.code: cls
    for cls in (RoomNotFound, RoomExists, RoomFull, InvalidRoomCode, Timeout, TransportLost, NegotiationStale, CandidateRejected)
}


def error_from_code(code: str, message: Optional[str] = None) -> SignalingError:
    return ERRORS_BY_CODE.get(code, SignalingError)(message)
