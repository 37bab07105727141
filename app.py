from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from routers.rooms import rooms_router, room_manager
from routers.roms import roms_router
from schemas.signaling import SocketRelay
from constants import WS_PUSH_INTERVAL
from errors import SignalingError
import asyncio
import json
from logging_config import get_logger, setup_logging
import os

# Setup logging
log_level = os.getenv("LOG_LEVEL", "INFO")
log_file = os.getenv("LOG_FILE", None)
setup_logging(log_level=log_level, log_file=log_file)
logger = get_logger(__name__)

app = FastAPI(title="NetplayRelay")

# Configure CORS to allow all origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(rooms_router)
app.include_router(roms_router)

logger.info("FastAPI application initialized")


@app.exception_handler(SignalingError)
async def signaling_error_handler(request: Request, exc: SignalingError):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.code, "detail": exc.message})


async def push_mailbox(room_code: str, seat: int, websocket: WebSocket):
    """Drain the seat's mailbox onto the socket until the socket goes away."""
    logger.debug(f"Starting mailbox pusher for {room_code} seat {seat}")
    try:
        while True:
            for message in room_manager.poll(room_code, seat):
                await websocket.send_text(json.dumps(message))
            await asyncio.sleep(WS_PUSH_INTERVAL)
    except asyncio.CancelledError:
        logger.debug(f"Mailbox pusher cancelled for {room_code} seat {seat}")
        raise
    except Exception as e:
        logger.info(f"Mailbox pusher for {room_code} seat {seat} stopped: {e}")


@app.websocket("/rooms/{room_code}/ws")
async def websocket_endpoint(room_code: str, websocket: WebSocket, seat: int, token: str):
    """Duplex signaling channel for one seat.

    Query parameters:
    - seat: the caller's seat number
    - token: the peer token returned by create/join/rejoin

    The server pushes mailbox messages as they arrive; the client sends
    ``{"to_seat": n, "message": {...}}`` frames to relay.
    """
    logger.info(f"WebSocket connection attempt for room: {room_code}, seat: {seat}")
    try:
        room = room_manager.get_room(room_code)
    except SignalingError as e:
        logger.info(f"WebSocket connection rejected for room {room_code}: {e.code}")
        await websocket.close(code=1008, reason=e.code)
        return

    if room.seat_tokens.get(seat) != token:
        logger.warning(f"WebSocket connection rejected: bad token for room {room.code} seat {seat}")
        await websocket.close(code=1008, reason="Invalid seat token")
        return

    await websocket.accept()
    logger.info(f"WebSocket connection accepted for room {room.code} seat {seat}")
    pusher = asyncio.create_task(push_mailbox(room.code, seat, websocket))

    try:
        while True:
            data = await websocket.receive_text()
            try:
                relay = SocketRelay.model_validate_json(data)
            except ValidationError as e:
                logger.warning(f"Ignoring malformed relay from {room.code} seat {seat}: {e.error_count()} errors")
                continue
            room_manager.relay(room.code, seat, relay.to_seat, relay.message)
    except WebSocketDisconnect:
        logger.info(f"WebSocket disconnected for room {room.code} seat {seat}")
    except Exception as e:
        logger.error(f"WebSocket error for room {room.code} seat {seat}: {e}", exc_info=True)
    finally:
        pusher.cancel()
        try:
            await pusher
        except asyncio.CancelledError:
            pass
