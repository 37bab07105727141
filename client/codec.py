"""Lossy mirroring of the host's frames and audio, and channel latency.

Frames are 256x240 rasters of 32-bit pixels, row-major. The encoder sends a
*full* frame (every other pixel) for the first frame or whenever more than
half the raster changed, otherwise a *diff* frame of ``[index, value, ...]``
pairs. There are no acknowledgements: a lost diff leaves artifacts until the
next full frame.

Audio keeps one sample in four and quantizes it to one unsigned byte.
"""
import base64
import math
import time
from typing import Callable, Dict, Iterable, Optional

import numpy as np

from logging_config import get_logger

logger = get_logger(__name__)

FRAME_WIDTH = 256
FRAME_HEIGHT = 240
FRAME_PIXELS = FRAME_WIDTH * FRAME_HEIGHT
FULL_FRAME_STRIDE = 2
PIXEL_MAX = 0xFFFFFFFF

AUDIO_STRIDE = 4
AUDIO_SCALE = 127


def _as_raster(frame) -> np.ndarray:
    raster = np.asarray(frame, dtype=np.uint32).ravel()
    if raster.size != FRAME_PIXELS:
        raise ValueError(f"Expected {FRAME_PIXELS} pixels, got {raster.size}")
    return raster


class FrameEncoder:
    def __init__(self):
        self.last_frame: Optional[np.ndarray] = None

    def reset(self) -> None:
        self.last_frame = None

    def encode(self, frame) -> dict:
        raster = _as_raster(frame)
        if self.last_frame is None:
            payload = self._full(raster)
        else:
            changed = np.flatnonzero(raster != self.last_frame)
            if changed.size > FRAME_PIXELS // 2:
                payload = self._full(raster)
            else:
                pairs = np.empty(changed.size * 2, dtype=np.int64)
                pairs[0::2] = changed
                pairs[1::2] = raster[changed]
                payload = {"type": "diff", "data": pairs.tolist()}
        self.last_frame = raster.copy()
        return payload

    @staticmethod
    def _full(raster: np.ndarray) -> dict:
        return {"type": "full", "data": raster[::FULL_FRAME_STRIDE].tolist()}


class FrameDecoder:
    """Rebuilds rasters on a non-host peer. Never raises on malformed payloads."""

    def __init__(self):
        self.last_frame: Optional[np.ndarray] = None

    def reset(self) -> None:
        self.last_frame = None

    def decode(self, payload: dict) -> Optional[np.ndarray]:
        if not isinstance(payload, dict):
            logger.warning(f"Dropping frame payload of type {type(payload).__name__}")
            return self.last_frame
        kind = payload.get("type")
        try:
            values = np.asarray(payload.get("data") or [], dtype=np.int64).ravel()
        except (TypeError, ValueError, OverflowError) as e:
            logger.warning(f"Dropping undecodable {kind} frame: {e}")
            return self.last_frame

        if kind == "full":
            buffer = self._decode_full(values)
        elif kind == "diff":
            buffer = self._decode_diff(values)
        else:
            logger.warning(f"Unknown frame type {kind!r}")
            return self.last_frame

        self.last_frame = buffer
        return buffer

    @staticmethod
    def _decode_full(values: np.ndarray) -> np.ndarray:
        buffer = np.zeros(FRAME_PIXELS, dtype=np.uint32)
        samples = np.clip(values[: FRAME_PIXELS // FULL_FRAME_STRIDE], 0, PIXEL_MAX).astype(np.uint32)
        count = samples.size
        buffer[0 : count * FULL_FRAME_STRIDE : FULL_FRAME_STRIDE] = samples
        # nearest-neighbour fill of the skipped pixel
        buffer[1 : count * FULL_FRAME_STRIDE : FULL_FRAME_STRIDE] = samples
        return buffer

    def _decode_diff(self, values: np.ndarray) -> np.ndarray:
        if self.last_frame is None:
            buffer = np.zeros(FRAME_PIXELS, dtype=np.uint32)
        else:
            buffer = self.last_frame.copy()
        pairs = values[: values.size - values.size % 2].reshape(-1, 2)
        indices, pixels = pairs[:, 0], pairs[:, 1]
        valid = (indices >= 0) & (indices < FRAME_PIXELS) & (pixels >= 0) & (pixels <= PIXEL_MAX)
        if not valid.all():
            logger.debug(f"Skipping {int((~valid).sum())} out-of-range pixels in diff frame")
        buffer[indices[valid]] = pixels[valid].astype(np.uint32)
        return buffer


class AudioCodec:
    @staticmethod
    def encode(samples: Iterable[float]) -> bytes:
        kept = np.asarray(samples, dtype=np.float64)[::AUDIO_STRIDE]
        # round half up
        quantized = np.floor((np.clip(kept, -1.0, 1.0) + 1.0) * AUDIO_SCALE + 0.5)
        return quantized.astype(np.uint8).tobytes()

    @staticmethod
    def decode(data: bytes) -> np.ndarray:
        quantized = np.frombuffer(data, dtype=np.uint8).astype(np.float32)
        return np.repeat(quantized / AUDIO_SCALE - 1.0, AUDIO_STRIDE)

    @classmethod
    def encode_b64(cls, samples: Iterable[float]) -> str:
        return base64.b64encode(cls.encode(samples)).decode("ascii")

    @classmethod
    def decode_b64(cls, data: str) -> np.ndarray:
        return cls.decode(base64.b64decode(data))


def now_ms() -> float:
    return time.time() * 1000


class LatencyMonitor:
    """One-way latency per seat, estimated as half the ping round trip.

    ``get`` returns ``None`` for a seat that has no measurement, which is not
    the same thing as a measured 0 ms.
    """

    def __init__(self, clock: Callable[[], float] = now_ms):
        self.clock = clock
        self.latencies: Dict[int, int] = {}

    def ping(self) -> dict:
        return {"type": "ping", "timestamp": self.clock()}

    @staticmethod
    def pong(ping: dict) -> dict:
        return {"type": "pong", "timestamp": ping.get("timestamp")}

    def record_pong(self, seat: int, timestamp) -> Optional[int]:
        if not isinstance(timestamp, (int, float)):
            return None
        latency = math.floor((self.clock() - timestamp) / 2 + 0.5)
        self.latencies[seat] = latency
        return latency

    def get(self, seat: int) -> Optional[int]:
        return self.latencies.get(seat)

    def clear(self, seat: int) -> None:
        self.latencies.pop(seat, None)
