import base64
import binascii
from typing import List, Optional
from urllib.parse import quote

from fastapi import APIRouter, Query
from fastapi.responses import JSONResponse, Response

from backend import store
from logging_config import get_logger
from redis_keys import REDIS_ROM_KEY

logger = get_logger(__name__)

roms_router = APIRouter(prefix="/api", tags=["roms"])

ROM_KEY_PREFIX = REDIS_ROM_KEY.format(name="")


def sanitize_rom_name(name: str) -> str:
    # Must match the naming used when ROMs are uploaded
    return name.replace(" ", "_").replace("，", "_").replace(",", "_")


def detect_rom_type(data: bytes):
    if data[:2] == b"PK":
        return "application/zip", ".zip"
    if data[:4] == b"NES\x1a":
        return "application/x-nes-rom", ".nes"
    return "application/octet-stream", ".nes"


def get_rom(name: str) -> Optional[bytes]:
    sanitized = sanitize_rom_name(name)
    for candidate in (f"{sanitized}.zip", f"{sanitized}.nes", sanitized):
        value = store.get_value(REDIS_ROM_KEY.format(name=candidate))
        if not value:
            continue
        try:
            return base64.b64decode(value, validate=True)
        except (binascii.Error, ValueError):
            logger.warning(f"ROM entry {candidate} is not valid base64, skipping")
    return None


def list_roms(prefix: str = "") -> List[str]:
    return [key[len(ROM_KEY_PREFIX):] for key in store.list_keys(ROM_KEY_PREFIX + prefix)]


@roms_router.get("/rom/{name}")
async def download_rom(name: str):
    data = get_rom(name)
    if data is None:
        logger.info(f"ROM {name} not found")
        return JSONResponse(status_code=404, content={"error": "RomNotFound", "detail": name})

    content_type, ext = detect_rom_type(data)
    return Response(
        content=data,
        media_type=content_type,
        headers={
            "Content-Disposition": f'attachment; filename="{quote(name)}{ext}"',
            "Cache-Control": "public, max-age=86400",
        },
    )


@roms_router.get("/roms")
async def list_rom_names(prefix: str = Query("", description="Only names starting with this prefix")):
    return {"roms": list_roms(prefix)}
