"""API routes for amiibo tag images — inspect, validate, decrypt, generate."""

from typing import Optional

from fastapi import APIRouter, HTTPException, UploadFile, File
from pydantic import BaseModel

try:
    from Cryptodome.Random import get_random_bytes
except ImportError:
    from Crypto.Random import get_random_bytes

from amiibo_nfc.crypto.codec import AmiiboHMACError, NotAnAmiiboError, decode_amiibo, validate_amiibo
from amiibo_nfc.crypto.tag_auth import get_auth_payload
from amiibo_nfc.device.service import nfc_service
from amiibo_nfc.storage.key_store import KeyStoreError
from amiibo_nfc.tag.amiibo_format import ModelInfo, RawTagImage
from amiibo_nfc.tag.ntag215 import UID_LENGTH
from amiibo_nfc.tag.tag_builder import (
    build_base64, build_base64_pages, build_binary, build_blank_amiibo, build_hex, build_page_dump,
)
from amiibo_nfc.tag.tag_parser import (
    parse_from_base64_pages, parse_from_binary, parse_from_hex, parse_page_dump,
)

router = APIRouter(prefix="/api/tags", tags=["tags"])


# ──────────────────────────────────────────────
# Request/Response models
# ──────────────────────────────────────────────

class HexRequest(BaseModel):
    hex_data: str


class PagesRequest(BaseModel):
    pages: list[str]  # Base64-encoded pages


class PageDumpRequest(BaseModel):
    dump_text: str


class PasswordRequest(BaseModel):
    uid: str  # 7-byte serial as hex, e.g. "04A1B2C3D4E5F6"


class GenerateRequest(BaseModel):
    amiibo_id: str            # 8-byte model id as hex, e.g. "0000000000000002"
    uid: Optional[str] = None  # random when omitted


# ──────────────────────────────────────────────
# Helpers
# ──────────────────────────────────────────────

def _inspect(image: RawTagImage) -> dict:
    result = image.to_dict()
    try:
        validate_amiibo(image.data)
        result["valid"] = True
        result["reason"] = None
    except NotAnAmiiboError as e:
        result["valid"] = False
        result["reason"] = e.reason
    return result


def _load_keys():
    key_store = nfc_service.key_store
    if not key_store.is_available():
        raise HTTPException(status_code=503, detail="No amiibo key file configured")
    try:
        return key_store.load()
    except (KeyStoreError, OSError) as e:
        raise HTTPException(status_code=500, detail=str(e))


# ──────────────────────────────────────────────
# Routes
# ──────────────────────────────────────────────

@router.post("/inspect/hex")
async def inspect_hex(req: HexRequest):
    """Show the unencrypted fields of a hex-encoded tag image."""
    try:
        return _inspect(parse_from_hex(req.hex_data))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.post("/inspect/pages")
async def inspect_pages(req: PagesRequest):
    """Show the unencrypted fields of a list of base64-encoded pages."""
    try:
        return _inspect(parse_from_base64_pages(req.pages))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.post("/inspect/dump")
async def inspect_dump(req: PageDumpRequest):
    """Show the unencrypted fields of a page dump text."""
    try:
        return _inspect(parse_page_dump(req.dump_text))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.post("/inspect/file")
async def inspect_file(file: UploadFile = File(...)):
    """Show the unencrypted fields of an uploaded .bin dump."""
    data = await file.read()
    try:
        return _inspect(parse_from_binary(data))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.post("/decrypt/hex")
async def decrypt_hex(req: HexRequest):
    """Decrypt and verify a hex-encoded tag image with the configured keys."""
    try:
        image = parse_from_hex(req.hex_data)
        validate_amiibo(image.data)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    keys = _load_keys()
    try:
        tag = decode_amiibo(image.data, keys)
    except AmiiboHMACError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return tag.to_dict()


@router.post("/password")
async def tag_password(req: PasswordRequest):
    """Derive the NTAG215 PWD/PACK for a tag serial."""
    try:
        return get_auth_payload(bytes.fromhex(req.uid))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.post("/generate")
async def generate_tag(req: GenerateRequest):
    """Generate a fresh, unregistered amiibo image for a model id."""
    try:
        model_bytes = bytes.fromhex(req.amiibo_id)
        if len(model_bytes) != 8:
            raise ValueError(f"amiibo_id must be 8 bytes, got {len(model_bytes)}")
        model_info = ModelInfo.from_bytes(model_bytes + bytes(4))
        if req.uid is not None:
            serial = bytes.fromhex(req.uid)
        else:
            # NXP manufacturer code first
            serial = b"\x04" + get_random_bytes(UID_LENGTH - 1)
        tag = build_blank_amiibo(serial, model_info)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    raw = build_binary(tag, _load_keys())
    return {
        "uid": serial.hex().upper(),
        "hex": build_hex(raw),
        "base64": build_base64(raw),
        "pages": build_base64_pages(raw),
        "page_dump": build_page_dump(raw),
        "model_info": model_info.to_dict(),
    }
