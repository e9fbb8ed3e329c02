"""API routes for the emulated NFC reader — one route per device operation."""

import base64
import binascii
from typing import Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from amiibo_nfc.device.results import ResultCode
from amiibo_nfc.device.service import nfc_service
from amiibo_nfc.device.types import MountTarget, TagProtocol

router = APIRouter(prefix="/api/nfc", tags=["nfc"])


# ──────────────────────────────────────────────
# Request models
# ──────────────────────────────────────────────

class StartDetectionRequest(BaseModel):
    protocol: str = "ALL"


class LoadTagRequest(BaseModel):
    hex_data: Optional[str] = None
    base64_data: Optional[str] = None


class LoadFileRequest(BaseModel):
    path: str


class MountRequest(BaseModel):
    target: str = "READ_WRITE"


class AccessIdRequest(BaseModel):
    access_id: int


class AppAreaRequest(BaseModel):
    hex_data: str


class CreateAppAreaRequest(BaseModel):
    access_id: int
    hex_data: str = ""


class RegisterInfoRequest(BaseModel):
    nickname: str
    mii_hex: Optional[str] = None


# ──────────────────────────────────────────────
# Helpers
# ──────────────────────────────────────────────

def _result(code: ResultCode, **extra) -> dict:
    body = code.to_dict()
    body.update(extra)
    return body


def _hex(value: str, field: str) -> bytes:
    try:
        return bytes.fromhex("".join(value.split()))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=f"Invalid hex in {field}: {e}")


def _enum(enum_cls, name: str):
    try:
        return enum_cls[name.upper()]
    except KeyError:
        raise HTTPException(status_code=400, detail=f"Unknown {enum_cls.__name__} {name!r}")


def _tag_bytes(req: LoadTagRequest) -> bytes:
    if req.hex_data is not None:
        return _hex(req.hex_data, "hex_data")
    if req.base64_data is not None:
        try:
            return base64.b64decode(req.base64_data, validate=True)
        except (binascii.Error, ValueError) as e:
            raise HTTPException(status_code=400, detail=f"Invalid base64: {e}")
    raise HTTPException(status_code=400, detail="Provide hex_data or base64_data")


# ──────────────────────────────────────────────
# Lifecycle
# ──────────────────────────────────────────────

@router.get("/state")
async def get_state():
    """Current device state and mount target."""
    with nfc_service.session() as device:
        return {
            "state": device.state.name,
            "mount_target": device.mount_target.name,
            "allowed_protocol": device.allowed_protocol.name,
            "app_area_open": device.is_app_area_open,
        }


@router.get("/events")
async def get_events():
    """Presence signals, without consuming them."""
    with nfc_service.session() as device:
        return {
            "activate": device.activate_event.is_signaled(),
            "deactivate": device.deactivate_event.is_signaled(),
        }


@router.post("/initialize")
async def initialize():
    with nfc_service.session() as device:
        return _result(device.initialize())


@router.post("/finalize")
async def finalize():
    with nfc_service.session() as device:
        return _result(device.finalize())


@router.post("/start-detection")
async def start_detection(req: StartDetectionRequest):
    protocol = _enum(TagProtocol, req.protocol)
    with nfc_service.session() as device:
        return _result(device.start_detection(protocol))


@router.post("/stop-detection")
async def stop_detection():
    with nfc_service.session() as device:
        return _result(device.stop_detection())


@router.post("/load")
async def load_tag(req: LoadTagRequest):
    """Place a tag image on the reader (detection must be running)."""
    data = _tag_bytes(req)
    with nfc_service.session() as device:
        return {"loaded": device.load_tag(data, nfc_service.tag_writer(data))}


@router.post("/load-file")
async def load_file(req: LoadFileRequest):
    """Load a .bin dump from the tag directory, starting detection when needed."""
    try:
        return {"loaded": nfc_service.load_amiibo_file(req.path)}
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.post("/close")
async def close_tag():
    with nfc_service.session() as device:
        return {"closed": device.close_tag()}


@router.post("/mount")
async def mount(req: MountRequest):
    target = _enum(MountTarget, req.target)
    with nfc_service.session() as device:
        return _result(device.mount(target))


@router.post("/unmount")
async def unmount():
    with nfc_service.session() as device:
        return _result(device.unmount())


@router.post("/flush")
async def flush():
    with nfc_service.session() as device:
        return _result(device.flush())


# ──────────────────────────────────────────────
# Info
# ──────────────────────────────────────────────

def _info(code: ResultCode, info) -> dict:
    return _result(code, value=info.to_dict() if info is not None else None)


@router.get("/tag-info")
async def get_tag_info():
    with nfc_service.session() as device:
        return _info(*device.get_tag_info())


@router.get("/model-info")
async def get_model_info():
    with nfc_service.session() as device:
        return _info(*device.get_model_info())


@router.get("/common-info")
async def get_common_info():
    with nfc_service.session() as device:
        return _info(*device.get_common_info())


@router.get("/admin-info")
async def get_admin_info():
    with nfc_service.session() as device:
        return _info(*device.get_admin_info())


@router.get("/register-info")
async def get_register_info():
    with nfc_service.session() as device:
        return _info(*device.get_register_info())


@router.post("/register-info")
async def set_register_info(req: RegisterInfoRequest):
    mii = _hex(req.mii_hex, "mii_hex") if req.mii_hex is not None else None
    with nfc_service.session() as device:
        try:
            return _result(device.set_register_info(req.nickname, mii))
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))


@router.delete("/register-info")
async def delete_register_info():
    with nfc_service.session() as device:
        return _result(device.delete_register_info())


@router.post("/format")
async def format_tag():
    with nfc_service.session() as device:
        return _result(device.format())


# ──────────────────────────────────────────────
# Application area
# ──────────────────────────────────────────────

@router.post("/app-area/open")
async def open_application_area(req: AccessIdRequest):
    with nfc_service.session() as device:
        return _result(device.open_application_area(req.access_id))


@router.get("/app-area/id")
async def get_application_area_id():
    with nfc_service.session() as device:
        code, area_id = device.get_application_area_id()
        return _result(code, value=area_id)


@router.get("/app-area/exists")
async def application_area_exist():
    with nfc_service.session() as device:
        code, exists = device.application_area_exist()
        return _result(code, value=exists)


@router.get("/app-area")
async def get_application_area():
    with nfc_service.session() as device:
        code, data = device.get_application_area()
        return _result(code, value=data.hex().upper() if data is not None else None,
                       size=device.application_area_size)


@router.put("/app-area")
async def set_application_area(req: AppAreaRequest):
    data = _hex(req.hex_data, "hex_data")
    with nfc_service.session() as device:
        return _result(device.set_application_area(data))


@router.post("/app-area/create")
async def create_application_area(req: CreateAppAreaRequest):
    data = _hex(req.hex_data, "hex_data")
    with nfc_service.session() as device:
        return _result(device.create_application_area(req.access_id, data))


@router.post("/app-area/recreate")
async def recreate_application_area(req: CreateAppAreaRequest):
    data = _hex(req.hex_data, "hex_data")
    with nfc_service.session() as device:
        return _result(device.recreate_application_area(req.access_id, data))


@router.delete("/app-area")
async def delete_application_area():
    with nfc_service.session() as device:
        return _result(device.delete_application_area())
