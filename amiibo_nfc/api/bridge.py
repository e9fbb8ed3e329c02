"""
API routes for a remote reader acting as the emulator's NFC antenna.

The reader peer places amiibo images on the emulated reader and lifts them
off again over ``/ws/reader``; see ``amiibo_nfc.bridge.tag_bridge`` for the
message protocol.
"""

from fastapi import APIRouter, WebSocket

from amiibo_nfc.bridge.tag_bridge import tag_bridge
from amiibo_nfc.device.service import nfc_service

router = APIRouter(tags=["reader"])


@router.websocket("/ws/reader")
async def reader_antenna(websocket: WebSocket):
    """Attach a remote reader; a tag it placed is lifted when it disconnects."""
    await tag_bridge.connect(websocket)
    await tag_bridge.listen(websocket)


@router.get("/api/bridge/status")
async def reader_status():
    """Whether a remote reader is attached, and the emulated reader's state."""
    with nfc_service.session() as device:
        state = device.state.name
    return {"connected": tag_bridge.is_connected, "device_state": state}
