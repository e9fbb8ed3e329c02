"""
WebSocket server for a remote tag reader.

A reader peer (a phone app, a Proxmark script, a test) connects to this
endpoint and plays the role of the NFC antenna: it places tag images on the
emulated reader and lifts them off again. Flushes of bridge-loaded tags are
written to the tag directory as <uid>.bin.

Protocol messages (JSON):
  Reader → Backend:
    {"action": "TAG_DATA", "data": "<base64 540-byte image>"}
    {"action": "TAG_REMOVED"}
    {"action": "STATUS", ...}
    {"action": "ERROR", "message": "..."}

  Backend → Reader:
    {"action": "LOAD_RESULT", "success": true/false, "uid": "...", "error": "..."}
    {"action": "REMOVE_RESULT", "success": true/false}
"""

import base64
import binascii
import json
import logging
from typing import Optional

from fastapi import WebSocket, WebSocketDisconnect

from amiibo_nfc.device.service import NfcService, nfc_service
from amiibo_nfc.tag.amiibo_format import RawTagImage
from amiibo_nfc.tag.ntag215 import TOTAL_BYTES

logger = logging.getLogger(__name__)


class TagBridgeManager:
    """Manages the WebSocket connection of one remote tag reader."""

    def __init__(self, service: NfcService):
        self.service = service
        self._reader: Optional[WebSocket] = None

    @property
    def is_connected(self) -> bool:
        return self._reader is not None

    async def connect(self, websocket: WebSocket):
        """Accept a new reader connection (replaces any existing one)."""
        previous, self._reader = self._reader, websocket
        if previous:
            try:
                await previous.close()
            except RuntimeError as e:
                logger.debug(f"Previous reader already closed: {e}")
        await websocket.accept()
        logger.info("Tag reader connected")

    async def disconnect(self, websocket: WebSocket):
        """Handle reader disconnection; a tag left on the reader is lifted."""
        if self._reader is websocket:
            self._reader = None
            self.service.remove_amiibo()
        logger.info("Tag reader disconnected")

    def _load(self, data: dict) -> dict:
        try:
            image = base64.b64decode(data.get("data", ""), validate=True)
        except (binascii.Error, ValueError) as e:
            return {"action": "LOAD_RESULT", "success": False, "error": f"Invalid base64: {e}"}

        if len(image) != TOTAL_BYTES:
            return {
                "action": "LOAD_RESULT",
                "success": False,
                "error": f"Expected {TOTAL_BYTES} bytes, got {len(image)}",
            }

        uid = RawTagImage(image).serial.hex().upper()
        success = self.service.load_amiibo(image)
        result = {"action": "LOAD_RESULT", "success": success, "uid": uid}
        if not success:
            result["error"] = "Reader rejected the tag"
        return result

    async def handle_message(self, websocket: WebSocket, data: dict):
        """Process an incoming message from the reader."""
        action = data.get("action", "")

        if action == "TAG_DATA":
            result = self._load(data)
            logger.info(f"Tag from reader: uid={result.get('uid')} success={result['success']}")
            await websocket.send_json(result)

        elif action == "TAG_REMOVED":
            success = self.service.remove_amiibo()
            await websocket.send_json({"action": "REMOVE_RESULT", "success": success})

        elif action == "STATUS":
            logger.info(f"Reader status: {data}")

        elif action == "ERROR":
            logger.error(f"Reader error: {data.get('message', 'unknown')}")

        else:
            logger.warning(f"Unknown reader action {action!r}")

    async def listen(self, websocket: WebSocket):
        """Main loop for handling reader WebSocket messages."""
        try:
            while True:
                text = await websocket.receive_text()
                try:
                    data = json.loads(text)
                except json.JSONDecodeError as e:
                    logger.error(f"Malformed message from reader: {e}")
                    continue
                await self.handle_message(websocket, data)
        except WebSocketDisconnect:
            await self.disconnect(websocket)


# Global singleton
tag_bridge = TagBridgeManager(nfc_service)
