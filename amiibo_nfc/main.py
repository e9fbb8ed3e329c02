"""
AmiiboNFC — amiibo (NTAG215) tag emulator.

FastAPI backend providing APIs for:
- An emulated NFC reader with the console's amiibo state machine
- Amiibo decryption/encryption with per-tag derived keys
- Tag image inspection, validation and generation
- A WebSocket bridge for a remote tag reader
"""

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from amiibo_nfc.config import NFC_HOST, NFC_PORT
from amiibo_nfc.device.service import nfc_service
from amiibo_nfc.api import bridge, device, tags

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Bring the emulated reader up on startup and down on shutdown."""
    logger.info("Starting AmiiboNFC...")
    with nfc_service.session() as nfc:
        nfc.initialize()
    if not nfc_service.key_store.is_available():
        logger.warning(f"No key file at {nfc_service.key_store.path}, amiibo will mount read only")
    yield
    with nfc_service.session() as nfc:
        nfc.finalize()
    logger.info("Shutting down AmiiboNFC")


app = FastAPI(
    title="AmiiboNFC",
    description="Amiibo NTAG215 tag emulator",
    version="1.0.0",
    lifespan=lifespan,
)

# Include API routers
app.include_router(device.router)
app.include_router(tags.router)
app.include_router(bridge.router)


def run():
    uvicorn.run(app, host=NFC_HOST, port=NFC_PORT)


if __name__ == "__main__":
    run()
