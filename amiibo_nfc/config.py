"""Application configuration."""

import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent
PROJECT_DIR = BASE_DIR.parent

DATA_DIR = Path(os.getenv("AMIIBO_DATA_DIR", str(PROJECT_DIR / "data")))
KEYS_PATH = Path(os.getenv("AMIIBO_KEYS_PATH", str(DATA_DIR / "key_retail.bin")))
TAG_DIR = Path(os.getenv("AMIIBO_TAG_DIR", str(DATA_DIR / "tags")))

# HTTP / reader bridge WebSocket
NFC_HOST = os.getenv("NFC_HOST", "0.0.0.0")
NFC_PORT = int(os.getenv("NFC_PORT", "8000"))
