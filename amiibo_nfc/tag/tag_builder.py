"""
High-level tag building — creates fresh amiibo and exports encoded images.

Supports multiple output formats:
- Raw binary (540 bytes)
- Hex string
- Base64 string
- Page-by-page lists (for the reader bridge)
- Page dump text
"""

import base64
from typing import Optional

try:
    from Cryptodome.Random import get_random_bytes
except ImportError:
    from Crypto.Random import get_random_bytes

from ..crypto.codec import encode_amiibo
from ..crypto.keys import AmiiboMasterKeys
from ..crypto.tag_auth import derive_password
from . import ntag215 as nt
from .amiibo_format import AmiiboData, ModelInfo

# Values found on retail tags
RETAIL_NINTENDO_ID = 0x48
RETAIL_DYNAMIC_LOCK = 0xBD0F0001  # bytes 01 00 0F BD


def build_blank_amiibo(
    serial: bytes,
    model_info: ModelInfo,
    keygen_salt: Optional[bytes] = None,
) -> AmiiboData:
    """
    Create an unregistered amiibo with no application area.

    Args:
        serial: 7-byte tag serial number.
        model_info: Which amiibo the tag represents.
        keygen_salt: 32-byte salt; random when omitted.

    Returns:
        Plaintext AmiiboData ready for encode_amiibo.
    """
    if keygen_salt is None:
        keygen_salt = get_random_bytes(nt.KEYGEN_SALT_SIZE)
    if len(keygen_salt) != nt.KEYGEN_SALT_SIZE:
        raise ValueError(f"Keygen salt must be {nt.KEYGEN_SALT_SIZE} bytes, got {len(keygen_salt)}")

    return AmiiboData(
        uid=nt.serial_to_uid(serial),
        nintendo_id=RETAIL_NINTENDO_ID,
        model_info=model_info,
        keygen_salt=bytes(keygen_salt),
        dynamic_lock=RETAIL_DYNAMIC_LOCK,
        password=derive_password(serial).to_bytes(),
    )


def build_binary(tag: AmiiboData, keys: AmiiboMasterKeys) -> bytes:
    """Encode AmiiboData into a raw 540-byte dump."""
    return encode_amiibo(tag, keys)


def build_hex(raw: bytes) -> str:
    """Hex-encode a raw dump (1080 chars)."""
    return raw.hex().upper()


def build_base64(raw: bytes) -> str:
    """Base64-encode a raw dump."""
    return base64.b64encode(raw).decode("ascii")


def build_base64_pages(raw: bytes) -> list[str]:
    """Build a list of 135 base64-encoded pages (for bridge transport)."""
    return [base64.b64encode(p).decode("ascii") for p in nt.split_pages(raw)]


def build_hex_pages(raw: bytes) -> list[str]:
    """Build a list of 135 hex-encoded page strings."""
    return [p.hex().upper() for p in nt.split_pages(raw)]


def build_page_dump(raw: bytes) -> str:
    """
    Build a page dump in text form.

    Output format:
    Page 000: AA BB CC DD
    """
    lines = []
    for i, page in enumerate(nt.split_pages(raw)):
        hex_bytes = " ".join(f"{b:02X}" for b in page)
        lines.append(f"Page {i:03d}: {hex_bytes}")
    return "\n".join(lines)
