"""
Default owner Mii.

Registering an amiibo without choosing a Mii stores the console's standard
Mii. Only the identity fields are filled in; appearance fields stay zero,
which renders as the default face.
"""

import struct

from ..tag.ntag215 import MII_SIZE

MII_NAME_LENGTH = 10   # UTF-16LE code units
MII_NAME_OFFSET = 0x1A
MII_HEIGHT_OFFSET = 0x2E
MII_BUILD_OFFSET = 0x2F
MII_DEFAULT_BODY = 0x40

STANDARD_MII_ID = 0x80000000


def build_mii(name: str = "Mii", mii_id: int = STANDARD_MII_ID,
              system_id: int = 0, creator_mac: bytes = bytes(6)) -> bytes:
    """
    Build a 92-byte Mii record.

    Args:
        name: Up to 10 characters.
        mii_id: Mii id (high bit set for a non-special Mii).
        system_id: Id of the creating console.
        creator_mac: 6-byte MAC of the creating console.

    Returns:
        The Mii record bytes.
    """
    if len(creator_mac) != 6:
        raise ValueError(f"Creator MAC must be 6 bytes, got {len(creator_mac)}")
    out = bytearray(MII_SIZE)
    struct.pack_into(">IQ", out, 0x00, mii_id, system_id)
    out[0x10:0x16] = creator_mac
    name_raw = name.encode("utf-16-le")[:MII_NAME_LENGTH * 2]
    out[MII_NAME_OFFSET:MII_NAME_OFFSET + MII_NAME_LENGTH * 2] = name_raw.ljust(MII_NAME_LENGTH * 2, b"\x00")
    out[MII_HEIGHT_OFFSET] = MII_DEFAULT_BODY
    out[MII_BUILD_OFFSET] = MII_DEFAULT_BODY
    return bytes(out)


def standard_mii() -> bytes:
    """The default Mii used when none is supplied."""
    return build_mii()
