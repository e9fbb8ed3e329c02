"""
NTAG215 password helpers for amiibo tags.

Retail amiibo are write-protected with a 4-byte PWD derived from the UID and
answer authentication with a fixed 2-byte PACK. A reader bridge needs both
to write a blank NTAG215 so that consoles accept it.
"""

from dataclasses import dataclass

from ..tag import ntag215 as nt

PACK = bytes([0x80, 0x80])
RFUI = bytes(2)


@dataclass
class TagPassword:
    """PWD_AUTH data for one tag."""
    pwd: bytes
    pack: bytes

    @property
    def pwd_hex(self) -> str:
        return self.pwd.hex().upper()

    def to_bytes(self) -> bytes:
        """The 8-byte password field as stored at the end of the tag."""
        return self.pwd + self.pack + RFUI


def derive_password(serial: bytes) -> TagPassword:
    """
    Derive the tag password from a 7-byte serial number.

    Args:
        serial: The tag serial (UID without check bytes).

    Returns:
        TagPassword with PWD and PACK.
    """
    if len(serial) != nt.UID_LENGTH:
        raise ValueError(f"Serial number must be {nt.UID_LENGTH} bytes, got {len(serial)}")
    pwd = bytes([
        0xAA ^ serial[1] ^ serial[3],
        0x55 ^ serial[2] ^ serial[4],
        0xAA ^ serial[3] ^ serial[5],
        0x55 ^ serial[4] ^ serial[6],
    ])
    return TagPassword(pwd=pwd, pack=PACK)


def get_auth_payload(serial: bytes) -> dict:
    """
    Build a JSON-serializable auth payload for the reader bridge.

    Args:
        serial: The tag serial as bytes.

    Returns:
        Dict with uid, pwd and pack for the bridge.
    """
    password = derive_password(serial)
    return {
        "uid": serial.hex().upper(),
        "pwd": password.pwd_hex,
        "pack": password.pack.hex().upper(),
    }
