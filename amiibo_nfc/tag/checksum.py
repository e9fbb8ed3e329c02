"""
Checksums used inside the amiibo settings and register-info blocks.

These are integrity fields only; authenticity comes from the two HMACs
computed by the codec.
"""

import binascii

CRC32_POLYNOMIAL = 0xEDB88320


def crc32(data: bytes) -> int:
    """
    CRC-32 exactly as the console firmware computes it.

    Each input byte is folded into the low byte of the running value and
    shifted through the polynomial eight times before being mixed back in.

    Args:
        data: Bytes to checksum.

    Returns:
        The 32-bit checksum, or 0 for an empty input.
    """
    if not data:
        return 0

    crc = 0xFFFFFFFF
    for byte in data:
        temp = (crc ^ byte) & 0xFF
        for _ in range(8):
            if temp & 1:
                temp = (temp >> 1) ^ CRC32_POLYNOMIAL
            else:
                temp >>= 1
        crc = (crc >> 8) ^ temp

    return ~crc & 0xFFFFFFFF


def crc16_ccitt(data: bytes) -> int:
    """CRC-16/CCITT (poly 0x1021, init 0, unreflected) used for the owner Mii."""
    return binascii.crc_hqx(data, 0)
