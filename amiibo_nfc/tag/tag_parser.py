"""
High-level tag parsing — converts tag dumps to RawTagImage.

Supports multiple input formats:
- Raw binary dump (540 bytes, the usual .bin file)
- Hex string dump
- Base64 string
- Page-by-page list (135 × 4 bytes)
- Page dump text (one page per line)
"""

import base64

from .ntag215 import BYTES_PER_PAGE, TOTAL_BYTES, TOTAL_PAGES, join_pages
from .amiibo_format import RawTagImage


def parse_from_binary(data: bytes) -> RawTagImage:
    """Parse from a raw 540-byte binary dump."""
    if len(data) != TOTAL_BYTES:
        raise ValueError(f"Expected {TOTAL_BYTES} bytes, got {len(data)}")
    return RawTagImage(bytes(data))


def parse_from_pages(pages: list[bytes]) -> RawTagImage:
    """Parse from a list of 135 pages (each 4 bytes)."""
    return RawTagImage(join_pages(pages))


def parse_from_hex(hex_string: str) -> RawTagImage:
    """Parse from a hex-encoded string (1080 hex chars = 540 bytes)."""
    clean = "".join(hex_string.split())
    return parse_from_binary(bytes.fromhex(clean))


def parse_from_base64(b64_string: str) -> RawTagImage:
    """Parse from a base64-encoded string."""
    data = base64.b64decode(b64_string, validate=True)
    return parse_from_binary(data)


def parse_from_base64_pages(b64_pages: list[str]) -> RawTagImage:
    """Parse from a list of 135 base64-encoded pages."""
    pages = [base64.b64decode(p, validate=True) for p in b64_pages]
    return parse_from_pages(pages)


def parse_from_hex_pages(hex_pages: list[str]) -> RawTagImage:
    """Parse from a list of 135 hex-encoded page strings."""
    pages = [bytes.fromhex(h) for h in hex_pages]
    return parse_from_pages(pages)


def parse_page_dump(dump_text: str) -> RawTagImage:
    """
    Parse a page dump in text form.

    Expected format (one page per line):
    Page 000: AA BB CC DD
    Page 001: ...
    """
    pages = []
    for line in dump_text.strip().splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        if ":" in line:
            hex_part = line.split(":", 1)[1].strip()
        else:
            hex_part = line
        hex_clean = hex_part.replace(" ", "")
        if len(hex_clean) == BYTES_PER_PAGE * 2:
            pages.append(bytes.fromhex(hex_clean))

    if len(pages) != TOTAL_PAGES:
        raise ValueError(
            f"Page dump should have {TOTAL_PAGES} pages, found {len(pages)}"
        )
    return parse_from_pages(pages)
