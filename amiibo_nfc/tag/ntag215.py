"""
NTAG215 constants and amiibo memory layout definitions.

An NTAG215 tag has:
- 135 pages (0-134) of 4 bytes each (540 bytes total)
- Pages 0-2: UID with two check bytes (BCC0, BCC1), internal byte, static lock
- Page 3: capability container
- Pages 4-129: user memory (the amiibo data)
- Pages 130-134: dynamic lock, CFG0, CFG1, password, PACK

The amiibo codec works on a permuted "internal" copy of the same bytes in
which the encrypted range and both HMAC inputs are contiguous. Converting
between the two is a pure relayout.
"""

# Tag geometry
BYTES_PER_PAGE = 4
TOTAL_PAGES = 135
TOTAL_BYTES = TOTAL_PAGES * BYTES_PER_PAGE  # 540
USER_MEMORY_FIRST_PAGE = 4
USER_MEMORY_LAST_PAGE = 129

UID_LENGTH = 7          # serial number without check bytes
UID_WITH_BCC_LENGTH = 9
CASCADE_TAG = 0x88      # ISO/IEC 14443-3

# ──────────────────────────────────────────────
# Raw (hardware) layout offsets
# ──────────────────────────────────────────────

RAW_UID = 0x000
RAW_NINTENDO_ID = 0x009
RAW_STATIC_LOCK = 0x00A
RAW_CAPABILITY_CONTAINER = 0x00C
RAW_CONSTANT_VALUE = 0x010
RAW_WRITE_COUNTER = 0x011
RAW_AMIIBO_VERSION = 0x013
RAW_SETTINGS = 0x014
RAW_HMAC_TAG = 0x034
RAW_MODEL_INFO = 0x054
RAW_KEYGEN_SALT = 0x060
RAW_HMAC_DATA = 0x080
RAW_OWNER_MII = 0x0A0
RAW_APPLICATION_AREA = 0x130
RAW_DYNAMIC_LOCK = 0x208
RAW_CFG0 = 0x20C
RAW_CFG1 = 0x210
RAW_PASSWORD = 0x214

# ──────────────────────────────────────────────
# Internal (decoded) layout offsets
# ──────────────────────────────────────────────

INTERNAL_BCC1 = 0x000
INTERNAL_NINTENDO_ID = 0x001
INTERNAL_STATIC_LOCK = 0x002
INTERNAL_CAPABILITY_CONTAINER = 0x004
INTERNAL_HMAC_DATA = 0x008
INTERNAL_CONSTANT_VALUE = 0x028
INTERNAL_WRITE_COUNTER = 0x029
INTERNAL_AMIIBO_VERSION = 0x02B
INTERNAL_SETTINGS = 0x02C
INTERNAL_OWNER_MII = 0x04C
INTERNAL_OWNER_MII_PADDING = 0x0A8
INTERNAL_OWNER_MII_CRC = 0x0AA
INTERNAL_APPLICATION_ID = 0x0AC
INTERNAL_APPLICATION_WRITE_COUNTER = 0x0B4
INTERNAL_APPLICATION_AREA_ID = 0x0B6
INTERNAL_APPLICATION_ID_BYTE = 0x0BA
INTERNAL_UNKNOWN = 0x0BB
INTERNAL_MII_EXTENSION = 0x0BC
INTERNAL_UNKNOWN2 = 0x0C4
INTERNAL_REGISTER_INFO_CRC = 0x0D8
INTERNAL_APPLICATION_AREA = 0x0DC
INTERNAL_HMAC_TAG = 0x1B4
INTERNAL_UID = 0x1D4
INTERNAL_MODEL_INFO = 0x1DC
INTERNAL_KEYGEN_SALT = 0x1E8
INTERNAL_DYNAMIC_LOCK = 0x208
INTERNAL_CFG0 = 0x20C
INTERNAL_CFG1 = 0x210
INTERNAL_PASSWORD = 0x214

# Field sizes
HMAC_SIZE = 32
SETTINGS_SIZE = 0x20
MII_SIZE = 0x5C
MII_EXTENSION_SIZE = 8
UNKNOWN2_SIZE = 0x14
APPLICATION_AREA_SIZE = 0xD8  # 216
MODEL_INFO_SIZE = 12
KEYGEN_SALT_SIZE = 32
PASSWORD_SIZE = 8
NICKNAME_LENGTH = 10          # UTF-16 code units

# Encrypted range: settings block up to (not including) the tag HMAC
ENCRYPTED_START = INTERNAL_SETTINGS
ENCRYPTED_END = INTERNAL_HMAC_TAG

# HMAC inputs (internal offsets)
TAG_HMAC_INPUT_START = INTERNAL_UID
TAG_HMAC_INPUT_END = INTERNAL_DYNAMIC_LOCK
DATA_HMAC_INPUT_START = INTERNAL_WRITE_COUNTER

# (internal offset, raw offset, length), covering all 540 bytes exactly once
INTERNAL_SEGMENTS = (
    (0x000, 0x008, 0x008),   # BCC1, internal byte, static lock, CC
    (0x008, 0x080, 0x020),   # data HMAC
    (0x028, 0x010, 0x024),   # 0xA5, write counter, version, settings
    (0x04C, 0x0A0, 0x168),   # Mii ... application area
    (0x1B4, 0x034, 0x020),   # tag HMAC
    (0x1D4, 0x000, 0x008),   # UID with BCC0
    (0x1DC, 0x054, 0x02C),   # model info, keygen salt
    (0x208, 0x208, 0x014),   # dynamic lock, CFG0, CFG1, password
)

# Expected constant fields of a genuine amiibo
STATIC_LOCK_VALUE = 0xE00F
CAPABILITY_CONTAINER_VALUE = 0xEEFF10F1
USER_MEMORY_CONSTANT = 0xA5
MODEL_INFO_CONSTANT = 0x02
CFG0_VALUE = 0x04000000
CFG1_VALUE = 0x5F

# Saturation ceiling for every on-tag counter
COUNTER_LIMIT = 0xFFFF


def _check_size(data: bytes) -> None:
    if len(data) != TOTAL_BYTES:
        raise ValueError(f"Tag image must be {TOTAL_BYTES} bytes, got {len(data)}")


def tag_to_internal(data: bytes) -> bytes:
    """Rearrange a raw tag image into the internal layout."""
    _check_size(data)
    out = bytearray(TOTAL_BYTES)
    for internal, raw, length in INTERNAL_SEGMENTS:
        out[internal:internal + length] = data[raw:raw + length]
    return bytes(out)


def internal_to_tag(data: bytes) -> bytes:
    """Rearrange an internal-layout image back into raw tag order."""
    _check_size(data)
    out = bytearray(TOTAL_BYTES)
    for internal, raw, length in INTERNAL_SEGMENTS:
        out[raw:raw + length] = data[internal:internal + length]
    return bytes(out)


def uid_check_bytes(serial: bytes) -> tuple[int, int]:
    """Return (BCC0, BCC1) for a 7-byte serial number."""
    if len(serial) != UID_LENGTH:
        raise ValueError(f"Serial number must be {UID_LENGTH} bytes, got {len(serial)}")
    bcc0 = CASCADE_TAG ^ serial[0] ^ serial[1] ^ serial[2]
    bcc1 = serial[3] ^ serial[4] ^ serial[5] ^ serial[6]
    return bcc0, bcc1


def serial_to_uid(serial: bytes) -> bytes:
    """Expand a 7-byte serial number into the 9-byte on-tag UID."""
    bcc0, bcc1 = uid_check_bytes(serial)
    return bytes(serial[0:3]) + bytes([bcc0]) + bytes(serial[3:7]) + bytes([bcc1])


def uid_to_serial(uid: bytes) -> bytes:
    """Strip the check bytes from a 9-byte UID."""
    if len(uid) != UID_WITH_BCC_LENGTH:
        raise ValueError(f"UID must be {UID_WITH_BCC_LENGTH} bytes, got {len(uid)}")
    return bytes(uid[0:3]) + bytes(uid[4:8])


def page_to_offset(page: int) -> int:
    """Return the byte offset of a page in a full dump."""
    return page * BYTES_PER_PAGE


def offset_to_page(offset: int) -> int:
    """Return the page number containing a byte offset."""
    return offset // BYTES_PER_PAGE


def split_pages(data: bytes) -> list[bytes]:
    """Split a full dump into 135 four-byte pages."""
    _check_size(data)
    return [data[i:i + BYTES_PER_PAGE] for i in range(0, TOTAL_BYTES, BYTES_PER_PAGE)]


def join_pages(pages: list[bytes]) -> bytes:
    """Join 135 four-byte pages into a full dump."""
    if len(pages) != TOTAL_PAGES:
        raise ValueError(f"Expected {TOTAL_PAGES} pages, got {len(pages)}")
    for i, page in enumerate(pages):
        if len(page) != BYTES_PER_PAGE:
            raise ValueError(f"Page {i} must be {BYTES_PER_PAGE} bytes, got {len(page)}")
    return b"".join(pages)
