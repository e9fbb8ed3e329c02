"""
Amiibo tag data format — field layout and data model.

Based on the community-documented NTAG215 amiibo layout (amiitool). The
mutable region carries an owner nickname, a Mii, dates, initialization
flags and a 216-byte application area, all encrypted with per-tag keys.
The model info block, UID and keygen salt are stored in the clear.

Hardware words (static lock, capability container, dynamic lock, CFG0/1)
are Little Endian; every amiibo counter, id and date is Big Endian.
"""

import struct
from dataclasses import dataclass, field
from datetime import date
from enum import IntEnum
from typing import Optional

from . import ntag215 as nt


class AmiiboType(IntEnum):
    FIGURE = 0
    CARD = 1
    YARN = 2


# ──────────────────────────────────────────────
# Dates
# ──────────────────────────────────────────────

def pack_amiibo_date(d: date) -> int:
    """Pack a date as the on-tag u16 (7 bits year-2000, 4 bits month, 5 bits day)."""
    return (((d.year - 2000) & 0x7F) << 9) | ((d.month & 0x0F) << 5) | (d.day & 0x1F)


def unpack_amiibo_date(raw: int) -> Optional[date]:
    """Unpack an on-tag date; returns None for values that are not a real date."""
    try:
        return date(((raw >> 9) & 0x7F) + 2000, (raw >> 5) & 0x0F, raw & 0x1F)
    except ValueError:
        return None


# ──────────────────────────────────────────────
# Model info
# ──────────────────────────────────────────────

MODEL_INFO_FMT = ">HBBHBB4s"


@dataclass
class ModelInfo:
    """Identifies which amiibo this is (character, series, figure/card)."""

    character_id: int = 0
    character_variant: int = 0
    amiibo_type: int = AmiiboType.FIGURE
    model_number: int = 0
    series: int = 0
    constant_value: int = nt.MODEL_INFO_CONSTANT
    reserved: bytes = bytes(4)

    @classmethod
    def from_bytes(cls, data: bytes) -> "ModelInfo":
        if len(data) != nt.MODEL_INFO_SIZE:
            raise ValueError(f"Model info must be {nt.MODEL_INFO_SIZE} bytes, got {len(data)}")
        return cls(*struct.unpack(MODEL_INFO_FMT, data))

    def to_bytes(self) -> bytes:
        return struct.pack(
            MODEL_INFO_FMT,
            self.character_id,
            self.character_variant,
            self.amiibo_type,
            self.model_number,
            self.series,
            self.constant_value,
            self.reserved,
        )

    @property
    def amiibo_id(self) -> str:
        """The 8-byte amiibo id as used by community databases."""
        return self.to_bytes()[:8].hex().upper()

    def to_dict(self) -> dict:
        return {
            "amiibo_id": self.amiibo_id,
            "character_id": self.character_id,
            "character_variant": self.character_variant,
            "amiibo_type": self.amiibo_type,
            "model_number": self.model_number,
            "series": self.series,
        }


# ──────────────────────────────────────────────
# Settings block
# ──────────────────────────────────────────────

SETTINGS_FMT = ">BBHHHI20s"

FLAG_FONT_REGION_MASK = 0x0F
FLAG_AMIIBO_INITIALIZED = 0x10
FLAG_APPDATA_INITIALIZED = 0x20


@dataclass
class AmiiboSettings:
    """The 32-byte settings block at the start of the encrypted region."""

    flags: int = 0
    country_code: int = 0
    crc_counter: int = 0
    init_date: int = 0
    write_date: int = 0
    crc: int = 0
    nickname_raw: bytes = bytes(nt.NICKNAME_LENGTH * 2)  # UTF-16BE

    @classmethod
    def from_bytes(cls, data: bytes) -> "AmiiboSettings":
        if len(data) != nt.SETTINGS_SIZE:
            raise ValueError(f"Settings must be {nt.SETTINGS_SIZE} bytes, got {len(data)}")
        return cls(*struct.unpack(SETTINGS_FMT, data))

    def to_bytes(self) -> bytes:
        return struct.pack(
            SETTINGS_FMT,
            self.flags,
            self.country_code,
            self.crc_counter,
            self.init_date,
            self.write_date,
            self.crc,
            self.nickname_raw,
        )

    def _set_flag(self, mask: int, value: bool) -> None:
        if value:
            self.flags |= mask
        else:
            self.flags &= ~mask & 0xFF

    @property
    def font_region(self) -> int:
        return self.flags & FLAG_FONT_REGION_MASK

    @font_region.setter
    def font_region(self, value: int) -> None:
        self.flags = (self.flags & ~FLAG_FONT_REGION_MASK & 0xFF) | (value & FLAG_FONT_REGION_MASK)

    @property
    def amiibo_initialized(self) -> bool:
        return bool(self.flags & FLAG_AMIIBO_INITIALIZED)

    @amiibo_initialized.setter
    def amiibo_initialized(self, value: bool) -> None:
        self._set_flag(FLAG_AMIIBO_INITIALIZED, value)

    @property
    def appdata_initialized(self) -> bool:
        return bool(self.flags & FLAG_APPDATA_INITIALIZED)

    @appdata_initialized.setter
    def appdata_initialized(self, value: bool) -> None:
        self._set_flag(FLAG_APPDATA_INITIALIZED, value)

    @property
    def nickname(self) -> str:
        """Owner-chosen amiibo name, up to 10 UTF-16 code units."""
        units = [self.nickname_raw[i:i + 2] for i in range(0, len(self.nickname_raw), 2)]
        text = bytearray()
        for unit in units:
            if unit == b"\x00\x00":
                break
            text.extend(unit)
        return text.decode("utf-16-be", errors="replace")

    @nickname.setter
    def nickname(self, value: str) -> None:
        encoded = value.encode("utf-16-be")[:nt.NICKNAME_LENGTH * 2]
        self.nickname_raw = encoded.ljust(nt.NICKNAME_LENGTH * 2, b"\x00")

    def to_dict(self) -> dict:
        init = unpack_amiibo_date(self.init_date)
        written = unpack_amiibo_date(self.write_date)
        return {
            "nickname": self.nickname,
            "font_region": self.font_region,
            "amiibo_initialized": self.amiibo_initialized,
            "appdata_initialized": self.appdata_initialized,
            "country_code": self.country_code,
            "crc_counter": self.crc_counter,
            "init_date": init.isoformat() if init else None,
            "write_date": written.isoformat() if written else None,
        }


# ──────────────────────────────────────────────
# Decoded tag image
# ──────────────────────────────────────────────

@dataclass
class AmiiboData:
    """Decoded (plaintext) amiibo image with direct field access."""

    # Tag header
    uid: bytes = bytes(nt.UID_WITH_BCC_LENGTH)
    nintendo_id: int = 0
    static_lock: int = nt.STATIC_LOCK_VALUE
    capability_container: int = nt.CAPABILITY_CONTAINER_VALUE

    # Authenticated user memory
    hmac_data: bytes = bytes(nt.HMAC_SIZE)
    constant_value: int = nt.USER_MEMORY_CONSTANT
    write_counter: int = 0
    amiibo_version: int = 0
    settings: AmiiboSettings = field(default_factory=AmiiboSettings)
    owner_mii: bytes = bytes(nt.MII_SIZE)
    owner_mii_padding: bytes = bytes(2)
    owner_mii_crc: int = 0
    application_id: int = 0
    application_write_counter: int = 0
    application_area_id: int = 0
    application_id_byte: int = 0
    unknown: int = 0
    mii_extension: bytes = bytes(nt.MII_EXTENSION_SIZE)
    unknown2: bytes = bytes(nt.UNKNOWN2_SIZE)
    register_info_crc: int = 0
    application_area: bytes = bytes(nt.APPLICATION_AREA_SIZE)
    hmac_tag: bytes = bytes(nt.HMAC_SIZE)
    model_info: ModelInfo = field(default_factory=ModelInfo)
    keygen_salt: bytes = bytes(nt.KEYGEN_SALT_SIZE)

    # Tag trailer
    dynamic_lock: int = 0
    cfg0: int = nt.CFG0_VALUE
    cfg1: int = nt.CFG1_VALUE
    password: bytes = bytes(nt.PASSWORD_SIZE)

    @property
    def serial(self) -> bytes:
        """7-byte serial number without the check bytes."""
        return nt.uid_to_serial(self.uid)

    def to_dict(self) -> dict:
        """Serialize to a JSON-compatible dict."""
        return {
            "uid": self.serial.hex().upper(),
            "write_counter": self.write_counter,
            "amiibo_version": self.amiibo_version,
            "settings": self.settings.to_dict(),
            "application_id": f"{self.application_id:016X}",
            "application_area_id": f"{self.application_area_id:08X}",
            "application_write_counter": self.application_write_counter,
            "model_info": self.model_info.to_dict(),
        }


def _u8(data: bytes, offset: int) -> int:
    return data[offset]


def _u16_be(data: bytes, offset: int) -> int:
    return struct.unpack_from(">H", data, offset)[0]


def _u32_be(data: bytes, offset: int) -> int:
    return struct.unpack_from(">I", data, offset)[0]


def _u64_be(data: bytes, offset: int) -> int:
    return struct.unpack_from(">Q", data, offset)[0]


def _u16_le(data: bytes, offset: int) -> int:
    return struct.unpack_from("<H", data, offset)[0]


def _u32_le(data: bytes, offset: int) -> int:
    return struct.unpack_from("<I", data, offset)[0]


def parse_internal(data: bytes) -> AmiiboData:
    """
    Parse a 540-byte internal-layout image into AmiiboData.

    Args:
        data: Image in internal order (see ntag215.tag_to_internal).

    Returns:
        Parsed AmiiboData object.
    """
    if len(data) != nt.TOTAL_BYTES:
        raise ValueError(f"Expected {nt.TOTAL_BYTES} bytes, got {len(data)}")

    tag = AmiiboData()

    # UID is split: bytes 0-7 at the UID slot, BCC1 at the very start
    tag.uid = bytes(data[nt.INTERNAL_UID:nt.INTERNAL_UID + 8]) + bytes([data[nt.INTERNAL_BCC1]])
    tag.nintendo_id = _u8(data, nt.INTERNAL_NINTENDO_ID)
    tag.static_lock = _u16_le(data, nt.INTERNAL_STATIC_LOCK)
    tag.capability_container = _u32_le(data, nt.INTERNAL_CAPABILITY_CONTAINER)

    tag.hmac_data = bytes(data[nt.INTERNAL_HMAC_DATA:nt.INTERNAL_HMAC_DATA + nt.HMAC_SIZE])
    tag.constant_value = _u8(data, nt.INTERNAL_CONSTANT_VALUE)
    tag.write_counter = _u16_be(data, nt.INTERNAL_WRITE_COUNTER)
    tag.amiibo_version = _u8(data, nt.INTERNAL_AMIIBO_VERSION)
    tag.settings = AmiiboSettings.from_bytes(
        data[nt.INTERNAL_SETTINGS:nt.INTERNAL_SETTINGS + nt.SETTINGS_SIZE]
    )

    tag.owner_mii = bytes(data[nt.INTERNAL_OWNER_MII:nt.INTERNAL_OWNER_MII + nt.MII_SIZE])
    tag.owner_mii_padding = bytes(data[nt.INTERNAL_OWNER_MII_PADDING:nt.INTERNAL_OWNER_MII_CRC])
    tag.owner_mii_crc = _u16_be(data, nt.INTERNAL_OWNER_MII_CRC)
    tag.application_id = _u64_be(data, nt.INTERNAL_APPLICATION_ID)
    tag.application_write_counter = _u16_be(data, nt.INTERNAL_APPLICATION_WRITE_COUNTER)
    tag.application_area_id = _u32_be(data, nt.INTERNAL_APPLICATION_AREA_ID)
    tag.application_id_byte = _u8(data, nt.INTERNAL_APPLICATION_ID_BYTE)
    tag.unknown = _u8(data, nt.INTERNAL_UNKNOWN)
    tag.mii_extension = bytes(
        data[nt.INTERNAL_MII_EXTENSION:nt.INTERNAL_MII_EXTENSION + nt.MII_EXTENSION_SIZE]
    )
    tag.unknown2 = bytes(data[nt.INTERNAL_UNKNOWN2:nt.INTERNAL_UNKNOWN2 + nt.UNKNOWN2_SIZE])
    tag.register_info_crc = _u32_be(data, nt.INTERNAL_REGISTER_INFO_CRC)
    tag.application_area = bytes(
        data[nt.INTERNAL_APPLICATION_AREA:nt.INTERNAL_APPLICATION_AREA + nt.APPLICATION_AREA_SIZE]
    )

    tag.hmac_tag = bytes(data[nt.INTERNAL_HMAC_TAG:nt.INTERNAL_HMAC_TAG + nt.HMAC_SIZE])
    tag.model_info = ModelInfo.from_bytes(
        data[nt.INTERNAL_MODEL_INFO:nt.INTERNAL_MODEL_INFO + nt.MODEL_INFO_SIZE]
    )
    tag.keygen_salt = bytes(data[nt.INTERNAL_KEYGEN_SALT:nt.INTERNAL_KEYGEN_SALT + nt.KEYGEN_SALT_SIZE])

    tag.dynamic_lock = _u32_le(data, nt.INTERNAL_DYNAMIC_LOCK)
    tag.cfg0 = _u32_le(data, nt.INTERNAL_CFG0)
    tag.cfg1 = _u32_le(data, nt.INTERNAL_CFG1)
    tag.password = bytes(data[nt.INTERNAL_PASSWORD:nt.INTERNAL_PASSWORD + nt.PASSWORD_SIZE])

    return tag


def _fixed(value: bytes, size: int, name: str) -> bytes:
    if len(value) != size:
        raise ValueError(f"{name} must be {size} bytes, got {len(value)}")
    return value


def build_internal(tag: AmiiboData) -> bytes:
    """
    Build the 540-byte internal-layout image from AmiiboData.

    Args:
        tag: AmiiboData to serialize.

    Returns:
        Image in internal order, ready for the codec.
    """
    out = bytearray(nt.TOTAL_BYTES)
    uid = _fixed(tag.uid, nt.UID_WITH_BCC_LENGTH, "uid")

    out[nt.INTERNAL_BCC1] = uid[8]
    out[nt.INTERNAL_NINTENDO_ID] = tag.nintendo_id
    struct.pack_into("<H", out, nt.INTERNAL_STATIC_LOCK, tag.static_lock)
    struct.pack_into("<I", out, nt.INTERNAL_CAPABILITY_CONTAINER, tag.capability_container)

    out[nt.INTERNAL_HMAC_DATA:nt.INTERNAL_HMAC_DATA + nt.HMAC_SIZE] = _fixed(
        tag.hmac_data, nt.HMAC_SIZE, "hmac_data")
    out[nt.INTERNAL_CONSTANT_VALUE] = tag.constant_value
    struct.pack_into(">H", out, nt.INTERNAL_WRITE_COUNTER, tag.write_counter)
    out[nt.INTERNAL_AMIIBO_VERSION] = tag.amiibo_version
    out[nt.INTERNAL_SETTINGS:nt.INTERNAL_SETTINGS + nt.SETTINGS_SIZE] = tag.settings.to_bytes()

    out[nt.INTERNAL_OWNER_MII:nt.INTERNAL_OWNER_MII + nt.MII_SIZE] = _fixed(
        tag.owner_mii, nt.MII_SIZE, "owner_mii")
    out[nt.INTERNAL_OWNER_MII_PADDING:nt.INTERNAL_OWNER_MII_CRC] = _fixed(
        tag.owner_mii_padding, 2, "owner_mii_padding")
    struct.pack_into(">H", out, nt.INTERNAL_OWNER_MII_CRC, tag.owner_mii_crc)
    struct.pack_into(">Q", out, nt.INTERNAL_APPLICATION_ID, tag.application_id)
    struct.pack_into(">H", out, nt.INTERNAL_APPLICATION_WRITE_COUNTER, tag.application_write_counter)
    struct.pack_into(">I", out, nt.INTERNAL_APPLICATION_AREA_ID, tag.application_area_id)
    out[nt.INTERNAL_APPLICATION_ID_BYTE] = tag.application_id_byte
    out[nt.INTERNAL_UNKNOWN] = tag.unknown
    out[nt.INTERNAL_MII_EXTENSION:nt.INTERNAL_MII_EXTENSION + nt.MII_EXTENSION_SIZE] = _fixed(
        tag.mii_extension, nt.MII_EXTENSION_SIZE, "mii_extension")
    out[nt.INTERNAL_UNKNOWN2:nt.INTERNAL_UNKNOWN2 + nt.UNKNOWN2_SIZE] = _fixed(
        tag.unknown2, nt.UNKNOWN2_SIZE, "unknown2")
    struct.pack_into(">I", out, nt.INTERNAL_REGISTER_INFO_CRC, tag.register_info_crc)
    out[nt.INTERNAL_APPLICATION_AREA:nt.INTERNAL_APPLICATION_AREA + nt.APPLICATION_AREA_SIZE] = _fixed(
        tag.application_area, nt.APPLICATION_AREA_SIZE, "application_area")

    out[nt.INTERNAL_HMAC_TAG:nt.INTERNAL_HMAC_TAG + nt.HMAC_SIZE] = _fixed(
        tag.hmac_tag, nt.HMAC_SIZE, "hmac_tag")
    out[nt.INTERNAL_UID:nt.INTERNAL_UID + 8] = uid[0:8]
    out[nt.INTERNAL_MODEL_INFO:nt.INTERNAL_MODEL_INFO + nt.MODEL_INFO_SIZE] = tag.model_info.to_bytes()
    out[nt.INTERNAL_KEYGEN_SALT:nt.INTERNAL_KEYGEN_SALT + nt.KEYGEN_SALT_SIZE] = _fixed(
        tag.keygen_salt, nt.KEYGEN_SALT_SIZE, "keygen_salt")

    struct.pack_into("<I", out, nt.INTERNAL_DYNAMIC_LOCK, tag.dynamic_lock)
    struct.pack_into("<I", out, nt.INTERNAL_CFG0, tag.cfg0)
    struct.pack_into("<I", out, nt.INTERNAL_CFG1, tag.cfg1)
    out[nt.INTERNAL_PASSWORD:nt.INTERNAL_PASSWORD + nt.PASSWORD_SIZE] = _fixed(
        tag.password, nt.PASSWORD_SIZE, "password")

    return bytes(out)


# ──────────────────────────────────────────────
# Raw (encrypted) tag image
# ──────────────────────────────────────────────

@dataclass(frozen=True)
class RawTagImage:
    """
    A 540-byte tag image in hardware order, as stored in .bin dumps.

    Only the fields that are never encrypted are exposed; everything else
    needs the codec.
    """

    data: bytes

    def __post_init__(self):
        if len(self.data) != nt.TOTAL_BYTES:
            raise ValueError(f"Expected {nt.TOTAL_BYTES} bytes, got {len(self.data)}")

    @property
    def uid(self) -> bytes:
        return self.data[nt.RAW_UID:nt.RAW_UID + nt.UID_WITH_BCC_LENGTH]

    @property
    def serial(self) -> bytes:
        return nt.uid_to_serial(self.uid)

    @property
    def nintendo_id(self) -> int:
        return self.data[nt.RAW_NINTENDO_ID]

    @property
    def static_lock(self) -> int:
        return _u16_le(self.data, nt.RAW_STATIC_LOCK)

    @property
    def capability_container(self) -> int:
        return _u32_le(self.data, nt.RAW_CAPABILITY_CONTAINER)

    @property
    def constant_value(self) -> int:
        return self.data[nt.RAW_CONSTANT_VALUE]

    @property
    def write_counter(self) -> int:
        return _u16_be(self.data, nt.RAW_WRITE_COUNTER)

    @property
    def amiibo_version(self) -> int:
        return self.data[nt.RAW_AMIIBO_VERSION]

    @property
    def hmac_tag(self) -> bytes:
        return self.data[nt.RAW_HMAC_TAG:nt.RAW_HMAC_TAG + nt.HMAC_SIZE]

    @property
    def hmac_data(self) -> bytes:
        return self.data[nt.RAW_HMAC_DATA:nt.RAW_HMAC_DATA + nt.HMAC_SIZE]

    @property
    def model_info(self) -> ModelInfo:
        return ModelInfo.from_bytes(self.data[nt.RAW_MODEL_INFO:nt.RAW_MODEL_INFO + nt.MODEL_INFO_SIZE])

    @property
    def keygen_salt(self) -> bytes:
        return self.data[nt.RAW_KEYGEN_SALT:nt.RAW_KEYGEN_SALT + nt.KEYGEN_SALT_SIZE]

    @property
    def dynamic_lock(self) -> int:
        return _u32_le(self.data, nt.RAW_DYNAMIC_LOCK)

    @property
    def cfg0(self) -> int:
        return _u32_le(self.data, nt.RAW_CFG0)

    @property
    def cfg1(self) -> int:
        return _u32_le(self.data, nt.RAW_CFG1)

    @property
    def password(self) -> bytes:
        return self.data[nt.RAW_PASSWORD:nt.RAW_PASSWORD + nt.PASSWORD_SIZE]

    def to_dict(self) -> dict:
        return {
            "uid": self.serial.hex().upper(),
            "write_counter": self.write_counter,
            "amiibo_version": self.amiibo_version,
            "model_info": self.model_info.to_dict(),
            "static_lock": f"0x{self.static_lock:04X}",
            "capability_container": f"0x{self.capability_container:08X}",
            "dynamic_lock": f"0x{self.dynamic_lock:08X}",
            "cfg0": f"0x{self.cfg0:08X}",
            "cfg1": f"0x{self.cfg1:08X}",
        }
