"""
Device state and the info records handed out by the controller.
"""

from dataclasses import dataclass
from datetime import date
from enum import IntEnum
from typing import Optional

from ..tag.amiibo_format import ModelInfo


class DeviceState(IntEnum):
    UNAVAILABLE = 0
    INITIALIZED = 1
    SEARCHING_FOR_TAG = 2
    TAG_FOUND = 3
    TAG_REMOVED = 4
    TAG_MOUNTED = 5


class MountTarget(IntEnum):
    NONE = 0
    READ_ONLY = 1
    READ_WRITE = 2


class TagProtocol(IntEnum):
    NONE = 0
    TYPE_A = 1
    TYPE_B = 2
    TYPE_F = 3
    ALL = 0xFF


class TagType(IntEnum):
    TYPE1 = 1
    TYPE2 = 2   # NTAG215
    TYPE3 = 3
    TYPE4 = 4


class AppAreaVersion(IntEnum):
    NINTENDO_3DS = 0
    NINTENDO_WII_U = 1
    NINTENDO_3DS_V2 = 2
    NINTENDO_SWITCH = 3
    NOT_SET = 0xFF


def _iso(d: Optional[date]) -> Optional[str]:
    return d.isoformat() if d else None


@dataclass
class TagInfo:
    uid: bytes
    uid_length: int
    protocol: TagProtocol
    tag_type: TagType = TagType.TYPE2

    def to_dict(self) -> dict:
        return {
            "uid": self.uid.hex().upper(),
            "uid_length": self.uid_length,
            "protocol": self.protocol.name,
            "tag_type": self.tag_type.name,
        }


@dataclass
class CommonInfo:
    last_write_date: Optional[date]
    write_counter: int
    model_info: ModelInfo
    version: int
    application_area_size: int

    def to_dict(self) -> dict:
        return {
            "last_write_date": _iso(self.last_write_date),
            "write_counter": self.write_counter,
            "model_info": self.model_info.to_dict(),
            "version": self.version,
            "application_area_size": self.application_area_size,
        }


@dataclass
class RegisterInfo:
    mii_data: bytes
    nickname: str
    flags: int
    font_region: int
    creation_date: Optional[date]

    def to_dict(self) -> dict:
        return {
            "mii_data": self.mii_data.hex().upper(),
            "nickname": self.nickname,
            "flags": self.flags,
            "font_region": self.font_region,
            "creation_date": _iso(self.creation_date),
        }


@dataclass
class AdminInfo:
    application_id: int
    application_area_id: int
    crc_counter: int
    flags: int
    tag_type: TagType
    app_area_version: AppAreaVersion

    def to_dict(self) -> dict:
        return {
            "application_id": f"{self.application_id:016X}",
            "application_area_id": f"{self.application_area_id:08X}",
            "crc_counter": self.crc_counter,
            "flags": self.flags,
            "tag_type": self.tag_type.name,
            "app_area_version": self.app_area_version.name,
        }
