"""
Amiibo master key templates.

The community key file ("key_retail.bin") is two 80-byte templates back to
back: the "data" template (type string ``unfixed infos``) used for the
encrypted region and the data HMAC, then the "tag" template (type string
``locked secret``) used for the tag HMAC.

Reference: https://github.com/socram8888/amiitool
"""

import struct
from dataclasses import dataclass

KEY_TEMPLATE_FMT = "=16s14sBB16s32s"
KEY_TEMPLATE_SIZE = struct.calcsize(KEY_TEMPLATE_FMT)  # 80
MASTER_KEYS_SIZE = KEY_TEMPLATE_SIZE * 2               # 160

MAX_MAGIC_SIZE = 16


@dataclass(frozen=True)
class InternalKeyTemplate:
    """One half of the master key file."""
    hmac_key: bytes
    type_string: bytes
    rfu: int
    magic_size: int
    magic_bytes: bytes
    xor_pad: bytes

    @classmethod
    def from_bytes(cls, data: bytes) -> "InternalKeyTemplate":
        if len(data) != KEY_TEMPLATE_SIZE:
            raise ValueError(f"Key template must be {KEY_TEMPLATE_SIZE} bytes, got {len(data)}")
        template = cls(*struct.unpack(KEY_TEMPLATE_FMT, data))
        if template.magic_size > MAX_MAGIC_SIZE:
            raise ValueError(f"Invalid magic size {template.magic_size}")
        return template

    def to_bytes(self) -> bytes:
        return struct.pack(
            KEY_TEMPLATE_FMT,
            self.hmac_key,
            self.type_string,
            self.rfu,
            self.magic_size,
            self.magic_bytes,
            self.xor_pad,
        )

    @property
    def type_prefix(self) -> bytes:
        """The type string up to and including its NUL terminator."""
        end = self.type_string.find(b"\x00")
        if end < 0:
            return self.type_string
        return self.type_string[:end + 1]


@dataclass(frozen=True)
class AmiiboMasterKeys:
    """Both key templates, loaded together."""
    data: InternalKeyTemplate
    tag: InternalKeyTemplate

    @classmethod
    def from_bytes(cls, data: bytes) -> "AmiiboMasterKeys":
        if len(data) != MASTER_KEYS_SIZE:
            raise ValueError(f"Master keys must be {MASTER_KEYS_SIZE} bytes, got {len(data)}")
        return cls(
            data=InternalKeyTemplate.from_bytes(data[:KEY_TEMPLATE_SIZE]),
            tag=InternalKeyTemplate.from_bytes(data[KEY_TEMPLATE_SIZE:]),
        )

    def to_bytes(self) -> bytes:
        return self.data.to_bytes() + self.tag.to_bytes()
