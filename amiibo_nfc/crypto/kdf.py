"""
HMAC-SHA256 key derivation for amiibo (NTAG215) tags.

Every amiibo is encrypted with keys derived from its own UID, write counter
and keygen salt, mixed with one of the two master key templates. The
derivation builds an "internal key" from the template and a 64-byte seed,
then runs an HMAC-SHA256 counter-mode DRBG to produce 48 bytes:
AES key (16), AES IV (16) and HMAC key (16).

Reference: https://github.com/socram8888/amiitool
"""

import struct
from dataclasses import dataclass

try:
    from Cryptodome.Hash import HMAC, SHA256
except ImportError:
    from Crypto.Hash import HMAC, SHA256

from ..tag import ntag215 as nt
from .keys import InternalKeyTemplate

SEED_SIZE = 64
DERIVED_KEY_SIZE = 48
KEY_PART_SIZE = 16


@dataclass(frozen=True)
class DerivedKeySet:
    """Per-tag keys for one template. Never persisted."""
    aes_key: bytes
    aes_iv: bytes
    hmac_key: bytes

    @classmethod
    def from_bytes(cls, data: bytes) -> "DerivedKeySet":
        if len(data) != DERIVED_KEY_SIZE:
            raise ValueError(f"Derived key set must be {DERIVED_KEY_SIZE} bytes, got {len(data)}")
        return cls(
            aes_key=data[0:16],
            aes_iv=data[16:32],
            hmac_key=data[32:48],
        )


def hash_seed(internal: bytes) -> bytes:
    """
    Build the 64-byte HashSeed from an internal-layout image.

    Layout: write counter (2) | 14 zero bytes | UID[0:8] | UID[0:8] | salt (32).
    """
    write_counter = internal[nt.INTERNAL_WRITE_COUNTER:nt.INTERNAL_WRITE_COUNTER + 2]
    uid = internal[nt.INTERNAL_UID:nt.INTERNAL_UID + 8]
    salt = internal[nt.INTERNAL_KEYGEN_SALT:nt.INTERNAL_KEYGEN_SALT + nt.KEYGEN_SALT_SIZE]
    return bytes(write_counter) + bytes(14) + bytes(uid) + bytes(uid) + bytes(salt)


def prepare_internal_key(template: InternalKeyTemplate, seed: bytes) -> bytes:
    """
    Combine a key template with a HashSeed into the DRBG input.

    Args:
        template: Master key template ("data" or "tag").
        seed: 64-byte HashSeed.

    Returns:
        The internal key bytes fed to the DRBG.
    """
    if len(seed) != SEED_SIZE:
        raise ValueError(f"Seed must be {SEED_SIZE} bytes, got {len(seed)}")

    magic_size = template.magic_size
    salt = seed[0x20:0x40]
    xored = bytes(a ^ b for a, b in zip(salt, template.xor_pad))

    return (
        template.type_prefix
        + seed[:16 - magic_size]
        + template.magic_bytes[:magic_size]
        + seed[0x10:0x20]
        + xored
    )


def drbg(hmac_key: bytes, seed: bytes, length: int = DERIVED_KEY_SIZE) -> bytes:
    """HMAC-SHA256 counter-mode generator: HMAC(key, u16be(i) || seed) for i = 0, 1, ..."""
    output = b""
    iteration = 0
    while len(output) < length:
        mac = HMAC.new(hmac_key, digestmod=SHA256)
        mac.update(struct.pack(">H", iteration) + seed)
        output += mac.digest()
        iteration += 1
    return output[:length]


def derive_keys(template: InternalKeyTemplate, internal: bytes) -> DerivedKeySet:
    """
    Derive the per-tag key set for one template.

    Args:
        template: Master key template.
        internal: 540-byte image in internal layout.

    Returns:
        DerivedKeySet with AES key, AES IV and HMAC key.
    """
    seed = hash_seed(internal)
    internal_key = prepare_internal_key(template, seed)
    return DerivedKeySet.from_bytes(drbg(template.hmac_key, internal_key))

