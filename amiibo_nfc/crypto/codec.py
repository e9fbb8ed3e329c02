"""
Amiibo tag image codec.

Validates the unencrypted structure of a 540-byte NTAG215 dump, and converts
between the encrypted tag image and the decoded AmiiboData using the
master key templates:

    decode: relayout -> derive keys -> AES-CTR decrypt -> verify both HMACs
    encode: compute both HMACs -> AES-CTR encrypt -> relayout

The tag HMAC covers the UID, model info and keygen salt. The data HMAC
covers the write counter through the application area, the tag HMAC and
the same UID/model/salt block, so the two are chained.
"""

import hmac
import logging

try:
    from Cryptodome.Cipher import AES
    from Cryptodome.Hash import HMAC, SHA256
except ImportError:
    from Crypto.Cipher import AES
    from Crypto.Hash import HMAC, SHA256

from ..tag import ntag215 as nt
from ..tag.amiibo_format import AmiiboData, RawTagImage, build_internal, parse_internal
from .kdf import DerivedKeySet, derive_keys
from .keys import AmiiboMasterKeys

logger = logging.getLogger(__name__)


class NotAnAmiiboError(ValueError):
    """The image fails structural validation."""

    def __init__(self, reason: str):
        super().__init__(f"Not an amiibo: {reason}")
        self.reason = reason


class AmiiboHMACError(ValueError):
    """A recomputed HMAC does not match the stored one."""


class AmiiboHMACTagError(AmiiboHMACError):
    pass


class AmiiboHMACDataError(AmiiboHMACError):
    pass


# ──────────────────────────────────────────────
# Structural validation
# ──────────────────────────────────────────────

def validate_amiibo(data: bytes) -> RawTagImage:
    """
    Check every unencrypted constant of a raw amiibo image.

    Args:
        data: 540-byte raw tag image.

    Returns:
        The image wrapped as RawTagImage.

    Raises:
        NotAnAmiiboError: Describing the first check that failed.
    """
    if len(data) != nt.TOTAL_BYTES:
        raise NotAnAmiiboError(f"expected {nt.TOTAL_BYTES} bytes, got {len(data)}")

    image = RawTagImage(bytes(data))
    uid = image.uid
    logger.debug(
        f"Validating tag {uid.hex().upper()}: lock=0x{image.static_lock:04X} "
        f"cc=0x{image.capability_container:08X} cfg0=0x{image.cfg0:08X} cfg1=0x{image.cfg1:08X}"
    )

    if nt.CASCADE_TAG ^ uid[0] ^ uid[1] ^ uid[2] != uid[3]:
        raise NotAnAmiiboError("UID check byte 0 mismatch")
    if uid[4] ^ uid[5] ^ uid[6] ^ uid[7] != uid[8]:
        raise NotAnAmiiboError("UID check byte 1 mismatch")
    if image.static_lock != nt.STATIC_LOCK_VALUE:
        raise NotAnAmiiboError(f"static lock 0x{image.static_lock:04X}")
    if image.capability_container != nt.CAPABILITY_CONTAINER_VALUE:
        raise NotAnAmiiboError(f"capability container 0x{image.capability_container:08X}")
    if image.constant_value != nt.USER_MEMORY_CONSTANT:
        raise NotAnAmiiboError(f"constant value 0x{image.constant_value:02X}")
    if image.model_info.constant_value != nt.MODEL_INFO_CONSTANT:
        raise NotAnAmiiboError(f"model info constant 0x{image.model_info.constant_value:02X}")
    if image.cfg0 != nt.CFG0_VALUE:
        raise NotAnAmiiboError(f"CFG0 0x{image.cfg0:08X}")
    if image.cfg1 != nt.CFG1_VALUE:
        raise NotAnAmiiboError(f"CFG1 0x{image.cfg1:08X}")

    return image


def is_amiibo_valid(data: bytes) -> bool:
    """True when the image passes every structural check."""
    try:
        validate_amiibo(data)
    except NotAnAmiiboError as e:
        logger.info(f"Structural validation failed: {e.reason}")
        return False
    return True


# ──────────────────────────────────────────────
# Cipher and HMACs (internal layout)
# ──────────────────────────────────────────────

def _apply_cipher(keys: DerivedKeySet, internal: bytes) -> bytes:
    """AES-128-CTR over the encrypted range. Encrypt and decrypt are the same."""
    cipher = AES.new(keys.aes_key, AES.MODE_CTR, nonce=b"", initial_value=keys.aes_iv)
    out = bytearray(internal)
    out[nt.ENCRYPTED_START:nt.ENCRYPTED_END] = cipher.encrypt(
        bytes(internal[nt.ENCRYPTED_START:nt.ENCRYPTED_END])
    )
    return bytes(out)


def _hmac_sha256(key: bytes, data: bytes) -> bytes:
    return HMAC.new(key, data, digestmod=SHA256).digest()


def compute_tag_hmac(tag_keys: DerivedKeySet, internal: bytes) -> bytes:
    """HMAC over UID, model info and keygen salt."""
    return _hmac_sha256(
        tag_keys.hmac_key,
        internal[nt.TAG_HMAC_INPUT_START:nt.TAG_HMAC_INPUT_END],
    )


def compute_data_hmac(data_keys: DerivedKeySet, internal: bytes, tag_hmac: bytes) -> bytes:
    """HMAC over the plaintext user data, the tag HMAC and the UID block."""
    message = (
        bytes(internal[nt.DATA_HMAC_INPUT_START:nt.INTERNAL_HMAC_TAG])
        + tag_hmac
        + bytes(internal[nt.TAG_HMAC_INPUT_START:nt.TAG_HMAC_INPUT_END])
    )
    return _hmac_sha256(data_keys.hmac_key, message)


# ──────────────────────────────────────────────
# Decode / encode
# ──────────────────────────────────────────────

def decrypt_internal(raw: bytes, keys: AmiiboMasterKeys) -> bytes:
    """
    Decrypt a raw image into verified internal-layout plaintext.

    Raises:
        ValueError: Wrong image size.
        AmiiboHMACTagError: The tag HMAC does not match.
        AmiiboHMACDataError: The data HMAC does not match.
    """
    internal = nt.tag_to_internal(raw)
    data_keys = derive_keys(keys.data, internal)
    tag_keys = derive_keys(keys.tag, internal)

    plain = _apply_cipher(data_keys, internal)

    tag_hmac = compute_tag_hmac(tag_keys, plain)
    stored_tag_hmac = plain[nt.INTERNAL_HMAC_TAG:nt.INTERNAL_HMAC_TAG + nt.HMAC_SIZE]
    if not hmac.compare_digest(tag_hmac, stored_tag_hmac):
        raise AmiiboHMACTagError("Tag HMAC mismatch")

    data_hmac = compute_data_hmac(data_keys, plain, tag_hmac)
    stored_data_hmac = plain[nt.INTERNAL_HMAC_DATA:nt.INTERNAL_HMAC_DATA + nt.HMAC_SIZE]
    if not hmac.compare_digest(data_hmac, stored_data_hmac):
        raise AmiiboHMACDataError("Data HMAC mismatch")

    return plain


def encrypt_internal(internal: bytes, keys: AmiiboMasterKeys) -> bytes:
    """Sign and encrypt internal-layout plaintext into a raw image."""
    if len(internal) != nt.TOTAL_BYTES:
        raise ValueError(f"Expected {nt.TOTAL_BYTES} bytes, got {len(internal)}")

    data_keys = derive_keys(keys.data, internal)
    tag_keys = derive_keys(keys.tag, internal)

    signed = bytearray(internal)
    tag_hmac = compute_tag_hmac(tag_keys, signed)
    signed[nt.INTERNAL_HMAC_TAG:nt.INTERNAL_HMAC_TAG + nt.HMAC_SIZE] = tag_hmac
    data_hmac = compute_data_hmac(data_keys, signed, tag_hmac)
    signed[nt.INTERNAL_HMAC_DATA:nt.INTERNAL_HMAC_DATA + nt.HMAC_SIZE] = data_hmac

    return nt.internal_to_tag(_apply_cipher(data_keys, bytes(signed)))


def decode_amiibo(raw: bytes, keys: AmiiboMasterKeys) -> AmiiboData:
    """
    Decode an encrypted tag image.

    Args:
        raw: 540-byte raw tag image.
        keys: Master key templates.

    Returns:
        The verified, decrypted AmiiboData.
    """
    return parse_internal(decrypt_internal(raw, keys))


def encode_amiibo(tag: AmiiboData, keys: AmiiboMasterKeys) -> bytes:
    """
    Encode AmiiboData into an encrypted raw tag image.

    The stored HMAC fields of ``tag`` are ignored and regenerated.
    """
    return encrypt_internal(build_internal(tag), keys)
