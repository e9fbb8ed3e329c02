"""Shared fixtures: deterministic fake master keys and encoded test amiibo."""

from datetime import date

import pytest

from amiibo_nfc.crypto.codec import encode_amiibo
from amiibo_nfc.crypto.keys import AmiiboMasterKeys, InternalKeyTemplate
from amiibo_nfc.device.controller import TagDeviceController
from amiibo_nfc.storage.key_store import KeyStore
from amiibo_nfc.tag.amiibo_format import AmiiboData, AmiiboType, ModelInfo
from amiibo_nfc.tag.tag_builder import build_blank_amiibo

SERIAL = bytes.fromhex("04A1B2C3D4E5F6")
SALT = bytes(range(0x40, 0x60))
TODAY = date(2024, 5, 17)
STORED_AREA_ID = 0xAABBCCDD
PROGRAM_ID = 0x0104000070030800


def make_template(type_string: bytes, magic_size: int, seed: int) -> InternalKeyTemplate:
    """A fake key template; never the retail keys."""
    return InternalKeyTemplate(
        hmac_key=bytes((seed + i) & 0xFF for i in range(16)),
        type_string=type_string.ljust(14, b"\x00"),
        rfu=0,
        magic_size=magic_size,
        magic_bytes=bytes((seed * 3 + i) & 0xFF for i in range(16)),
        xor_pad=bytes((seed * 7 + i) & 0xFF for i in range(32)),
    )


def make_master_keys() -> AmiiboMasterKeys:
    return AmiiboMasterKeys(
        data=make_template(b"unfixed infos\x00", 14, 0x10),
        tag=make_template(b"locked secret\x00", 16, 0x20),
    )


def make_model_info() -> ModelInfo:
    return ModelInfo(
        character_id=0x0000,
        character_variant=0x00,
        amiibo_type=AmiiboType.FIGURE,
        model_number=0x0002,
        series=0x00,
    )


def make_blank_amiibo() -> AmiiboData:
    return build_blank_amiibo(SERIAL, make_model_info(), SALT)


def make_app_amiibo() -> AmiiboData:
    """A blank amiibo with an initialized application area."""
    tag = make_blank_amiibo()
    tag.settings.appdata_initialized = True
    tag.application_area_id = STORED_AREA_ID
    tag.application_area = bytes([0x11]) * 216
    return tag


@pytest.fixture
def master_keys() -> AmiiboMasterKeys:
    return make_master_keys()


@pytest.fixture
def key_file(tmp_path, master_keys):
    path = tmp_path / "key_retail.bin"
    path.write_bytes(master_keys.to_bytes())
    return path


@pytest.fixture
def blank_raw(master_keys) -> bytes:
    return encode_amiibo(make_blank_amiibo(), master_keys)


@pytest.fixture
def app_raw(master_keys) -> bytes:
    return encode_amiibo(make_app_amiibo(), master_keys)


@pytest.fixture
def controller(key_file) -> TagDeviceController:
    return TagDeviceController(KeyStore(key_file), clock=lambda: TODAY, program_id=PROGRAM_ID)
