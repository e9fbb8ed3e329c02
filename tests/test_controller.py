"""Tests for the tag device state machine and its accessors."""

import struct

import pytest

from amiibo_nfc.crypto.codec import decode_amiibo, encode_amiibo
from amiibo_nfc.device.controller import TagDeviceController
from amiibo_nfc.device.mii import standard_mii
from amiibo_nfc.device.results import ResultCode
from amiibo_nfc.device.types import AppAreaVersion, DeviceState, MountTarget, TagProtocol
from amiibo_nfc.storage.key_store import KeyStore
from amiibo_nfc.tag.amiibo_format import pack_amiibo_date
from amiibo_nfc.tag.checksum import crc16_ccitt, crc32
from amiibo_nfc.tag.ntag215 import RAW_APPLICATION_AREA, RAW_HMAC_DATA, RAW_HMAC_TAG, TOTAL_BYTES

from conftest import PROGRAM_ID, SERIAL, STORED_AREA_ID, TODAY, make_app_amiibo


def make_mounted(controller, raw, target=MountTarget.READ_WRITE, writer=None):
    controller.initialize()
    assert controller.start_detection(TagProtocol.ALL) == ResultCode.SUCCESS
    assert controller.load_tag(raw, writer)
    assert controller.mount(target) == ResultCode.SUCCESS
    return controller


def drive_to(controller, state, raw):
    """Walk a fresh controller into one of the non-mounted states."""
    if state == DeviceState.UNAVAILABLE:
        return controller
    controller.initialize()
    if state == DeviceState.INITIALIZED:
        return controller
    controller.start_detection()
    if state == DeviceState.SEARCHING_FOR_TAG:
        return controller
    controller.load_tag(raw)
    if state == DeviceState.TAG_FOUND:
        return controller
    controller.close_tag()
    assert controller.state == DeviceState.TAG_REMOVED
    return controller


def code_of(result):
    return result[0] if isinstance(result, tuple) else result


MOUNTED_OPERATIONS = {
    "unmount": lambda c: c.unmount(),
    "flush": lambda c: c.flush(),
    "open_application_area": lambda c: c.open_application_area(STORED_AREA_ID),
    "get_application_area_id": lambda c: c.get_application_area_id(),
    "get_application_area": lambda c: c.get_application_area(),
    "set_application_area": lambda c: c.set_application_area(b"x"),
    "create_application_area": lambda c: c.create_application_area(1, b"x"),
    "recreate_application_area": lambda c: c.recreate_application_area(1, b"x"),
    "delete_application_area": lambda c: c.delete_application_area(),
    "application_area_exist": lambda c: c.application_area_exist(),
    "get_register_info": lambda c: c.get_register_info(),
    "set_register_info": lambda c: c.set_register_info("Mario"),
    "delete_register_info": lambda c: c.delete_register_info(),
    "get_admin_info": lambda c: c.get_admin_info(),
    "get_common_info": lambda c: c.get_common_info(),
    "format": lambda c: c.format(),
}

UNMOUNTED_STATES = [
    DeviceState.UNAVAILABLE,
    DeviceState.INITIALIZED,
    DeviceState.SEARCHING_FOR_TAG,
    DeviceState.TAG_FOUND,
    DeviceState.TAG_REMOVED,
]


class TestStateGates:
    @pytest.mark.parametrize("state", UNMOUNTED_STATES)
    @pytest.mark.parametrize("name", sorted(MOUNTED_OPERATIONS))
    def test_mounted_operations_rejected(self, controller, app_raw, state, name):
        drive_to(controller, state, app_raw)
        expected = ResultCode.TAG_REMOVED if state == DeviceState.TAG_REMOVED else ResultCode.WRONG_DEVICE_STATE
        assert code_of(MOUNTED_OPERATIONS[name](controller)) == expected
        assert controller.state == state

    @pytest.mark.parametrize("state", UNMOUNTED_STATES)
    def test_mount_only_from_tag_found(self, controller, app_raw, state):
        drive_to(controller, state, app_raw)
        result = controller.mount(MountTarget.READ_WRITE)
        if state == DeviceState.TAG_FOUND:
            assert result == ResultCode.SUCCESS
        elif state == DeviceState.TAG_REMOVED:
            assert result == ResultCode.TAG_REMOVED
        else:
            assert result == ResultCode.WRONG_DEVICE_STATE

    @pytest.mark.parametrize("state", UNMOUNTED_STATES)
    def test_start_detection(self, controller, app_raw, state):
        drive_to(controller, state, app_raw)
        result = controller.start_detection(TagProtocol.TYPE_A)
        if state in (DeviceState.INITIALIZED, DeviceState.TAG_REMOVED):
            assert result == ResultCode.SUCCESS
            assert controller.state == DeviceState.SEARCHING_FOR_TAG
            assert controller.allowed_protocol == TagProtocol.TYPE_A
        else:
            assert result == ResultCode.WRONG_DEVICE_STATE

    @pytest.mark.parametrize("state", UNMOUNTED_STATES)
    def test_load_tag_only_when_searching(self, controller, app_raw, state):
        drive_to(controller, state, app_raw)
        assert controller.load_tag(app_raw) == (state == DeviceState.SEARCHING_FOR_TAG)

    @pytest.mark.parametrize("state", UNMOUNTED_STATES)
    def test_close_tag(self, controller, app_raw, state):
        drive_to(controller, state, app_raw)
        assert controller.close_tag() == (state == DeviceState.TAG_FOUND)

    def test_stop_detection_unavailable(self, controller):
        assert controller.stop_detection() == ResultCode.WRONG_DEVICE_STATE

    def test_stop_detection_when_initialized(self, controller):
        controller.initialize()
        assert controller.stop_detection() == ResultCode.SUCCESS
        assert controller.state == DeviceState.INITIALIZED

    def test_load_tag_wrong_size(self, controller, app_raw):
        drive_to(controller, DeviceState.SEARCHING_FOR_TAG, app_raw)
        assert not controller.load_tag(app_raw[:-1])
        assert controller.state == DeviceState.SEARCHING_FOR_TAG

    def test_tag_info_readable_before_mount(self, controller, app_raw):
        drive_to(controller, DeviceState.TAG_FOUND, app_raw)
        code, info = controller.get_tag_info()
        assert code == ResultCode.SUCCESS
        assert info.uid == SERIAL
        assert info.uid_length == 7
        code, model = controller.get_model_info()
        assert code == ResultCode.SUCCESS
        assert model.model_number == 0x0002

    def test_tag_info_after_removal(self, controller, app_raw):
        drive_to(controller, DeviceState.TAG_REMOVED, app_raw)
        assert controller.get_tag_info() == (ResultCode.TAG_REMOVED, None)
        assert controller.raw_image == app_raw


class TestLifecycle:
    def test_presence_signals(self, controller, app_raw):
        drive_to(controller, DeviceState.TAG_FOUND, app_raw)
        assert controller.activate_event.is_signaled()
        assert not controller.deactivate_event.is_signaled()
        controller.close_tag()
        assert not controller.activate_event.is_signaled()
        assert controller.deactivate_event.is_signaled()

    def test_signal_consumed_by_wait(self, controller, app_raw):
        drive_to(controller, DeviceState.TAG_FOUND, app_raw)
        assert controller.activate_event.wait(0)
        assert not controller.activate_event.is_signaled()

    def test_stop_detection_closes_mounted_tag(self, controller, app_raw):
        make_mounted(controller, app_raw)
        assert controller.stop_detection() == ResultCode.SUCCESS
        assert controller.state == DeviceState.INITIALIZED
        assert controller.deactivate_event.is_signaled()
        assert controller.decoded_image is None

    def test_finalize_from_mounted(self, controller, app_raw):
        make_mounted(controller, app_raw)
        assert controller.finalize() == ResultCode.SUCCESS
        assert controller.state == DeviceState.UNAVAILABLE
        assert controller.raw_image is None
        assert controller.decoded_image is None
        assert controller.deactivate_event.is_signaled()

    def test_initialize_resets_images(self, controller, app_raw):
        make_mounted(controller, app_raw)
        controller.initialize()
        assert controller.state == DeviceState.INITIALIZED
        assert controller.raw_image is None
        assert controller.mount_target == MountTarget.NONE

    @pytest.mark.parametrize("state", [DeviceState.TAG_FOUND, DeviceState.TAG_MOUNTED])
    def test_initialize_lifts_present_tag(self, controller, app_raw, state):
        drive_to(controller, DeviceState.TAG_FOUND, app_raw)
        if state == DeviceState.TAG_MOUNTED:
            controller.mount(MountTarget.READ_WRITE)
        controller.initialize()
        assert controller.state == DeviceState.INITIALIZED
        assert controller.raw_image is None
        assert not controller.activate_event.is_signaled()
        assert controller.deactivate_event.is_signaled()

    def test_initialize_while_searching(self, controller, app_raw):
        drive_to(controller, DeviceState.SEARCHING_FOR_TAG, app_raw)
        controller.initialize()
        assert not controller.activate_event.is_signaled()

    def test_unmount_drops_decoded_image(self, controller, app_raw):
        make_mounted(controller, app_raw)
        assert controller.decoded_image is not None
        assert controller.unmount() == ResultCode.SUCCESS
        assert controller.state == DeviceState.TAG_FOUND
        assert controller.decoded_image is None
        assert controller.mount(MountTarget.READ_WRITE) == ResultCode.SUCCESS


class TestMount:
    def test_not_an_amiibo(self, controller):
        drive_to(controller, DeviceState.TAG_FOUND, bytes(TOTAL_BYTES))
        assert controller.mount(MountTarget.READ_WRITE) == ResultCode.NOT_AN_AMIIBO
        assert controller.state == DeviceState.TAG_FOUND

    @pytest.mark.parametrize("offset", [RAW_APPLICATION_AREA, RAW_HMAC_TAG, RAW_HMAC_DATA])
    def test_corrupted_data(self, controller, app_raw, offset):
        data = bytearray(app_raw)
        data[offset] ^= 0xFF
        drive_to(controller, DeviceState.TAG_FOUND, bytes(data))
        assert controller.mount(MountTarget.READ_WRITE) == ResultCode.CORRUPTED_DATA
        assert controller.state == DeviceState.TAG_FOUND

    def test_invalid_key_file(self, tmp_path, app_raw):
        path = tmp_path / "bad_keys.bin"
        path.write_bytes(bytes(100))
        controller = TagDeviceController(KeyStore(path))
        drive_to(controller, DeviceState.TAG_FOUND, app_raw)
        assert controller.mount(MountTarget.READ_WRITE) == ResultCode.CORRUPTED_DATA

    def test_read_only_mount_with_keys(self, controller, app_raw):
        make_mounted(controller, app_raw, MountTarget.READ_ONLY)
        assert controller.mount_target == MountTarget.READ_ONLY
        assert code_of(controller.get_common_info()) == ResultCode.SUCCESS
        assert controller.open_application_area(STORED_AREA_ID) == ResultCode.SUCCESS
        assert controller.set_application_area(b"x") == ResultCode.WRONG_DEVICE_STATE
        assert controller.set_register_info("Mario") == ResultCode.WRONG_DEVICE_STATE
        assert controller.flush() == ResultCode.WRONG_DEVICE_STATE


class TestNoKeyStore:
    @pytest.fixture
    def keyless(self, tmp_path, app_raw):
        controller = TagDeviceController(KeyStore(tmp_path / "missing.bin"))
        return make_mounted(controller, app_raw, MountTarget.READ_WRITE)

    def test_mounts_read_only(self, keyless):
        assert keyless.state == DeviceState.TAG_MOUNTED
        assert keyless.mount_target == MountTarget.READ_ONLY
        assert keyless.decoded_image is None

    @pytest.mark.parametrize("name", sorted(set(MOUNTED_OPERATIONS) - {"unmount"}))
    def test_every_accessor_rejected(self, keyless, name):
        assert code_of(MOUNTED_OPERATIONS[name](keyless)) == ResultCode.WRONG_DEVICE_STATE

    def test_tag_info_still_available(self, keyless):
        assert code_of(keyless.get_tag_info()) == ResultCode.SUCCESS

    def test_unmount(self, keyless):
        assert keyless.unmount() == ResultCode.SUCCESS
        assert keyless.state == DeviceState.TAG_FOUND


class TestApplicationArea:
    def test_open_scenario(self, controller, app_raw):
        make_mounted(controller, app_raw)
        assert controller.open_application_area(0x12345678) == ResultCode.WRONG_APPLICATION_AREA_ID
        assert controller.open_application_area(STORED_AREA_ID) == ResultCode.SUCCESS

        payload = bytes(range(64))
        assert controller.set_application_area(payload) == ResultCode.SUCCESS
        code, data = controller.get_application_area()
        assert code == ResultCode.SUCCESS
        assert len(data) == 216
        assert data[:64] == payload

    def test_random_padding(self, controller, app_raw):
        make_mounted(controller, app_raw)
        controller.open_application_area(STORED_AREA_ID)
        payload = b"short"
        controller.set_application_area(payload)
        first = controller.get_application_area()[1]
        controller.set_application_area(payload)
        second = controller.get_application_area()[1]
        assert first[:5] == second[:5] == payload
        assert first[5:] != second[5:]
        assert first[5:] != bytes(211)

    def test_get_requires_open(self, controller, app_raw):
        make_mounted(controller, app_raw)
        assert controller.get_application_area() == (ResultCode.WRONG_DEVICE_STATE, None)
        assert controller.set_application_area(b"x") == ResultCode.WRONG_DEVICE_STATE

    def test_oversized_payload(self, controller, app_raw):
        make_mounted(controller, app_raw)
        controller.open_application_area(STORED_AREA_ID)
        assert controller.set_application_area(bytes(217)) == ResultCode.WRONG_APPLICATION_AREA_SIZE
        assert controller.set_application_area(bytes(216)) == ResultCode.SUCCESS

    def test_not_initialized(self, controller, blank_raw):
        make_mounted(controller, blank_raw)
        assert controller.open_application_area(0) == ResultCode.APPLICATION_AREA_IS_NOT_INITIALIZED
        assert controller.get_application_area_id() == (ResultCode.APPLICATION_AREA_IS_NOT_INITIALIZED, None)
        assert controller.delete_application_area() == ResultCode.APPLICATION_AREA_IS_NOT_INITIALIZED
        assert controller.application_area_exist() == (ResultCode.SUCCESS, False)

    def test_create(self, controller, blank_raw):
        written = []
        make_mounted(controller, blank_raw, writer=written.append)
        assert controller.create_application_area(0x1234, b"save") == ResultCode.SUCCESS
        assert len(written) == 1
        assert controller.application_area_exist() == (ResultCode.SUCCESS, True)
        assert controller.get_application_area_id() == (ResultCode.SUCCESS, 0x1234)
        assert controller.create_application_area(0x1234, b"again") == ResultCode.APPLICATION_AREA_EXIST

        assert controller.open_application_area(0x1234) == ResultCode.SUCCESS
        assert controller.get_application_area()[1][:4] == b"save"

    def test_create_records_program(self, controller, blank_raw):
        make_mounted(controller, blank_raw, writer=lambda data: None)
        controller.create_application_area(0x1234, b"")
        tag = controller.decoded_image
        assert tag.application_id_byte == 0x7
        assert tag.application_id == 0x0104000020030800

        code, admin = controller.get_admin_info()
        assert code == ResultCode.SUCCESS
        assert admin.application_id == PROGRAM_ID
        assert admin.application_area_id == 0x1234
        assert admin.app_area_version == AppAreaVersion.NINTENDO_3DS_V2

    def test_recreate_while_open(self, controller, app_raw):
        make_mounted(controller, app_raw, writer=lambda data: None)
        controller.open_application_area(STORED_AREA_ID)
        assert controller.recreate_application_area(1, b"x") == ResultCode.WRONG_DEVICE_STATE

    def test_create_over_open_area(self, controller, app_raw):
        make_mounted(controller, app_raw, writer=lambda data: None)
        controller.open_application_area(STORED_AREA_ID)
        assert controller.create_application_area(1, b"x") == ResultCode.APPLICATION_AREA_EXIST

    def test_recreate_oversized(self, controller, app_raw):
        make_mounted(controller, app_raw, writer=lambda data: None)
        assert controller.recreate_application_area(1, bytes(300)) == ResultCode.WRONG_APPLICATION_AREA_SIZE

    def test_delete(self, controller, app_raw):
        written = []
        make_mounted(controller, app_raw, writer=written.append)
        controller.open_application_area(STORED_AREA_ID)
        assert controller.delete_application_area() == ResultCode.SUCCESS
        assert not controller.is_app_area_open
        assert controller.application_area_exist() == (ResultCode.SUCCESS, False)
        assert controller.decoded_image.application_area != bytes([0x11]) * 216
        assert len(written) == 1

    def test_register_info_crc(self, controller, blank_raw):
        make_mounted(controller, blank_raw, writer=lambda data: None)
        controller.create_application_area(0x1234, b"data")
        tag = controller.decoded_image
        expected = crc32(
            tag.owner_mii + bytes(2) + struct.pack("<H", tag.owner_mii_crc)
            + bytes([tag.application_id_byte, tag.unknown]) + tag.mii_extension + tag.unknown2
        )
        assert tag.register_info_crc == expected


class TestRegisterInfo:
    def test_not_registered(self, controller, blank_raw):
        make_mounted(controller, blank_raw)
        assert controller.get_register_info() == (ResultCode.REGISTRATION_IS_NOT_INITIALIZED, None)
        assert controller.delete_register_info() == ResultCode.REGISTRATION_IS_NOT_INITIALIZED

    def test_set_register_info(self, controller, blank_raw, master_keys):
        written = []
        make_mounted(controller, blank_raw, writer=written.append)
        assert controller.set_register_info("Mario") == ResultCode.SUCCESS

        code, info = controller.get_register_info()
        assert code == ResultCode.SUCCESS
        assert info.nickname == "Mario"
        assert info.mii_data == standard_mii()
        assert info.creation_date == TODAY
        assert info.font_region == 0

        tag = controller.decoded_image
        assert tag.owner_mii_crc == crc16_ccitt(standard_mii() + bytes(2))

        persisted = decode_amiibo(written[-1], master_keys)
        assert persisted.settings.nickname == "Mario"
        assert persisted.settings.amiibo_initialized
        assert persisted.write_counter == 1

    def test_custom_mii(self, controller, blank_raw):
        make_mounted(controller, blank_raw, writer=lambda data: None)
        mii = bytes(range(92))
        assert controller.set_register_info("Zelda", mii) == ResultCode.SUCCESS
        assert controller.get_register_info()[1].mii_data == mii

    def test_wrong_mii_size(self, controller, blank_raw):
        make_mounted(controller, blank_raw, writer=lambda data: None)
        with pytest.raises(ValueError):
            controller.set_register_info("Zelda", bytes(10))

    def test_delete_register_info(self, controller, blank_raw):
        make_mounted(controller, blank_raw, writer=lambda data: None)
        controller.set_register_info("Mario")
        assert controller.delete_register_info() == ResultCode.SUCCESS
        assert controller.get_register_info() == (ResultCode.REGISTRATION_IS_NOT_INITIALIZED, None)
        assert controller.decoded_image.owner_mii != standard_mii()

    def test_admin_flags(self, controller, blank_raw):
        make_mounted(controller, blank_raw, writer=lambda data: None)
        assert controller.get_admin_info()[1].flags == 0
        controller.set_register_info("Mario")
        admin = controller.get_admin_info()[1]
        assert admin.flags == 0x1
        assert admin.app_area_version == AppAreaVersion.NOT_SET
        assert admin.application_id == 0

    def test_common_info(self, controller, blank_raw):
        make_mounted(controller, blank_raw, writer=lambda data: None)
        controller.set_register_info("Mario")
        code, info = controller.get_common_info()
        assert code == ResultCode.SUCCESS
        assert info.last_write_date == TODAY
        assert info.write_counter == 1
        assert info.application_area_size == 216

    def test_format(self, controller, blank_raw):
        make_mounted(controller, blank_raw, writer=lambda data: None)
        controller.set_register_info("Mario")
        controller.create_application_area(0x1234, b"data")
        assert controller.format() == ResultCode.SUCCESS
        assert controller.application_area_exist() == (ResultCode.SUCCESS, False)
        assert code_of(controller.get_register_info()) == ResultCode.REGISTRATION_IS_NOT_INITIALIZED

    def test_format_blank(self, controller, blank_raw):
        make_mounted(controller, blank_raw, writer=lambda data: None)
        assert controller.format() == ResultCode.APPLICATION_AREA_IS_NOT_INITIALIZED


class TestFlush:
    def test_updates_counters_and_date(self, controller, app_raw, master_keys):
        written = []
        make_mounted(controller, app_raw, writer=written.append)
        assert controller.flush() == ResultCode.SUCCESS
        tag = controller.decoded_image
        assert tag.write_counter == 1
        assert tag.settings.write_date == pack_amiibo_date(TODAY)
        assert tag.settings.crc_counter == 1
        assert tag.settings.crc == crc32(bytes(8))
        assert controller.raw_image == written[0]

        # Same day: the settings CRC counter is left alone
        assert controller.flush() == ResultCode.SUCCESS
        tag = controller.decoded_image
        assert tag.write_counter == 2
        assert tag.settings.crc_counter == 1
        assert decode_amiibo(written[1], master_keys).write_counter == 2

    def test_counter_saturates(self, controller, master_keys):
        source = make_app_amiibo()
        source.write_counter = 0xFFFF
        source.application_write_counter = 0xFFFF
        source.settings.crc_counter = 0xFFFF
        raw = encode_amiibo(source, master_keys)

        make_mounted(controller, raw, writer=lambda data: None)
        controller.open_application_area(STORED_AREA_ID)
        controller.set_application_area(b"data")
        assert controller.flush() == ResultCode.SUCCESS
        tag = controller.decoded_image
        assert tag.write_counter == 0xFFFF
        assert tag.application_write_counter == 0xFFFF
        assert tag.settings.crc_counter == 0xFFFF

    def test_without_writer(self, controller, app_raw):
        make_mounted(controller, app_raw)
        assert controller.flush() == ResultCode.WRITE_AMIIBO_FAILED

    def test_writer_error(self, controller, app_raw):
        def failing_writer(data):
            raise OSError("disk full")

        make_mounted(controller, app_raw, writer=failing_writer)
        assert controller.flush() == ResultCode.WRITE_AMIIBO_FAILED

    def test_failed_flush_leaves_image_untouched(self, controller, app_raw, master_keys):
        written = []

        def flaky_writer(data):
            if not written:
                written.append(None)
                raise OSError("device busy")
            written.append(data)

        make_mounted(controller, app_raw, writer=flaky_writer)
        assert controller.flush() == ResultCode.WRITE_AMIIBO_FAILED
        assert controller.raw_image == app_raw
        assert controller.decoded_image.write_counter == 0
        assert controller.decoded_image.settings.crc_counter == 0

        assert controller.flush() == ResultCode.SUCCESS
        assert controller.decoded_image.write_counter == 1
        assert controller.decoded_image.settings.crc_counter == 1
        assert controller.raw_image == written[1]
        assert decode_amiibo(written[1], master_keys).write_counter == 1

    def test_keys_removed_after_mount(self, controller, app_raw, key_file):
        make_mounted(controller, app_raw, writer=lambda data: None)
        key_file.unlink()
        assert controller.flush() == ResultCode.WRITE_AMIIBO_FAILED

    def test_unmount_flushes_dirty_image(self, controller, app_raw):
        written = []
        make_mounted(controller, app_raw, writer=written.append)
        controller.open_application_area(STORED_AREA_ID)
        controller.set_application_area(b"dirty")
        assert controller.is_data_modified
        assert controller.unmount() == ResultCode.SUCCESS
        assert len(written) == 1

    def test_unmount_survives_failed_flush(self, controller, app_raw):
        make_mounted(controller, app_raw)
        controller.open_application_area(STORED_AREA_ID)
        controller.set_application_area(b"dirty")
        assert controller.unmount() == ResultCode.SUCCESS
        assert controller.state == DeviceState.TAG_FOUND
