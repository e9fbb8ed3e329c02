"""
Tag device controller — the amiibo reader/writer state machine.

Every operation is gated on the device state and, once a tag is mounted,
on the mount target and the amiibo's own initialization flags. Failures are
returned as ResultCode values; nothing raises past this boundary except
programming errors (bad argument types or sizes).

    UNAVAILABLE -> INITIALIZED -> SEARCHING_FOR_TAG -> TAG_FOUND <-> TAG_MOUNTED
                                                          |             |
                                                          +-> TAG_REMOVED <-+
"""

import copy
import logging
import struct
from datetime import date
from typing import Callable, Optional

try:
    from Cryptodome.Random import get_random_bytes
except ImportError:
    from Crypto.Random import get_random_bytes

from ..crypto.codec import AmiiboHMACError, NotAnAmiiboError, decode_amiibo, encode_amiibo, validate_amiibo
from ..storage.key_store import KeyStore, KeyStoreError
from ..tag import ntag215 as nt
from ..tag.amiibo_format import AmiiboData, ModelInfo, RawTagImage, pack_amiibo_date, unpack_amiibo_date
from ..tag.checksum import crc16_ccitt, crc32
from .events import PresenceEvent
from .mii import standard_mii
from .results import ResultCode
from .types import (
    AdminInfo,
    AppAreaVersion,
    CommonInfo,
    DeviceState,
    MountTarget,
    RegisterInfo,
    TagInfo,
    TagProtocol,
    TagType,
)

logger = logging.getLogger(__name__)

# Receives the encoded image on every successful flush
TagWriter = Callable[[bytes], None]

APPLICATION_ID_VERSION_OFFSET = 0x1C
SETTINGS_CRC_INPUT = bytes(8)


def _bump(counter: int) -> int:
    """Increment a tag counter, saturating at the ceiling."""
    if counter >= nt.COUNTER_LIMIT:
        return nt.COUNTER_LIMIT
    return counter + 1


def remove_version_byte(application_id: int) -> int:
    return application_id & ~(0xF << APPLICATION_ID_VERSION_OFFSET) & 0xFFFFFFFFFFFFFFFF


class TagDeviceController:
    """Emulates one NFC reader with at most one amiibo on it."""

    def __init__(
        self,
        key_store: KeyStore,
        clock: Callable[[], date] = date.today,
        program_id: Optional[int] = None,
        mii_provider: Callable[[], bytes] = standard_mii,
    ):
        self.key_store = key_store
        self.clock = clock
        self.program_id = program_id
        self.mii_provider = mii_provider

        self.activate_event = PresenceEvent("activate")
        self.deactivate_event = PresenceEvent("deactivate")

        self._state = DeviceState.UNAVAILABLE
        self._mount_target = MountTarget.NONE
        self._allowed_protocol = TagProtocol.NONE
        self._raw: Optional[bytes] = None
        self._tag: Optional[AmiiboData] = None
        self._writer: Optional[TagWriter] = None
        self._is_app_area_open = False
        self._is_data_modified = False

    # ──────────────────────────────────────────────
    # Read-only views
    # ──────────────────────────────────────────────

    @property
    def state(self) -> DeviceState:
        return self._state

    @property
    def mount_target(self) -> MountTarget:
        return self._mount_target

    @property
    def allowed_protocol(self) -> TagProtocol:
        return self._allowed_protocol

    @property
    def raw_image(self) -> Optional[bytes]:
        """The encrypted image; stale once the tag is removed."""
        return self._raw

    @property
    def decoded_image(self) -> Optional[AmiiboData]:
        return self._tag

    @property
    def is_app_area_open(self) -> bool:
        return self._is_app_area_open

    @property
    def is_data_modified(self) -> bool:
        return self._is_data_modified

    @property
    def application_area_size(self) -> int:
        return nt.APPLICATION_AREA_SIZE

    # ──────────────────────────────────────────────
    # Lifecycle
    # ──────────────────────────────────────────────

    def _reset_images(self) -> None:
        self._raw = None
        self._tag = None
        self._writer = None
        self._mount_target = MountTarget.NONE
        self._is_app_area_open = False
        self._is_data_modified = False

    def initialize(self) -> ResultCode:
        if self._state in (DeviceState.TAG_FOUND, DeviceState.TAG_MOUNTED):
            self.close_tag()
        self.activate_event.clear()
        self._reset_images()
        self._state = DeviceState.INITIALIZED
        logger.info("NFC device initialized")
        return ResultCode.SUCCESS

    def finalize(self) -> ResultCode:
        if self._state == DeviceState.TAG_MOUNTED:
            self.unmount()
        if self._state in (DeviceState.SEARCHING_FOR_TAG, DeviceState.TAG_FOUND, DeviceState.TAG_REMOVED):
            self.stop_detection()
        self._reset_images()
        self._state = DeviceState.UNAVAILABLE
        logger.info("NFC device finalized")
        return ResultCode.SUCCESS

    def start_detection(self, protocol: TagProtocol = TagProtocol.ALL) -> ResultCode:
        if self._state not in (DeviceState.INITIALIZED, DeviceState.TAG_REMOVED):
            logger.error(f"Wrong device state {self._state.name}")
            return ResultCode.WRONG_DEVICE_STATE

        self._allowed_protocol = TagProtocol(protocol)
        self._state = DeviceState.SEARCHING_FOR_TAG
        return ResultCode.SUCCESS

    def stop_detection(self) -> ResultCode:
        if self._state == DeviceState.UNAVAILABLE:
            logger.error(f"Wrong device state {self._state.name}")
            return ResultCode.WRONG_DEVICE_STATE

        if self._state in (DeviceState.TAG_FOUND, DeviceState.TAG_MOUNTED):
            self.close_tag()

        self._state = DeviceState.INITIALIZED
        return ResultCode.SUCCESS

    def load_tag(self, data: bytes, writer: Optional[TagWriter] = None) -> bool:
        """
        Place a tag on the reader.

        Args:
            data: 540-byte encrypted image.
            writer: Called with the encoded image on every flush.

        Returns:
            True when the tag was accepted.
        """
        if self._state != DeviceState.SEARCHING_FOR_TAG:
            logger.error(f"Game is not looking for amiibos, current state {self._state.name}")
            return False

        if len(data) != nt.TOTAL_BYTES:
            logger.error(f"Not an amiibo, invalid size {len(data)}")
            return False

        self._raw = bytes(data)
        self._tag = None
        self._writer = writer
        self._state = DeviceState.TAG_FOUND
        self.deactivate_event.clear()
        self.activate_event.signal()
        logger.info(f"Tag {RawTagImage(self._raw).serial.hex().upper()} placed on reader")
        return True

    def close_tag(self) -> bool:
        """Lift the tag off the reader, unmounting it first if needed."""
        if self._state not in (DeviceState.TAG_FOUND, DeviceState.TAG_MOUNTED):
            logger.warning(f"No tag to close, current state {self._state.name}")
            return False

        if self._state == DeviceState.TAG_MOUNTED:
            self.unmount()

        self._state = DeviceState.TAG_REMOVED
        self._tag = None
        self._writer = None
        self.activate_event.clear()
        self.deactivate_event.signal()
        logger.info("Tag removed from reader")
        return True

    def mount(self, target: MountTarget = MountTarget.READ_WRITE) -> ResultCode:
        if self._state != DeviceState.TAG_FOUND:
            logger.error(f"Wrong device state {self._state.name}")
            if self._state == DeviceState.TAG_REMOVED:
                return ResultCode.TAG_REMOVED
            return ResultCode.WRONG_DEVICE_STATE

        try:
            validate_amiibo(self._raw)
        except NotAnAmiiboError as e:
            logger.error(f"Not an amiibo: {e.reason}")
            return ResultCode.NOT_AN_AMIIBO

        if not self.key_store.is_available():
            logger.warning("No key file found, mounting tag as read only")
            self._tag = None
            self._mount_target = MountTarget.READ_ONLY
            self._state = DeviceState.TAG_MOUNTED
            return ResultCode.SUCCESS

        try:
            keys = self.key_store.load()
        except (KeyStoreError, OSError) as e:
            logger.error(f"Failed to load keys: {e}")
            return ResultCode.CORRUPTED_DATA

        try:
            self._tag = decode_amiibo(self._raw, keys)
        except (AmiiboHMACError, ValueError) as e:
            logger.error(f"Can't decode amiibo: {e}")
            return ResultCode.CORRUPTED_DATA

        self._mount_target = MountTarget(target)
        self._is_app_area_open = False
        self._is_data_modified = False
        self._state = DeviceState.TAG_MOUNTED
        logger.info(f"Mounted amiibo {self._tag.model_info.amiibo_id} as {self._mount_target.name}")
        return ResultCode.SUCCESS

    def unmount(self) -> ResultCode:
        if self._state != DeviceState.TAG_MOUNTED:
            logger.error(f"Wrong device state {self._state.name}")
            if self._state == DeviceState.TAG_REMOVED:
                return ResultCode.TAG_REMOVED
            return ResultCode.WRONG_DEVICE_STATE

        if self._is_data_modified and self._mount_target == MountTarget.READ_WRITE:
            result = self.flush()
            if not result.is_success:
                logger.error(f"Flush on unmount failed: {result.name}")

        self._state = DeviceState.TAG_FOUND
        self._mount_target = MountTarget.NONE
        self._is_app_area_open = False
        self._is_data_modified = False
        self._tag = None
        return ResultCode.SUCCESS

    def flush(self) -> ResultCode:
        """
        Re-encode the decoded image and hand it to the tag writer.

        Counters, dates and the held raw image change only once the writer
        has accepted the new image.
        """
        error = self._check_writable()
        if error is not None:
            return error

        if self._writer is None:
            logger.error("Tried to flush an amiibo that has no backing file")
            return ResultCode.WRITE_AMIIBO_FAILED

        tag = copy.deepcopy(self._tag)
        today = pack_amiibo_date(self.clock())
        if tag.settings.write_date != today:
            tag.settings.write_date = today
            tag.settings.crc_counter = _bump(tag.settings.crc_counter)
            tag.settings.crc = crc32(SETTINGS_CRC_INPUT)

        tag.write_counter = _bump(tag.write_counter)

        try:
            keys = self.key_store.load()
            encoded = encode_amiibo(tag, keys)
        except (KeyStoreError, OSError, ValueError) as e:
            logger.error(f"Failed to encode data: {e}")
            return ResultCode.WRITE_AMIIBO_FAILED

        try:
            self._writer(encoded)
        except OSError as e:
            logger.error(f"Could not write amiibo: {e}")
            return ResultCode.WRITE_AMIIBO_FAILED

        self._tag = tag
        self._raw = encoded
        self._is_data_modified = False
        return ResultCode.SUCCESS

    # ──────────────────────────────────────────────
    # Precondition chain
    # ──────────────────────────────────────────────

    def _check_state(self, *valid: DeviceState) -> Optional[ResultCode]:
        if self._state not in valid:
            logger.error(f"Wrong device state {self._state.name}")
            if self._state == DeviceState.TAG_REMOVED:
                return ResultCode.TAG_REMOVED
            return ResultCode.WRONG_DEVICE_STATE
        return None

    def _check_readable(self) -> Optional[ResultCode]:
        error = self._check_state(DeviceState.TAG_MOUNTED)
        if error is not None:
            return error
        if self._tag is None:
            logger.error("Amiibo is mounted without keys, data is not available")
            return ResultCode.WRONG_DEVICE_STATE
        return None

    def _check_writable(self) -> Optional[ResultCode]:
        error = self._check_readable()
        if error is not None:
            return error
        if self._mount_target != MountTarget.READ_WRITE:
            logger.error("Amiibo is read only")
            return ResultCode.WRONG_DEVICE_STATE
        return None

    def _check_app_area_initialized(self) -> Optional[ResultCode]:
        if not self._tag.settings.appdata_initialized:
            logger.warning("Application area is not initialized")
            return ResultCode.APPLICATION_AREA_IS_NOT_INITIALIZED
        return None

    def _check_registered(self) -> Optional[ResultCode]:
        if not self._tag.settings.amiibo_initialized:
            logger.warning("Amiibo is not registered")
            return ResultCode.REGISTRATION_IS_NOT_INITIALIZED
        return None

    # ──────────────────────────────────────────────
    # Tag-level info (raw image)
    # ──────────────────────────────────────────────

    def get_tag_info(self) -> tuple[ResultCode, Optional[TagInfo]]:
        error = self._check_state(DeviceState.TAG_FOUND, DeviceState.TAG_MOUNTED)
        if error is not None:
            return error, None
        serial = RawTagImage(self._raw).serial
        return ResultCode.SUCCESS, TagInfo(
            uid=serial,
            uid_length=len(serial),
            protocol=TagProtocol.NONE,
            tag_type=TagType.TYPE2,
        )

    def get_model_info(self) -> tuple[ResultCode, Optional[ModelInfo]]:
        error = self._check_state(DeviceState.TAG_FOUND, DeviceState.TAG_MOUNTED)
        if error is not None:
            return error, None
        return ResultCode.SUCCESS, RawTagImage(self._raw).model_info

    # ──────────────────────────────────────────────
    # Common, register and admin info
    # ──────────────────────────────────────────────

    def get_common_info(self) -> tuple[ResultCode, Optional[CommonInfo]]:
        error = self._check_readable()
        if error is not None:
            return error, None
        tag = self._tag
        return ResultCode.SUCCESS, CommonInfo(
            last_write_date=unpack_amiibo_date(tag.settings.write_date),
            write_counter=tag.write_counter,
            model_info=tag.model_info,
            version=tag.amiibo_version,
            application_area_size=nt.APPLICATION_AREA_SIZE,
        )

    def get_register_info(self) -> tuple[ResultCode, Optional[RegisterInfo]]:
        error = self._check_readable() or self._check_registered()
        if error is not None:
            return error, None
        settings = self._tag.settings
        return ResultCode.SUCCESS, RegisterInfo(
            mii_data=self._tag.owner_mii,
            nickname=settings.nickname,
            flags=settings.flags,
            font_region=settings.font_region,
            creation_date=unpack_amiibo_date(settings.init_date),
        )

    def get_admin_info(self) -> tuple[ResultCode, Optional[AdminInfo]]:
        error = self._check_readable()
        if error is not None:
            return error, None

        tag = self._tag
        settings = tag.settings
        flags = settings.flags >> 4
        if not settings.amiibo_initialized:
            flags &= 0xFE

        application_id = 0
        application_area_id = 0
        app_area_version = AppAreaVersion.NOT_SET
        if settings.appdata_initialized:
            application_id = tag.application_id
            try:
                app_area_version = AppAreaVersion((application_id >> APPLICATION_ID_VERSION_OFFSET) & 0xF)
            except ValueError:
                app_area_version = AppAreaVersion.NOT_SET

            # Put the program's own version nibble back
            if application_id >> 0x38 != 0:
                application_id = remove_version_byte(application_id) | (
                    (tag.application_id_byte & 0xF) << APPLICATION_ID_VERSION_OFFSET
                )
            application_area_id = tag.application_area_id

        return ResultCode.SUCCESS, AdminInfo(
            application_id=application_id,
            application_area_id=application_area_id,
            crc_counter=settings.crc_counter,
            flags=flags,
            tag_type=TagType.TYPE2,
            app_area_version=app_area_version,
        )

    def set_register_info(self, nickname: str, mii_data: Optional[bytes] = None) -> ResultCode:
        """Register the amiibo to an owner. Uses the standard Mii when none is given."""
        error = self._check_writable()
        if error is not None:
            return error

        if mii_data is None:
            mii_data = self.mii_provider()
        if len(mii_data) != nt.MII_SIZE:
            raise ValueError(f"Mii data must be {nt.MII_SIZE} bytes, got {len(mii_data)}")

        tag = self._tag
        settings = tag.settings
        if not settings.amiibo_initialized:
            today = pack_amiibo_date(self.clock())
            settings.init_date = today
            settings.write_date = today

        tag.owner_mii = bytes(mii_data)
        tag.owner_mii_padding = bytes(2)
        tag.owner_mii_crc = crc16_ccitt(tag.owner_mii + tag.owner_mii_padding)
        settings.nickname = nickname
        tag.mii_extension = bytes(nt.MII_EXTENSION_SIZE)
        tag.unknown = 0
        tag.unknown2 = bytes(nt.UNKNOWN2_SIZE)
        settings.country_code = 0
        settings.font_region = 0
        settings.amiibo_initialized = True

        self._update_register_info_crc()
        return self.flush()

    def delete_register_info(self) -> ResultCode:
        error = self._check_writable() or self._check_registered()
        if error is not None:
            return error

        tag = self._tag
        settings = tag.settings
        buffer = get_random_bytes(nt.MII_SIZE)
        tag.owner_mii = buffer
        settings.nickname_raw = buffer[:nt.NICKNAME_LENGTH * 2]
        tag.unknown = get_random_bytes(1)[0]
        tag.unknown2 = get_random_bytes(8) + tag.unknown2[8:]
        tag.register_info_crc = struct.unpack(">I", get_random_bytes(4))[0]
        settings.init_date = struct.unpack(">H", get_random_bytes(2))[0]
        settings.font_region = 0
        settings.amiibo_initialized = False

        return self.flush()

    def format(self) -> ResultCode:
        """Delete the application area and the registration."""
        result = self.delete_application_area()
        result2 = self.delete_register_info()
        if not result.is_success:
            return result
        return result2

    # ──────────────────────────────────────────────
    # Application area
    # ──────────────────────────────────────────────

    def open_application_area(self, access_id: int) -> ResultCode:
        error = self._check_readable() or self._check_app_area_initialized()
        if error is not None:
            return error

        if self._tag.application_area_id != access_id:
            logger.warning(
                f"Wrong application area id 0x{access_id:08X}, "
                f"stored 0x{self._tag.application_area_id:08X}"
            )
            return ResultCode.WRONG_APPLICATION_AREA_ID

        self._is_app_area_open = True
        return ResultCode.SUCCESS

    def get_application_area_id(self) -> tuple[ResultCode, Optional[int]]:
        error = self._check_readable() or self._check_app_area_initialized()
        if error is not None:
            return error, None
        return ResultCode.SUCCESS, self._tag.application_area_id

    def get_application_area(self) -> tuple[ResultCode, Optional[bytes]]:
        error = self._check_readable() or self._check_app_area_initialized()
        if error is not None:
            return error, None
        if not self._is_app_area_open:
            logger.error("Application area is not open")
            return ResultCode.WRONG_DEVICE_STATE, None
        return ResultCode.SUCCESS, self._tag.application_area

    def set_application_area(self, data: bytes) -> ResultCode:
        error = self._check_writable() or self._check_app_area_initialized()
        if error is not None:
            return error
        if not self._is_app_area_open:
            logger.error("Application area is not open")
            return ResultCode.WRONG_DEVICE_STATE
        if len(data) > nt.APPLICATION_AREA_SIZE:
            logger.error(f"Wrong data size {len(data)}")
            return ResultCode.WRONG_APPLICATION_AREA_SIZE

        self._write_application_area(data)
        self._is_data_modified = True
        return ResultCode.SUCCESS

    def create_application_area(self, access_id: int, data: bytes) -> ResultCode:
        error = self._check_writable()
        if error is not None:
            return error
        if self._tag.settings.appdata_initialized:
            logger.error("Application area already exists")
            return ResultCode.APPLICATION_AREA_EXIST
        if self._is_app_area_open:
            logger.error("Application area is open")
            return ResultCode.WRONG_DEVICE_STATE

        return self.recreate_application_area(access_id, data)

    def recreate_application_area(self, access_id: int, data: bytes) -> ResultCode:
        error = self._check_writable()
        if error is not None:
            return error
        if self._is_app_area_open:
            logger.error("Application area is open")
            return ResultCode.WRONG_DEVICE_STATE
        if len(data) > nt.APPLICATION_AREA_SIZE:
            logger.error(f"Wrong data size {len(data)}")
            return ResultCode.WRONG_APPLICATION_AREA_SIZE

        tag = self._tag
        self._write_application_area(data)

        if self.program_id is not None:
            tag.application_id_byte = (self.program_id >> APPLICATION_ID_VERSION_OFFSET) & 0xF
            tag.application_id = remove_version_byte(self.program_id) | (
                AppAreaVersion.NINTENDO_3DS_V2 << APPLICATION_ID_VERSION_OFFSET
            )
        tag.settings.appdata_initialized = True
        tag.application_area_id = access_id
        tag.unknown = 0
        tag.unknown2 = bytes(nt.UNKNOWN2_SIZE)

        self._update_register_info_crc()
        return self.flush()

    def delete_application_area(self) -> ResultCode:
        error = self._check_writable() or self._check_app_area_initialized()
        if error is not None:
            return error

        tag = self._tag
        buffer = get_random_bytes(nt.APPLICATION_AREA_SIZE)
        tag.application_write_counter = _bump(tag.application_write_counter)
        tag.application_area = buffer
        tag.application_id = struct.unpack(">Q", buffer[:8])[0]
        tag.application_area_id = struct.unpack(">I", get_random_bytes(4))[0]
        tag.application_id_byte = get_random_bytes(1)[0]
        tag.settings.appdata_initialized = False
        tag.unknown = 0
        tag.unknown2 = bytes(nt.UNKNOWN2_SIZE)
        self._is_app_area_open = False

        self._update_register_info_crc()
        return self.flush()

    def application_area_exist(self) -> tuple[ResultCode, Optional[bool]]:
        error = self._check_readable()
        if error is not None:
            return error, None
        return ResultCode.SUCCESS, self._tag.settings.appdata_initialized

    # ──────────────────────────────────────────────
    # Helpers
    # ──────────────────────────────────────────────

    def _write_application_area(self, data: bytes) -> None:
        """Copy the payload, pad with random bytes and bump the write counter."""
        tag = self._tag
        padding = get_random_bytes(nt.APPLICATION_AREA_SIZE - len(data))
        tag.application_area = bytes(data) + padding
        tag.application_write_counter = _bump(tag.application_write_counter)

    def _update_register_info_crc(self) -> None:
        tag = self._tag
        crc_data = (
            tag.owner_mii
            + bytes(2)
            + struct.pack("<H", tag.owner_mii_crc)
            + bytes([tag.application_id_byte, tag.unknown])
            + tag.mii_extension
            + tag.unknown2
        )
        tag.register_info_crc = crc32(crc_data)
