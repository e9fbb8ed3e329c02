"""Result codes returned by the tag device controller."""

from enum import IntEnum


class ResultCode(IntEnum):
    SUCCESS = 0
    WRONG_DEVICE_STATE = 512
    TAG_REMOVED = 516
    NOT_AN_AMIIBO = 524
    WRITE_AMIIBO_FAILED = 528
    CORRUPTED_DATA = 536
    APPLICATION_AREA_IS_NOT_INITIALIZED = 544
    REGISTRATION_IS_NOT_INITIALIZED = 552
    APPLICATION_AREA_EXIST = 560
    WRONG_APPLICATION_AREA_ID = 568
    WRONG_APPLICATION_AREA_SIZE = 576

    @property
    def is_success(self) -> bool:
        return self is ResultCode.SUCCESS

    def to_dict(self) -> dict:
        return {"result": self.name, "code": int(self)}
