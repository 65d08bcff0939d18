# SPDX-FileCopyrightText: 2021 Rose Davidson <rose@metaclassical.com>
#
# SPDX-License-Identifier: GPL-3.0-or-later

# Every backend reports through the same three shapes:
# - settings: an immutable str -> str mapping, consumed once by load_settings
# - status: SUCCESS, FAILURE or TIMEOUT for a single wait_for_event call
# - event: an ordered tuple of strings whose meaning depends on the backend
from __future__ import annotations

import enum
import typing

import msgspec

from ..commontypes import MacrodeviceError

Event = tuple[str, ...]


class HardwareError(MacrodeviceError):
    pass


class ConfigurationError(HardwareError):
    pass


class ResourceError(HardwareError):
    pass


class DeviceDisconnectedError(ResourceError):
    pass


class DeviceGrabError(ResourceError):
    pass


@enum.unique
class Status(enum.Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"


class PollResult(msgspec.Struct, frozen=True):
    status: Status
    event: Event = ()
    reason: typing.Optional[str] = None

    @classmethod
    def success(cls, *fields: str):
        return cls(status=Status.SUCCESS, event=tuple(fields))

    @classmethod
    def timeout(cls):
        return cls(status=Status.TIMEOUT)

    @classmethod
    def failure(cls, reason: str):
        return cls(status=Status.FAILURE, reason=reason)


class RawInputEvent(msgspec.Struct, frozen=True):
    type: int
    code: int
    value: int
    type_name: typing.Optional[str] = None
    code_name: typing.Optional[str] = None

    @classmethod
    def from_libevdev_event(cls, evt):
        return cls(
            type=evt.type.value,
            code=evt.code.value,
            value=evt.value,
            type_name=evt.type.name,
            code_name=evt.code.name,
        )
