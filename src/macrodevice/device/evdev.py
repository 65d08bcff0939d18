from __future__ import annotations

import collections
import logging
import pathlib
import typing

import attr
import trio

from ..settings import Milliseconds, SettingsMap, milliseconds_to_seconds
from .backend import Backend
from .deviceutil import EventDevice
from .hwtypes import ConfigurationError, PollResult, RawInputEvent

logger = logging.getLogger(__name__)

EV_ABS = 0x03
ABS_MT_TOOL_TYPE = 0x37

# libevdev only knows value names for the multitouch tool type.
VALUE_NAMES: dict[tuple[int, int], dict[int, str]] = {
    (EV_ABS, ABS_MT_TOOL_TYPE): {
        0x00: "MT_TOOL_FINGER",
        0x01: "MT_TOOL_PEN",
        0x02: "MT_TOOL_PALM",
        0x0A: "MT_TOOL_DIAL",
        0x0F: "MT_TOOL_MAX",
    },
}


@attr.frozen(kw_only=True)
class LibevdevSettings:
    eventfile: pathlib.Path
    grab: bool = True
    numbers: bool = False
    timeout: Milliseconds = Milliseconds(-1)


def translate(evt: RawInputEvent, numbers: bool) -> tuple[str, str, str]:
    if numbers:
        return (str(evt.type), str(evt.code), str(evt.value))
    value_name = VALUE_NAMES.get((evt.type, evt.code), {}).get(evt.value)
    return (
        evt.type_name or str(evt.type),
        evt.code_name or str(evt.code),
        value_name or str(evt.value),
    )


class LibevdevBackend(Backend):
    name = "libevdev"
    settings_type = LibevdevSettings
    settings: LibevdevSettings
    device: typing.Optional[EventDevice]

    def __init__(self):
        super().__init__()
        self.device = None
        self.pending = collections.deque()

    def load_settings(self, settings: SettingsMap):
        super().load_settings(settings)
        if not self.settings.eventfile.is_absolute():
            raise ConfigurationError(f"libevdev: eventfile must be an absolute path, got {self.settings.eventfile}")

    def open_device(self):
        device = EventDevice(self.settings.eventfile, grab=self.settings.grab)
        device.open()
        self.device = device

    def close_device(self):
        if self.device is None:
            return
        device, self.device = self.device, None
        self.pending.clear()
        device.close()

    def _drain(self):
        self.pending.extend(self.device.events())

    async def wait_for_event(self) -> PollResult:
        try:
            if not self.pending:
                self._drain()
            if not self.pending:
                with trio.move_on_after(milliseconds_to_seconds(self.settings.timeout)) as cancel_scope:
                    await trio.lowlevel.wait_readable(self.device.fileno())
                if cancel_scope.cancelled_caught:
                    return PollResult.timeout()
                self._drain()
        except OSError as exc:
            return PollResult.failure(f"could not read from {self.settings.eventfile}: {exc}")
        if not self.pending:
            return PollResult.failure(f"{self.settings.eventfile} was readable but produced no event")
        return PollResult.success(*translate(self.pending.popleft(), self.settings.numbers))
