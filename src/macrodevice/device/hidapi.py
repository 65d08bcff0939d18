from __future__ import annotations

import logging

import attr
import trio

from ..settings import HexInt, Milliseconds, milliseconds_to_seconds
from .backend import Backend, RisingEdge
from .hwtypes import PollResult, ResourceError

logger = logging.getLogger(__name__)

REPORT_SIZE = 65
STATE_REQUEST = 0x81
# Longest single blocking read, so a cancelled session never waits on the device for longer than this.
READ_SLICE_MS = 100


@attr.frozen(kw_only=True)
class HidapiSettings:
    vid: HexInt
    pid: HexInt
    timeout: Milliseconds = Milliseconds(-1)


class HidapiBackend(Backend):
    """Polls a hidapi device for its key state.

    Each sample writes a state request and reads back a report; byte 0 is the modifier and byte 2 the key.
    Only the transition from no key to some key is an event.
    """

    name = "hidapi"
    settings_type = HidapiSettings
    settings: HidapiSettings

    def __init__(self):
        super().__init__()
        self._device = None
        self.edge = RisingEdge()

    def open_device(self):
        import hid

        device = hid.device()
        try:
            device.open(self.settings.vid, self.settings.pid)
        except (OSError, ValueError) as exc:
            raise ResourceError(f"Could not open hid device {self.settings.vid:04x}:{self.settings.pid:04x}") from exc
        self._device = device
        self.edge.reset()

    def close_device(self):
        if self._device is None:
            return
        device, self._device = self._device, None
        try:
            device.close()
        except (OSError, ValueError):
            logger.warning("Error while closing hid device %r", self, exc_info=True)

    def _sample(self) -> list[int]:
        request = [0x00, STATE_REQUEST] + [0x00] * (REPORT_SIZE - 2)
        if self._device.write(request) < 0:
            raise OSError("hid write failed")
        return self._device.read(REPORT_SIZE, timeout_ms=READ_SLICE_MS)

    async def wait_for_event(self) -> PollResult:
        deadline = trio.current_time() + milliseconds_to_seconds(self.settings.timeout)
        while True:
            try:
                report = await trio.to_thread.run_sync(self._sample)
            except (OSError, ValueError) as exc:
                return PollResult.failure(f"could not sample hid device: {exc}")
            if len(report) > 2 and self.edge.sample(report[2]):
                return PollResult.success(str(report[0]), str(report[2]))
            if trio.current_time() >= deadline:
                return PollResult.timeout()
