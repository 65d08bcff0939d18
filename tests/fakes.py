from __future__ import annotations

import math

import attr
import trio

from macrodevice.device.backend import Backend
from macrodevice.device.hwtypes import PollResult, ResourceError


@attr.frozen(kw_only=True)
class FakeSettings:
    label: str = ""
    fail_open: bool = False
    # "open" or "close": that step raises something outside the hardware error hierarchy
    explode: str = ""


class FakeBackend(Backend):
    "Results are pushed in by the test; wait_for_event blocks until one arrives."

    name = "fake"
    settings_type = FakeSettings
    settings: FakeSettings

    def __init__(self):
        super().__init__()
        self.results_send_channel, self.results_receive_channel = trio.open_memory_channel(math.inf)
        self.open_count = 0
        self.close_count = 0

    def open_device(self):
        self.open_count += 1
        if self.settings.fail_open:
            raise ResourceError("fake device refused to open")
        if self.settings.explode == "open":
            raise RuntimeError("fake driver bug while opening")

    def close_device(self):
        self.close_count += 1
        if self.settings.explode == "close":
            raise RuntimeError("fake driver bug while closing")

    async def wait_for_event(self) -> PollResult:
        result = await self.results_receive_channel.receive()
        if isinstance(result, BaseException):
            raise result
        return result

    def push(self, *fields: str):
        self.results_send_channel.send_nowait(PollResult.success(*fields))

    def push_result(self, result):
        self.results_send_channel.send_nowait(result)


class EventRecorder:
    """A script callback that reports every event back into trio.

    Callbacks run in worker threads, so the event crosses back with trio.from_thread.
    """

    def __init__(self, reply=None):
        self.send_channel, self.receive_channel = trio.open_memory_channel(math.inf)
        self.reply = reply
        self.calls = 0

    def __call__(self, event):
        self.calls += 1
        trio.from_thread.run_sync(self.send_channel.send_nowait, event)
        return self.reply

    async def next(self, deadline=5):
        with trio.fail_after(deadline):
            return await self.receive_channel.receive()
