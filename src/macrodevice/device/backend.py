from __future__ import annotations

import abc
import typing

from ..settings import SettingsMap, structure_settings
from .hwtypes import PollResult


class Backend(metaclass=abc.ABCMeta):
    """One pluggable device family.

    A backend instance is used by exactly one session: load_settings is called once, then open_device;
    wait_for_event is only called after a successful open_device, and close_device at most once after it.
    """

    name: typing.ClassVar[str]
    settings_type: typing.ClassVar[type]

    def __init__(self):
        self.settings = None

    def load_settings(self, settings: SettingsMap) -> None:
        self.settings = structure_settings(settings, self.settings_type)

    @abc.abstractmethod
    def open_device(self) -> None:
        ...

    @abc.abstractmethod
    def close_device(self) -> None:
        ...

    @abc.abstractmethod
    async def wait_for_event(self) -> PollResult:
        ...

    def __repr__(self):
        return f"<{type(self).__name__} {self.settings!r}>"


class RisingEdge:
    "Reports a key only on the released -> pressed transition of successive samples."

    def __init__(self):
        self.previous = 0

    def sample(self, value: int) -> bool:
        pressed = self.previous == 0 and value != 0
        self.previous = value
        return pressed

    def reset(self):
        self.previous = 0
