from __future__ import annotations

import logging

import attr
import trio

from ..settings import Milliseconds, milliseconds_to_seconds
from .backend import Backend
from .hwtypes import DeviceDisconnectedError, PollResult, ResourceError

logger = logging.getLogger(__name__)

DELIMITER = b"\n"
MAX_LINE_LENGTH = 4096


@attr.frozen(kw_only=True)
class SerialSettings:
    port: str
    baudrate: int = 9600
    encoding: str = "utf-8"
    timeout: Milliseconds = Milliseconds(-1)


class SerialBackend(Backend):
    """Newline-framed messages from a serial port.

    Bytes are read one at a time; the line buffer lives on the backend so a message split across a timeout
    is completed by the next call. The delimiter is never part of the event. A line that outgrows
    MAX_LINE_LENGTH is thrown away up to and including its delimiter.
    """

    name = "serial"
    settings_type = SerialSettings
    settings: SerialSettings

    def __init__(self):
        super().__init__()
        self.port = None
        self.line = bytearray()
        self.discarding = False

    def open_device(self):
        import serial

        try:
            # timeout=0 makes every read non-blocking; waiting happens in trio instead.
            self.port = serial.Serial(port=self.settings.port, baudrate=self.settings.baudrate, timeout=0)
        except (serial.SerialException, ValueError) as exc:
            raise ResourceError(f"Could not open serial port {self.settings.port}") from exc
        self.line.clear()
        self.discarding = False

    def close_device(self):
        if self.port is None:
            return
        port, self.port = self.port, None
        port.close()

    async def wait_for_event(self) -> PollResult:
        import serial

        while True:
            try:
                received = self.port.read(1)
            except serial.SerialException as exc:
                # pyserial's way of reporting a port that is readable but returns nothing
                if "disconnected" in str(exc):
                    raise DeviceDisconnectedError(f"{self.settings.port} went away") from exc
                return PollResult.failure(f"could not read from {self.settings.port}: {exc}")
            if not received:
                with trio.move_on_after(milliseconds_to_seconds(self.settings.timeout)) as cancel_scope:
                    await trio.lowlevel.wait_readable(self.port.fileno())
                if cancel_scope.cancelled_caught:
                    return PollResult.timeout()
                continue
            if received == DELIMITER:
                if self.discarding:
                    self.discarding = False
                    continue
                message = self.line.decode(self.settings.encoding, errors="replace")
                self.line.clear()
                return PollResult.success(message)
            if self.discarding:
                continue
            self.line += received
            if len(self.line) > MAX_LINE_LENGTH:
                logger.warning("%s: dropping a line longer than %d bytes", self.settings.port, MAX_LINE_LENGTH)
                self.line.clear()
                self.discarding = True
