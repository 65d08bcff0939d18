from __future__ import annotations

import errno
import logging
import typing

import attr
import trio

from ..settings import HexInt, Milliseconds, SettingsMap, milliseconds_to_seconds
from .backend import Backend, RisingEdge
from .hwtypes import ConfigurationError, DeviceDisconnectedError, PollResult, ResourceError

logger = logging.getLogger(__name__)

REPORT_SIZE = 8
READ_SLICE_MS = 100


@attr.frozen(kw_only=True)
class LibusbSettings:
    use_bus_device: bool = False
    vid: typing.Optional[HexInt] = None
    pid: typing.Optional[HexInt] = None
    bus: typing.Optional[int] = None
    device: typing.Optional[int] = None
    interface: int = 0
    endpoint: HexInt = HexInt(0x81)
    timeout: Milliseconds = Milliseconds(-1)


class LibusbBackend(Backend):
    """Reads boot-protocol style keyboard reports straight from an interrupt endpoint.

    The device is found either by vendor/product id or, with use_bus_device, by bus number and device address.
    A kernel driver bound to the interface is detached while the session runs and reattached on close.
    """

    name = "libusb"
    settings_type = LibusbSettings
    settings: LibusbSettings

    def __init__(self):
        super().__init__()
        self._device = None
        self._claimed = False
        self._detached_kernel_driver = False
        self.edge = RisingEdge()

    def load_settings(self, settings: SettingsMap):
        super().load_settings(settings)
        if self.settings.use_bus_device:
            if self.settings.bus is None or self.settings.device is None:
                raise ConfigurationError("libusb: bus and device are required when use_bus_device is set")
        elif self.settings.vid is None or self.settings.pid is None:
            raise ConfigurationError("libusb: vid and pid are required")

    def _find(self):
        import usb.core

        if self.settings.use_bus_device:
            bus, address = self.settings.bus, self.settings.device
            return usb.core.find(custom_match=lambda d: d.bus == bus and d.address == address)
        return usb.core.find(idVendor=self.settings.vid, idProduct=self.settings.pid)

    def open_device(self):
        import usb.core
        import usb.util

        interface = self.settings.interface
        try:
            device = self._find()
            if device is None:
                raise ResourceError(f"USB device not found for {self.settings!r}")
            self._device = device
            if device.is_kernel_driver_active(interface):
                device.detach_kernel_driver(interface)
                self._detached_kernel_driver = True
                logger.debug("Detached kernel driver from interface %d", interface)
            usb.util.claim_interface(device, interface)
            self._claimed = True
        except (usb.core.USBError, usb.core.NoBackendError, NotImplementedError, ValueError) as exc:
            # NoBackendError: no libusb shared library on this machine
            self.close_device()
            raise ResourceError(f"Could not open usb device for {self.settings!r}") from exc
        except ResourceError:
            self.close_device()
            raise
        self.edge.reset()

    def close_device(self):
        import usb.core
        import usb.util

        if self._device is None:
            return
        device, self._device = self._device, None
        interface = self.settings.interface
        if self._claimed:
            try:
                usb.util.release_interface(device, interface)
            except usb.core.USBError:
                logger.warning("Could not release interface %d of %r", interface, device, exc_info=True)
            self._claimed = False
        if self._detached_kernel_driver:
            try:
                device.attach_kernel_driver(interface)
            except usb.core.USBError:
                logger.warning("Could not reattach kernel driver to interface %d", interface, exc_info=True)
            self._detached_kernel_driver = False
        try:
            usb.util.dispose_resources(device)
        except usb.core.USBError:
            logger.warning("Could not dispose of %r", device, exc_info=True)

    def _read_report(self):
        import usb.core

        try:
            return self._device.read(self.settings.endpoint, REPORT_SIZE, timeout=READ_SLICE_MS)
        except usb.core.USBTimeoutError:
            return None

    async def wait_for_event(self) -> PollResult:
        import usb.core

        deadline = trio.current_time() + milliseconds_to_seconds(self.settings.timeout)
        while True:
            try:
                report = await trio.to_thread.run_sync(self._read_report)
            except usb.core.USBError as exc:
                if exc.errno == errno.ENODEV:
                    raise DeviceDisconnectedError(f"USB device went away: {exc}") from exc
                return PollResult.failure(f"interrupt transfer failed: {exc}")
            if report is not None and len(report) > 2 and self.edge.sample(report[2]):
                return PollResult.success(str(report[0]), str(report[2]))
            if trio.current_time() >= deadline:
                return PollResult.timeout()
