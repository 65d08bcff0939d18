from .device.backend import Backend
from .device.evdev import LibevdevBackend
from .device.hidapi import HidapiBackend
from .device.libusb import LibusbBackend
from .device.serial_port import SerialBackend
from .device.xindicator import XIndicatorBackend

BACKENDS: dict[str, type[Backend]] = {
    HidapiBackend.name: HidapiBackend,
    LibevdevBackend.name: LibevdevBackend,
    LibusbBackend.name: LibusbBackend,
    SerialBackend.name: SerialBackend,
    XIndicatorBackend.name: XIndicatorBackend,
}
