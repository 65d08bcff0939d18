import collections.abc
import contextlib
import errno
import fcntl
import os
import pathlib

from ..commontypes import NotInContextError
from .hwtypes import DeviceDisconnectedError, DeviceGrabError, RawInputEvent, ResourceError


class EventDevice(contextlib.AbstractContextManager):
    def __init__(self, device_path: str | pathlib.Path, grab: bool = True, allow_auto_sync=False):
        self.allow_auto_sync = allow_auto_sync
        self.should_grab = grab
        if not isinstance(device_path, pathlib.Path):
            device_path = pathlib.Path(device_path)
        if not device_path.is_absolute():
            raise ValueError("Device path must be absolute")
        self.device_path = device_path
        self._f = None
        self._d = None

    def open(self):
        import libevdev

        try:
            self._f = self.device_path.open("rb", buffering=0)
        except OSError as exc:
            raise ResourceError(f"Could not open {self.device_path}") from exc
        fcntl.fcntl(self._f, fcntl.F_SETFL, os.O_NONBLOCK)
        try:
            self._d = libevdev.Device(self._f)
            if self.should_grab:
                self._d.grab()
        except libevdev.device.DeviceGrabError as exc:
            self.close()
            raise DeviceGrabError(f"{self.device_path} is grabbed by someone else") from exc
        except OSError as exc:
            self.close()
            if exc.errno == errno.ENODEV:
                raise DeviceDisconnectedError() from exc
            raise ResourceError(f"Could not set up libevdev for {self.device_path}") from exc

    def close(self):
        # could call self._d.ungrab(). but simply closing self._f is sufficient.
        if self._f is not None:
            self._f.close()
        self._d = None
        self._f = None

    def __enter__(self):
        self.open()
        return self

    def fileno(self) -> int:
        if self._f is None:
            raise NotInContextError()
        return self._f.fileno()

    def events(self) -> collections.abc.Iterator[RawInputEvent]:
        "Yields every event that can be read without blocking."
        import libevdev

        if self._d is None:
            raise NotInContextError()

        resyncing = False
        events = self._d.events()
        while True:
            if resyncing:
                if self.allow_auto_sync:
                    for evt in self._d.sync():
                        yield RawInputEvent.from_libevdev_event(evt)
                else:
                    # If we don't trust the auto-sync feature, then
                    # we just have to discard all events until the next
                    # SYN_REPORT (including that one).
                    synced = False
                    while not synced:
                        try:
                            evt = next(events)
                        except StopIteration:
                            return
                        if evt.code == libevdev.EV_SYN.SYN_REPORT:
                            synced = True
                resyncing = False
            else:
                try:
                    evt = next(events)
                except StopIteration:
                    return
                except libevdev.EventsDroppedException:
                    resyncing = True
                    events = self._d.events()
                except OSError as exc:
                    if exc.errno == errno.ENODEV:
                        raise DeviceDisconnectedError() from exc
                    raise
                else:
                    yield RawInputEvent.from_libevdev_event(evt)

    def __exit__(self, _exc_type, _exc_value, _traceback):
        self.close()
        return False  # to reraise exceptions if needed


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser()
    parser.add_argument("device", type=pathlib.Path)
    parser.add_argument("--no-grab", dest="grab", action="store_false")
    args = parser.parse_args()

    import select

    with EventDevice(args.device, grab=args.grab, allow_auto_sync=True) as device:
        print(f"# {args.device}")
        while True:
            select.select([device], [], [])
            for evt in device.events():
                print(evt)
