from __future__ import annotations

import logging
import typing

import attr
import cffi
import trio

from ..settings import Milliseconds, milliseconds_to_seconds
from .backend import Backend
from .hwtypes import PollResult, ResourceError

logger = logging.getLogger(__name__)

ffi = cffi.FFI()
ffi.cdef(
    """
typedef struct _XDisplay Display;
typedef unsigned long Time;

typedef struct {
    int type;
    unsigned long serial;
    int send_event;
    Display *display;
    Time time;
    int xkb_type;
    unsigned int device;
} XkbAnyEvent;

typedef union _XEvent {
    int type;
    XkbAnyEvent xkb;
    long pad[24];
} XEvent;

Display *XOpenDisplay(const char *display_name);
int XCloseDisplay(Display *display);
int XConnectionNumber(Display *display);
int XPending(Display *display);
int XNextEvent(Display *display, XEvent *event_return);

int XkbQueryExtension(Display *display, int *opcode_rtrn, int *event_rtrn, int *error_rtrn, int *major_in_out, int *minor_in_out);
int XkbSelectEvents(Display *display, unsigned int device_spec, unsigned int bits_to_change, unsigned int values_for_bits);
int XkbGetIndicatorState(Display *display, unsigned int device_spec, unsigned int *state_return);
"""
)

LIBX11 = "libX11.so.6"
XKB_USE_CORE_KBD = 0x0100
XKB_INDICATOR_STATE_NOTIFY = 4
XKB_INDICATOR_STATE_NOTIFY_MASK = 1 << 4
XKB_MAJOR_VERSION = 1
XKB_MINOR_VERSION = 0
SUCCESS = 0

_lib = None


def load_libx11():
    global _lib
    if _lib is None:
        _lib = ffi.dlopen(LIBX11)
    return _lib


@attr.frozen(kw_only=True)
class XIndicatorSettings:
    display: typing.Optional[str] = None
    timeout: Milliseconds = Milliseconds(-1)


class XIndicatorBackend(Backend):
    """Keyboard indicator (caps lock, num lock, ...) changes on an X display.

    Every indicator change is reported as the full indicator bitmask in decimal.
    """

    name = "xindicator"
    settings_type = XIndicatorSettings
    settings: XIndicatorSettings

    def __init__(self):
        super().__init__()
        self._lib = None
        self._display = None
        self._xkb_event_base = None

    def open_device(self):
        try:
            lib = load_libx11()
        except OSError as exc:
            raise ResourceError(f"Could not load {LIBX11}") from exc
        name = ffi.NULL if self.settings.display is None else self.settings.display.encode()
        display = lib.XOpenDisplay(name)
        if display == ffi.NULL:
            raise ResourceError(f"Could not open X display {self.settings.display or '$DISPLAY'}")
        self._lib = lib
        self._display = display

        opcode, event_base, error_base = ffi.new("int *"), ffi.new("int *"), ffi.new("int *")
        major, minor = ffi.new("int *", XKB_MAJOR_VERSION), ffi.new("int *", XKB_MINOR_VERSION)
        if not lib.XkbQueryExtension(display, opcode, event_base, error_base, major, minor):
            self.close_device()
            raise ResourceError("X server does not support the Xkb extension")
        self._xkb_event_base = event_base[0]
        if not lib.XkbSelectEvents(
            display, XKB_USE_CORE_KBD, XKB_INDICATOR_STATE_NOTIFY_MASK, XKB_INDICATOR_STATE_NOTIFY_MASK
        ):
            self.close_device()
            raise ResourceError("Could not select Xkb indicator events")

    def close_device(self):
        if self._display is None:
            return
        display, self._display = self._display, None
        self._lib.XCloseDisplay(display)

    def _is_indicator_change(self, xevent) -> bool:
        return xevent.type == self._xkb_event_base and xevent.xkb.xkb_type == XKB_INDICATOR_STATE_NOTIFY

    def _next_indicator_change(self) -> bool:
        "Consumes queued events without blocking; True once an indicator change has been seen."
        xevent = ffi.new("XEvent *")
        while self._lib.XPending(self._display) > 0:
            self._lib.XNextEvent(self._display, xevent)
            if self._is_indicator_change(xevent[0]):
                return True
        return False

    async def wait_for_event(self) -> PollResult:
        deadline = trio.current_time() + milliseconds_to_seconds(self.settings.timeout)
        while not self._next_indicator_change():
            with trio.move_on_at(deadline) as cancel_scope:
                await trio.lowlevel.wait_readable(self._lib.XConnectionNumber(self._display))
            if cancel_scope.cancelled_caught:
                return PollResult.timeout()
        state = ffi.new("unsigned int *")
        if self._lib.XkbGetIndicatorState(self._display, XKB_USE_CORE_KBD, state) != SUCCESS:
            return PollResult.failure("could not query the indicator state")
        return PollResult.success(str(state[0]))
