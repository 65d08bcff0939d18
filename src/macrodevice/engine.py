from __future__ import annotations

import collections.abc
import logging
import pathlib
import threading
import typing

import attr
import outcome
import trio

from . import __version__
from .commontypes import MacrodeviceError
from .device.hwtypes import Event
from .privileges import drop_root, drop_root_to_user

if typing.TYPE_CHECKING:
    from .manager import SessionManager
    from .session import Session

logger = logging.getLogger(__name__)

# A callback returning this ends its own session.
QUIT = "quit"


class EngineError(MacrodeviceError):
    pass


class ScriptEngine:
    """The shared interpreter state that config scripts and their callbacks run in.

    Nothing in here is reentrant: loading the config and every callback invocation hold the same lock, and
    all of them run in a worker thread so the trio thread stays free to poll devices. Anything a script
    raises, SystemExit included, comes back as EngineError.
    """

    namespace: dict[str, typing.Any]

    def __init__(self):
        self._lock = threading.Lock()
        self.namespace = {"__name__": "__macrodevice_config__"}

    def expose(self, name: str, value: typing.Any):
        with self._lock:
            self.namespace[name] = value

    def load(self, path: pathlib.Path):
        with self._lock:
            try:
                code = compile(path.read_text(), str(path), "exec")
                exec(code, self.namespace)
            except BaseException as exc:
                raise EngineError(f"Error in config {path}: {exc!r}") from exc

    def invoke(self, callback: collections.abc.Callable, event: Event):
        with self._lock:
            try:
                return callback(list(event))
            except BaseException as exc:
                raise EngineError(f"Callback {callback!r} failed on {event!r}: {exc!r}") from exc

    def release(self):
        with self._lock:
            self.namespace.clear()


@attr.frozen
class DispatchRequest:
    session: Session
    event: Event
    reply: trio.MemorySendChannel[outcome.Outcome]


class Dispatcher:
    """Sole owner of the script engine while devices are running.

    Sessions hand their events over a single channel and wait for the callback's outcome, so callbacks run one
    at a time, in the order their events reached the channel.
    """

    def __init__(self, engine: ScriptEngine):
        self.engine = engine
        self._send_channel, self._receive_channel = trio.open_memory_channel[DispatchRequest](0)

    async def dispatch(self, session: Session, event: Event):
        reply_send_channel, reply_receive_channel = trio.open_memory_channel[outcome.Outcome](1)
        await self._send_channel.send(DispatchRequest(session=session, event=event, reply=reply_send_channel))
        async with reply_receive_channel:
            result = await reply_receive_channel.receive()
        return result.unwrap()

    async def run(self, *, task_status=trio.TASK_STATUS_IGNORED):
        task_status.started()
        async with self._receive_channel:
            async for request in self._receive_channel:
                if request.session.cancel_requested:
                    # closed while queued; its event is dropped
                    result = outcome.Value(None)
                else:
                    result = await trio.to_thread.run_sync(
                        outcome.capture, self.engine.invoke, request.session.callback, request.event
                    )
                try:
                    request.reply.send_nowait(result)
                except (trio.BrokenResourceError, trio.ClosedResourceError):
                    logger.debug("Session %d went away before its callback finished", request.session.id)


class MacrodeviceAPI:
    """The `macrodevice` object visible to config scripts.

    Scripts run in worker threads, so every call that touches sessions is marshalled back into the trio thread.
    """

    def __init__(self, manager: SessionManager, args: collections.abc.Sequence[str] = (), trio_token=None):
        self._manager = manager
        self._trio_token = trio_token if trio_token is not None else trio.lowlevel.current_trio_token()
        self.version = __version__
        self.arg = list(args)

    def _in_trio(self, fn, *args):
        try:
            trio.lowlevel.current_trio_token()
        except RuntimeError:
            return trio.from_thread.run_sync(fn, *args, trio_token=self._trio_token)
        return fn(*args)

    def open(self, backend, settings=None, callback=None) -> typing.Optional[int]:
        """open(backend, settings, callback) or open(settings, callback)

        In the second form the backend name is taken from settings["backend"]. Returns the new session id,
        or None if the session could not be created. Problems opening the device itself only show up in the log.
        """
        from .manager import UnknownBackendError

        if isinstance(backend, collections.abc.Mapping):
            backend, settings, callback = backend.get("backend"), backend, settings
        if not isinstance(settings, collections.abc.Mapping):
            logger.error("macrodevice.open() needs a settings mapping, got %r", settings)
            return None
        if not callable(callback):
            logger.error("macrodevice.open() needs a callable callback, got %r", callback)
            return None
        try:
            return self._in_trio(self._manager.open, backend, settings, callback)
        except UnknownBackendError:
            logger.error("Invalid backend %r", backend)
            return None

    def close(self, session_id: typing.Optional[int] = None):
        self._in_trio(self._manager.close, session_id)

    def drop_root(self, user, gid: typing.Optional[int] = None) -> int:
        if gid is None:
            return drop_root_to_user(user)
        return drop_root(user, gid)
