from __future__ import annotations

import enum
import logging
import typing

import trio
from trio_util import AsyncValue

from .device.hwtypes import ConfigurationError, Event, ResourceError, Status
from .engine import QUIT, EngineError

if typing.TYPE_CHECKING:
    from .device.backend import Backend
    from .engine import Dispatcher
    from .settings import SettingsMap

logger = logging.getLogger(__name__)

Callback = typing.Callable[[list[str]], typing.Any]


@enum.unique
class SessionState(enum.Enum):
    INITIALIZING = "initializing"
    POLLING = "polling"
    DISPATCHING = "dispatching"
    CLOSING = "closing"
    TERMINATED = "terminated"


class Session:
    """One open device, the task polling it, and the callback its events go to.

    INITIALIZING -> POLLING <-> DISPATCHING -> CLOSING -> TERMINATED

    A failed load_settings or open_device goes straight to TERMINATED, since there is nothing to close.
    close_device runs at most once, and only after open_device succeeded. Cancellation is noticed once
    the current wait_for_event returns (or is interrupted); an event that was already being dispatched
    is finished first.
    """

    state: AsyncValue[SessionState]

    def __init__(
        self,
        session_id: int,
        backend: Backend,
        settings: SettingsMap,
        callback: Callback,
        dispatcher: Dispatcher,
    ):
        self.id = session_id
        self.backend = backend
        self.settings = settings
        self.callback = callback
        self.dispatcher = dispatcher
        self.state = AsyncValue(SessionState.INITIALIZING)
        self.cancel_requested = False
        self._poll_scope: typing.Optional[trio.CancelScope] = None
        self._opened = False
        self._closed = False

    def __repr__(self):
        return f"<Session {self.id} {self.backend.name} {self.state.value.value}>"

    def cancel(self):
        if self.cancel_requested:
            return
        logger.debug("Cancel requested for %r", self)
        self.cancel_requested = True
        if self._poll_scope is not None:
            self._poll_scope.cancel()

    async def run(self, *, task_status=trio.TASK_STATUS_IGNORED):
        task_status.started()
        if self.cancel_requested or not self._initialize():
            self.state.value = SessionState.TERMINATED
            return
        try:
            await self._poll()
        finally:
            self.state.value = SessionState.CLOSING
            self._close()
            self.state.value = SessionState.TERMINATED
            logger.debug("%r finished", self)

    def _initialize(self) -> bool:
        try:
            self.backend.load_settings(self.settings)
        except ConfigurationError:
            logger.error("Session %d: invalid settings for backend %s", self.id, self.backend.name, exc_info=True)
            return False
        except Exception:
            logger.exception("Session %d: unexpected error loading settings for backend %s", self.id, self.backend.name)
            return False
        try:
            self.backend.open_device()
        except ResourceError:
            logger.error("Session %d: could not open the %s device", self.id, self.backend.name, exc_info=True)
            return False
        except Exception:
            logger.exception("Session %d: unexpected error opening the %s device", self.id, self.backend.name)
            return False
        self._opened = True
        return True

    async def _poll(self):
        while not self.cancel_requested:
            self.state.value = SessionState.POLLING
            try:
                with trio.CancelScope() as self._poll_scope:
                    result = await self.backend.wait_for_event()
            except ResourceError:
                logger.error("Session %d: lost the %s device", self.id, self.backend.name, exc_info=True)
                return
            except Exception:
                logger.exception("Session %d: unexpected error polling the %s device", self.id, self.backend.name)
                return
            finally:
                self._poll_scope = None
            if self.cancel_requested:
                return

            match result.status:
                case Status.TIMEOUT:
                    continue
                case Status.FAILURE:
                    logger.warning("Session %d: could not get input event: %s", self.id, result.reason)
                    await trio.lowlevel.checkpoint()
                case Status.SUCCESS:
                    self.state.value = SessionState.DISPATCHING
                    if await self._dispatch(result.event):
                        return

    async def _dispatch(self, event: Event) -> bool:
        "Returns True if the session should stop."
        try:
            reply = await self.dispatcher.dispatch(self, event)
        except EngineError:
            logger.exception("Session %d: callback failed, closing the %s device", self.id, self.backend.name)
            return True
        if isinstance(reply, str) and reply == QUIT:
            logger.debug("Session %d: callback asked to quit", self.id)
            return True
        return False

    def _close(self):
        if not self._opened or self._closed:
            return
        self._closed = True
        try:
            self.backend.close_device()
        except ResourceError:
            logger.error("Session %d: could not close the %s device", self.id, self.backend.name, exc_info=True)
        except Exception:
            logger.exception("Session %d: unexpected error closing the %s device", self.id, self.backend.name)
