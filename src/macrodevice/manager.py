from __future__ import annotations

import collections.abc
import logging
import threading
import typing

import trio
from trio_util import AsyncValue

from .backends import BACKENDS
from .commontypes import MacrodeviceError, NotInContextError
from .device.backend import Backend
from .engine import Dispatcher
from .session import Callback, Session
from .settings import normalize_settings

logger = logging.getLogger(__name__)


class UnknownBackendError(MacrodeviceError):
    pass


class SessionManager:
    """Creates sessions, hands out their ids, and keeps the registry of the ones still running.

    Ids start at 0 and are never reused. A session leaves the registry as soon as it terminates, whether
    it was closed from outside, asked to quit, or lost its device.
    """

    sessions: dict[int, Session]
    active: AsyncValue[int]

    def __init__(
        self,
        dispatcher: Dispatcher,
        backends: typing.Optional[collections.abc.Mapping[str, type[Backend]]] = None,
    ):
        self.dispatcher = dispatcher
        self.backends = BACKENDS if backends is None else backends
        self.sessions = {}
        self.active = AsyncValue(0)
        self._next_id = 0
        self._registration_lock = threading.Lock()
        self._nursery: typing.Optional[trio.Nursery] = None

    async def run(self, *, task_status=trio.TASK_STATUS_IGNORED):
        try:
            async with trio.open_nursery() as nursery:
                self._nursery = nursery
                task_status.started()
                await trio.sleep_forever()
        finally:
            self._nursery = None

    def open(self, backend_name: str, settings: collections.abc.Mapping, callback: Callback) -> int:
        if self._nursery is None:
            raise NotInContextError("SessionManager is not running")
        try:
            backend_type = self.backends[backend_name]
        except (KeyError, TypeError):
            raise UnknownBackendError(backend_name) from None
        normalized = normalize_settings(settings)

        with self._registration_lock:
            session_id = self._next_id
            self._next_id += 1
            session = Session(session_id, backend_type(), normalized, callback, self.dispatcher)
            self.sessions[session_id] = session
        self.active.value += 1
        logger.info("Opening session %d with backend %s", session_id, backend_name)
        self._nursery.start_soon(self._run_session, session, name=f"session-{session_id}")
        return session_id

    async def _run_session(self, session: Session):
        try:
            await session.run()
        finally:
            with self._registration_lock:
                self.sessions.pop(session.id, None)
            self.active.value -= 1
            logger.info("Session %d closed", session.id)

    def close(self, session_id: typing.Optional[int] = None):
        "Request cancellation of one session, or of every session if no id is given. Unknown ids are ignored."
        with self._registration_lock:
            if session_id is None:
                targets = list(self.sessions.values())
            else:
                targets = [self.sessions[session_id]] if session_id in self.sessions else []
        for session in targets:
            session.cancel()

    async def wait_idle(self):
        await self.active.wait_value(0)
