from __future__ import annotations

import sys
import threading
import time

import pytest
import trio
import trio.testing
import usb.core

from macrodevice.commontypes import NotInContextError
from macrodevice.device.hwtypes import DeviceDisconnectedError, PollResult
from macrodevice.device.libusb import LibusbBackend
from macrodevice.engine import Dispatcher
from macrodevice.manager import SessionManager, UnknownBackendError
from macrodevice.session import SessionState

from fakes import EventRecorder


async def wait_terminated(session, deadline=5):
    with trio.fail_after(deadline):
        await session.state.wait_value(SessionState.TERMINATED)


async def test_ids_start_at_zero_and_are_not_reused(manager: SessionManager):
    recorder = EventRecorder(reply="quit")
    first = manager.open("fake", {}, recorder)
    second = manager.open("fake", {}, recorder)
    assert (first, second) == (0, 1)
    assert manager.active.value == 2

    session = manager.sessions[first]
    session.backend.push("a")
    await wait_terminated(session)
    assert first not in manager.sessions

    assert manager.open("fake", {}, recorder) == 2


async def test_events_reach_callback_in_order(manager: SessionManager):
    recorder = EventRecorder()
    session = manager.sessions[manager.open("fake", {"label": "pad"}, recorder)]
    session.backend.push("1", "30")
    session.backend.push("0", "31")
    assert await recorder.next() == ["1", "30"]
    assert await recorder.next() == ["0", "31"]


async def test_timeouts_and_failures_keep_polling(manager: SessionManager):
    recorder = EventRecorder()
    session = manager.sessions[manager.open("fake", {}, recorder)]
    session.backend.push_result(PollResult.timeout())
    session.backend.push_result(PollResult.failure("glitch"))
    session.backend.push("up")
    assert await recorder.next() == ["up"]
    assert session.state.value in (SessionState.POLLING, SessionState.DISPATCHING)
    assert recorder.calls == 1


async def test_quit_sentinel_ends_only_that_session(manager: SessionManager):
    quitter = EventRecorder(reply="quit")
    stayer = EventRecorder()
    quitting = manager.sessions[manager.open("fake", {}, quitter)]
    staying = manager.sessions[manager.open("fake", {}, stayer)]

    quitting.backend.push("q")
    assert await quitter.next() == ["q"]
    await wait_terminated(quitting)
    assert quitting.backend.close_count == 1

    staying.backend.push("still here")
    assert await stayer.next() == ["still here"]
    assert staying.state.value != SessionState.TERMINATED


async def test_callback_error_closes_only_its_session(manager: SessionManager):
    def broken(event):
        raise RuntimeError("boom")

    survivor = EventRecorder()
    failing = manager.sessions[manager.open("fake", {}, broken)]
    surviving = manager.sessions[manager.open("fake", {}, survivor)]

    failing.backend.push("x")
    await wait_terminated(failing)
    assert failing.backend.close_count == 1
    assert failing.id not in manager.sessions

    surviving.backend.push("y")
    assert await survivor.next() == ["y"]


async def test_close_cancels_a_polling_session(manager: SessionManager):
    recorder = EventRecorder()
    session_id = manager.open("fake", {}, recorder)
    session = manager.sessions[session_id]
    await session.state.wait_value(SessionState.POLLING)

    manager.close(session_id)
    await wait_terminated(session)
    assert session.backend.close_count == 1
    assert manager.active.value == 0

    session.backend.push("too late")
    await trio.testing.wait_all_tasks_blocked()
    assert recorder.calls == 0


async def test_close_is_idempotent(manager: SessionManager):
    session_id = manager.open("fake", {}, EventRecorder())
    session = manager.sessions[session_id]
    manager.close(session_id)
    manager.close(session_id)
    manager.close(12345)
    await wait_terminated(session)
    manager.close(session_id)
    assert session.backend.close_count <= 1


async def test_close_all(manager: SessionManager):
    sessions = [manager.sessions[manager.open("fake", {}, EventRecorder())] for _ in range(3)]
    manager.close()
    with trio.fail_after(5):
        await manager.wait_idle()
    assert all(s.state.value == SessionState.TERMINATED for s in sessions)
    assert manager.sessions == {}


async def test_failed_open_is_never_closed(manager: SessionManager):
    session = manager.sessions[manager.open("fake", {"fail_open": "yes"}, EventRecorder())]
    await wait_terminated(session)
    assert session.backend.open_count == 1
    assert session.backend.close_count == 0


async def test_invalid_settings_never_open(manager: SessionManager):
    session = manager.sessions[manager.open("fake", {"fail_open": "perhaps"}, EventRecorder())]
    await wait_terminated(session)
    assert session.backend.open_count == 0
    assert session.backend.close_count == 0


async def test_disconnect_is_terminal(manager: SessionManager):
    recorder = EventRecorder()
    session = manager.sessions[manager.open("fake", {}, recorder)]
    session.backend.push_result(DeviceDisconnectedError("unplugged"))
    await wait_terminated(session)
    assert session.backend.close_count == 1
    assert recorder.calls == 0


async def test_callbacks_never_overlap(manager: SessionManager):
    counter_lock = threading.Lock()
    running = 0
    most_running = 0
    recorder = EventRecorder()

    def slow(event):
        nonlocal running, most_running
        with counter_lock:
            running += 1
            most_running = max(most_running, running)
        time.sleep(0.02)
        with counter_lock:
            running -= 1
        return recorder(event)

    sessions = [manager.sessions[manager.open("fake", {}, slow)] for _ in range(3)]
    for i in range(3):
        for session in sessions:
            session.backend.push(str(session.id), str(i))
    received = [await recorder.next() for _ in range(9)]
    assert len(received) == 9
    assert most_running == 1


async def test_unknown_backend(manager: SessionManager):
    with pytest.raises(UnknownBackendError):
        manager.open("nonsense", {}, EventRecorder())
    assert manager.sessions == {}


async def test_manager_must_be_running(dispatcher: Dispatcher):
    manager = SessionManager(dispatcher)
    with pytest.raises(NotInContextError):
        manager.open("hidapi", {"vid": "1", "pid": "2"}, EventRecorder())


@pytest.fixture
async def bystander(manager: SessionManager):
    "A healthy session that must keep working while a neighbour fails."
    recorder = EventRecorder()
    session = manager.sessions[manager.open("fake", {"label": "bystander"}, recorder)]
    with trio.fail_after(5):
        await session.state.wait_value(SessionState.POLLING)
    return session, recorder


async def assert_still_running(bystander):
    session, recorder = bystander
    session.backend.push("still", "here")
    assert await recorder.next() == ["still", "here"]
    assert session.state.value != SessionState.TERMINATED


async def test_unexpected_open_error_ends_only_that_session(manager: SessionManager, bystander):
    session = manager.sessions[manager.open("fake", {"explode": "open"}, EventRecorder())]
    await wait_terminated(session)
    assert session.backend.close_count == 0
    await assert_still_running(bystander)


async def test_unexpected_poll_error_ends_only_that_session(manager: SessionManager, bystander):
    recorder = EventRecorder()
    session = manager.sessions[manager.open("fake", {}, recorder)]
    session.backend.push_result(RuntimeError("driver bug"))
    await wait_terminated(session)
    assert session.backend.close_count == 1
    assert recorder.calls == 0
    await assert_still_running(bystander)


async def test_unexpected_close_error_ends_only_that_session(manager: SessionManager, bystander):
    session_id = manager.open("fake", {"explode": "close"}, EventRecorder())
    session = manager.sessions[session_id]
    with trio.fail_after(5):
        await session.state.wait_value(SessionState.POLLING)
    manager.close(session_id)
    await wait_terminated(session)
    assert session.backend.close_count == 1
    await assert_still_running(bystander)


async def test_callback_exit_ends_only_that_session(manager: SessionManager, bystander):
    def leave(event):
        sys.exit(0)

    session = manager.sessions[manager.open("fake", {}, leave)]
    session.backend.push("bye")
    await wait_terminated(session)
    assert session.backend.close_count == 1
    await assert_still_running(bystander)


async def test_missing_usb_library_ends_only_that_session(
    manager: SessionManager, bystander, monkeypatch: pytest.MonkeyPatch
):
    def no_backend(**kwargs):
        raise usb.core.NoBackendError("No backend available")

    monkeypatch.setattr(usb.core, "find", no_backend)
    monkeypatch.setitem(manager.backends, LibusbBackend.name, LibusbBackend)
    session = manager.sessions[manager.open("libusb", {"vid": "1d6b", "pid": "0104"}, EventRecorder())]
    await wait_terminated(session)
    assert session.backend._device is None
    await assert_still_running(bystander)
