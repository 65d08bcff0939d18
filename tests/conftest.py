import pytest
import trio

from macrodevice.engine import Dispatcher, ScriptEngine
from macrodevice.manager import SessionManager

from fakes import FakeBackend


@pytest.fixture
def engine():
    engine = ScriptEngine()
    yield engine
    engine.release()


@pytest.fixture
async def dispatcher(engine: ScriptEngine, nursery: trio.Nursery):
    dispatcher = Dispatcher(engine)
    await nursery.start(dispatcher.run)
    return dispatcher


@pytest.fixture
async def manager(dispatcher: Dispatcher, nursery: trio.Nursery):
    manager = SessionManager(dispatcher, backends={FakeBackend.name: FakeBackend})
    await nursery.start(manager.run)
    return manager
