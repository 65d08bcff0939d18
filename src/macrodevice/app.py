from __future__ import annotations

import argparse
import logging
import pathlib
import signal
import sys

import trio

from .engine import Dispatcher, EngineError, MacrodeviceAPI, ScriptEngine
from .manager import SessionManager

logger = logging.getLogger(__name__)


async def close_on_signal(manager: SessionManager, *, task_status=trio.TASK_STATUS_IGNORED):
    with trio.open_signal_receiver(signal.SIGINT, signal.SIGTERM) as signals:
        task_status.started()
        async for signum in signals:
            logger.info("Got %s, closing all devices", signal.Signals(signum).name)
            manager.close()


async def serve(config: pathlib.Path, args: list[str]) -> int:
    engine = ScriptEngine()
    dispatcher = Dispatcher(engine)
    manager = SessionManager(dispatcher)
    try:
        async with trio.open_nursery() as nursery:
            await nursery.start(dispatcher.run)
            await nursery.start(manager.run)
            await nursery.start(close_on_signal, manager)
            engine.expose("macrodevice", MacrodeviceAPI(manager, args))

            try:
                await trio.to_thread.run_sync(engine.load, config)
            except EngineError:
                logger.exception("Could not load %s", config)
                nursery.cancel_scope.cancel()
                return 1

            if not manager.sessions:
                logger.warning("%s did not open any devices", config)
            await manager.wait_idle()
            logger.debug("No sessions left")
            nursery.cancel_scope.cancel()
    finally:
        engine.release()
    return 0


parser = argparse.ArgumentParser(prog="macrodevice")
parser.add_argument("-c", "--config", type=pathlib.Path, required=True, help="config script to run")
parser.add_argument(
    "-a", "--arg", action="append", default=[], dest="args", help="passed to the config as macrodevice.arg"
)
parser.add_argument("-v", "--verbose", action="store_true")


def main(argv=sys.argv):
    """
    Args:
        argv (list): List of arguments

    Returns:
        int: A return code
    """
    parsed = parser.parse_args(argv[1:])
    logging.basicConfig(level=logging.DEBUG if parsed.verbose else logging.INFO)
    return trio.run(serve, parsed.config, parsed.args)


if __name__ == "__main__":
    sys.exit(main())
