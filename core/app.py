import asyncio
import signal
import sys
import traceback
from functools import partial
from typing import Optional, Sequence

from core.config_loader import BridgeConfig, ConfigError, load_config
from core.context import BridgeContext
from shared.logging.logger import configure_logging, get_logger

log = get_logger("core.app")

SIGINT_STATUS = "I'm exiting from a deliberate SIGINT. This was probably intentional."


async def main(config: BridgeConfig) -> int:
    configure_logging(config.log_level, config.log_dir or None)
    log.info("Chat relay booting")

    context = BridgeContext(config)

    loop = asyncio.get_running_loop()
    loop.set_exception_handler(partial(_handle_loop_exception, context))
    _install_signal_handlers(loop, context)

    try:
        await context.start()

        # --------------------------------------------------
        # BLOCK UNTIL SHUTDOWN SIGNAL OR FATAL CONDITION
        # --------------------------------------------------
        await context.stop_event.wait()
    finally:
        await context.shutdown()

    log.info(f"Chat relay exiting with code {context.exit_code}")
    return context.exit_code


# ----------------------------------------------------------------------
# CRASH HANDLING
# ----------------------------------------------------------------------

def _handle_loop_exception(context: BridgeContext, loop: asyncio.AbstractEventLoop, ctx: dict):
    exc = ctx.get("exception")
    if exc is None:
        log.error(f"Event loop error: {ctx.get('message')}")
        return

    stack = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    log.error(f"Unhandled exception: {stack}")
    context.report_crash(str(exc), stack)


# ----------------------------------------------------------------------
# SIGNAL HANDLING (WINDOWS-SAFE)
# ----------------------------------------------------------------------

def _install_signal_handlers(loop: asyncio.AbstractEventLoop, context: BridgeContext):
    """
    Uses signal.signal + call_soon_threadsafe so Ctrl+C unwinds through
    the event loop on every platform.
    """

    def _handler(signum, frame):
        log.info(f"Received signal {signal.Signals(signum).name}")
        loop.call_soon_threadsafe(context.interrupt, SIGINT_STATUS)

    try:
        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
    except (ValueError, OSError) as e:
        log.warning(f"Signal handlers not installed: {e}")


# ----------------------------------------------------------------------
# ENTRYPOINT
# ----------------------------------------------------------------------

def run(argv: Optional[Sequence[str]] = None) -> int:
    try:
        config = load_config(argv)
    except ConfigError as e:
        log.error(str(e))
        return 2

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    exit_code = 1
    try:
        exit_code = loop.run_until_complete(main(config))

    except KeyboardInterrupt:
        log.info("KeyboardInterrupt received, exiting")
        exit_code = 0

    finally:
        # --------------------------------------------------
        # CANCEL REMAINING TASKS (CLEANLY)
        # --------------------------------------------------
        pending = [t for t in asyncio.all_tasks(loop) if not t.done()]
        for task in pending:
            task.cancel()

        if pending:
            loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))

        loop.run_until_complete(loop.shutdown_asyncgens())
        asyncio.set_event_loop(None)
        loop.close()

    return exit_code


if __name__ == "__main__":
    sys.exit(run())
