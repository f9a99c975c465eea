import asyncio
import logging
import signal
from typing import Iterable, Awaitable, Optional, Callable, List, Sequence


logger = logging.getLogger(__name__)


async def run_tasks_with_cleanup(
    tasks: Iterable[asyncio.Task],
    stop_event: Optional[asyncio.Event] = None,
    cleanup: Optional[Callable[[], Awaitable[None]]] = None,
    drain: Sequence[asyncio.Task] = (),
    grace_period: float = 0.0,
) -> None:
    """Run tasks until all finish or ``stop_event`` is set, then cancel stragglers.

    A task failing with an exception is logged and sets the stop event, so one
    dead loop brings the rest of the agent down with it. Tasks in ``drain`` get
    up to ``grace_period`` seconds to return on their own before cancellation.
    """
    task_list: List[asyncio.Task] = list(tasks)
    waiter: Optional[asyncio.Task] = None
    try:
        pending = set(task_list)
        if stop_event is not None:
            waiter = asyncio.ensure_future(stop_event.wait())
            pending.add(waiter)
        while pending:
            done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
            if waiter is not None and waiter in done:
                break
            for task in done:
                if not task.cancelled() and task.exception() is not None:
                    logger.error("Task %s failed", task.get_name(), exc_info=task.exception())
                    if stop_event is not None:
                        stop_event.set()
            if waiter is not None and pending == {waiter}:
                break
    except asyncio.CancelledError:
        pass
    finally:
        if waiter is not None and not waiter.done():
            waiter.cancel()
        await _drain(drain, grace_period)
        for t in task_list:
            if not t.done():
                t.cancel()
        if task_list:
            await asyncio.gather(*task_list, return_exceptions=True)
        if cleanup is not None:
            await cleanup()


def install_stop_signals(on_signal: Callable[[], None]) -> List[int]:
    """Call ``on_signal`` on SIGINT/SIGTERM; returns the signals actually hooked."""
    loop = asyncio.get_running_loop()
    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, on_signal)
        except (NotImplementedError, RuntimeError, ValueError):
            continue
        installed.append(sig)
    return installed


async def _drain(tasks: Sequence[asyncio.Task], grace_period: float) -> None:
    running = [t for t in tasks if not t.done()]
    if not running or grace_period <= 0:
        return
    _, late = await asyncio.wait(running, timeout=grace_period)
    for task in late:
        logger.warning("Task %s still running after %.1fs; cancelling", task.get_name(), grace_period)
