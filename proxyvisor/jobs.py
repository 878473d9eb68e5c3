"""
Supervised background activities.

Each long-lived activity (the proxy process, the renewal loop, the template
watcher) runs as an asyncio task behind a ProcessHandle. The HandleSet owns
all handles, reports the first one to exit, and shuts the rest down.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, Coroutine

logger = logging.getLogger(__name__)


class HandleState(Enum):
    RUNNING = "running"
    EXITED = "exited"


@dataclass
class ProcessHandle:
    """A supervised background activity."""

    name: str
    task: asyncio.Task
    state: HandleState = HandleState.RUNNING
    exit_code: int | None = None
    error: str | None = None
    started_at: datetime = field(default_factory=datetime.now)
    exited_at: datetime | None = None
    on_stop: Callable[[], Awaitable[None]] | None = None

    @property
    def running(self) -> bool:
        return self.state is HandleState.RUNNING

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "state": self.state.value,
            "exit_code": self.exit_code,
            "error": self.error,
            "started_at": self.started_at.isoformat(),
            "exited_at": self.exited_at.isoformat() if self.exited_at else None,
        }


class HandleSet:
    """Owns the supervised activities for the lifetime of the process."""

    def __init__(self):
        self._handles: dict[str, ProcessHandle] = {}
        self._exited: asyncio.Queue[ProcessHandle] = asyncio.Queue()
        self._stopping = False

    def spawn(
        self,
        name: str,
        coro: Coroutine,
        on_stop: Callable[[], Awaitable[None]] | None = None,
    ) -> ProcessHandle:
        """
        Run coro as a supervised activity.

        Args:
            name: Identifier used in logs
            coro: The activity; its integer return value becomes the exit code
            on_stop: Graceful stop hook awaited during shutdown before the
                task is cancelled
        """
        if name in self._handles and self._handles[name].running:
            raise ValueError(f"Activity {name} is already running")

        task = asyncio.create_task(coro, name=name)
        handle = ProcessHandle(name=name, task=task, on_stop=on_stop)
        self._handles[name] = handle
        task.add_done_callback(lambda t, h=handle: self._on_done(h, t))

        logger.info(f"Started {name}")
        return handle

    def _on_done(self, handle: ProcessHandle, task: asyncio.Task) -> None:
        handle.state = HandleState.EXITED
        handle.exited_at = datetime.now()

        if task.cancelled():
            handle.error = "cancelled"
        elif task.exception() is not None:
            exc = task.exception()
            handle.exit_code = 1
            handle.error = f"{type(exc).__name__}: {exc}"
            logger.error(f"{handle.name} failed: {handle.error}", exc_info=exc)
        else:
            result = task.result()
            handle.exit_code = result if isinstance(result, int) else 0
            log = logger.info if self._stopping else logger.warning
            log(f"{handle.name} exited with code {handle.exit_code}")

        self._exited.put_nowait(handle)

    def get(self, name: str) -> ProcessHandle | None:
        return self._handles.get(name)

    @property
    def handles(self) -> list[ProcessHandle]:
        return list(self._handles.values())

    def running(self) -> list[str]:
        return [name for name, handle in self._handles.items() if handle.running]

    async def wait_first(self, stop_event: asyncio.Event = None) -> ProcessHandle | None:
        """
        Block until any activity exits or stop_event is set.

        Returns:
            The first handle that exited, or None when stopped by stop_event.
        """
        if not self._handles:
            raise RuntimeError("No activities to wait on")

        exited = asyncio.ensure_future(self._exited.get())
        waiters = {exited}
        stopper = None
        if stop_event is not None:
            stopper = asyncio.ensure_future(stop_event.wait())
            waiters.add(stopper)

        try:
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                if not waiter.done():
                    waiter.cancel()

        if exited.done() and not exited.cancelled():
            return exited.result()
        return None

    async def shutdown(self, timeout: float = 10.0) -> None:
        """
        Stop every activity that is still running.

        Each activity's on_stop hook gets up to twice `timeout` seconds, so a
        hook that applies its own `timeout` (graceful stop, then kill) can run
        to completion. The activity then gets `timeout` seconds to exit on its
        own before the task is cancelled.
        """
        self._stopping = True
        for handle in reversed(self.handles):
            if not handle.running:
                continue

            logger.info(f"Stopping {handle.name}...")
            if handle.on_stop is not None:
                try:
                    await asyncio.wait_for(handle.on_stop(), 2 * timeout)
                    await asyncio.wait({handle.task}, timeout=timeout)
                except asyncio.TimeoutError:
                    logger.warning(f"{handle.name} did not stop within {2 * timeout:g} seconds")
                except Exception as e:
                    logger.error(f"Error stopping {handle.name}: {e}")

            if not handle.task.done():
                handle.task.cancel()
            try:
                await asyncio.wait_for(asyncio.shield(handle.task), timeout)
            except (asyncio.CancelledError, asyncio.TimeoutError):
                pass
            except Exception:
                # Already reported by the done callback
                pass

        logger.info("All activities stopped")
