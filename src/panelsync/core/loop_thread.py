"""Runs an asyncio event loop on a dedicated daemon thread.

`LoopThread` lets a synchronous host process (for example a game server's
main thread) run the panel server in the background. The state tree has
exactly one writer context, the loop thread. `run()` blocks the calling thread
until a coroutine has finished on the loop; single mutations are handed over
with `SyncService.call_soon_threadsafe()`.
"""

import asyncio
import concurrent.futures
import logging
import threading
from typing import Any, Coroutine, Optional

from .exceptions import CoreLoopError, CoreLoopNotRunningError

logger = logging.getLogger(__name__)

_LOOP_STARTUP_TIMEOUT_SECONDS = 10.0


class LoopThread:
    """Owns one asyncio event loop running in a background daemon thread.

    The loop is started lazily by `ensure_running()` and keeps running until
    `stop()` is called. Tasks still pending on the loop at that point are
    cancelled during shutdown.
    """

    def __init__(self, name: str = "PanelSyncLoop"):
        self._name = name
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        # Protects _loop/_thread/_shutdown_event, shared with the loop thread.
        self._lock = threading.RLock()

        self._startup_event = threading.Event()
        self._startup_exception: Optional[BaseException] = None
        self._stopped_event = threading.Event()

        # Created on the loop thread; set to end _main_coro.
        self._shutdown_event: Optional[asyncio.Event] = None

    def _thread_target(self) -> None:
        """Body of the loop thread: create the loop, run until shutdown, clean up."""
        loop: Optional[asyncio.AbstractEventLoop] = None
        try:
            loop = asyncio.new_event_loop()
            asyncio.set_event_loop(loop)
            with self._lock:
                self._loop = loop
                self._shutdown_event = asyncio.Event()
            logger.info(f"Loop thread '{self._name}' (TID: {threading.get_ident()}) initialized its event loop.")
            self._startup_event.set()
            loop.run_until_complete(self._main_coro())
        except Exception as e:
            logger.exception(f"Loop thread '{self._name}' encountered a fatal error: {e}")
            if not self._startup_event.is_set():
                self._startup_exception = e
                self._startup_event.set()
        finally:
            if loop and not loop.is_closed():
                try:
                    loop.run_until_complete(self._cancel_pending_tasks())
                    loop.run_until_complete(loop.shutdown_asyncgens())
                except Exception as e_cleanup:
                    logger.error(f"Error during event loop cleanup: {e_cleanup}")
                finally:
                    loop.close()
                    logger.info(f"Loop thread '{self._name}' closed its event loop.")
            with self._lock:
                if self._loop is loop:
                    self._loop = None
                    self._shutdown_event = None
            self._stopped_event.set()

    async def _main_coro(self) -> None:
        """Keeps the loop alive until `stop()` sets the shutdown event."""
        if not self._shutdown_event:
            return
        await self._shutdown_event.wait()
        logger.debug("Loop main coroutine received shutdown signal.")

    async def _cancel_pending_tasks(self) -> None:
        current = asyncio.current_task()
        tasks = [task for task in asyncio.all_tasks() if task is not current and not task.done()]
        if not tasks:
            return
        logger.debug(f"Cancelling {len(tasks)} pending tasks.")
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    def ensure_running(self) -> None:
        """Starts the loop thread if needed and waits until the loop is ready.

        Raises:
            CoreLoopError: If the loop thread fails or times out during startup.
        """
        with self._lock:
            if self.is_running():
                return
            self._startup_event.clear()
            self._stopped_event.clear()
            self._startup_exception = None
            self._thread = threading.Thread(target=self._thread_target, daemon=True, name=self._name)
            self._thread.start()

        if not self._startup_event.wait(timeout=_LOOP_STARTUP_TIMEOUT_SECONDS):
            raise CoreLoopError(f"Timeout ({_LOOP_STARTUP_TIMEOUT_SECONDS}s) waiting for loop thread '{self._name}' to start.")
        if self._startup_exception:
            raise CoreLoopError("Loop thread failed during startup.", original_exception=self._startup_exception)

        # run_until_complete has been called by the time the event is set, but
        # is_running() may lag behind by a scheduler tick.
        ready = concurrent.futures.Future()
        self.loop.call_soon_threadsafe(ready.set_result, True)
        ready.result(timeout=_LOOP_STARTUP_TIMEOUT_SECONDS)

    def is_running(self) -> bool:
        """Checks whether the loop thread is alive and its loop is running."""
        with self._lock:
            return bool(self._thread and self._thread.is_alive() and self._loop and self._loop.is_running())

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        """The managed event loop.

        Raises:
            CoreLoopNotRunningError: If the loop has not been started.
        """
        with self._lock:
            if not self._loop or self._loop.is_closed():
                raise CoreLoopNotRunningError()
            return self._loop

    def run(self, coro: Coroutine[Any, Any, Any], timeout: Optional[float] = None) -> Any:
        """Runs a coroutine on the loop and blocks the calling thread for its result.

        Must not be called from the loop thread.
        """
        future = asyncio.run_coroutine_threadsafe(coro, self.loop)
        return future.result(timeout=timeout)

    def stop(self) -> None:
        """Asks the loop to shut down. Non-blocking and thread-safe."""
        with self._lock:
            loop, event = self._loop, self._shutdown_event
            if loop and not loop.is_closed() and event and not event.is_set():
                logger.info(f"Signaling loop thread '{self._name}' to stop.")
                try:
                    loop.call_soon_threadsafe(event.set)
                except RuntimeError as e:
                    logger.warning(f"Could not signal loop shutdown (loop closing?): {e}")

    def wait_for_stop(self, timeout: Optional[float] = None) -> None:
        """Blocks until the loop thread has fully exited."""
        thread = self._thread
        if thread and thread.is_alive():
            self._stopped_event.wait(timeout=timeout)
            thread.join(timeout=timeout)
        with self._lock:
            if self._thread is thread and not (thread and thread.is_alive()):
                self._thread = None
