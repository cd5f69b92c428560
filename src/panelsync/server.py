"""The panel server: WebSocket listener, sessions and periodic tree updates.

`PanelServer` ties the pieces together. It builds the initial state tree,
wraps it in a `SyncService`, accepts dashboard connections with
`websockets.serve` (one `Session` per connection) and runs its background
tasks on the same event loop: the uptime/TPS ticker, the resource sampler
and, when a permissions file is configured, a watcher that mirrors it into
the tree.

Async hosts use it as an async context manager:

    async with PanelServer(config) as server:
        server.tree["server"]["version"] = "1.21.0"
        await server.wait_closed()

Synchronous hosts (a game server's main thread) run it on a background
event-loop thread and hand mutations over:

    server = PanelServer(config)
    server.start_in_background()
    server.submit_mutation(add_player, server.tree, uuid, name)
    server.submit_mutation(update_game_info, server.tree, server.watched_players, uuid, {"ping": 42})
    ...
    server.stop_background()
"""

import asyncio
import logging
import os
import time
from typing import Any, Callable, List, Optional, Set

import websockets

from . import logger
from .bridge import LoggingBridge, ServerBridge
from .channel import WebSocketChannel
from .config import PanelConfig
from .core import LoopThread
from .handlers import RequestRouter, default_router
from .observed import ObservedDict
from .patches import MessageType
from .sampler import UsageReader, ResourceSampler
from .serverdata import ConsoleLogHandler, WatchedPlayers, build_server_data, load_permissions
from .session import Session
from .subscriber import Subscriber
from .sync import SyncService

_BACKGROUND_TIMEOUT_SECONDS = 10.0
_MAX_TPS = 20


def _modified_at(path: str) -> Optional[int]:
    try:
        return os.stat(path).st_mtime_ns
    except OSError:
        return None


class PanelServer:
    """Serves the live state tree to dashboards over WebSockets.

    Args:
        config (Optional[PanelConfig]): Settings; defaults apply when omitted.
        bridge (Optional[ServerBridge]): The game server behind the panel.
            Defaults to a `LoggingBridge`.
        router (Optional[RequestRouter]): Request handlers; defaults to the
            built-in set.
        reader (Optional[UsageReader]): Resource reader for the sampler.
    """

    def __init__(self, config: Optional[PanelConfig] = None, bridge: Optional[ServerBridge] = None, router: Optional[RequestRouter] = None, reader: Optional[UsageReader] = None):
        self.config = config or PanelConfig()
        self.bridge = bridge or LoggingBridge()
        self.router = router or default_router()
        self.service = SyncService(build_server_data(self.config))
        self.watched_players = WatchedPlayers()
        self.sampler = ResourceSampler(
            self.service.tree,
            self.service.emitter,
            interval=self.config.sample_interval,
            history=self.config.sample_history,
            reader=reader,
        )
        self._server: Any = None
        self._tasks: List[asyncio.Task] = []
        self._sessions: Set[Session] = set()
        self._console_handler: Optional[ConsoleLogHandler] = None
        self._loop_thread: Optional[LoopThread] = None
        self._started_at: Optional[float] = None
        self._ticks = 0
        self._closed: Optional[asyncio.Event] = None

    @property
    def tree(self) -> ObservedDict:
        return self.service.tree

    @property
    def is_serving(self) -> bool:
        return self._server is not None

    @property
    def port(self) -> Optional[int]:
        """The port actually bound (useful when configured with port 0)."""
        if self._server is None:
            return None
        for sock in self._server.sockets:
            return sock.getsockname()[1]
        return None

    @property
    def session_count(self) -> int:
        return len(self._sessions)

    # --- Lifecycle ---

    async def start(self) -> None:
        """Starts listening and the periodic tasks. Must run on the serving loop."""
        if self._server is not None:
            return
        loop = asyncio.get_running_loop()
        self._closed = asyncio.Event()
        self.service.bind_loop(loop)
        self._server = await websockets.serve(self._handle_connection, self.config.host, self.config.port)

        # Dashboards still open from a previous run must log in again.
        self.service.broadcast_event(MessageType.LOGOUT)
        self._started_at = time.monotonic()
        self.tree["status"] = 1

        if self.config.capture_console:
            self._console_handler = ConsoleLogHandler(self.service, self.config.max_log_entries)
            logging.getLogger().addHandler(self._console_handler)

        self._tasks = [
            loop.create_task(self._run_ticker(), name="panelsync-ticker"),
            loop.create_task(self.sampler.run(), name="panelsync-sampler"),
        ]
        if self.config.permissions_file:
            load_permissions(self.tree, self.config.permissions_file)
            self._tasks.append(loop.create_task(self._watch_permissions(), name="panelsync-permissions"))
        logger.info(f"Panel listening on ws://{self.config.host}:{self.port}")

    async def stop(self) -> None:
        """Closes every session, stops listening and cancels periodic tasks."""
        if self._server is None:
            return
        logger.info("Stopping panel server.")
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

        for session in list(self._sessions):
            self.service.detach(session.subscriber)
            await session.subscriber.close_async()

        server, self._server = self._server, None
        server.close()
        await server.wait_closed()

        if self._console_handler is not None:
            logging.getLogger().removeHandler(self._console_handler)
            self._console_handler = None
        self.tree["status"] = 0
        self.service.bind_loop(None)
        if self._closed is not None:
            self._closed.set()
        logger.info("Panel server stopped.")

    async def wait_closed(self) -> None:
        """Waits until `stop()` has completed."""
        if self._closed is not None:
            await self._closed.wait()

    async def __aenter__(self) -> "PanelServer":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    # --- Connections ---

    async def _handle_connection(self, connection: Any) -> None:
        channel = WebSocketChannel(connection)
        subscriber = Subscriber(channel, self.config.max_pending_messages)
        session = Session(self.service, subscriber, self.config, self.router, self.bridge, self.watched_players)
        self._sessions.add(session)
        try:
            await session.run()
        finally:
            self._sessions.discard(session)

    # --- Periodic updates ---

    def record_tick(self) -> None:
        """Counts one game tick; the ticker turns the count into `server.game.tps`."""
        self._ticks += 1

    def update_uptime(self) -> None:
        if self._started_at is None:
            return
        game = self.tree["server"]["game"]
        self.tree["server"]["uptime"] = int((time.monotonic() - self._started_at) * 1000)
        game["tps"] = min(self._ticks, _MAX_TPS)
        self._ticks = 0

    async def _run_ticker(self) -> None:
        while True:
            await asyncio.sleep(self.config.uptime_interval)
            self.update_uptime()

    async def _watch_permissions(self) -> None:
        path = self.config.permissions_file
        last_seen = _modified_at(path)
        while True:
            await asyncio.sleep(self.config.permissions_poll_interval)
            modified = _modified_at(path)
            if modified == last_seen:
                continue
            last_seen = modified
            if modified is not None:
                logger.info(f"Permissions file '{path}' changed; reloading.")
                load_permissions(self.tree, path)

    # --- Background mode ---

    def start_in_background(self) -> None:
        """Runs the server on its own event-loop thread and returns once it listens."""
        if self._loop_thread is not None:
            return
        self._loop_thread = LoopThread(name="PanelSyncServer")
        self._loop_thread.ensure_running()
        self._loop_thread.run(self.start(), timeout=_BACKGROUND_TIMEOUT_SECONDS)

    def stop_background(self, timeout: float = _BACKGROUND_TIMEOUT_SECONDS) -> None:
        """Stops a server started with `start_in_background()` and joins its thread."""
        thread, self._loop_thread = self._loop_thread, None
        if thread is None:
            return
        try:
            thread.run(self.stop(), timeout=timeout)
        finally:
            thread.stop()
            thread.wait_for_stop(timeout=timeout)

    def submit_mutation(self, fn: Callable[..., Any], *args: Any) -> None:
        """Queues `fn(*args)` to run on the server's loop. Safe from any thread."""
        self.service.call_soon_threadsafe(fn, *args)
