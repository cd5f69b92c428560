"""One connected dashboard and its outbound message queue.

A `Subscriber` decouples the synchronous patch fan-out from network I/O.
`deliver()` is called from inside a tree mutation and never awaits: it only
appends the already-encoded message to a bounded queue. A writer task
(`run_writer()`) drains that queue in order onto the subscriber's `Channel`.

A subscriber that cannot keep up (its queue reaches the bound) or whose
channel closes is disconnected. Messages are never dropped silently while the
subscriber stays connected, so a connected subscriber's view never has gaps.
"""

import asyncio
from typing import Optional

from . import logger
from .channel import Channel
from .exceptions import SubscriberDisconnectedError, SubscriberOverflowError
from .status import SubscriberStatus
from .utils import generate_unique_id

DEFAULT_MAX_PENDING_MESSAGES = 1000

# Queued after the last real message to let the writer finish cleanly.
_CLOSE = object()


class Subscriber:
    """A remote dashboard connection taking part in the patch fan-out.

    Args:
        channel (Channel): The transport to the remote dashboard.
        max_pending_messages (int): How many undelivered messages may queue up
            before the subscriber is considered too slow and disconnected.
        subscriber_id (Optional[str]): An explicit id; generated when omitted.
    """

    def __init__(self, channel: Channel, max_pending_messages: int = DEFAULT_MAX_PENDING_MESSAGES, subscriber_id: Optional[str] = None):
        if max_pending_messages < 1:
            raise ValueError("max_pending_messages must be at least 1")
        self.id = subscriber_id or generate_unique_id("subscriber")
        self._channel = channel
        self._max_pending = max_pending_messages
        # One extra slot so the close marker always fits behind a full backlog.
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_pending_messages + 1)
        self._status = SubscriberStatus.CONNECTED
        self._writer_task: Optional[asyncio.Task] = None

    def __repr__(self) -> str:
        return f"Subscriber(id={self.id!r}, status={self._status}, remote={self._channel.remote_address!r})"

    @property
    def status(self) -> SubscriberStatus:
        return self._status

    @property
    def channel(self) -> Channel:
        return self._channel

    @property
    def pending(self) -> int:
        """Number of messages queued but not yet written to the channel."""
        return self._queue.qsize()

    def mark_authenticated(self) -> None:
        if self._status is not SubscriberStatus.CONNECTED:
            raise RuntimeError(f"Cannot authenticate subscriber {self.id} in state {self._status}")
        self._status = SubscriberStatus.AUTHENTICATED

    def mark_synced(self) -> None:
        if self._status is not SubscriberStatus.AUTHENTICATED:
            raise RuntimeError(f"Cannot sync subscriber {self.id} in state {self._status}")
        self._status = SubscriberStatus.SYNCED

    def deliver(self, message: str) -> None:
        """Queues one encoded message for this subscriber. Never blocks.

        Raises:
            SubscriberDisconnectedError: If the subscriber is already disconnected.
            SubscriberOverflowError: If the queue is full. The subscriber is
                disconnected before this is raised.
        """
        if self._status is SubscriberStatus.DISCONNECTED:
            raise SubscriberDisconnectedError(self.id, reason="subscriber already disconnected")
        if self._queue.qsize() >= self._max_pending:
            self._disconnect_now()
            raise SubscriberOverflowError(self.id, self._max_pending)
        self._queue.put_nowait(message)

    def _disconnect_now(self) -> None:
        self._status = SubscriberStatus.DISCONNECTED
        if (task := self._writer_task) and not task.done():
            task.cancel()

    def start_writer(self) -> asyncio.Task:
        """Starts the writer task on the running loop (once)."""
        if self._writer_task is None:
            self._writer_task = asyncio.get_running_loop().create_task(self.run_writer(), name=f"writer-{self.id}")
        return self._writer_task

    async def run_writer(self) -> None:
        """Writes queued messages to the channel, in order, until closed."""
        logger.debug(f"Writer for subscriber {self.id} starting.")
        try:
            while True:
                message = await self._queue.get()
                if message is _CLOSE:
                    break
                await self._channel.send_message_async(message)
        except SubscriberDisconnectedError as e:
            logger.info(f"Subscriber {self.id} went away while sending: {e}")
        except asyncio.CancelledError:
            logger.debug(f"Writer for subscriber {self.id} was cancelled.")
        finally:
            self._status = SubscriberStatus.DISCONNECTED
            await self._channel.close_async()
            logger.debug(f"Writer for subscriber {self.id} stopped.")

    async def close_async(self) -> None:
        """Disconnects the subscriber after flushing what is already queued."""
        self._status = SubscriberStatus.DISCONNECTED
        task = self._writer_task
        if task is None:
            await self._channel.close_async()
            return
        if not task.done():
            try:
                self._queue.put_nowait(_CLOSE)
            except asyncio.QueueFull:
                task.cancel()
            await asyncio.gather(task, return_exceptions=True)
