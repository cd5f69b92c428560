"""The synchronization service: one observed tree, one emitter, many subscribers.

`SyncService` owns the authoritative state tree. Domain code mutates
`service.tree` with ordinary item or attribute syntax (or through the
explicit `set_path()`/`delete_path()` API), and every mutation is broadcast
to the synced subscribers as it happens.

All mutations must run on the service's event loop thread. Code running on
another thread hands its mutation over with `call_soon_threadsafe()`, which
queues it on the loop so mutations never interleave.
"""

import asyncio
from typing import Any, Callable, Mapping, Optional, Sequence

from . import logger
from .core.exceptions import CoreLoopNotRunningError
from .emitter import PatchEmitter
from .observed import DeepObserver, Key, ObservedDict
from .patches import MessageType, Patch, encode_patch
from .status import SubscriberStatus
from .subscriber import Subscriber


class SyncService:
    """Keeps every synced subscriber's mirror equal to the state tree.

    Args:
        data (Mapping): The initial plain tree. It is copied and wrapped.
        emitter (Optional[PatchEmitter]): The fan-out to use; a fresh one is
            created when omitted.
    """

    def __init__(self, data: Mapping, emitter: Optional[PatchEmitter] = None):
        self._emitter = emitter if emitter is not None else PatchEmitter()
        self._observer = DeepObserver(self._emitter)
        self._tree = self._observer.observe(data)
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def tree(self) -> ObservedDict:
        """The root of the observed state tree."""
        return self._tree

    @property
    def emitter(self) -> PatchEmitter:
        return self._emitter

    @property
    def observer(self) -> DeepObserver:
        return self._observer

    # --- Explicit mutation API ---

    def get_path(self, path: Sequence[Key], default: Any = None) -> Any:
        return self._tree.get_in(path, default)

    def set_path(self, path: Sequence[Key], value: Any) -> None:
        """Assigns `value` at `path`; see `ObservedNode.set_in()`."""
        self._tree.set_in(path, value)

    def delete_path(self, path: Sequence[Key]) -> None:
        """Deletes the value at `path`; a missing path is a no-op."""
        self._tree.delete_in(path)

    def broadcast_event(self, message_type: MessageType, payload: Optional[Any] = None) -> int:
        return self._emitter.broadcast_event(message_type, payload)

    # --- Subscriber bootstrap ---

    def snapshot_message(self) -> str:
        """The encoded full-tree patch, `{path: [], value: tree}`."""
        return encode_patch(Patch.snapshot(self._tree))

    def attach(self, subscriber: Subscriber) -> None:
        """Sends the snapshot to an authenticated subscriber and starts its patch stream.

        Encoding the snapshot, queueing it and joining the fan-out happen in
        one synchronous step, so no mutation can slip in between: the
        subscriber receives every later patch exactly once, after the
        snapshot.

        Raises:
            RuntimeError: If the subscriber is not in the AUTHENTICATED state.
        """
        if subscriber.status is not SubscriberStatus.AUTHENTICATED:
            raise RuntimeError(f"Cannot attach subscriber {subscriber.id} in state {subscriber.status}")
        subscriber.deliver(self.snapshot_message())
        subscriber.mark_synced()
        self._emitter.add(subscriber)
        logger.info(f"Subscriber {subscriber.id} synced ({self._emitter.subscriber_count} connected).")

    def detach(self, subscriber: Subscriber) -> None:
        self._emitter.discard(subscriber)

    # --- Cross-thread mutation ---

    def bind_loop(self, loop: Optional[asyncio.AbstractEventLoop]) -> None:
        """Records the event loop that owns the tree (None to unbind)."""
        self._loop = loop

    def call_soon_threadsafe(self, fn: Callable[..., Any], *args: Any) -> None:
        """Queues `fn(*args)` to run on the tree's event loop.

        Mutations submitted this way run one at a time, in submission order.

        Raises:
            CoreLoopNotRunningError: If no running loop is bound to the service.
        """
        loop = self._loop
        if loop is None or loop.is_closed():
            raise CoreLoopNotRunningError("SyncService is not bound to a running event loop.")
        loop.call_soon_threadsafe(self._run_mutation, fn, args)

    def mutate(self, fn: Callable[..., Any], *args: Any) -> None:
        """Runs `fn(*args)` now when on the tree's loop (or before one is bound), else queues it."""
        loop = self._loop
        if loop is None or loop.is_closed():
            fn(*args)
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            fn(*args)
        else:
            loop.call_soon_threadsafe(self._run_mutation, fn, args)

    def _run_mutation(self, fn: Callable[..., Any], args: Sequence[Any]) -> None:
        try:
            fn(*args)
        except Exception as e:
            logger.exception(f"Mutation {getattr(fn, '__name__', fn)!r} failed: {e}")
