"""Fans tree mutations out to every connected subscriber.

`PatchEmitter` is the `ChangeHandler` bound to the root of the state tree.
Each mutation is encoded exactly once and the resulting text is queued on
every subscriber, in mutation order, with no batching or coalescing. A
subscriber that fails to accept a message is logged and dropped; the others
still receive it.
"""

from typing import Any, Dict, List, Optional

from . import logger
from .exceptions import SubscriberError
from .observed import ChangeHandler, Path
from .patches import MessageType, Patch, encode_message, encode_patch
from .subscriber import Subscriber


class PatchEmitter(ChangeHandler):
    """Broadcasts patches and out-of-band events to the current subscribers."""

    def __init__(self):
        # Insertion ordered, so delivery order across subscribers is stable.
        self._subscribers: Dict[str, Subscriber] = {}

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    @property
    def subscribers(self) -> List[Subscriber]:
        return list(self._subscribers.values())

    def add(self, subscriber: Subscriber) -> None:
        self._subscribers[subscriber.id] = subscriber
        logger.debug(f"Subscriber {subscriber.id} joined the fan-out ({self.subscriber_count} total).")

    def discard(self, subscriber: Subscriber) -> None:
        if self._subscribers.pop(subscriber.id, None) is not None:
            logger.debug(f"Subscriber {subscriber.id} left the fan-out ({self.subscriber_count} total).")

    # --- ChangeHandler ---

    def on_set(self, path: Path, value: Any) -> None:
        self.broadcast(encode_patch(Patch.set(path, value)))

    def on_delete(self, path: Path) -> None:
        self.broadcast(encode_patch(Patch.remove(path)))

    # --- Broadcasting ---

    def broadcast_event(self, message_type: MessageType, payload: Optional[Any] = None) -> int:
        """Sends an out-of-band notification (not a patch) to every subscriber."""
        return self.broadcast(encode_message(message_type, payload))

    def broadcast(self, message: str) -> int:
        """Queues one encoded message on every subscriber.

        Returns:
            int: The number of subscribers that accepted the message.
        """
        delivered = 0
        for subscriber in list(self._subscribers.values()):
            try:
                subscriber.deliver(message)
                delivered += 1
            except SubscriberError as e:
                logger.warning(f"Dropping subscriber {subscriber.id}: {e}")
                self.discard(subscriber)
            except Exception as e:
                logger.exception(f"Unexpected error delivering to subscriber {subscriber.id}, dropping it: {e}")
                self.discard(subscriber)
        return delivered
