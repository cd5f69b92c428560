"""Defines the lifecycle states of a dashboard subscriber.

Each remote dashboard connection moves through these states exactly once, in
order. A client that reconnects gets a brand new `Subscriber` starting again
at `CONNECTED`; nothing is resumed from an earlier session.
"""

from enum import Enum, auto


class SubscriberStatus(Enum):
    """Represents where one subscriber is in its handshake with the server."""
    CONNECTED = auto()
    """The transport is open but the client has not logged in yet.
    Requests other than `login` are ignored in this state.
    """

    AUTHENTICATED = auto()
    """The client presented valid credentials.
    The full snapshot has not been queued yet, so the subscriber is not part of
    the patch fan-out.
    """

    SYNCED = auto()
    """The snapshot has been queued and the subscriber receives every patch
    emitted after it, in mutation order.
    """

    DISCONNECTED = auto()
    """The channel is closed or the subscriber was dropped (for example after
    falling too far behind). Terminal state.
    """

    def __str__(self) -> str:
        """Return a user-friendly string representation of the status."""
        return self.name
