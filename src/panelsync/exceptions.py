"""Custom application-level exceptions for the panelsync package.

This module defines the error types raised by the state tree, the wire codec,
configuration loading and the subscriber fan-out. They carry more context than
generic Python errors so the server can log a useful message and keep running.

Lower-level event-loop problems live in `panelsync.core.exceptions`.
"""

from typing import Any, Optional, Sequence


class PanelError(Exception):
    """Base class for all application-level errors raised by panelsync.

    Catching this exception handles any error explicitly raised by the package
    itself, distinguishing it from general Python errors or errors from
    `websockets`.
    """
    def __init__(self, message: str, original_exception: Optional[BaseException] = None):
        super().__init__(message)
        self.original_exception = original_exception

    def __str__(self) -> str:
        """Provide a more informative string representation."""
        parts = [super().__str__()]
        if self.original_exception:
            parts.append(
                f"Underlying issue: {type(self.original_exception).__name__}: {self.original_exception}"
            )
        return ". ".join(parts)


class PathError(PanelError):
    """Raised when an explicit path operation cannot reach its target.

    `set_in()` needs every intermediate segment of the path to exist and to be
    a container; this error names the path and how far the walk got.

    Attributes:
        path (list): The full path that was requested.
        depth (int): The index of the first segment that could not be resolved.
    """
    def __init__(self, path: Sequence[Any], depth: int, reason: str = "segment not found"):
        self.path = list(path)
        self.depth = depth
        super().__init__(f"Cannot resolve path {self.path} at segment {depth}: {reason}")


class MessageDecodeError(PanelError):
    """Raised when an incoming wire message cannot be decoded.

    Attributes:
        raw (str): The first 200 characters of the offending message.
    """
    def __init__(self, message: str, raw: str = "", original_exception: Optional[BaseException] = None):
        super().__init__(message, original_exception=original_exception)
        self.raw = raw[:200]


class ConfigError(PanelError):
    """Raised when the panel configuration file exists but cannot be used.

    Attributes:
        source (Optional[str]): The configuration file path, if known.
    """
    def __init__(self, message: str, source: Optional[str] = None, original_exception: Optional[BaseException] = None):
        super().__init__(message, original_exception=original_exception)
        self.source = source

    def __str__(self) -> str:
        base = super().__str__()
        return f"{base}. Source: {self.source}" if self.source else base


class SubscriberError(PanelError):
    """Base error for problems delivering messages to one subscriber.

    These errors are always scoped to a single subscriber: the emitter logs
    them, drops that subscriber and keeps delivering to everybody else.

    Attributes:
        subscriber_id (Optional[str]): The id of the affected subscriber.
    """
    def __init__(self, message: str, subscriber_id: Optional[str] = None, original_exception: Optional[BaseException] = None):
        super().__init__(message, original_exception=original_exception)
        self.subscriber_id = subscriber_id


class SubscriberDisconnectedError(SubscriberError):
    """Raised when a message is delivered to a subscriber whose channel is gone.

    Attributes:
        reason (Optional[str]): A short description of why the subscriber is gone.
    """
    def __init__(self, subscriber_id: Optional[str] = None, reason: Optional[str] = None, original_exception: Optional[BaseException] = None):
        message = f"Subscriber {subscriber_id or '<unknown>'} is disconnected."
        if reason:
            message += f" Reason: {reason}"
        super().__init__(message, subscriber_id=subscriber_id, original_exception=original_exception)
        self.reason = reason


class SubscriberOverflowError(SubscriberError):
    """Raised when a subscriber falls too far behind the patch stream.

    A subscriber that cannot drain its outbound queue would miss patches and
    silently desynchronize, so it is disconnected instead and has to log in
    again to get a fresh snapshot.

    Attributes:
        limit (int): The queue bound that was exceeded.
    """
    def __init__(self, subscriber_id: Optional[str], limit: int):
        super().__init__(
            f"Subscriber {subscriber_id or '<unknown>'} exceeded {limit} pending messages and was disconnected.",
            subscriber_id=subscriber_id,
        )
        self.limit = limit
