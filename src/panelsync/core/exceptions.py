"""Core exceptions for panelsync's event-loop infrastructure.

These exceptions are raised by `LoopThread` when the background event loop
cannot be started or is not running. They are kept separate from the
application-level errors in `panelsync.exceptions`.
"""

from typing import Optional


class CoreLoopError(Exception):
    """Base class for errors raised by the background event-loop runner."""
    def __init__(self, message: str, original_exception: Optional[BaseException] = None):
        super().__init__(message)
        self.original_exception = original_exception

    def __str__(self) -> str:
        """Provide a more informative string representation."""
        parts = [super().__str__()]
        if self.original_exception:
            parts.append(f"Original Exception: {type(self.original_exception).__name__}: {self.original_exception}")
        return ". ".join(parts)


class CoreLoopNotRunningError(CoreLoopError, RuntimeError):
    """Raised when an operation requires the background loop but it is not running.

    This happens when `ensure_running()` has not been called yet or the loop
    has already been stopped.
    """
    def __init__(self, message: str = "The background event loop is not running."):
        super().__init__(message)

