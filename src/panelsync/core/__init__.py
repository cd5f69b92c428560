"""Core infrastructure for panelsync.

This sub-package holds the low-level pieces the rest of the package builds
on: `LoopThread`, which runs the server's asyncio event loop on a background
thread for synchronous hosts, and the exceptions it raises.
"""

from .exceptions import (
    CoreLoopError,
    CoreLoopNotRunningError,
)
from .loop_thread import LoopThread


__all__ = [
    'CoreLoopError',
    'CoreLoopNotRunningError',
    'LoopThread',
]
