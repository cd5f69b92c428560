"""Internal utility functions for panelsync.

Warning:
    Functions in this module are internal implementation details and may
    change without notice.
"""

import getpass
import socket
import time
from typing import Optional

# Shared counter used to build readable unique ids within one process.
_instance_counter = 0


def generate_unique_id(prefix: str) -> str:
    """Generates a simple, sequential id such as "subscriber-3".

    Args:
        prefix (str): A short name for the kind of object being identified.

    Returns:
        str: A process-unique identifier.
    """
    global _instance_counter
    _instance_counter += 1
    return f"{prefix}-{_instance_counter}"


def now_ms() -> int:
    """Current wall-clock time in milliseconds, the unit dashboards expect."""
    return int(time.time() * 1000)


def detect_hostname(default: str = "localhost") -> str:
    try:
        return socket.gethostname() or default
    except OSError:
        return default


def detect_user(default: str = "unknown") -> str:
    """Best-effort name of the user running the process."""
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return default


def detect_address(default: str = "127.0.0.1") -> str:
    """Best-effort outward-facing IPv4 address of this machine.

    No packets are sent: connecting a UDP socket only selects a route.
    """
    sock: Optional[socket.socket] = None
    try:
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        sock.connect(("10.255.255.255", 1))
        return sock.getsockname()[0]
    except OSError:
        return default
    finally:
        if sock is not None:
            sock.close()
