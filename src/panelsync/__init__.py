"""panelsync: a live, deeply observed server-state tree for web dashboards.

panelsync keeps one authoritative nested state tree inside a server process
and mirrors it to any number of connected dashboards. Code that owns the
state just reads and writes the tree like ordinary dicts and lists:

    tree.server.game.players[uuid] = {"name": "Steve", "skin": {"head": ""}}
    tree.server.game.players[uuid]["skin"]["head"] = "data:image/png;..."
    del tree.server.game.players[uuid]

Every such write is intercepted at the exact path where it happened and
broadcast as a small patch (`{path, value}` or `{path, delete: true}`) to
every dashboard, in the order the writes happened. A dashboard that logs in
first receives the whole tree once and then the stream of patches.

Main entry points:

*   `PanelServer`: the WebSocket server (async context manager, or
    `start_in_background()` for synchronous hosts).
*   `SyncService`, `DeepObserver`, `PatchEmitter`: the synchronization core,
    usable without the network layer.
*   `ServerBridge`: implement it to connect dashboard requests (chat,
    commands, kicks, settings) to a real game server.

Logging:
    panelsync logs through the "panelsync" logger, which has a NullHandler by
    default. Configure logging in your application to see its output:

        import logging
        logging.basicConfig(level=logging.INFO)
"""

import logging

# --- Version ---
from ._version import __version__

# --- Logging Setup ---
logger = logging.getLogger("panelsync")
if not logger.hasHandlers():
    logger.addHandler(logging.NullHandler())

# --- Exceptions ---
from .exceptions import (
    PanelError,
    PathError,
    MessageDecodeError,
    ConfigError,
    SubscriberError,
    SubscriberDisconnectedError,
    SubscriberOverflowError,
)

# --- Synchronization core ---
from .observed import ChangeHandler, DeepObserver, ObservedDict, ObservedList, ObservedNode
from .patches import MessageType, Patch, ToastLevel, decode_message, encode_message
from .status import SubscriberStatus
from .emitter import PatchEmitter
from .channel import Channel, WebSocketChannel
from .subscriber import Subscriber
from .sync import SyncService
from .session import Session

# --- Panel server ---
from .config import AccountConfig, PanelConfig, load_config
from .bridge import LoggingBridge, ServerBridge
from .handlers import RequestRouter, default_router
from .sampler import ResourceSampler
from .serverdata import WatchedPlayers
from .server import PanelServer


__all__ = [
    # Version
    '__version__',

    # Logger
    'logger',

    # Core
    'ChangeHandler',
    'DeepObserver',
    'ObservedDict',
    'ObservedList',
    'ObservedNode',
    'Patch',
    'MessageType',
    'ToastLevel',
    'encode_message',
    'decode_message',
    'PatchEmitter',
    'SubscriberStatus',
    'Channel',
    'WebSocketChannel',
    'Subscriber',
    'SyncService',
    'Session',

    # Server
    'AccountConfig',
    'PanelConfig',
    'load_config',
    'ServerBridge',
    'LoggingBridge',
    'RequestRouter',
    'default_router',
    'ResourceSampler',
    'WatchedPlayers',
    'PanelServer',

    # Errors
    'PanelError',
    'PathError',
    'MessageDecodeError',
    'ConfigError',
    'SubscriberError',
    'SubscriberDisconnectedError',
    'SubscriberOverflowError',
]
