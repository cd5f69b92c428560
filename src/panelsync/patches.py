"""Patch records and the JSON wire codec shared by server and dashboards.

Every message on the wire is one JSON object with a message type and a
payload:

    {"type": "sync", "payload": {"path": ["server", "uptime"], "value": 1200}}
    {"type": "sync", "payload": {"path": ["server", "game", "players", "u1"], "delete": true}}
    {"type": "toast", "payload": {"message": "Command sent.", "level": "success"}}

A full snapshot is simply a `sync` patch with an empty path. Client requests
(the write-back channel) use the same envelope, e.g.
`{"type": "sendCommand", "payload": {"command": "say hi"}}`.
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from .exceptions import MessageDecodeError
from .observed import ObservedNode, Path


class MessageType(Enum):
    """Every message type that can appear on a dashboard connection."""
    # Server to client
    SYNC = "sync"
    TOAST = "toast"
    LOGIN = "login"
    LOGOUT = "logout"
    RESOURCE_USAGE = "resourceUsage"
    PLAYER_INVENTORY_CHANGED = "playerInventoryChanged"

    # Both directions: a client stops watching a player, or the server tells
    # clients the watched player went away.
    STOP_WATCHING_PLAYER = "stopWatchingPlayer"

    # Client to server
    SEND_CHAT = "sendChat"
    SEND_COMMAND = "sendCommand"
    KICK_PLAYER = "kickPlayer"
    CHANGE_SETTING = "changeSetting"
    START_WATCHING_PLAYER = "startWatchingPlayer"
    CHECK_FOR_PLUGIN_UPDATES = "checkForPluginUpdates"
    INSTALL_PLUGIN = "installPlugin"
    REMOVE_PLUGIN = "removePlugin"
    STOP_SERVER = "stopServer"
    RESTART_SERVER = "restartServer"

    def __str__(self) -> str:
        return self.value


class ToastLevel(Enum):
    """Severity of a toast notification shown by the dashboard."""
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    DANGER = "danger"

    def __str__(self) -> str:
        return self.value


@dataclass
class Patch:
    """One change to the state tree, as sent to subscribers.

    Attributes:
        path (List): Keys from the tree root to the changed field. Empty for a
            full snapshot.
        value (Any): The new value. Ignored for deletions.
        delete (bool): True if the field at `path` was removed.
    """
    path: Path = field(default_factory=list)
    value: Any = None
    delete: bool = False

    @classmethod
    def set(cls, path: Path, value: Any) -> "Patch":
        return cls(path=list(path), value=value)

    @classmethod
    def remove(cls, path: Path) -> "Patch":
        return cls(path=list(path), delete=True)

    @classmethod
    def snapshot(cls, tree: Any) -> "Patch":
        """The baseline patch carrying the whole tree."""
        return cls(path=[], value=tree)

    def to_payload(self) -> Dict[str, Any]:
        if self.delete:
            return {"path": self.path, "delete": True}
        return {"path": self.path, "value": self.value}


def _encode_default(obj: Any) -> Any:
    if isinstance(obj, ObservedNode):
        return obj.to_plain()
    if isinstance(obj, (set, frozenset, tuple)):
        return list(obj)
    if isinstance(obj, Enum):
        return obj.value
    return str(obj)


def encode_message(message_type: MessageType, payload: Any = None) -> str:
    """Serializes one wire message to JSON text.

    Observed tree nodes are encoded as their plain content. Values JSON cannot
    represent natively are encoded as lists (sets, tuples) or strings.
    """
    return json.dumps({"type": message_type.value, "payload": payload}, default=_encode_default, separators=(',', ':'))


def encode_patch(patch: Patch) -> str:
    return encode_message(MessageType.SYNC, patch.to_payload())


def decode_message(text: Any) -> Tuple[MessageType, Any]:
    """Parses one incoming wire message.

    Returns:
        Tuple[MessageType, Any]: The message type and its payload (None when
            the message carries none).

    Raises:
        MessageDecodeError: If the text is not JSON, is not an object, or names
            an unknown message type.
    """
    if isinstance(text, (bytes, bytearray)):
        try:
            text = text.decode('utf-8')
        except UnicodeDecodeError as e:
            raise MessageDecodeError("Message is not valid UTF-8", original_exception=e) from e
    try:
        data = json.loads(text)
    except (TypeError, ValueError) as e:
        raise MessageDecodeError("Message is not valid JSON", raw=str(text), original_exception=e) from e
    if not isinstance(data, dict):
        raise MessageDecodeError("Message must be a JSON object", raw=text)
    raw_type = data.get("type")
    try:
        message_type = MessageType(raw_type)
    except ValueError as e:
        raise MessageDecodeError(f"Unknown message type: {raw_type!r}", raw=text, original_exception=e) from e
    return message_type, data.get("payload")


def toast_payload(message: str, level: Optional[ToastLevel] = None) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"message": message}
    if level is not None:
        payload["level"] = level.value
    return payload
