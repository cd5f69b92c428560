"""The boundary between the panel and the game server it watches.

Request handlers never talk to the game server directly; they call a
`ServerBridge`. A host embeds panelsync by implementing this interface on top
of its own server API. `LoggingBridge` is the stand-in used when no real
server is attached: it logs every call and does nothing else.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from . import logger


class ServerBridge(ABC):
    """Actions the dashboard can ask the game server to perform."""

    @abstractmethod
    async def execute_command(self, command: str) -> None:
        """Runs a console command."""
        raise NotImplementedError

    @abstractmethod
    async def broadcast_chat(self, sender: str, message: str) -> None:
        """Shows a chat message to every player."""
        raise NotImplementedError

    @abstractmethod
    async def kick_player(self, uuid: str, reason: Optional[str] = None) -> bool:
        """Disconnects a player. Returns False if the player is not online."""
        raise NotImplementedError

    @abstractmethod
    async def change_setting(self, category: str, name: str, value: Any, value_type: Optional[Any] = None) -> None:
        """Applies a game rule or world option."""
        raise NotImplementedError

    async def player_game_info(self, uuid: str) -> Optional[Dict[str, Any]]:
        """Live details (position, health, ...) for a watched player, if known."""
        return None

    async def online_plugins(self) -> Optional[List[Dict[str, Any]]]:
        """Plugins published on the package index, as index search results.

        Each entry carries a `package` mapping with at least a `name`. None
        means the index could not be reached; the current list is kept.
        """
        return None

    @abstractmethod
    async def latest_plugin_version(self, name: str) -> Optional[str]:
        """The newest published version of a plugin, or None if it is not published."""
        raise NotImplementedError

    @abstractmethod
    async def install_plugin(self, name: str, version: Optional[str] = None) -> None:
        raise NotImplementedError

    @abstractmethod
    async def remove_plugin(self, name: str) -> None:
        raise NotImplementedError

    @abstractmethod
    async def stop(self) -> None:
        raise NotImplementedError

    @abstractmethod
    async def restart(self) -> None:
        raise NotImplementedError


class LoggingBridge(ServerBridge):
    """A bridge to nowhere: logs each request at INFO level."""

    async def execute_command(self, command: str) -> None:
        logger.info(f"[bridge] execute command: {command}")

    async def broadcast_chat(self, sender: str, message: str) -> None:
        logger.info(f"[bridge] chat from {sender}: {message}")

    async def kick_player(self, uuid: str, reason: Optional[str] = None) -> bool:
        logger.info(f"[bridge] kick {uuid} (reason: {reason})")
        return True

    async def change_setting(self, category: str, name: str, value: Any, value_type: Optional[Any] = None) -> None:
        logger.info(f"[bridge] change setting {category}/{name} = {value!r}")

    async def latest_plugin_version(self, name: str) -> Optional[str]:
        logger.info(f"[bridge] no package index to look up {name}")
        return None

    async def install_plugin(self, name: str, version: Optional[str] = None) -> None:
        logger.info(f"[bridge] install plugin {name}{'@' + version if version else ''}")

    async def remove_plugin(self, name: str) -> None:
        logger.info(f"[bridge] remove plugin {name}")

    async def stop(self) -> None:
        logger.info("[bridge] stop server")

    async def restart(self) -> None:
        logger.info("[bridge] restart server")
