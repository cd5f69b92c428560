"""Request handlers for the dashboard's write-back channel.

Requests never patch the tree directly. Each handler asks the `ServerBridge`
to act and/or performs ordinary writes on the state tree, which then reach
every dashboard as patches. Replies to the requesting client are toasts.

Handlers are coroutines `handler(session, payload)`. A handler that raises is
reported to that client as a danger toast; the session keeps running.
"""

from typing import Any, Awaitable, Callable, Dict, Optional

from . import logger
from .patches import MessageType, ToastLevel
from .serverdata import default_game_info, format_plugin_name, record_chat, remove_player, set_option_value
from .session import Session

RequestHandler = Callable[[Session, Any], Awaitable[None]]


class RequestRouter:
    """Maps request message types to their handlers."""

    def __init__(self):
        self._handlers: Dict[MessageType, RequestHandler] = {}

    def register(self, message_type: MessageType, handler: RequestHandler) -> None:
        if not callable(handler):
            raise TypeError("Request handler must be callable")
        if message_type in self._handlers:
            logger.debug(f"Replacing handler for '{message_type}'.")
        self._handlers[message_type] = handler

    def handler_for(self, message_type: MessageType) -> Optional[RequestHandler]:
        return self._handlers.get(message_type)

    async def dispatch(self, session: Session, message_type: MessageType, payload: Any) -> bool:
        """Runs the handler for one request. Returns False if none ran successfully."""
        handler = self._handlers.get(message_type)
        if handler is None:
            logger.warning(f"No handler for request '{message_type}' from subscriber {session.subscriber.id}.")
            return False
        try:
            await handler(session, payload if payload is not None else {})
        except Exception as e:
            logger.exception(f"Handler for '{message_type}' failed: {e}")
            session.send_toast(f"Request '{message_type}' failed: {e}", ToastLevel.DANGER)
            return False
        return True


def _require(payload: Any, key: str) -> Any:
    if not isinstance(payload, dict) or key not in payload:
        raise ValueError(f"missing '{key}'")
    return payload[key]


async def handle_send_chat(session: Session, payload: Any) -> None:
    message = str(_require(payload, "message"))
    sender = session.config.chat_name
    await session.bridge.broadcast_chat(sender, message)
    session.send_toast("Message sent.", ToastLevel.SUCCESS)
    record_chat(session.tree, sender, message, session.config.max_log_entries)


async def handle_send_command(session: Session, payload: Any) -> None:
    command = str(_require(payload, "command"))
    session.send_toast("Command sent.", ToastLevel.SUCCESS)
    await session.bridge.execute_command(command)


async def handle_kick_player(session: Session, payload: Any) -> None:
    uuid = _require(payload, "uuid")
    reason = payload.get("reason")
    player = session.tree["server"]["game"]["players"].get(uuid)
    if player is None:
        logger.info(f"Kick requested for unknown player {uuid}.")
        return
    name = player["name"]
    if not await session.bridge.kick_player(uuid, reason):
        return
    session.unwatch(uuid)
    session.watched_players.forget(uuid)
    if remove_player(session.tree, uuid):
        session.service.broadcast_event(MessageType.STOP_WATCHING_PLAYER, {"uuid": uuid})
    session.send_toast(f"Kicked {name}.", ToastLevel.SUCCESS)


async def handle_change_setting(session: Session, payload: Any) -> None:
    category = _require(payload, "category")
    name = _require(payload, "name")
    value = _require(payload, "value")
    if session.tree.get_in(["server", "game", "options", category, name]) is None:
        session.send_toast(f"Unknown setting {category}/{name}.", ToastLevel.DANGER)
        return
    # The tree only shows a setting once the game server has accepted it.
    await session.bridge.change_setting(category, name, value, payload.get("type"))
    set_option_value(session.tree, category, name, value)


async def handle_start_watching_player(session: Session, payload: Any) -> None:
    uuid = _require(payload, "uuid")
    player = session.tree["server"]["game"]["players"].get(uuid)
    if player is None:
        return
    info = default_game_info()
    info.update(await session.bridge.player_game_info(uuid) or {})
    session.watch(uuid)
    player["gameInfo"] = info
    session.send(MessageType.PLAYER_INVENTORY_CHANGED, {"uuid": uuid})


async def handle_stop_watching_player(session: Session, payload: Any) -> None:
    session.unwatch(_require(payload, "uuid"))


async def handle_check_for_plugin_updates(session: Session, payload: Any) -> None:
    name = _require(payload, "name")
    version = payload.get("version")
    latest = await session.bridge.latest_plugin_version(name)
    if latest is None:
        session.send_toast(f"{format_plugin_name(name)} is not on npm.", ToastLevel.DANGER)
    elif latest == version:
        session.send_toast(f"{format_plugin_name(name)} is up to date.", ToastLevel.SUCCESS)
    else:
        session.send_toast(f"{format_plugin_name(name)} has an available update of {latest}.", ToastLevel.SUCCESS)


async def handle_install_plugin(session: Session, payload: Any) -> None:
    name = _require(payload, "name")
    version = payload.get("version")
    session.send_toast(f"Installing {format_plugin_name(name)}.")
    await session.bridge.install_plugin(name, version)
    session.send_toast(f"Installed {format_plugin_name(name)}, it will be loaded on the next restart.", ToastLevel.WARNING)


async def handle_remove_plugin(session: Session, payload: Any) -> None:
    name = _require(payload, "name")
    session.send_toast(f"Uninstalling {format_plugin_name(name)}.")
    await session.bridge.remove_plugin(name)
    session.send_toast(f"Uninstalled {format_plugin_name(name)}, it will not be loaded on the next restart.", ToastLevel.WARNING)


async def handle_stop_server(session: Session, payload: Any) -> None:
    session.send_toast("Stopping server.")
    await session.bridge.stop()


async def handle_restart_server(session: Session, payload: Any) -> None:
    session.send_toast("Restarting server.")
    await session.bridge.restart()


DEFAULT_HANDLERS: Dict[MessageType, RequestHandler] = {
    MessageType.SEND_CHAT: handle_send_chat,
    MessageType.SEND_COMMAND: handle_send_command,
    MessageType.KICK_PLAYER: handle_kick_player,
    MessageType.CHANGE_SETTING: handle_change_setting,
    MessageType.START_WATCHING_PLAYER: handle_start_watching_player,
    MessageType.STOP_WATCHING_PLAYER: handle_stop_watching_player,
    MessageType.CHECK_FOR_PLUGIN_UPDATES: handle_check_for_plugin_updates,
    MessageType.INSTALL_PLUGIN: handle_install_plugin,
    MessageType.REMOVE_PLUGIN: handle_remove_plugin,
    MessageType.STOP_SERVER: handle_stop_server,
    MessageType.RESTART_SERVER: handle_restart_server,
}


def default_router() -> RequestRouter:
    """A router with every built-in request handler registered."""
    router = RequestRouter()
    for message_type, handler in DEFAULT_HANDLERS.items():
        router.register(message_type, handler)
    return router
