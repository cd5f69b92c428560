"""Drives one dashboard connection from login to disconnect.

A `Session` reads requests from its subscriber's channel and moves the
subscriber through its lifecycle:

1.  `CONNECTED`: only `login` requests are processed. Anything else is
    ignored (and logged).
2.  On a valid `login`, the client receives a `login` acknowledgement, a
    success toast (unless the request asked to be `silent`), the full
    snapshot and a `resourceUsage` notification. The subscriber is then
    `SYNCED` and receives every subsequent patch, starting with the
    refreshed list of installable plugins.
3.  Other requests are dispatched to the `RequestRouter`.
4.  When the channel closes the subscriber leaves the fan-out and lets go of
    the players it watched. A reconnecting client gets a new session and a
    new snapshot.

Invalid credentials produce a danger toast to that client only and change
nothing else.
"""

import hmac
from typing import Any, Optional, Set

from . import logger
from .config import PanelConfig
from .exceptions import MessageDecodeError, SubscriberError
from .patches import MessageType, ToastLevel, decode_message, encode_message, toast_payload
from .serverdata import WatchedPlayers, set_online_plugins
from .status import SubscriberStatus
from .subscriber import Subscriber
from .sync import SyncService


def _credentials_match(expected: str, given: Any) -> bool:
    if not isinstance(given, str):
        return False
    return hmac.compare_digest(expected.encode('utf-8'), given.encode('utf-8'))


class Session:
    """One client's view of the panel.

    Args:
        service (SyncService): The service owning the state tree.
        subscriber (Subscriber): The connection this session drives.
        config (PanelConfig): Credentials and limits.
        router (Optional[RequestRouter]): Handles requests after login.
        bridge (Optional[ServerBridge]): The game server, for request handlers.
        watched_players (Optional[WatchedPlayers]): The server-wide registry of
            watched players. A private one is created when omitted.
    """

    def __init__(
        self,
        service: SyncService,
        subscriber: Subscriber,
        config: PanelConfig,
        router: Any = None,
        bridge: Any = None,
        watched_players: Optional[WatchedPlayers] = None,
    ):
        self.service = service
        self.subscriber = subscriber
        self.config = config
        self.router = router
        self.bridge = bridge
        self.watched_players = watched_players if watched_players is not None else WatchedPlayers()
        # Players this client asked to follow in detail.
        self._watching: Set[str] = set()

    @property
    def tree(self):
        return self.service.tree

    @property
    def status(self) -> SubscriberStatus:
        return self.subscriber.status

    # --- Sending ---

    def send(self, message_type: MessageType, payload: Optional[Any] = None) -> None:
        """Queues a message for this client only."""
        try:
            self.subscriber.deliver(encode_message(message_type, payload))
        except SubscriberError as e:
            logger.info(f"Could not send {message_type} to subscriber {self.subscriber.id}: {e}")

    def send_toast(self, message: str, level: Optional[ToastLevel] = None) -> None:
        self.send(MessageType.TOAST, toast_payload(message, level))

    # --- Watching players ---

    @property
    def watching(self) -> Set[str]:
        return set(self._watching)

    def watch(self, uuid: str) -> None:
        if uuid not in self._watching:
            self._watching.add(uuid)
            self.watched_players.add(uuid)

    def unwatch(self, uuid: str) -> None:
        if uuid in self._watching:
            self._watching.discard(uuid)
            self.watched_players.discard(uuid)

    # --- Receiving ---

    async def run(self) -> None:
        """Processes incoming messages until the channel closes, then cleans up."""
        channel = self.subscriber.channel
        logger.info(f"Session for subscriber {self.subscriber.id} started ({channel.remote_address}).")
        self.subscriber.start_writer()
        try:
            async for text in channel.messages():
                await self.handle_text(text)
                if self.subscriber.status is SubscriberStatus.DISCONNECTED:
                    break
        finally:
            for uuid in list(self._watching):
                self.unwatch(uuid)
            self.service.detach(self.subscriber)
            await self.subscriber.close_async()
            logger.info(f"Session for subscriber {self.subscriber.id} ended.")

    async def handle_text(self, text: str) -> None:
        try:
            message_type, payload = decode_message(text)
        except MessageDecodeError as e:
            logger.warning(f"Ignoring malformed message from subscriber {self.subscriber.id}: {e}")
            return
        await self.handle_request(message_type, payload)

    async def handle_request(self, message_type: MessageType, payload: Any) -> None:
        if message_type is MessageType.LOGIN:
            if self.login(payload):
                await self.refresh_online_plugins()
            return
        if self.subscriber.status is not SubscriberStatus.SYNCED:
            logger.warning(f"Ignoring '{message_type}' from unauthenticated subscriber {self.subscriber.id}.")
            return
        if self.router is None:
            logger.warning(f"No request router configured; dropping '{message_type}'.")
            return
        await self.router.dispatch(self, message_type, payload)

    def login(self, payload: Any) -> bool:
        """Checks credentials and, on success, bootstraps the subscriber.

        Runs without awaiting, so the snapshot and the start of the patch
        stream cannot be separated by another mutation.

        Returns:
            bool: True if the credentials were accepted.
        """
        payload = payload if isinstance(payload, dict) else {}
        account = self.config.account
        username_ok = _credentials_match(account.username, payload.get("username"))
        password_ok = _credentials_match(account.password, payload.get("password"))
        if not (username_ok and password_ok):
            logger.warning(f"Rejected login from subscriber {self.subscriber.id}.")
            self.send_toast("Invalid username or password.", ToastLevel.DANGER)
            return False

        self.send(MessageType.LOGIN)
        if not payload.get("silent"):
            self.send_toast("Logged in successfully.", ToastLevel.SUCCESS)
        if self.subscriber.status is SubscriberStatus.CONNECTED:
            self.subscriber.mark_authenticated()
            try:
                self.service.attach(self.subscriber)
            except SubscriberError as e:
                logger.warning(f"Could not sync subscriber {self.subscriber.id}: {e}")
                return False
        self.send(MessageType.RESOURCE_USAGE)
        logger.info(f"Subscriber {self.subscriber.id} logged in as '{account.username}'.")
        return True

    async def refresh_online_plugins(self) -> None:
        """Asks the bridge for the published plugins and lists those not loaded."""
        if self.bridge is None:
            return
        try:
            results = await self.bridge.online_plugins()
        except Exception as e:
            logger.warning(f"Could not fetch the list of published plugins: {e}")
            return
        if results is not None:
            set_online_plugins(self.tree, results)
