"""Defines the transport a subscriber talks through.

`Channel` is the abstract interface the rest of panelsync uses to exchange
text messages with one remote dashboard. `WebSocketChannel` implements it on
top of a server-side connection accepted by `websockets.serve`. Tests plug in
in-memory channels instead.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Optional

import websockets

from . import logger
from .exceptions import SubscriberDisconnectedError

_DEFAULT_CLOSE_TIMEOUT_SECONDS = 2.0


class Channel(ABC):
    """Abstract bidirectional text channel to one dashboard client."""

    @abstractmethod
    async def send_message_async(self, message_str: str) -> None:
        """Sends one text message.

        Raises:
            SubscriberDisconnectedError: If the channel is closed.
        """
        raise NotImplementedError

    @abstractmethod
    def messages(self) -> AsyncIterator[str]:
        """Iterates over incoming text messages until the channel closes."""
        raise NotImplementedError

    @abstractmethod
    async def close_async(self) -> None:
        """Closes the channel. Calling it on a closed channel does nothing."""
        raise NotImplementedError

    @property
    def remote_address(self) -> Optional[str]:
        """A printable address of the remote end, if known."""
        return None


class WebSocketChannel(Channel):
    """A `Channel` over one accepted `websockets` server connection."""

    def __init__(self, connection: Any):
        self._connection = connection
        self._closed = False

    @property
    def remote_address(self) -> Optional[str]:
        address = getattr(self._connection, 'remote_address', None)
        if not address:
            return None
        if isinstance(address, (tuple, list)):
            return ":".join(str(part) for part in address[:2])
        return str(address)

    async def send_message_async(self, message_str: str) -> None:
        if self._closed:
            raise SubscriberDisconnectedError(reason="channel already closed")
        try:
            await self._connection.send(message_str)
        except websockets.exceptions.ConnectionClosed as e:
            self._closed = True
            raise SubscriberDisconnectedError(reason=str(e), original_exception=e) from e

    async def messages(self) -> AsyncIterator[str]:
        try:
            while not self._closed:
                try:
                    message_data = await self._connection.recv()
                except websockets.exceptions.ConnectionClosedOK:
                    break
                except websockets.exceptions.ConnectionClosedError as e_closed_err:
                    logger.info(f"Connection from {self.remote_address} closed with error: {e_closed_err}")
                    break
                if isinstance(message_data, str):
                    yield message_data
                else:
                    logger.warning(f"Received unexpected binary message from {self.remote_address}. Ignoring.")
        finally:
            self._closed = True

    async def close_async(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await asyncio.wait_for(self._connection.close(), timeout=_DEFAULT_CLOSE_TIMEOUT_SECONDS)
        except (asyncio.TimeoutError, websockets.exceptions.WebSocketException) as e:
            logger.debug(f"Ignoring error while closing connection to {self.remote_address}: {e}")
