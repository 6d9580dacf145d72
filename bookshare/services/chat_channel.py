"""Realtime chat channel manager.

Owns the single hub connection used for share chats and its connection
state machine::

    Disconnected -> Connecting -> Connected
    Connected -> Reconnecting -> Connected | Failed
    any -> Disconnected            (disconnect())

An unexpected close triggers reconnects with exponential backoff. Room
membership does not survive a transport reconnect, so joined share chats
are re-joined once the connection is back. When the attempts run out the
channel stays Failed until ``initialize()`` is called again.
"""
from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, FrozenSet, Optional, Set

from bookshare.credentials import CredentialStore, KeyringCredentialStore
from bookshare.exceptions import (
    AuthenticationMissing,
    NotConnected,
    ShareServiceError,
    TransportFailure,
)
from bookshare.services.event_channel import EventChannel, Unsubscribe
from bookshare.services.hub_transport import (
    HubInvocationError,
    HubTransport,
    WebSocketHubTransport,
    build_hub_url,
)
from bookshare.share import ChatMessage
from bookshare.utils.validators import MessageValidator
from config import settings

logger = logging.getLogger(__name__)

TransportFactory = Callable[[str], HubTransport]

# Errors a transport raises when it cannot (re)connect or loses the link
_TRANSPORT_ERRORS = (ConnectionError, OSError, asyncio.TimeoutError)


class ConnectionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


class ChatChannelManager:
    def __init__(
        self,
        credential_store: Optional[CredentialStore] = None,
        hub_url: Optional[str] = None,
        transport_factory: Optional[TransportFactory] = None,
        max_reconnect_attempts: Optional[int] = None,
        reconnect_base_delay: Optional[float] = None,
        reconnect_max_delay: Optional[float] = None,
        timeout: Optional[float] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.credential_store = credential_store or KeyringCredentialStore()
        self.hub_url = hub_url or settings.chat_hub_url
        self.transport_factory = transport_factory or WebSocketHubTransport
        self.max_reconnect_attempts = (
            settings.max_reconnect_attempts if max_reconnect_attempts is None else max_reconnect_attempts
        )
        self.reconnect_base_delay = reconnect_base_delay or settings.reconnect_base_delay
        self.reconnect_max_delay = reconnect_max_delay or settings.reconnect_max_delay
        self.timeout = timeout or settings.request_timeout
        self._sleep = sleep

        self.status_changed: EventChannel[ConnectionStatus] = EventChannel("connection-status")
        self.message_received: EventChannel[ChatMessage] = EventChannel("chat-messages")
        self.errors: EventChannel[str] = EventChannel("chat-errors")

        self._status = ConnectionStatus.DISCONNECTED
        self._transport: Optional[HubTransport] = None
        self._rooms: Set[int] = set()
        self._reconnect_attempts = 0
        self._reconnect_task: Optional[asyncio.Task] = None
        self._dropped = False
        self.last_error: Optional[ShareServiceError] = None

    # ------------------------- State ------------------------- #
    @property
    def status(self) -> ConnectionStatus:
        return self._status

    @property
    def is_connected(self) -> bool:
        return self._status is ConnectionStatus.CONNECTED and self._transport is not None

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    @property
    def joined_rooms(self) -> FrozenSet[int]:
        return frozenset(self._rooms)

    def reconnect_delay(self, attempt: int) -> float:
        return min(self.reconnect_base_delay * (2 ** attempt), self.reconnect_max_delay)

    def _set_status(self, status: ConnectionStatus) -> None:
        if status is self._status:
            return
        logger.info(f"Chat channel {self._status.value} -> {status.value}")
        self._status = status
        self.status_changed.publish(status)

    # ------------------------- Subscriptions ------------------------- #
    def on_status_change(self, listener: Callable[[ConnectionStatus], None]) -> Unsubscribe:
        return self.status_changed.subscribe(listener)

    def on_message(self, listener: Callable[[ChatMessage], None]) -> Unsubscribe:
        return self.message_received.subscribe(listener)

    def on_error(self, listener: Callable[[str], None]) -> Unsubscribe:
        return self.errors.subscribe(listener)

    # ------------------------- Lifecycle ------------------------- #
    async def initialize(self) -> None:
        """Open a fresh connection, tearing down any existing one first."""
        if self._transport is not None or self._status is not ConnectionStatus.DISCONNECTED:
            await self.disconnect()

        token = self.credential_store.get_token()
        if not token:
            self._set_status(ConnectionStatus.FAILED)
            self.last_error = AuthenticationMissing("Authentication token not found")
            raise self.last_error

        transport = self.transport_factory(build_hub_url(self.hub_url, token))
        self._register_handlers(transport)
        self._transport = transport
        self._set_status(ConnectionStatus.CONNECTING)
        try:
            await asyncio.wait_for(transport.start(), timeout=self.timeout)
        except _TRANSPORT_ERRORS as exc:
            logger.warning(f"Failed to connect to chat hub: {exc}")
            self._transport = None
            self._set_status(ConnectionStatus.FAILED)
            self.last_error = TransportFailure(f"Connection initialization failed: {exc}")
            self.errors.publish(str(self.last_error))
            raise self.last_error from exc

        self._reconnect_attempts = 0
        self.last_error = None
        self._set_status(ConnectionStatus.CONNECTED)

    async def disconnect(self) -> None:
        """Tear the connection down. Safe to call in any state, any number of times."""
        transport, self._transport = self._transport, None
        task, self._reconnect_task = self._reconnect_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        if transport is not None:
            try:
                await transport.stop()
            except _TRANSPORT_ERRORS as e:
                logger.warning(f"Error disconnecting chat hub: {e}")
        self._rooms.clear()
        self._reconnect_attempts = 0
        self._set_status(ConnectionStatus.DISCONNECTED)

    # ------------------------- Rooms & messages ------------------------- #
    async def join_share_chat(self, share_id: int) -> None:
        self._require_connected("join a share chat")
        await self._invoke("JoinShareChat", share_id)
        self._rooms.add(share_id)

    async def leave_share_chat(self, share_id: int) -> None:
        self._rooms.discard(share_id)
        if not self.is_connected:
            return
        try:
            await self._invoke("LeaveShareChat", share_id)
        except ShareServiceError as e:
            logger.warning(f"Failed to leave chat for share {share_id}: {e}")

    async def send_message(self, share_id: int, content: str) -> None:
        text = MessageValidator.validate(content)
        self._require_connected("send a message")
        await self._invoke("SendMessage", share_id, text)

    def _require_connected(self, action: str) -> None:
        if not self.is_connected:
            raise NotConnected(f"Cannot {action}: chat channel is {self._status.value}")

    async def _invoke(self, method: str, *args: Any) -> Any:
        try:
            return await asyncio.wait_for(self._transport.invoke(method, *args), timeout=self.timeout)
        except HubInvocationError as exc:
            raise ShareServiceError(f"{method} rejected by chat hub: {exc}") from exc
        except _TRANSPORT_ERRORS as exc:
            raise NotConnected(f"{method} failed, chat connection lost: {exc}") from exc

    # ------------------------- Transport events ------------------------- #
    def _register_handlers(self, transport: HubTransport) -> None:
        transport.on("ReceiveMessage", self._handle_message)
        transport.on("JoinedChat", lambda share_id: logger.debug(f"Joined chat for share {share_id}"))
        transport.on("LeftChat", lambda share_id: logger.debug(f"Left chat for share {share_id}"))
        transport.on("Error", self._handle_hub_error)
        transport.on_close(lambda error: self._handle_close(transport, error))

    def _handle_message(self, payload: Any) -> None:
        try:
            message = ChatMessage.from_dict(payload)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Dropping malformed chat message: {e}")
            return
        self.message_received.publish(message)

    def _handle_hub_error(self, error: Any) -> None:
        logger.error(f"Chat hub error: {error}")
        self.errors.publish(str(error))

    def _handle_close(self, transport: HubTransport, error: Optional[BaseException]) -> None:
        if transport is not self._transport:
            return
        if self._status is ConnectionStatus.RECONNECTING:
            # Picked up by the running reconnect loop
            self._dropped = True
            return
        if self._status is not ConnectionStatus.CONNECTED:
            return
        logger.warning(f"Chat connection dropped: {error}")
        self._set_status(ConnectionStatus.RECONNECTING)
        self._reconnect_task = asyncio.get_running_loop().create_task(self._reconnect(transport))

    async def _reconnect(self, transport: HubTransport) -> None:
        while self._reconnect_attempts < self.max_reconnect_attempts:
            delay = self.reconnect_delay(self._reconnect_attempts)
            self._reconnect_attempts += 1
            attempt = self._reconnect_attempts
            logger.info(f"Reconnecting to chat hub in {delay:.1f}s ({attempt}/{self.max_reconnect_attempts})")
            await self._sleep(delay)
            if transport is not self._transport:
                return
            self._dropped = False
            try:
                await asyncio.wait_for(transport.start(), timeout=self.timeout)
            except _TRANSPORT_ERRORS as e:
                logger.warning(f"Reconnect attempt {attempt} failed: {e}")
                continue
            await self._rejoin_rooms(transport)
            if self._dropped:
                logger.warning(f"Chat connection dropped again during reconnect attempt {attempt}")
                continue
            self._reconnect_attempts = 0
            self._set_status(ConnectionStatus.CONNECTED)
            return

        self._set_status(ConnectionStatus.FAILED)
        self.last_error = TransportFailure(
            f"Chat connection lost after {self.max_reconnect_attempts} reconnect attempts"
        )
        logger.error(str(self.last_error))
        self.errors.publish(str(self.last_error))

    async def _rejoin_rooms(self, transport: HubTransport) -> None:
        for share_id in sorted(self._rooms):
            try:
                await asyncio.wait_for(transport.invoke("JoinShareChat", share_id), timeout=self.timeout)
            except (HubInvocationError, *_TRANSPORT_ERRORS) as e:
                logger.warning(f"Failed to re-join chat for share {share_id}: {e}")
                self.errors.publish(f"Could not re-join chat for share {share_id}")


# Process-wide channel; at most one physical connection at a time
_global_channel: Optional[ChatChannelManager] = None


def get_chat_channel() -> ChatChannelManager:
    global _global_channel
    if _global_channel is None:
        _global_channel = ChatChannelManager()
    return _global_channel


async def cleanup_chat_channel() -> None:
    global _global_channel
    if _global_channel is not None:
        await _global_channel.disconnect()
        _global_channel = None
