"""Realtime hub transport over a SignalR connection.

``pysignalr`` owns the wire protocol (negotiation, handshake, invocation
ids, pings). This module adapts its callback style to the small
``HubTransport`` interface the chat channel manager drives. Reconnects are
left to the manager: when the link drops the client's run loop is stopped
and the close handlers are told.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Set
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from pysignalr.client import SignalRClient
from pysignalr.messages import CompletionMessage
from websockets.exceptions import ConnectionClosed

from config import settings

logger = logging.getLogger(__name__)

ClientFactory = Callable[..., SignalRClient]


class HubProtocolError(ConnectionError):
    """The hub connection could not be opened or was lost."""
    pass


class HubInvocationError(Exception):
    """The hub answered an invocation with an error."""
    pass


def build_hub_url(hub_url: str, token: str) -> str:
    """Turn an http(s) hub URL into a ws(s) URL carrying the access token."""
    parts = urlsplit(hub_url)
    scheme = {"http": "ws", "https": "wss"}.get(parts.scheme, parts.scheme)
    query = parse_qsl(parts.query)
    query.append(("access_token", token))
    return urlunsplit((scheme, parts.netloc, parts.path, urlencode(query), ""))


class HubTransport:
    """Interface the chat channel manager drives; one physical connection."""

    async def start(self) -> None:
        raise NotImplementedError

    async def stop(self) -> None:
        raise NotImplementedError

    async def invoke(self, method: str, *args: Any) -> Any:
        raise NotImplementedError

    def on(self, target: str, handler: Callable[..., None]) -> None:
        raise NotImplementedError

    def on_close(self, handler: Callable[[Optional[BaseException]], None]) -> None:
        raise NotImplementedError


class WebSocketHubTransport(HubTransport):
    def __init__(
        self,
        url: str,
        keepalive_interval: Optional[float] = None,
        open_timeout: Optional[float] = None,
        client_factory: ClientFactory = SignalRClient,
    ):
        self.url = url
        self.keepalive_interval = keepalive_interval or settings.hub_keepalive_interval
        self.open_timeout = open_timeout or settings.connect_timeout
        self.client_factory = client_factory
        self._handlers: Dict[str, List[Callable[..., None]]] = {}
        self._close_handlers: List[Callable[[Optional[BaseException]], None]] = []
        self._pending: Set[asyncio.Future] = set()
        self._client: Optional[SignalRClient] = None
        self._runner: Optional[asyncio.Task] = None
        self._opened: Optional[asyncio.Event] = None
        self._open = False
        self._stopping = False

    @property
    def connected(self) -> bool:
        return self._open and self._runner is not None and not self._runner.done()

    def on(self, target: str, handler: Callable[..., None]) -> None:
        if target not in self._handlers and self._client is not None:
            self._client.on(target, self._dispatcher(target))
        self._handlers.setdefault(target, []).append(handler)

    def on_close(self, handler: Callable[[Optional[BaseException]], None]) -> None:
        self._close_handlers.append(handler)

    def _build_client(self) -> SignalRClient:
        client = self.client_factory(
            self.url,
            ping_interval=int(self.keepalive_interval),
            connection_timeout=int(self.open_timeout),
        )
        client.on_open(self._handle_open)
        client.on_close(self._handle_close)
        client.on_error(self._handle_error)
        for target in self._handlers:
            client.on(target, self._dispatcher(target))
        return client

    def _dispatcher(self, target: str):
        async def dispatch(arguments: Any) -> None:
            for handler in list(self._handlers.get(target, [])):
                try:
                    handler(*(arguments or []))
                except Exception:
                    logger.exception(f"Hub handler for {target} failed")

        return dispatch

    async def start(self) -> None:
        if self.connected:
            return
        await self._reset()
        self._stopping = False
        self._opened = asyncio.Event()
        self._client = self._build_client()
        self._runner = asyncio.create_task(self._client.run())
        opened = asyncio.create_task(self._opened.wait())
        try:
            await asyncio.wait({self._runner, opened}, timeout=self.open_timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            opened.cancel()

        if self._open:
            return
        error = None
        if self._runner.done() and not self._runner.cancelled():
            error = self._runner.exception()
        await self._reset()
        raise HubProtocolError(f"Could not open hub connection: {error or 'timed out'}") from error

    async def stop(self) -> None:
        self._stopping = True
        await self._reset()

    async def invoke(self, method: str, *args: Any) -> Any:
        if not self.connected:
            raise HubProtocolError("Hub connection is not open")
        future = asyncio.get_running_loop().create_future()
        self._pending.add(future)

        async def completed(message: CompletionMessage) -> None:
            if future.done():
                return
            if message.error:
                future.set_exception(HubInvocationError(message.error))
            else:
                future.set_result(message.result)

        try:
            try:
                await self._client.send(method, list(args), on_invocation=completed)
            except ConnectionClosed as exc:
                raise HubProtocolError(f"Hub connection lost while invoking {method}") from exc
            return await future
        finally:
            self._pending.discard(future)

    async def _reset(self) -> None:
        runner, self._runner = self._runner, None
        self._open = False
        self._client = None
        if runner is not None and not runner.done() and runner is not asyncio.current_task():
            runner.cancel()
            await asyncio.gather(runner, return_exceptions=True)
        self._fail_pending(HubProtocolError("Hub connection closed"))

    def _fail_pending(self, error: BaseException) -> None:
        pending, self._pending = self._pending, set()
        for future in pending:
            if not future.done():
                future.set_exception(error)

    async def _handle_open(self) -> None:
        self._open = True
        if self._opened is not None:
            self._opened.set()

    async def _handle_close(self) -> None:
        was_open, self._open = self._open, False
        self._fail_pending(HubProtocolError("Hub connection closed"))
        if self._stopping or not was_open:
            return
        # Stop the client's own retry loop
        runner = self._runner
        if runner is not None and not runner.done():
            runner.cancel()
        logger.info("Hub connection closed unexpectedly")
        error = HubProtocolError("Hub connection lost")
        for handler in list(self._close_handlers):
            try:
                handler(error)
            except Exception:
                logger.exception("Hub close handler failed")

    async def _handle_error(self, message: CompletionMessage) -> None:
        logger.warning(f"Hub invocation failed: {message.error}")
