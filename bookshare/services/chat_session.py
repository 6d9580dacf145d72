import logging
import time
from collections import deque
from typing import Callable, Deque, List, Optional, Set

from config import settings
from bookshare.exceptions import MessageRejected, NotConnected, ShareServiceError
from bookshare.services.chat_channel import ChatChannelManager, ConnectionStatus, get_chat_channel
from bookshare.services.event_channel import Unsubscribe
from bookshare.services.notification_cache import NotificationCache
from bookshare.services.share_service import ShareService
from bookshare.share import ChatMessage
from bookshare.utils.validators import MessageValidator

logger = logging.getLogger(__name__)


class RateLimiter:
    """Sliding-window limit on how many messages may be sent."""

    def __init__(self, limit: int, window: float, clock: Callable[[], float] = time.monotonic):
        self.limit = limit
        self.window = window
        self._clock = clock
        self._sent: Deque[float] = deque()

    def _prune(self, now: float) -> None:
        while self._sent and now - self._sent[0] >= self.window:
            self._sent.popleft()

    def check(self) -> None:
        now = self._clock()
        self._prune(now)
        if len(self._sent) >= self.limit:
            wait = self.window - (now - self._sent[0])
            raise MessageRejected(f"Too many messages. Try again in {wait:.0f}s.")

    def record(self) -> None:
        self._sent.append(self._clock())


class ChatSession:
    """One open chat screen for a share.

    Messages are kept newest first. Realtime delivery is used when the
    channel is connected; otherwise sends go through the REST endpoint and
    the session keeps working without live updates.
    """

    def __init__(
        self,
        share_id: int,
        service: ShareService,
        channel: Optional[ChatChannelManager] = None,
        notification_cache: Optional[NotificationCache] = None,
        page_size: Optional[int] = None,
        rate_limiter: Optional[RateLimiter] = None,
    ):
        self.share_id = share_id
        self.service = service
        self.channel = channel or get_chat_channel()
        self.notification_cache = notification_cache
        self.page_size = page_size or settings.chat_page_size
        self.rate_limiter = rate_limiter or RateLimiter(settings.chat_rate_limit, settings.chat_rate_window)

        self.messages: List[ChatMessage] = []
        self.page = 0
        self.has_more = False
        self.status = self.channel.status
        self.error: Optional[str] = None
        self._seen: Set[int] = set()
        self._subscriptions: List[Unsubscribe] = []

    @property
    def realtime(self) -> bool:
        return self.channel.is_connected

    async def open(self) -> "ChatSession":
        try:
            await self.channel.initialize()
        except ShareServiceError as e:
            logger.warning(f"Chat for share {self.share_id} running without realtime: {e}")
            self.error = str(e)

        try:
            await self._setup()
        except BaseException:
            await self.close()
            raise
        return self

    async def _setup(self) -> None:
        self._subscriptions = [
            self.channel.on_status_change(self._on_status),
            self.channel.on_message(self._on_message),
            self.channel.on_error(self._on_error),
        ]
        self.status = self.channel.status

        if self.channel.is_connected:
            try:
                await self.channel.join_share_chat(self.share_id)
            except ShareServiceError as e:
                logger.warning(f"Could not join chat for share {self.share_id}: {e}")
                self.error = str(e)

        await self.load_messages()
        if self.notification_cache is not None:
            try:
                await self.notification_cache.mark_chat_notifications_read(self.share_id)
            except ShareServiceError as e:
                logger.warning(f"Could not mark chat notifications read for share {self.share_id}: {e}")

    async def close(self) -> None:
        """Leave the room, disconnect and drop subscriptions; never raises."""
        try:
            await self.channel.leave_share_chat(self.share_id)
        except Exception:
            logger.exception(f"Leaving chat for share {self.share_id} failed")
        try:
            await self.channel.disconnect()
        except Exception:
            logger.exception("Disconnecting chat channel failed")
        for unsubscribe in self._subscriptions:
            unsubscribe()
        self._subscriptions = []

    async def __aenter__(self) -> "ChatSession":
        return await self.open()

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # ------------------------- History ------------------------- #
    async def load_messages(self) -> List[ChatMessage]:
        page = await self.service.get_chat_messages(self.share_id, page=1, page_size=self.page_size)
        self.messages = []
        self._seen = set()
        self._append(page.messages)
        self.page = page.page
        self.has_more = page.has_next_page
        return self.messages

    async def load_more(self) -> List[ChatMessage]:
        if not self.has_more:
            return []
        page = await self.service.get_chat_messages(self.share_id, page=self.page + 1, page_size=self.page_size)
        added = self._append(page.messages)
        self.page = page.page
        self.has_more = page.has_next_page
        return added

    def _append(self, messages: List[ChatMessage]) -> List[ChatMessage]:
        added = [m for m in messages if m.id not in self._seen]
        self._seen.update(m.id for m in added)
        self.messages.extend(added)
        return added

    def _prepend(self, message: ChatMessage) -> bool:
        if message.id in self._seen:
            return False
        self._seen.add(message.id)
        self.messages.insert(0, message)
        return True

    # ------------------------- Sending ------------------------- #
    async def send(self, content: str) -> Optional[ChatMessage]:
        """Send ``content``; returns the stored message when sent over REST.

        Realtime sends return None; the message arrives as a ReceiveMessage
        event like everyone else's.
        """
        text = MessageValidator.validate(content)
        self.rate_limiter.check()

        if self.channel.is_connected:
            try:
                await self.channel.send_message(self.share_id, text)
                self.rate_limiter.record()
                return None
            except NotConnected as e:
                logger.info(f"Realtime send failed, falling back to REST: {e}")

        message = await self.service.send_chat_message(self.share_id, text)
        self.rate_limiter.record()
        self._prepend(message)
        return message

    # ------------------------- Channel events ------------------------- #
    def _on_status(self, status: ConnectionStatus) -> None:
        self.status = status

    def _on_message(self, message: ChatMessage) -> None:
        if message.share_id == self.share_id:
            self._prepend(message)

    def _on_error(self, error: str) -> None:
        self.error = error
