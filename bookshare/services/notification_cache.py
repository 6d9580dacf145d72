"""
Process-wide read model of the current user's unread notifications.

The cache is filled by polling ``GET /notifications``; every badge and
per-share flag is derived from the cached list without another request.
Marking notifications read removes them locally first, restores the exact
previous list if the server call fails, and always re-polls afterwards.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from config import settings
from bookshare.exceptions import ShareServiceError
from bookshare.services.event_channel import EventChannel
from bookshare.services.http_client import ShareApiClient, get_http_client
from bookshare.services.optimistic import OptimisticStore, OptimisticUpdate
from bookshare.share import Notification, NotificationType

logger = logging.getLogger(__name__)

NotificationList = Tuple[Notification, ...]


@dataclass
class ShareNotificationSummary:
    share_id: int
    notifications: List[Notification] = field(default_factory=list)
    status_updated: bool = False
    due_date_updated: bool = False
    unread_messages_count: int = 0

    @property
    def count(self) -> int:
        return len(self.notifications)


# --- Derived views: pure functions over a notification list ---

def for_share(notifications: Iterable[Notification], share_id: int) -> List[Notification]:
    return [n for n in notifications if n.share_id == share_id]


def summarize_share(notifications: Iterable[Notification], share_id: int) -> ShareNotificationSummary:
    matching = for_share(notifications, share_id)
    return ShareNotificationSummary(
        share_id=share_id,
        notifications=matching,
        status_updated=any(n.notification_type == NotificationType.STATUS_CHANGED for n in matching),
        due_date_updated=any(n.notification_type == NotificationType.DUE_DATE_CHANGED for n in matching),
        unread_messages_count=sum(
            1 for n in matching if n.notification_type == NotificationType.MESSAGE_RECEIVED
        ),
    )


def count_for_shares(notifications: Iterable[Notification], share_ids: Iterable[int]) -> int:
    """Share-related unread notifications across a set of shares (tab badges)."""
    wanted = set(share_ids)
    return sum(1 for n in notifications if n.share_id in wanted and n.is_share_related)


def count_share_related(notifications: Iterable[Notification]) -> int:
    return sum(1 for n in notifications if n.is_share_related)


class NotificationCache(OptimisticStore[NotificationList]):
    """Shared unread-notification cache with optimistic mark-as-read."""

    def __init__(self, client: Optional[ShareApiClient] = None, poll_interval: Optional[float] = None):
        self.client = client
        self.poll_interval = poll_interval or settings.notifications_poll_interval
        self.changed: EventChannel[NotificationList] = EventChannel("notifications")
        self.loaded = False
        self.last_error: Optional[ShareServiceError] = None
        self.last_updated: Optional[datetime] = None
        self.stats: Dict[str, int] = {
            "polls": 0,
            "poll_failures": 0,
            "optimistic_updates": 0,
            "rollbacks": 0,
        }
        self._notifications: NotificationList = ()
        # Bumped on every local write so polls started earlier can be discarded
        self._version = 0
        self._inflight: Optional[asyncio.Future] = None
        self._poll_task: Optional[asyncio.Task] = None

    async def _get_client(self) -> ShareApiClient:
        if self.client is None:
            self.client = await get_http_client()
        return self.client

    # ------------------------- Store ------------------------- #
    @property
    def notifications(self) -> List[Notification]:
        return list(self._notifications)

    def snapshot(self) -> NotificationList:
        return self._notifications

    def replace(self, value: Iterable[Notification]) -> None:
        self._version += 1
        self._notifications = tuple(value)
        self.changed.publish(self._notifications)

    # ------------------------- Polling ------------------------- #
    async def refresh(self, force: bool = False) -> List[Notification]:
        """Poll the server, joining a poll already in flight unless ``force``."""
        if force or self._inflight is None or self._inflight.done():
            self._inflight = asyncio.ensure_future(self._poll())
        await asyncio.shield(self._inflight)
        return self.notifications

    async def _poll(self) -> None:
        version = self._version
        client = await self._get_client()
        self.stats["polls"] += 1
        try:
            data = await client.get_json("/notifications")
        except ShareServiceError as e:
            self.stats["poll_failures"] += 1
            self.last_error = e
            logger.warning(f"Notification poll failed, keeping last known state: {e}")
            return
        if version != self._version:
            logger.debug("Discarding notification poll superseded by a local update")
            return
        notifications = [Notification.from_dict(item) for item in data or []]
        self.replace(n for n in notifications if n.is_unread)
        self.loaded = True
        self.last_error = None
        self.last_updated = datetime.now(timezone.utc)

    def start_polling(self) -> None:
        if self._poll_task is None or self._poll_task.done():
            self._poll_task = asyncio.get_running_loop().create_task(self._poll_forever())

    async def stop_polling(self) -> None:
        task, self._poll_task = self._poll_task, None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        # A shielded poll may still be running; let it settle
        if self._inflight is not None:
            await asyncio.gather(self._inflight, return_exceptions=True)

    async def _poll_forever(self) -> None:
        while True:
            await self.refresh()
            await asyncio.sleep(self.poll_interval)

    # ------------------------- Derived views ------------------------- #
    def share_summary(self, share_id: int) -> ShareNotificationSummary:
        return summarize_share(self._notifications, share_id)

    def unread_count(self, share_id: int) -> int:
        return len(for_share(self._notifications, share_id))

    def unread_count_for_shares(self, share_ids: Iterable[int]) -> int:
        return count_for_shares(self._notifications, share_ids)

    def share_unread_total(self) -> int:
        return count_share_related(self._notifications)

    def status_changed(self, share_id: int) -> bool:
        return self.share_summary(share_id).status_updated

    def due_date_changed(self, share_id: int) -> bool:
        return self.share_summary(share_id).due_date_updated

    # ------------------------- Mutations ------------------------- #
    async def mark_share_notifications_read(self, share_id: int) -> None:
        await self._mark_read(
            f"/notifications/shares/{share_id}/read",
            keep=lambda n: n.share_id != share_id,
            name=f"mark share {share_id} notifications read",
        )

    async def mark_chat_notifications_read(self, share_id: int) -> None:
        await self._mark_read(
            f"/notifications/shares/{share_id}/chat/read",
            keep=lambda n: not (
                n.share_id == share_id and n.notification_type == NotificationType.MESSAGE_RECEIVED
            ),
            name=f"mark share {share_id} chat notifications read",
        )

    async def _mark_read(self, path: str, keep: Callable[[Notification], bool], name: str) -> None:
        client = await self._get_client()
        update = OptimisticUpdate(
            self,
            apply=lambda current: tuple(n for n in current if keep(n)),
            commit=lambda: client.patch_json(path, {}),
            reconcile=lambda: self.refresh(force=True),
            name=name,
        )
        self.stats["optimistic_updates"] += 1
        try:
            await update.run()
        finally:
            if update.rolled_back:
                self.stats["rollbacks"] += 1

    def get_stats(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = dict(self.stats)
        stats["cached"] = len(self._notifications)
        stats["loaded"] = self.loaded
        stats["last_updated"] = self.last_updated.isoformat() if self.last_updated else None
        return stats
