import asyncio
import logging
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Union

from config import settings
from bookshare.exceptions import Conflict, ShareServiceError, Unauthorized
from bookshare.policy import (
    can_advance,
    can_archive,
    can_decline,
    can_dispute,
    can_update_return_date,
    share_roles,
)
from bookshare.schemas import ReturnDateRequest, SendMessageRequest, StatusUpdateRequest
from bookshare.services.http_client import ShareApiClient, get_http_client
from bookshare.services.notification_cache import NotificationCache
from bookshare.share import ChatMessage, ChatMessagesPage, Share, as_return_datetime, format_timestamp
from bookshare.share_status import ShareStatus, is_legal_transition, sort_key
from bookshare.utils.validators import MessageValidator

logger = logging.getLogger(__name__)

BORROWER = "borrower"
LENDER = "lender"


def listing_key(role: str, archived: bool) -> str:
    return f"{role}/archived" if archived else role


def sort_shares(shares: List[Share]) -> List[Share]:
    return sorted(shares, key=lambda s: (sort_key(s.status), s.book_title.casefold()))


class ShareService:
    """Share listings, lifecycle mutations and REST chat for the current user.

    Every mutation returns the server's canonical Share; cached copies are
    replaced with it wholesale. Mutations on the same share are serialized.
    """

    def __init__(self, client: Optional[ShareApiClient] = None, notification_cache: Optional[NotificationCache] = None):
        self.client = client
        self.notification_cache = notification_cache
        self.read_errors: Dict[str, ShareServiceError] = {}
        self._listings: Dict[str, List[Share]] = {}
        self._locks: Dict[int, asyncio.Lock] = {}

    async def _get_client(self) -> ShareApiClient:
        if self.client is None:
            self.client = await get_http_client()
        return self.client

    def _lock_for(self, share_id: int) -> asyncio.Lock:
        lock = self._locks.get(share_id)
        if lock is None:
            lock = self._locks[share_id] = asyncio.Lock()
        return lock

    # ------------------------- Listings ------------------------- #
    async def list_borrower_shares(self, archived: bool = False) -> List[Share]:
        return await self._list(BORROWER, archived)

    async def list_lender_shares(self, archived: bool = False) -> List[Share]:
        return await self._list(LENDER, archived)

    async def _list(self, role: str, archived: bool) -> List[Share]:
        key = listing_key(role, archived)
        client = await self._get_client()
        try:
            data = await client.get_json(f"/shares/{key}")
        except ShareServiceError as e:
            # Reads fall back to the last list we managed to load
            self.read_errors[key] = e
            logger.warning(f"Listing {key} shares failed, using cached copy: {e}")
            return list(self._listings.get(key, []))
        shares = sort_shares([Share.from_dict(item) for item in data or []])
        self._listings[key] = shares
        self.read_errors.pop(key, None)
        return list(shares)

    def cached_listing(self, role: str, archived: bool = False) -> List[Share]:
        return list(self._listings.get(listing_key(role, archived), []))

    def find_share(self, share_id: int) -> Optional[Share]:
        for shares in self._listings.values():
            for share in shares:
                if share.id == share_id:
                    return share
        return None

    def _replace_cached(self, share: Share) -> None:
        for key, shares in self._listings.items():
            if any(s.id == share.id for s in shares):
                self._listings[key] = sort_shares([share if s.id == share.id else s for s in shares])

    def _drop_cached(self, share_id: int, archived: bool) -> None:
        for role in (BORROWER, LENDER):
            key = listing_key(role, archived)
            if key in self._listings:
                self._listings[key] = [s for s in self._listings[key] if s.id != share_id]

    # ------------------------- Pre-checks ------------------------- #
    @staticmethod
    def _check_advance(current: Share, new_status: ShareStatus, user_id: Optional[str]) -> None:
        if current.is_disputed or not is_legal_transition(current.status, new_status):
            raise Conflict(f"Share {current.id} cannot move from {current.status.name} to {new_status.name}")
        is_owner, is_borrower = share_roles(current, user_id)
        if new_status is ShareStatus.DECLINED:
            allowed = can_decline(current.status, is_owner)
        elif new_status is ShareStatus.DISPUTED:
            allowed = can_dispute(current.status, current.is_disputed, is_owner, is_borrower)
        else:
            allowed = can_advance(current.status, is_owner, is_borrower)
        if not allowed:
            raise Unauthorized(f"You are not allowed to move share {current.id} to {new_status.name}")

    # ------------------------- Mutations ------------------------- #
    async def _after_mutation(self) -> None:
        if self.notification_cache is not None:
            await self.notification_cache.refresh(force=True)

    async def advance_status(
        self,
        share_id: int,
        new_status: ShareStatus,
        current: Optional[Share] = None,
        user_id: Optional[str] = None,
    ) -> Share:
        """Move a share to ``new_status`` and return the server's copy."""
        if current is not None:
            self._check_advance(current, new_status, user_id)
        body = StatusUpdateRequest(status=new_status.value).model_dump(by_alias=True)
        client = await self._get_client()
        async with self._lock_for(share_id):
            data = await client.put_json(f"/shares/{share_id}/status", body)
        share = Share.from_dict(data)
        logger.info(f"Share {share_id} moved to {share.status.name}")
        self._replace_cached(share)
        await self._after_mutation()
        return share

    async def decline(self, share_id: int, current: Optional[Share] = None, user_id: Optional[str] = None) -> Share:
        return await self.advance_status(share_id, ShareStatus.DECLINED, current=current, user_id=user_id)

    async def update_return_date(
        self,
        share_id: int,
        return_date: Union[date, datetime, str],
        current: Optional[Share] = None,
        user_id: Optional[str] = None,
    ) -> Share:
        if current is not None:
            is_owner, _ = share_roles(current, user_id)
            if not is_owner:
                raise Unauthorized(f"Only the owner can change the return date of share {current.id}")
            if not can_update_return_date(current, is_owner):
                raise Conflict(f"Share {current.id} is closed; its return date cannot change")
        request = ReturnDateRequest(return_date=as_return_datetime(return_date))
        body = {"returnDate": format_timestamp(request.return_date)}
        client = await self._get_client()
        async with self._lock_for(share_id):
            data = await client.put_json(f"/shares/{share_id}/return-date", body)
        share = Share.from_dict(data)
        self._replace_cached(share)
        await self._after_mutation()
        return share

    async def dispute(self, share_id: int, current: Optional[Share] = None, user_id: Optional[str] = None) -> Share:
        if current is not None:
            is_owner, is_borrower = share_roles(current, user_id)
            if not (is_owner or is_borrower):
                raise Unauthorized(f"Only the owner or borrower can dispute share {current.id}")
            if not can_dispute(current.status, current.is_disputed, is_owner, is_borrower):
                raise Conflict(f"Share {current.id} cannot be disputed in status {current.status.name}")
        client = await self._get_client()
        async with self._lock_for(share_id):
            data = await client.post_json(f"/shares/{share_id}/dispute")
        share = Share.from_dict(data)
        logger.info(f"Share {share_id} disputed")
        self._replace_cached(share)
        await self._after_mutation()
        return share

    async def archive(self, share_id: int, current: Optional[Share] = None, user_id: Optional[str] = None) -> None:
        await self._set_archived(share_id, True, current, user_id)

    async def unarchive(self, share_id: int, current: Optional[Share] = None, user_id: Optional[str] = None) -> None:
        await self._set_archived(share_id, False, current, user_id)

    async def _set_archived(self, share_id: int, archived: bool, current: Optional[Share], user_id: Optional[str]) -> None:
        action = "archive" if archived else "unarchive"
        if current is not None:
            is_owner, is_borrower = share_roles(current, user_id)
            if not (is_owner or is_borrower):
                raise Unauthorized(f"Only the owner or borrower can {action} share {current.id}")
            if not can_archive(current.status, current.is_disputed):
                raise Conflict(f"Share {current.id} is still active and cannot be {action}d")
        client = await self._get_client()
        async with self._lock_for(share_id):
            await client.post_json(f"/shares/{share_id}/{action}")
        # The share leaves the partition it was listed in
        self._drop_cached(share_id, archived=not archived)
        await self._after_mutation()

    # ------------------------- Chat over REST ------------------------- #
    async def get_chat_messages(self, share_id: int, page: int = 1, page_size: Optional[int] = None) -> ChatMessagesPage:
        params: Dict[str, Any] = {"page": page, "pageSize": page_size or settings.chat_page_size}
        client = await self._get_client()
        data = await client.get_json(f"/shares/{share_id}/chat/messages", params=params)
        return ChatMessagesPage.from_dict(data or {})

    async def send_chat_message(self, share_id: int, content: str) -> ChatMessage:
        body = SendMessageRequest(content=MessageValidator.validate(content)).model_dump()
        client = await self._get_client()
        data = await client.post_json(f"/shares/{share_id}/chat/messages", body)
        return ChatMessage.from_dict(data)
