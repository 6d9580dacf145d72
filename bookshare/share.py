from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from bookshare.share_status import ShareStatus


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp from the API ('Z' suffix allowed)."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    text = str(value)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return datetime.fromisoformat(text)


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def as_return_datetime(value) -> datetime:
    """Return dates are day-granular; bare dates are pinned to midnight UTC."""
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    parsed = parse_timestamp(value)
    if parsed is None:
        raise ValueError("Return date cannot be empty.")
    return parsed


@dataclass
class UserProfile:
    id: str
    email: str = ""
    first_name: str = ""
    last_name: str = ""
    full_name: str = ""

    @property
    def display_name(self) -> str:
        if self.full_name:
            return self.full_name
        name = f"{self.first_name} {self.last_name}".strip()
        return name or self.email or self.id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "firstName": self.first_name,
            "lastName": self.last_name,
            "fullName": self.full_name,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "UserProfile":
        return UserProfile(
            id=str(data["id"]),
            email=data.get("email") or "",
            first_name=data.get("firstName") or "",
            last_name=data.get("lastName") or "",
            full_name=data.get("fullName") or "",
        )


@dataclass
class Book:
    id: int
    title: str
    author: str = ""
    thumbnail_url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "author": self.author,
            "thumbnailUrl": self.thumbnail_url,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Book":
        return Book(
            id=int(data["id"]),
            title=(data.get("title") or "").strip(),
            author=(data.get("author") or "").strip(),
            thumbnail_url=data.get("thumbnailUrl"),
        )


@dataclass
class UserBook:
    """A copy of a book owned by a user, with the owner's profile embedded."""

    id: int
    user_id: str
    book_id: int
    status: int
    book: Optional[Book] = None
    user: Optional[UserProfile] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "userId": self.user_id,
            "bookId": self.book_id,
            "status": self.status,
            "book": self.book.to_dict() if self.book else None,
            "user": self.user.to_dict() if self.user else None,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "UserBook":
        return UserBook(
            id=int(data["id"]),
            user_id=str(data["userId"]),
            book_id=int(data.get("bookId") or 0),
            status=int(data.get("status") or 0),
            book=Book.from_dict(data["book"]) if data.get("book") else None,
            user=UserProfile.from_dict(data["user"]) if data.get("user") else None,
        )


@dataclass
class Share:
    """One loan transaction between a book owner and a borrower.

    Instances are transient copies of server state. After a mutation the
    caller replaces its copy with the one the server returned; fields are
    never merged.
    """

    id: int
    user_book_id: int
    borrower: str
    status: ShareStatus
    return_date: Optional[datetime] = None
    is_disputed: bool = False
    disputed_by: Optional[str] = None
    user_book: Optional[UserBook] = None
    borrower_user: Optional[UserProfile] = None

    @property
    def owner_id(self) -> Optional[str]:
        return self.user_book.user_id if self.user_book else None

    @property
    def owner(self) -> Optional[UserProfile]:
        return self.user_book.user if self.user_book else None

    @property
    def book_title(self) -> str:
        if self.user_book and self.user_book.book:
            return self.user_book.book.title
        return ""

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal or self.is_disputed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "userBookId": self.user_book_id,
            "borrower": self.borrower,
            "returnDate": format_timestamp(self.return_date),
            "status": self.status.value,
            "isDisputed": self.is_disputed,
            "disputedBy": self.disputed_by,
            "userBook": self.user_book.to_dict() if self.user_book else None,
            "borrowerUser": self.borrower_user.to_dict() if self.borrower_user else None,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Share":
        return Share(
            id=int(data["id"]),
            user_book_id=int(data.get("userBookId") or 0),
            borrower=str(data.get("borrower") or ""),
            status=ShareStatus.parse(data["status"]),
            return_date=parse_timestamp(data.get("returnDate")),
            is_disputed=bool(data.get("isDisputed") or False),
            disputed_by=data.get("disputedBy"),
            user_book=UserBook.from_dict(data["userBook"]) if data.get("userBook") else None,
            borrower_user=UserProfile.from_dict(data["borrowerUser"]) if data.get("borrowerUser") else None,
        )


@dataclass(frozen=True)
class ChatMessage:
    id: int
    content: str
    share_id: int
    sent_at: datetime
    sender: Optional[UserProfile] = None
    sender_name: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "content": self.content,
            "shareId": self.share_id,
            "sentAt": format_timestamp(self.sent_at),
            "sender": self.sender.to_dict() if self.sender else None,
            "senderName": self.sender_name,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "ChatMessage":
        sender = UserProfile.from_dict(data["sender"]) if data.get("sender") else None
        return ChatMessage(
            id=int(data["id"]),
            content=data.get("content") or "",
            share_id=int(data["shareId"]),
            sent_at=parse_timestamp(data.get("sentAt")) or datetime.now(timezone.utc),
            sender=sender,
            sender_name=data.get("senderName") or (sender.display_name if sender else ""),
        )


@dataclass
class ChatMessagesPage:
    messages: List[ChatMessage] = field(default_factory=list)
    total_count: int = 0
    page: int = 1
    page_size: int = 0
    has_next_page: bool = False

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "ChatMessagesPage":
        return ChatMessagesPage(
            messages=[ChatMessage.from_dict(m) for m in data.get("messages") or []],
            total_count=int(data.get("totalCount") or 0),
            page=int(data.get("page") or 1),
            page_size=int(data.get("pageSize") or 0),
            has_next_page=bool(data.get("hasNextPage") or False),
        )


class NotificationType(str, Enum):
    STATUS_CHANGED = "ShareStatusChanged"
    DUE_DATE_CHANGED = "ShareDueDateChanged"
    MESSAGE_RECEIVED = "ShareMessageReceived"


SHARE_NOTIFICATION_TYPES = frozenset(t.value for t in NotificationType)


@dataclass(frozen=True)
class Notification:
    id: int
    user_id: str
    notification_type: str
    created_at: Optional[datetime] = None
    share_id: Optional[int] = None
    read_at: Optional[datetime] = None
    message: str = ""
    created_by_user_id: Optional[str] = None

    @property
    def is_share_related(self) -> bool:
        return self.notification_type in SHARE_NOTIFICATION_TYPES

    @property
    def is_unread(self) -> bool:
        return self.read_at is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "userId": self.user_id,
            "notificationType": self.notification_type,
            "message": self.message,
            "createdAt": format_timestamp(self.created_at),
            "readAt": format_timestamp(self.read_at),
            "shareId": self.share_id,
            "createdByUserId": self.created_by_user_id,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Notification":
        share_id = data.get("shareId")
        return Notification(
            id=int(data["id"]),
            user_id=str(data.get("userId") or ""),
            notification_type=str(data.get("notificationType") or ""),
            created_at=parse_timestamp(data.get("createdAt")),
            share_id=int(share_id) if share_id is not None else None,
            read_at=parse_timestamp(data.get("readAt")),
            message=data.get("message") or "",
            created_by_user_id=data.get("createdByUserId"),
        )
