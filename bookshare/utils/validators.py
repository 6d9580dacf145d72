from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Optional

from pydantic import ValidationError

from bookshare.exceptions import MessageRejected
from bookshare.schemas import SendMessageRequest
from bookshare.share import as_return_datetime
from config import settings


class MessageValidator:
    """Chat content checks applied before anything is sent."""

    @staticmethod
    def normalize(content: Optional[str]) -> str:
        if content is None:
            return ""
        return content.strip()

    @staticmethod
    def validate(content: Optional[str]) -> str:
        text = MessageValidator.normalize(content)
        if not text:
            raise MessageRejected("Message cannot be empty.")
        if len(text) > settings.max_message_length:
            raise MessageRejected(
                f"Messages must be {settings.max_message_length} characters or less."
            )
        try:
            SendMessageRequest(content=text)
        except ValidationError as e:
            raise MessageRejected(str(e)) from e
        return text


class ReturnDateValidator:
    @staticmethod
    def parse(raw) -> datetime:
        if isinstance(raw, (date, datetime)):
            return as_return_datetime(raw)
        text = (raw or "").strip()
        if not text:
            raise ValueError("Return date cannot be empty.")
        try:
            if len(text) == 10:
                return as_return_datetime(date.fromisoformat(text))
            return as_return_datetime(text)
        except ValueError as e:
            raise ValueError(f"Invalid return date: {raw!r}. Use YYYY-MM-DD.") from e

    @staticmethod
    def is_in_future(value: datetime, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.date() >= now.date()
