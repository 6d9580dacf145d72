from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator

from config import settings


class StatusUpdateRequest(BaseModel):
    """Body of ``PUT /shares/{id}/status``. The server expects a capitalised key."""

    model_config = ConfigDict(populate_by_name=True)

    status: int = Field(alias="Status", ge=1, le=7)


class ReturnDateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    return_date: datetime = Field(alias="returnDate")


class SendMessageRequest(BaseModel):
    content: str = Field(min_length=1, max_length=settings.max_message_length)

    @field_validator("content")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Message cannot be empty.")
        return value
