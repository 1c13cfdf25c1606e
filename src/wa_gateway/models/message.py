"""Pydantic models for outbound message requests."""

from __future__ import annotations

import re
from typing import Optional
from urllib.parse import unquote, urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..constants import CHAT_SUFFIX, MEDIA_TYPES


def format_chat_id(to: str) -> str:
    """Normalize a phone number into a WhatsApp chat id (digits + @c.us)."""
    if CHAT_SUFFIX in to:
        return to
    return f"{re.sub(r'[^0-9]', '', to)}{CHAT_SUFFIX}"


class _Request(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)


class _RecipientRequest(_Request):
    to: str = Field(min_length=1, description="Recipient phone number or chat id")

    @field_validator("to")
    @classmethod
    def _check_recipient(cls, value: str) -> str:
        if CHAT_SUFFIX not in value and not re.search(r"[0-9]", value):
            raise ValueError('Recipient phone number ("to") must contain digits.')
        return value

    @property
    def chat_id(self) -> str:
        return format_chat_id(self.to)


class SendTextRequest(_RecipientRequest):
    message: str = Field(min_length=1, description="Message content")


class SendMediaRequest(_RecipientRequest):
    type: str = Field(description="image, video, document, audio or sticker")
    url: str = Field(min_length=1, description="http(s) URL, data: URL or local path")
    caption: Optional[str] = None
    file_name: Optional[str] = Field(default=None, alias="fileName")

    @field_validator("type")
    @classmethod
    def _check_type(cls, value: str) -> str:
        value = value.lower()
        if value not in MEDIA_TYPES:
            raise ValueError(
                f'Invalid media type "{value}". Valid types are: {", ".join(MEDIA_TYPES)}'
            )
        return value

    @property
    def effective_file_name(self) -> str:
        """Provided file name, or the last path segment of the URL."""
        if self.file_name:
            return self.file_name
        if self.url.startswith("data:"):
            return "file"
        path = urlparse(self.url).path or self.url
        return unquote(path.rstrip("/").rsplit("/", 1)[-1]) or "file"


class ListRow(_Request):
    title: str = Field(min_length=1)
    description: str = ""
    row_id: Optional[str] = Field(default=None, alias="rowId")


class ListSection(_Request):
    title: str = Field(min_length=1)
    rows: list[ListRow] = Field(min_length=1)


class SendListRequest(_RecipientRequest):
    title: str = Field(min_length=1)
    subtitle: str = ""
    description: str = Field(min_length=1)
    button_text: str = Field(min_length=1, alias="buttonText")
    sections: list[ListSection] = Field(min_length=1)


class ButtonText(_Request):
    display_text: str = Field(min_length=1, alias="displayText")


class Button(_Request):
    button_id: Optional[str] = Field(default=None, alias="buttonId")
    button_text: ButtonText = Field(alias="buttonText")


class SendButtonsRequest(_RecipientRequest):
    title: str = ""
    description: str = Field(min_length=1)
    buttons: list[Button] = Field(min_length=1)

    @field_validator("buttons", mode="before")
    @classmethod
    def _coerce_plain_labels(cls, value: object) -> object:
        # Accept ["Yes", "No"] as shorthand for {"buttonText": {"displayText": ...}}
        if isinstance(value, list):
            return [
                {"buttonId": str(i), "buttonText": {"displayText": item}} if isinstance(item, str) else item
                for i, item in enumerate(value, start=1)
            ]
        return value


class SendLocationRequest(_RecipientRequest):
    latitude: float
    longitude: float
    name: str = Field(min_length=1)

    @field_validator("latitude")
    @classmethod
    def _check_latitude(cls, value: float) -> float:
        if not -90.0 <= value <= 90.0:
            raise ValueError("latitude must be between -90 and 90")
        return value

    @field_validator("longitude")
    @classmethod
    def _check_longitude(cls, value: float) -> float:
        if not -180.0 <= value <= 180.0:
            raise ValueError("longitude must be between -180 and 180")
        return value


class LoginRequest(_Request):
    username: str = Field(min_length=1)
    password: str = Field(min_length=1)
