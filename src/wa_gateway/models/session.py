"""Pydantic models for session state."""

from __future__ import annotations

import enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from ..constants import ACTIVE_STATES, CONNECTED_STATES, DISCONNECT_STATES, STATUS_ALIASES


class SessionStatus(str, enum.Enum):
    """Connection state of the WhatsApp Web session."""

    NOT_LOGGED = "notLogged"
    STARTING = "starting"
    QR_READ = "qrRead"
    IS_LOGGED = "isLogged"
    CHATS_AVAILABLE = "chatsAvailable"
    BROWSER_CLOSE = "browserClose"
    DESCONNECTED_MOBILE = "desconnectedMobile"
    DELETE_TOKEN = "deleteToken"
    ERROR = "error"

    @property
    def is_active(self) -> bool:
        return self.value in ACTIVE_STATES

    @property
    def is_connected(self) -> bool:
        return self.value in CONNECTED_STATES

    @property
    def is_disconnect(self) -> bool:
        return self.value in DISCONNECT_STATES

    @classmethod
    def parse(cls, raw: str) -> Optional["SessionStatus"]:
        """Map a status string reported by the automation client, or None if unknown."""
        value = STATUS_ALIASES.get(raw, raw)
        try:
            return cls(value)
        except ValueError:
            return None


class SessionSnapshot(BaseModel):
    """Status plus the QR payload, which is only present while pairing."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    status: SessionStatus = SessionStatus.NOT_LOGGED
    qr_code: Optional[str] = Field(default=None, alias="qrCode")

    @model_validator(mode="after")
    def _qr_only_while_pairing(self) -> "SessionSnapshot":
        if self.qr_code is not None and self.status is not SessionStatus.QR_READ:
            raise ValueError("qrCode is only present while status is qrRead")
        return self

    def to_dict(self) -> dict[str, Any]:
        return {"status": self.status.value, "qrCode": self.qr_code}


class CommandOutcome(BaseModel):
    """Result of a start/logout command: a status label and a message."""

    ok: bool
    status: SessionStatus
    rejected: bool = False
    message: str = ""
    snapshot: SessionSnapshot = Field(default_factory=SessionSnapshot)
