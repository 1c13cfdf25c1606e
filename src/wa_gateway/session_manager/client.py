"""Interfaces the gateway expects from a WhatsApp automation client."""

from __future__ import annotations

from typing import Any, Callable, Optional, Protocol

QrCallback = Callable[[str], None]
StatusCallback = Callable[[str], None]


class ClientHandle(Protocol):
    """A live WhatsApp Web session owned by the state machine."""

    async def get_connection_state(self) -> str: ...

    async def logout(self) -> None: ...

    async def close(self) -> None: ...

    async def send_text(self, chat_id: str, text: str) -> dict[str, Any]: ...

    async def send_image(
        self, chat_id: str, source: str, filename: str, caption: Optional[str] = None
    ) -> dict[str, Any]: ...

    async def send_file(
        self, chat_id: str, source: str, filename: str, caption: Optional[str] = None
    ) -> dict[str, Any]: ...

    async def send_video_as_gif(
        self, chat_id: str, source: str, filename: str, caption: Optional[str] = None
    ) -> dict[str, Any]: ...

    async def send_list_menu(
        self,
        chat_id: str,
        title: str,
        subtitle: str,
        description: str,
        button_text: str,
        sections: list[dict[str, Any]],
    ) -> dict[str, Any]: ...

    async def send_buttons(
        self, chat_id: str, title: str, buttons: list[dict[str, Any]], description: str
    ) -> dict[str, Any]: ...

    async def send_location(
        self, chat_id: str, latitude: float, longitude: float, name: str
    ) -> dict[str, Any]: ...


class AutomationClient(Protocol):
    """Factory for client handles.

    ``on_qr`` and ``on_status`` may be called any number of times, from any
    coroutine, before and after ``create_session`` returns.
    """

    async def create_session(
        self,
        session_name: str,
        on_qr: QrCallback,
        on_status: StatusCallback,
        options: Optional[dict[str, Any]] = None,
    ) -> ClientHandle: ...
