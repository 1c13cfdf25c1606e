"""Camoufox browser automation: drive web.whatsapp.com as an automation client."""

from __future__ import annotations

import asyncio
import base64
import logging
import sys
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional
from urllib.parse import quote

from camoufox.async_api import AsyncCamoufox
from playwright.async_api import BrowserContext, Locator, Page

from ..config import BROWSER_HEADLESS, BROWSER_TIMEOUT, LOG_LEVEL, QR_POLL_INTERVAL, QR_TIMEOUT_MS, TOKENS_DIR
from ..constants import (
    CONNECTION_STATE_CLOSED,
    CONNECTION_STATE_CONNECTED,
    CONNECTION_STATE_UNPAIRED,
    MAPS_URL,
    SELECTORS,
    WHATSAPP_SEND_URL,
    WHATSAPP_WEB_URL,
)
from .client import QrCallback, StatusCallback
from .errors import SessionCreationError
from .media import resolved_media

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(LOG_LEVEL)


async def first_present(page: Page, selectors: list[str]) -> Optional[Locator]:
    """Return the first selector that matches something on the page."""
    for selector in selectors:
        try:
            locator = page.locator(selector).first
            if await locator.count() > 0:
                return locator
        except Exception as e:
            logger.debug(f"Selector lookup failed for {selector!r}: {e}")
    return None


def format_list_menu(title: str, subtitle: str, description: str, button_text: str, sections: list[dict]) -> str:
    """Render a list menu as plain text; WhatsApp Web cannot compose native lists."""
    lines = [f"*{title}*"]
    if subtitle:
        lines.append(f"_{subtitle}_")
    lines.append(description)
    for section in sections:
        lines.append("")
        lines.append(f"*{section.get('title', '')}*")
        for index, row in enumerate(section.get("rows", []), start=1):
            entry = f"{index}. {row.get('title', '')}"
            if row.get("description"):
                entry += f" - {row['description']}"
            lines.append(entry)
    lines.append("")
    lines.append(f"[{button_text}]")
    return "\n".join(lines)


def format_buttons(title: str, buttons: list[dict], description: str) -> str:
    lines = [f"*{title}*"] if title else []
    lines.append(description)
    lines.append("")
    for index, button in enumerate(buttons, start=1):
        label = (button.get("buttonText") or {}).get("displayText", "")
        lines.append(f"{index}. {label}")
    return "\n".join(lines)


def format_location(latitude: float, longitude: float, name: str) -> str:
    return f"📍 {name}\n{MAPS_URL.format(latitude=latitude, longitude=longitude)}"


def _phone_from_chat_id(chat_id: str) -> str:
    return chat_id.split("@", 1)[0]


def _message_id(chat_id: str) -> str:
    return f"true_{chat_id}_{uuid.uuid4().hex[:20].upper()}"


class WhatsAppWebSession:
    """A logged-in WhatsApp Web tab; implements the ClientHandle protocol."""

    def __init__(
        self,
        camoufox: AsyncCamoufox,
        context: BrowserContext,
        page: Page,
        on_status: StatusCallback,
        poll_interval: float = QR_POLL_INTERVAL,
    ):
        self._camoufox = camoufox
        self._context: Optional[BrowserContext] = context
        self._page: Optional[Page] = page
        self._on_status = on_status
        self._poll_interval = poll_interval
        self._page_lock = asyncio.Lock()
        self._watcher: Optional[asyncio.Task[None]] = None
        self._closed = False

    @property
    def is_running(self) -> bool:
        return self._page is not None and not self._page.is_closed()

    def watch(self) -> None:
        """Report mobile disconnects and browser closes through the status callback."""
        if self._watcher is None:
            self._watcher = asyncio.create_task(self._watch(), name="whatsapp-web-watch")

    async def _watch(self):
        while not self._closed:
            await asyncio.sleep(self._poll_interval)
            if self._closed:
                return
            if not self.is_running:
                logger.warning("WhatsApp Web page closed.")
                self._on_status("browserClose")
                return
            if self._page_lock.locked():
                continue
            try:
                if await first_present(self._page, SELECTORS["qr_canvas"]) is not None:
                    logger.warning("Pairing screen is back; the phone unlinked this device.")
                    self._on_status("desconnectedMobile")
                    return
            except Exception as e:
                logger.debug(f"Watcher check failed: {e}")

    async def get_connection_state(self) -> str:
        if not self.is_running:
            return CONNECTION_STATE_CLOSED
        if await first_present(self._page, SELECTORS["chat_list"]) is not None:
            return CONNECTION_STATE_CONNECTED
        if await first_present(self._page, SELECTORS["qr_canvas"]) is not None:
            return CONNECTION_STATE_UNPAIRED
        return "OPENING"

    async def logout(self) -> None:
        """Unlink this device via the WhatsApp Web menu."""
        if not self.is_running:
            raise RuntimeError("Browser is not running.")

        async with self._page_lock:
            menu = await first_present(self._page, SELECTORS["menu_button"])
            if menu is None:
                raise RuntimeError("Could not find the WhatsApp Web menu.")
            await menu.click()

            item = await first_present(self._page, SELECTORS["logout_item"])
            if item is None:
                raise RuntimeError("Could not find the Log out menu item.")
            await item.click()

            confirm = await first_present(self._page, SELECTORS["logout_confirm"])
            if confirm is not None:
                await confirm.click()

            await self._page.wait_for_selector(SELECTORS["qr_canvas"][-1], timeout=BROWSER_TIMEOUT)
        logger.info("Logged out of WhatsApp Web.")

    async def close(self):
        """Gracefully close the browser; the profile directory keeps the login."""
        if self._closed:
            return
        self._closed = True
        logger.info("Stopping browser session...")

        if self._watcher is not None and self._watcher is not asyncio.current_task():
            self._watcher.cancel()

        try:
            if self._context:
                await self._context.close()
        except Exception as e:
            logger.warning(f"Error closing context: {e}")
        finally:
            self._context = None
            self._page = None

        try:
            await self._camoufox.__aexit__(None, None, None)
        except Exception as e:
            logger.warning(f"Error closing camoufox: {e}")

        logger.info("Browser session stopped.")

    # ── Sending ──────────────────────────────────────────────────────────────

    async def _open_chat(self, chat_id: str, text: Optional[str] = None):
        url = f"{WHATSAPP_SEND_URL}?phone={_phone_from_chat_id(chat_id)}"
        if text:
            url += f"&text={quote(text)}"
        await self._page.goto(url, wait_until="domcontentloaded", timeout=BROWSER_TIMEOUT)

        compose_or_popup = ", ".join(SELECTORS["compose_box"] + [SELECTORS["invalid_number_popup"]])
        await self._page.wait_for_selector(compose_or_popup, timeout=BROWSER_TIMEOUT)

        popup = self._page.locator(SELECTORS["invalid_number_popup"])
        if await popup.count() > 0:
            await popup.first.click()
            raise RuntimeError(f"Phone number {chat_id} is not on WhatsApp.")

    async def _click_send(self):
        send = await first_present(self._page, SELECTORS["send_button"])
        if send is None:
            raise RuntimeError("Could not find the send button.")
        await send.click()

    def _result(self, chat_id: str, **extra: Any) -> dict[str, Any]:
        return {
            "id": _message_id(chat_id),
            "to": chat_id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            **extra,
        }

    async def send_text(self, chat_id: str, text: str) -> dict[str, Any]:
        if not self.is_running:
            raise RuntimeError("Browser is not running.")

        async with self._page_lock:
            await self._open_chat(chat_id)
            compose = await first_present(self._page, SELECTORS["compose_box"])
            if compose is None:
                raise RuntimeError("Could not find the message input.")
            await compose.click()
            # Line breaks need Shift+Enter; a bare Enter would send early
            for index, line in enumerate(text.split("\n")):
                if index:
                    await self._page.keyboard.press("Shift+Enter")
                if line:
                    await self._page.keyboard.insert_text(line)
            await self._click_send()
            await asyncio.sleep(1)

        logger.info(f"Text message sent to {chat_id}")
        return self._result(chat_id, type="chat", body=text)

    async def _send_media(
        self, chat_id: str, source: str, filename: str, caption: Optional[str], kind: str
    ) -> dict[str, Any]:
        if not self.is_running:
            raise RuntimeError("Browser is not running.")

        async with resolved_media(source, filename) as path, self._page_lock:
            await self._open_chat(chat_id)

            attach = await first_present(self._page, SELECTORS["attach_button"])
            if attach is None:
                raise RuntimeError("Could not find the attach button.")
            await attach.click()

            if kind in ("image", "video"):
                file_input = self._page.locator(f'{SELECTORS["file_input"]}[accept*="image"]')
            else:
                file_input = self._page.locator(f'{SELECTORS["file_input"]}:not([accept*="image"])')
            if await file_input.count() == 0:
                file_input = self._page.locator(SELECTORS["file_input"])
            if await file_input.count() == 0:
                raise RuntimeError("Could not find the file input.")
            await file_input.first.set_input_files(str(path))

            if caption:
                await asyncio.sleep(1)
                caption_box = await first_present(self._page, SELECTORS["caption_input"])
                if caption_box is not None:
                    await caption_box.fill(caption)
                else:
                    logger.warning("Caption input not found; sending without caption")

            await self._click_send()
            await asyncio.sleep(2)

        logger.info(f"Media ({kind}) sent to {chat_id}: {Path(filename).name}")
        return self._result(chat_id, type=kind, filename=filename, caption=caption)

    async def send_image(self, chat_id, source, filename, caption=None):
        return await self._send_media(chat_id, source, filename, caption, "image")

    async def send_file(self, chat_id, source, filename, caption=None):
        return await self._send_media(chat_id, source, filename, caption, "document")

    async def send_video_as_gif(self, chat_id, source, filename, caption=None):
        return await self._send_media(chat_id, source, filename, caption, "video")

    async def send_list_menu(self, chat_id, title, subtitle, description, button_text, sections):
        text = format_list_menu(title, subtitle, description, button_text, sections)
        return {**await self.send_text(chat_id, text), "type": "list"}

    async def send_buttons(self, chat_id, title, buttons, description):
        text = format_buttons(title, buttons, description)
        return {**await self.send_text(chat_id, text), "type": "buttons"}

    async def send_location(self, chat_id, latitude, longitude, name):
        text = format_location(latitude, longitude, name)
        return {**await self.send_text(chat_id, text), "type": "location"}


class WhatsAppWebClient:
    """Creates WhatsApp Web sessions in a persistent Camoufox profile."""

    async def create_session(
        self,
        session_name: str,
        on_qr: QrCallback,
        on_status: StatusCallback,
        options: Optional[dict[str, Any]] = None,
    ) -> WhatsAppWebSession:
        """Launch the browser and wait until the session is logged in.

        Emits each new QR code through ``on_qr``. Raises SessionCreationError
        if the QR code is not scanned within ``auto_close_ms``.
        """
        options = options or {}
        headless = options.get("headless", BROWSER_HEADLESS)
        auto_close_ms = options.get("auto_close_ms", QR_TIMEOUT_MS)
        poll_interval = options.get("poll_interval", QR_POLL_INTERVAL)
        profile_dir = Path(options.get("session_folder", TOKENS_DIR)) / session_name
        profile_dir.mkdir(parents=True, exist_ok=True)

        logger.info(f"Launching Camoufox (headless={headless}, profile={profile_dir})...")
        camoufox = AsyncCamoufox(
            headless=headless,
            persistent_context=True,
            user_data_dir=str(profile_dir),
            humanize=True,
        )
        try:
            context: BrowserContext = await camoufox.__aenter__()
        except Exception as e:
            raise SessionCreationError(f"Failed to launch browser: {e}") from e

        page = context.pages[0] if context.pages else await context.new_page()
        page.set_default_timeout(BROWSER_TIMEOUT)
        session = WhatsAppWebSession(camoufox, context, page, on_status, poll_interval)

        try:
            logger.info("Navigating to WhatsApp Web...")
            try:
                await page.goto(WHATSAPP_WEB_URL, wait_until="domcontentloaded", timeout=BROWSER_TIMEOUT)
            except Exception as e:
                logger.warning(f"Navigation timeout, trying with longer wait: {e}")
                await page.goto(WHATSAPP_WEB_URL, wait_until="commit", timeout=BROWSER_TIMEOUT * 2)

            await self._await_login(page, on_qr, on_status, auto_close_ms / 1000, poll_interval)
        except Exception as e:
            await session.close()
            if isinstance(e, SessionCreationError):
                raise
            raise SessionCreationError(f"Failed to open WhatsApp Web: {e}") from e

        session.watch()
        return session

    async def _await_login(
        self,
        page: Page,
        on_qr: QrCallback,
        on_status: StatusCallback,
        timeout_s: float,
        poll_interval: float,
    ):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_s
        last_qr: Optional[bytes] = None
        attempts = 0

        while loop.time() < deadline:
            if page.is_closed():
                on_status("browserClose")
                raise SessionCreationError("Browser was closed before login completed.")

            if await first_present(page, SELECTORS["chat_list"]) is not None:
                logger.info("WhatsApp Web session is logged in.")
                on_status("isLogged")
                on_status("chatsAvailable")
                return

            qr = await first_present(page, SELECTORS["qr_canvas"])
            if qr is not None:
                box = await qr.bounding_box()
                if box and box["width"] > 50 and box["height"] > 50:
                    image = await qr.screenshot()
                    if image != last_qr:
                        if last_qr is None:
                            on_status("notLogged")
                        attempts += 1
                        last_qr = image
                        logger.info(f"QR code captured (attempt {attempts})")
                        on_qr(f"data:image/png;base64,{base64.b64encode(image).decode()}")

            await asyncio.sleep(poll_interval)

        logger.warning(f"QR code was not scanned within {timeout_s:.0f}s; closing browser")
        on_status("autocloseCalled")
        raise SessionCreationError(f"QR code was not scanned within {timeout_s:.0f} seconds.")
