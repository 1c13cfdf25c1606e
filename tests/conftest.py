"""Shared fixtures: an in-memory automation client and a recording observer."""

import asyncio

import pytest_asyncio

from wa_gateway.session_manager.broadcaster import StatusBroadcaster
from wa_gateway.session_manager.state import SessionStateMachine


class FakeHandle:
    """Client handle that records what it was asked to do."""

    def __init__(self, connection_state="CONNECTED"):
        self.connection_state = connection_state
        self.connection_error = None
        self.logout_error = None
        self.logout_gate = None
        self.logout_entered = asyncio.Event()
        self.send_error = None
        self.logged_out = False
        self.close_count = 0
        self.sent = []

    async def get_connection_state(self):
        if self.connection_error:
            raise self.connection_error
        return self.connection_state

    async def logout(self):
        self.logout_entered.set()
        if self.logout_gate is not None:
            await self.logout_gate.wait()
        if self.logout_error:
            raise self.logout_error
        self.logged_out = True

    async def close(self):
        self.close_count += 1

    async def send_text(self, chat_id, text):
        return self._record("text", chat_id, text=text)

    async def send_image(self, chat_id, source, filename, caption=None):
        return self._record("image", chat_id, source=source, filename=filename, caption=caption)

    async def send_file(self, chat_id, source, filename, caption=None):
        return self._record("file", chat_id, source=source, filename=filename, caption=caption)

    async def send_video_as_gif(self, chat_id, source, filename, caption=None):
        return self._record("video", chat_id, source=source, filename=filename, caption=caption)

    async def send_list_menu(self, chat_id, title, subtitle, description, button_text, sections):
        return self._record(
            "list", chat_id, title=title, subtitle=subtitle, description=description,
            button_text=button_text, sections=sections,
        )

    async def send_buttons(self, chat_id, title, buttons, description):
        return self._record("buttons", chat_id, title=title, buttons=buttons, description=description)

    async def send_location(self, chat_id, latitude, longitude, name):
        return self._record("location", chat_id, latitude=latitude, longitude=longitude, name=name)

    def _record(self, kind, chat_id, **fields):
        self.sent.append((kind, chat_id, fields))
        if self.send_error:
            raise self.send_error
        return {"id": f"true_{chat_id}_{len(self.sent)}", "to": chat_id}


class FakeClient:
    """Automation client driven by scripts of ("qr" | "status", value) callbacks.

    ``before`` is emitted as soon as create_session is called, ``after`` once
    the gate opens. With ``hold=True`` the gate stays shut until ``release()``.
    """

    def __init__(self, *, before=(), after=(), connection_state="CONNECTED", error=None, hold=False):
        self.before = list(before)
        self.after = list(after)
        self.connection_state = connection_state
        self.error = error
        self.gate = asyncio.Event()
        self.entered = asyncio.Event()
        if not hold:
            self.gate.set()
        self.calls = []
        self.handles = []
        self.on_qr = None
        self.on_status = None

    def release(self):
        self.gate.set()

    async def create_session(self, session_name, on_qr, on_status, options=None):
        self.calls.append((session_name, options))
        self.on_qr = on_qr
        self.on_status = on_status
        self._emit(self.before)
        self.entered.set()
        await self.gate.wait()
        self._emit(self.after)
        if self.error:
            raise self.error
        handle = FakeHandle(self.connection_state)
        self.handles.append(handle)
        return handle

    def _emit(self, script):
        for kind, value in script:
            if kind == "qr":
                self.on_qr(value)
            else:
                self.on_status(value)


class RecordingObserver:
    def __init__(self):
        self.events = []

    def deliver(self, event):
        self.events.append(event.to_dict())

    @property
    def statuses(self):
        return [e["data"] for e in self.events if e["event"] == "status_update"]


@pytest_asyncio.fixture
async def make_machine():
    """Factory for (machine, observer) pairs; machines are closed after the test."""
    machines = []

    async def make(client):
        broadcaster = StatusBroadcaster()
        machine = SessionStateMachine(
            client, broadcaster, session_name="test-session", client_options={"headless": True}
        )
        await machine.open()
        observer = RecordingObserver()
        broadcaster.subscribe(observer)
        machines.append(machine)
        return machine, observer

    yield make

    for machine in machines:
        await machine.close()
