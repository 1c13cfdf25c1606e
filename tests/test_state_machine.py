"""Session lifecycle: start, logout, callbacks and their broadcasts."""

import asyncio

import pytest

from conftest import FakeClient, RecordingObserver
from wa_gateway.models.session import SessionStatus
from wa_gateway.session_manager.errors import AutomationFailure

LOGGED_IN = [("status", "isLogged"), ("status", "chatsAvailable")]


async def _connected(make_machine):
    client = FakeClient(after=LOGGED_IN)
    machine, observer = await make_machine(client)
    outcome = await machine.start()
    assert outcome.ok
    return client, machine, observer


@pytest.mark.asyncio
async def test_initial_state(make_machine):
    machine, observer = await make_machine(FakeClient())
    assert machine.status is SessionStatus.NOT_LOGGED
    assert not machine.has_handle
    assert machine.current_snapshot().to_dict() == {"status": "notLogged", "qrCode": None}
    assert observer.events == [{"event": "status_update", "data": "notLogged"}]


@pytest.mark.asyncio
async def test_start_with_qr_pairing(make_machine):
    client = FakeClient(before=[("qr", "QR-1")], after=LOGGED_IN, hold=True)
    machine, observer = await make_machine(client)

    task = asyncio.create_task(machine.start())
    await client.entered.wait()
    await machine.settle()

    assert machine.status is SessionStatus.QR_READ
    assert machine.current_snapshot().qr_code == "QR-1"
    assert not machine.is_ready()

    client.release()
    outcome = await task

    assert outcome.ok and not outcome.rejected
    assert outcome.message == "Session initialization started."
    assert machine.status is SessionStatus.CHATS_AVAILABLE
    assert machine.is_ready()
    assert machine.current_snapshot().qr_code is None
    assert observer.events == [
        {"event": "status_update", "data": "notLogged"},
        {"event": "status_update", "data": "starting"},
        {"event": "status_update", "data": "qrRead"},
        {"event": "qr_code", "data": "QR-1"},
        {"event": "status_update", "data": "isLogged"},
        {"event": "status_update", "data": "chatsAvailable"},
    ]
    assert client.calls == [("test-session", {"headless": True})]


@pytest.mark.asyncio
async def test_start_flips_to_starting_before_creation_finishes(make_machine):
    client = FakeClient(hold=True)
    machine, observer = await make_machine(client)

    task = asyncio.create_task(machine.start())
    await client.entered.wait()

    assert machine.current_snapshot().to_dict() == {"status": "starting", "qrCode": None}
    assert observer.statuses == ["notLogged", "starting"]

    client.on_qr("data:image/png;base64,ABC")
    await machine.settle()

    assert machine.current_snapshot().to_dict() == {"status": "qrRead", "qrCode": "data:image/png;base64,ABC"}
    assert observer.events[-2:] == [
        {"event": "status_update", "data": "qrRead"},
        {"event": "qr_code", "data": "data:image/png;base64,ABC"},
    ]

    client.on_status("isLogged")
    await machine.settle()
    assert machine.current_snapshot().to_dict() == {"status": "isLogged", "qrCode": None}

    client.release()
    await task


@pytest.mark.asyncio
async def test_subscribe_is_idempotent_bootstrap(make_machine):
    client = FakeClient(before=[("qr", "QR-1")], hold=True)
    machine, _ = await make_machine(client)
    task = asyncio.create_task(machine.start())
    await client.entered.wait()
    await machine.settle()

    late = RecordingObserver()
    machine._broadcaster.subscribe(late)
    machine._broadcaster.subscribe(late)

    expected = [{"event": "status_update", "data": "qrRead"}, {"event": "qr_code", "data": "QR-1"}]
    assert late.events == expected * 2

    client.release()
    await task


@pytest.mark.asyncio
async def test_new_qr_replaces_previous(make_machine):
    client = FakeClient(before=[("qr", "QR-1"), ("qr", "QR-2")], hold=True)
    machine, observer = await make_machine(client)

    task = asyncio.create_task(machine.start())
    await client.entered.wait()
    await machine.settle()

    assert machine.current_snapshot().qr_code == "QR-2"
    assert [e["data"] for e in observer.events if e["event"] == "qr_code"] == ["QR-1", "QR-2"]

    client.release()
    await task


@pytest.mark.asyncio
async def test_second_start_rejected_while_first_in_flight(make_machine):
    client = FakeClient(before=[("qr", "QR-1")], after=LOGGED_IN, hold=True)
    machine, observer = await make_machine(client)

    task = asyncio.create_task(machine.start())
    await client.entered.wait()
    await machine.settle()
    events_before = list(observer.events)

    second = await machine.start()

    assert second.rejected and not second.ok
    assert second.message == "Session already active or starting."
    assert second.status is SessionStatus.QR_READ
    assert observer.events == events_before
    assert len(client.calls) == 1

    client.release()
    await task
    assert len(client.handles) == 1


@pytest.mark.asyncio
async def test_start_rejected_when_connected(make_machine):
    client, machine, observer = await _connected(make_machine)
    events_before = list(observer.events)

    outcome = await machine.start()

    assert outcome.rejected
    assert machine.status is SessionStatus.CHATS_AVAILABLE
    assert observer.events == events_before
    assert len(client.calls) == 1


@pytest.mark.asyncio
async def test_start_uses_connection_state_when_no_callback(make_machine):
    machine, observer = await make_machine(FakeClient(connection_state="CONNECTED"))

    outcome = await machine.start()

    assert outcome.ok
    assert machine.status is SessionStatus.IS_LOGGED
    assert machine.is_ready()
    assert observer.statuses == ["notLogged", "starting", "isLogged"]


@pytest.mark.asyncio
async def test_start_not_connected_discards_handle(make_machine):
    client = FakeClient(connection_state="UNPAIRED")
    machine, observer = await make_machine(client)

    outcome = await machine.start()

    assert not outcome.ok and not outcome.rejected
    assert machine.status is SessionStatus.NOT_LOGGED
    assert not machine.has_handle
    assert client.handles[0].close_count == 1
    assert observer.statuses == ["notLogged", "starting", "notLogged"]


@pytest.mark.asyncio
async def test_start_failure_sets_error(make_machine):
    client = FakeClient(error=RuntimeError("browser crashed"))
    machine, observer = await make_machine(client)

    with pytest.raises(AutomationFailure) as exc_info:
        await machine.start()

    assert "browser crashed" in exc_info.value.message
    assert machine.status is SessionStatus.ERROR
    assert not machine.has_handle
    assert observer.statuses[-1] == "error"

    # error is not an active state, so a retry is allowed
    client.error = None
    client.after = LOGGED_IN
    outcome = await machine.start()
    assert outcome.ok
    assert machine.status is SessionStatus.CHATS_AVAILABLE


@pytest.mark.asyncio
async def test_connection_state_failure_sets_error(make_machine):
    client = FakeClient()
    machine, _ = await make_machine(client)

    real_create = client.create_session

    async def create_session(*args, **kwargs):
        handle = await real_create(*args, **kwargs)
        handle.connection_error = RuntimeError("page gone")
        return handle

    client.create_session = create_session

    with pytest.raises(AutomationFailure):
        await machine.start()

    assert machine.status is SessionStatus.ERROR
    assert not machine.has_handle
    assert client.handles[0].close_count == 1


@pytest.mark.asyncio
async def test_logout(make_machine):
    client, machine, observer = await _connected(make_machine)
    handle = client.handles[0]

    outcome = await machine.logout()

    assert outcome.ok and not outcome.rejected
    assert outcome.message == "Logout successful."
    assert machine.status is SessionStatus.NOT_LOGGED
    assert not machine.has_handle
    assert handle.logged_out
    assert handle.close_count == 1
    assert observer.statuses[-2:] == ["chatsAvailable", "notLogged"]


@pytest.mark.asyncio
async def test_logout_without_session_is_rejected(make_machine):
    machine, observer = await make_machine(FakeClient())

    outcome = await machine.logout()

    assert outcome.rejected and not outcome.ok
    assert outcome.message == "No active session to log out."
    assert machine.status is SessionStatus.NOT_LOGGED
    # status was already notLogged, so nothing new is broadcast
    assert observer.statuses == ["notLogged"]


@pytest.mark.asyncio
async def test_logout_without_session_normalizes_error_status(make_machine):
    machine, observer = await make_machine(FakeClient(error=RuntimeError("nope")))
    with pytest.raises(AutomationFailure):
        await machine.start()

    outcome = await machine.logout()

    assert outcome.rejected
    assert machine.status is SessionStatus.NOT_LOGGED
    assert observer.statuses[-2:] == ["error", "notLogged"]


@pytest.mark.asyncio
async def test_logout_failure_sets_error(make_machine):
    client, machine, _ = await _connected(make_machine)
    handle = client.handles[0]
    handle.logout_error = RuntimeError("menu not found")

    with pytest.raises(AutomationFailure):
        await machine.logout()

    assert machine.status is SessionStatus.ERROR
    assert not machine.has_handle
    assert handle.close_count == 1


@pytest.mark.asyncio
async def test_logout_during_start_cancels_it(make_machine):
    client = FakeClient(before=[("qr", "QR-1")], hold=True)
    machine, observer = await make_machine(client)

    task = asyncio.create_task(machine.start())
    await client.entered.wait()

    logout = await machine.logout()
    assert logout.ok and not logout.rejected

    client.release()
    outcome = await task

    assert outcome.message == "Session start cancelled."
    assert machine.status is SessionStatus.NOT_LOGGED
    assert not machine.has_handle
    handle = client.handles[0]
    assert handle.logged_out
    assert handle.close_count == 1
    assert observer.statuses[-1] == "notLogged"


@pytest.mark.asyncio
async def test_disconnect_callback_retires_handle(make_machine):
    client, machine, observer = await _connected(make_machine)
    handle = client.handles[0]

    client.on_status("desconnectedMobile")
    await machine.settle()

    assert machine.status is SessionStatus.DESCONNECTED_MOBILE
    assert not machine.has_handle
    assert not machine.is_ready()
    assert handle.close_count == 1
    assert observer.statuses[-1] == "desconnectedMobile"

    # a fresh start is allowed after a disconnect
    outcome = await machine.start()
    assert outcome.ok
    assert len(client.handles) == 2


@pytest.mark.asyncio
async def test_callbacks_from_previous_session_are_ignored(make_machine):
    client, machine, observer = await _connected(make_machine)
    stale_qr, stale_status = client.on_qr, client.on_status
    await machine.logout()
    events_before = list(observer.events)

    stale_qr("OLD-QR")
    stale_status("isLogged")
    await machine.settle()

    assert machine.status is SessionStatus.NOT_LOGGED
    assert observer.events == events_before


@pytest.mark.asyncio
async def test_status_aliases_and_unknown_statuses(make_machine):
    client = FakeClient(after=[("status", "successChat"), ("status", "someVendorState")])
    machine, observer = await make_machine(client)

    await machine.start()

    assert machine.status is SessionStatus.CHATS_AVAILABLE
    assert observer.statuses == ["notLogged", "starting", "chatsAvailable"]


@pytest.mark.asyncio
async def test_qr_read_status_without_qr_is_ignored(make_machine):
    client = FakeClient(before=[("status", "qrRead")], hold=True)
    machine, _ = await make_machine(client)

    task = asyncio.create_task(machine.start())
    await client.entered.wait()
    await machine.settle()

    assert machine.status is SessionStatus.STARTING
    assert machine.current_snapshot().qr_code is None

    client.release()
    await task


@pytest.mark.asyncio
async def test_repeated_status_is_broadcast_once(make_machine):
    client, machine, observer = await _connected(make_machine)

    client.on_status("chatsAvailable")
    client.on_status("chatsAvailable")
    await machine.settle()

    assert observer.statuses.count("chatsAvailable") == 1


@pytest.mark.asyncio
async def test_callback_from_another_thread(make_machine):
    client = FakeClient(connection_state="UNPAIRED", before=[("qr", "QR-1")], hold=True)
    machine, _ = await make_machine(client)

    task = asyncio.create_task(machine.start())
    await client.entered.wait()

    await asyncio.to_thread(client.on_status, "isLogged")
    await machine.settle()
    assert machine.status is SessionStatus.IS_LOGGED

    client.release()
    outcome = await task
    assert outcome.ok
    assert machine.is_ready()


@pytest.mark.asyncio
async def test_close_releases_handle(make_machine):
    client, machine, _ = await _connected(make_machine)

    await machine.close()

    assert not machine.has_handle
    assert client.handles[0].close_count == 1


@pytest.mark.asyncio
async def test_logout_in_progress_blocks_second_logout_and_start(make_machine):
    client, machine, _ = await _connected(make_machine)
    first = client.handles[0]
    first.logout_gate = asyncio.Event()
    first.logout_error = RuntimeError("menu not found")

    pending = asyncio.create_task(machine.logout())
    await first.logout_entered.wait()

    again = await machine.logout()
    assert again.rejected and not again.ok
    assert again.message == "Logout already in progress."

    blocked = await machine.start()
    assert blocked.rejected
    assert len(client.handles) == 1

    first.logout_gate.set()
    with pytest.raises(AutomationFailure):
        await pending

    assert machine.status is SessionStatus.ERROR
    assert not machine.has_handle
    assert first.close_count == 1

    # once the old browser is closed a new session may start
    outcome = await machine.start()
    assert outcome.ok
    assert len(client.handles) == 2
    assert machine.handle is client.handles[1]
    assert client.handles[1].close_count == 0


@pytest.mark.asyncio
async def test_successful_logout_releases_the_logout_guard(make_machine):
    client, machine, _ = await _connected(make_machine)
    first = client.handles[0]
    first.logout_gate = asyncio.Event()

    pending = asyncio.create_task(machine.logout())
    await first.logout_entered.wait()
    assert (await machine.start()).rejected

    first.logout_gate.set()
    outcome = await pending
    assert outcome.message == "Logout successful."

    assert (await machine.start()).ok
    assert machine.is_ready()
    assert len(client.handles) == 2
