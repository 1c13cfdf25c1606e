"""Gateway HTTP service.

Runs an aiohttp web server in front of the WhatsApp Web session. Handles
session lifecycle, message sending, and real-time status fan-out.

Endpoints:
    GET  /              - Serve the front-end page, if one is installed
    GET  /status        - Return session status (and QR code while pairing)
    POST /start         - Start the WhatsApp session
    POST /logout        - Log out of the WhatsApp session
    POST /send/text     - Send a text message
    POST /send/media    - Send an image, video, document or audio file
    POST /send/list     - Send a list menu
    POST /send/buttons  - Send reply buttons
    POST /send/location - Send a location
    POST /login         - Check admin credentials
    GET  /api-docs      - OpenAPI document (basic auth)
    GET  /healthz       - Liveness check
    GET  /ws            - WebSocket stream of status_update / qr_code events
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import secrets
import sys
import weakref
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, TypeVar

from aiohttp import BasicAuth, WSCloseCode, WSMsgType, web
from pydantic import BaseModel, ValidationError

from .. import config
from ..config import SESSION_NAME, STATIC_DIR
from ..models.message import (
    LoginRequest,
    SendButtonsRequest,
    SendListRequest,
    SendLocationRequest,
    SendMediaRequest,
    SendTextRequest,
)
from ..models.session import CommandOutcome
from .broadcaster import QueueObserver, StatusBroadcaster
from .client import AutomationClient, ClientHandle
from .errors import GatewayError, MediaSourceError, PreconditionViolation, SendFailure
from .media import check_source
from .openapi import build_openapi
from .state import SessionStateMachine

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(config.LOG_LEVEL)

ModelT = TypeVar("ModelT", bound=BaseModel)

NOT_READY_MESSAGE = "WhatsApp session not active. Please scan QR code and try again."


class SessionManager:
    """Owns the state machine, the broadcaster and the open WebSockets."""

    def __init__(self, client: AutomationClient, session_name: str = SESSION_NAME):
        self.broadcaster = StatusBroadcaster()
        self.machine = SessionStateMachine(client, self.broadcaster, session_name=session_name)
        self.websockets: weakref.WeakSet[web.WebSocketResponse] = weakref.WeakSet()
        self._start_task: Optional[asyncio.Task[CommandOutcome]] = None

    async def setup(self):
        await self.machine.open()

    async def cleanup(self):
        """Close observers and the client handle."""
        for ws in list(self.websockets):
            await ws.close(code=WSCloseCode.GOING_AWAY, message=b"Server shutdown")
        if self._start_task is not None and not self._start_task.done():
            self._start_task.cancel()
        await self.machine.close()

    async def start_session(self) -> CommandOutcome:
        """Run start() in its own task so a dropped HTTP request cannot cancel it."""
        task = asyncio.create_task(self.machine.start(), name="session-start")
        if self._start_task is None or self._start_task.done():
            self._start_task = task
        return await asyncio.shield(task)

    def require_ready(self) -> ClientHandle:
        handle = self.machine.handle
        if handle is None or not self.machine.is_ready():
            logger.warning(
                f"Client not ready (client_exists={handle is not None}, status={self.machine.status.value})"
            )
            raise PreconditionViolation(NOT_READY_MESSAGE, snapshot=self.machine.current_snapshot())
        return handle


# ── Helpers ──────────────────────────────────────────────────────────────────


async def _validated(request: web.Request, model: type[ModelT]) -> ModelT:
    try:
        body = await request.json() if request.can_read_body else {}
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise web.HTTPBadRequest(
            text=json.dumps({"success": False, "message": "Request body must be valid JSON."}),
            content_type="application/json",
        )
    try:
        return model.model_validate(body)
    except ValidationError as e:
        errors = e.errors(include_url=False, include_context=False)
        logger.warning(f"Validation failed for {request.path}: {errors}")
        raise web.HTTPBadRequest(
            text=json.dumps({"success": False, "message": "Validation errors", "errors": errors}, default=str),
            content_type="application/json",
        )


async def _send(kind: str, chat_id: str, call: Callable[[], Awaitable[dict[str, Any]]]) -> dict[str, Any]:
    logger.info(f"Attempting to send {kind} to {chat_id}")
    try:
        result = await call()
    except MediaSourceError:
        raise
    except Exception as e:
        logger.error(f"Error sending {kind} to {chat_id}: {e}")
        raise SendFailure(kind, str(e)) from e
    logger.info(f"{kind.capitalize()} sent to {chat_id} (id={result.get('id')})")
    return result


def _sent(message: str, result: dict[str, Any]) -> web.Response:
    return web.json_response({"success": True, "message": message, "data": result})


def _credentials_match(username: str, password: str) -> bool:
    user_ok = secrets.compare_digest(username.encode(), (config.ADMIN_USERNAME or "").encode())
    password_ok = secrets.compare_digest(password.encode(), (config.ADMIN_PASSWORD or "").encode())
    return user_ok and password_ok


# ── Middlewares ──────────────────────────────────────────────────────────────


@web.middleware
async def error_middleware(request: web.Request, handler):
    """Central error handler: GatewayErrors map to their status, the rest to 500."""
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except GatewayError as e:
        if e.http_status < 500:
            body: dict[str, Any] = {"success": False, "message": e.message}
            if e.snapshot is not None:
                body["status"] = e.snapshot.status.value
            return web.json_response(body, status=e.http_status)
        logger.error(f"Request failed: {request.method} {request.path}: {e}")
        return _internal_error(e, e.http_status)
    except Exception as e:
        logger.error(f"Unhandled error occurred: {request.method} {request.path}: {e}", exc_info=True)
        return _internal_error(e, 500)


def _internal_error(exc: Exception, status: int) -> web.Response:
    body = {"success": False, "message": "An internal server error occurred."}
    if not config.is_production():
        body["error"] = str(exc)
    return web.json_response(body, status=status)


@web.middleware
async def headers_middleware(request: web.Request, handler):
    """CORS for CORS_ORIGIN plus a few security headers."""
    if request.method == "OPTIONS" and request.headers.get("Access-Control-Request-Method"):
        response: web.StreamResponse = web.Response(status=204)
    else:
        try:
            response = await handler(request)
        except web.HTTPException as e:
            response = e
            _apply_headers(response)
            raise
    _apply_headers(response)
    return response


def _apply_headers(response: web.StreamResponse) -> None:
    if response.prepared:
        return
    response.headers["Access-Control-Allow-Origin"] = config.CORS_ORIGIN
    response.headers["Access-Control-Allow-Methods"] = "GET, POST"
    response.headers["Access-Control-Allow-Headers"] = "Content-Type, Authorization"
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "SAMEORIGIN")
    response.headers.setdefault("Referrer-Policy", "no-referrer")


# ── HTTP Handlers ────────────────────────────────────────────────────────────


async def handle_index(request: web.Request) -> web.StreamResponse:
    index = Path(request.app["static_dir"]) / "index.html"
    if not index.is_file():
        return web.json_response({"message": "No front-end installed."}, status=404)
    return web.FileResponse(index)


async def handle_healthz(request: web.Request) -> web.Response:
    mgr: SessionManager = request.app["manager"]
    return web.json_response({"status": "ok", "session": mgr.machine.status.value})


async def handle_status(request: web.Request) -> web.Response:
    mgr: SessionManager = request.app["manager"]
    return web.json_response(mgr.machine.current_snapshot().to_dict())


async def handle_start(request: web.Request) -> web.Response:
    mgr: SessionManager = request.app["manager"]
    outcome = await mgr.start_session()
    if outcome.rejected:
        return web.json_response({"message": outcome.message, "status": outcome.status.value}, status=400)
    return web.json_response({"message": outcome.message, "status": outcome.status.value})


async def handle_logout(request: web.Request) -> web.Response:
    mgr: SessionManager = request.app["manager"]
    outcome = await mgr.machine.logout()
    status = 400 if outcome.rejected else 200
    return web.json_response({"message": outcome.message, "status": outcome.status.value}, status=status)


async def handle_send_text(request: web.Request) -> web.Response:
    mgr: SessionManager = request.app["manager"]
    body = await _validated(request, SendTextRequest)
    handle = mgr.require_ready()

    result = await _send("text message", body.chat_id, lambda: handle.send_text(body.chat_id, body.message))
    return _sent("Message sent successfully", result)


async def handle_send_media(request: web.Request) -> web.Response:
    mgr: SessionManager = request.app["manager"]
    body = await _validated(request, SendMediaRequest)
    handle = mgr.require_ready()

    if body.type == "sticker":
        logger.warning("Sticker sending from URL is not supported.")
        return web.json_response(
            {"success": False, "message": "Sending sticker from URL not implemented yet."}, status=501
        )
    check_source(body.url)

    senders = {
        "image": handle.send_image,
        "video": handle.send_video_as_gif,
        "document": handle.send_file,
        "audio": handle.send_file,
    }
    send = senders[body.type]
    filename = body.effective_file_name
    result = await _send(
        f"media ({body.type})", body.chat_id, lambda: send(body.chat_id, body.url, filename, body.caption)
    )
    return _sent(f"Media ({body.type}) sent successfully", result)


async def handle_send_list(request: web.Request) -> web.Response:
    mgr: SessionManager = request.app["manager"]
    body = await _validated(request, SendListRequest)
    handle = mgr.require_ready()

    sections = [section.model_dump(by_alias=True) for section in body.sections]
    result = await _send(
        "list message",
        body.chat_id,
        lambda: handle.send_list_menu(
            body.chat_id, body.title, body.subtitle, body.description, body.button_text, sections
        ),
    )
    return _sent("List message sent successfully", result)


async def handle_send_buttons(request: web.Request) -> web.Response:
    mgr: SessionManager = request.app["manager"]
    body = await _validated(request, SendButtonsRequest)
    handle = mgr.require_ready()

    buttons = [button.model_dump(by_alias=True) for button in body.buttons]
    result = await _send(
        "buttons message",
        body.chat_id,
        lambda: handle.send_buttons(body.chat_id, body.title, buttons, body.description),
    )
    return _sent("Buttons message sent successfully", result)


async def handle_send_location(request: web.Request) -> web.Response:
    mgr: SessionManager = request.app["manager"]
    body = await _validated(request, SendLocationRequest)
    handle = mgr.require_ready()

    result = await _send(
        "location",
        body.chat_id,
        lambda: handle.send_location(body.chat_id, body.latitude, body.longitude, body.name),
    )
    return _sent("Location sent successfully", result)


async def handle_login(request: web.Request) -> web.Response:
    body = await _validated(request, LoginRequest)

    if not config.ADMIN_USERNAME or not config.ADMIN_PASSWORD:
        logger.error("Admin username or password not configured in environment variables.")
        return web.json_response({"success": False, "message": "Server configuration error."}, status=500)

    if _credentials_match(body.username, body.password):
        logger.info(f"Successful login: {body.username}")
        return web.json_response({"success": True, "message": "Login successful"})

    logger.warning(f"Failed login attempt: {body.username}")
    return web.json_response({"success": False, "message": "Invalid username or password"}, status=401)


async def handle_api_docs(request: web.Request) -> web.Response:
    if config.ADMIN_USERNAME and config.ADMIN_PASSWORD:
        try:
            auth = BasicAuth.decode(request.headers.get("Authorization", ""))
        except ValueError:
            auth = None
        if auth is None or not _credentials_match(auth.login, auth.password):
            return web.Response(
                status=401,
                text="Unauthorized access to API docs. Please provide valid credentials.",
                headers={"WWW-Authenticate": 'Basic realm="api-docs"'},
            )
    return web.json_response(build_openapi(f"{request.scheme}://{request.host}"))


async def handle_ws(request: web.Request) -> web.WebSocketResponse:
    mgr: SessionManager = request.app["manager"]
    ws = web.WebSocketResponse(heartbeat=30.0)
    await ws.prepare(request)

    observer = QueueObserver(name=request.remote or "")
    mgr.websockets.add(ws)
    mgr.broadcaster.subscribe(observer)
    pump = asyncio.create_task(_pump(observer, ws))
    try:
        async for msg in ws:
            if msg.type == WSMsgType.ERROR:
                logger.warning(f"WebSocket error from {observer.name}: {ws.exception()}")
    finally:
        pump.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await pump
        mgr.broadcaster.unsubscribe(observer)
        mgr.websockets.discard(ws)
    return ws


async def _pump(observer: QueueObserver, ws: web.WebSocketResponse):
    while True:
        event = await observer.queue.get()
        if event is None:
            await ws.close(code=WSCloseCode.TRY_AGAIN_LATER, message=b"Too slow")
            return
        try:
            await ws.send_json(event.to_dict())
        except (ConnectionError, RuntimeError) as e:
            logger.debug(f"WebSocket send failed (client disconnected): {observer.name}: {e}")
            return


# ── App Factory ──────────────────────────────────────────────────────────────


async def on_startup(app: web.Application):
    client: Optional[AutomationClient] = app["client"]
    if client is None:
        from .browser import WhatsAppWebClient

        config.ensure_dirs()
        client = WhatsAppWebClient()
    mgr = SessionManager(client, session_name=app["session_name"])
    await mgr.setup()
    app["manager"] = mgr
    logger.info("Gateway started.")


async def on_cleanup(app: web.Application):
    mgr: SessionManager = app["manager"]
    await mgr.cleanup()
    logger.info("Gateway stopped.")


def create_app(
    client: Optional[AutomationClient] = None,
    *,
    session_name: str = SESSION_NAME,
    static_dir: Path = STATIC_DIR,
) -> web.Application:
    app = web.Application(middlewares=[headers_middleware, error_middleware])
    app["client"] = client
    app["session_name"] = session_name
    app["static_dir"] = static_dir
    app.on_startup.append(on_startup)
    app.on_cleanup.append(on_cleanup)

    app.router.add_get("/", handle_index)
    app.router.add_get("/healthz", handle_healthz)
    app.router.add_get("/status", handle_status)
    app.router.add_post("/start", handle_start)
    app.router.add_post("/logout", handle_logout)
    app.router.add_post("/send/text", handle_send_text)
    app.router.add_post("/send/media", handle_send_media)
    app.router.add_post("/send/list", handle_send_list)
    app.router.add_post("/send/buttons", handle_send_buttons)
    app.router.add_post("/send/location", handle_send_location)
    app.router.add_post("/login", handle_login)
    app.router.add_get("/api-docs", handle_api_docs)
    app.router.add_get("/ws", handle_ws)
    if Path(static_dir).is_dir():
        app.router.add_static("/static/", static_dir)

    return app
