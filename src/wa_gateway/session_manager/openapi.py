"""OpenAPI document for the gateway's HTTP API, built from the request models."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel

from ..config import PORT
from ..constants import EVENT_QR_CODE, EVENT_STATUS_UPDATE
from ..models.message import (
    LoginRequest,
    SendButtonsRequest,
    SendListRequest,
    SendLocationRequest,
    SendMediaRequest,
    SendTextRequest,
)
from ..models.session import SessionStatus

_STATUS_SCHEMA = {"type": "string", "enum": [s.value for s in SessionStatus]}

_MESSAGE_RESPONSE = {
    "type": "object",
    "properties": {
        "message": {"type": "string"},
        "status": _STATUS_SCHEMA,
    },
}

_SEND_RESPONSE = {
    "type": "object",
    "properties": {
        "success": {"type": "boolean"},
        "message": {"type": "string"},
        "data": {"type": "object"},
    },
}

_EVENT_SCHEMAS = {
    "StatusUpdateEvent": {
        "type": "object",
        "required": ["event", "data"],
        "properties": {"event": {"type": "string", "enum": [EVENT_STATUS_UPDATE]}, "data": _STATUS_SCHEMA},
    },
    "QrCodeEvent": {
        "type": "object",
        "required": ["event", "data"],
        "properties": {
            "event": {"type": "string", "enum": [EVENT_QR_CODE]},
            "data": {"type": "string", "description": "QR image as a data:image/png;base64 URL"},
        },
    },
}

_SEND_ROUTES = [
    ("/send/text", "Send a text message", SendTextRequest),
    ("/send/media", "Send an image, video, document or audio file", SendMediaRequest),
    ("/send/list", "Send an interactive list menu", SendListRequest),
    ("/send/buttons", "Send a message with reply buttons", SendButtonsRequest),
    ("/send/location", "Send a location", SendLocationRequest),
]


def _json(schema: dict[str, Any]) -> dict[str, Any]:
    return {"application/json": {"schema": schema}}


def _body(model: type[BaseModel]) -> dict[str, Any]:
    return {"required": True, "content": _json({"$ref": f"#/components/schemas/{model.__name__}"})}


def build_openapi(server_url: str | None = None) -> dict[str, Any]:
    schemas: dict[str, Any] = {}
    for model in [LoginRequest] + [m for _, _, m in _SEND_ROUTES]:
        schema = model.model_json_schema(by_alias=True, ref_template="#/components/schemas/{model}")
        schemas.update(schema.pop("$defs", {}))
        schemas[model.__name__] = schema
    schemas.update(_EVENT_SCHEMAS)

    paths: dict[str, Any] = {
        "/": {
            "get": {
                "summary": "Front-end page",
                "tags": ["Presentation"],
                "responses": {
                    "200": {"description": "index.html from STATIC_DIR.", "content": {"text/html": {}}},
                    "404": {"description": "No front-end installed."},
                },
            }
        },
        "/healthz": {
            "get": {
                "summary": "Liveness check",
                "tags": ["Session"],
                "responses": {
                    "200": {
                        "description": "The gateway is up.",
                        "content": _json({
                            "type": "object",
                            "properties": {"status": {"type": "string", "enum": ["ok"]}, "session": _STATUS_SCHEMA},
                        }),
                    }
                },
            }
        },
        "/ws": {
            "get": {
                "summary": "Real-time session events (WebSocket)",
                "description": (
                    "Upgrade to a WebSocket. The server sends the current status on connect, "
                    "then one frame per change: a status_update frame, followed by a qr_code "
                    "frame while the status is qrRead. Messages from the client are ignored."
                ),
                "tags": ["Session"],
                "responses": {
                    "101": {
                        "description": "Switching protocols; frames are JSON event objects.",
                        "content": _json({
                            "oneOf": [
                                {"$ref": "#/components/schemas/StatusUpdateEvent"},
                                {"$ref": "#/components/schemas/QrCodeEvent"},
                            ]
                        }),
                    }
                },
            }
        },
        "/api-docs": {
            "get": {
                "summary": "This OpenAPI document",
                "tags": ["Documentation"],
                "security": [{"basicAuth": []}, {}],
                "responses": {
                    "200": {"description": "OpenAPI 3 JSON."},
                    "401": {"description": "Credentials are configured and were missing or wrong."},
                },
            }
        },
        "/status": {
            "get": {
                "summary": "Get current WhatsApp session status",
                "tags": ["Session"],
                "responses": {
                    "200": {
                        "description": "Current status, and the QR code while pairing.",
                        "content": _json({
                            "type": "object",
                            "properties": {
                                "status": _STATUS_SCHEMA,
                                "qrCode": {"type": "string", "nullable": True},
                            },
                        }),
                    }
                },
            }
        },
        "/start": {
            "post": {
                "summary": "Start a new WhatsApp session",
                "tags": ["Session"],
                "responses": {
                    "200": {"description": "Session initialization started.", "content": _json(_MESSAGE_RESPONSE)},
                    "400": {"description": "Session already active or starting, or a logout is in progress.", "content": _json(_MESSAGE_RESPONSE)},
                    "500": {"description": "The automation client failed to start the session."},
                },
            }
        },
        "/logout": {
            "post": {
                "summary": "Log out of the WhatsApp session",
                "tags": ["Session"],
                "responses": {
                    "200": {"description": "Logout successful.", "content": _json(_MESSAGE_RESPONSE)},
                    "400": {"description": "No active session to log out, or a logout is already in progress.", "content": _json(_MESSAGE_RESPONSE)},
                    "500": {"description": "Logout failed; the session is now in error."},
                },
            }
        },
        "/login": {
            "post": {
                "summary": "Authenticate user",
                "tags": ["Authentication"],
                "requestBody": _body(LoginRequest),
                "responses": {
                    "200": {"description": "Login successful"},
                    "401": {"description": "Invalid username or password"},
                    "500": {"description": "Server configuration error (credentials not set)"},
                },
            }
        },
    }

    for path, summary, model in _SEND_ROUTES:
        paths[path] = {
            "post": {
                "summary": summary,
                "tags": ["Messaging"],
                "requestBody": _body(model),
                "responses": {
                    "200": {"description": "Message sent.", "content": _json(_SEND_RESPONSE)},
                    "400": {"description": "Validation error or session not active."},
                    "500": {"description": "The send operation failed."},
                },
            }
        }
    paths["/send/media"]["post"]["responses"]["400"] = {
        "description": "Validation error, session not active, or a local path outside MEDIA_DIR."
    }
    paths["/send/media"]["post"]["responses"]["501"] = {"description": "Sticker sending is not implemented."}

    return {
        "openapi": "3.0.0",
        "info": {
            "title": "WhatsApp Web Gateway API",
            "version": "1.0.0",
            "description": "Manage a WhatsApp Web session and send messages through it.",
        },
        "servers": [{"url": server_url or f"http://localhost:{PORT}", "description": "Development server"}],
        "components": {
            "schemas": schemas,
            "securitySchemes": {"basicAuth": {"type": "http", "scheme": "basic"}},
        },
        "paths": paths,
    }
