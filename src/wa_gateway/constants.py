"""WhatsApp Web URLs, CSS selectors, session state groups, and media types."""

# ── URLs ─────────────────────────────────────────────────────────────────────

WHATSAPP_WEB_URL = "https://web.whatsapp.com"
WHATSAPP_SEND_URL = f"{WHATSAPP_WEB_URL}/send"  # ?phone=<digits>
MAPS_URL = "https://maps.google.com/?q={latitude},{longitude}"

# ── Session state groups ─────────────────────────────────────────────────────

# States in which a second start() is rejected
ACTIVE_STATES = frozenset({"starting", "qrRead", "isLogged", "chatsAvailable"})

# States in which messages may be sent
CONNECTED_STATES = frozenset({"isLogged", "chatsAvailable"})

# Status callbacks that mean the browser session is gone
DISCONNECT_STATES = frozenset({"notLogged", "browserClose", "desconnectedMobile", "deleteToken"})

# Extra status strings some automation clients report
STATUS_ALIASES = {
    "successChat": "chatsAvailable",
    "autocloseCalled": "browserClose",
}

CONNECTION_STATE_CONNECTED = "CONNECTED"
CONNECTION_STATE_UNPAIRED = "UNPAIRED"
CONNECTION_STATE_CLOSED = "CLOSED"

# ── Real-time events ─────────────────────────────────────────────────────────

EVENT_STATUS_UPDATE = "status_update"
EVENT_QR_CODE = "qr_code"

# ── Media ────────────────────────────────────────────────────────────────────

MEDIA_TYPES = ("image", "video", "document", "audio", "sticker")

CHAT_SUFFIX = "@c.us"

# ── CSS Selectors ────────────────────────────────────────────────────────────

SELECTORS = {
    # Pairing screen
    "qr_canvas": [
        'canvas[aria-label="Scan this QR code to link a device!"]',
        'canvas[aria-label*="QR"]',
        '[data-testid="qrcode"] canvas',
        "div[data-ref] canvas",
    ],

    # Logged-in shell
    "chat_list": [
        '[data-testid="chat-list"]',
        'div[aria-label="Chat list"]',
        "#pane-side",
        "#side",
    ],

    # Conversation
    "compose_box": [
        '[data-testid="conversation-compose-box-input"]',
        'footer div[contenteditable="true"][role="textbox"]',
        'div[contenteditable="true"][data-tab="10"]',
        '#main footer div[contenteditable="true"]',
    ],
    "send_button": [
        '[data-testid="send"]',
        'button[aria-label="Send"]',
        'span[data-icon="send"]',
        'div[role="button"][aria-label="Send"]',
    ],
    "invalid_number_popup": 'div[data-testid="popup-controls-ok"]',

    # Attachments
    "attach_button": [
        '[data-testid="attach-menu-plus"]',
        'span[data-icon="plus"]',
        '[data-icon="clip"]',
        'button[aria-label="Attach"]',
    ],
    "file_input": 'input[type="file"]',
    "caption_input": [
        '[data-testid="media-caption-input-container"] [contenteditable="true"]',
        '[aria-label="Add a caption"]',
        'div[contenteditable="true"][data-tab="6"]',
    ],

    # Menu
    "menu_button": [
        '[data-testid="menu-bar-menu"]',
        'span[data-icon="menu"]',
        'div[aria-label="Menu"]',
    ],
    "logout_item": [
        'div[aria-label="Log out"]',
        'li:has-text("Log out")',
    ],
    "logout_confirm": [
        'div[data-testid="popup-controls-ok"]',
        'button:has-text("Log out")',
    ],
}
