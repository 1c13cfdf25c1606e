"""Application configuration loaded from environment variables."""

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

# Paths
DATA_DIR = Path(os.getenv("DATA_DIR", Path.cwd() / "data"))
TOKENS_DIR = Path(os.getenv("TOKENS_DIR", DATA_DIR / "tokens"))
STATIC_DIR = Path(os.getenv("STATIC_DIR", Path.cwd() / "public"))
# Local files /send/media may upload; anything outside is refused
MEDIA_DIR = Path(os.getenv("MEDIA_DIR", DATA_DIR / "media"))

# Session
SESSION_NAME = os.getenv("SESSION_NAME", "whatsapp-session")

# HTTP server
GATEWAY_HOST = os.getenv("GATEWAY_HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "3000"))
CORS_ORIGIN = os.getenv("CORS_ORIGIN", "*")
ENVIRONMENT = os.getenv("ENVIRONMENT", "development")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Credentials for /login and the API docs
ADMIN_USERNAME = os.getenv("ADMIN_USERNAME") or None
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD") or None

# Browser
BROWSER_HEADLESS = os.getenv("BROWSER_HEADLESS", "true").lower() == "true"
BROWSER_TIMEOUT = int(os.getenv("BROWSER_TIMEOUT", "30000"))
QR_TIMEOUT_MS = int(os.getenv("QR_TIMEOUT_MS", "60000"))
QR_POLL_INTERVAL = float(os.getenv("QR_POLL_INTERVAL", "2.0"))

# Broadcasting / media
OBSERVER_QUEUE_SIZE = int(os.getenv("OBSERVER_QUEUE_SIZE", "32"))
MEDIA_DOWNLOAD_TIMEOUT = float(os.getenv("MEDIA_DOWNLOAD_TIMEOUT", "30.0"))


def is_production() -> bool:
    return ENVIRONMENT.lower() == "production"


def ensure_dirs():
    """Create required data directories if they don't exist."""
    DATA_DIR.mkdir(parents=True, exist_ok=True)
    TOKENS_DIR.mkdir(parents=True, exist_ok=True)
    MEDIA_DIR.mkdir(parents=True, exist_ok=True)
