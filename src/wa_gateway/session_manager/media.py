"""Resolve media sources (URL, data: URL, local path) to files the browser can upload."""

from __future__ import annotations

import base64
import binascii
import logging
import mimetypes
import tempfile
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Optional
from urllib.parse import unquote_to_bytes

import httpx

from .. import config
from ..config import MEDIA_DOWNLOAD_TIMEOUT
from .errors import MediaSourceError

logger = logging.getLogger(__name__)


def is_remote(source: str) -> bool:
    return source.startswith(("http://", "https://"))


def decode_data_url(source: str) -> tuple[bytes, Optional[str]]:
    """Decode a ``data:[<mime>][;base64],<payload>`` URL into (bytes, mime)."""
    if not source.startswith("data:") or "," not in source:
        raise MediaSourceError("Not a data: URL.")
    header, payload = source[5:].split(",", 1)
    parts = header.split(";")
    mime = parts[0] or None
    if "base64" in parts[1:]:
        try:
            return base64.b64decode(payload, validate=True), mime
        except (binascii.Error, ValueError) as e:
            raise MediaSourceError(f"Invalid base64 payload: {e}") from e
    return unquote_to_bytes(payload), mime


def local_media_path(source: str, media_dir: Optional[Path] = None) -> Path:
    """Resolve a local source inside the media directory.

    Relative paths are taken from the media directory; absolute paths must
    already point inside it.
    """
    root = Path(media_dir or config.MEDIA_DIR).resolve()
    path = (root / Path(source).expanduser()).resolve()
    if not path.is_relative_to(root):
        raise MediaSourceError("Local media paths must be inside the media directory.")
    if not path.is_file():
        raise MediaSourceError(f"Media file not found: {source}")
    return path


def check_source(source: str, media_dir: Optional[Path] = None) -> None:
    """Reject a source before anything is sent; only local paths can be checked up front."""
    if is_remote(source) or source.startswith("data:"):
        return
    local_media_path(source, media_dir)


def _suffix_for(filename: str, mime: Optional[str]) -> str:
    suffix = Path(filename).suffix
    if suffix:
        return suffix
    if mime:
        return mimetypes.guess_extension(mime.split(";")[0].strip()) or ""
    return ""


async def download(url: str, timeout: float = MEDIA_DOWNLOAD_TIMEOUT) -> tuple[bytes, Optional[str]]:
    """Fetch a remote media file; returns (content, content-type)."""
    async with httpx.AsyncClient(follow_redirects=True, timeout=timeout) as client:
        try:
            response = await client.get(url)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise MediaSourceError(f"Download failed with HTTP {e.response.status_code}: {url}") from e
        except httpx.HTTPError as e:
            raise MediaSourceError(f"Download failed: {e}") from e
    logger.info(f"Downloaded {len(response.content)} bytes from {url}")
    return response.content, response.headers.get("content-type")


@asynccontextmanager
async def resolved_media(
    source: str, filename: str, media_dir: Optional[Path] = None
) -> AsyncIterator[Path]:
    """Yield a local path for ``source``; temporary files are removed afterwards."""
    if not is_remote(source) and not source.startswith("data:"):
        yield local_media_path(source, media_dir)
        return

    if is_remote(source):
        content, mime = await download(source)
    else:
        content, mime = decode_data_url(source)

    # Keep the requested file name so WhatsApp shows it on documents
    tmp_dir = Path(tempfile.mkdtemp(prefix="wa-media-"))
    name = Path(filename).name or "file"
    if not Path(name).suffix:
        name += _suffix_for(name, mime)
    path = tmp_dir / name
    path.write_bytes(content)
    try:
        yield path
    finally:
        path.unlink(missing_ok=True)
        try:
            tmp_dir.rmdir()
        except OSError as e:
            logger.warning(f"Could not remove temporary media dir {tmp_dir}: {e}")
