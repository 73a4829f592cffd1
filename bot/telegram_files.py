"""Download Telegram photos and turn them into data URLs for the upstream API."""
import asyncio
import base64
import logging
import time

import requests

from config import IMAGE_MAX_BYTES, RETRY_ATTEMPTS, RETRY_BACKOFF

logger = logging.getLogger(__name__)

# Magic-number prefixes of supported formats
IMAGE_SIGNATURES = {
    b"\xff\xd8\xff": "image/jpeg",
    b"\x89PNG": "image/png",
    b"GIF8": "image/gif",
    b"RIFF": "image/webp",
}
MIN_IMAGE_BYTES = 100


class ImageValidationError(ValueError):
    pass


def _retry_get(url: str) -> requests.Response:
    """GET with backoff on 5xx/timeout."""
    last_exc = None
    for attempt in range(RETRY_ATTEMPTS):
        try:
            resp = requests.get(url, timeout=30, headers={"User-Agent": "TelegramBot/1.0"})
            if 500 <= resp.status_code < 600:
                raise requests.RequestException(f"Server error: {resp.status_code}")
            return resp
        except requests.RequestException as e:
            last_exc = e
            if attempt < RETRY_ATTEMPTS - 1:
                delay = RETRY_BACKOFF[min(attempt, len(RETRY_BACKOFF) - 1)]
                logger.warning("File download failed (attempt %d), retry in %ds: %s", attempt + 1, delay, e)
                time.sleep(delay)
    raise last_exc


def detect_mime(data: bytes) -> str | None:
    for signature, mime in IMAGE_SIGNATURES.items():
        if data.startswith(signature):
            return mime
    return None


def to_data_url(data: bytes) -> str:
    """Validate image bytes and encode them as a base64 data URL."""
    if len(data) > IMAGE_MAX_BYTES:
        raise ImageValidationError(f"Файл слишком большой (максимум {IMAGE_MAX_BYTES // (1024 * 1024)}MB)")
    if len(data) < MIN_IMAGE_BYTES:
        raise ImageValidationError("Файл слишком маленький или поврежден")
    mime = detect_mime(data)
    if mime is None:
        raise ImageValidationError("Файл не является допустимым изображением")
    return f"data:{mime};base64,{base64.b64encode(data).decode('ascii')}"


def download_file(url: str) -> bytes:
    resp = _retry_get(url)
    resp.raise_for_status()
    return resp.content


async def fetch_image_data_url(bot, file_id: str) -> str:
    """Resolve ``file_id`` through the Bot API and download it off the loop."""
    start = time.monotonic()
    tg_file = await bot.get_file(file_id)
    data = await asyncio.to_thread(download_file, tg_file.file_path)
    data_url = to_data_url(data)
    logger.info("Image downloaded: %.1fKB in %.2fs", len(data) / 1024, time.monotonic() - start)
    return data_url
