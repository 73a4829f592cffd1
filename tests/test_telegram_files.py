import base64
from types import SimpleNamespace

import pytest

from bot import telegram_files
from bot.telegram_files import ImageValidationError, detect_mime, to_data_url

PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 200


def test_png_becomes_data_url():
    url = to_data_url(PNG)
    assert url.startswith("data:image/png;base64,")
    assert base64.b64decode(url.split(",", 1)[1]) == PNG


def test_detect_mime():
    assert detect_mime(b"\xff\xd8\xff\xe0rest") == "image/jpeg"
    assert detect_mime(b"GIF89a") == "image/gif"
    assert detect_mime(b"%PDF-1.7") is None


@pytest.mark.parametrize("data", [b"\x89PNG", b"%PDF-1.7" + b"\x00" * 200])
def test_invalid_images_rejected(data):
    with pytest.raises(ImageValidationError):
        to_data_url(data)


def test_oversized_image_rejected(monkeypatch):
    monkeypatch.setattr(telegram_files, "IMAGE_MAX_BYTES", 150)
    with pytest.raises(ImageValidationError):
        to_data_url(PNG)


def test_retry_get_recovers_from_server_error(monkeypatch):
    responses = [SimpleNamespace(status_code=502), SimpleNamespace(status_code=200, content=PNG)]
    monkeypatch.setattr(telegram_files.requests, "get", lambda url, **kwargs: responses.pop(0))
    monkeypatch.setattr(telegram_files.time, "sleep", lambda seconds: None)

    assert telegram_files._retry_get("https://example.test/file").status_code == 200
    assert responses == []


@pytest.mark.asyncio
async def test_fetch_image_data_url(monkeypatch):
    class FakeBot:
        async def get_file(self, file_id):
            return SimpleNamespace(file_path=f"https://example.test/{file_id}")

    monkeypatch.setattr(telegram_files, "download_file", lambda url: PNG)

    url = await telegram_files.fetch_image_data_url(FakeBot(), "abc")
    assert url.startswith("data:image/png;base64,")
