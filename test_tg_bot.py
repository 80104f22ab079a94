import asyncio
import threading
from types import SimpleNamespace

import tg_bot
from errors import EngineUnavailable
from ocr import RecognitionResult


def _update(replies):
    async def reply_text(text, **kwargs):
        replies.append(text)
    return SimpleNamespace(message=SimpleNamespace(reply_text=reply_text))


def _context(photos):
    return SimpleNamespace(user_data={"photos": list(photos)}, chat_data={})


def test_scan_compresses_photos_off_the_event_loop(monkeypatch):
    threads = []

    def compress(data):
        threads.append(threading.current_thread())
        return data + b"-small"

    async def fake_ocr(images, timeout=None):
        assert images == [b"one-small", b"two-small"]
        return RecognitionResult("Burger 12.50\nTotal 12.50", 90.0)

    monkeypatch.setattr(tg_bot, "compress_image", compress)
    monkeypatch.setattr(tg_bot, "process_receipt_images", fake_ocr)
    replies = []
    context = _context([b"one", b"two"])

    state = asyncio.run(tg_bot.handle_scan(_update(replies), context))
    assert state == tg_bot.ASK_SPLIT_MODE
    assert threads and all(t is not threading.main_thread() for t in threads)
    assert context.chat_data["parsed"].total == 12.5
    assert context.user_data["photos"] == []


def test_scan_failure_asks_for_photos_again(monkeypatch):
    async def fake_ocr(images, timeout=None):
        raise EngineUnavailable("no tesseract here")

    monkeypatch.setattr(tg_bot, "compress_image", lambda data: data)
    monkeypatch.setattr(tg_bot, "process_receipt_images", fake_ocr)
    replies = []

    state = asyncio.run(tg_bot.handle_scan(_update(replies), _context([b"one"])))
    assert state == tg_bot.WAIT_RECEIPT
    assert "couldn't read" in replies[-1]
