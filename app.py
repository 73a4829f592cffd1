"""Flask app with Telegram webhook, health endpoints and the relay core."""
import asyncio
import atexit
import logging
import random
import threading
import time

from flask import Flask, request, jsonify
from telegram import Update
from telegram.error import RetryAfter
from telegram.ext import (
    Application,
    CallbackQueryHandler,
    CommandHandler,
    MessageHandler,
    filters,
)

import config
import db
from bot import handlers
from bot.admission import SingleFlightAdmission
from bot.history import HistoryStore
from bot.image_queue import ImageProcessor
from bot.maintenance import run_maintenance
from bot.paginator import PaginationStore, ResponsePaginator
from bot.rate_limiter import RateLimiter
from bot.relay import RelayCore
from bot.upstream import UpstreamClient

logging.basicConfig(
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    level=logging.INFO,
)
logger = logging.getLogger(__name__)

MAX_WEBHOOK_PAYLOAD = 64 * 1024  # 64 KB
STARTED_AT = time.time()

# Flask app
app = Flask(__name__)

# Telegram bot application
tg_application: Application | None = None
core: RelayCore | None = None

# Persistent event loop for PTB
_ptb_loop: asyncio.AbstractEventLoop | None = None
_ptb_loop_thread: threading.Thread | None = None
_maintenance_future = None


def _run_ptb_loop():
    global _ptb_loop
    _ptb_loop = asyncio.new_event_loop()
    asyncio.set_event_loop(_ptb_loop)
    _ptb_loop.run_forever()


def _run_async(coro):
    future = asyncio.run_coroutine_threadsafe(coro, _ptb_loop)
    return future.result()


def _log_update_failure(future):
    if not future.cancelled() and future.exception() is not None:
        logger.error("Update processing failed: %s", future.exception())


def build_core() -> RelayCore:
    return RelayCore(
        rate_limiter=RateLimiter(),
        gate=SingleFlightAdmission(),
        images=ImageProcessor(),
        upstream=UpstreamClient(config.OPENROUTER_API_KEY),
        history=HistoryStore(),
        settings=db,
    )


def build_application(relay: RelayCore) -> Application:
    application = (
        Application.builder()
        .token(config.TELEGRAM_BOT_TOKEN)
        .concurrent_updates(True)
        .build()
    )
    application.bot_data["core"] = relay
    application.bot_data["paginator"] = ResponsePaginator()
    application.bot_data["pages"] = PaginationStore()

    private = filters.ChatType.PRIVATE
    application.add_handler(CommandHandler("start", handlers.cmd_start, filters=private))
    application.add_handler(CommandHandler("help", handlers.cmd_help, filters=private))
    application.add_handler(CommandHandler("reset", handlers.cmd_reset, filters=private))
    application.add_handler(CommandHandler("model", handlers.cmd_model, filters=private))
    application.add_handler(CommandHandler("prompt", handlers.cmd_prompt, filters=private))
    application.add_handler(CommandHandler("stats", handlers.cmd_stats, filters=private))
    application.add_handler(CommandHandler("debug", handlers.cmd_debug, filters=private))
    application.add_handler(CommandHandler("admin", handlers.cmd_admin, filters=private))
    application.add_handler(CommandHandler("limits", handlers.cmd_limits, filters=private))
    application.add_handler(CommandHandler("resetlimits", handlers.cmd_reset_limits, filters=private))
    application.add_handler(CommandHandler("vip", handlers.cmd_vip, filters=private))
    application.add_handler(CommandHandler("unvip", handlers.cmd_unvip, filters=private))
    application.add_handler(CommandHandler("clearstale", handlers.cmd_clear_stale, filters=private))
    application.add_handler(CallbackQueryHandler(handlers.callback_page, pattern=handlers.CB_PAGE))
    application.add_handler(CallbackQueryHandler(handlers.callback_close_pages, pattern=handlers.CB_CLOSE))
    application.add_handler(CallbackQueryHandler(handlers.callback_select_model, pattern=handlers.CB_MODEL))
    application.add_handler(CallbackQueryHandler(handlers.callback_reset, pattern=handlers.CB_RESET))
    application.add_handler(MessageHandler(private & filters.TEXT & ~filters.COMMAND, handlers.on_text))
    application.add_handler(MessageHandler(private & filters.PHOTO, handlers.on_photo))
    application.add_handler(MessageHandler(
        private & (filters.Document.ALL | filters.VIDEO | filters.AUDIO | filters.VOICE | filters.Sticker.ALL),
        handlers.on_unsupported_media,
    ))

    return application


def init_bot():
    global tg_application, core, _ptb_loop_thread, _maintenance_future

    db.init_db()

    _ptb_loop_thread = threading.Thread(target=_run_ptb_loop, daemon=True)
    _ptb_loop_thread.start()
    time.sleep(0.1)

    core = build_core()
    tg_application = build_application(core)
    application = tg_application

    _run_async(application.initialize())
    _maintenance_future = asyncio.run_coroutine_threadsafe(run_maintenance(core), _ptb_loop)
    atexit.register(shutdown_bot)

    if config.WEBHOOK_URL:
        webhook_url = f"{config.WEBHOOK_URL}/webhook"
        # Stagger set_webhook to avoid Telegram flood on restarts
        time.sleep(random.uniform(0, 2))
        for attempt in range(3):
            try:
                _run_async(application.bot.set_webhook(
                    url=webhook_url,
                    secret_token=config.WEBHOOK_SECRET,
                ))
                logger.info("Webhook set: %s", webhook_url)
                break
            except RetryAfter as e:
                if attempt < 2:
                    delay = e.retry_after + 0.5
                    logger.warning("Telegram flood limit, retry in %.0fs", delay)
                    time.sleep(delay)
                else:
                    logger.exception("Webhook set failed after retries: %s", e)
                    raise
    else:
        logger.warning("WEBHOOK_URL not set - webhook mode disabled")


def shutdown_bot():
    if _ptb_loop is None or core is None:
        return
    logger.info("Shutting down relay core...")
    if _maintenance_future is not None:
        _maintenance_future.cancel()
    try:
        _run_async(core.shutdown())
        _run_async(tg_application.shutdown())
    except Exception as e:
        logger.warning("Shutdown did not complete cleanly: %s", e)
    core.upstream.close()


async def _snapshot() -> dict:
    # Read admission state on the loop that owns it
    snapshot = core.stats()
    snapshot["pagination"] = {
        **tg_application.bot_data["paginator"].stats(),
        **tg_application.bot_data["pages"].stats(),
    }
    return snapshot


@app.route("/")
def index():
    return jsonify({
        "status": "ok",
        "bot": "OpenRouterRelay",
        "uptime": round(time.time() - STARTED_AT),
    })


@app.route("/health")
def health():
    if not core:
        return jsonify({"status": "starting"}), 503
    return jsonify({
        "status": "healthy",
        "uptime": round(time.time() - STARTED_AT),
        "images": core.images.health(),
    })


@app.route("/status")
def status():
    if not core:
        return jsonify({"status": "starting"}), 503
    return jsonify(_run_async(_snapshot()))


@app.route("/webhook", methods=["POST"])
def webhook():
    if not tg_application:
        return jsonify({"ok": False}), 500

    # Validate secret token (Telegram sends it in this header)
    token = request.headers.get("X-Telegram-Bot-Api-Secret-Token", "")
    if token != config.WEBHOOK_SECRET:
        return jsonify({"ok": False}), 403

    # Reject oversized payloads
    if request.content_length and request.content_length > MAX_WEBHOOK_PAYLOAD:
        return jsonify({"ok": False}), 413

    # Require JSON content type
    if not request.is_json:
        return jsonify({"ok": False}), 415

    try:
        data = request.get_json(silent=True)
        if not data:
            return jsonify({"ok": False}), 400
        update = Update.de_json(data, tg_application.bot)
        # Completions can take minutes; acknowledge the webhook right away
        future = asyncio.run_coroutine_threadsafe(tg_application.process_update(update), _ptb_loop)
        future.add_done_callback(_log_update_failure)
        return jsonify({"ok": True})
    except Exception as e:
        logger.exception("Webhook error: %s", e)
        return jsonify({"ok": False}), 500


# Initialize on module load (for gunicorn/Railway)
if config.TELEGRAM_BOT_TOKEN:
    init_bot()

if __name__ == "__main__":
    app.run(host="0.0.0.0", port=config.PORT)
