"""Configuration for the OpenRouter relay bot."""
import os
import uuid

TELEGRAM_BOT_TOKEN = os.environ.get("TELEGRAM_BOT_TOKEN", "")
WEBHOOK_URL = os.environ.get("WEBHOOK_URL", "").rstrip("/")
WEBHOOK_SECRET = os.environ.get("WEBHOOK_SECRET", "") or uuid.uuid4().hex
PORT = int(os.environ.get("PORT", 8080))

OPENROUTER_API_KEY = os.environ.get("OPENROUTER_API_KEY", "")
OPENROUTER_ENDPOINT = "https://openrouter.ai/api/v1/chat/completions"
OPENROUTER_MODEL = os.environ.get("OPENROUTER_MODEL", "x-ai/grok-4-fast:free")
SYSTEM_PROMPT = os.environ.get(
    "SYSTEM_PROMPT",
    "Отвечай простым текстом на русском. Запрещено: эмодзи, ASCII-рамки/разделители, "
    "markdown-заголовки и списки. Не добавляй лишних разделителей. Давай только суть.",
)

# Static admin allowlist, comma-separated Telegram user ids
ADMIN_IDS = frozenset(
    int(x) for x in os.environ.get("ADMIN_IDS", "").split(",") if x.strip().isdigit()
)

AVAILABLE_MODELS = [
    {"id": "x-ai/grok-4-fast:free", "name": "🚀 Grok 4 Fast (📸 с изображениями)", "supports_images": True},
    {"id": "deepseek/deepseek-chat-v3.1:free", "name": "🧠 DeepSeek Chat v3.1 (только текст)", "supports_images": False},
]

# Upstream client
UPSTREAM_MAX_CONCURRENT = 5
UPSTREAM_ATTEMPTS = 3
UPSTREAM_TIMEOUT = 120        # seconds, per attempt
UPSTREAM_BACKOFF_BASE = 0.4   # seconds, doubled per attempt
UPSTREAM_TEMPERATURE = 0.7
UPSTREAM_MAX_TOKENS = 800

# Image pipeline
IMAGE_MAX_CONCURRENT = 3
IMAGE_MAX_RETRIES = 2
IMAGE_TIMEOUT = 180           # seconds, per attempt
IMAGE_BACKOFF_BASE = 1.0
IMAGE_STALE_AFTER = 300
IMAGE_SHUTDOWN_GRACE = 30
IMAGE_MAX_BYTES = 10 * 1024 * 1024

# Retry config for Telegram file downloads
RETRY_ATTEMPTS = 3
RETRY_BACKOFF = [1, 2, 4]  # seconds

# Single-flight safety net: force-release a heavy request after 3 min
EMERGENCY_UNLOCK_SECONDS = 180
SLOW_REQUEST_NOTICE_SECONDS = 15
BUSY_NOTICE_TTL_SECONDS = 12

# Pagination
MAX_PAGE_LENGTH = 3500
FORMAT_CACHE_SIZE = 100

MAX_HISTORY_MESSAGES = 10
# Least recently active users are evicted from memory past this many
MAX_USERS_IN_MEMORY = 1000

# Rate limits per action: (max requests, window seconds, block seconds or None)
RATE_RULES = {
    "text_message":     (30, 60, 300),
    "image_processing": (10, 300, 600),
    "settings_change":  (5, 60, 60),
    "command":          (20, 60, None),
    "global":           (50, 3600, 1800),
}

# Maintenance loop
MAINTENANCE_INTERVAL = 30
CLEANUP_EVERY_N_CYCLES = 20
