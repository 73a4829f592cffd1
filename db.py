"""SQLite storage for per-user settings (model, system prompt)."""
import sqlite3
from pathlib import Path
from datetime import datetime, timezone

from config import AVAILABLE_MODELS, OPENROUTER_MODEL, SYSTEM_PROMPT

DB_PATH = Path(__file__).parent / "data" / "bot.db"


def _ensure_db_dir():
    DB_PATH.parent.mkdir(parents=True, exist_ok=True)


def get_connection():
    _ensure_db_dir()
    conn = sqlite3.connect(str(DB_PATH), timeout=10)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    return conn


def init_db():
    conn = get_connection()
    try:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS user_settings (
                user_id INTEGER PRIMARY KEY,
                model TEXT,
                system_prompt TEXT,
                updated_at TEXT NOT NULL
            );
        """)
        conn.commit()
    finally:
        conn.close()


def _upsert(user_id: int, column: str, value: str | None):
    conn = get_connection()
    try:
        conn.execute(
            f"INSERT INTO user_settings (user_id, {column}, updated_at) VALUES (?, ?, ?) "
            f"ON CONFLICT(user_id) DO UPDATE SET {column} = excluded.{column}, "
            "updated_at = excluded.updated_at",
            (user_id, value, datetime.now(timezone.utc).isoformat()),
        )
        conn.commit()
    finally:
        conn.close()


def get_user_settings(user_id: int) -> dict:
    conn = get_connection()
    try:
        row = conn.execute(
            "SELECT model, system_prompt FROM user_settings WHERE user_id = ?",
            (user_id,),
        ).fetchone()
    finally:
        conn.close()
    return {
        "model": (row["model"] if row else None) or OPENROUTER_MODEL,
        "system_prompt": (row["system_prompt"] if row else None) or SYSTEM_PROMPT,
    }


def get_user_model(user_id: int) -> str:
    return get_user_settings(user_id)["model"]


def get_system_prompt(user_id: int) -> str:
    return get_user_settings(user_id)["system_prompt"]


def set_user_model(user_id: int, model: str):
    if model not in {m["id"] for m in AVAILABLE_MODELS}:
        raise ValueError(f"Unknown model: {model}")
    _upsert(user_id, "model", model)


def set_system_prompt(user_id: int, prompt: str):
    _upsert(user_id, "system_prompt", prompt.strip() or None)


def reset_system_prompt(user_id: int):
    _upsert(user_id, "system_prompt", None)


def model_supports_images(model: str) -> bool:
    return any(m["id"] == model and m["supports_images"] for m in AVAILABLE_MODELS)
