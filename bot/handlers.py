"""Telegram bot handlers."""
import asyncio
import logging
import time

from telegram import InlineKeyboardButton, InlineKeyboardMarkup, Message, Update
from telegram.error import TelegramError
from telegram.ext import ContextTypes

import db
from config import (
    ADMIN_IDS,
    AVAILABLE_MODELS,
    BUSY_NOTICE_TTL_SECONDS,
    SLOW_REQUEST_NOTICE_SECONDS,
)
from bot.errors import AlreadyBusy, RateLimited, RelayError, friendly_message
from bot.image_queue import ImageJob
from bot.paginator import PaginationStore, ResponsePaginator
from bot.relay import COMMAND, IMAGE_PROCESSING, SETTINGS_CHANGE, TEXT_MESSAGE, RelayCore
from bot.telegram_files import ImageValidationError, fetch_image_data_url

logger = logging.getLogger(__name__)

CB_PAGE = r"^page:(prev|next):(-?\d+):(\d+)$"
CB_CLOSE = r"^close:(-?\d+):(\d+)$"
CB_MODEL = r"^model:(.+)$"
CB_RESET = r"^reset:(confirm|cancel):(\d+)$"

HELP_TEXT = (
    "ℹ️ *Справка*\n\n"
    "• Просто напишите сообщение — я отвечу через OpenRouter.\n"
    "• Отправьте фото с подписью — опишу или распознаю текст (нужна модель с 📸).\n"
    "• /model — выбрать модель\n"
    "• /prompt `текст` — задать системный промпт, /prompt reset — сбросить\n"
    "• /reset — очистить историю диалога\n"
    "• /stats — ваша статистика и лимиты, /debug — диагностика\n\n"
    "Одновременно обрабатывается только один запрос, длинные ответы листаются кнопками."
)


def _core(context: ContextTypes.DEFAULT_TYPE) -> RelayCore:
    return context.bot_data["core"]


def _paginator(context: ContextTypes.DEFAULT_TYPE) -> ResponsePaginator:
    return context.bot_data["paginator"]


def _pages(context: ContextTypes.DEFAULT_TYPE) -> PaginationStore:
    return context.bot_data["pages"]


def _kb_pagination(total: int, current: int, chat_id: int, message_id: int) -> InlineKeyboardMarkup:
    nav = []
    if current > 0:
        nav.append(InlineKeyboardButton("⬅️ Назад", callback_data=f"page:prev:{chat_id}:{message_id}"))
    nav.append(InlineKeyboardButton(f"{current + 1}/{total}", callback_data=f"close:{chat_id}:{message_id}"))
    if current < total - 1:
        nav.append(InlineKeyboardButton("Далее ➡️", callback_data=f"page:next:{chat_id}:{message_id}"))
    return InlineKeyboardMarkup([nav])


def _kb_reset(user_id: int) -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup([[
        InlineKeyboardButton("✅ Да, очистить", callback_data=f"reset:confirm:{user_id}"),
        InlineKeyboardButton("❌ Отмена", callback_data=f"reset:cancel:{user_id}"),
    ]])


def _kb_models(current: str) -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup([
        [InlineKeyboardButton(
            f"✅ {m['name']}" if m["id"] == current else m["name"],
            callback_data=f"model:{m['id']}",
        )]
        for m in AVAILABLE_MODELS
    ])


async def _rate_check(update: Update, context: ContextTypes.DEFAULT_TYPE, action: str) -> bool:
    """Return True if request is throttled (caller should return early)."""
    try:
        _core(context).check_rate(update.effective_user.id, action)
        return False
    except RateLimited as e:
        text = friendly_message(e, time.time())

    if update.callback_query:
        await update.callback_query.answer(text, show_alert=True)
    else:
        await context.bot.send_message(chat_id=update.effective_chat.id, text=text)
    return True


async def _safe_edit(context, chat_id: int, message_id: int, text: str, reply_markup=None) -> bool:
    try:
        await context.bot.edit_message_text(
            text=text, chat_id=chat_id, message_id=message_id, reply_markup=reply_markup,
        )
        return True
    except TelegramError as e:
        logger.debug("edit_message_text failed: %s", e)
        return False


async def _safe_delete(context, chat_id: int, message_id: int):
    try:
        await context.bot.delete_message(chat_id=chat_id, message_id=message_id)
    except TelegramError as e:
        logger.debug("delete_message failed: %s", e)


async def _delete_later(context, chat_id: int, message_id: int, delay: float):
    await asyncio.sleep(delay)
    await _safe_delete(context, chat_id, message_id)


async def _reject_busy(update: Update, context: ContextTypes.DEFAULT_TYPE, exc: AlreadyBusy):
    chat_id = update.effective_chat.id
    # Drop the rejected message so the chat never shows an unanswered request
    await _safe_delete(context, chat_id, update.effective_message.message_id)
    notice = await context.bot.send_message(chat_id=chat_id, text=friendly_message(exc))
    context.application.create_task(
        _delete_later(context, chat_id, notice.message_id, BUSY_NOTICE_TTL_SECONDS)
    )


async def _slow_notice(context, status: Message):
    await asyncio.sleep(SLOW_REQUEST_NOTICE_SECONDS)
    await _safe_edit(
        context, status.chat_id, status.message_id,
        "⏳ Запрос занимает больше времени обычного. Пожалуйста, подождите ещё немного...",
    )


async def send_answer(context: ContextTypes.DEFAULT_TYPE, status: Message, answer: str):
    """Replace the status message with the (possibly paginated) answer."""
    paginator = _paginator(context)
    store = _pages(context)
    pages = paginator.paginate(paginator.format(answer))
    chat_id, message_id = status.chat_id, status.message_id

    if len(pages) == 1:
        store.delete(chat_id, message_id)
        if not await _safe_edit(context, chat_id, message_id, pages[0]):
            await _safe_delete(context, chat_id, message_id)
            await context.bot.send_message(chat_id=chat_id, text=pages[0])
        return

    store.save(chat_id, message_id, pages)
    kb = _kb_pagination(len(pages), 0, chat_id, message_id)
    if await _safe_edit(context, chat_id, message_id, pages[0], reply_markup=kb):
        return

    logger.info("Editing paginated answer failed, sending a new message")
    store.delete(chat_id, message_id)
    await _safe_delete(context, chat_id, message_id)
    sent = await context.bot.send_message(chat_id=chat_id, text=pages[0])
    store.save(chat_id, sent.message_id, pages)
    await _safe_edit(
        context, chat_id, sent.message_id, pages[0],
        reply_markup=_kb_pagination(len(pages), 0, chat_id, sent.message_id),
    )


async def _report_failure(update: Update, context, status: Message | None, exc: Exception):
    if isinstance(exc, RelayError):
        logger.warning("Request from user %s failed: %s", update.effective_user.id, exc)
        text = friendly_message(exc, time.time())
    elif isinstance(exc, ImageValidationError):
        text = f"📦 {exc}"
    else:
        logger.exception("Unexpected error for user %s: %s", update.effective_user.id, exc)
        text = "🚨 Произошла внутренняя ошибка. Попробуйте еще раз позже."

    if status is None or not await _safe_edit(context, status.chat_id, status.message_id, text):
        await context.bot.send_message(chat_id=update.effective_chat.id, text=text)


# Commands

async def cmd_start(update: Update, context: ContextTypes.DEFAULT_TYPE):
    if await _rate_check(update, context, COMMAND):
        return
    await update.message.reply_text(
        f"👋 Привет! Я отвечаю с помощью моделей OpenRouter.\n\n{HELP_TEXT}",
        parse_mode="Markdown",
    )


async def cmd_help(update: Update, context: ContextTypes.DEFAULT_TYPE):
    if await _rate_check(update, context, COMMAND):
        return
    await update.message.reply_text(HELP_TEXT, parse_mode="Markdown")


async def cmd_reset(update: Update, context: ContextTypes.DEFAULT_TYPE):
    if await _rate_check(update, context, COMMAND):
        return
    user_id = update.effective_user.id
    await update.message.reply_text(
        "🗑 Очистить историю диалога? Бот забудет весь предыдущий контекст.",
        reply_markup=_kb_reset(user_id),
    )


async def callback_reset(update: Update, context: ContextTypes.DEFAULT_TYPE):
    query = update.callback_query
    action, owner = context.matches[0].groups()
    if int(owner) != update.effective_user.id:
        await query.answer("Эта кнопка недоступна.")
        return

    if action == "cancel":
        await query.answer("Отменено")
        await query.edit_message_text("↩️ Сброс истории отменён.")
        return

    _core(context).reset_history(update.effective_user.id)
    _pages(context).clear_chat(update.effective_chat.id)
    await query.answer("История успешно сброшена.")
    await query.edit_message_text("✅ История диалога очищена. Начнём с чистого листа!")


def _limit_line(label: str, item: dict | None) -> str:
    if item is None:
        return f"• {label}: 0/0"
    blocked = " 🚫" if item["blocked"] else ""
    return f"• {label}: {item['current']}/{item['max']}{blocked}"


async def cmd_stats(update: Update, context: ContextTypes.DEFAULT_TYPE):
    if await _rate_check(update, context, COMMAND):
        return
    stats = _core(context).user_stats(update.effective_user.id)
    limits = stats["limits"]
    await update.message.reply_text("\n".join([
        "📊 Ваша статистика:",
        "",
        f"💭 В истории: {stats['history_length']} сообщений",
        f"🧠 Текущая модель: {stats['model']}",
        f"⭐ VIP статус: {'Активен' if stats['vip'] else 'Неактивен'}",
        "",
        "⏱️ Лимиты (текущий/максимум):",
        _limit_line("Сообщения", limits.get(TEXT_MESSAGE)),
        _limit_line("Изображения", limits.get(IMAGE_PROCESSING)),
        _limit_line("Команды", limits.get(COMMAND)),
    ]))


async def cmd_debug(update: Update, context: ContextTypes.DEFAULT_TYPE):
    if await _rate_check(update, context, COMMAND):
        return
    user_id = update.effective_user.id
    stats = _core(context).user_stats(user_id)
    limits = stats["limits"]
    await update.message.reply_text("\n".join([
        "🔍 Диагностическая информация:",
        "",
        f"• Пользователь: {user_id}",
        f"• Модель: {stats['model']}",
        f"• История: {stats['history_length']} сообщений",
        f"• VIP статус: {'✅' if stats['vip'] else '❌'}",
        f"• Активный запрос: {'да' if stats['busy'] else 'нет'}",
        f"• Изображений в обработке: {stats['image_jobs']}",
        "",
        "⏱️ Rate limits:",
        _limit_line("Текст", limits.get(TEXT_MESSAGE)),
        _limit_line("Изображения", limits.get(IMAGE_PROCESSING)),
        _limit_line("Команды", limits.get(COMMAND)),
        "",
        "💡 При проблемах дождитесь окончания предыдущего запроса "
        "и отправляйте изображения в JPEG или PNG.",
    ]))



async def cmd_model(update: Update, context: ContextTypes.DEFAULT_TYPE):
    if await _rate_check(update, context, COMMAND):
        return
    current = db.get_user_model(update.effective_user.id)
    await update.message.reply_text("🧠 Выберите модель:", reply_markup=_kb_models(current))


async def callback_select_model(update: Update, context: ContextTypes.DEFAULT_TYPE):
    query = update.callback_query
    if await _rate_check(update, context, SETTINGS_CHANGE):
        return
    model_id = context.matches[0].group(1)
    model = next((m for m in AVAILABLE_MODELS if m["id"] == model_id), None)
    if model is None:
        await query.answer("❌ Недопустимая модель")
        return

    db.set_user_model(update.effective_user.id, model_id)
    support = "📸 Поддерживает изображения!" if model["supports_images"] else "📝 Только текстовые сообщения"
    await query.answer(f"✅ Модель изменена на {model['name']}")
    await query.edit_message_text(
        f"🧠 Текущая модель: {model['name']}\n{support}",
        reply_markup=_kb_models(model_id),
    )


async def cmd_prompt(update: Update, context: ContextTypes.DEFAULT_TYPE):
    user_id = update.effective_user.id
    if not context.args:
        if await _rate_check(update, context, COMMAND):
            return
        await update.message.reply_text(f"📝 Системный промпт:\n\n{db.get_system_prompt(user_id)}")
        return

    if await _rate_check(update, context, SETTINGS_CHANGE):
        return
    if context.args == ["reset"]:
        db.reset_system_prompt(user_id)
        await update.message.reply_text("✅ Системный промпт сброшен до значения по умолчанию.")
        return

    prompt = " ".join(context.args)
    if len(prompt) > 2000:
        await update.message.reply_text("❌ Промпт слишком длинный (максимум 2000 символов).")
        return
    db.set_system_prompt(user_id, prompt)
    await update.message.reply_text("✅ Системный промпт обновлён.")


# Messages

async def on_text(update: Update, context: ContextTypes.DEFAULT_TYPE):
    message = update.effective_message
    text = (message.text or "").strip()
    if not text:
        return

    core = _core(context)
    status: Message | None = None
    slow_task: asyncio.Task | None = None

    async def admitted():
        nonlocal status, slow_task
        status = await message.reply_text("⏳ Генерирую ответ...")
        slow_task = asyncio.create_task(_slow_notice(context, status))

    try:
        answer = await core.submit_text(update.effective_user.id, text, on_admitted=admitted)
        slow_task.cancel()
        await send_answer(context, status, answer)
    except AlreadyBusy as e:
        await _reject_busy(update, context, e)
    except Exception as e:
        await _report_failure(update, context, status, e)
    finally:
        if slow_task:
            slow_task.cancel()


async def on_photo(update: Update, context: ContextTypes.DEFAULT_TYPE):
    message = update.effective_message
    user_id = update.effective_user.id

    model = db.get_user_model(user_id)
    if not db.model_supports_images(model):
        await _safe_delete(context, message.chat_id, message.message_id)
        await context.bot.send_message(
            chat_id=message.chat_id,
            text="❌ Текущая модель не поддерживает изображения.\n\n"
                 "💡 Переключитесь на модель с 📸 через /model.",
        )
        return

    photo = message.photo[-1]
    job = ImageJob(
        user_id=user_id,
        chat_id=message.chat_id,
        message_id=message.message_id,
        file_id=photo.file_id,
        caption=message.caption or "",
    )
    status: Message | None = None

    async def admitted():
        nonlocal status
        status = await message.reply_text(
            "🖼️ Получил изображение! Обрабатываю в фоне...\n⚡ Бот остается активным для других команд"
        )

    try:
        answer = await _core(context).submit_image(
            job,
            load_payload=lambda: fetch_image_data_url(context.bot, photo.file_id),
            on_admitted=admitted,
        )
        await send_answer(context, status, answer)
    except AlreadyBusy as e:
        await _reject_busy(update, context, e)
    except Exception as e:
        await _report_failure(update, context, status, e)


async def on_unsupported_media(update: Update, context: ContextTypes.DEFAULT_TYPE):
    message = update.effective_message
    await _safe_delete(context, message.chat_id, message.message_id)
    await context.bot.send_message(
        chat_id=message.chat_id,
        text="❌ Поддерживаются только изображения и текст.\n\n"
             "💡 Отправьте фото для анализа или текстовое сообщение.",
    )


# Pagination

async def callback_page(update: Update, context: ContextTypes.DEFAULT_TYPE):
    query = update.callback_query
    direction, chat_id, message_id = context.matches[0].groups()
    chat_id, message_id = int(chat_id), int(message_id)

    store = _pages(context)
    if store.get(chat_id, message_id) is None:
        await query.answer("Данные не найдены.")
        return

    state = store.navigate(chat_id, message_id, direction)
    if state is None:
        await query.answer("Дальнейших страниц нет.")
        return

    await query.answer()
    await query.edit_message_text(
        state.page,
        reply_markup=_kb_pagination(len(state.pages), state.current_index, chat_id, message_id),
    )


async def callback_close_pages(update: Update, context: ContextTypes.DEFAULT_TYPE):
    query = update.callback_query
    chat_id, message_id = (int(x) for x in context.matches[0].groups())
    _pages(context).delete(chat_id, message_id)
    await query.answer()
    try:
        await query.edit_message_reply_markup(reply_markup=None)
    except TelegramError as e:
        logger.debug("Removing pagination keyboard failed: %s", e)


# Admin

def _is_admin(update: Update) -> bool:
    return update.effective_user is not None and update.effective_user.id in ADMIN_IDS


def _target_user(context: ContextTypes.DEFAULT_TYPE) -> int | None:
    if context.args and context.args[0].lstrip("-").isdigit():
        return int(context.args[0])
    return None


async def cmd_admin(update: Update, context: ContextTypes.DEFAULT_TYPE):
    if not _is_admin(update):
        return
    stats = _core(context).stats()
    upstream, images, limits = stats["upstream"], stats["images"], stats["rate_limits"]
    paginator = _paginator(context).stats()
    await update.message.reply_text(
        "📊 Статистика\n\n"
        f"Активных запросов: {stats['active_requests']}\n"
        f"Очередь OpenRouter: {stats['queue_depth']} "
        f"(выполняется {upstream.get('current_requests', 0)})\n"
        f"Запросов OpenRouter: {upstream.get('total_requests', 0)}, "
        f"успешных {upstream.get('success_rate', 100)}%\n\n"
        f"Изображений: {images['total_processed']} "
        f"(успешно {images['success_rate']}%, в работе {images['active_jobs']})\n"
        f"Среднее время: {images['average_processing_time']:.1f}с\n\n"
        f"Пользователей в лимитах: {limits['total_users']}, "
        f"заблокировано: {limits['blocked_users']}, VIP: {limits['vip_users']}\n"
        f"Пользователей с историей: {stats['users_in_memory']}\n"
        f"Страниц в памяти: {len(_pages(context))}, "
        f"кэш форматирования: {paginator['format_cache_size']}, "
        f"кэш разбиения: {paginator['split_cache_size']}"
    )


async def cmd_limits(update: Update, context: ContextTypes.DEFAULT_TYPE):
    if not _is_admin(update):
        return
    target = _target_user(context)
    if target is None:
        await update.message.reply_text("Использование: /limits <user_id>")
        return
    info = _core(context).user_limits(target)
    lines = [f"👥 Лимиты пользователя {target}:"]
    for action, item in info.items():
        blocked = " 🚫" if item["blocked"] else ""
        lines.append(f"• {action}: {item['current']}/{item['max']}, нарушений {item['violations']}{blocked}")
    await update.message.reply_text("\n".join(lines))


async def cmd_reset_limits(update: Update, context: ContextTypes.DEFAULT_TYPE):
    if not _is_admin(update):
        return
    core = _core(context)
    if context.args == ["all"]:
        core.reset_limits()
        await update.message.reply_text("🔓 Лимиты всех пользователей сброшены.")
        return
    target = _target_user(context)
    if target is None:
        await update.message.reply_text("Использование: /resetlimits <user_id|all>")
        return
    core.reset_limits(target)
    await update.message.reply_text(f"🔓 Лимиты пользователя {target} сброшены.")


async def cmd_vip(update: Update, context: ContextTypes.DEFAULT_TYPE):
    if not _is_admin(update):
        return
    target = _target_user(context)
    if target is None:
        await update.message.reply_text("Использование: /vip <user_id>")
        return
    _core(context).add_vip(target)
    await update.message.reply_text(f"⭐ Пользователь {target} добавлен в VIP.")


async def cmd_unvip(update: Update, context: ContextTypes.DEFAULT_TYPE):
    if not _is_admin(update):
        return
    target = _target_user(context)
    if target is None:
        await update.message.reply_text("Использование: /unvip <user_id>")
        return
    _core(context).remove_vip(target)
    await update.message.reply_text(f"❌ Пользователь {target} убран из VIP.")


async def cmd_clear_stale(update: Update, context: ContextTypes.DEFAULT_TYPE):
    if not _is_admin(update):
        return
    cleared = _core(context).clear_stale_jobs()
    _paginator(context).clear_caches()
    await update.message.reply_text(f"🧹 Очищено зависших задач: {cleared}, кэши ответов сброшены.")
