import re
from types import SimpleNamespace

import pytest
from telegram.error import BadRequest

from bot import handlers
from bot.admission import SingleFlightAdmission
from bot.history import HistoryStore
from bot.image_queue import ImageProcessor
from bot.paginator import PaginationStore, ResponsePaginator
from bot.rate_limiter import RateLimiter
from bot.relay import RelayCore


class FakeBot:
    def __init__(self, fail_edits=False):
        self.fail_edits = fail_edits
        self.edits = []
        self.sent = []
        self.deleted = []

    async def edit_message_text(self, text, chat_id, message_id, reply_markup=None):
        if self.fail_edits:
            raise BadRequest("Message to edit not found")
        self.edits.append((chat_id, message_id, text, reply_markup))

    async def send_message(self, chat_id, text, **kwargs):
        self.sent.append((chat_id, text))
        return SimpleNamespace(chat_id=chat_id, message_id=500 + len(self.sent))

    async def delete_message(self, chat_id, message_id):
        self.deleted.append((chat_id, message_id))


def make_context(bot, max_page_length=20):
    return SimpleNamespace(
        bot=bot,
        bot_data={
            "paginator": ResponsePaginator(max_page_length=max_page_length),
            "pages": PaginationStore(),
        },
    )


STATUS = SimpleNamespace(chat_id=1, message_id=10)


@pytest.mark.asyncio
async def test_single_page_answer_replaces_status():
    bot = FakeBot()
    context = make_context(bot)

    await handlers.send_answer(context, STATUS, "✨ short answer")

    assert bot.edits == [(1, 10, "short answer", None)]
    assert len(context.bot_data["pages"]) == 0


@pytest.mark.asyncio
async def test_long_answer_is_paginated_on_status_message():
    bot = FakeBot()
    context = make_context(bot)

    await handlers.send_answer(context, STATUS, "aaaa bbbb cccc dddd e")

    chat_id, message_id, text, markup = bot.edits[0]
    assert (chat_id, message_id, text) == (1, 10, "aaaa bbbb cccc dddd")
    buttons = markup.inline_keyboard[0]
    assert [b.text for b in buttons] == ["1/2", "Далее ➡️"]
    assert buttons[1].callback_data == "page:next:1:10"
    assert context.bot_data["pages"].get(1, 10).pages == ["aaaa bbbb cccc dddd", "e"]


@pytest.mark.asyncio
async def test_failed_edit_falls_back_to_new_message():
    bot = FakeBot(fail_edits=True)
    context = make_context(bot)

    await handlers.send_answer(context, STATUS, "aaaa bbbb cccc dddd e")

    assert bot.deleted == [(1, 10)]
    assert bot.sent == [(1, "aaaa bbbb cccc dddd")]
    store = context.bot_data["pages"]
    assert store.get(1, 10) is None
    assert store.get(1, 501).pages == ["aaaa bbbb cccc dddd", "e"]


def test_pagination_keyboard_on_middle_page():
    markup = handlers._kb_pagination(3, 1, 1, 10)
    assert [b.text for b in markup.inline_keyboard[0]] == ["⬅️ Назад", "2/3", "Далее ➡️"]


class FakeQuery:
    def __init__(self):
        self.answers = []
        self.edits = []

    async def answer(self, text=None, show_alert=False):
        self.answers.append(text)

    async def edit_message_text(self, text, reply_markup=None):
        self.edits.append(text)


class FakeMessage:
    def __init__(self):
        self.replies = []

    async def reply_text(self, text, **kwargs):
        self.replies.append((text, kwargs))


def make_update(user_id=1, query=None, message=None):
    return SimpleNamespace(
        effective_user=SimpleNamespace(id=user_id),
        effective_chat=SimpleNamespace(id=user_id),
        callback_query=query,
        message=message,
    )


def make_core(settings):
    return RelayCore(
        rate_limiter=RateLimiter(),
        gate=SingleFlightAdmission(),
        images=ImageProcessor(),
        upstream=SimpleNamespace(),
        history=HistoryStore(),
        settings=settings,
    )


def callback_context(core, data):
    context = make_context(FakeBot())
    context.bot_data["core"] = core
    context.matches = [re.match(handlers.CB_RESET, data)]
    return context


@pytest.mark.asyncio
async def test_reset_asks_for_confirmation_first(settings):
    core = make_core(settings)
    core.history.append(1, {"role": "user", "content": "hi"})
    context = make_context(FakeBot())
    context.bot_data["core"] = core
    message = FakeMessage()

    await handlers.cmd_reset(make_update(message=message), context)

    text, kwargs = message.replies[0]
    buttons = kwargs["reply_markup"].inline_keyboard[0]
    assert [b.callback_data for b in buttons] == ["reset:confirm:1", "reset:cancel:1"]
    assert len(core.history.get(1)) == 1


@pytest.mark.asyncio
async def test_reset_confirm_clears_history_and_pages(settings):
    core = make_core(settings)
    core.history.append(1, {"role": "user", "content": "hi"})
    context = callback_context(core, "reset:confirm:1")
    context.bot_data["pages"].save(1, 10, ["a", "b"])
    query = FakeQuery()

    await handlers.callback_reset(make_update(query=query), context)

    assert core.history.get(1) == []
    assert len(context.bot_data["pages"]) == 0
    assert "очищена" in query.edits[0]


@pytest.mark.asyncio
async def test_reset_cancel_and_foreign_button_keep_history(settings):
    core = make_core(settings)
    core.history.append(1, {"role": "user", "content": "hi"})

    query = FakeQuery()
    await handlers.callback_reset(make_update(query=query), callback_context(core, "reset:cancel:1"))
    assert "отменён" in query.edits[0]

    query = FakeQuery()
    await handlers.callback_reset(make_update(user_id=2, query=query), callback_context(core, "reset:confirm:1"))
    assert query.answers == ["Эта кнопка недоступна."]
    assert query.edits == []

    assert len(core.history.get(1)) == 1


@pytest.mark.asyncio
async def test_user_stats_command_shows_own_limits(settings):
    core = make_core(settings)
    core.add_vip(1)
    context = make_context(FakeBot())
    context.bot_data["core"] = core
    message = FakeMessage()

    await handlers.cmd_stats(make_update(message=message), context)

    text = message.replies[0][0]
    assert "x-ai/grok-4-fast:free" in text
    assert "Активен" in text
    assert "• Сообщения: 0/30" in text
    assert "• Команды: 0/20" in text


@pytest.mark.asyncio
async def test_debug_command_reports_busy_state(settings):
    core = make_core(settings)
    core.gate.try_acquire(1)
    context = make_context(FakeBot())
    context.bot_data["core"] = core
    message = FakeMessage()

    await handlers.cmd_debug(make_update(message=message), context)

    text = message.replies[0][0]
    assert "• Пользователь: 1" in text
    assert "• Активный запрос: да" in text
    assert "• VIP статус: ❌" in text
    core.gate.shutdown()
