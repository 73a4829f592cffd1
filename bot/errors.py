"""Typed failures raised by the admission and processing core."""
from datetime import datetime


class RelayError(Exception):
    """Base class for every failure the core surfaces to the transport layer."""


class RateLimited(RelayError):
    def __init__(self, reason: str, reset_at: float, blocked_until: float | None = None):
        super().__init__(reason)
        self.reason = reason
        self.reset_at = reset_at
        self.blocked_until = blocked_until


class AlreadyBusy(RelayError):
    """Another heavy request is in flight for this user."""


class UpstreamError(RelayError):
    pass


class UpstreamTransient(UpstreamError):
    """5xx, 429, network or timeout failure. Retried before surfacing."""


class UpstreamRejected(UpstreamError):
    def __init__(self, status: int, body: str = ""):
        super().__init__(f"Upstream rejected request: {status} {body}".strip())
        self.status = status
        self.body = body


class UpstreamMalformed(UpstreamError):
    """Response did not match the expected chat-completion shape."""


class EmptyResponse(UpstreamError):
    """Response was valid but carried no text."""


class OperationTimeout(RelayError):
    pass


class ShuttingDown(RelayError):
    pass


class UnknownError(RelayError):
    pass


_GENERIC = "⚠️ Не удалось получить ответ. Попробуйте ещё раз чуть позже."


def _clock(ts: float) -> str:
    return datetime.fromtimestamp(ts).strftime("%H:%M:%S")


def friendly_message(exc: BaseException, now: float | None = None) -> str:
    """Map a failure to user-facing text. Never leaks upstream bodies."""
    if isinstance(exc, RateLimited):
        lines = [f"⏳ {exc.reason}"]
        if now is not None and exc.reset_at > now:
            lines.append(f"⏰ Попробуйте через {int(exc.reset_at - now) + 1} секунд")
        if exc.blocked_until:
            lines.append(f"🚫 Разблокировка в {_clock(exc.blocked_until)}")
        return "\n".join(lines)
    if isinstance(exc, AlreadyBusy):
        return (
            "⏳ Дождитесь окончания обработки предыдущего запроса. "
            "Одновременно можно обрабатывать только один запрос."
        )
    if isinstance(exc, UpstreamRejected):
        if exc.status == 401:
            return "❌ Ошибка авторизации в OpenRouter. Проверьте API-ключ и доступы."
        if exc.status == 403 or "not available in your region" in exc.body:
            return "🔧 Сервер не работает в данный момент. Попробуйте зайти позже."
        return f"❌ Сервис отклонил запрос (код {exc.status})."
    if isinstance(exc, (UpstreamMalformed, EmptyResponse)):
        return _GENERIC
    if isinstance(exc, OperationTimeout):
        return "⏰ Обработка заняла слишком много времени. Попробуйте ещё раз."
    if isinstance(exc, ShuttingDown):
        return "🛑 Бот перезапускается. Повторите запрос через минуту."
    message = str(exc)
    return f"❌ Ошибка: {message or 'неизвестная ошибка'}"
