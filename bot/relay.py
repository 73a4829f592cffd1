"""Admission and processing core shared by the text and image paths.

Every heavy request goes through the same steps: rate check, single-flight
acquire, optional image queue, upstream call, single-flight release. The
collaborators are injected as narrow capabilities so the core can be tested
without Telegram or the network.
"""
import logging
import time
from contextlib import asynccontextmanager
from typing import Awaitable, Callable, Protocol

from bot.errors import AlreadyBusy, RateLimited, RelayError, UnknownError, UpstreamRejected
from bot.image_queue import ImageJob, JobResult
from bot.rate_limiter import RateLimitResult

logger = logging.getLogger(__name__)

TEXT_MESSAGE = "text_message"
IMAGE_PROCESSING = "image_processing"
SETTINGS_CHANGE = "settings_change"
COMMAND = "command"

DEFAULT_IMAGE_PROMPT = "Опиши изображение кратко. Если есть текст — распознай его."

AdmittedHook = Callable[[], Awaitable[None]]


class RateChecker(Protocol):
    def check(self, user_id: int, action: str) -> RateLimitResult: ...
    def reset_user(self, user_id: int, action: str | None = None) -> None: ...
    def reset_all(self) -> None: ...
    def add_vip(self, user_id: int) -> None: ...
    def remove_vip(self, user_id: int) -> None: ...
    def is_vip(self, user_id: int) -> bool: ...
    def user_info(self, user_id: int) -> dict[str, dict]: ...
    def cleanup(self) -> int: ...
    def stats(self) -> dict: ...


class SingleFlightGate(Protocol):
    def set_busy_check(self, check: Callable[[int], bool]) -> None: ...
    def is_active(self, user_id: int) -> bool: ...
    def try_acquire(self, user_id: int) -> bool: ...
    def token(self, user_id: int) -> int | None: ...
    def release(self, user_id: int, token: int | None = None) -> None: ...
    def reconcile(self) -> int: ...
    def active_count(self) -> int: ...
    def shutdown(self) -> None: ...


class ImageQueue(Protocol):
    def is_processing_for_user(self, user_id: int) -> bool: ...
    def active_jobs_for_user(self, user_id: int) -> int: ...
    async def submit(self, job: ImageJob, work: Callable[[], Awaitable[str]]) -> JobResult: ...
    def clear_stale_jobs(self, max_age: float = ...) -> int: ...
    def stats(self) -> dict: ...
    def health(self) -> dict: ...
    async def shutdown(self) -> None: ...


class UpstreamCaller(Protocol):
    async def complete(self, messages: list[dict], model: str) -> str: ...


class HistoryProvider(Protocol):
    def get(self, user_id: int) -> list[dict]: ...
    def append(self, user_id: int, message: dict) -> None: ...
    def reset(self, user_id: int) -> None: ...
    def __len__(self) -> int: ...


class SettingsStore(Protocol):
    def get_user_model(self, user_id: int) -> str: ...
    def get_system_prompt(self, user_id: int) -> str: ...


class RelayCore:
    def __init__(
        self,
        rate_limiter: RateChecker,
        gate: SingleFlightGate,
        images: ImageQueue,
        upstream: UpstreamCaller,
        history: HistoryProvider,
        settings: SettingsStore,
    ):
        self.rate_limiter = rate_limiter
        self.gate = gate
        self.images = images
        self.upstream = upstream
        self.history = history
        self.settings = settings
        self.gate.set_busy_check(images.is_processing_for_user)

    def check_rate(self, user_id: int, action: str):
        """Raise :class:`RateLimited` when ``action`` is over its limit."""
        result = self.rate_limiter.check(user_id, action)
        if not result.allowed:
            raise RateLimited(result.reason or "Слишком много запросов", result.reset_at, result.blocked_until)
        return result

    @asynccontextmanager
    async def heavy_request(self, user_id: int, action: str):
        # No await between the checks and the acquire
        self.check_rate(user_id, action)
        if not self.gate.try_acquire(user_id):
            raise AlreadyBusy(f"User {user_id} already has a request in flight")
        token = self.gate.token(user_id)
        try:
            yield
        finally:
            self.gate.release(user_id, token)

    def _conversation(self, user_id: int, last_turn: dict | None = None) -> list[dict]:
        messages = [{"role": "system", "content": self.settings.get_system_prompt(user_id)}]
        messages.extend(self.history.get(user_id))
        if last_turn is not None:
            messages.append(last_turn)
        return messages

    async def submit_text(self, user_id: int, text: str, on_admitted: AdmittedHook | None = None) -> str:
        async with self.heavy_request(user_id, TEXT_MESSAGE):
            if on_admitted is not None:
                await on_admitted()
            self.history.append(user_id, {"role": "user", "content": text})
            model = self.settings.get_user_model(user_id)
            reply = await self.upstream.complete(self._conversation(user_id), model)
            self.history.append(user_id, {"role": "assistant", "content": reply})
            return reply

    async def submit_image(
        self,
        job: ImageJob,
        load_payload: Callable[[], Awaitable[str]] | None = None,
        on_admitted: AdmittedHook | None = None,
    ) -> str:
        """Analyse one image. ``load_payload`` fetches the data URL after admission."""
        async with self.heavy_request(job.user_id, IMAGE_PROCESSING):
            if on_admitted is not None:
                await on_admitted()
            if load_payload is not None:
                job.payload = await load_payload()
            if not job.payload:
                raise UnknownError("Image payload is empty")

            caption = job.caption.strip()
            image_turn = {
                "role": "user",
                "content": [
                    {"type": "text", "text": caption or DEFAULT_IMAGE_PROMPT},
                    {"type": "image_url", "image_url": {"url": job.payload}},
                ],
            }
            messages = self._conversation(job.user_id, image_turn)
            model = self.settings.get_user_model(job.user_id)

            result = await self.images.submit(job, lambda: self.upstream.complete(messages, model))
            if not result.success:
                raise _job_failure(result) from result.last_error

            self.history.append(job.user_id, {
                "role": "user",
                "content": "(изображение) " + (caption or "изображение без подписи"),
            })
            self.history.append(job.user_id, {"role": "assistant", "content": result.result})
            return result.result

    def user_stats(self, user_id: int) -> dict:
        """Per-user view for the /stats and /debug commands."""
        return {
            "model": self.settings.get_user_model(user_id),
            "history_length": len(self.history.get(user_id)),
            "vip": self.rate_limiter.is_vip(user_id),
            "busy": self.gate.is_active(user_id),
            "image_jobs": self.images.active_jobs_for_user(user_id),
            "limits": self.rate_limiter.user_info(user_id),
        }

    def user_limits(self, user_id: int) -> dict[str, dict]:
        return self.rate_limiter.user_info(user_id)

    def reset_history(self, user_id: int):
        self.history.reset(user_id)

    # Admin

    def reset_limits(self, user_id: int | None = None):
        if user_id is None:
            self.rate_limiter.reset_all()
        else:
            self.rate_limiter.reset_user(user_id)

    def add_vip(self, user_id: int):
        self.rate_limiter.add_vip(user_id)

    def remove_vip(self, user_id: int):
        self.rate_limiter.remove_vip(user_id)

    def clear_stale_jobs(self, max_age: float | None = None) -> int:
        if max_age is None:
            return self.images.clear_stale_jobs()
        return self.images.clear_stale_jobs(max_age)

    def stats(self) -> dict:
        image_stats = self.images.stats()
        upstream_stats = self.upstream.stats() if hasattr(self.upstream, "stats") else {}
        return {
            "active_requests": self.gate.active_count(),
            "upstream": upstream_stats,
            "queue_depth": upstream_stats.get("queue_length", 0),
            "images": image_stats,
            "success_rate": image_stats["success_rate"],
            "average_latency": image_stats["average_processing_time"],
            "rate_limits": self.rate_limiter.stats(),
            "users_in_memory": len(self.history),
            "timestamp": time.time(),
        }

    async def shutdown(self):
        await self.images.shutdown()
        self.gate.shutdown()
        logger.info("Relay core stopped")


def _job_failure(result: JobResult) -> RelayError:
    """Rebuild the last attempt's failure with the consolidated job message."""
    error = result.last_error
    if isinstance(error, UpstreamRejected):
        return UpstreamRejected(error.status, error.body)
    if isinstance(error, RelayError) and not isinstance(error, RateLimited):
        return type(error)(result.error)
    return UnknownError(result.error)
