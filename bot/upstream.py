"""OpenRouter chat-completions client with bounded concurrency and retry logic."""
import asyncio
import logging
from collections import deque
from typing import Any, Awaitable, Callable, Literal, TypeVar

import requests
from pydantic import BaseModel, Field, ValidationError

from config import (
    OPENROUTER_ENDPOINT,
    UPSTREAM_ATTEMPTS,
    UPSTREAM_BACKOFF_BASE,
    UPSTREAM_MAX_CONCURRENT,
    UPSTREAM_MAX_TOKENS,
    UPSTREAM_TEMPERATURE,
    UPSTREAM_TIMEOUT,
)
from bot.errors import (
    EmptyResponse,
    UpstreamMalformed,
    UpstreamRejected,
    UpstreamTransient,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ContentBlock(BaseModel):
    type: str
    text: str | None = None


class AssistantMessage(BaseModel):
    role: str
    content: str | list[ContentBlock]


class Choice(BaseModel):
    message: AssistantMessage


class CompletionResponse(BaseModel):
    choices: list[Choice] = Field(min_length=1)


class ChatTurn(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str | list[dict[str, Any]]


def extract_text(content: str | list[ContentBlock]) -> str:
    """Join text-typed blocks with newlines; plain strings pass through."""
    if isinstance(content, str):
        return content.strip()
    parts = [block.text for block in content if block.type == "text" and block.text]
    return "\n".join(parts).strip()


class FifoLimiter:
    """Runs at most ``limit`` operations at once, dispatching the rest FIFO."""

    def __init__(self, limit: int):
        self.limit = limit
        self.running = 0
        self._waiters: deque[asyncio.Future] = deque()

    @property
    def queue_length(self) -> int:
        return len(self._waiters)

    async def _acquire(self):
        if self.running < self.limit and not self._waiters:
            self.running += 1
            return
        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # Slot was handed over just before cancellation
                self._release()
            elif waiter in self._waiters:
                self._waiters.remove(waiter)
            raise

    def _release(self):
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                # Slot passes straight to the next caller; running stays the same
                waiter.set_result(None)
                return
        self.running -= 1

    async def run(self, operation: Callable[[], Awaitable[T]]) -> T:
        await self._acquire()
        try:
            return await operation()
        finally:
            self._release()


class UpstreamClient:
    def __init__(
        self,
        api_key: str,
        endpoint: str = OPENROUTER_ENDPOINT,
        max_concurrent: int = UPSTREAM_MAX_CONCURRENT,
        attempts: int = UPSTREAM_ATTEMPTS,
        timeout: float = UPSTREAM_TIMEOUT,
        backoff_base: float = UPSTREAM_BACKOFF_BASE,
        session: requests.Session | None = None,
    ):
        self.api_key = api_key
        self.endpoint = endpoint
        self.attempts = attempts
        self.timeout = timeout
        self.backoff_base = backoff_base
        self.session = session or requests.Session()
        self.limiter = FifoLimiter(max_concurrent)
        self.total_requests = 0
        self.total_errors = 0

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "X-Title": "AI Telegram Bot",
        }

    async def complete(self, messages: list[dict], model: str) -> str:
        """Send a conversation and return the assistant's text."""
        turns = [ChatTurn.model_validate(m).model_dump() for m in messages]
        payload = {
            "model": model,
            "messages": turns,
            "temperature": UPSTREAM_TEMPERATURE,
            "max_tokens": UPSTREAM_MAX_TOKENS,
        }
        return await self.limiter.run(lambda: self._complete_with_retry(payload))

    async def _complete_with_retry(self, payload: dict) -> str:
        last_error: Exception | None = None

        for attempt in range(1, self.attempts + 1):
            self.total_requests += 1
            logger.info("OpenRouter attempt %d (messages: %d) [active: %d]",
                        attempt, len(payload["messages"]), self.limiter.running)
            try:
                return await self._attempt(payload)
            except UpstreamRejected:
                self.total_errors += 1
                raise
            except Exception as e:
                self.total_errors += 1
                last_error = e
                logger.warning("OpenRouter attempt %d failed: %s", attempt, e)
                if attempt < self.attempts:
                    await asyncio.sleep(self.backoff_base * 2 ** (attempt - 1))

        message = f"Не удалось получить ответ от OpenRouter: {last_error}"
        if isinstance(last_error, (UpstreamMalformed, EmptyResponse)):
            raise type(last_error)(message) from last_error
        raise UpstreamTransient(message) from last_error

    def _post(self, payload: dict) -> requests.Response:
        return self.session.post(
            self.endpoint,
            json=payload,
            headers=self._headers(),
            timeout=self.timeout,
        )

    async def _attempt(self, payload: dict) -> str:
        try:
            resp = await asyncio.wait_for(asyncio.to_thread(self._post, payload), self.timeout)
        except asyncio.TimeoutError:
            raise UpstreamTransient(f"Request timed out after {self.timeout}s") from None
        except requests.RequestException as e:
            raise UpstreamTransient(f"Network error: {e}") from e

        if resp.status_code == 429 or resp.status_code >= 500:
            raise UpstreamTransient(f"Server returned status {resp.status_code}")
        if resp.status_code >= 400:
            logger.error("OpenRouter error %d: %s", resp.status_code, resp.text)
            raise UpstreamRejected(resp.status_code, resp.text)

        try:
            parsed = CompletionResponse.model_validate(resp.json())
        except (ValueError, ValidationError) as e:
            logger.error("Unexpected OpenRouter response: %s", e)
            raise UpstreamMalformed(f"Could not parse OpenRouter response: {e}") from e

        content = extract_text(parsed.choices[0].message.content)
        if not content:
            raise EmptyResponse("OpenRouter returned no content")
        return content

    def stats(self) -> dict:
        return {
            "total_requests": self.total_requests,
            "total_errors": self.total_errors,
            "current_requests": self.limiter.running,
            "queue_length": self.limiter.queue_length,
            "success_rate": (
                round((self.total_requests - self.total_errors) / self.total_requests * 100)
                if self.total_requests else 100
            ),
        }

    def close(self):
        self.session.close()

