"""Per-user single-flight gate for heavy requests (text completion, image analysis)."""
import asyncio
import itertools
import logging
import time
from dataclasses import dataclass
from typing import Callable

from config import EMERGENCY_UNLOCK_SECONDS

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Slot:
    token: int
    deadline: float


class SingleFlightAdmission:
    """Owns the active-request registry: user_id -> :class:`Slot`.

    ``try_acquire`` checks and sets without suspending, so it is race-free on
    a single event loop. Each acquisition gets its own token; ``release`` and
    the emergency timer only clear the slot holding that token, so a late
    release from a force-unlocked request cannot free a newer one.
    ``reconcile`` is the periodic pass that drops slots past their deadline.
    """

    def __init__(
        self,
        busy_check: Callable[[int], bool] | None = None,
        safety_timeout: float = EMERGENCY_UNLOCK_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._busy_check = busy_check
        self.safety_timeout = safety_timeout
        self._clock = clock
        self._tokens = itertools.count(1)
        self._active: dict[int, Slot] = {}
        self._timers: dict[int, asyncio.TimerHandle] = {}

    def set_busy_check(self, check: Callable[[int], bool]):
        self._busy_check = check

    def is_active(self, user_id: int) -> bool:
        if user_id in self._active:
            return True
        return bool(self._busy_check and self._busy_check(user_id))

    def try_acquire(self, user_id: int) -> bool:
        if self.is_active(user_id):
            logger.info("Rejected heavy request from user %s: another request is active", user_id)
            return False

        slot = Slot(next(self._tokens), self._clock() + self.safety_timeout)
        self._active[user_id] = slot

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return True
        self._timers[user_id] = loop.call_later(
            self.safety_timeout, self._emergency_release, user_id, slot.token
        )
        return True

    def token(self, user_id: int) -> int | None:
        slot = self._active.get(user_id)
        return slot.token if slot else None

    def release(self, user_id: int, token: int | None = None):
        """Free the user's slot; with ``token``, only if it is still that acquisition."""
        slot = self._active.get(user_id)
        if slot is None:
            return
        if token is not None and slot.token != token:
            logger.info("Ignoring stale release for user %s", user_id)
            return
        del self._active[user_id]
        timer = self._timers.pop(user_id, None)
        if timer is not None:
            timer.cancel()

    def _emergency_release(self, user_id: int, token: int):
        slot = self._active.get(user_id)
        if slot is None or slot.token != token:
            return
        logger.warning("Emergency unlock for user %s (timeout %ds)", user_id, self.safety_timeout)
        del self._active[user_id]
        self._timers.pop(user_id, None)

    def reconcile(self) -> int:
        now = self._clock()
        expired = [uid for uid, slot in self._active.items() if now >= slot.deadline]
        for uid in expired:
            logger.warning("Emergency unlock for user %s (deadline passed)", uid)
            self.release(uid)
        return len(expired)

    def active_count(self) -> int:
        return len(self._active)

    def shutdown(self):
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        self._active.clear()
