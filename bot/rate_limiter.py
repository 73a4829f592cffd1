"""In-memory per-user rate limiter with temporary blocking and VIP bypass."""
import logging
import threading
import time
from dataclasses import dataclass

from config import RATE_RULES

logger = logging.getLogger(__name__)

GLOBAL = "global"


@dataclass(frozen=True)
class ActionRule:
    max_requests: int
    window_seconds: float
    block_seconds: float | None = None


@dataclass
class RateWindow:
    count: int
    window_reset_at: float
    blocked_until: float | None = None
    violations: int = 0


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: float
    blocked_until: float | None = None
    reason: str | None = None


def default_rules() -> dict[str, ActionRule]:
    return {action: ActionRule(*limits) for action, limits in RATE_RULES.items()}


class RateLimiter:
    """Fixed-window counters keyed by (user, action).

    A window that overflows records a violation and, if the rule says so,
    blocks the key until ``blocked_until``. Windows are created lazily and
    swept by :meth:`cleanup`.
    """

    def __init__(self, rules: dict[str, ActionRule] | None = None, clock=None):
        self._rules = dict(rules) if rules is not None else default_rules()
        self._clock = clock or time.time
        self._lock = threading.Lock()
        self._windows: dict[tuple[int, str], RateWindow] = {}
        self._vip: set[int] = set()

    def _rule(self, action: str) -> ActionRule:
        return self._rules.get(action) or self._rules[GLOBAL]

    def check(self, user_id: int, action: str = GLOBAL) -> RateLimitResult:
        now = self._clock()
        rule = self._rule(action)

        with self._lock:
            if user_id in self._vip:
                return RateLimitResult(True, rule.max_requests, now + rule.window_seconds)

            key = (user_id, action)
            window = self._windows.get(key)

            if window and window.blocked_until and now < window.blocked_until:
                return RateLimitResult(
                    allowed=False,
                    remaining=0,
                    reset_at=window.window_reset_at,
                    blocked_until=window.blocked_until,
                    reason=f"Заблокирован до {time.strftime('%H:%M:%S', time.localtime(window.blocked_until))}",
                )

            if window is None or now > window.window_reset_at:
                window = RateWindow(
                    count=0,
                    window_reset_at=now + rule.window_seconds,
                    violations=window.violations if window else 0,
                )
                self._windows[key] = window

            if window.count >= rule.max_requests:
                window.violations += 1
                if rule.block_seconds:
                    window.blocked_until = now + rule.block_seconds
                logger.info("Rate limit hit: user=%s action=%s violations=%d",
                            user_id, action, window.violations)
                return RateLimitResult(
                    allowed=False,
                    remaining=0,
                    reset_at=window.window_reset_at,
                    blocked_until=window.blocked_until,
                    reason=f"Превышен лимит: {rule.max_requests} запросов за {round(rule.window_seconds)} сек",
                )

            window.count += 1
            return RateLimitResult(
                allowed=True,
                remaining=rule.max_requests - window.count,
                reset_at=window.window_reset_at,
            )

    # Admin

    def add_vip(self, user_id: int):
        with self._lock:
            self._vip.add(user_id)

    def remove_vip(self, user_id: int):
        with self._lock:
            self._vip.discard(user_id)

    def is_vip(self, user_id: int) -> bool:
        return user_id in self._vip

    def reset_user(self, user_id: int, action: str | None = None):
        with self._lock:
            if action is not None:
                self._windows.pop((user_id, action), None)
                return
            for key in [k for k in self._windows if k[0] == user_id]:
                del self._windows[key]

    def reset_all(self):
        with self._lock:
            self._windows.clear()

    def update_rule(self, action: str, rule: ActionRule):
        with self._lock:
            rules = dict(self._rules)
            rules[action] = rule
            self._rules = rules

    def cleanup(self) -> int:
        """Drop expired windows that are not blocked. Returns count removed."""
        now = self._clock()
        with self._lock:
            stale = [
                k for k, w in self._windows.items()
                if now > w.window_reset_at and (not w.blocked_until or now > w.blocked_until)
            ]
            for k in stale:
                del self._windows[k]
        if stale:
            logger.info("Rate limit: cleaned up %d stale windows", len(stale))
        return len(stale)

    def user_info(self, user_id: int) -> dict[str, dict]:
        now = self._clock()
        info = {}
        with self._lock:
            for action, rule in self._rules.items():
                window = self._windows.get((user_id, action))
                info[action] = {
                    "current": window.count if window else 0,
                    "max": rule.max_requests,
                    "reset_at": window.window_reset_at if window else now + rule.window_seconds,
                    "blocked": bool(window and window.blocked_until and now < window.blocked_until),
                    "violations": window.violations if window else 0,
                }
        return info

    def stats(self) -> dict:
        now = self._clock()
        with self._lock:
            users = {user_id for user_id, _ in self._windows}
            blocked = sum(
                1 for w in self._windows.values() if w.blocked_until and now < w.blocked_until
            )
            violations = sum(w.violations for w in self._windows.values())
            return {
                "total_users": len(users),
                "blocked_users": blocked,
                "total_violations": violations,
                "vip_users": len(self._vip),
            }
