# limiter.py
import asyncio
import time
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional, Tuple

import db

logger = logging.getLogger(__name__)


class CodeStatus(Enum):
    DELIVERED = "delivered"
    TOO_SOON = "too_soon"
    NO_CODE_YET = "no_code_yet"
    QUOTA_EXHAUSTED = "quota_exhausted"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class CodeResult:
    status: CodeStatus
    code: Optional[str] = None
    remaining: Optional[int] = None
    retry_in: float = 0.0


def throttle_key(requester_id: int, account_key: str) -> str:
    return f"{requester_id}_{account_key}"


class ThrottleStore:
    """Last-attempt timestamps that drop themselves after ``window`` seconds."""

    def __init__(self, window: float, clock: Callable[[], float] = time.monotonic):
        self.window = float(window)
        self._clock = clock
        self._stamps: Dict[str, float] = {}

    def try_acquire(self, key: str) -> Tuple[bool, float]:
        """Check and record in one step. Returns (allowed, seconds_left)."""
        now = self._clock()
        last = self._stamps.get(key)
        if last is not None and now - last < self.window:
            return False, self.window - (now - last)
        self._stamps[key] = now
        self._schedule_expiry(key, now)
        return True, 0.0

    def _schedule_expiry(self, key: str, stamp: float):
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        loop.call_later(self.window, self._expire, key, stamp)

    def _expire(self, key: str, stamp: float):
        # a newer attempt owns the entry now
        if self._stamps.get(key) == stamp:
            del self._stamps[key]

    def __contains__(self, key: str) -> bool:
        return key in self._stamps

    def __len__(self) -> int:
        return len(self._stamps)


def _as_chance(value) -> int:
    try:
        return max(int(value), 0)
    except (TypeError, ValueError):
        return 0


class CodeLimiter:
    """Hands out sign-in codes: one mailbox search per cool-down, one chance per code."""

    def __init__(self, store, fetcher, throttle: ThrottleStore):
        self.store = store
        self.fetcher = fetcher
        self.throttle = throttle

    async def request_code(self, requester_id: int, account_key: str) -> CodeResult:
        credential = await db.get_credential(self.store, account_key)
        if not isinstance(credential, dict) or not credential.get("email"):
            logger.warning("No credential for %s (requested by %s)", account_key, requester_id)
            return CodeResult(CodeStatus.NOT_FOUND)

        chance_path = f"{db.subscription_path(requester_id, account_key)}/chance"
        if _as_chance(await self.store.get(chance_path)) <= 0:
            return CodeResult(CodeStatus.QUOTA_EXHAUSTED, remaining=0)

        # no await between check and record
        allowed, wait = self.throttle.try_acquire(throttle_key(requester_id, account_key))
        if not allowed:
            logger.info("Code request by %s for %s throttled (%.1fs left)", requester_id, account_key, wait)
            return CodeResult(CodeStatus.TOO_SOON, retry_in=wait)

        code = await self.fetcher.fetch_code(credential["email"])
        if not code:
            logger.info("No code yet for %s (requested by %s)", account_key, requester_id)
            return CodeResult(CodeStatus.NO_CODE_YET, remaining=_as_chance(await self.store.get(chance_path)))

        chance = _as_chance(await self.store.get(chance_path))
        if chance <= 0:
            return CodeResult(CodeStatus.QUOTA_EXHAUSTED, remaining=0)
        remaining = chance - 1
        await self.store.set(chance_path, remaining)
        logger.info("Code for %s delivered to %s, %s chances left", account_key, requester_id, remaining)
        return CodeResult(CodeStatus.DELIVERED, code=code, remaining=remaining)
