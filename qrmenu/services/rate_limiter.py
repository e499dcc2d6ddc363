# qrmenu/services/rate_limiter.py
"""
Fixed-window rate limiting backed by the rate_limits table.

A counter row is (key, window_start, window_sec, count). When the window has
elapsed the next hit starts a fresh window. Check and increment run inside
one Database.transaction(), so concurrent requests cannot both take the last
slot.
"""
import logging
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Tuple

from qrmenu.core.errors import RateLimitExceeded
from qrmenu.db.database import Database, Transaction
from qrmenu.models.models import RateLimitResult
from qrmenu.utils.helpers import now

log = logging.getLogger(__name__)

HOUR = 3600
DAY = 24 * HOUR


@dataclass(frozen=True)
class RateRule:
    key: str
    limit: int
    window_sec: int


def whatsapp_rules(phone: str, per_hour: int, per_day: int) -> List[RateRule]:
    return [
        RateRule(f"whatsapp:phone:{phone}:hour", per_hour, HOUR),
        RateRule(f"whatsapp:phone:{phone}:day", per_day, DAY),
    ]


def fingerprint_rule(fp_hash: str, per_hour: int) -> RateRule:
    return RateRule(f"fingerprint:{fp_hash}:hour", per_hour, HOUR)


class RateLimiter:

    def __init__(self, db: Database, now_fn: Callable[[], int] = now):
        self.db = db
        self.now_fn = now_fn

    @staticmethod
    def _current(row, now_ts: int) -> Tuple[int, int]:
        """(count, window_end) for a counter row, treating elapsed windows as empty."""
        if row is None or row["window_start"] + row["window_sec"] <= now_ts:
            return 0, 0
        return row["count"], row["window_start"] + row["window_sec"]

    async def check(self, key: str, limit: int, window_sec: int) -> RateLimitResult:
        """Read-only view of a counter."""
        now_ts = self.now_fn()
        row = await self.db.fetchone("SELECT * FROM rate_limits WHERE key=?", (key,))
        count, window_end = self._current(row, now_ts)
        reset_at = window_end or now_ts + window_sec
        allowed = count < limit
        return RateLimitResult(
            allowed=allowed,
            remaining=max(0, limit - count),
            reset_at=reset_at,
            retry_after=0 if allowed else max(1, reset_at - now_ts),
        )

    @staticmethod
    async def _bump(tx: Transaction, key: str, window_sec: int, now_ts: int) -> None:
        await tx.exec(
            """INSERT INTO rate_limits(key, window_start, window_sec, count) VALUES(?,?,?,1)
               ON CONFLICT(key) DO UPDATE SET
                 count=CASE WHEN window_start + window_sec <= excluded.window_start
                            THEN 1 ELSE count + 1 END,
                 window_start=CASE WHEN window_start + window_sec <= excluded.window_start
                                   THEN excluded.window_start ELSE window_start END,
                 window_sec=excluded.window_sec""",
            (key, now_ts, window_sec),
        )

    async def increment(self, key: str, window_sec: int) -> int:
        """Unconditional hit; returns the count in the current window."""
        now_ts = self.now_fn()
        async with self.db.transaction() as tx:
            await self._bump(tx, key, window_sec, now_ts)
            row = await tx.fetchone("SELECT count FROM rate_limits WHERE key=?", (key,))
        return row["count"]

    async def consume(self, rules: Iterable[RateRule]) -> RateLimitResult:
        """
        All-or-nothing: every counter is incremented only if every rule still
        has room. When denied nothing changes and retry_after is the longest
        wait among the exhausted rules.
        """
        rules = list(rules)
        now_ts = self.now_fn()
        async with self.db.transaction() as tx:
            state = []
            for rule in rules:
                row = await tx.fetchone("SELECT * FROM rate_limits WHERE key=?", (rule.key,))
                count, window_end = self._current(row, now_ts)
                state.append((rule, count, window_end or now_ts + rule.window_sec))

            denied = [(r, end) for r, count, end in state if count >= r.limit]
            if denied:
                reset_at = max(end for _, end in denied)
                log.info("Rate limit hit: %s", ", ".join(r.key for r, _ in denied))
                return RateLimitResult(allowed=False, remaining=0, reset_at=reset_at,
                                       retry_after=max(1, reset_at - now_ts))

            for rule in rules:
                await self._bump(tx, rule.key, rule.window_sec, now_ts)

        if not state:
            return RateLimitResult(allowed=True, remaining=0, reset_at=now_ts)
        tightest = min(state, key=lambda s: s[0].limit - s[1])
        rule, count, reset_at = tightest
        return RateLimitResult(allowed=True, remaining=max(0, rule.limit - count - 1), reset_at=reset_at)

    async def hit(self, key: str, limit: int, window_sec: int) -> RateLimitResult:
        return await self.consume([RateRule(key, limit, window_sec)])

    async def enforce(self, rules: Iterable[RateRule], message: Optional[str] = None) -> RateLimitResult:
        """consume() that raises RateLimitExceeded when denied."""
        result = await self.consume(rules)
        if not result.allowed:
            raise RateLimitExceeded(result.retry_after, message)
        return result

    async def reset(self, key: str) -> None:
        await self.db.exec("DELETE FROM rate_limits WHERE key=?", (key,))

    async def cleanup(self) -> int:
        """Drop counters whose window has elapsed."""
        return await self.db.exec(
            "DELETE FROM rate_limits WHERE window_start + window_sec <= ?", (self.now_fn(),)
        )
