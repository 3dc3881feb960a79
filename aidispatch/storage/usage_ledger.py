"""
Usage Ledger

Per-model, per-UTC-day counters of requests, tokens and cost. This is the
only source of truth for spend: the budget state is recomputed from it on
every request. Each increment is a single atomic operation in the store,
so concurrent requests against the same model never lose updates.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Tuple

from redis.asyncio import Redis

from aidispatch.core.exceptions import LedgerUnavailableError
from aidispatch.core.logging import get_logger
from aidispatch.models.cost import UsageRecord

logger = get_logger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class UsageStore(ABC):
    @abstractmethod
    async def increment(
        self, day: date, model_id: str, requests: int, tokens: int, cost: float
    ) -> UsageRecord:
        """Atomically add to the (model, day) record, creating it if absent."""

    @abstractmethod
    async def get(self, day: date, model_id: str) -> Optional[UsageRecord]:
        ...

    @abstractmethod
    async def list(self, day: date) -> List[UsageRecord]:
        ...

    async def aclose(self) -> None:
        pass


class InMemoryUsageStore(UsageStore):
    """Process-local store for tests and single-process deployments."""

    def __init__(self) -> None:
        self._rows: Dict[Tuple[date, str], UsageRecord] = {}
        self._lock = asyncio.Lock()

    async def increment(
        self, day: date, model_id: str, requests: int, tokens: int, cost: float
    ) -> UsageRecord:
        async with self._lock:
            row = self._rows.get((day, model_id))
            if row is None:
                row = UsageRecord(model_id=model_id, date=day)
                self._rows[(day, model_id)] = row
            row.request_count += requests
            row.token_count += tokens
            row.cost_accumulated += cost
            return row.model_copy()

    async def get(self, day: date, model_id: str) -> Optional[UsageRecord]:
        row = self._rows.get((day, model_id))
        return row.model_copy() if row else None

    async def list(self, day: date) -> List[UsageRecord]:
        return [r.model_copy() for (d, _), r in sorted(self._rows.items()) if d == day]


class RedisUsageStore(UsageStore):
    """
    One Redis hash per (day, model) plus a per-day index set.
    HINCRBY/HINCRBYFLOAT run in a MULTI pipeline; keys expire shortly after
    the UTC day boundary.
    """

    def __init__(self, redis: Redis, prefix: str = "aid:usage"):
        self._redis = redis
        self._prefix = prefix

    @classmethod
    def from_url(cls, redis_url: str) -> "RedisUsageStore":
        return cls(Redis.from_url(redis_url, decode_responses=True))

    def _day_key(self, day: date) -> str:
        return day.strftime("%Y%m%d")

    def _record_key(self, day: date, model_id: str) -> str:
        return f"{self._prefix}:{self._day_key(day)}:{model_id}"

    def _index_key(self, day: date) -> str:
        return f"{self._prefix}:{self._day_key(day)}:models"

    def _ttl_seconds(self, day: date) -> int:
        boundary = datetime.combine(day + timedelta(days=1), datetime.min.time(), tzinfo=timezone.utc)
        return max(int((boundary - utc_now()).total_seconds()), 0) + 3600

    @staticmethod
    def _to_record(day: date, model_id: str, raw: Dict[str, str]) -> UsageRecord:
        return UsageRecord(
            model_id=model_id,
            date=day,
            request_count=int(raw.get("requests", 0) or 0),
            token_count=int(raw.get("tokens", 0) or 0),
            cost_accumulated=float(raw.get("cost", 0.0) or 0.0),
        )

    async def increment(
        self, day: date, model_id: str, requests: int, tokens: int, cost: float
    ) -> UsageRecord:
        key = self._record_key(day, model_id)
        index = self._index_key(day)
        ttl = self._ttl_seconds(day)
        try:
            pipe = self._redis.pipeline(transaction=True)
            pipe.hincrby(key, "requests", requests)
            pipe.hincrby(key, "tokens", tokens)
            pipe.hincrbyfloat(key, "cost", cost)
            pipe.sadd(index, model_id)
            pipe.expire(key, ttl)
            pipe.expire(index, ttl)
            new_requests, new_tokens, new_cost, *_ = await pipe.execute()
        except Exception as e:
            raise LedgerUnavailableError(f"usage increment failed: {e}") from e

        return UsageRecord(
            model_id=model_id,
            date=day,
            request_count=int(new_requests),
            token_count=int(new_tokens),
            cost_accumulated=float(new_cost),
        )

    async def get(self, day: date, model_id: str) -> Optional[UsageRecord]:
        try:
            raw = await self._redis.hgetall(self._record_key(day, model_id))
        except Exception as e:
            raise LedgerUnavailableError(f"usage read failed: {e}") from e
        if not raw:
            return None
        return self._to_record(day, model_id, raw)

    async def list(self, day: date) -> List[UsageRecord]:
        try:
            model_ids = sorted(await self._redis.smembers(self._index_key(day)))
            if not model_ids:
                return []
            pipe = self._redis.pipeline(transaction=False)
            for model_id in model_ids:
                pipe.hgetall(self._record_key(day, model_id))
            rows = await pipe.execute()
        except Exception as e:
            raise LedgerUnavailableError(f"usage read failed: {e}") from e

        return [
            self._to_record(day, model_id, raw)
            for model_id, raw in zip(model_ids, rows)
            if raw
        ]

    async def health_check(self) -> bool:
        try:
            return bool(await self._redis.ping())
        except Exception:
            return False

    async def aclose(self) -> None:
        await self._redis.aclose()


class UsageLedger:
    def __init__(self, store: UsageStore, clock: Callable[[], datetime] = utc_now):
        self._store = store
        self._clock = clock

    def today(self) -> date:
        return self._clock().astimezone(timezone.utc).date()

    async def record(self, model_id: str, tokens: int, cost: float) -> Optional[UsageRecord]:
        """Count one request against today's record for model_id.

        A store failure is logged and swallowed: the backend call already
        succeeded and its answer is still returned to the caller.
        """
        try:
            row = await self._store.increment(self.today(), model_id, 1, max(tokens, 0), max(cost, 0.0))
        except LedgerUnavailableError as e:
            logger.warning("usage_record_failed", model=model_id, error=e.message)
            return None
        logger.debug(
            "usage_recorded",
            model=model_id,
            requests=row.request_count,
            cost=round(row.cost_accumulated, 6),
        )
        return row

    async def total_spent_today(self) -> float:
        rows = await self._store.list(self.today())
        return sum(r.cost_accumulated for r in rows)

    async def requests_today(self, model_id: str) -> int:
        row = await self._store.get(self.today(), model_id)
        return row.request_count if row else 0

    async def get(self, model_id: str, day: Optional[date] = None) -> Optional[UsageRecord]:
        return await self._store.get(day or self.today(), model_id)

    async def records(self, day: Optional[date] = None) -> List[UsageRecord]:
        return await self._store.list(day or self.today())

    async def aclose(self) -> None:
        await self._store.aclose()
