"""Per-organization token/cost accounting in redis.

Counters are period-bucketed keys (``usage:{org}:day:{YYYYMMDD}:cost`` and
friends) that expire on their own, so a new day or month starts from zero
without a reset job. Increments run in one MULTI/EXEC transaction.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from redis.exceptions import RedisError

from review_rag.errors import BudgetExceeded

logger = logging.getLogger(__name__)

DAY_TTL = 60 * 60 * 48
MONTH_TTL = 60 * 60 * 24 * 32


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class UsageBudget:
    org_id: str
    daily_spent_usd: float = 0.0
    monthly_spent_usd: float = 0.0
    daily_tokens: int = 0
    monthly_tokens: int = 0
    inflight: int = 0
    daily_ceiling_usd: Optional[float] = None
    monthly_ceiling_usd: Optional[float] = None

    @property
    def daily_remaining_usd(self) -> float:
        if self.daily_ceiling_usd is None:
            return math.inf
        return self.daily_ceiling_usd - self.daily_spent_usd

    @property
    def monthly_remaining_usd(self) -> float:
        if self.monthly_ceiling_usd is None:
            return math.inf
        return self.monthly_ceiling_usd - self.monthly_spent_usd


class UsageLedger:
    def __init__(
        self,
        redis,
        daily_budget_usd: Optional[float] = None,
        monthly_budget_usd: Optional[float] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.r = redis
        self.daily_budget_usd = daily_budget_usd
        self.monthly_budget_usd = monthly_budget_usd
        self._clock = clock

    def _keys(self, org_id: str) -> dict:
        now = self._clock()
        day = f"usage:{org_id}:day:{now:%Y%m%d}"
        month = f"usage:{org_id}:month:{now:%Y%m}"
        return {
            "day_cost": f"{day}:cost",
            "day_tokens": f"{day}:tokens",
            "month_cost": f"{month}:cost",
            "month_tokens": f"{month}:tokens",
            "inflight": f"usage:{org_id}:inflight",
        }

    async def increment(self, org_id: str, tokens: int, cost_usd: float) -> None:
        keys = self._keys(org_id)
        async with self.r.pipeline(transaction=True) as pipe:
            pipe.incrbyfloat(keys["day_cost"], cost_usd)
            pipe.incrby(keys["day_tokens"], tokens)
            pipe.expire(keys["day_cost"], DAY_TTL)
            pipe.expire(keys["day_tokens"], DAY_TTL)
            pipe.incrbyfloat(keys["month_cost"], cost_usd)
            pipe.incrby(keys["month_tokens"], tokens)
            pipe.expire(keys["month_cost"], MONTH_TTL)
            pipe.expire(keys["month_tokens"], MONTH_TTL)
            await pipe.execute()
        logger.debug("Ledger %s += %d tokens, %.6f USD", org_id, tokens, cost_usd)

    async def budget_remaining(self, org_id: str) -> UsageBudget:
        keys = self._keys(org_id)
        values = await self.r.mget(
            keys["day_cost"],
            keys["month_cost"],
            keys["day_tokens"],
            keys["month_tokens"],
            keys["inflight"],
        )
        day_cost, month_cost, day_tokens, month_tokens, inflight = values
        return UsageBudget(
            org_id=org_id,
            daily_spent_usd=float(day_cost or 0),
            monthly_spent_usd=float(month_cost or 0),
            daily_tokens=int(day_tokens or 0),
            monthly_tokens=int(month_tokens or 0),
            inflight=int(inflight or 0),
            daily_ceiling_usd=self.daily_budget_usd,
            monthly_ceiling_usd=self.monthly_budget_usd,
        )

    async def check_budget(self, org_id: str) -> None:
        """Advisory pre-check; raises BudgetExceeded once a ceiling is reached.

        Concurrent callers may all pass before any of them increments, so a
        period can overshoot by a few calls. An unreachable redis fails open.
        """
        if self.daily_budget_usd is None and self.monthly_budget_usd is None:
            return
        try:
            budget = await self.budget_remaining(org_id)
        except RedisError as e:
            logger.warning("Budget check skipped for %s, ledger unreachable: %s", org_id, e)
            return
        if budget.monthly_remaining_usd <= 0:
            raise BudgetExceeded(org_id, "monthly", budget.monthly_spent_usd, budget.monthly_ceiling_usd)
        if budget.daily_remaining_usd <= 0:
            raise BudgetExceeded(org_id, "daily", budget.daily_spent_usd, budget.daily_ceiling_usd)

    async def acquire_inflight(self, org_id: str) -> None:
        try:
            await self.r.incr(self._keys(org_id)["inflight"])
        except RedisError as e:
            logger.warning("Inflight counter not updated for %s: %s", org_id, e)

    async def release_inflight(self, org_id: str) -> None:
        try:
            await self.r.decr(self._keys(org_id)["inflight"])
        except RedisError as e:
            logger.warning("Inflight counter not updated for %s: %s", org_id, e)
