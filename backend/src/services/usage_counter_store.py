"""
UsageCounterStore: atomic per-tenant, per-feature, per-period counters.

increment_if_under_limit() is a single conditional UPDATE:

    UPDATE usage_counters
       SET count = count + :amount
     WHERE tenant_id = :t AND feature = :f AND period_id = :p
       AND count + :amount <= :limit          -- omitted when limit is None

The database evaluates the predicate and the increment together, so any
number of concurrent callers (threads or service instances) can never
both pass the limit. rowcount == 0 means denied.

A missing counter row is created with INSERT ... ON CONFLICT DO NOTHING
before the update; period rollover is implicit in the period key.

The store never commits. The caller owns the unit of work so the counter
check and the capability snapshot it was made against commit together.

Failure mode: any store error rolls back and raises TransientStoreFailure.
Callers deny the feature (fail closed).
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional, Sequence

from sqlalchemy import insert, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from src.config.billing_config import BillingConfig, get_billing_config
from src.entitlements.errors import TransientStoreFailure
from src.models.base import utc_now
from src.models.usage import UsageCounter, is_monthly_period, period_id_for
from src.services.tenant_guard import TenantIsolationGuard

logger = logging.getLogger(__name__)

COUNTER_KEY_COLUMNS = ["tenant_id", "feature", "period_id"]


def warning_level(count: int, limit: Optional[int], thresholds: Sequence[int]) -> Optional[int]:
    """
    Highest soft-warning threshold (percent) reached by count.

    Computed from the returned count, never stored. None when unlimited or
    below every threshold.
    """
    if limit is None:
        return None
    crossed = [t for t in thresholds if count * 100 >= t * limit]
    return max(crossed) if crossed else None


@dataclass(frozen=True)
class IncrementResult:
    """Outcome of one increment_if_under_limit call."""
    allowed: bool
    new_count: int
    limit: Optional[int]
    period: str
    warning_level: Optional[int] = None

    @property
    def remaining(self) -> Optional[int]:
        if self.limit is None:
            return None
        return max(0, self.limit - self.new_count)


class UsageCounterStore:
    """
    Race-free metered usage counting for one tenant.

    Usage:
        store = UsageCounterStore(guard, config)
        result = store.increment_if_under_limit("ai_generation", "2025-02", limit=100)
        db.commit()
    """

    def __init__(
        self,
        guard: TenantIsolationGuard,
        config: Optional[BillingConfig] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.guard = guard
        self.db = guard.db
        self.config = config or get_billing_config()
        self._clock = clock

    @property
    def tenant_id(self) -> str:
        return self.guard.tenant_id

    def current_period(self) -> str:
        return period_id_for(self._clock())

    def _key(self, feature: str, period: str):
        return (
            UsageCounter.tenant_id == self.tenant_id,
            UsageCounter.feature == feature,
            UsageCounter.period_id == period,
        )

    def _ensure_counter(self, feature: str, period: str, limit: Optional[int]) -> None:
        """Create the (tenant, feature, period) row at zero if absent."""
        values = {
            "tenant_id": self.tenant_id,
            "feature": feature,
            "period_id": period,
            "count": 0,
            "limit_value": limit,
            "blocked_count": 0,
        }
        dialect = self.db.get_bind().dialect.name

        if dialect == "postgresql":
            stmt = pg_insert(UsageCounter).values(**values).on_conflict_do_nothing(
                index_elements=COUNTER_KEY_COLUMNS
            )
            self.db.execute(stmt)
            return
        if dialect == "sqlite":
            stmt = sqlite_insert(UsageCounter).values(**values).on_conflict_do_nothing(
                index_elements=COUNTER_KEY_COLUMNS
            )
            self.db.execute(stmt)
            return

        exists = self.db.execute(
            select(UsageCounter.id).where(*self._key(feature, period))
        ).first()
        if exists:
            return
        try:
            with self.db.begin_nested():
                self.db.execute(insert(UsageCounter).values(**values))
        except IntegrityError:
            # Lost the insert race; the row now exists
            logger.debug("Usage counter created concurrently", extra={
                "tenant_id": self.tenant_id,
                "feature": feature,
                "period": period,
            })

    def increment_if_under_limit(
        self,
        feature: str,
        period: Optional[str] = None,
        limit: Optional[int] = None,
        amount: int = 1,
    ) -> IncrementResult:
        """
        Atomically add amount unless that would exceed limit.

        limit None means unlimited: the increment always succeeds and is
        still recorded.

        Raises:
            ValueError: amount is not positive
            TransientStoreFailure: the store is unavailable
        """
        if amount <= 0:
            raise ValueError("amount must be positive")
        period = period or self.current_period()
        now = self._clock()

        try:
            self._ensure_counter(feature, period, limit)

            stmt = (
                update(UsageCounter)
                .where(*self._key(feature, period))
                .values(count=UsageCounter.count + amount, limit_value=limit, updated_at=now)
            )
            if limit is not None:
                stmt = stmt.where(UsageCounter.count + amount <= limit)
            result = self.db.execute(stmt.execution_options(synchronize_session=False))
            allowed = result.rowcount == 1

            if not allowed:
                self.db.execute(
                    update(UsageCounter)
                    .where(*self._key(feature, period))
                    .values(
                        blocked_count=UsageCounter.blocked_count + 1,
                        last_blocked_at=now,
                        limit_value=limit,
                    )
                    .execution_options(synchronize_session=False)
                )

            new_count = self.db.execute(
                select(UsageCounter.count).where(*self._key(feature, period))
            ).scalar_one()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(
                "Usage counter store unavailable - failing closed",
                extra={
                    "tenant_id": self.tenant_id,
                    "feature": feature,
                    "period": period,
                    "error": str(e),
                },
            )
            raise TransientStoreFailure("usage_increment", cause=type(e).__name__) from e

        level = warning_level(new_count, limit, self.config.warning_thresholds_percent)
        if allowed:
            logger.debug("Usage increment allowed", extra={
                "tenant_id": self.tenant_id,
                "feature": feature,
                "period": period,
                "count": new_count,
                "limit": limit,
            })
        else:
            logger.info("Usage increment denied at limit", extra={
                "tenant_id": self.tenant_id,
                "feature": feature,
                "period": period,
                "count": new_count,
                "limit": limit,
            })

        return IncrementResult(
            allowed=allowed,
            new_count=new_count,
            limit=limit,
            period=period,
            warning_level=level,
        )

    def release(self, feature: str, period: str, amount: int = 1) -> int:
        """
        Give back previously counted units on a standing counter (roster
        removals). Never drops below zero. Returns the new count.

        Raises:
            ValueError: amount is not positive, or period is a calendar month
                (monthly counts never decrease)
        """
        if amount <= 0:
            raise ValueError("amount must be positive")
        if is_monthly_period(period):
            raise ValueError(f"monthly usage counter {feature}/{period} cannot be decremented")
        try:
            self.db.execute(
                update(UsageCounter)
                .where(*self._key(feature, period), UsageCounter.count >= amount)
                .values(count=UsageCounter.count - amount, updated_at=self._clock())
                .execution_options(synchronize_session=False)
            )
            value = self.db.execute(
                select(UsageCounter.count).where(*self._key(feature, period))
            ).scalar_one_or_none()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise TransientStoreFailure("usage_release", cause=type(e).__name__) from e
        return value or 0

    def get_count(self, feature: str, period: Optional[str] = None) -> int:
        """Current count; 0 when no counter exists for the period yet."""
        period = period or self.current_period()
        try:
            value = self.db.execute(
                select(UsageCounter.count).where(*self._key(feature, period))
            ).scalar_one_or_none()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise TransientStoreFailure("usage_read", cause=type(e).__name__) from e
        return value or 0

    def list_counters(self, period: Optional[str] = None) -> List[UsageCounter]:
        query = self.guard.scoped(UsageCounter)
        if period:
            query = query.filter(UsageCounter.period_id == period)
        return query.order_by(UsageCounter.period_id.desc(), UsageCounter.feature.asc()).all()
