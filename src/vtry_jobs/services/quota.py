"""Daily generation quotas keyed by (owner, UTC date, kind)."""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Callable, Mapping

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from vtry_jobs.config import Settings
from vtry_jobs.models import utcnow
from vtry_jobs.models.job import JobKind
from vtry_jobs.models.usage import DailyUsageCounter

logger = logging.getLogger(__name__)

DEFAULT_TIER = "FREE"


@dataclass(frozen=True)
class QuotaPolicy:
    """Pure mapping of subscription tier → per-kind daily limits."""

    limits: Mapping[str, Mapping[str, int]] = field(default_factory=dict)
    default_tier: str = DEFAULT_TIER

    @classmethod
    def from_settings(cls, settings: Settings) -> "QuotaPolicy":
        return cls(limits=settings.quota_limits)

    def limit_for(self, tier: str, kind: JobKind) -> int:
        """Daily limit for ``kind``; unknown tiers get the default tier's limits."""
        tier_limits = self.limits.get(tier.upper()) or self.limits.get(self.default_tier, {})
        return int(tier_limits.get(kind.value, 0))


@dataclass(frozen=True)
class QuotaSnapshot:
    """Usage of one quota key at a point in time."""

    kind: JobKind
    usage_date: date
    limit: int
    used: int
    remaining: int
    reset_at: datetime


def next_reset(now: datetime) -> datetime:
    """The UTC midnight that starts the next quota day."""
    return datetime.combine(now.date() + timedelta(days=1), time.min)


class QuotaTracker:
    """Atomic check-and-increment over DailyUsageCounter rows.

    ``try_consume`` never commits; run it inside the admission transaction
    so a failed job insert rolls the increment back too.
    """

    def __init__(self, policy: QuotaPolicy, clock: Callable[[], datetime] = utcnow) -> None:
        self.policy = policy
        self._clock = clock

    def _ensure_counter(self, db: Session, owner_id: str, usage_date: date, kind: JobKind) -> None:
        """Insert the zero row for a key unless it already exists."""
        values = dict(owner_id=owner_id, usage_date=usage_date, kind=kind, count=0, updated_at=self._clock())
        dialect = db.get_bind().dialect.name
        if dialect in ("sqlite", "postgresql"):
            insert = sqlite_insert if dialect == "sqlite" else pg_insert
            stmt = insert(DailyUsageCounter).values(**values).on_conflict_do_nothing(
                index_elements=["owner_id", "usage_date", "kind"]
            )
            db.execute(stmt)
            return

        exists = db.execute(
            select(DailyUsageCounter.id).where(*self._key(owner_id, usage_date, kind))
        ).scalar_one_or_none()
        if exists is not None:
            return
        try:
            with db.begin_nested():
                db.add(DailyUsageCounter(**values))
        except IntegrityError:
            # A concurrent admission created the row first
            logger.debug("Usage counter for %s/%s/%s already created", owner_id, usage_date, kind.value)

    @staticmethod
    def _key(owner_id: str, usage_date: date, kind: JobKind) -> tuple:
        return (
            DailyUsageCounter.owner_id == owner_id,
            DailyUsageCounter.usage_date == usage_date,
            DailyUsageCounter.kind == kind,
        )

    def try_consume(self, db: Session, owner_id: str, tier: str, kind: JobKind) -> bool:
        """Increment today's counter iff it is below the tier limit.

        The comparison and the increment are one conditional UPDATE, so
        concurrent calls for the same key can never overshoot the limit.
        """
        now = self._clock()
        usage_date = now.date()
        limit = self.policy.limit_for(tier, kind)
        if limit <= 0:
            return False

        self._ensure_counter(db, owner_id, usage_date, kind)
        result = db.execute(
            update(DailyUsageCounter)
            .where(*self._key(owner_id, usage_date, kind), DailyUsageCounter.count < limit)
            .values(count=DailyUsageCounter.count + 1, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        consumed = result.rowcount == 1
        if not consumed:
            logger.info(
                "Daily %s quota exhausted for owner %s (limit %d)",
                kind.value.lower(), owner_id, limit,
                extra={"owner_id": owner_id, "tier": tier, "kind": kind.value, "limit": limit},
            )
        return consumed

    def snapshot(self, db: Session, owner_id: str, tier: str, kind: JobKind) -> QuotaSnapshot:
        now = self._clock()
        usage_date = now.date()
        limit = self.policy.limit_for(tier, kind)
        used = db.execute(
            select(DailyUsageCounter.count).where(*self._key(owner_id, usage_date, kind))
        ).scalar_one_or_none() or 0
        return QuotaSnapshot(
            kind=kind,
            usage_date=usage_date,
            limit=limit,
            used=used,
            remaining=max(limit - used, 0),
            reset_at=next_reset(now),
        )
