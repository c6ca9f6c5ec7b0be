from datetime import date, datetime

from sqlalchemy import Date, DateTime, Enum, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from vtry_jobs.models import Base, utcnow
from vtry_jobs.models.job import JobKind


class DailyUsageCounter(Base):
    """Per-owner, per-UTC-day, per-kind generation counter.

    Rows are created lazily on the first consume of a day and only ever
    incremented through the quota tracker's conditional update.
    """

    __tablename__ = "daily_usage_counters"
    __table_args__ = (
        UniqueConstraint("owner_id", "usage_date", "kind", name="ux_daily_usage_key"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(255), index=True)
    usage_date: Mapped[date] = mapped_column(Date)
    kind: Mapped[JobKind] = mapped_column(Enum(JobKind, native_enum=False, length=16))
    count: Mapped[int] = mapped_column(Integer, default=0)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)
