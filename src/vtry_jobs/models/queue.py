from datetime import datetime

from sqlalchemy import DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from vtry_jobs.models import Base, utcnow


class QueueMessage(Base):
    """A durable ``{job_id}`` reference waiting for (or leased by) a worker.

    A message is visible once ``available_at`` has passed and it is not
    under an unexpired lease. Acknowledging deletes the row.
    """

    __tablename__ = "job_queue"

    id: Mapped[int] = mapped_column(primary_key=True)
    job_id: Mapped[str] = mapped_column(String(64), index=True)
    available_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    leased_until: Mapped[datetime | None] = mapped_column(DateTime, default=None)
    lease_owner: Mapped[str | None] = mapped_column(String(64), default=None)
    deliveries: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
