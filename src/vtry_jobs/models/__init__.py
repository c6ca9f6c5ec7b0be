from datetime import datetime, timezone

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass


def utcnow() -> datetime:
    """Naive UTC timestamp, the format every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# Import all models so that Base.metadata.create_all picks them up.
from vtry_jobs.models.job import GenerationJob  # noqa: E402, F401
from vtry_jobs.models.queue import QueueMessage  # noqa: E402, F401
from vtry_jobs.models.usage import DailyUsageCounter  # noqa: E402, F401
from vtry_jobs.models.event import JobEventRecord  # noqa: E402, F401
