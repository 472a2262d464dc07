from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict


class ORMModel(BaseModel):
    """Read model populated straight from SQLModel rows."""

    model_config = ConfigDict(from_attributes=True)


class IDModel(ORMModel):
    id: UUID


class Timestamped(ORMModel):
    created_at: datetime
    updated_at: datetime | None = None


class RunCounters(BaseModel):
    """Outcome tallies shared by the batch jobs."""

    processed: int
    succeeded: int
    failed: int
    skipped: int
