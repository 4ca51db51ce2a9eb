"""
Data models for storage layer.

Defines the quota ledger and song job records.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

# Allowance sentinel meaning "no limit".
UNLIMITED = -1


class JobStatus(Enum):
    """Canonical job status."""
    PREPARING = "preparing"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (JobStatus.SUCCEEDED, JobStatus.FAILED)

    @property
    def rank(self) -> int:
        """Position along preparing -> running -> terminal."""
        if self.terminal:
            return 2
        return 1 if self is JobStatus.RUNNING else 0


@dataclass(frozen=True)
class QuotaLedger:
    """Per-customer periodic allowance and consumption counter.

    Created or replaced by the billing side; this package only reads it
    and increments ``consumed_count``.
    """
    customer_id: str
    allowance_per_period: int
    consumed_count: int = 0
    period_renews_at: Optional[datetime] = None
    plan_id: Optional[str] = None
    plan_name: Optional[str] = None
    revisions_per_song: int = 0
    commercial: bool = False

    def __post_init__(self):
        if self.allowance_per_period < UNLIMITED:
            raise ValueError("allowance_per_period must be >= 0 or -1 (unlimited)")
        if self.consumed_count < 0:
            raise ValueError("consumed_count must be >= 0")

    @property
    def unlimited(self) -> bool:
        return self.allowance_per_period == UNLIMITED

    @property
    def remaining(self) -> int:
        """Songs left this period; -1 when unlimited."""
        if self.unlimited:
            return UNLIMITED
        return max(0, self.allowance_per_period - self.consumed_count)


@dataclass(frozen=True)
class JobRecord:
    """One submitted generation job and its locally known state."""
    internal_id: str
    external_job_ref: str
    customer_id: str
    status: JobStatus
    created_at: datetime
    updated_at: datetime
    result_url: Optional[str] = None
    storage_key: Optional[str] = None
    mime: Optional[str] = None
    duration_seconds: Optional[float] = None
    prompt: Optional[str] = None
    consumed: bool = False

    @property
    def result_pointer(self) -> Optional[str]:
        """Durable key when persisted, otherwise the provider's transient URL."""
        return self.storage_key or self.result_url

    @property
    def settled(self) -> bool:
        """True once nothing more can be learned from the provider."""
        if self.status is JobStatus.FAILED:
            return True
        return self.status is JobStatus.SUCCEEDED and self.storage_key is not None
