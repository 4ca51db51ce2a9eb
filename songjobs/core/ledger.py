"""
Quota consumption.

Consumption is a single conditional increment inside one write
transaction. When a job id is supplied, the job's ``consumed`` flag is
claimed in the same transaction, so a job can be charged at most once no
matter how many reconciliations race on it.

Two policies differ on purpose:

- Before submission, ``check_quota`` is strict: no ledger or no remaining
  songs means the job is never sent to the provider.
- After success, consumption fails open: a missing ledger still marks the
  job consumed, and an exhausted ledger leaves the job succeeded but
  unbilled. The work has already happened, so the customer gets the song.
  ``quota_view`` reports the unbilled jobs separately.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from songjobs.storage.db import DEFAULT_DB_PATH, get_connection
from songjobs.storage.models import UNLIMITED, QuotaLedger
from songjobs.storage.repository import get_ledger, get_repository


class LedgerNotFound(LookupError):
    """Raised when a customer has no quota ledger."""

    def __init__(self, customer_id: str):
        super().__init__(f"No quota ledger for customer {customer_id}")
        self.customer_id = customer_id


class QuotaExhausted(Exception):
    """Raised by the pre-submission gate when no songs remain."""

    def __init__(self, customer_id: str):
        super().__init__(f"No songs remaining for customer {customer_id}")
        self.customer_id = customer_id


@dataclass(frozen=True)
class ConsumeResult:
    """Outcome of one consumption attempt.

    ``remaining`` is -1 for unlimited ledgers. ``already_consumed`` is set
    when the job had been charged by an earlier call.
    """
    consumed: bool
    remaining: int
    already_consumed: bool = False


@dataclass(frozen=True)
class QuotaView:
    """Customer-facing quota summary."""
    customer_id: str
    entitled: bool
    unlimited: bool = False
    remaining: int = 0
    allowance_per_period: Optional[int] = None
    consumed_count: int = 0
    plan_id: Optional[str] = None
    plan_name: Optional[str] = None
    revisions_per_song: int = 0
    commercial: bool = False
    renews_at: Optional[datetime] = None
    unbilled_jobs: int = 0
    reason: Optional[str] = None


def try_consume(
    customer_id: str,
    job_id: Optional[str] = None,
    db_path: str = DEFAULT_DB_PATH,
) -> ConsumeResult:
    """Atomically charge one song to a customer's ledger.

    Args:
        customer_id: Customer to charge
        job_id: Job the charge is attributed to; when given, the job's
            ``consumed`` flag is claimed in the same transaction
        db_path: Path to SQLite database file

    Returns:
        ConsumeResult describing what happened

    Raises:
        LedgerNotFound: If the customer has no ledger. When ``job_id`` was
            given the job is still marked consumed before raising.
    """
    conn = get_connection(db_path)
    try:
        conn.execute("BEGIN IMMEDIATE")

        if job_id is not None:
            claimed = conn.execute(
                "UPDATE song_job SET consumed = 1 WHERE internal_id = ? AND consumed = 0",
                (job_id,),
            ).rowcount
            if claimed == 0:
                if conn.execute(
                    "SELECT 1 FROM song_job WHERE internal_id = ?", (job_id,)
                ).fetchone() is None:
                    raise ValueError(f"Unknown job: {job_id}")
                row = conn.execute(
                    "SELECT allowance_per_period, consumed_count FROM quota_ledger WHERE customer_id = ?",
                    (customer_id,),
                ).fetchone()
                conn.commit()
                return ConsumeResult(
                    consumed=False,
                    remaining=_remaining(row),
                    already_consumed=True,
                )

        row = conn.execute(
            "SELECT allowance_per_period, consumed_count FROM quota_ledger WHERE customer_id = ?",
            (customer_id,),
        ).fetchone()
        if row is None:
            # Keep the claim: bookkeeping gaps must not block a finished job.
            conn.commit()
            raise LedgerNotFound(customer_id)

        if row["allowance_per_period"] == UNLIMITED:
            conn.commit()
            return ConsumeResult(consumed=True, remaining=UNLIMITED)

        updated = conn.execute(
            """
            UPDATE quota_ledger
            SET consumed_count = consumed_count + 1
            WHERE customer_id = ? AND consumed_count < allowance_per_period
            """,
            (customer_id,),
        ).rowcount
        if updated == 0:
            conn.rollback()
            return ConsumeResult(consumed=False, remaining=0)

        row = conn.execute(
            "SELECT allowance_per_period, consumed_count FROM quota_ledger WHERE customer_id = ?",
            (customer_id,),
        ).fetchone()
        conn.commit()
        return ConsumeResult(consumed=True, remaining=_remaining(row))
    except LedgerNotFound:
        raise
    except Exception:
        if conn.in_transaction:
            conn.rollback()
        raise
    finally:
        conn.close()


def check_quota(customer_id: str, db_path: str = DEFAULT_DB_PATH) -> QuotaLedger:
    """Gate a new submission on the customer's remaining quota.

    Raises:
        LedgerNotFound: If the customer has no ledger
        QuotaExhausted: If the allowance is used up
    """
    ledger = get_ledger(customer_id, db_path)
    if ledger is None:
        raise LedgerNotFound(customer_id)
    if ledger.remaining == 0:
        raise QuotaExhausted(customer_id)
    return ledger


def quota_view(customer_id: str, db_path: str = DEFAULT_DB_PATH) -> QuotaView:
    """Build the customer-facing quota summary.

    A missing ledger is reported as ``entitled=False`` rather than an error.
    """
    unbilled = get_repository(db_path).count_unbilled(customer_id)
    ledger = get_ledger(customer_id, db_path)
    if ledger is None:
        return QuotaView(
            customer_id=customer_id,
            entitled=False,
            unbilled_jobs=unbilled,
            reason="no_entitlement_record",
        )

    return QuotaView(
        customer_id=customer_id,
        entitled=ledger.unlimited or ledger.remaining > 0,
        unlimited=ledger.unlimited,
        remaining=ledger.remaining,
        allowance_per_period=ledger.allowance_per_period,
        consumed_count=ledger.consumed_count,
        plan_id=ledger.plan_id,
        plan_name=ledger.plan_name,
        revisions_per_song=ledger.revisions_per_song,
        commercial=ledger.commercial,
        renews_at=ledger.period_renews_at,
        unbilled_jobs=unbilled,
    )


def _remaining(row) -> int:
    if row is None:
        return 0
    if row["allowance_per_period"] == UNLIMITED:
        return UNLIMITED
    return max(0, row["allowance_per_period"] - row["consumed_count"])
