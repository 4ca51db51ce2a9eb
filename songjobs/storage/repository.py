"""
Repository pattern for data access.

Handles job record and quota ledger persistence. No business rules live
here beyond the ones the rows themselves must never violate: a job's
status only moves forward, and its ``consumed`` flag is never cleared.
"""

import sqlite3
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .db import DEFAULT_DB_PATH, get_connection
from .models import JobRecord, JobStatus, QuotaLedger


class JobNotFound(LookupError):
    """Raised when no job matches an internal id or external reference."""

    def __init__(self, ref: str):
        super().__init__(f"Unknown job: {ref}")
        self.ref = ref


# Fields a partial update may touch.
UPDATABLE_FIELDS = frozenset({
    "status",
    "result_url",
    "storage_key",
    "mime",
    "duration_seconds",
    "prompt",
    "consumed",
})

_JOB_COLUMNS = """
    internal_id, external_job_ref, customer_id, status, result_url,
    storage_key, mime, duration_seconds, prompt, consumed,
    created_at, updated_at
"""

_STATUS_RANK_SQL = (
    "CASE status WHEN 'preparing' THEN 0 WHEN 'running' THEN 1 ELSE 2 END"
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _row_to_job(row: sqlite3.Row) -> JobRecord:
    return JobRecord(
        internal_id=row["internal_id"],
        external_job_ref=row["external_job_ref"],
        customer_id=row["customer_id"],
        status=JobStatus(row["status"]),
        result_url=row["result_url"],
        storage_key=row["storage_key"],
        mime=row["mime"],
        duration_seconds=row["duration_seconds"],
        prompt=row["prompt"],
        consumed=bool(row["consumed"]),
        created_at=_parse_ts(row["created_at"]),
        updated_at=_parse_ts(row["updated_at"]),
    )


def _row_to_ledger(row: sqlite3.Row) -> QuotaLedger:
    return QuotaLedger(
        customer_id=row["customer_id"],
        allowance_per_period=row["allowance_per_period"],
        consumed_count=row["consumed_count"],
        period_renews_at=_parse_ts(row["period_renews_at"]),
        plan_id=row["plan_id"],
        plan_name=row["plan_name"],
        revisions_per_song=row["revisions_per_song"],
        commercial=bool(row["commercial"]),
    )


class JobRepository:
    """Repository for song job records.

    Every method opens its own connection, so one instance can be shared
    by any number of threads.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    def create(
        self,
        customer_id: str,
        external_job_ref: str,
        status: JobStatus = JobStatus.PREPARING,
        result_url: Optional[str] = None,
        mime: Optional[str] = None,
        duration_seconds: Optional[float] = None,
        prompt: Optional[str] = None,
    ) -> JobRecord:
        """Insert a new job record.

        Args:
            customer_id: Owning customer
            external_job_ref: Provider-assigned job id or poll URL
            status: Initial status reported by the provider
            result_url: Transient result location, if already known
            mime: Result content type, if known
            duration_seconds: Result duration, if known
            prompt: Prompt the job was submitted with

        Returns:
            The stored record

        Raises:
            ValueError: If ids are empty or the external reference is taken
        """
        if not customer_id or not customer_id.strip():
            raise ValueError("customer_id is required and cannot be empty")
        if not external_job_ref or not external_job_ref.strip():
            raise ValueError("external_job_ref is required and cannot be empty")

        now = _now().isoformat()
        internal_id = uuid.uuid4().hex
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                f"""
                INSERT INTO song_job ({_JOB_COLUMNS})
                VALUES (?, ?, ?, ?, ?, NULL, ?, ?, ?, 0, ?, ?)
                """,
                (
                    internal_id,
                    external_job_ref,
                    customer_id,
                    status.value,
                    result_url,
                    mime,
                    duration_seconds,
                    prompt,
                    now,
                    now,
                ),
            )
        except sqlite3.IntegrityError as e:
            raise ValueError(f"Job with external ref {external_job_ref!r} already exists") from e
        finally:
            conn.close()
        return self.get(internal_id)

    def get(self, internal_id: str) -> Optional[JobRecord]:
        """Get a job by internal id, or None."""
        return self._fetch_one("internal_id = ?", internal_id)

    def get_by_external_ref(self, external_job_ref: str) -> Optional[JobRecord]:
        """Get a job by the provider's reference, or None."""
        return self._fetch_one("external_job_ref = ?", external_job_ref)

    def find(self, ref: str) -> Optional[JobRecord]:
        """Resolve ``ref`` as an internal id first, then as an external reference."""
        return self.get(ref) or self.get_by_external_ref(ref)

    def update(self, internal_id: str, **fields: Any) -> JobRecord:
        """Apply a partial update and return the resulting record.

        Only the given fields change. Two column rules are enforced in
        the statement itself so that concurrent writers cannot break them:

        - ``status`` is written only if it ranks above the stored status;
          terminal states are never left.
        - ``consumed`` can be raised to true but never lowered.

        Args:
            internal_id: Job to update
            **fields: Subset of ``UPDATABLE_FIELDS``

        Returns:
            The record after the update

        Raises:
            ValueError: If an unknown field is given
            JobNotFound: If the job does not exist
        """
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown job fields: {sorted(unknown)}")

        assignments: List[str] = []
        params: List[Any] = []
        for name, value in fields.items():
            if name == "status":
                status = JobStatus(value)
                assignments.append(f"status = CASE WHEN {_STATUS_RANK_SQL} < ? THEN ? ELSE status END")
                params.extend([status.rank, status.value])
            elif name == "consumed":
                assignments.append("consumed = MAX(consumed, ?)")
                params.append(1 if value else 0)
            else:
                assignments.append(f"{name} = ?")
                params.append(value)

        assignments.append("updated_at = ?")
        params.append(_now().isoformat())
        params.append(internal_id)

        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                f"UPDATE song_job SET {', '.join(assignments)} WHERE internal_id = ?",
                params,
            )
            if cursor.rowcount == 0:
                raise JobNotFound(internal_id)
        finally:
            conn.close()
        return self.get(internal_id)

    def list_for_customer(self, customer_id: str, limit: int = 50) -> List[JobRecord]:
        """List a customer's jobs, newest first."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                f"""
                SELECT {_JOB_COLUMNS} FROM song_job
                WHERE customer_id = ?
                ORDER BY created_at DESC, rowid DESC
                LIMIT ?
                """,
                (customer_id, limit),
            )
            return [_row_to_job(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def count_unbilled(self, customer_id: str) -> int:
        """Count succeeded jobs whose consumption has not been recorded."""
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                """
                SELECT COUNT(*) FROM song_job
                WHERE customer_id = ? AND status = ? AND consumed = 0
                """,
                (customer_id, JobStatus.SUCCEEDED.value),
            ).fetchone()
            return row[0] or 0
        finally:
            conn.close()

    def _fetch_one(self, condition: str, value: str) -> Optional[JobRecord]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                f"SELECT {_JOB_COLUMNS} FROM song_job WHERE {condition}",
                (value,),
            ).fetchone()
            return _row_to_job(row) if row else None
        finally:
            conn.close()


# Global repository instance
_default_repository: Optional[JobRepository] = None


def get_repository(db_path: str = DEFAULT_DB_PATH) -> JobRepository:
    """Get the process-wide repository instance.

    Args:
        db_path: Path to SQLite database file

    Returns:
        An instance of JobRepository bound to ``db_path``
    """
    global _default_repository
    if _default_repository is None or _default_repository.db_path != db_path:
        _default_repository = JobRepository(db_path)
    return _default_repository


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the quota_ledger and song_job tables if they don't exist.

    Job rows are history and are never deleted.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("BEGIN IMMEDIATE")
        conn.execute("""
            CREATE TABLE IF NOT EXISTS quota_ledger (
                customer_id TEXT PRIMARY KEY,
                allowance_per_period INTEGER NOT NULL,
                consumed_count INTEGER NOT NULL DEFAULT 0 CHECK (consumed_count >= 0),
                period_renews_at TEXT,
                plan_id TEXT,
                plan_name TEXT,
                revisions_per_song INTEGER NOT NULL DEFAULT 0,
                commercial INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS song_job (
                internal_id TEXT PRIMARY KEY,
                external_job_ref TEXT NOT NULL UNIQUE,
                customer_id TEXT NOT NULL,
                status TEXT NOT NULL,
                result_url TEXT,
                storage_key TEXT,
                mime TEXT,
                duration_seconds REAL,
                prompt TEXT,
                consumed INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_song_job_customer ON song_job (customer_id, created_at)"
        )
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def upsert_ledger(
    ledger: QuotaLedger,
    db_path: str = DEFAULT_DB_PATH,
    reset_usage: bool = False,
) -> QuotaLedger:
    """Create or replace a customer's quota ledger.

    This is the billing side's entry point. Replacing a ledger keeps the
    stored ``consumed_count`` unless ``reset_usage`` is set, which is how
    a period renewal zeroes the counter.

    Args:
        ledger: Ledger values to store
        db_path: Path to SQLite database file
        reset_usage: Overwrite the stored consumption with ``ledger.consumed_count``

    Returns:
        The ledger as stored
    """
    now = _now().isoformat()
    conn = get_connection(db_path)
    try:
        conn.execute(
            """
            INSERT INTO quota_ledger (
                customer_id, allowance_per_period, consumed_count, period_renews_at,
                plan_id, plan_name, revisions_per_song, commercial, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(customer_id) DO UPDATE SET
                allowance_per_period = excluded.allowance_per_period,
                consumed_count = CASE WHEN ? THEN excluded.consumed_count
                                      ELSE quota_ledger.consumed_count END,
                period_renews_at = excluded.period_renews_at,
                plan_id = excluded.plan_id,
                plan_name = excluded.plan_name,
                revisions_per_song = excluded.revisions_per_song,
                commercial = excluded.commercial,
                updated_at = excluded.updated_at
            """,
            (
                ledger.customer_id,
                ledger.allowance_per_period,
                ledger.consumed_count,
                ledger.period_renews_at.isoformat() if ledger.period_renews_at else None,
                ledger.plan_id,
                ledger.plan_name,
                ledger.revisions_per_song,
                1 if ledger.commercial else 0,
                now,
                now,
                1 if reset_usage else 0,
            ),
        )
    finally:
        conn.close()
    return get_ledger(ledger.customer_id, db_path)


def get_ledger(customer_id: str, db_path: str = DEFAULT_DB_PATH) -> Optional[QuotaLedger]:
    """Fetch a customer's quota ledger, or None if billing never created one."""
    conn = get_connection(db_path)
    try:
        row = conn.execute(
            """
            SELECT customer_id, allowance_per_period, consumed_count, period_renews_at,
                   plan_id, plan_name, revisions_per_song, commercial
            FROM quota_ledger WHERE customer_id = ?
            """,
            (customer_id,),
        ).fetchone()
        return _row_to_ledger(row) if row else None
    finally:
        conn.close()
