"""
Job reconciliation.

The engine is the only writer of job status and the only trigger of
persistence and quota consumption. Each ``reconcile`` call is one attempt:

1. Load the job (internal id, then external reference).
2. Settled jobs (failed, or succeeded and persisted) return without
   contacting the provider.
3. Query the provider. If it is unavailable, return the last known state
   marked stale. Otherwise merge whatever changed.
4. On success: persist the result if that hasn't happened yet, then
   charge the customer's quota if that hasn't happened yet.
5. Build the caller's view.

Concurrent callers are safe without locks: status writes cannot move a
job backwards, consumption claims the job and increments the ledger in a
single transaction, and persistence always writes the same key.
"""

import sqlite3
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional

from songjobs.config.loader import AppConfig
from songjobs.logging_config import StructuredLogger, redact
from songjobs.provider.gateway import ProviderGateway, ProviderUnavailable, get_gateway
from songjobs.provider.normalize import StatusEnvelope, is_absolute_url
from songjobs.storage.blobstore import BlobStore, StorageError, get_blob_store
from songjobs.storage.models import JobRecord, JobStatus
from songjobs.storage.repository import JobNotFound, JobRepository, get_repository

from .ledger import LedgerNotFound, check_quota, try_consume
from .persister import ArtifactPersister, FetchFailed

logger = StructuredLogger(__name__)

# A submission must carry at least one of these.
SUBMIT_INPUT_FIELDS = ("lyrics", "prompt", "reference_id", "vocal_id", "melody_id")

NOTIFICATION_REF_FIELDS = ("externalJob", "external_job_ref", "job_id", "id")

__all__ = ["JobNotFound", "JobView", "ReconciliationEngine", "build_engine", "get_engine"]


@dataclass(frozen=True)
class JobView:
    """What a polling caller sees.

    ``result_reference`` is a signed, playable URL and is only present
    once the song is in durable storage. ``stale`` means the provider
    could not be reached and the state shown is the last one known.
    """
    job_id: str
    external_job_ref: str
    status: JobStatus
    result_reference: Optional[str]
    consumed: bool
    stale: bool = False
    mime: Optional[str] = None
    duration_seconds: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "external_job_ref": self.external_job_ref,
            "status": self.status.value,
            "result_reference": self.result_reference,
            "consumed": self.consumed,
            "stale": self.stale,
            "mime": self.mime,
            "duration_seconds": self.duration_seconds,
        }


class ReconciliationEngine:
    """Synchronizes local job state with the provider and applies side effects once."""

    def __init__(
        self,
        repository: JobRepository,
        gateway: ProviderGateway,
        persister: ArtifactPersister,
        blob_store: BlobStore,
        signed_url_ttl: int = 900,
    ):
        self.repository = repository
        self.gateway = gateway
        self.persister = persister
        self.blob_store = blob_store
        self.signed_url_ttl = signed_url_ttl

    @property
    def db_path(self) -> str:
        return self.repository.db_path

    def reconcile(self, ref: str) -> JobView:
        """Bring one job up to date with the provider.

        Args:
            ref: Internal job id or the provider's job reference

        Returns:
            The job's current view. Provider outages yield a stale view,
            not an error.

        Raises:
            ValueError: If ref is empty
            JobNotFound: If no job matches ref
        """
        job = self._load(ref)

        if job.settled:
            if job.status is JobStatus.SUCCEEDED and not job.consumed:
                job = self._consume(job)
            return self._view(job)

        try:
            envelope = self.gateway.query_status(job.external_job_ref)
        except ProviderUnavailable as e:
            logger.warning(
                "provider unavailable, returning last known state",
                job_id=job.internal_id,
                status=job.status.value,
                status_code=e.status_code,
                error=str(e),
            )
            return self._view(job, stale=True)

        return self._apply(job, envelope)

    def apply_notification(self, payload: Dict[str, Any]) -> JobView:
        """Handle a completion callback from the provider.

        A terminal notification is applied exactly like a status answer
        from ``reconcile``; anything else triggers one ``reconcile``.
        Repeated deliveries converge on the same state.

        Raises:
            ValueError: If the payload names no job
            JobNotFound: If the named job is unknown
        """
        if not isinstance(payload, dict):
            raise ValueError("Notification payload must be an object")

        ref = next((str(payload[f]) for f in NOTIFICATION_REF_FIELDS if payload.get(f)), None)
        if ref is None and isinstance(payload.get("job"), dict) and payload["job"].get("id"):
            ref = str(payload["job"]["id"])
        if ref is None:
            raise ValueError("Notification payload is missing the job reference")

        logger.info("completion notification received", ref=ref, payload=redact(payload))
        job = self._load(ref)

        envelope = self.gateway.normalize(payload)
        temp_url = payload.get("tempResultUrl")
        if envelope.result_location is None and is_absolute_url(temp_url):
            envelope = replace(envelope, result_location=temp_url.strip())
        if envelope.canonical_status is JobStatus.PREPARING and envelope.result_location:
            # Callbacks that only carry a result are completion callbacks.
            envelope = replace(envelope, canonical_status=JobStatus.SUCCEEDED)

        if job.settled or not envelope.canonical_status.terminal:
            return self.reconcile(job.internal_id)
        return self._apply(job, envelope)

    def submit(self, customer_id: str, request: Dict[str, Any]) -> JobView:
        """Start a new generation job.

        Unlike consumption at success, the quota check here is strict.

        Args:
            customer_id: Customer requesting the song
            request: lyrics / prompt / model / reference_id / vocal_id /
                melody_id / stream

        Returns:
            The new job's view

        Raises:
            ValueError: On missing customer or inputs
            LedgerNotFound: If the customer has no quota ledger
            QuotaExhausted: If no songs remain
            ProviderUnavailable: If the provider could not accept the job
            ProviderRejected: If the provider returned no job id
        """
        if not customer_id or not customer_id.strip():
            raise ValueError("customer_id is required and cannot be empty")
        if not any(request.get(f) for f in SUBMIT_INPUT_FIELDS):
            raise ValueError(f"Provide one of: {', '.join(SUBMIT_INPUT_FIELDS)}")

        check_quota(customer_id, self.db_path)

        payload: Dict[str, Any] = {
            "lyrics": request.get("lyrics") or "",
            "model": request.get("model") or "auto",
            "prompt": request.get("prompt") or "",
        }
        for optional in ("reference_id", "vocal_id", "melody_id"):
            if request.get(optional):
                payload[optional] = request[optional]
        if isinstance(request.get("stream"), bool):
            payload["stream"] = request["stream"]

        result = self.gateway.submit(payload)
        job = self.repository.create(
            customer_id=customer_id,
            external_job_ref=result.external_job_ref,
            prompt=request.get("prompt") or None,
        )
        logger.info(
            "job submitted",
            job_id=job.internal_id,
            external_job_ref=job.external_job_ref,
            customer_id=customer_id,
            initial_status=result.envelope.canonical_status.value,
        )
        return self._apply(job, result.envelope)

    def list_jobs(self, customer_id: str, limit: int = 50) -> List[JobView]:
        """A customer's jobs, newest first, from local state only."""
        return [self._view(job) for job in self.repository.list_for_customer(customer_id, limit)]

    def signed_result_url(self, job_id: str, customer_id: str) -> str:
        """Signed URL for a customer's persisted song.

        Raises:
            JobNotFound: If the job is unknown, owned by someone else, or
                not yet persisted
            StorageError: If signing fails
        """
        job = self.repository.find(job_id)
        if job is None or job.customer_id != customer_id or not job.storage_key:
            raise JobNotFound(job_id)
        return self.blob_store.sign_url(job.storage_key, self.signed_url_ttl)

    def _load(self, ref: str) -> JobRecord:
        if not ref or not str(ref).strip():
            raise ValueError("ref is required and cannot be empty")
        job = self.repository.find(str(ref).strip())
        if job is None:
            raise JobNotFound(ref)
        return job

    def _apply(self, job: JobRecord, envelope: StatusEnvelope) -> JobView:
        job = self._merge(job, envelope)
        if job.status is JobStatus.SUCCEEDED:
            job = self._settle_success(job)
        return self._view(job)

    def _merge(self, job: JobRecord, envelope: StatusEnvelope) -> JobRecord:
        """Write only the fields the envelope changes."""
        patch: Dict[str, Any] = {}

        if (
            envelope.result_location
            and job.storage_key is None
            and envelope.result_location != job.result_url
        ):
            patch["result_url"] = envelope.result_location

        target = envelope.canonical_status
        if target is JobStatus.SUCCEEDED and not (patch.get("result_url") or job.result_pointer):
            # A succeeded job must always have a result pointer.
            logger.warning(
                "provider reported success without a result location",
                job_id=job.internal_id,
                raw_status=envelope.raw_status,
            )
            target = JobStatus.RUNNING
        if target.rank > job.status.rank:
            patch["status"] = target

        if envelope.duration_seconds is not None and envelope.duration_seconds != job.duration_seconds:
            patch["duration_seconds"] = envelope.duration_seconds
        if envelope.mime_type and envelope.mime_type != job.mime and job.storage_key is None:
            patch["mime"] = envelope.mime_type

        if not patch:
            return job

        updated = self.repository.update(job.internal_id, **patch)
        if updated.status is not job.status:
            logger.info(
                "job status changed",
                job_id=job.internal_id,
                previous=job.status.value,
                status=updated.status.value,
            )
        return updated

    def _settle_success(self, job: JobRecord) -> JobRecord:
        if job.storage_key is None and job.result_url:
            try:
                self.persister.persist(job.internal_id, job.result_url, job.customer_id, job.mime)
            except (FetchFailed, StorageError, sqlite3.Error) as e:
                logger.warning(
                    "persisting result failed, will retry on next reconcile",
                    job_id=job.internal_id,
                    customer_id=job.customer_id,
                    error=str(e),
                )
            job = self.repository.get(job.internal_id)

        if not job.consumed:
            job = self._consume(job)
        return job

    def _consume(self, job: JobRecord) -> JobRecord:
        try:
            result = try_consume(job.customer_id, job_id=job.internal_id, db_path=self.db_path)
        except LedgerNotFound:
            logger.warning(
                "no quota ledger, job marked consumed without a charge",
                job_id=job.internal_id,
                customer_id=job.customer_id,
            )
        else:
            if result.consumed:
                logger.info(
                    "quota consumed",
                    job_id=job.internal_id,
                    customer_id=job.customer_id,
                    remaining=result.remaining,
                )
            elif not result.already_consumed:
                logger.warning(
                    "quota exhausted at success, consumption deferred",
                    job_id=job.internal_id,
                    customer_id=job.customer_id,
                )
        return self.repository.get(job.internal_id)

    def _view(self, job: JobRecord, stale: bool = False) -> JobView:
        reference = None
        if job.storage_key:
            try:
                reference = self.blob_store.sign_url(job.storage_key, self.signed_url_ttl)
            except StorageError as e:
                logger.warning("signing result url failed", job_id=job.internal_id, error=str(e))
        return JobView(
            job_id=job.internal_id,
            external_job_ref=job.external_job_ref,
            status=job.status,
            result_reference=reference,
            consumed=job.consumed,
            stale=stale,
            mime=job.mime,
            duration_seconds=job.duration_seconds,
        )


def build_engine(config: AppConfig) -> ReconciliationEngine:
    """Wire an engine from the process-wide shared clients."""
    repository = get_repository(config.database.path)
    blob_store = get_blob_store(config)
    return ReconciliationEngine(
        repository=repository,
        gateway=get_gateway(config),
        persister=ArtifactPersister(repository, blob_store),
        blob_store=blob_store,
        signed_url_ttl=config.storage.signed_url_ttl,
    )


# Global engine instance
_default_engine: Optional[ReconciliationEngine] = None


def get_engine(config: AppConfig) -> ReconciliationEngine:
    """Get the process-wide engine, creating it on first use."""
    global _default_engine
    if _default_engine is None:
        _default_engine = build_engine(config)
    return _default_engine
