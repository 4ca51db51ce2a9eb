"""
Artifact persistence.

Copies a provider-hosted song into durable storage under a key derived
only from the customer and job ids. Because the key is deterministic and
uploads overwrite, a persist that failed halfway can simply be run again.
"""

from typing import Optional

import httpx

from songjobs.logging_config import StructuredLogger
from songjobs.storage.blobstore import BlobStore
from songjobs.storage.models import JobStatus
from songjobs.storage.repository import JobRepository

logger = StructuredLogger(__name__)

DEFAULT_MIME = "audio/mpeg"


class FetchFailed(Exception):
    """The transient result could not be downloaded."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


def durable_key(customer_id: str, job_id: str) -> str:
    """Storage key for a job's song: ``songs/{customer_id}/{job_id}.mp3``.

    The content type travels with the upload, never in the key, so every
    attempt for a job lands on the same object.
    """
    return f"songs/{customer_id}/{job_id}.mp3"


class ArtifactPersister:
    """Moves provider results into durable storage and records the key."""

    def __init__(
        self,
        repository: JobRepository,
        blob_store: BlobStore,
        client: Optional[httpx.Client] = None,
    ):
        self.repository = repository
        self.blob_store = blob_store
        self.client = client or httpx.Client(timeout=httpx.Timeout(None), follow_redirects=True)

    def persist(
        self,
        job_id: str,
        transient_location: str,
        customer_id: str,
        mime: Optional[str] = None,
    ) -> str:
        """Persist one job's result.

        Fetch, upload, then record. The upload and the record update are
        not atomic; if the update fails after a successful upload, calling
        again overwrites the same object and retries the update.

        Args:
            job_id: Internal job id
            transient_location: Provider-hosted result URL
            customer_id: Owning customer
            mime: Result content type, defaults to audio/mpeg

        Returns:
            The durable storage key

        Raises:
            FetchFailed: If the download fails; nothing is written
            StorageError: If the upload fails
        """
        mime = mime or DEFAULT_MIME
        try:
            response = self.client.get(transient_location)
        except httpx.HTTPError as e:
            raise FetchFailed(f"Fetch of transient result failed: {e}") from e
        if not response.is_success:
            raise FetchFailed(
                f"Fetch of transient result returned HTTP {response.status_code}",
                status_code=response.status_code,
            )

        key = durable_key(customer_id, job_id)
        self.blob_store.upload(key, response.content, content_type=mime, upsert=True)
        self.repository.update(
            job_id,
            storage_key=key,
            mime=mime,
            status=JobStatus.SUCCEEDED,
        )
        logger.info(
            "song persisted",
            job_id=job_id,
            customer_id=customer_id,
            storage_key=key,
            size=len(response.content),
        )
        return key
