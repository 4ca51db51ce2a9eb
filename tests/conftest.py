"""
Shared test fixtures: a temp database, an in-memory blob store, a
scriptable provider gateway and an HTTP client serving transient songs.
"""

import os
import threading
from typing import Any, Dict, List, Optional

import httpx
import pytest

from songjobs.core.engine import ReconciliationEngine
from songjobs.core.persister import ArtifactPersister
from songjobs.provider.gateway import SubmitResult
from songjobs.provider.normalize import StatusEnvelope, normalize_envelope
from songjobs.storage.blobstore import StorageError
from songjobs.storage.models import JobStatus, QuotaLedger
from songjobs.storage.repository import JobRepository, initialize_schema, upsert_ledger

SONG_BYTES = b"ID3fake-mp3-bytes"


class MemoryBlobStore:
    """Blob store keeping objects in a dict."""

    def __init__(self):
        self.objects: Dict[str, bytes] = {}
        self.content_types: Dict[str, str] = {}
        self.uploads: List[str] = []
        self.fail_uploads = False
        self.fail_signing = False
        self._lock = threading.Lock()

    def upload(self, key: str, data: bytes, content_type: str, upsert: bool = True) -> None:
        if self.fail_uploads:
            raise StorageError("upload disabled")
        with self._lock:
            if key in self.objects and not upsert:
                raise StorageError("exists")
            self.objects[key] = data
            self.content_types[key] = content_type
            self.uploads.append(key)

    def sign_url(self, key: str, ttl_seconds: int) -> str:
        if self.fail_signing:
            raise StorageError("signing disabled")
        return f"https://signed.example/{key}?ttl={ttl_seconds}"


class FakeGateway:
    """Provider gateway answering from a per-ref script.

    Each script entry is a payload dict (normalized like a real response)
    or an exception instance to raise.
    """

    def __init__(self):
        self.responses: Dict[str, Any] = {}
        self.calls: List[str] = []
        self.barrier: Optional[threading.Barrier] = None
        self.submitted: List[Dict[str, Any]] = []
        self.submit_response: Any = None
        self._lock = threading.Lock()

    def normalize(self, payload: Any) -> StatusEnvelope:
        return normalize_envelope(payload)

    def query_status(self, ref: str) -> StatusEnvelope:
        with self._lock:
            self.calls.append(ref)
        if self.barrier is not None:
            self.barrier.wait(timeout=10)
        response = self.responses.get(ref, {"status": "running"})
        if isinstance(response, Exception):
            raise response
        return self.normalize(response)

    def submit(self, payload: Dict[str, Any]) -> SubmitResult:
        self.submitted.append(payload)
        if isinstance(self.submit_response, Exception):
            raise self.submit_response
        data = self.submit_response or {"id": f"ext-{len(self.submitted)}", "status": "preparing"}
        return SubmitResult(
            external_job_ref=str(data["id"]),
            envelope=self.normalize(data),
            raw=data,
        )


class TransientHost:
    """httpx transport serving provider-hosted songs."""

    def __init__(self):
        self.fail_with: Optional[int] = None
        self.requests: List[str] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(str(request.url))
        if self.fail_with is not None:
            return httpx.Response(self.fail_with, text="gone")
        return httpx.Response(200, content=SONG_BYTES, headers={"content-type": "audio/mpeg"})


@pytest.fixture
def db_path(tmp_path):
    path = os.path.join(str(tmp_path), "test.db")
    initialize_schema(path)
    return path


@pytest.fixture
def repository(db_path):
    return JobRepository(db_path)


@pytest.fixture
def blob_store():
    return MemoryBlobStore()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def transient_host():
    return TransientHost()


@pytest.fixture
def persister(repository, blob_store, transient_host):
    client = httpx.Client(transport=httpx.MockTransport(transient_host))
    return ArtifactPersister(repository, blob_store, client=client)


@pytest.fixture
def engine(repository, gateway, persister, blob_store):
    return ReconciliationEngine(
        repository=repository,
        gateway=gateway,
        persister=persister,
        blob_store=blob_store,
        signed_url_ttl=900,
    )


@pytest.fixture
def make_ledger(db_path):
    def _make(customer_id: str, allowance: int, consumed: int = 0) -> QuotaLedger:
        return upsert_ledger(
            QuotaLedger(
                customer_id=customer_id,
                allowance_per_period=allowance,
                consumed_count=consumed,
                plan_id="test",
                plan_name="Test Plan",
            ),
            db_path=db_path,
            reset_usage=True,
        )
    return _make


@pytest.fixture
def make_job(repository):
    def _make(customer_id: str, ref: str, status: JobStatus = JobStatus.PREPARING, **kwargs):
        return repository.create(customer_id=customer_id, external_job_ref=ref, status=status, **kwargs)
    return _make
