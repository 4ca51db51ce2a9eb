"""
Unit tests for quota consumption.

Tests the atomic consume, the per-job claim, the pre-submission gate and
the customer-facing quota view.
"""

import threading

import pytest

from songjobs.core.ledger import (
    ConsumeResult,
    LedgerNotFound,
    QuotaExhausted,
    check_quota,
    quota_view,
    try_consume,
)
from songjobs.storage.models import JobStatus
from songjobs.storage.repository import get_ledger


class TestTryConsume:
    """Test the atomic read-check-increment."""

    def test_consume_decrements_remaining(self, db_path, make_ledger):
        make_ledger("C1", allowance=2)

        result = try_consume("C1", db_path=db_path)

        assert result == ConsumeResult(consumed=True, remaining=1)
        assert get_ledger("C1", db_path).consumed_count == 1

    def test_exhausted_does_not_mutate(self, db_path, make_ledger):
        make_ledger("C1", allowance=1, consumed=1)

        result = try_consume("C1", db_path=db_path)

        assert result == ConsumeResult(consumed=False, remaining=0)
        assert get_ledger("C1", db_path).consumed_count == 1

    def test_unlimited_never_touches_counter(self, db_path, make_ledger):
        """Unlimited always consumes and reports -1."""
        make_ledger("C2", allowance=-1)

        for _ in range(3):
            result = try_consume("C2", db_path=db_path)
            assert result.consumed is True
            assert result.remaining == -1

        assert get_ledger("C2", db_path).consumed_count == 0

    def test_missing_ledger(self, db_path):
        with pytest.raises(LedgerNotFound) as excinfo:
            try_consume("nobody", db_path=db_path)
        assert excinfo.value.customer_id == "nobody"

    def test_concurrent_consumers_never_exceed_allowance(self, db_path, make_ledger):
        make_ledger("C1", allowance=3)
        results = []
        lock = threading.Lock()

        def consume():
            r = try_consume("C1", db_path=db_path)
            with lock:
                results.append(r)

        threads = [threading.Thread(target=consume) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        assert sum(1 for r in results if r.consumed) == 3
        assert get_ledger("C1", db_path).consumed_count == 3


class TestJobAttribution:
    """Test the per-job claim made inside the consume transaction."""

    def test_job_charged_once(self, db_path, make_ledger, make_job, repository):
        make_ledger("C1", allowance=5)
        job = make_job("C1", "J1", status=JobStatus.SUCCEEDED, result_url="https://tmp/a.mp3")

        first = try_consume("C1", job_id=job.internal_id, db_path=db_path)
        second = try_consume("C1", job_id=job.internal_id, db_path=db_path)

        assert first.consumed is True
        assert second.consumed is False
        assert second.already_consumed is True
        assert second.remaining == 4
        assert get_ledger("C1", db_path).consumed_count == 1
        assert repository.get(job.internal_id).consumed is True

    def test_exhaustion_releases_claim(self, db_path, make_ledger, make_job, repository):
        make_ledger("C1", allowance=0)
        job = make_job("C1", "J1")

        result = try_consume("C1", job_id=job.internal_id, db_path=db_path)

        assert result.consumed is False
        assert result.already_consumed is False
        assert repository.get(job.internal_id).consumed is False

    def test_missing_ledger_keeps_claim(self, db_path, make_job, repository):
        job = make_job("C9", "J1")

        with pytest.raises(LedgerNotFound):
            try_consume("C9", job_id=job.internal_id, db_path=db_path)

        assert repository.get(job.internal_id).consumed is True

    def test_unknown_job_is_rejected(self, db_path, make_ledger):
        make_ledger("C1", allowance=5)
        with pytest.raises(ValueError, match="Unknown job"):
            try_consume("C1", job_id="missing", db_path=db_path)
        assert get_ledger("C1", db_path).consumed_count == 0

    def test_racing_claims_charge_once(self, db_path, make_ledger, make_job):
        make_ledger("C1", allowance=10)
        job = make_job("C1", "J1")
        results = []
        lock = threading.Lock()

        def consume():
            r = try_consume("C1", job_id=job.internal_id, db_path=db_path)
            with lock:
                results.append(r)

        threads = [threading.Thread(target=consume) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        assert sum(1 for r in results if r.consumed) == 1
        assert get_ledger("C1", db_path).consumed_count == 1


class TestPreSubmissionGate:
    """Test check_quota."""

    def test_allows_when_remaining(self, db_path, make_ledger):
        make_ledger("C1", allowance=1)
        assert check_quota("C1", db_path).customer_id == "C1"

    def test_allows_unlimited(self, db_path, make_ledger):
        make_ledger("C2", allowance=-1, consumed=0)
        assert check_quota("C2", db_path).unlimited is True

    def test_refuses_when_exhausted(self, db_path, make_ledger):
        make_ledger("C1", allowance=2, consumed=2)
        with pytest.raises(QuotaExhausted):
            check_quota("C1", db_path)

    def test_refuses_without_ledger(self, db_path):
        with pytest.raises(LedgerNotFound):
            check_quota("C1", db_path)


class TestQuotaView:
    """Test the customer-facing quota summary."""

    def test_missing_ledger_is_not_an_error(self, db_path):
        view = quota_view("C1", db_path)
        assert view.entitled is False
        assert view.reason == "no_entitlement_record"

    def test_limited_plan(self, db_path, make_ledger):
        make_ledger("C1", allowance=5, consumed=2)

        view = quota_view("C1", db_path)

        assert view.entitled is True
        assert view.remaining == 3
        assert view.unlimited is False
        assert view.plan_name == "Test Plan"

    def test_unlimited_plan(self, db_path, make_ledger):
        make_ledger("C2", allowance=-1)

        view = quota_view("C2", db_path)

        assert view.entitled is True
        assert view.unlimited is True
        assert view.remaining == -1

    def test_reports_unbilled_jobs(self, db_path, make_ledger, make_job):
        make_ledger("C1", allowance=1, consumed=1)
        make_job("C1", "J1", status=JobStatus.SUCCEEDED, result_url="https://tmp/a.mp3")
        make_job("C1", "J2", status=JobStatus.RUNNING)

        view = quota_view("C1", db_path)

        assert view.entitled is False
        assert view.unbilled_jobs == 1
