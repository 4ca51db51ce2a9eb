"""
Unit tests for the provider gateway.

HTTP is served by httpx.MockTransport; nothing leaves the process.
"""

import httpx
import pytest

from songjobs.config.loader import ProviderConfig
from songjobs.provider.gateway import (
    ProviderGateway,
    ProviderRejected,
    ProviderUnavailable,
    gateway_from_config,
)
from songjobs.storage.models import JobStatus

BASE = "https://api.provider.example"


def _gateway(handler, **kwargs):
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return ProviderGateway(base_url=BASE, api_key="sk-test", client=client, **kwargs)


class TestQueryStatus:
    """Test status queries."""

    def test_job_id_uses_status_path_and_bearer(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"status": "succeeded", "choices": [{"audio_url": "https://tmp/a.mp3"}]})

        envelope = _gateway(handler).query_status("job 1")

        assert envelope.canonical_status is JobStatus.SUCCEEDED
        assert envelope.result_location == "https://tmp/a.mp3"
        assert str(seen[0].url) == f"{BASE}/v1/song/query/job%201"
        assert seen[0].headers["Authorization"] == "Bearer sk-test"

    def test_poll_url_is_used_directly(self):
        seen = []

        def handler(request):
            seen.append(str(request.url))
            return httpx.Response(200, json={"status": "running"})

        _gateway(handler).query_status("https://poll.provider.example/jobs/77")

        assert seen == ["https://poll.provider.example/jobs/77"]

    def test_falls_through_paths_on_404(self):
        seen = []

        def handler(request):
            seen.append(request.url.path)
            if request.url.path.startswith("/v1/song/status"):
                return httpx.Response(404)
            return httpx.Response(200, json={"status": "done", "url": "https://tmp/b.mp3"})

        gateway = _gateway(handler, status_paths=("/v1/song/status/{ref}", "/v1/jobs/{ref}"))
        envelope = gateway.query_status("j1")

        assert seen == ["/v1/song/status/j1", "/v1/jobs/j1"]
        assert envelope.canonical_status is JobStatus.SUCCEEDED

    def test_all_paths_404_is_unavailable(self):
        gateway = _gateway(lambda r: httpx.Response(404), status_paths=("/a/{ref}", "/b/{ref}"))
        with pytest.raises(ProviderUnavailable) as excinfo:
            gateway.query_status("j1")
        assert excinfo.value.status_code == 404

    def test_503_is_unavailable_not_failed(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(503, text="maintenance")

        with pytest.raises(ProviderUnavailable) as excinfo:
            _gateway(handler).query_status("j1")

        assert excinfo.value.status_code == 503
        assert excinfo.value.detail == "maintenance"
        assert len(calls) == 1

    def test_transport_error_is_unavailable(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(ProviderUnavailable) as excinfo:
            _gateway(handler).query_status("j1")
        assert excinfo.value.status_code is None

    def test_non_json_body_is_unavailable(self):
        with pytest.raises(ProviderUnavailable):
            _gateway(lambda r: httpx.Response(200, text="<html>")).query_status("j1")

    def test_configured_aliases(self):
        gateway = _gateway(
            lambda r: httpx.Response(200, json={"status": "timeouted"}),
            failed_aliases=("timeouted",),
        )
        assert gateway.query_status("j1").canonical_status is JobStatus.FAILED

    def test_empty_ref(self):
        with pytest.raises(ValueError):
            _gateway(lambda r: httpx.Response(200, json={})).query_status("")


class TestSubmit:
    """Test job submission."""

    def test_submit_returns_ref_and_initial_status(self):
        bodies = []

        def handler(request):
            bodies.append(request.content)
            assert request.url.path == "/v1/song/generate"
            return httpx.Response(200, json={"id": 12345, "status": "preparing"})

        result = _gateway(handler).submit({"prompt": "rock", "model": "auto"})

        assert result.external_job_ref == "12345"
        assert result.envelope.canonical_status is JobStatus.PREPARING
        assert b'"prompt"' in bodies[0]

    def test_missing_id_is_rejected(self):
        with pytest.raises(ProviderRejected):
            _gateway(lambda r: httpx.Response(200, json={"status": "queued"})).submit({"prompt": "x"})

    def test_error_status_is_unavailable(self):
        with pytest.raises(ProviderUnavailable) as excinfo:
            _gateway(lambda r: httpx.Response(429, text="slow down")).submit({"prompt": "x"})
        assert excinfo.value.status_code == 429


class TestConstruction:
    """Test gateway construction."""

    def test_api_key_required(self):
        with pytest.raises(ValueError, match="api_key is required"):
            ProviderGateway(base_url=BASE, api_key="")

    def test_from_config_reads_env(self, monkeypatch):
        monkeypatch.setenv("TEST_PROVIDER_KEY", "sk-env")
        config = ProviderConfig(base_url=BASE, api_key_env="TEST_PROVIDER_KEY")

        gateway = gateway_from_config(config, client=httpx.Client(transport=httpx.MockTransport(lambda r: httpx.Response(200))))

        assert gateway.base_url == BASE
        assert gateway.status_paths == ("/v1/song/query/{ref}",)

    def test_from_config_missing_env(self, monkeypatch):
        monkeypatch.delenv("TEST_PROVIDER_KEY", raising=False)
        with pytest.raises(ValueError, match="TEST_PROVIDER_KEY"):
            gateway_from_config(ProviderConfig(api_key_env="TEST_PROVIDER_KEY"))
