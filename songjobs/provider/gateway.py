"""
Generation provider gateway.

Talks to the remote song generation service over HTTP and turns its
responses into canonical envelopes. A failed request is reported as
``ProviderUnavailable`` and never as a failed job. No retries happen
here; the caller polls again.
"""

import os
from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence
from urllib.parse import quote

import httpx

from songjobs.config.loader import AppConfig, ProviderConfig
from songjobs.logging_config import StructuredLogger

from .normalize import StatusEnvelope, is_absolute_url, normalize_envelope

logger = StructuredLogger(__name__)


class ProviderUnavailable(Exception):
    """The provider could not be reached or gave no usable answer.

    This is a "try again" signal, not a job outcome.
    """

    def __init__(self, message: str, status_code: Optional[int] = None, detail: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail


class ProviderRejected(Exception):
    """The provider answered a submission without accepting a job."""

    def __init__(self, message: str, detail: Any = None):
        super().__init__(message)
        self.detail = detail


@dataclass(frozen=True)
class SubmitResult:
    """Provider's answer to a new generation request."""
    external_job_ref: str
    envelope: StatusEnvelope
    raw: Dict[str, Any]


class ProviderGateway:
    """HTTP client for the generation provider.

    Holds the bearer credential; callers never see it.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        status_paths: Sequence[str] = ("/v1/song/query/{ref}",),
        submit_path: str = "/v1/song/generate",
        timeout: Optional[float] = None,
        succeeded_aliases: Sequence[str] = (),
        failed_aliases: Sequence[str] = (),
        client: Optional[httpx.Client] = None,
    ):
        """Initialize the gateway.

        Args:
            base_url: Provider API root
            api_key: Bearer credential
            status_paths: Status endpoint templates containing ``{ref}``,
                tried in order; the next one is used only on HTTP 404
            submit_path: Endpoint for new generation requests
            timeout: Per-request timeout in seconds, or None for no limit
            succeeded_aliases: Extra provider words meaning success
            failed_aliases: Extra provider words meaning failure
            client: Preconfigured httpx client (tests inject a mock transport)

        Raises:
            ValueError: If api_key is missing
        """
        if not api_key or not api_key.strip():
            raise ValueError("api_key is required and cannot be empty")
        if not status_paths:
            raise ValueError("status_paths must not be empty")

        self.base_url = base_url.rstrip("/")
        self.status_paths = tuple(status_paths)
        self.submit_path = submit_path
        self.succeeded_aliases = tuple(succeeded_aliases)
        self.failed_aliases = tuple(failed_aliases)
        self._api_key = api_key
        self.client = client or httpx.Client(timeout=httpx.Timeout(timeout))

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_key}",
            "Accept": "application/json",
        }

    def _status_urls(self, ref: str):
        if is_absolute_url(ref):
            yield ref.strip()
            return
        for template in self.status_paths:
            yield self.base_url + template.format(ref=quote(ref, safe=""))

    def normalize(self, payload: Any) -> StatusEnvelope:
        """Normalize a provider payload with this gateway's status aliases."""
        return normalize_envelope(payload, self.succeeded_aliases, self.failed_aliases)

    def query_status(self, ref: str) -> StatusEnvelope:
        """Fetch a job's current status.

        Args:
            ref: Provider job id, or a fully-qualified poll URL

        Returns:
            Canonical status envelope

        Raises:
            ProviderUnavailable: On transport errors, non-2xx responses, or
                bodies that are not JSON
        """
        if not ref or not ref.strip():
            raise ValueError("ref is required and cannot be empty")

        response = None
        for url in self._status_urls(ref):
            try:
                response = self.client.get(url, headers=self._headers())
            except httpx.HTTPError as e:
                logger.warning("provider status request failed", ref=ref, error=str(e))
                raise ProviderUnavailable(f"Provider request failed: {e}") from e
            if response.status_code != 404:
                break

        if not response.is_success:
            logger.warning(
                "provider status request rejected",
                ref=ref,
                status_code=response.status_code,
            )
            raise ProviderUnavailable(
                f"Provider status query returned HTTP {response.status_code}",
                status_code=response.status_code,
                detail=response.text[:500],
            )

        payload = self._decode(response)
        envelope = self.normalize(payload)
        logger.debug(
            "provider status",
            ref=ref,
            raw_status=envelope.raw_status,
            canonical_status=envelope.canonical_status.value,
            has_result=envelope.result_location is not None,
        )
        return envelope

    def submit(self, payload: Dict[str, Any]) -> SubmitResult:
        """Submit a new generation request.

        Args:
            payload: Request body forwarded to the provider

        Returns:
            SubmitResult with the provider's job reference and initial status

        Raises:
            ProviderUnavailable: On transport errors or non-2xx responses
            ProviderRejected: If the response carries no job id
        """
        try:
            response = self.client.post(
                self.base_url + self.submit_path,
                json=payload,
                headers=self._headers(),
            )
        except httpx.HTTPError as e:
            logger.warning("provider submit failed", error=str(e))
            raise ProviderUnavailable(f"Provider request failed: {e}") from e

        if not response.is_success:
            raise ProviderUnavailable(
                f"Provider submit returned HTTP {response.status_code}",
                status_code=response.status_code,
                detail=response.text[:500],
            )

        data = self._decode(response)
        job_id = data.get("id") if isinstance(data, dict) else None
        if job_id is None or str(job_id).strip() == "":
            raise ProviderRejected("Provider response missing 'id'", detail=data)

        return SubmitResult(
            external_job_ref=str(job_id),
            envelope=self.normalize(data),
            raw=data,
        )

    def _decode(self, response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise ProviderUnavailable(
                "Provider returned a non-JSON body",
                status_code=response.status_code,
                detail=response.text[:500],
            ) from e


def gateway_from_config(provider: ProviderConfig, client: Optional[httpx.Client] = None) -> ProviderGateway:
    """Build a gateway, reading the credential from the configured env var.

    Raises:
        ValueError: If the credential variable is unset
    """
    api_key = os.getenv(provider.api_key_env)
    if not api_key:
        raise ValueError(f"Missing provider credential: set {provider.api_key_env}")
    return ProviderGateway(
        base_url=provider.base_url,
        api_key=api_key,
        status_paths=provider.status_paths,
        submit_path=provider.submit_path,
        timeout=provider.timeout_seconds,
        succeeded_aliases=provider.succeeded_aliases,
        failed_aliases=provider.failed_aliases,
        client=client,
    )


# Global gateway instance
_default_gateway: Optional[ProviderGateway] = None


def get_gateway(config: AppConfig) -> ProviderGateway:
    """Get the process-wide gateway, creating it on first use."""
    global _default_gateway
    if _default_gateway is None:
        _default_gateway = gateway_from_config(config.provider)
    return _default_gateway
