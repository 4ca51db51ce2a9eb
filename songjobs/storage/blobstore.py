"""
Durable blob storage.

Persisted songs live in a private bucket and are only handed out through
time-limited signed URLs. Two backends are provided: a local directory
with HMAC-signed URLs, and Supabase Storage over its REST API.
"""

import hashlib
import hmac
import os
import tempfile
import time
from pathlib import Path
from typing import Optional, Protocol
from urllib.parse import parse_qs, quote, unquote, urlencode, urlparse

import httpx

from songjobs.config.loader import AppConfig, StorageBackend, StorageConfig


class StorageError(Exception):
    """Upload or URL signing failed."""


class BlobStore(Protocol):
    def upload(self, key: str, data: bytes, content_type: str, upsert: bool = True) -> None:
        ...

    def sign_url(self, key: str, ttl_seconds: int) -> str:
        ...


def _check_key(key: str) -> str:
    if not key or key.startswith("/") or ".." in key.split("/"):
        raise StorageError(f"Invalid storage key: {key!r}")
    return key


class LocalBlobStore:
    """Filesystem-backed store.

    Signed URLs carry an ``expires`` epoch and an HMAC-SHA256 signature
    over ``key:expires``; ``verify_signed_url`` checks both.
    """

    def __init__(self, root: str, public_base_url: str, signing_secret: str):
        if not signing_secret:
            raise ValueError("signing_secret is required and cannot be empty")
        self.root = Path(root)
        self.public_base_url = public_base_url.rstrip("/")
        self._secret = signing_secret.encode("utf-8")

    def path_for(self, key: str) -> Path:
        return self.root / _check_key(key)

    def upload(self, key: str, data: bytes, content_type: str, upsert: bool = True) -> None:
        target = self.path_for(key)
        if target.exists() and not upsert:
            raise StorageError(f"Object already exists: {key}")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            # Write then rename so readers never see a half-written file.
            fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=".upload-")
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(data)
                os.replace(tmp_name, target)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
        except OSError as e:
            raise StorageError(f"Upload of {key} failed: {e}") from e

    def read(self, key: str) -> bytes:
        return self.path_for(key).read_bytes()

    def _signature(self, key: str, expires: int) -> str:
        message = f"{key}:{expires}".encode("utf-8")
        return hmac.new(self._secret, message, hashlib.sha256).hexdigest()

    def sign_url(self, key: str, ttl_seconds: int) -> str:
        _check_key(key)
        expires = int(time.time()) + ttl_seconds
        query = urlencode({"expires": expires, "signature": self._signature(key, expires)})
        return f"{self.public_base_url}/{quote(key)}?{query}"

    def verify_signed_url(self, url: str, now: Optional[float] = None) -> Optional[str]:
        """Return the key a signed URL grants access to, or None if invalid or expired."""
        parsed = urlparse(url)
        prefix = urlparse(self.public_base_url).path.rstrip("/") + "/"
        if not parsed.path.startswith(prefix):
            return None
        key = unquote(parsed.path[len(prefix):])
        params = parse_qs(parsed.query)
        try:
            expires = int(params["expires"][0])
            signature = params["signature"][0]
        except (KeyError, IndexError, ValueError):
            return None
        if expires < (now if now is not None else time.time()):
            return None
        if not hmac.compare_digest(signature, self._signature(key, expires)):
            return None
        return key


class SupabaseBlobStore:
    """Supabase Storage via its REST API."""

    def __init__(self, url: str, service_key: str, bucket: str, client: Optional[httpx.Client] = None):
        if not url or not service_key:
            raise ValueError("Supabase url and service key are required")
        self.url = url.rstrip("/")
        self.bucket = bucket
        self._service_key = service_key
        self.client = client or httpx.Client(timeout=httpx.Timeout(None))

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self._service_key}",
            "apikey": self._service_key,
        }

    def upload(self, key: str, data: bytes, content_type: str, upsert: bool = True) -> None:
        endpoint = f"{self.url}/storage/v1/object/{self.bucket}/{quote(_check_key(key))}"
        headers = self._headers()
        headers["Content-Type"] = content_type
        headers["x-upsert"] = "true" if upsert else "false"
        try:
            response = self.client.post(endpoint, content=data, headers=headers)
        except httpx.HTTPError as e:
            raise StorageError(f"Upload of {key} failed: {e}") from e
        if not response.is_success:
            raise StorageError(f"Upload of {key} returned HTTP {response.status_code}: {response.text[:200]}")

    def sign_url(self, key: str, ttl_seconds: int) -> str:
        endpoint = f"{self.url}/storage/v1/object/sign/{self.bucket}/{quote(_check_key(key))}"
        try:
            response = self.client.post(endpoint, json={"expiresIn": ttl_seconds}, headers=self._headers())
        except httpx.HTTPError as e:
            raise StorageError(f"Signing {key} failed: {e}") from e
        if not response.is_success:
            raise StorageError(f"Signing {key} returned HTTP {response.status_code}")
        try:
            signed = response.json()["signedURL"]
        except (ValueError, KeyError, TypeError) as e:
            raise StorageError(f"Signing {key} returned an unexpected body") from e
        return f"{self.url}/storage/v1{signed}"


def blob_store_from_config(storage: StorageConfig) -> BlobStore:
    """Build the configured backend, reading secrets from the environment.

    Raises:
        ValueError: If a required secret variable is unset
    """
    if storage.backend is StorageBackend.SUPABASE:
        url = os.getenv(storage.url_env)
        service_key = os.getenv(storage.service_key_env)
        if not url or not service_key:
            raise ValueError(
                f"Missing storage credentials: set {storage.url_env} and {storage.service_key_env}"
            )
        return SupabaseBlobStore(url, service_key, storage.bucket)

    secret = os.getenv(storage.signing_secret_env)
    if not secret:
        raise ValueError(f"Missing signing secret: set {storage.signing_secret_env}")
    return LocalBlobStore(
        root=str(Path(storage.root) / storage.bucket),
        public_base_url=storage.public_base_url,
        signing_secret=secret,
    )


# Global blob store instance
_default_store: Optional[BlobStore] = None


def get_blob_store(config: AppConfig) -> BlobStore:
    """Get the process-wide blob store, creating it on first use."""
    global _default_store
    if _default_store is None:
        _default_store = blob_store_from_config(config.storage)
    return _default_store
