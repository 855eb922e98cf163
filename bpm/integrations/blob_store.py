"""
BunnyCDN Storage Gateway — task file uploads.

All outbound HTTP calls to the blob store go through this class.
Direct `requests` calls in services or blueprints are FORBIDDEN.

Contract:
    put(content, path, content_type) -> public URL

    - Not configured → ConfigurationError (checked before any I/O).
    - Network failure or non-2xx → ExternalServiceError.
    - No retries: a failed upload aborts only the upload.

Configuration (Flask config / env vars):
    BUNNY_STORAGE_ZONE        storage zone name (required)
    BUNNY_ACCESS_KEY          storage zone password (required)
    BUNNY_CDN_HOST            full public URL prefix, e.g. https://cdn.example.com
    BUNNY_CDN_HOSTNAME        bare hostname, used when BUNNY_CDN_HOST is unset
    BUNNY_STORAGE_REGION      region prefix ("la", "sg", ...); empty = Falkenstein
    BUNNY_STORAGE_API_HOST    explicit storage API host, overrides the region

Testability: pass a mock `session` to BunnyStorageGateway() in tests
instead of letting it create a real requests.Session internally.

Usage:
    from bpm.integrations.blob_store import get_blob_store

    store = get_blob_store()
    url = store.put(data, f"bpm/tasks/{task_id}/{filename}", "application/pdf")
"""

from __future__ import annotations

import logging
import time

import requests
from flask import current_app

from bpm.core.exceptions import ConfigurationError, ExternalServiceError

logger = logging.getLogger(__name__)

_DEFAULT_TIMEOUT = 60

NOT_CONFIGURED_MESSAGE = (
    "File upload is not configured "
    "(BUNNY_STORAGE_ZONE, BUNNY_ACCESS_KEY, and BUNNY_CDN_HOST or BUNNY_CDN_HOSTNAME)"
)


def _strip_scheme(host: str) -> str:
    for prefix in ("https://", "http://"):
        if host.startswith(prefix):
            host = host[len(prefix):]
    return host.rstrip("/")


class BunnyStorageGateway:
    """BunnyCDN Storage API gateway.

    Usage:
        gateway = BunnyStorageGateway.from_config(app.config)
        if gateway.is_configured():
            url = gateway.put(b"...", "bpm/tasks/t1/report.pdf", "application/pdf")
    """

    service_name = "bunny_storage"

    def __init__(
        self,
        *,
        storage_zone: str | None = None,
        access_key: str | None = None,
        cdn_host: str | None = None,
        cdn_hostname: str | None = None,
        region: str | None = None,
        api_host: str | None = None,
        session: requests.Session | None = None,
        timeout: int = _DEFAULT_TIMEOUT,
    ) -> None:
        self.storage_zone = storage_zone or None
        self.access_key = access_key or None
        self.region = (region or "").strip()
        self.api_host = _strip_scheme(api_host) if api_host else None
        self.timeout = timeout
        self._session = session

        if cdn_host:
            self.cdn_host = cdn_host.rstrip("/")
        elif cdn_hostname:
            self.cdn_host = f"https://{cdn_hostname.rstrip('/')}"
        else:
            self.cdn_host = None

    @classmethod
    def from_config(cls, config, session: requests.Session | None = None) -> "BunnyStorageGateway":
        """Build a gateway from a Flask config mapping."""
        return cls(
            storage_zone=config.get("BUNNY_STORAGE_ZONE"),
            access_key=config.get("BUNNY_ACCESS_KEY"),
            cdn_host=config.get("BUNNY_CDN_HOST"),
            cdn_hostname=config.get("BUNNY_CDN_HOSTNAME"),
            region=config.get("BUNNY_STORAGE_REGION"),
            api_host=config.get("BUNNY_STORAGE_API_HOST"),
            session=session,
        )

    # ── HTTP session ─────────────────────────────────────────────────────────

    @property
    def session(self) -> requests.Session:
        """Return (or lazily create) the requests.Session."""
        if self._session is None:
            self._session = requests.Session()
        return self._session

    # ── Public API ───────────────────────────────────────────────────────────

    def is_configured(self) -> bool:
        return bool(self.storage_zone and self.access_key and self.cdn_host)

    @property
    def storage_host(self) -> str:
        if self.api_host:
            return f"https://{self.api_host}"
        prefix = f"{self.region}." if self.region else ""
        return f"https://{prefix}storage.bunnycdn.com"

    def public_url(self, path: str) -> str:
        return f"{self.cdn_host}/{path.lstrip('/')}"

    def put(self, content: bytes, path: str, content_type: str) -> str:
        """
        Upload ``content`` to ``path`` inside the storage zone.

        Returns:
            The public CDN URL of the stored object.

        Raises:
            ConfigurationError: Zone, access key or CDN host missing.
            ExternalServiceError: Network failure or non-2xx response.
        """
        if not self.is_configured():
            raise ConfigurationError(NOT_CONFIGURED_MESSAGE)

        path = path.lstrip("/")
        url = f"{self.storage_host}/{self.storage_zone}/{path}"
        start = time.monotonic()
        try:
            resp = self.session.put(
                url,
                data=content,
                headers={
                    "AccessKey": self.access_key,
                    "Content-Type": content_type or "application/octet-stream",
                },
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            logger.error("Blob upload failed: path=%s error=%s", path, exc)
            raise ExternalServiceError(self.service_name, f"upload failed: {exc}") from exc

        duration_ms = int((time.monotonic() - start) * 1000)
        if not resp.ok:
            logger.error(
                "Blob upload rejected: path=%s status=%s duration_ms=%s",
                path, resp.status_code, duration_ms,
            )
            raise ExternalServiceError(
                self.service_name,
                f"upload failed: {resp.status_code} {resp.text[:500]}",
                status_code=resp.status_code,
            )

        logger.info(
            "Blob uploaded: path=%s bytes=%s duration_ms=%s",
            path, len(content), duration_ms,
        )
        return self.public_url(path)


def get_blob_store():
    """Return the registered blob store, defaulting to BunnyCDN from app config."""
    store = current_app.extensions.get("bpm_blob_store")
    if store is None:
        store = BunnyStorageGateway.from_config(current_app.config)
    return store
