from __future__ import annotations

import logging
from typing import Optional
from urllib.parse import quote

import httpx

logger = logging.getLogger(__name__)


class CloudError(RuntimeError):
    """Failure reported by (or while talking to) the FeatherCloud panel API."""

    def __init__(self, message: str, error_code: str, status_code: int = 500) -> None:
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code


class CloudClient:
    """Client for premium package downloads, authenticated with the panel key pair."""

    def __init__(
        self,
        public_key: str,
        private_key: str,
        *,
        base_url: str,
        timeout: float = 60.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.public_key = (public_key or "").strip()
        self.private_key = (private_key or "").strip()
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def is_configured(self) -> bool:
        return bool(self.public_key and self.private_key)

    def download_premium_package(self, package_name: str, version: str) -> bytes:
        if not self.is_configured():
            raise CloudError("FeatherCloud credentials are not configured", "CREDENTIALS_NOT_CONFIGURED", 503)

        path = f"/panel/packages/{quote(package_name, safe='')}/premium/download/{quote(version, safe='')}"
        headers = {
            "X-Panel-Public-Key": self.public_key,
            "X-Panel-Private-Key": self.private_key,
            "Accept": "*/*",
        }
        logger.info("Downloading premium package %s v%s", package_name, version)
        try:
            with httpx.Client(base_url=self.base_url, timeout=self.timeout, transport=self._transport) as client:
                response = client.get(path, headers=headers, follow_redirects=True)
        except httpx.HTTPError as exc:
            logger.error("Premium package download connection failed for %s: %s", package_name, exc)
            raise CloudError(f"Failed to download premium package: {exc}", "CONNECTION_FAILED", 503) from exc

        content_type = response.headers.get("content-type", "")
        if response.status_code >= 400 or ("application/json" in content_type and response.content):
            error = self._parse_error(response)
            if error is not None:
                logger.error(
                    "Premium package download failed: %s (package=%s, version=%s, status=%s)",
                    error.message,
                    package_name,
                    version,
                    error.status_code,
                )
                raise error
        if response.status_code >= 400:
            raise CloudError("Download failed", "DOWNLOAD_FAILED", response.status_code)
        return response.content

    @staticmethod
    def _parse_error(response: httpx.Response) -> Optional[CloudError]:
        try:
            body = response.json()
        except ValueError:
            return None
        if not isinstance(body, dict) or body.get("success", True):
            return None
        message = body.get("message") or body.get("error_message") or "Download failed"
        code = body.get("error") or body.get("error_code") or "DOWNLOAD_FAILED"
        return CloudError(str(message), str(code), response.status_code)


__all__ = ["CloudClient", "CloudError"]
