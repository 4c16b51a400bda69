from __future__ import annotations

import logging
from typing import Any, Optional
from urllib.parse import quote

import httpx

logger = logging.getLogger(__name__)

SORTABLE_FIELDS = {"created_at", "downloads", "updated_at"}
SORT_ORDERS = {"ASC", "DESC"}


class RegistryError(RuntimeError):
    """Raised when the package registry cannot be reached or returns garbage."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code

    @property
    def invalid(self) -> bool:
        """True when the registry answered but the payload was unusable."""

        return str(self).startswith("invalid_")


class PackageRegistryClient:
    """Thin httpx client for the public addon registry."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    # ------------------------------------------------------------------
    # Raw endpoints
    # ------------------------------------------------------------------
    def list_packages(self, params: Optional[dict[str, str]] = None) -> dict[str, Any]:
        data = self._get_json("/packages", params=params)
        packages = data.get("packages") if isinstance(data, dict) else None
        if not isinstance(packages, list):
            raise RegistryError("invalid_package_list")
        return data

    def packages_by_tag(self, tag: str) -> dict[str, Any]:
        data = self._get_json(f"/packages/tag/{quote(tag, safe='')}")
        packages = data.get("packages") if isinstance(data, dict) else None
        if not isinstance(packages, list):
            raise RegistryError("invalid_package_list")
        return data

    def get_package(self, identifier: str, *, timeout: Optional[float] = None) -> Optional[dict[str, Any]]:
        """Return ``{package, versions, latest_version}`` or None when the registry has no such package."""

        try:
            data = self._get_json(f"/packages/{quote(identifier, safe='')}", timeout=timeout)
        except RegistryError as exc:
            if exc.status_code is not None:
                return None
            raise
        if not isinstance(data, dict) or not isinstance(data.get("package"), dict):
            return None
        return data

    def download(self, url: str, *, timeout: Optional[float] = None) -> bytes:
        try:
            with self._client(timeout) as client:
                response = client.get(url, follow_redirects=True)
        except httpx.HTTPError as exc:
            logger.warning("Registry download failed for %s: %s", url, exc)
            raise RegistryError(str(exc)) from exc
        if response.status_code >= 400:
            raise RegistryError(f"HTTP {response.status_code}", status_code=response.status_code)
        return response.content

    def absolute_url(self, path: Optional[str]) -> Optional[str]:
        if not path:
            return None
        if path.startswith(("http://", "https://")):
            return path
        return f"{self.base_url}{path if path.startswith('/') else '/' + path}"

    # ------------------------------------------------------------------
    # Presentation
    # ------------------------------------------------------------------
    def format_package(self, pkg: dict[str, Any]) -> dict[str, Any]:
        latest = pkg.get("latest_version") or {}
        return {
            "id": pkg.get("id"),
            "identifier": pkg.get("name") or "",
            "name": pkg.get("display_name") or pkg.get("name") or "",
            "description": pkg.get("description"),
            "icon": _secure_icon(pkg.get("icon_url")),
            "website": pkg.get("website"),
            "author": pkg.get("author"),
            "author_email": pkg.get("author_email"),
            "maintainers": pkg.get("maintainers") or [],
            "tags": pkg.get("tags") or [],
            "verified": _flag(pkg.get("verified")) == 1,
            "premium": _flag(pkg.get("premium")),
            "premium_link": pkg.get("premium_link"),
            "premium_price": pkg.get("premium_price"),
            "downloads": pkg.get("downloads") or 0,
            "created_at": pkg.get("created_at"),
            "updated_at": pkg.get("updated_at"),
            "latest_version": {
                "version": latest.get("version"),
                "download_url": self.absolute_url(latest.get("download_url")),
                "file_size": latest.get("file_size"),
                "created_at": latest.get("created_at"),
            },
        }

    def format_version(self, version: dict[str, Any]) -> dict[str, Any]:
        return {
            "id": version.get("id"),
            "version": version.get("version"),
            "download_url": self.absolute_url(version.get("download_url")),
            "file_size": version.get("file_size"),
            "file_hash": version.get("file_hash"),
            "changelog": version.get("changelog"),
            "dependencies": version.get("dependencies") or [],
            "min_panel_version": version.get("min_panel_version"),
            "max_panel_version": version.get("max_panel_version"),
            "downloads": version.get("downloads") or 0,
            "created_at": version.get("created_at"),
            "updated_at": version.get("updated_at"),
        }

    @staticmethod
    def build_list_params(
        *,
        q: Optional[str] = None,
        page: int = 1,
        per_page: int = 20,
        verified_only: bool = False,
        tags: Optional[str] = None,
        sort_by: Optional[str] = None,
        sort_order: Optional[str] = None,
    ) -> dict[str, str]:
        params: dict[str, str] = {}
        if q and q.strip():
            params["search"] = q.strip()
        if page > 0:
            params["page"] = str(page)
        if per_page > 0:
            params["per_page"] = str(per_page)
        if verified_only:
            params["verified_only"] = "true"
        if tags and tags.strip():
            params["tags"] = tags.strip()
        if sort_by and sort_by.strip() in SORTABLE_FIELDS:
            params["sort_by"] = sort_by.strip()
        order = (sort_order or "").strip().upper()
        if order in SORT_ORDERS:
            params["sort_order"] = order
        return params

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _client(self, timeout: Optional[float] = None) -> httpx.Client:
        return httpx.Client(
            base_url=self.base_url,
            timeout=timeout or self.timeout,
            transport=self._transport,
            headers={"Accept": "application/json"},
        )

    def _get_json(
        self,
        path: str,
        *,
        params: Optional[dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        try:
            with self._client(timeout) as client:
                response = client.get(path, params=params)
        except httpx.HTTPError as exc:
            logger.warning("Registry request %s failed: %s", path, exc)
            raise RegistryError(str(exc)) from exc
        try:
            body = response.json()
        except ValueError as exc:
            raise RegistryError("invalid_json", status_code=response.status_code) from exc
        if response.status_code >= 400:
            raise RegistryError(f"HTTP {response.status_code}", status_code=response.status_code)
        if not isinstance(body, dict):
            raise RegistryError("invalid_payload", status_code=response.status_code)
        return body.get("data") or {}


def _flag(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 1 if value is True else 0


def _secure_icon(icon: Any) -> Optional[str]:
    if isinstance(icon, str) and icon.startswith("http://"):
        return "https://" + icon[len("http://"):]
    return icon or None


__all__ = ["PackageRegistryClient", "RegistryError"]
