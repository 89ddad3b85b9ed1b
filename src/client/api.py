"""HTTP client for the module lock API."""

from collections.abc import Callable
from typing import Any

import httpx
import structlog

from src.coordination.errors import LockBackendError, ReadOnlyModuleError, UnknownModuleError
from src.coordination.models import (
    AcquireResult,
    Identity,
    LockKey,
    LockStatus,
    VersionRecord,
)

logger = structlog.get_logger()


class LockApiClient:
    """Talks to the lock service on behalf of one signed-in user.

    Method signatures match ``LockService`` so a session manager can use
    either. The caller's identity travels in the bearer token; the
    ``requester`` arguments are accepted for that symmetry only.
    """

    def __init__(
        self,
        base_url: str,
        token: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={"Authorization": f"Bearer {token}"},
            timeout=timeout,
            transport=transport,
        )

    async def _request(
        self,
        method: str,
        path: str,
        parse: Callable[[Any], Any] | None = None,
        allow_missing: bool = False,
        **kwargs: Any,
    ) -> Any:
        """Make authenticated request to the lock API and decode the reply."""
        try:
            resp = await self.client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise LockBackendError(f"{method} {path} failed: {e}") from e

        if resp.status_code == 404:
            if allow_missing:
                return None
            raise UnknownModuleError(path.split("/")[3])
        if resp.status_code >= 400 and resp.status_code != 409:
            raise LockBackendError(f"{method} {path} returned {resp.status_code}")

        try:
            data = resp.json() if resp.content else None
            if resp.status_code == 409:
                raise ReadOnlyModuleError(path, data.get("locked_by"))
            return parse(data) if parse else data
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            # pydantic's ValidationError and JSONDecodeError are ValueErrors
            raise LockBackendError(f"{method} {path} returned a malformed reply: {e}") from e

    @staticmethod
    def _lock_path(key: LockKey) -> str:
        return f"/api/locks/{key.module_key}/{key.module_date.isoformat()}"

    @staticmethod
    def _versions_path(key: LockKey) -> str:
        return f"/api/versions/{key.module_key}/{key.module_date.isoformat()}"

    # === Locks ===

    async def acquire(self, key: LockKey, requester: Identity) -> AcquireResult:
        return await self._request(
            "POST", f"{self._lock_path(key)}/acquire", AcquireResult.model_validate
        )

    async def release(self, key: LockKey, requester: Identity) -> bool:
        return await self._request(
            "POST", f"{self._lock_path(key)}/release", lambda d: bool(d["released"])
        )

    async def refresh(self, key: LockKey, requester: Identity) -> bool:
        return await self._request(
            "POST", f"{self._lock_path(key)}/refresh", lambda d: bool(d["refreshed"])
        )

    async def get_status(self, key: LockKey, viewer_id: str | None) -> LockStatus:
        return await self._request("GET", self._lock_path(key), LockStatus.model_validate)

    # === Versions ===

    async def save_version(self, key: LockKey, requester: Identity, snapshot: Any) -> int:
        return await self._request(
            "POST",
            self._versions_path(key),
            lambda d: int(d["version_number"]),
            json={"data_snapshot": snapshot},
        )

    async def list_versions(self, key: LockKey, limit: int | None = None) -> list[VersionRecord]:
        params = {"limit": limit} if limit else None
        return await self._request(
            "GET",
            self._versions_path(key),
            lambda d: [VersionRecord.model_validate(v) for v in d],
            params=params,
        )

    async def load_version(self, key: LockKey, version_number: int) -> VersionRecord | None:
        return await self._request(
            "GET",
            f"{self._versions_path(key)}/{version_number}",
            VersionRecord.model_validate,
            allow_missing=True,
        )

    async def close(self) -> None:
        await self.client.aclose()
