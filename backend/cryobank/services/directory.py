"""Async HTTP client for the external user and patient directory.

Read-only. Connection failures and 5xx responses are transient and
retried with exponential backoff; a 404 means the record does not exist.
Any other 4xx (bad token, forbidden) is a DirectoryError and not retried.
"""

import logging
import uuid
from typing import Any

import httpx
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from cryobank.config import settings
from cryobank.core.errors import DirectoryError, NotFoundError, TransientIOError

logger = logging.getLogger(__name__)


class DirectoryClient:
    """Thin async wrapper around the directory service REST API."""

    def __init__(
        self,
        base_url: str,
        token: str = "",
        timeout: float = 10.0,
        retry_attempts: int = 3,
        transport: httpx.AsyncBaseTransport | None = None,
        wait=None,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self.retry_attempts = retry_attempts
        self.transport = transport
        self.wait = wait or wait_exponential(multiplier=0.5, min=0.5, max=5)

    @classmethod
    def from_settings(cls) -> "DirectoryClient | None":
        if not settings.DIRECTORY_SERVICE_URL:
            return None
        return cls(
            settings.DIRECTORY_SERVICE_URL,
            token=settings.DIRECTORY_API_TOKEN,
            timeout=settings.DIRECTORY_TIMEOUT_SECONDS,
            retry_attempts=settings.DIRECTORY_RETRY_ATTEMPTS,
        )

    async def _request(self, path: str, **kwargs) -> httpx.Response:
        """One GET against the directory, mapping failures to domain errors."""
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        async with httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self.transport,
        ) as client:
            try:
                resp = await client.get(path, headers=headers, **kwargs)
            except httpx.TransportError as exc:
                logger.warning("Directory request %s failed: %s", path, exc)
                raise TransientIOError("Directory service unreachable.") from exc

        if resp.status_code == 404:
            raise NotFoundError(f"Directory record not found: {path}")
        if resp.status_code >= 500:
            logger.warning(
                "Directory request %s returned %d", path, resp.status_code
            )
            raise TransientIOError(
                f"Directory service error ({resp.status_code})."
            )
        if resp.status_code >= 400:
            logger.warning(
                "Directory request %s rejected with %d", path, resp.status_code
            )
            raise DirectoryError(
                f"Directory service rejected the request ({resp.status_code}).",
                details=[{"path": path, "status": resp.status_code}],
            )
        return resp

    async def _get(self, path: str, **kwargs) -> Any:
        """GET with retries; only transient failures are retried."""
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.retry_attempts),
            wait=self.wait,
            retry=retry_if_exception_type(TransientIOError),
            reraise=True,
        ):
            with attempt:
                resp = await self._request(path, **kwargs)
        return resp.json()

    async def get_user(self, user_id: uuid.UUID) -> dict[str, Any]:
        return await self._get(f"/users/{user_id}")

    async def list_users(self, role: str | None = None) -> list[dict[str, Any]]:
        params = {"role": role} if role else {}
        data = await self._get("/users", params=params)
        # Either a bare list or the {"data": [...]} envelope.
        return data.get("data", []) if isinstance(data, dict) else data

    async def get_patient(self, patient_id: uuid.UUID) -> dict[str, Any]:
        return await self._get(f"/patients/{patient_id}")

    async def ensure_users_exist(self, *user_ids: uuid.UUID) -> None:
        """Raise NotFoundError if any of ``user_ids`` is unknown."""
        for user_id in dict.fromkeys(user_ids):
            await self.get_user(user_id)
