"""Shared async HTTP plumbing for the field backends."""

import logging
from typing import Any

import httpx

logger = logging.getLogger(__name__)


class BackendClientError(Exception):
    """Base exception for backend client errors."""

    pass


class BackendClient:
    """JSON-over-POST client. Every backend operation is a POST to a path."""

    error_class: type[BackendClientError] = BackendClientError

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        headers: dict | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.headers = headers or {}

    async def _post(self, path: str, payload: dict[str, Any] | None = None) -> Any:
        """POST ``payload`` to ``path`` and return the decoded JSON body.

        Raises:
            BackendClientError (or the subclass's error_class) on transport
            errors, non-2xx responses and undecodable bodies.
        """
        url = f"{self.base_url}{path}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, headers=self.headers) as client:
                response = await client.request("POST", url, json=payload or {})
                response.raise_for_status()
                return response.json()
        except httpx.HTTPStatusError as e:
            logger.error(
                "Backend API error: %s %s - %s", path, e.response.status_code, e.response.text
            )
            raise self.error_class(f"API error: {e.response.status_code}") from e
        except httpx.RequestError as e:
            logger.error("Backend request error: %s %s", path, e)
            raise self.error_class(f"Request error: {e}") from e
        except ValueError as e:
            logger.error("Backend returned invalid JSON: %s", path)
            raise self.error_class("Invalid JSON response") from e
