"""HTTP client that fires the external generation side effect."""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from .config import TriggerConfig
from .constants import ERROR_DETAIL_MAX_CHARS
from .contracts import TriggerResult
from .errors import ConfigurationError

logger = logging.getLogger(__name__)


class ExternalTriggerClient:
    """Trigger generation with a primary endpoint and one fallback.

    Both endpoints receive the same JSON body. The call only fails when both
    attempts fail; the returned error describes the last attempt.
    """

    def __init__(
        self,
        config: Optional[TriggerConfig] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.config = config or TriggerConfig()
        self._http_client = http_client

    def resolve_base_url(self, subject_base_url: Optional[str] = None) -> str:
        """Per-subject URL first, then the environment-level one."""
        base_url = subject_base_url or self.config.base_url
        if not base_url:
            raise ConfigurationError("Base URL not configured")
        return base_url.rstrip("/")

    async def trigger(
        self,
        correlation_id: str,
        subject_email: Optional[str],
        subject_id: str,
        base_url: Optional[str] = None,
    ) -> TriggerResult:
        """POST ``{responseId, email, clientId}`` to the primary then fallback endpoint.

        Raises:
            ConfigurationError: If no base URL can be resolved.
        """
        root = self.resolve_base_url(base_url)
        body = {
            "responseId": correlation_id,
            "email": subject_email,
            "clientId": subject_id,
        }

        error: Optional[str] = None
        for path in (self.config.primary_path, self.config.fallback_path):
            url = f"{root}{path}"
            logger.info(
                f"Triggering generation at {url} for subject_id={subject_id} correlation_id={correlation_id}"
            )
            try:
                response = await self._post(url, body)
            except httpx.HTTPError as e:
                error = f"{type(e).__name__}: {e}"
                logger.warning(f"Generation request to {url} failed: {error}")
                continue

            if response.is_success:
                logger.info(
                    f"Generation accepted by {url} for correlation_id={correlation_id} (status {response.status_code})"
                )
                return TriggerResult(success=True, endpoint=url)

            error = (
                f"Generation failed: {response.status_code} - "
                f"{response.text[:ERROR_DETAIL_MAX_CHARS]}"
            )
            logger.warning(f"Generation request to {url} rejected: {error}")

        return TriggerResult(success=False, error=error)

    async def _post(self, url: str, body: dict) -> httpx.Response:
        if self._http_client is not None:
            return await self._http_client.post(
                url, json=body, timeout=self.config.timeout
            )
        async with httpx.AsyncClient(timeout=self.config.timeout) as client:
            return await client.post(url, json=body)
