"""
Client for the billed benefit lookup service.

Retries transport failures with exponential backoff and distinguishes a
service that cannot be reached from a service that answered "no match".
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from benefit_guard.config.loader import ExternalApiConfig
from benefit_guard.config.logging import get_logger
from benefit_guard.core.errors import ExternalServiceUnavailable
from benefit_guard.core.keys import QueryKey
from benefit_guard.storage.models import BenefitPayload

from .payload import parse_payload
from .transient_cache import TransientCache

logger = get_logger(__name__)

# Server-side polling budget requested from the provider on every call.
PROVIDER_POLL_ATTEMPTS = 120


class _AttemptFailed(Exception):
    """A single attempt failed in a way worth retrying."""


@dataclass(frozen=True)
class FetchOutcome:
    """Result of a completed lookup.

    ``matched`` is False when the service answered successfully but could
    not resolve the beneficiary. Unmatched outcomes are never retried.
    """
    payload: BenefitPayload
    raw: Dict[str, Any]
    attempts: int

    @property
    def matched(self) -> bool:
        return self.payload.has_identity


class BenefitsApiClient:
    """Async client for the benefit balance lookup endpoint.

    All failures are loud: exhausting the attempt budget raises
    :class:`ExternalServiceUnavailable`.
    """

    def __init__(
        self,
        config: ExternalApiConfig,
        api_token: Optional[str],
        transient_cache: Optional[TransientCache] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """Initialize the client.

        Args:
            config: Endpoint, timeout and retry settings
            api_token: Provider credential; a missing token fails every fetch
            transient_cache: Optional short-lived cache populated on success
            http_client: Optional preconfigured httpx client (tests inject one)
            sleep: Awaitable delay used between attempts
        """
        self.config = config
        self.api_token = api_token
        self.transient_cache = transient_cache
        self._sleep = sleep
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=config.timeout_seconds)

    async def __aenter__(self) -> "BenefitsApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def backoff_delay(self, attempt: int) -> float:
        """Delay after the ``attempt``-th failure: base * 2^(attempt-1)."""
        return self.config.backoff_base_seconds * (2 ** (attempt - 1))

    async def fetch(self, key: QueryKey) -> FetchOutcome:
        """Look up the benefit identified by ``key``.

        Raises:
            ExternalServiceUnavailable: If the credential is missing or every
                attempt failed
        """
        if not self.api_token:
            logger.error("benefits_api_token_missing")
            raise ExternalServiceUnavailable(
                "API credential is not configured", attempts=0,
                details={"reason": "missing_credentials"},
            )

        max_attempts = self.config.max_attempts
        last_error = ""
        for attempt in range(1, max_attempts + 1):
            try:
                raw = await self._attempt(key)
            except _AttemptFailed as e:
                last_error = str(e)
                if attempt == max_attempts:
                    logger.error(
                        "benefits_lookup_exhausted",
                        query_key=key.value,
                        attempts=attempt,
                        error=last_error,
                    )
                    break
                delay = self.backoff_delay(attempt)
                logger.warning(
                    "benefits_lookup_retry",
                    query_key=key.value,
                    attempt=attempt,
                    delay=delay,
                    error=last_error,
                )
                await self._sleep(delay)
                continue

            outcome = FetchOutcome(payload=parse_payload(raw), raw=raw, attempts=attempt)
            if self.transient_cache is not None:
                self.transient_cache.put(key, raw)
            logger.info(
                "benefits_lookup_completed",
                query_key=key.value,
                attempts=attempt,
                matched=outcome.matched,
            )
            return outcome

        raise ExternalServiceUnavailable(
            "benefit lookup failed after several attempts",
            attempts=max_attempts,
            details={"last_error": last_error},
        )

    async def _attempt(self, key: QueryKey) -> Dict[str, Any]:
        try:
            response = await self._client.post(
                self.config.url,
                json={
                    "identity": key.document,
                    "benefitNumber": key.benefit,
                    "lastDays": 0,
                    "attemps": PROVIDER_POLL_ATTEMPTS,
                },
                headers={"apiKey": self.api_token, "Content-Type": "application/json"},
            )
        except httpx.HTTPError as e:
            raise _AttemptFailed(f"{type(e).__name__}: {e}") from e

        if response.status_code != 200:
            raise _AttemptFailed(f"unexpected status {response.status_code}")

        try:
            data = response.json()
        except ValueError as e:
            raise _AttemptFailed("response body is not JSON") from e
        if not isinstance(data, dict):
            raise _AttemptFailed("response body is not an object")
        return data
