"""HTTP client for the helpdesk REST API (v2).

HelpdeskClient implements the ticketing collaborator contract the sync
orchestrator depends on. Every request is paced with a fixed delay and
retried with bounded attempts on transport errors, 5xx responses and 429
rate limits (honouring Retry-After). Exhausted retries and non-retryable
4xx responses surface as CollaboratorFetchError.

Credentials are resolved through the SecureConfigStore and cached on the
client; a change listener marks them stale so an updated key or domain is
picked up on the next request without a restart.
"""

import asyncio
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, Protocol

import httpx
import structlog
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt

from ticketpulse.config import settings
from ticketpulse.errors import CollaboratorFetchError, ConfigurationError
from ticketpulse.schemas.helpdesk import HelpdeskCompany, HelpdeskGroup, HelpdeskTicket
from ticketpulse.services.periods import utcnow
from ticketpulse.services.secure_config import SecureConfigStore

log = structlog.get_logger()

HELPDESK_DOMAIN_KEY = "HELPDESK_DOMAIN"
HELPDESK_API_KEY_KEY = "HELPDESK_API_KEY"
REQUIRED_CONFIG_KEYS = [HELPDESK_DOMAIN_KEY, HELPDESK_API_KEY_KEY]

DEFAULT_RETRY_AFTER_SECONDS = 60.0


class HelpdeskCollaborator(Protocol):
    async def get_all_entities(self) -> list[HelpdeskTicket]: ...

    async def get_entities_updated_since(self, since: datetime) -> list[HelpdeskTicket]: ...

    async def get_reference_groups(self) -> list[HelpdeskGroup]: ...

    async def get_reference_companies(self) -> list[HelpdeskCompany]: ...


class TransientHelpdeskError(Exception):
    """Retryable response (5xx)."""


class RateLimitedError(TransientHelpdeskError):
    def __init__(self, retry_after: float):
        super().__init__(f"Rate limited, retry after {retry_after}s")
        self.retry_after = retry_after


_RETRYABLE = (httpx.TransportError, TransientHelpdeskError)


def _parse_retry_after(value: Optional[str]) -> float:
    if not value:
        return DEFAULT_RETRY_AFTER_SECONDS
    try:
        return max(float(value), 0.0)
    except ValueError:
        return DEFAULT_RETRY_AFTER_SECONDS


async def validate_required_config(store: SecureConfigStore) -> None:
    """Abort startup when the helpdesk credentials cannot be resolved."""
    missing = await store.validate_required(REQUIRED_CONFIG_KEYS)
    if missing:
        raise ConfigurationError(
            f"Missing required configuration: {', '.join(missing)}",
            {"missing": missing},
        )


class HelpdeskClient:
    def __init__(
        self,
        config_store: SecureConfigStore,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._config_store = config_store
        self._transport = transport
        self._sleep = sleep
        self._client: Optional[httpx.AsyncClient] = None
        self._stale = True

        self.page_size = settings.helpdesk_page_size
        self.max_attempts = settings.helpdesk_max_attempts
        self.retry_base_seconds = settings.helpdesk_retry_base_seconds
        self.request_delay_seconds = settings.helpdesk_request_delay_seconds

        for key in REQUIRED_CONFIG_KEYS:
            config_store.on_change(key, self._on_credentials_changed)

    def _on_credentials_changed(self, _value: str) -> None:
        self._stale = True
        log.info("helpdesk_credentials_invalidated")

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None and not self._stale:
            return self._client

        domain = await self._config_store.get(HELPDESK_DOMAIN_KEY)
        api_key = await self._config_store.get(HELPDESK_API_KEY_KEY)
        if not domain or not api_key:
            raise ConfigurationError("Helpdesk credentials are not configured")

        if self._client is not None:
            await self._client.aclose()

        base_url = domain if "://" in domain else f"https://{domain}"
        self._client = httpx.AsyncClient(
            base_url=f"{base_url.rstrip('/')}/api/v2",
            auth=(api_key, "X"),
            timeout=httpx.Timeout(settings.helpdesk_timeout_seconds),
            transport=self._transport,
        )
        self._stale = False
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _wait(self, retry_state) -> float:
        exc = retry_state.outcome.exception()
        if isinstance(exc, RateLimitedError):
            return exc.retry_after
        return self.retry_base_seconds * (2 ** (retry_state.attempt_number - 1))

    async def _request_once(self, path: str, params: Optional[dict]) -> Any:
        client = await self._get_client()
        await self._sleep(self.request_delay_seconds)
        resp = await client.get(path, params=params)

        if resp.status_code == 429:
            retry_after = _parse_retry_after(resp.headers.get("Retry-After"))
            log.warning("helpdesk_rate_limited", path=path, retry_after=retry_after)
            raise RateLimitedError(retry_after)
        if resp.status_code >= 500:
            log.warning("helpdesk_server_error", path=path, status=resp.status_code)
            raise TransientHelpdeskError(f"Helpdesk returned {resp.status_code}")
        if resp.status_code >= 400:
            raise CollaboratorFetchError(
                f"Helpdesk request failed with {resp.status_code}",
                {"path": path, "status": resp.status_code},
            )
        return resp.json()

    async def _get(self, path: str, params: Optional[dict] = None) -> Any:
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.max_attempts),
                wait=self._wait,
                retry=retry_if_exception_type(_RETRYABLE),
                sleep=self._sleep,
                reraise=True,
            ):
                with attempt:
                    return await self._request_once(path, params)
        except _RETRYABLE as exc:
            log.error("helpdesk_request_exhausted", path=path, attempts=self.max_attempts)
            raise CollaboratorFetchError(
                f"Helpdesk request failed after {self.max_attempts} attempts: {exc}",
                {"path": path},
            ) from exc

    async def _paginate(self, path: str, params: Optional[dict] = None) -> list[dict]:
        items: list[dict] = []
        page = 1
        while True:
            batch = await self._get(
                path, {**(params or {}), "per_page": self.page_size, "page": page}
            )
            items.extend(batch)
            if len(batch) < self.page_size:
                break
            page += 1
        log.debug("helpdesk_paginated", path=path, pages=page, items=len(items))
        return items

    async def get_entities_updated_since(self, since: datetime) -> list[HelpdeskTicket]:
        updated_since = since.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
        raw = await self._paginate(
            "/tickets", {"updated_since": updated_since, "include": "description"}
        )
        tickets = [HelpdeskTicket.model_validate(item) for item in raw]
        log.info("helpdesk_tickets_fetched", since=updated_since, count=len(tickets))
        return tickets

    async def get_all_entities(self) -> list[HelpdeskTicket]:
        """Year-to-date corpus: everything updated since January 1 (UTC)."""
        start_of_year = datetime(utcnow().year, 1, 1, tzinfo=timezone.utc)
        return await self.get_entities_updated_since(start_of_year)

    async def get_reference_groups(self) -> list[HelpdeskGroup]:
        raw = await self._paginate("/groups")
        return [HelpdeskGroup.model_validate(item) for item in raw]

    async def get_reference_companies(self) -> list[HelpdeskCompany]:
        raw = await self._paginate("/companies")
        return [HelpdeskCompany.model_validate(item) for item in raw]
