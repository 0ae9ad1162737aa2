"""Xero Accounting API client with throttling, retry logic and deadline support."""

import asyncio
import logging
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx

from ledgersync.config import get_settings
from ledgersync.entities import EntityType, get_entity_config
from ledgersync.exceptions import (
    ApiClientError,
    RateLimited,
    SyncError,
    SyncTimeout,
    TransientAPIError,
)
from ledgersync.models import EPOCH
from ledgersync.services.context import SyncContext
from ledgersync.services.rate_limiter import AsyncTokenBucket

logger = logging.getLogger(__name__)
settings = get_settings()

# Xero's JSON dates look like /Date(1573755038314+0000)/
_MS_DATE_PATTERN = re.compile(r"^/Date\((-?\d+)([+-]\d{4})?\)/$")


def parse_xero_datetime(value: Any) -> datetime:
    """
    Parse an UpdatedDateUTC value into an aware UTC datetime.

    Accepts Xero's /Date(ms+offset)/ form, ISO-8601 strings (with or without
    an offset; naive values are taken as UTC) and datetime objects.
    Raises ValueError for anything else.
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        match = _MS_DATE_PATTERN.match(value.strip())
        if match:
            # The millisecond count is already UTC, the offset is informational
            return EPOCH + timedelta(milliseconds=int(match.group(1)))
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    else:
        raise ValueError(f"Unsupported timestamp value: {value!r}")

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


@dataclass
class Page:
    """One page of records for an entity type, plus request accounting."""

    records: list[dict[str, Any]]
    next_page_token: str | None = None
    rate_limited: bool = False
    rate_limit_hits: int = 0
    api_calls: int = 0
    page_number: int = 1


class XeroClient:
    """
    Client for the Xero Accounting API.

    Features:
    - Shared token bucket spacing requests (60 calls/minute by default)
    - Exponential backoff on 429, honouring Retry-After
    - Bounded retries for network errors and 5xx responses
    - Incremental fetch via If-Modified-Since, oldest changes first
    """

    def __init__(
        self,
        base_url: str = settings.xero_api_base_url,
        access_token: str | None = settings.xero_access_token,
        tenant_id: str = settings.xero_tenant_id,
        limiter: AsyncTokenBucket | None = None,
        max_retries: int = settings.api_max_retries,
        max_rate_limit_retries: int = settings.api_max_rate_limit_retries,
        backoff_base: float = settings.api_backoff_base_seconds,
        max_backoff: float = settings.api_max_backoff_seconds,
        timeout: float = settings.api_request_timeout_seconds,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.base_url = base_url.rstrip("/")
        self.access_token = access_token
        self.tenant_id = tenant_id
        self.limiter = limiter or AsyncTokenBucket.from_interval(
            settings.api_min_interval_seconds
        )
        self.max_retries = max_retries
        self.max_rate_limit_retries = max_rate_limit_retries
        self.backoff_base = backoff_base
        self.max_backoff = max_backoff
        self.timeout = timeout
        self.transport = transport
        self._sleep = sleep

        self.headers: dict[str, str] = {
            "Accept": "application/json",
            "xero-tenant-id": tenant_id,
        }
        if access_token:
            self.headers["Authorization"] = f"Bearer {access_token}"

    def _backoff(self, attempt: int, retry_after: float | None = None) -> float:
        delay = self.backoff_base * 2**attempt
        if retry_after is not None and retry_after > delay:
            delay = retry_after
        return min(delay, self.max_backoff)

    @staticmethod
    def _retry_after(response: httpx.Response) -> float | None:
        value = response.headers.get("Retry-After")
        if value is None:
            return None
        try:
            return float(value)
        except ValueError:
            return None

    async def _wait(self, delay: float, context: SyncContext) -> None:
        remaining = context.remaining()
        if remaining is not None and delay >= remaining:
            raise SyncTimeout(f"Backoff of {delay:.1f}s would exceed the sync deadline")
        await self._sleep(delay)

    async def _request_with_retry(
        self,
        url: str,
        context: SyncContext,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> tuple[dict[str, Any], int, int]:
        """
        Make one logical GET, retrying rate limits and transient failures.

        Returns (json body, rate limit hits, HTTP calls made). When it gives
        up, the raised SyncError carries the same counters.
        """
        rate_limit_hits = 0
        failures = 0
        api_calls = 0

        try:
            while True:
                context.raise_if_expired()
                await self.limiter.acquire()
                context.raise_if_expired()
                api_calls += 1

                try:
                    async with httpx.AsyncClient(
                        timeout=context.bound(self.timeout), transport=self.transport
                    ) as client:
                        response = await client.get(url, headers=headers, params=params)
                        if response.status_code == 304:  # Nothing modified since cursor
                            return {}, rate_limit_hits, api_calls
                        response.raise_for_status()
                        return response.json(), rate_limit_hits, api_calls

                except httpx.HTTPStatusError as e:
                    status = e.response.status_code
                    if status == 429:
                        rate_limit_hits += 1
                        if rate_limit_hits > self.max_rate_limit_retries:
                            raise RateLimited(
                                f"Rate limited {rate_limit_hits} times on {url}",
                                hits=rate_limit_hits,
                            ) from e
                        wait_time = self._backoff(
                            rate_limit_hits - 1, self._retry_after(e.response)
                        )
                        logger.warning(f"Rate limited, waiting {wait_time}s before retry")
                        await self._wait(wait_time, context)
                    elif status >= 500:
                        failures += 1
                        if failures > self.max_retries:
                            raise TransientAPIError(
                                f"Failed after {self.max_retries} retries: HTTP {status}",
                                status_code=status,
                            ) from e
                        wait_time = self._backoff(failures - 1)
                        logger.warning(f"Server error {status}, retry in {wait_time}s")
                        await self._wait(wait_time, context)
                    else:
                        raise ApiClientError(f"HTTP error: {e}", status_code=status) from e

                except httpx.TimeoutException as e:
                    if context.expired:
                        raise SyncTimeout(f"Request to {url} hit the sync deadline") from e
                    failures += 1
                    if failures > self.max_retries:
                        raise TransientAPIError(
                            f"Failed after {self.max_retries} retries: {e}"
                        ) from e
                    wait_time = self._backoff(failures - 1)
                    logger.warning(f"Request timed out, retry in {wait_time}s")
                    await self._wait(wait_time, context)

                except httpx.RequestError as e:
                    failures += 1
                    if failures > self.max_retries:
                        raise TransientAPIError(
                            f"Failed after {self.max_retries} retries: {e}"
                        ) from e
                    wait_time = self._backoff(failures - 1)
                    logger.warning(f"Request error: {e}, retry in {wait_time}s")
                    await self._wait(wait_time, context)

        except SyncError as e:
            e.api_calls = api_calls
            e.rate_limit_hits = rate_limit_hits
            raise

    async def fetch_page(
        self,
        entity_type: EntityType | str,
        cursor: datetime,
        page_token: str | None,
        context: SyncContext,
    ) -> Page:
        """
        Fetch one page of records modified since cursor.

        Args:
            entity_type: Entity to fetch
            cursor: Only records modified after this instant; the epoch
                fetches everything
            page_token: Token from the previous Page, None for the first page
            context: Session deadline

        Returns:
            Page with the records in UpdatedDateUTC order and the token for
            the next page, if any
        """
        config = get_entity_config(entity_type)
        url = f"{self.base_url}/{config.endpoint}"
        page_number = int(page_token) if page_token else 1

        headers = dict(self.headers)
        if cursor > EPOCH:
            headers["If-Modified-Since"] = cursor.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%S")

        params: dict[str, Any] = {"order": "UpdatedDateUTC ASC"}
        if config.where:
            params["where"] = config.where
        if config.paginated:
            params["page"] = page_number

        logger.info(
            f"Fetching {config.entity_type} page {page_number}: since={cursor.isoformat()}"
        )
        data, hits, calls = await self._request_with_retry(url, context, params, headers)
        records = data.get(config.collection_key) or []

        next_page_token = None
        if config.paginated:
            pagination = data.get("pagination")
            if pagination and "pageCount" in pagination:
                if pagination.get("page", page_number) < pagination["pageCount"]:
                    next_page_token = str(page_number + 1)
            elif len(records) >= config.page_size:
                next_page_token = str(page_number + 1)

        logger.info(f"Fetched {len(records)} {config.entity_type} records")
        return Page(
            records=records,
            next_page_token=next_page_token,
            rate_limited=hits > 0,
            rate_limit_hits=hits,
            api_calls=calls,
            page_number=page_number,
        )
