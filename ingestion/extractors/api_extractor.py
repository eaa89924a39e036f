"""
API data source extractor with authentication, pagination and error mapping.

This module provides REST extraction with:
- Bearer token / custom header authentication
- Page-by-page streaming (records are emitted before the next page is fetched)
- Incremental loading via a `since` query parameter
- HTTP status mapping onto the ingestion error taxonomy

Retries are not performed here: the RunCoordinator retries the whole source
extraction with exponential backoff, and re-reading already captured pages
is idempotent.
"""

import httpx
from typing import Any, AsyncIterator, Dict, List, Optional
from datetime import datetime
from ingestion.base import SourceExtractor
from ingestion.extractors.parsers import ENVELOPE_KEYS
from core.exceptions import (
    AuthenticationError,
    DataFormatError,
    ResourceNotFoundError,
    SourceConnectionError,
)
import logging

logger = logging.getLogger(__name__)


class APIExtractor(SourceExtractor):
    """
    Extract data from a paginated REST API.

    Connection descriptor:
        url: Endpoint returning records (required)
        probe_url: Endpoint for connectivity checks (default: url)
        api_key: Sent as `Authorization: Bearer <api_key>` (optional)
        headers: Extra request headers (optional)
        params: Extra query parameters (optional)
        page_param: Page number parameter (default "page"); null disables paging
        page_size: Expected page size, used to detect the last page (default 100)
        since_param: Incremental lower-bound parameter (default "since")
        records_key: Key holding the records in an object response (optional)
        max_pages: Safety cap on pages per extraction (default 1000)
    """

    def __init__(self, source, transport: Optional[httpx.AsyncBaseTransport] = None, **kwargs):
        super().__init__(source, **kwargs)
        self._transport = transport

    @property
    def api_url(self) -> str:
        url = self.connection.get("url")
        if not url:
            raise ResourceNotFoundError(
                f"Source '{self.source_name}' has no 'url' in its connection descriptor",
                context=self._context(),
            )
        return url

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        api_key = self.connection.get("api_key")
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        headers.update(self.connection.get("headers") or {})
        return headers

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    def _check_response(self, response: httpx.Response, url: str):
        """Map HTTP status codes onto the error taxonomy."""
        context = {**self._context(), "status_code": response.status_code, "api_url": url}

        if response.status_code in (401, 403):
            raise AuthenticationError(f"Authentication failed for {url}", context=context)

        if response.status_code == 404:
            raise ResourceNotFoundError(f"Resource not found: {url}", context=context)

        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            raise SourceConnectionError(
                f"Rate limited by {url}",
                context={**context, "retry_after": retry_after},
            )

        if response.status_code >= 500:
            raise SourceConnectionError(
                f"Server error {response.status_code} from {url}",
                context={**context, "response_body": response.text[:500]},  # Truncate
            )

        if response.status_code >= 400:
            raise DataFormatError(
                f"Request rejected with HTTP {response.status_code}",
                context={**context, "response_body": response.text[:500]},
            )

    async def probe_source(self) -> str:
        url = self.connection.get("probe_url") or self.api_url
        try:
            async with self._client() as client:
                response = await client.get(url, headers=self._headers())
        except httpx.HTTPError as e:
            raise SourceConnectionError(
                f"Cannot reach {url}: {type(e).__name__}",
                context=self._context(),
                original_exception=e,
            )
        self._check_response(response, url)
        return f"GET {url} -> HTTP {response.status_code}"

    def _records_from(self, data: Any, page: Optional[int]) -> List[Dict[str, Any]]:
        # Handle different API response formats
        if isinstance(data, list):
            records = data
        elif isinstance(data, dict):
            key = self.connection.get("records_key")
            if key:
                records = data.get(key, [])
            else:
                records = next(
                    (data[k] for k in ENVELOPE_KEYS if isinstance(data.get(k), list)),
                    [],
                )
        else:
            records = []

        if not isinstance(records, list) or any(not isinstance(r, dict) for r in records):
            raise DataFormatError(
                "API response records are not a list of objects",
                context={**self._context(), "page": page},
            )
        return records

    async def iter_rows(self, since: Optional[datetime] = None) -> AsyncIterator[Dict[str, Any]]:
        url = self.api_url
        page_param = self.connection.get("page_param", "page")
        page_size = int(self.connection.get("page_size", 100))
        max_pages = int(self.connection.get("max_pages", 1000))

        params: Dict[str, Any] = dict(self.connection.get("params") or {})
        if since is not None:
            # Only fetch records newer than the watermark
            params[self.connection.get("since_param", "since")] = since.isoformat()

        page = 1
        async with self._client() as client:
            while page <= max_pages:
                if page_param:
                    params[page_param] = page

                logger.info(f"Fetching page {page} from {url}")
                response = await client.get(url, headers=self._headers(), params=params)
                self._check_response(response, url)

                try:
                    data = response.json()
                except ValueError as e:
                    raise DataFormatError(
                        "Failed to parse JSON response",
                        context={**self._context(), "api_url": url, "page": page, "response_body": response.text[:500]},
                        original_exception=e,
                    )

                records = self._records_from(data, page)
                for record in records:
                    yield record

                logger.debug(f"Fetched {len(records)} records from page {page}")

                if not page_param or not records:
                    break

                # Check if there are more pages
                if isinstance(data, dict) and "has_next" in data:
                    if not data.get("has_next"):
                        break
                elif len(records) < page_size:
                    break

                page += 1
