"""Remote document catalog API client."""

import asyncio
import logging
from typing import Any, Dict, List, Optional
from urllib.parse import urljoin

import httpx

from noteshelf.config import Settings, settings as default_settings
from noteshelf.errors import (
    CatalogConfigurationError,
    NetworkError,
    NotFound,
    PermissionDenied,
    RemoteFetchError,
)

logger = logging.getLogger(__name__)


def _error_from_response(response: httpx.Response) -> RemoteFetchError:
    status = response.status_code
    body = response.text[:500]
    message = f"Catalog error {status}: {body}"
    if status in (401, 403):
        return PermissionDenied(message, status)
    if status == 404:
        return NotFound(message, status)
    if status in (400, 412, 501) or "index" in body.lower():
        return CatalogConfigurationError(message, status)
    return NetworkError(message, status)


class CatalogClient:
    """Client for the remote document catalog.

    Records come back as plain field maps; binaries are addressed by the
    reference stored in each record's `downloadURL`.
    """

    def __init__(
        self,
        base_url: str = "",
        api_token: str = "",
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport = None,
    ):
        self.base_url = base_url.rstrip("/") if base_url else ""
        self.api_token = api_token
        self.timeout = timeout
        self.transport = transport
        self.headers = {
            "Authorization": f"Bearer {api_token}",
        } if api_token else {}

    @classmethod
    def from_settings(cls, config: Settings = None) -> "CatalogClient":
        config = config or default_settings
        return cls(
            base_url=config.catalog_url,
            api_token=config.catalog_token,
            timeout=config.request_timeout_seconds,
        )

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout,
            follow_redirects=True,
            transport=self.transport,
        )

    def _resolve(self, reference: str) -> str:
        if reference.startswith(("http://", "https://")):
            return reference
        if not self.base_url:
            raise CatalogConfigurationError("Catalog URL not configured")
        return urljoin(f"{self.base_url}/", reference.lstrip("/"))

    async def _send(
        self,
        method: str,
        url: str,
        params: Dict = None,
        json: Dict = None,
        headers: Dict = None,
    ) -> httpx.Response:
        try:
            async with self._client() as client:
                response = await client.request(
                    method=method,
                    url=url,
                    headers={**self.headers, **(headers or {})},
                    params=params,
                    json=json,
                )
        except httpx.HTTPError as e:
            raise NetworkError(f"Catalog request failed: {e}")

        if response.status_code >= 400:
            raise _error_from_response(response)
        return response

    async def _request(
        self,
        method: str,
        endpoint: str,
        params: Dict = None,
        json: Dict = None
    ) -> Optional[Any]:
        """Make a JSON API request to the catalog."""
        if not self.base_url:
            raise CatalogConfigurationError("Catalog URL not configured")

        response = await self._send(method, f"{self.base_url}/api{endpoint}", params=params, json=json)

        # DELETE/PUT requests often return 204 No Content
        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise NetworkError(f"Unreadable catalog response from {endpoint}: {e}", response.status_code)

    @staticmethod
    def _results(result: Any, endpoint: str) -> List[Dict]:
        """Entries of a paginated list response; non-object entries are dropped."""
        if result is None:
            return []
        if not isinstance(result, dict) or not isinstance(result.get("results", []), list):
            raise NetworkError(f"Unexpected catalog response shape from {endpoint}")
        return [e for e in result.get("results", []) if isinstance(e, dict)]

    # Records
    async def get_record(self, document_id: str) -> Dict:
        """Get a single document record by id."""
        endpoint = f"/documents/{document_id}/"
        result = await self._request("GET", endpoint)
        if result is not None and not isinstance(result, dict):
            raise NetworkError(f"Unexpected catalog response shape from {endpoint}")
        record = dict(result or {})
        record.setdefault("id", document_id)
        return record

    async def query_by_owner(self, user_id: str) -> List[Dict]:
        """Get all records uploaded by a user."""
        result = await self._request("GET", "/documents/", params={"userId": user_id})
        return self._results(result, "/documents/")

    async def get_favorite_ids(self, user_id: str) -> List[str]:
        """Get ids of the records the user marked as favorite."""
        endpoint = f"/users/{user_id}/favorites/"
        result = await self._request("GET", endpoint, params={"isFavorite": "true"})
        return [str(e["id"]) for e in self._results(result, endpoint) if e.get("id")]

    async def query_favorites(self, user_id: str, timeout: Optional[float] = None) -> List[Dict]:
        """Get the full records of a user's favorites.

        Records that are gone or fail to load are skipped. With a timeout,
        the records that arrived before it are returned and the rest are
        dropped; only a failed or late id list fails the whole call.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout if timeout is not None else None
        try:
            favorite_ids = await asyncio.wait_for(self.get_favorite_ids(user_id), timeout)
        except asyncio.TimeoutError:
            raise NetworkError(f"Favorite list of {user_id} timed out after {timeout}s")
        if not favorite_ids:
            return []

        async def fetch(document_id: str) -> Optional[Dict]:
            try:
                record = await self.get_record(document_id)
            except NotFound:
                logger.info(f"[Catalog] Favorite {document_id} no longer exists, skipping")
                return None
            except RemoteFetchError as e:
                logger.warning(f"[Catalog] Favorite {document_id} could not be loaded, skipping: {e}")
                return None
            record["isFavorite"] = True
            return record

        tasks = [asyncio.create_task(fetch(doc_id)) for doc_id in favorite_ids]
        remaining = max(0.0, deadline - loop.time()) if deadline is not None else None
        done, pending = await asyncio.wait(tasks, timeout=remaining)
        if pending:
            logger.warning(
                f"[Catalog] {len(pending)} of {len(tasks)} favorites of {user_id} "
                f"still loading after {timeout}s, returning the rest"
            )
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        return [t.result() for t in tasks if t in done and t.result() is not None]

    async def patch_record(self, document_id: str, fields: Dict) -> None:
        """Update metadata fields of a record."""
        await self._request("PATCH", f"/documents/{document_id}/", json=fields)

    async def set_favorite(self, user_id: str, document_id: str, is_favorite: bool) -> None:
        """Add or remove a record from the user's favorites relation."""
        endpoint = f"/users/{user_id}/favorites/{document_id}/"
        if is_favorite:
            await self._request("PUT", endpoint, json={"isFavorite": True})
        else:
            await self._request("DELETE", endpoint)

    # Binaries
    async def get_binary(self, reference: str) -> bytes:
        """Download the full binary behind a reference."""
        response = await self._send("GET", self._resolve(reference))
        return response.content

    async def get_binary_range(self, reference: str, byte_start: int, byte_end: int) -> bytes:
        """Download a byte range (inclusive end) of a binary.

        Servers that ignore the Range header return the whole body; it is
        truncated to the requested length.
        """
        response = await self._send(
            "GET",
            self._resolve(reference),
            headers={"Range": f"bytes={byte_start}-{byte_end}"},
        )
        if response.status_code == 206:
            return response.content
        return response.content[byte_start:byte_end + 1]
