"""Appwrite document store client.

Talks to the Appwrite REST databases API:
- POST   /databases/{db}/collections/{coll}/documents        {"documentId", "data"}
- GET    /databases/{db}/collections/{coll}/documents/{id}
- PATCH  /databases/{db}/collections/{coll}/documents/{id}   {"data"}
- DELETE /databases/{db}/collections/{coll}/documents/{id}
- GET    /databases/{db}/collections/{coll}/documents?queries[]=<json>

Queries are sent in Appwrite's JSON form, e.g.
{"method": "equal", "attribute": "conversationId", "values": ["abc"]}.

Rules:
- No retries inside the client
- No logging of document bodies (they carry ciphertext)
- 404 -> DocumentNotFoundError, any other failure -> DocumentStoreError
"""

import json
from collections.abc import Sequence
from typing import Any

import httpx

from rendezvous.backend.base import (
    Document,
    DocumentList,
    DocumentNotFoundError,
    DocumentStore,
    DocumentStoreError,
    Filter,
    FilterOp,
    OrderBy,
)
from rendezvous.config import Settings
from rendezvous.logging import get_logger

logger = get_logger(__name__)

# Appwrite assigns an ID when this placeholder is sent as documentId
UNIQUE_ID = "unique()"


def _query(method: str, attribute: str | None = None, values: Sequence[Any] | None = None) -> dict[str, Any]:
    query: dict[str, Any] = {"method": method}
    if attribute is not None:
        query["attribute"] = attribute
    if values is not None:
        query["values"] = list(values)
    return query


def _filter_query(condition: Filter) -> dict[str, Any]:
    if condition.op is FilterOp.OR:
        return _query(condition.op.value, values=[_filter_query(c) for c in condition.values])
    return _query(condition.op.value, condition.attribute, condition.values)


def encode_query(method: str, attribute: str | None = None, values: Sequence[Any] | None = None) -> str:
    return json.dumps(_query(method, attribute, values), separators=(",", ":"))


def build_queries(
    filters: Sequence[Filter],
    order: Sequence[OrderBy],
    limit: int | None,
    offset: int,
) -> list[str]:
    queries = [json.dumps(_filter_query(f), separators=(",", ":")) for f in filters]
    for rule in order:
        queries.append(encode_query("orderDesc" if rule.descending else "orderAsc", rule.attribute))
    if limit is not None:
        queries.append(encode_query("limit", values=[limit]))
    if offset:
        queries.append(encode_query("offset", values=[offset]))
    return queries


class AppwriteDocumentStore(DocumentStore):
    """Production document store backed by Appwrite.

    Uses a shared httpx.AsyncClient for connection pooling.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        endpoint: str,
        project_id: str,
        database_id: str,
        *,
        api_key: str | None = None,
        session: str | None = None,
        timeout_s: float = 15.0,
    ):
        """Initialize the document store.

        Args:
            client: Shared httpx.AsyncClient.
            endpoint: Appwrite endpoint (e.g., https://cloud.appwrite.io/v1).
            project_id: Appwrite project ID.
            database_id: Database holding the messaging collections.
            api_key: Server API key, if acting as a server.
            session: User session secret, if acting as a signed-in user.
            timeout_s: Request timeout in seconds.
        """
        self._client = client
        self._base_url = endpoint.rstrip("/")
        self._database_id = database_id
        self._timeout = httpx.Timeout(timeout_s, connect=10.0)
        self._headers = {
            "X-Appwrite-Project": project_id,
            "Content-Type": "application/json",
        }
        if api_key:
            self._headers["X-Appwrite-Key"] = api_key
        if session:
            self._headers["X-Appwrite-Session"] = session

    @classmethod
    def from_settings(
        cls, settings: Settings, client: httpx.AsyncClient, *, session: str | None = None
    ) -> "AppwriteDocumentStore":
        if not settings.normalized_endpoint or not settings.appwrite_project_id:
            raise ValueError("APPWRITE_ENDPOINT and APPWRITE_PROJECT_ID must be set")
        return cls(
            client,
            settings.normalized_endpoint,
            settings.appwrite_project_id,
            settings.appwrite_database_id,
            api_key=settings.appwrite_api_key,
            session=session,
            timeout_s=settings.appwrite_timeout_s,
        )

    def _documents_url(self, collection: str) -> str:
        return f"{self._base_url}/databases/{self._database_id}/collections/{collection}/documents"

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._client.request(
                method, url, headers=self._headers, timeout=self._timeout, **kwargs
            )
        except httpx.HTTPError as e:
            logger.warning("appwrite_request_failed", method=method, error_type=type(e).__name__)
            raise DocumentStoreError(f"Appwrite request failed: {e}") from e

        if response.status_code == 404:
            raise DocumentNotFoundError(self._error_message(response))
        if response.status_code >= 400:
            logger.warning("appwrite_error_response", method=method, status_code=response.status_code)
            raise DocumentStoreError(self._error_message(response), status_code=response.status_code)
        return response

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return f"Appwrite error {response.status_code}"
        if isinstance(body, dict) and body.get("message"):
            return str(body["message"])
        return f"Appwrite error {response.status_code}"

    async def create(
        self, collection: str, document_id: str | None, data: Document
    ) -> Document:
        response = await self._request(
            "POST",
            self._documents_url(collection),
            json={"documentId": document_id or UNIQUE_ID, "data": data},
        )
        return response.json()

    async def get(self, collection: str, document_id: str) -> Document:
        response = await self._request("GET", f"{self._documents_url(collection)}/{document_id}")
        return response.json()

    async def update(self, collection: str, document_id: str, patch: Document) -> Document:
        response = await self._request(
            "PATCH",
            f"{self._documents_url(collection)}/{document_id}",
            json={"data": patch},
        )
        return response.json()

    async def delete(self, collection: str, document_id: str) -> None:
        await self._request("DELETE", f"{self._documents_url(collection)}/{document_id}")

    async def list(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        order: Sequence[OrderBy] = (),
        limit: int | None = None,
        offset: int = 0,
    ) -> DocumentList:
        queries = build_queries(filters, order, limit, offset)
        response = await self._request(
            "GET",
            self._documents_url(collection),
            params=[("queries[]", q) for q in queries],
        )
        body = response.json()
        return DocumentList(documents=body.get("documents", []), total=body.get("total", 0))
