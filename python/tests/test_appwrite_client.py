"""Tests for the Appwrite document store client.

Tests cover:
- Request shape: URLs, project/key headers, create/update bodies
- Query encoding, including nested OR conditions
- Error mapping: 404 -> DocumentNotFoundError, other failures -> DocumentStoreError

These are pure unit tests; respx mocks every HTTP request.
"""

import json

import httpx
import pytest
import respx

from rendezvous.backend.appwrite import AppwriteDocumentStore, build_queries
from rendezvous.backend.base import (
    DocumentNotFoundError,
    DocumentStoreError,
    Filter,
    OrderBy,
)
from tests.helpers import make_settings

ENDPOINT = "https://cloud.appwrite.test/v1"
DOCUMENTS_URL = f"{ENDPOINT}/databases/messaging/collections/messages/documents"


@pytest.fixture
def httpx_client():
    return httpx.AsyncClient()


@pytest.fixture
def store(httpx_client):
    return AppwriteDocumentStore(
        httpx_client, ENDPOINT + "/", "proj-1", "messaging", api_key="key-1"
    )


class TestBuildQueries:
    def test_filters_order_and_paging(self):
        queries = build_queries(
            [Filter.equal("conversationId", "c1")],
            [OrderBy.desc("$createdAt")],
            limit=50,
            offset=100,
        )

        assert [json.loads(q) for q in queries] == [
            {"method": "equal", "attribute": "conversationId", "values": ["c1"]},
            {"method": "orderDesc", "attribute": "$createdAt"},
            {"method": "limit", "values": [50]},
            {"method": "offset", "values": [100]},
        ]

    def test_or_nests_conditions(self):
        condition = Filter.any_of(Filter.equal("userId", "a"), Filter.equal("userId", "b"))

        (query,) = build_queries([condition], [], limit=None, offset=0)

        assert json.loads(query) == {
            "method": "or",
            "values": [
                {"method": "equal", "attribute": "userId", "values": ["a"]},
                {"method": "equal", "attribute": "userId", "values": ["b"]},
            ],
        }

    def test_search_and_ascending(self):
        queries = build_queries(
            [Filter.search("participants", "u1")], [OrderBy.asc("lastActivity")], None, 0
        )

        assert [json.loads(q)["method"] for q in queries] == ["search", "orderAsc"]


class TestRequests:
    @pytest.mark.asyncio
    @respx.mock
    async def test_create_sends_unique_id_and_headers(self, store):
        route = respx.post(DOCUMENTS_URL).respond(201, json={"$id": "m1", "content": "x"})

        document = await store.create("messages", None, {"content": "x"})

        assert document["$id"] == "m1"
        request = route.calls.last.request
        assert request.headers["X-Appwrite-Project"] == "proj-1"
        assert request.headers["X-Appwrite-Key"] == "key-1"
        assert json.loads(request.content) == {"documentId": "unique()", "data": {"content": "x"}}

    @pytest.mark.asyncio
    @respx.mock
    async def test_update_patches_data(self, store):
        route = respx.patch(f"{DOCUMENTS_URL}/m1").respond(200, json={"$id": "m1", "isRead": True})

        document = await store.update("messages", "m1", {"isRead": True})

        assert document["isRead"] is True
        assert json.loads(route.calls.last.request.content) == {"data": {"isRead": True}}

    @pytest.mark.asyncio
    @respx.mock
    async def test_delete(self, store):
        route = respx.delete(f"{DOCUMENTS_URL}/m1").respond(204)

        await store.delete("messages", "m1")

        assert route.called

    @pytest.mark.asyncio
    @respx.mock
    async def test_list_sends_queries(self, store):
        route = respx.get(DOCUMENTS_URL).respond(
            200, json={"total": 1, "documents": [{"$id": "m1"}]}
        )

        result = await store.list(
            "messages", filters=[Filter.equal("conversationId", "c1")], limit=10
        )

        assert result.total == 1
        assert result.documents == [{"$id": "m1"}]
        sent = route.calls.last.request.url.params.get_list("queries[]")
        assert [json.loads(q)["method"] for q in sent] == ["equal", "limit"]

    @pytest.mark.asyncio
    @respx.mock
    async def test_session_header(self, httpx_client):
        store = AppwriteDocumentStore(
            httpx_client, ENDPOINT, "proj-1", "messaging", session="secret"
        )
        route = respx.get(f"{DOCUMENTS_URL}/m1").respond(200, json={"$id": "m1"})

        await store.get("messages", "m1")

        headers = route.calls.last.request.headers
        assert headers["X-Appwrite-Session"] == "secret"
        assert "X-Appwrite-Key" not in headers


class TestErrors:
    @pytest.mark.asyncio
    @respx.mock
    async def test_404_maps_to_not_found(self, store):
        respx.get(f"{DOCUMENTS_URL}/missing").respond(
            404, json={"message": "Document with the requested ID could not be found."}
        )

        with pytest.raises(DocumentNotFoundError) as exc_info:
            await store.get("messages", "missing")

        assert exc_info.value.status_code == 404
        assert "could not be found" in exc_info.value.message

    @pytest.mark.asyncio
    @respx.mock
    async def test_server_error(self, store):
        respx.patch(f"{DOCUMENTS_URL}/m1").respond(500, json={"message": "Server Error"})

        with pytest.raises(DocumentStoreError) as exc_info:
            await store.update("messages", "m1", {"isRead": True})

        assert exc_info.value.status_code == 500
        assert exc_info.value.message == "Server Error"

    @pytest.mark.asyncio
    @respx.mock
    async def test_non_json_error_body(self, store):
        respx.delete(f"{DOCUMENTS_URL}/m1").respond(502, text="Bad Gateway")

        with pytest.raises(DocumentStoreError, match="Appwrite error 502"):
            await store.delete("messages", "m1")

    @pytest.mark.asyncio
    @respx.mock
    async def test_transport_error(self, store):
        respx.get(f"{DOCUMENTS_URL}/m1").mock(side_effect=httpx.ConnectError("refused"))

        with pytest.raises(DocumentStoreError, match="Appwrite request failed"):
            await store.get("messages", "m1")


class TestFromSettings:
    def test_requires_endpoint(self, httpx_client):
        with pytest.raises(ValueError, match="APPWRITE_ENDPOINT"):
            AppwriteDocumentStore.from_settings(make_settings(), httpx_client)

    @pytest.mark.asyncio
    @respx.mock
    async def test_uses_configured_database(self, httpx_client):
        settings = make_settings(
            appwrite_endpoint=ENDPOINT,
            appwrite_project_id="proj-2",
            appwrite_database_id="chat",
        )
        store = AppwriteDocumentStore.from_settings(settings, httpx_client)
        route = respx.get(f"{ENDPOINT}/databases/chat/collections/calls/documents/c1").respond(
            200, json={"$id": "c1"}
        )

        await store.get("calls", "c1")

        assert route.calls.last.request.headers["X-Appwrite-Project"] == "proj-2"
