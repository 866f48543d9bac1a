import json

import httpx
import pytest

from src.backend.app.errors import StoreError
from src.backend.app.store import SupabaseStore, eq, gte

URL = "https://project.supabase.co"


def _store(handler):
    return SupabaseStore(URL, "service-key", client=httpx.Client(transport=httpx.MockTransport(handler)))


def test_select_builds_postgrest_query_and_reads_count():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = request.url
        seen["headers"] = request.headers
        return httpx.Response(200, json=[{"id": "1"}], headers={"Content-Range": "0-0/42"})

    result = _store(handler).select(
        "conversation_history",
        [eq("tenant_id", "t1"), eq("is_from_user", True), gte("created_at", "2026-01-01")],
        order_by="created_at",
        descending=True,
        limit=50,
        offset=100,
        count=True,
    )
    assert result.rows == [{"id": "1"}]
    assert result.count == 42
    url = seen["url"]
    assert url.path == "/rest/v1/conversation_history"
    assert url.params["tenant_id"] == "eq.t1"
    assert url.params["is_from_user"] == "eq.true"
    assert url.params["created_at"] == "gte.2026-01-01"
    assert url.params["order"] == "created_at.desc"
    assert url.params["limit"] == "50"
    assert url.params["offset"] == "100"
    assert seen["headers"]["apikey"] == "service-key"
    assert seen["headers"]["authorization"] == "Bearer service-key"
    assert seen["headers"]["prefer"] == "count=exact"


def test_insert_returns_representation():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "POST"
        assert request.headers["prefer"] == "return=representation"
        body = json.loads(request.content)
        return httpx.Response(201, json=[{"id": "abc", **body}])

    row = _store(handler).insert("tenants", {"business_name": "Studio"})
    assert row == {"id": "abc", "business_name": "Studio"}


def test_null_filter_uses_is_operator():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["user_id"] == "is.null"
        return httpx.Response(200, json=[])

    assert _store(handler).select("conversation_history", [eq("user_id", None)]).rows == []


def test_rpc_posts_params_and_handles_empty_body():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append((request.url.path, json.loads(request.content)))
        if request.url.path.endswith("get_conversation_summary"):
            return httpx.Response(204)
        return httpx.Response(200, json={"deleted_count": 3})

    store = _store(handler)
    assert store.rpc("get_conversation_summary", {"p_phone_number": "1", "p_tenant_id": "t"}) is None
    assert store.rpc("cleanup_old_conversations", {"p_cutoff_date": "x"}) == {"deleted_count": 3}
    assert calls[1] == ("/rest/v1/rpc/cleanup_old_conversations", {"p_cutoff_date": "x"})


def test_rejected_request_raises_store_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(409, json={"message": "duplicate key"})

    with pytest.raises(StoreError) as exc:
        _store(handler).insert("stripe_webhook_events", {"event_id": "evt_1"})
    assert exc.value.status_code == 409
    assert "duplicate key" in str(exc.value)


def test_transport_failure_raises_store_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("unreachable", request=request)

    with pytest.raises(StoreError):
        _store(handler).delete("conversation_history", [eq("id", "1")])


def test_missing_configuration():
    with pytest.raises(StoreError):
        SupabaseStore("", "")
