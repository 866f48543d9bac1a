from datetime import datetime, timedelta, timezone
from unittest import mock

import pytest

from src.backend.app.conversations import (
    CSV_COLUMNS,
    ConversationHistoryService,
    render_csv,
    to_csv_row,
)
from src.backend.app.errors import ConversationHistoryError, StoreError
from src.backend.app.schemas import ConversationSearchParams
from src.backend.app.utils import MonotonicClock, iso_utc

TENANT = "tenant-1"
PHONE = "5511999990000"
NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def _text(n, body, phone=PHONE):
    return {"id": f"wamid.{n}", "from": phone, "timestamp": "1700000000", "type": "text", "text": {"body": body}}


def _row(created_at, phone=PHONE, tenant=TENANT):
    return {
        "tenant_id": tenant,
        "phone_number": phone,
        "user_name": "Ana",
        "is_from_user": True,
        "message_type": "text",
        "message_content": "hi",
        "content": "hi",
        "message_id": f"wamid.{created_at}",
        "created_at": created_at,
    }


def test_store_text_message_and_read_back(service):
    row = service.store_message(_text(1, "oi"), TENANT, "Ana")
    assert row["content"] == "oi"
    assert row["message_content"] == "oi"
    assert row["message_type"] == "text"
    assert row["is_from_user"] is True
    assert row["message_id"] == "wamid.1"
    assert row["raw_message"]["from"] == PHONE

    messages = service.get_conversation_by_phone(PHONE, TENANT)
    assert [m["content"] for m in messages] == ["oi"]


def test_conversation_is_newest_window_in_chronological_order(service):
    for n, body in enumerate(["a", "b", "c"]):
        service.store_message(_text(n, body), TENANT, "Ana")
    messages = service.get_conversation_by_phone(PHONE, TENANT, limit=2)
    assert [m["content"] for m in messages] == ["b", "c"]
    assert messages[0]["created_at"] < messages[1]["created_at"]


def test_before_pages_backwards_through_history(service):
    for n in range(5):
        service.store_message(_text(n, f"m{n}"), TENANT, "Ana")
    newest = service.get_conversation_by_phone(PHONE, TENANT, limit=2)
    assert [m["content"] for m in newest] == ["m3", "m4"]

    older = service.get_conversation_by_phone(PHONE, TENANT, limit=2, before=newest[0]["created_at"])
    assert [m["content"] for m in older] == ["m1", "m2"]
    assert older[0]["created_at"] < older[1]["created_at"]

    oldest = service.get_conversation_by_phone(PHONE, TENANT, limit=2, before=older[0]["created_at"])
    assert [m["content"] for m in oldest] == ["m0"]


def test_created_at_strictly_increases_with_frozen_source(store):
    svc = ConversationHistoryService(store, clock=MonotonicClock(source=lambda: NOW))
    first = svc.store_message(_text(1, "a"), TENANT, "Ana")
    second = svc.store_message(_text(2, "b"), TENANT, "Ana")
    assert second["created_at"] > first["created_at"]


def test_long_content_is_truncated_for_display(service):
    body = "x" * 600
    row = service.store_message(_text(1, body), TENANT, "Ana")
    assert row["message_content"] == body
    assert row["content"] == "x" * 500 + "..."


@pytest.mark.parametrize(
    "payload,expected",
    [
        ({"type": "image", "image": {"id": "m1"}}, "[Image]"),
        ({"type": "image", "image": {"id": "m1", "caption": "look"}}, "look"),
        ({"type": "audio", "audio": {"id": "m2"}}, "[Audio]"),
        ({"type": "document", "document": {"filename": "menu.pdf"}}, "[Document: menu.pdf]"),
        ({"type": "location", "location": {"latitude": -23.5, "longitude": -46.6}}, "[Location: -23.5, -46.6]"),
        ({"type": "interactive", "interactive": {"button_reply": {"id": "b1", "title": "Yes"}}}, "Yes"),
        ({"type": "contacts", "contacts": [{"name": {"formatted_name": "Bia"}}]}, "[Contact: Bia]"),
    ],
)
def test_media_placeholders(service, payload, expected):
    msg = {"id": "wamid.m", "from": PHONE, **payload}
    row = service.store_message(msg, TENANT, "Ana")
    assert row["content"] == expected


def test_unknown_type_keeps_raw_payload(service):
    msg = {"id": "wamid.s", "from": PHONE, "type": "sticker", "sticker": {"id": "st1"}}
    row = service.store_message(msg, TENANT, "Ana")
    assert row["content"] == "[STICKER]"
    assert row["raw_message"]["sticker"] == {"id": "st1"}


def test_system_message_gets_synthetic_id(service):
    row = service.store_system_message(TENANT, PHONE, "Olá! Como posso ajudar?")
    assert row["message_id"].startswith("system_")
    assert row["is_from_user"] is False
    assert row["user_name"] == "System"
    assert row["raw_message"]["system_generated"] is True


def test_system_messages_get_distinct_ids_with_frozen_source(store):
    svc = ConversationHistoryService(store, clock=MonotonicClock(source=lambda: NOW))
    first = svc.store_system_message(TENANT, PHONE, "Lembrete enviado")
    second = svc.store_system_message(TENANT, PHONE, "Lembrete enviado")
    assert first["message_id"].startswith("system_")
    assert second["message_id"].startswith("system_")
    assert first["message_id"] != second["message_id"]
    assert second["created_at"] > first["created_at"]


def test_system_message_keeps_related_id(service):
    row = service.store_system_message(TENANT, PHONE, "ok", related_message_id="wamid.7")
    assert row["message_id"] == "wamid.7"


def test_store_failure_is_wrapped_with_context():
    store = mock.MagicMock()
    store.insert.side_effect = StoreError("boom", status_code=500)
    svc = ConversationHistoryService(store)
    with pytest.raises(ConversationHistoryError) as exc:
        svc.store_message(_text(9, "oi"), TENANT, "Ana")
    assert exc.value.context["message_id"] == "wamid.9"
    assert exc.value.context["tenant_id"] == TENANT


def test_search_pagination_reports_has_more(service):
    for n in range(60):
        service.store_message(_text(n, f"m{n}"), TENANT, "Ana")
    service.store_message(_text(99, "other"), "tenant-2", "Bo")

    page = service.search_conversations(ConversationSearchParams(tenant_id=TENANT, limit=50))
    assert page.total == 60
    assert len(page.messages) == 50
    assert page.has_more is True
    # newest first
    assert page.messages[0]["content"] == "m59"

    last = service.search_conversations(ConversationSearchParams(tenant_id=TENANT, limit=50, offset=50))
    assert len(last.messages) == 10
    assert last.has_more is False


def test_search_filters_by_direction(service):
    service.store_message(_text(1, "oi"), TENANT, "Ana")
    service.store_system_message(TENANT, PHONE, "Olá")
    page = service.search_conversations(ConversationSearchParams(tenant_id=TENANT, is_from_user=False))
    assert page.total == 1
    assert page.messages[0]["user_name"] == "System"


def test_cleanup_keeps_message_exactly_at_cutoff(store):
    cutoff = NOW - timedelta(days=60)
    store.insert("conversation_history", _row(iso_utc(cutoff)))
    store.insert("conversation_history", _row(iso_utc(cutoff - timedelta(microseconds=1)), phone="5511888880000"))
    store.insert("conversation_history", _row(iso_utc(NOW - timedelta(days=1))))

    svc = ConversationHistoryService(store, clock=MonotonicClock(source=lambda: NOW))
    result = svc.cleanup_old_conversations(60)
    assert result["deleted_count"] == 1
    assert result["deleted_conversations"] == 1

    remaining = store.select("conversation_history").rows
    assert len(remaining) == 2
    assert all(r["phone_number"] == PHONE for r in remaining)


def test_conversations_for_cleanup_preview(store):
    store.insert("conversation_history", _row(iso_utc(NOW - timedelta(days=90))))
    store.insert("conversation_history", _row(iso_utc(NOW - timedelta(days=70)), phone="5511888880000"))
    store.insert("conversation_history", _row(iso_utc(NOW - timedelta(days=2))))

    svc = ConversationHistoryService(store, clock=MonotonicClock(source=lambda: NOW))
    preview = svc.get_conversations_for_cleanup(60)
    assert preview["message_count"] == 2
    assert sorted(preview["phone_numbers"]) == ["5511888880000", PHONE]
    assert preview["oldest_date"] < preview["newest_date"]
    # preview never deletes
    assert len(store.select("conversation_history").rows) == 3


def test_cleanup_with_nothing_to_delete(service):
    result = service.cleanup_old_conversations(60)
    assert result["deleted_count"] == 0
    assert result["deleted_conversations"] == 0


def test_summary_counts_directions(service):
    service.store_message(_text(1, "oi"), TENANT, "Ana")
    service.store_message(_text(2, "tudo bem?"), TENANT, "Ana")
    service.store_system_message(TENANT, PHONE, "Olá")
    summary = service.get_conversation_summary(PHONE, TENANT)
    assert summary["total_messages"] == 3
    assert summary["user_messages"] == 2
    assert summary["system_messages"] == 1
    assert summary["message_types"] == {"text": 3}


def test_summary_defaults_when_empty(service):
    summary = service.get_conversation_summary(PHONE, TENANT)
    assert summary["total_messages"] == 0
    assert summary["first_interaction"] == ""


def test_stats_are_scoped_to_tenant(service):
    service.store_message(_text(1, "oi"), TENANT, "Ana", intent="greeting", confidence=0.9)
    service.store_message(_text(2, "oi", phone="5511777770000"), TENANT, "Caio")
    service.store_message(_text(3, "hey"), "tenant-2", "Bo")
    stats = service.get_conversation_stats(TENANT)
    assert stats["total_messages"] == 2
    assert stats["total_conversations"] == 2
    assert stats["intents_detected"] == {"greeting": 1}
    assert stats["average_messages_per_conversation"] == 1
    assert stats["retention_summary"]["total_stored"] == 2
    assert sum(stats["most_active_hours"].values()) == 2


def test_csv_export_columns(service):
    service.store_message(_text(1, "oi"), TENANT, "Ana")
    exported = service.export_conversation_history(ConversationSearchParams(tenant_id=TENANT), fmt="csv")
    assert exported["format"] == "csv"
    assert exported["total"] == 1
    row = exported["data"][0]
    assert tuple(row.keys()) == CSV_COLUMNS
    assert row["direction"] == "incoming"
    assert row["intent"] == ""
    assert row["confidence"] == ""

    text = render_csv(exported["data"])
    header = text.splitlines()[0]
    assert header == ",".join(CSV_COLUMNS)
    assert len(header.split(",")) == 8


def test_json_export_is_unpaginated(service):
    for n in range(120):
        service.store_message(_text(n, f"m{n}"), TENANT, "Ana")
    exported = service.export_conversation_history(ConversationSearchParams(tenant_id=TENANT, limit=10))
    assert exported["format"] == "json"
    assert len(exported["data"]) == 120


def test_csv_row_outgoing_direction():
    row = to_csv_row({"is_from_user": False, "confidence_score": 0.5, "intent_detected": "booking"})
    assert row["direction"] == "outgoing"
    assert row["confidence"] == 0.5
    assert row["intent"] == "booking"


def test_recent_context_roles(service):
    service.store_message(_text(1, "oi"), TENANT, "Ana")
    service.store_system_message(TENANT, PHONE, "Olá")
    context = service.get_recent_context(PHONE, TENANT)
    assert [c["role"] for c in context] == ["user", "assistant"]
    assert context[0]["content"] == "oi"


def test_recent_context_fails_soft():
    store = mock.MagicMock()
    store.select.side_effect = StoreError("down")
    svc = ConversationHistoryService(store)
    assert svc.get_recent_context(PHONE, TENANT) == []
