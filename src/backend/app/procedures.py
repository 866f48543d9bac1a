"""Python renditions of the conversation_history SQL functions.

Each procedure takes the same ``p_*`` parameters as its Supabase
counterpart and returns the same JSON shape, or None when there is nothing
to report so callers apply their defaults.
"""
from collections import Counter
from datetime import timedelta
from typing import Any, Dict, Mapping, Optional

from sqlalchemy import delete, select
from sqlalchemy.engine import Connection

from . import models as dbm
from .utils import iso_utc, now_iso, utcnow

_history = dbm.ConversationMessage.__table__


def get_conversation_summary(conn: Connection, params: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
    rows = conn.execute(
        select(_history.c.message_type, _history.c.intent_detected, _history.c.is_from_user, _history.c.created_at)
        .where(_history.c.phone_number == params.get("p_phone_number"), _history.c.tenant_id == params.get("p_tenant_id"))
        .order_by(_history.c.created_at.asc())
    ).all()
    if not rows:
        return None
    user_messages = sum(1 for r in rows if r.is_from_user)
    return {
        "total_messages": len(rows),
        "first_interaction": rows[0].created_at,
        "last_interaction": rows[-1].created_at,
        "message_types": dict(Counter(r.message_type for r in rows)),
        "intents": dict(Counter(r.intent_detected for r in rows if r.intent_detected)),
        "user_messages": user_messages,
        "system_messages": len(rows) - user_messages,
    }


def get_conversations_for_cleanup(conn: Connection, params: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
    cutoff = params.get("p_cutoff_date")
    rows = conn.execute(
        select(_history.c.phone_number, _history.c.created_at)
        .where(_history.c.created_at < cutoff)
        .order_by(_history.c.created_at.asc())
    ).all()
    if not rows:
        return None
    return {
        "phone_numbers": sorted({r.phone_number for r in rows}),
        "message_count": len(rows),
        "oldest_date": rows[0].created_at,
        "newest_date": rows[-1].created_at,
    }


def cleanup_old_conversations(conn: Connection, params: Mapping[str, Any]) -> Dict[str, Any]:
    # Strictly older than the cutoff; a row stamped exactly at the cutoff stays.
    cutoff = params.get("p_cutoff_date")
    eligible = _history.c.created_at < cutoff
    pairs = conn.execute(select(_history.c.tenant_id, _history.c.phone_number).where(eligible).distinct()).all()
    deleted = conn.execute(delete(_history).where(eligible)).rowcount or 0
    return {
        "deleted_count": int(deleted),
        "deleted_conversations": len(pairs),
        "cleanup_date": now_iso(),
    }


def get_conversation_stats(conn: Connection, params: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
    tenant_id = params.get("p_tenant_id")
    start = params.get("p_start_date")
    end = params.get("p_end_date")
    scope = []
    if tenant_id:
        scope.append(_history.c.tenant_id == tenant_id)
    window = list(scope)
    if start:
        window.append(_history.c.created_at >= start)
    if end:
        window.append(_history.c.created_at <= end)
    cols = (
        _history.c.tenant_id,
        _history.c.phone_number,
        _history.c.message_type,
        _history.c.intent_detected,
        _history.c.created_at,
    )
    rows = conn.execute(select(*cols).where(*window)).all()
    stored = conn.execute(select(_history.c.created_at).where(*scope)).scalars().all()
    if not rows and not stored:
        return None

    conversations = {(r.tenant_id, r.phone_number) for r in rows}
    now = utcnow()
    last_30 = iso_utc(now - timedelta(days=30))
    last_60 = iso_utc(now - timedelta(days=60))
    return {
        "total_messages": len(rows),
        "total_conversations": len(conversations),
        "messages_by_type": dict(Counter(r.message_type for r in rows)),
        "intents_detected": dict(Counter(r.intent_detected for r in rows if r.intent_detected)),
        "average_messages_per_conversation": round(len(rows) / len(conversations), 2) if conversations else 0,
        "most_active_hours": dict(Counter(r.created_at[11:13] for r in rows)),
        "retention_summary": {
            "total_stored": len(stored),
            "messages_last_30_days": sum(1 for ts in stored if ts >= last_30),
            "messages_last_60_days": sum(1 for ts in stored if ts >= last_60),
            "eligible_for_cleanup": sum(1 for ts in stored if ts < last_60),
        },
    }


PROCEDURES = {
    "get_conversation_summary": get_conversation_summary,
    "get_conversations_for_cleanup": get_conversations_for_cleanup,
    "cleanup_old_conversations": cleanup_old_conversations,
    "get_conversation_stats": get_conversation_stats,
}
