"""Conversation history for the WhatsApp channel.

Every inbound and outbound chat turn is appended to ``conversation_history``
through the injected ``DataStore``. Reads, search, export and retention
cleanup are mapped onto store queries and the server-side procedures
``get_conversation_summary``, ``get_conversations_for_cleanup``,
``cleanup_old_conversations`` and ``get_conversation_stats``.
"""
import csv
import io
import logging
from datetime import timedelta
from typing import Any, Dict, List, Mapping, Optional, Union

from .errors import ConversationHistoryError, ServiceError
from .metrics_counters import CLEANUP_DELETED, MESSAGES_STORED
from .schemas import ConversationPage, ConversationSearchParams, InboundMessage, parse_message
from .store import DataStore, eq, gte, lt, lte
from .utils import MonotonicClock, iso_utc, now_iso

logger = logging.getLogger(__name__)

TABLE = "conversation_history"
DISPLAY_LIMIT = 500
DEFAULT_PAGE_SIZE = 50
DEFAULT_RETENTION_DAYS = 60
SYSTEM_USER_NAME = "System"

CSV_COLUMNS = (
    "timestamp",
    "phone_number",
    "user_name",
    "direction",
    "message_type",
    "content",
    "intent",
    "confidence",
)


def format_display_content(content: str) -> str:
    if len(content) > DISPLAY_LIMIT:
        return content[:DISPLAY_LIMIT] + "..."
    return content


def to_csv_row(msg: Mapping[str, Any]) -> Dict[str, Any]:
    confidence = msg.get("confidence_score")
    return {
        "timestamp": msg.get("created_at") or "",
        "phone_number": msg.get("phone_number") or "",
        "user_name": msg.get("user_name") or "",
        "direction": "incoming" if msg.get("is_from_user") else "outgoing",
        "message_type": msg.get("message_type") or "",
        "content": msg.get("content") or "",
        "intent": msg.get("intent_detected") or "",
        "confidence": "" if confidence is None else confidence,
    }


def render_csv(rows: List[Mapping[str, Any]]) -> str:
    buf = io.StringIO()
    writer = csv.DictWriter(buf, fieldnames=list(CSV_COLUMNS), extrasaction="ignore")
    writer.writeheader()
    for row in rows:
        writer.writerow(row)
    return buf.getvalue()


class ConversationHistoryService:
    def __init__(self, store: DataStore, clock: Optional[MonotonicClock] = None):
        self.store = store
        self.clock = clock or MonotonicClock()

    # ----------------------------- writes -----------------------------
    def store_message(
        self,
        message: Union[InboundMessage, Mapping[str, Any]],
        tenant_id: str,
        user_name: str,
        user_id: Optional[str] = None,
        intent: Optional[str] = None,
        confidence: Optional[float] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Store an inbound WhatsApp message. Store failures are re-raised."""
        msg = parse_message(message)
        content = msg.content()
        record = {
            "tenant_id": tenant_id,
            "user_id": user_id,
            "phone_number": msg.from_,
            "user_name": user_name,
            "is_from_user": True,
            "message_type": msg.type,
            "message_content": content,
            "content": format_display_content(content),
            "raw_message": msg.raw(),
            "intent_detected": intent,
            "confidence_score": confidence,
            "conversation_context": context,
            "message_id": msg.id,
            "created_at": self.clock.now_iso(),
        }
        try:
            row = self.store.insert(TABLE, record)
        except ServiceError as exc:
            logger.error(
                "conversation_message_store_failed",
                extra={"message_id": msg.id, "tenant_id": tenant_id, "phone": msg.from_, "error": str(exc)},
            )
            raise ConversationHistoryError(
                "Failed to store conversation message", message_id=msg.id, tenant_id=tenant_id, phone_number=msg.from_
            ) from exc
        MESSAGES_STORED.labels(direction="inbound").inc()
        logger.info(
            "conversation_message_stored",
            extra={"message_id": msg.id, "tenant_id": tenant_id, "phone": msg.from_, "message_type": msg.type},
        )
        return row

    def store_system_message(
        self,
        tenant_id: str,
        phone_number: str,
        message_content: str,
        message_type: str = "text",
        context: Optional[Dict[str, Any]] = None,
        related_message_id: Optional[str] = None,
        user_name: str = SYSTEM_USER_NAME,
    ) -> Dict[str, Any]:
        now = self.clock.now()
        record = {
            "tenant_id": tenant_id,
            "user_id": None,
            "phone_number": phone_number,
            "user_name": user_name,
            "is_from_user": False,
            "message_type": message_type,
            "message_content": message_content,
            "content": format_display_content(message_content),
            "raw_message": {
                "type": message_type,
                "content": message_content,
                "timestamp": int(now.timestamp() * 1000),
                "system_generated": True,
            },
            "intent_detected": None,
            "confidence_score": None,
            "conversation_context": context,
            "message_id": related_message_id or f"system_{round(now.timestamp() * 1_000_000)}",
            "created_at": iso_utc(now),
        }
        try:
            row = self.store.insert(TABLE, record)
        except ServiceError as exc:
            logger.error(
                "system_message_store_failed",
                extra={"tenant_id": tenant_id, "phone": phone_number, "error": str(exc)},
            )
            raise ConversationHistoryError(
                "Failed to store system message", tenant_id=tenant_id, phone_number=phone_number
            ) from exc
        MESSAGES_STORED.labels(direction="outbound").inc()
        logger.info("system_message_stored", extra={"tenant_id": tenant_id, "phone": phone_number, "message_type": message_type})
        return row

    # ----------------------------- reads -----------------------------
    def get_conversation_by_phone(
        self,
        phone_number: str,
        tenant_id: str,
        limit: int = DEFAULT_PAGE_SIZE,
        before: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Newest ``limit`` messages for the pair, returned oldest first.

        ``before`` pages backwards: pass the ``created_at`` of the oldest
        message already shown.
        """
        filters = [eq("phone_number", phone_number), eq("tenant_id", tenant_id)]
        if before:
            filters.append(lt("created_at", before))
        try:
            result = self.store.select(TABLE, filters, order_by="created_at", descending=True, limit=limit)
        except ServiceError as exc:
            logger.error("conversation_fetch_failed", extra={"phone": phone_number, "tenant_id": tenant_id, "error": str(exc)})
            raise ConversationHistoryError(
                "Failed to retrieve conversation history", phone_number=phone_number, tenant_id=tenant_id
            ) from exc
        return list(reversed(result.rows))

    def search_conversations(self, params: ConversationSearchParams, paginate: bool = True) -> ConversationPage:
        filters = []
        if params.phone_number:
            filters.append(eq("phone_number", params.phone_number))
        if params.tenant_id:
            filters.append(eq("tenant_id", params.tenant_id))
        if params.user_id:
            filters.append(eq("user_id", params.user_id))
        if params.start_date:
            filters.append(gte("created_at", params.start_date))
        if params.end_date:
            filters.append(lte("created_at", params.end_date))
        if params.message_type:
            filters.append(eq("message_type", params.message_type))
        if params.intent_detected:
            filters.append(eq("intent_detected", params.intent_detected))
        if params.is_from_user is not None:
            filters.append(eq("is_from_user", params.is_from_user))

        limit = (params.limit or DEFAULT_PAGE_SIZE) if paginate else None
        offset = (params.offset or 0) if paginate else 0
        try:
            result = self.store.select(
                TABLE, filters, order_by="created_at", descending=True, limit=limit, offset=offset, count=True
            )
        except ServiceError as exc:
            logger.error("conversation_search_failed", extra={"params": params.model_dump(exclude_none=True), "error": str(exc)})
            raise ConversationHistoryError(
                "Failed to search conversations", **params.model_dump(exclude_none=True)
            ) from exc
        total = result.count if result.count is not None else len(result.rows)
        has_more = total > offset + limit if limit is not None else False
        return ConversationPage(messages=result.rows, total=total, has_more=has_more)

    def _call(self, procedure: str, params: Dict[str, Any], failure: str, **ids: Any) -> Any:
        try:
            return self.store.rpc(procedure, params)
        except ServiceError as exc:
            logger.error(f"{procedure}_failed", extra={**ids, "error": str(exc)})
            raise ConversationHistoryError(failure, **ids) from exc

    def get_conversation_summary(self, phone_number: str, tenant_id: str) -> Dict[str, Any]:
        data = self._call(
            "get_conversation_summary",
            {"p_phone_number": phone_number, "p_tenant_id": tenant_id},
            "Failed to get conversation summary",
            phone_number=phone_number,
            tenant_id=tenant_id,
        )
        return data or {
            "total_messages": 0,
            "first_interaction": "",
            "last_interaction": "",
            "message_types": {},
            "intents": {},
            "user_messages": 0,
            "system_messages": 0,
        }

    def _cutoff(self, retention_days: int) -> str:
        return iso_utc(self.clock.now() - timedelta(days=retention_days))

    def get_conversations_for_cleanup(self, retention_days: int = DEFAULT_RETENTION_DAYS) -> Dict[str, Any]:
        cutoff = self._cutoff(retention_days)
        data = self._call(
            "get_conversations_for_cleanup",
            {"p_cutoff_date": cutoff},
            "Failed to get conversations for cleanup",
            retention_days=retention_days,
        )
        return data or {"phone_numbers": [], "message_count": 0, "oldest_date": "", "newest_date": ""}

    def cleanup_old_conversations(self, retention_days: int = DEFAULT_RETENTION_DAYS) -> Dict[str, Any]:
        """Delete messages strictly older than ``retention_days``.

        The deletion runs inside the remote procedure; nothing is coordinated
        locally.
        """
        cutoff = self._cutoff(retention_days)
        logger.info("conversation_cleanup_started", extra={"retention_days": retention_days, "cutoff": cutoff})
        data = self._call(
            "cleanup_old_conversations",
            {"p_cutoff_date": cutoff},
            "Failed to cleanup conversations",
            retention_days=retention_days,
        )
        result = data or {"deleted_count": 0, "deleted_conversations": 0, "cleanup_date": now_iso()}
        CLEANUP_DELETED.inc(int(result.get("deleted_count") or 0))
        logger.info("conversation_cleanup_completed", extra={"retention_days": retention_days, "result": result})
        return result

    def get_conversation_stats(
        self,
        tenant_id: Optional[str] = None,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
    ) -> Dict[str, Any]:
        data = self._call(
            "get_conversation_stats",
            {"p_tenant_id": tenant_id, "p_start_date": start_date, "p_end_date": end_date},
            "Failed to get conversation stats",
            tenant_id=tenant_id,
        )
        return data or {
            "total_messages": 0,
            "total_conversations": 0,
            "messages_by_type": {},
            "intents_detected": {},
            "average_messages_per_conversation": 0,
            "most_active_hours": {},
            "retention_summary": {
                "total_stored": 0,
                "messages_last_30_days": 0,
                "messages_last_60_days": 0,
                "eligible_for_cleanup": 0,
            },
        }

    def export_conversation_history(self, params: ConversationSearchParams, fmt: str = "json") -> Dict[str, Any]:
        """Export every matching message (no pagination) for compliance/audit."""
        page = self.search_conversations(params, paginate=False)
        if fmt == "csv":
            return {"data": [to_csv_row(m) for m in page.messages], "format": "csv", "total": page.total}
        return {"data": page.messages, "format": "json", "total": page.total}

    def get_recent_context(self, phone_number: str, tenant_id: str, limit: int = 10) -> List[Dict[str, str]]:
        """Role-tagged transcript for the assistant; empty on any failure."""
        try:
            messages = self.get_conversation_by_phone(phone_number, tenant_id, limit)
        except Exception:
            logger.exception("recent_context_failed", extra={"phone": phone_number, "tenant_id": tenant_id})
            return []
        return [
            {
                "role": "user" if m.get("is_from_user") else "assistant",
                "content": m.get("content") or "",
                "timestamp": m.get("created_at") or "",
            }
            for m in messages
        ]

    def start_automatic_cleanup(
        self,
        retention_days: int = DEFAULT_RETENTION_DAYS,
        interval_hours: float = 24,
        lock_client=None,
    ):
        from .scheduler import CleanupScheduler

        scheduler = CleanupScheduler(self, retention_days=retention_days, interval_hours=interval_hours, lock_client=lock_client)
        scheduler.start()
        return scheduler
