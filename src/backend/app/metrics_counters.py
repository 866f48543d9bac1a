from prometheus_client import Counter

WEBHOOK_EVENTS = Counter("booking_webhook_events_total", "Webhook events processed", ["provider", "status"])
MESSAGES_STORED = Counter("booking_conversation_messages_total", "Conversation messages stored", ["direction"])
CLEANUP_RUNS = Counter("booking_conversation_cleanup_runs_total", "Conversation cleanup runs", ["outcome"])
CLEANUP_DELETED = Counter("booking_conversation_cleanup_deleted_total", "Conversation messages deleted by cleanup")
