import json
import logging
import os
from typing import Any, Dict

import redis

from .utils import now_iso

logger = logging.getLogger(__name__)

EVENTS_CHANNEL = os.getenv("EVENTS_CHANNEL", "booking.events")

_redis_client = None


def _get_redis():
    global _redis_client
    if _redis_client is not None:
        return _redis_client
    url = os.getenv("REDIS_URL")
    if not url:
        return None
    try:
        client = redis.Redis.from_url(url, decode_responses=True)
        # ping once
        client.ping()
    except redis.RedisError:
        logger.warning("redis_unavailable", extra={"url": url.split("@")[-1]})
        return None
    _redis_client = client
    return _redis_client


def emit_event(name: str, payload: Dict[str, Any]) -> None:
    event = {
        "name": name,
        "ts": now_iso(),
        "payload": payload,
    }
    logger.info("event %s", name, extra={"event_name": name, "event_payload": payload})
    # optional Redis publish
    client = _get_redis()
    if client is not None:
        try:
            client.publish(EVENTS_CHANNEL, json.dumps(event, default=str))
        except redis.RedisError:
            logger.warning("event_publish_failed", extra={"event_name": name})
