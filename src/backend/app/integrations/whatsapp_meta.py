import hashlib
import hmac
import os
from dataclasses import dataclass
from typing import Any, Dict, Iterator, Optional


@dataclass
class InboundEnvelope:
    phone_number_id: str
    message: Dict[str, Any]
    user_name: str


def whatsapp_verify_signature(body: bytes, signature: str, app_secret: Optional[str] = None) -> bool:
    secret = app_secret if app_secret is not None else os.getenv("WHATSAPP_APP_SECRET", "")
    if not secret or not signature or not signature.startswith("sha256="):
        return False
    expected = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(signature[len("sha256="):].encode(), expected.encode())


def whatsapp_verify_challenge(mode: Optional[str], token: Optional[str], verify_token: str) -> bool:
    if not verify_token or mode != "subscribe" or token is None:
        return False
    return hmac.compare_digest(token.encode(), verify_token.encode())


def iter_inbound_messages(payload: Dict[str, Any]) -> Iterator[InboundEnvelope]:
    """Yield each user message in a Cloud API webhook delivery.

    Status callbacks (delivered/read) carry no ``messages`` and yield nothing.
    """
    for entry in payload.get("entry") or []:
        for change in entry.get("changes") or []:
            if change.get("field", "messages") != "messages":
                continue
            value = change.get("value") or {}
            phone_number_id = str((value.get("metadata") or {}).get("phone_number_id") or "")
            names = {
                str(c.get("wa_id")): (c.get("profile") or {}).get("name") or ""
                for c in value.get("contacts") or []
            }
            for message in value.get("messages") or []:
                sender = str(message.get("from") or "")
                yield InboundEnvelope(
                    phone_number_id=phone_number_id,
                    message=message,
                    user_name=names.get(sender) or sender,
                )
