from typing import Any, Optional
import uuid

from sqlalchemy import String, Boolean, Integer, Float, JSON, Text
from sqlalchemy.orm import Mapped, mapped_column

from .db import Base
from .utils import now_iso as _now_iso


def _uuid() -> str:
    return str(uuid.uuid4())


# Timestamps are ISO-8601 UTC strings, matching what PostgREST returns for
# timestamptz columns, so both store backends hand out identical rows.


class Tenant(Base):
    __tablename__ = "tenants"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    business_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    whatsapp_phone_number_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    stripe_customer_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    subscription_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    plan_id: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    subscription_status: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    trial_ends_at: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    created_at: Mapped[str] = mapped_column(String(40), default=_now_iso)
    updated_at: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)


class ConversationMessage(Base):
    __tablename__ = "conversation_history"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    tenant_id: Mapped[str] = mapped_column(String(36), index=True)
    user_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    phone_number: Mapped[str] = mapped_column(String(32), index=True)
    user_name: Mapped[str] = mapped_column(String(255))
    is_from_user: Mapped[bool] = mapped_column(Boolean, default=True)
    message_type: Mapped[str] = mapped_column(String(32))  # text|image|audio|...
    message_content: Mapped[str] = mapped_column(Text, default="")
    content: Mapped[str] = mapped_column(Text, default="")
    raw_message: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)
    intent_detected: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    confidence_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    conversation_context: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)
    message_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, index=True)
    created_at: Mapped[str] = mapped_column(String(40), default=_now_iso, index=True)


class Subscription(Base):
    __tablename__ = "subscriptions"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    tenant_id: Mapped[str] = mapped_column(String(36), index=True)
    stripe_subscription_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    stripe_customer_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    plan_id: Mapped[str] = mapped_column(String(32))
    status: Mapped[str] = mapped_column(String(32))  # trialing|active|past_due|canceled|...
    current_period_start: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    current_period_end: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    trial_end: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, default=False)
    canceled_at: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    created_at: Mapped[str] = mapped_column(String(40), default=_now_iso)
    updated_at: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)


class PaymentHistory(Base):
    __tablename__ = "payment_history"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    subscription_id: Mapped[str] = mapped_column(String(64), index=True)
    stripe_invoice_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    amount: Mapped[int] = mapped_column(Integer, default=0)
    currency: Mapped[Optional[str]] = mapped_column(String(8), nullable=True)
    status: Mapped[str] = mapped_column(String(16))  # succeeded|failed
    paid_at: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    failed_at: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    created_at: Mapped[str] = mapped_column(String(40), default=_now_iso)


class StripeWebhookEvent(Base):
    __tablename__ = "stripe_webhook_events"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    event_id: Mapped[str] = mapped_column(String(128), unique=True, index=True)
    event_type: Mapped[str] = mapped_column(String(64))
    processed_at: Mapped[str] = mapped_column(String(40), default=_now_iso)
