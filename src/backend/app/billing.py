"""Stripe billing and webhook reconciliation.

Local ``tenants``/``subscriptions`` rows follow Stripe, which stays the
source of truth: they are written only from verified webhook events. The
processor-facing calls are thin wrappers that raise ``BillingError`` when
Stripe rejects or cannot be reached.
"""
import enum
import json
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, List, Optional, Union

import stripe

from .errors import BillingError, PlanNotFoundError, ServiceError, WebhookSignatureError
from .events import emit_event
from .metrics_counters import WEBHOOK_EVENTS
from .plans import PLANS, Plan
from .store import DataStore, eq
from .utils import from_epoch, iso_utc, now_iso, utcnow

logger = logging.getLogger(__name__)

DEFAULT_TRIAL_DAYS = 7
WEBHOOK_TOLERANCE_SECONDS = 300


def stripe_client(secret: str):
    if not secret:
        raise BillingError("stripe_not_configured")
    stripe.api_key = secret
    return stripe


def _get(obj: Any, key: str, default: Any = None) -> Any:
    """Read a key from a dict or StripeObject; missing or null gives ``default``."""
    if obj is None:
        return default
    try:
        value = obj[key]
    except (KeyError, TypeError, IndexError):
        return default
    return default if value is None else value


class WebhookEventKind(enum.Enum):
    CHECKOUT_COMPLETED = "checkout.session.completed"
    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    PAYMENT_FAILED = "invoice.payment_failed"
    UNRECOGNIZED = "unrecognized"

    @classmethod
    def from_type(cls, event_type: Optional[str]) -> "WebhookEventKind":
        for kind in cls:
            if kind is not cls.UNRECOGNIZED and kind.value == event_type:
                return kind
        return cls.UNRECOGNIZED


@dataclass
class WebhookResult:
    event_id: str
    event_type: str
    kind: WebhookEventKind
    status: str  # processed | dropped | failed | ignored | duplicate

    def to_dict(self) -> Dict[str, str]:
        return {"event_id": self.event_id, "event_type": self.event_type, "status": self.status}


class BillingService:
    def __init__(
        self,
        store: DataStore,
        stripe_api: Any = None,
        webhook_secret: str = "",
        frontend_url: str = "",
        plans: Optional[Dict[str, Plan]] = None,
        dedup: bool = False,
    ):
        self.store = store
        self.stripe = stripe_api if stripe_api is not None else stripe
        self.webhook_secret = webhook_secret
        self.frontend_url = frontend_url.rstrip("/")
        self.plans = plans if plans is not None else PLANS
        self.dedup = dedup
        self._handlers = {
            WebhookEventKind.CHECKOUT_COMPLETED: self._handle_checkout_completed,
            WebhookEventKind.SUBSCRIPTION_CREATED: self._handle_subscription_updated,
            WebhookEventKind.SUBSCRIPTION_UPDATED: self._handle_subscription_updated,
            WebhookEventKind.SUBSCRIPTION_DELETED: self._handle_subscription_deleted,
            WebhookEventKind.PAYMENT_SUCCEEDED: self._handle_payment_succeeded,
            WebhookEventKind.PAYMENT_FAILED: self._handle_payment_failed,
        }

    # ------------------------------ catalog ------------------------------
    def get_plans(self) -> List[Plan]:
        return list(self.plans.values())

    def get_plan(self, plan_id: str) -> Optional[Plan]:
        return self.plans.get(plan_id)

    def _require_plan(self, plan_id: str) -> Plan:
        plan = self.get_plan(plan_id)
        if plan is None:
            raise PlanNotFoundError(f"Invalid plan: {plan_id}", plan_id=plan_id)
        return plan

    # ------------------------------ processor calls ------------------------------
    def create_customer(self, email: str, name: Optional[str] = None, metadata: Optional[Dict[str, str]] = None):
        try:
            customer = self.stripe.Customer.create(
                email=email,
                name=name,
                metadata={"source": "booking_registration", **(metadata or {})},
            )
        except stripe.StripeError as exc:
            logger.error("stripe_customer_create_failed", extra={"email": email, "error": str(exc)})
            raise BillingError("Failed to create customer", email=email) from exc
        logger.info("stripe_customer_created", extra={"customer_id": _get(customer, "id"), "email": email})
        return customer

    def create_checkout_session(
        self,
        plan_id: str,
        customer_email: str,
        tenant_id: Optional[str] = None,
        success_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
    ):
        plan = self._require_plan(plan_id)
        metadata = {"plan_id": plan_id, "tenant_id": tenant_id or ""}
        try:
            session = self.stripe.checkout.Session.create(
                mode="subscription",
                payment_method_types=["card", "boleto"],
                customer_email=customer_email,
                line_items=[{"price": plan.price_id, "quantity": 1}],
                subscription_data={"trial_period_days": plan.trial_days, "metadata": metadata},
                metadata=metadata,
                success_url=success_url or f"{self.frontend_url}/success?session_id={{CHECKOUT_SESSION_ID}}",
                cancel_url=cancel_url or f"{self.frontend_url}/pricing",
                locale="pt-BR",
                billing_address_collection="required",
                allow_promotion_codes=True,
            )
        except stripe.StripeError as exc:
            logger.error(
                "checkout_session_create_failed",
                extra={"plan_id": plan_id, "email": customer_email, "tenant_id": tenant_id, "error": str(exc)},
            )
            raise BillingError("Failed to create checkout session", plan_id=plan_id, tenant_id=tenant_id) from exc
        logger.info(
            "checkout_session_created",
            extra={"session_id": _get(session, "id"), "plan_id": plan_id, "tenant_id": tenant_id},
        )
        return session

    def create_billing_portal_session(self, customer_id: str, return_url: Optional[str] = None):
        try:
            session = self.stripe.billing_portal.Session.create(
                customer=customer_id,
                return_url=return_url or f"{self.frontend_url}/settings",
            )
        except stripe.StripeError as exc:
            logger.error("billing_portal_create_failed", extra={"customer_id": customer_id, "error": str(exc)})
            raise BillingError("Failed to create billing portal session", customer_id=customer_id) from exc
        logger.info("billing_portal_created", extra={"customer_id": customer_id, "session_id": _get(session, "id")})
        return session

    def cancel_subscription(self, subscription_id: str, reason: Optional[str] = None):
        """Cancel at the end of the current period; access continues until then."""
        try:
            subscription = self.stripe.Subscription.modify(
                subscription_id,
                cancel_at_period_end=True,
                metadata={"cancellation_reason": reason or "user_requested", "cancelled_at": now_iso()},
            )
        except stripe.StripeError as exc:
            logger.error("subscription_cancel_failed", extra={"subscription_id": subscription_id, "error": str(exc)})
            raise BillingError("Failed to cancel subscription", subscription_id=subscription_id) from exc
        logger.info("subscription_cancelled", extra={"subscription_id": subscription_id, "reason": reason})
        return subscription

    def cancel_subscription_immediately(self, subscription_id: str, reason: Optional[str] = None):
        """Terminate now with proration; no final invoice is issued."""
        try:
            subscription = self.stripe.Subscription.cancel(subscription_id, invoice_now=False, prorate=True)
        except stripe.StripeError as exc:
            logger.error(
                "subscription_cancel_immediate_failed", extra={"subscription_id": subscription_id, "error": str(exc)}
            )
            raise BillingError("Failed to cancel subscription immediately", subscription_id=subscription_id) from exc
        logger.info("subscription_cancelled_immediately", extra={"subscription_id": subscription_id, "reason": reason})
        return subscription

    def reactivate_subscription(self, subscription_id: str):
        try:
            subscription = self.stripe.Subscription.modify(subscription_id, cancel_at_period_end=False)
        except stripe.StripeError as exc:
            logger.error("subscription_reactivate_failed", extra={"subscription_id": subscription_id, "error": str(exc)})
            raise BillingError("Failed to reactivate subscription", subscription_id=subscription_id) from exc
        logger.info("subscription_reactivated", extra={"subscription_id": subscription_id})
        return subscription

    def change_subscription_plan(self, subscription_id: str, new_plan_id: str):
        """Swap the subscription's single billable item to ``new_plan_id``.

        Multi-item subscriptions are not supported: only the first item is
        repriced. The prorated difference is invoiced immediately.
        """
        plan = self._require_plan(new_plan_id)
        try:
            current = self.stripe.Subscription.retrieve(subscription_id, expand=["items.data.price"])
            items = _get(_get(current, "items"), "data", [])
            if not items:
                raise BillingError("Subscription has no billable items", subscription_id=subscription_id)
            metadata = dict(_get(current, "metadata", {}))
            updated = self.stripe.Subscription.modify(
                subscription_id,
                items=[{"id": _get(items[0], "id"), "price": plan.price_id}],
                proration_behavior="always_invoice",
                metadata={**metadata, "plan_id": new_plan_id, "plan_changed_at": now_iso()},
            )
        except stripe.StripeError as exc:
            logger.error(
                "subscription_plan_change_failed",
                extra={"subscription_id": subscription_id, "plan_id": new_plan_id, "error": str(exc)},
            )
            raise BillingError(
                "Failed to change subscription plan", subscription_id=subscription_id, plan_id=new_plan_id
            ) from exc
        logger.info("subscription_plan_changed", extra={"subscription_id": subscription_id, "plan_id": new_plan_id})
        return updated

    def get_subscription(self, subscription_id: str):
        try:
            return self.stripe.Subscription.retrieve(subscription_id, expand=["customer", "items.data.price"])
        except stripe.StripeError as exc:
            logger.error("subscription_fetch_failed", extra={"subscription_id": subscription_id, "error": str(exc)})
            raise BillingError("Failed to get subscription", subscription_id=subscription_id) from exc

    def get_customer_subscriptions(self, customer_id: str) -> List[Any]:
        try:
            result = self.stripe.Subscription.list(customer=customer_id, expand=["data.items.data.price"])
        except stripe.StripeError as exc:
            logger.error("customer_subscriptions_fetch_failed", extra={"customer_id": customer_id, "error": str(exc)})
            raise BillingError("Failed to get customer subscriptions", customer_id=customer_id) from exc
        return list(_get(result, "data", []))

    def get_tenant_subscription(self, tenant_id: str) -> Optional[Dict[str, Any]]:
        result = self.store.select(
            "subscriptions", [eq("tenant_id", tenant_id)], order_by="created_at", descending=True, limit=1
        )
        return result.rows[0] if result.rows else None

    # ------------------------------ webhooks ------------------------------
    def handle_webhook(self, body: Union[bytes, str], signature: str) -> WebhookResult:
        """Verify and apply one Stripe webhook delivery.

        Raises ``WebhookSignatureError`` before touching any state when the
        signature does not match. Handler failures are logged and reported in
        the result status, never raised.
        """
        if not self.webhook_secret:
            raise BillingError("STRIPE_WEBHOOK_SECRET is required")
        try:
            payload = body.decode("utf-8") if isinstance(body, bytes) else body
        except UnicodeDecodeError as exc:
            logger.error("stripe_webhook_signature_invalid", extra={"error": "payload is not utf-8"})
            WEBHOOK_EVENTS.labels(provider="stripe", status="invalid_signature").inc()
            raise WebhookSignatureError("Webhook signature verification failed") from exc
        try:
            self.stripe.WebhookSignature.verify_header(
                payload, signature or "", self.webhook_secret, WEBHOOK_TOLERANCE_SECONDS
            )
        except stripe.SignatureVerificationError as exc:
            logger.error("stripe_webhook_signature_invalid", extra={"error": str(exc)})
            WEBHOOK_EVENTS.labels(provider="stripe", status="invalid_signature").inc()
            raise WebhookSignatureError("Webhook signature verification failed") from exc
        try:
            event = json.loads(payload)
        except ValueError as exc:
            raise BillingError("Webhook payload is not valid JSON") from exc

        event_id = str(_get(event, "id", ""))
        event_type = str(_get(event, "type", ""))
        obj = _get(_get(event, "data"), "object", {})
        kind = WebhookEventKind.from_type(event_type)
        logger.info("stripe_webhook_received", extra={"event_id": event_id, "event_type": event_type})

        if self.dedup and event_id and self._seen(event_id):
            logger.info("stripe_webhook_duplicate", extra={"event_id": event_id, "event_type": event_type})
            status = "duplicate"
        elif kind is WebhookEventKind.UNRECOGNIZED:
            logger.info("stripe_webhook_unhandled", extra={"event_id": event_id, "event_type": event_type})
            status = "ignored"
        else:
            status = self._handlers[kind](obj)
            if self.dedup and event_id and status != "failed":
                self._remember(event_id, event_type)
        WEBHOOK_EVENTS.labels(provider="stripe", status=status).inc()
        return WebhookResult(event_id=event_id, event_type=event_type, kind=kind, status=status)

    def _seen(self, event_id: str) -> bool:
        try:
            result = self.store.select("stripe_webhook_events", [eq("event_id", event_id)], limit=1)
        except ServiceError:
            # treated as unseen; handlers tolerate replays
            logger.warning("stripe_webhook_dedup_lookup_failed", extra={"event_id": event_id})
            return False
        return bool(result.rows)

    def _remember(self, event_id: str, event_type: str) -> None:
        try:
            self.store.insert(
                "stripe_webhook_events",
                {"event_id": event_id, "event_type": event_type, "processed_at": now_iso()},
            )
        except ServiceError:
            logger.warning("stripe_webhook_dedup_record_failed", extra={"event_id": event_id})

    def _handle_checkout_completed(self, session: Any) -> str:
        session_id = _get(session, "id")
        try:
            metadata = _get(session, "metadata", {})
            plan_id = _get(metadata, "plan_id")
            tenant_id = _get(metadata, "tenant_id")
            customer_id = _get(session, "customer")
            subscription_id = _get(session, "subscription")
            if not plan_id or not tenant_id:
                logger.error("checkout_session_missing_metadata", extra={"session_id": session_id})
                return "dropped"

            plan = self.get_plan(plan_id)
            now = utcnow()
            trial_end = iso_utc(now + timedelta(days=plan.trial_days if plan else DEFAULT_TRIAL_DAYS))
            self.store.update(
                "tenants",
                {
                    "stripe_customer_id": customer_id,
                    "subscription_id": subscription_id,
                    "plan_id": plan_id,
                    "subscription_status": "active",
                    "trial_ends_at": trial_end if subscription_id else None,
                    "updated_at": iso_utc(now),
                },
                [eq("id", tenant_id)],
            )
            # A failure past this point leaves the tenant row updated without a
            # subscription row; the next subscription.* event fills it in.
            record = {
                "tenant_id": tenant_id,
                "stripe_subscription_id": subscription_id,
                "stripe_customer_id": customer_id,
                "plan_id": plan_id,
                "status": "trialing",
                "current_period_start": iso_utc(now),
                "current_period_end": trial_end,
                "trial_end": trial_end,
            }
            existing = self.store.select(
                "subscriptions", [eq("stripe_subscription_id", subscription_id)], limit=1
            ).rows if subscription_id else []
            if existing:
                self.store.update("subscriptions", {**record, "updated_at": iso_utc(now)}, [eq("id", existing[0]["id"])])
            else:
                self.store.insert("subscriptions", record)
        except Exception:
            logger.exception("checkout_completed_handler_failed", extra={"session_id": session_id})
            return "failed"
        logger.info(
            "checkout_completed",
            extra={"tenant_id": tenant_id, "plan_id": plan_id, "subscription_id": subscription_id},
        )
        emit_event("BillingUpdated", {"tenant_id": tenant_id, "status": "active", "plan_id": plan_id})
        return "processed"

    def _handle_subscription_updated(self, subscription: Any) -> str:
        subscription_id = _get(subscription, "id")
        try:
            status = _get(subscription, "status")
            start, end = _period_bounds(subscription)
            values = {
                "status": status,
                "current_period_start": from_epoch(start),
                "current_period_end": from_epoch(end),
                "trial_end": from_epoch(_get(subscription, "trial_end")),
                "cancel_at_period_end": bool(_get(subscription, "cancel_at_period_end", False)),
                "canceled_at": from_epoch(_get(subscription, "canceled_at")),
                "updated_at": now_iso(),
            }
            tenant_values = {"subscription_status": status, "updated_at": values["updated_at"]}
            plan_id = _get(_get(subscription, "metadata", {}), "plan_id")
            if plan_id in self.plans:
                values["plan_id"] = plan_id
            self.store.update("subscriptions", values, [eq("stripe_subscription_id", subscription_id)])
            self.store.update("tenants", tenant_values, [eq("subscription_id", subscription_id)])
        except Exception:
            logger.exception("subscription_updated_handler_failed", extra={"subscription_id": subscription_id})
            return "failed"
        logger.info("subscription_updated", extra={"subscription_id": subscription_id, "status": status})
        return "processed"

    def _handle_subscription_deleted(self, subscription: Any) -> str:
        subscription_id = _get(subscription, "id")
        try:
            now = now_iso()
            canceled_at = from_epoch(_get(subscription, "canceled_at")) or now
            self.store.update(
                "subscriptions",
                {"status": "canceled", "canceled_at": canceled_at, "updated_at": now},
                [eq("stripe_subscription_id", subscription_id)],
            )
            self.store.update(
                "tenants",
                {"subscription_status": "canceled", "updated_at": now},
                [eq("subscription_id", subscription_id)],
            )
        except Exception:
            logger.exception("subscription_deleted_handler_failed", extra={"subscription_id": subscription_id})
            return "failed"
        logger.info("subscription_deleted", extra={"subscription_id": subscription_id})
        emit_event("BillingUpdated", {"subscription_id": subscription_id, "status": "canceled"})
        return "processed"

    def _handle_payment_succeeded(self, invoice: Any) -> str:
        invoice_id = _get(invoice, "id")
        try:
            subscription_id = _invoice_subscription(invoice)
            if not subscription_id:
                return "processed"
            already = self.store.select(
                "payment_history",
                [eq("stripe_invoice_id", invoice_id), eq("status", "succeeded")],
                limit=1,
            ).rows
            if not already:
                paid_at = from_epoch(_get(_get(invoice, "status_transitions"), "paid_at")) or now_iso()
                self.store.insert(
                    "payment_history",
                    {
                        "subscription_id": subscription_id,
                        "stripe_invoice_id": invoice_id,
                        "amount": int(_get(invoice, "amount_paid", 0)),
                        "currency": _get(invoice, "currency"),
                        "status": "succeeded",
                        "paid_at": paid_at,
                    },
                )
        except Exception:
            logger.exception("payment_succeeded_handler_failed", extra={"invoice_id": invoice_id})
            return "failed"
        logger.info(
            "payment_succeeded",
            extra={"subscription_id": subscription_id, "invoice_id": invoice_id, "amount": _get(invoice, "amount_paid", 0)},
        )
        return "processed"

    def _handle_payment_failed(self, invoice: Any) -> str:
        invoice_id = _get(invoice, "id")
        try:
            subscription_id = _invoice_subscription(invoice)
            if not subscription_id:
                return "processed"
            self.store.insert(
                "payment_history",
                {
                    "subscription_id": subscription_id,
                    "stripe_invoice_id": invoice_id,
                    "amount": int(_get(invoice, "amount_due", 0)),
                    "currency": _get(invoice, "currency"),
                    "status": "failed",
                    "failed_at": now_iso(),
                },
            )
            subscription = self.get_subscription(subscription_id)
            if _get(subscription, "status") == "past_due":
                self.store.update(
                    "tenants",
                    {"subscription_status": "past_due", "updated_at": now_iso()},
                    [eq("subscription_id", subscription_id)],
                )
        except Exception:
            logger.exception("payment_failed_handler_failed", extra={"invoice_id": invoice_id})
            return "failed"
        logger.info(
            "payment_failed",
            extra={"subscription_id": subscription_id, "invoice_id": invoice_id, "amount": _get(invoice, "amount_due", 0)},
        )
        return "processed"


def _period_bounds(subscription: Any):
    # Newer API versions report billing periods per item instead of on the subscription
    start = _get(subscription, "current_period_start")
    end = _get(subscription, "current_period_end")
    if start is None or end is None:
        items = _get(_get(subscription, "items"), "data", [])
        if items:
            start = start if start is not None else _get(items[0], "current_period_start")
            end = end if end is not None else _get(items[0], "current_period_end")
    return start, end


def _invoice_subscription(invoice: Any) -> Optional[str]:
    subscription = _get(invoice, "subscription")
    if subscription is None:
        details = _get(_get(invoice, "parent"), "subscription_details")
        subscription = _get(details, "subscription")
    if subscription is not None and not isinstance(subscription, str):
        subscription = _get(subscription, "id")
    return subscription
