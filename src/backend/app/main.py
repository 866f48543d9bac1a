from __future__ import annotations

from dataclasses import dataclass
from fastapi import FastAPI, Depends, Request, Response, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from pydantic import ValidationError
from typing import Any, Dict, List, Optional
import json
import logging

import stripe as _stripe

from .auth import get_user_context, require_role, UserContext
from .billing import BillingService, stripe_client
from .config import Settings, load_settings
from .conversations import DEFAULT_PAGE_SIZE, ConversationHistoryService, render_csv
from .db import get_engine
from .errors import (
    ConversationHistoryError,
    PlanNotFoundError,
    ServiceError,
    WebhookSignatureError,
)
from .events import _get_redis
from .integrations.whatsapp_meta import (
    iter_inbound_messages,
    whatsapp_verify_challenge,
    whatsapp_verify_signature,
)
from .metrics_counters import WEBHOOK_EVENTS
from .schemas import (
    CancelRequest,
    ChangePlanRequest,
    CheckoutRequest,
    CleanupRequest,
    ConversationSearchParams,
    PortalRequest,
    ReactivateRequest,
)
from .store import DataStore, SqlStore, SupabaseStore, eq

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    store: DataStore
    conversations: ConversationHistoryService
    billing: BillingService


def build_services(settings: Settings) -> Services:
    if settings.data_backend == "supabase":
        store: DataStore = SupabaseStore(
            settings.supabase_url, settings.supabase_service_key, timeout=settings.supabase_timeout
        )
    else:
        store = SqlStore(get_engine(settings.database_url))
    stripe_api = stripe_client(settings.stripe_secret_key) if settings.stripe_secret_key else _stripe
    billing = BillingService(
        store,
        stripe_api=stripe_api,
        webhook_secret=settings.stripe_webhook_secret,
        frontend_url=settings.frontend_url,
        dedup=settings.stripe_webhook_dedup,
    )
    return Services(
        settings=settings,
        store=store,
        conversations=ConversationHistoryService(store),
        billing=billing,
    )


_services: Optional[Services] = None


def get_services() -> Services:
    global _services
    if _services is None:
        _services = build_services(load_settings())
    return _services


app = FastAPI(title="Booking Backend", version="0.1.0")

_settings = load_settings()
app.add_middleware(
    CORSMiddleware,
    allow_origins=[_settings.frontend_url],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ServiceError)
async def _service_error_handler(request: Request, exc: ServiceError):
    if isinstance(exc, PlanNotFoundError):
        status = 404
    elif isinstance(exc, WebhookSignatureError):
        status = 400
    else:
        status = 502
    return JSONResponse({"detail": exc.message, "context": exc.context}, status_code=status)


@app.on_event("startup")
def _startup():
    settings = load_settings()
    logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    app.state.cleanup_scheduler = None
    if settings.enable_cleanup_scheduler:
        services = get_services()
        app.state.cleanup_scheduler = services.conversations.start_automatic_cleanup(
            retention_days=settings.retention_days,
            interval_hours=settings.cleanup_interval_hours,
            lock_client=_get_redis(),
        )


@app.on_event("shutdown")
def _shutdown():
    scheduler = getattr(app.state, "cleanup_scheduler", None)
    if scheduler is not None:
        scheduler.stop()
    if _services is not None and isinstance(_services.store, SupabaseStore):
        _services.store.close()


# ------------------------------ Health ------------------------------
@app.get("/health", tags=["Health"])
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.get("/metrics", tags=["Health"])
def prometheus_metrics():
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


# ------------------------------ WhatsApp ------------------------------
@app.get("/whatsapp/webhook", tags=["WhatsApp"])
def whatsapp_verify(
    hub_mode: Optional[str] = Query(default=None, alias="hub.mode"),
    hub_verify_token: Optional[str] = Query(default=None, alias="hub.verify_token"),
    hub_challenge: str = Query(default="", alias="hub.challenge"),
    services: Services = Depends(get_services),
):
    if not whatsapp_verify_challenge(hub_mode, hub_verify_token, services.settings.whatsapp_verify_token):
        raise HTTPException(status_code=403, detail="verification_failed")
    return PlainTextResponse(hub_challenge)


def _tenant_for_number(store: DataStore, phone_number_id: str) -> Optional[str]:
    if not phone_number_id:
        return None
    rows = store.select("tenants", [eq("whatsapp_phone_number_id", phone_number_id)], limit=1).rows
    return str(rows[0]["id"]) if rows else None


@app.post("/whatsapp/webhook", tags=["WhatsApp"])
async def whatsapp_webhook(request: Request, services: Services = Depends(get_services)):
    body = await request.body()
    secret = services.settings.whatsapp_app_secret
    if secret and not whatsapp_verify_signature(body, request.headers.get("X-Hub-Signature-256", ""), secret):
        WEBHOOK_EVENTS.labels(provider="whatsapp", status="invalid_signature").inc()
        raise HTTPException(status_code=403, detail="invalid_signature")
    try:
        payload = json.loads(body or b"{}")
    except ValueError:
        raise HTTPException(status_code=400, detail="invalid_json")

    stored = 0
    tenants: Dict[str, Optional[str]] = {}
    for envelope in iter_inbound_messages(payload):
        if envelope.phone_number_id not in tenants:
            tenants[envelope.phone_number_id] = _tenant_for_number(services.store, envelope.phone_number_id)
        tenant_id = tenants[envelope.phone_number_id]
        if tenant_id is None:
            logger.warning("whatsapp_unknown_number", extra={"phone_number_id": envelope.phone_number_id})
            continue
        try:
            services.conversations.store_message(envelope.message, tenant_id, envelope.user_name)
            stored += 1
        except ValidationError:
            logger.warning("whatsapp_message_invalid", extra={"phone_number_id": envelope.phone_number_id})
        except ConversationHistoryError:
            # Meta retries non-2xx deliveries; a store failure is logged instead
            logger.exception("whatsapp_message_not_stored", extra={"tenant_id": tenant_id})
    WEBHOOK_EVENTS.labels(provider="whatsapp", status="processed").inc()
    return {"status": "ok", "stored": stored}


# ------------------------------ Conversations ------------------------------
@app.get("/conversations/search", tags=["Conversations"])
def search_conversations(
    phone_number: Optional[str] = None,
    user_id: Optional[str] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    message_type: Optional[str] = None,
    intent_detected: Optional[str] = None,
    is_from_user: Optional[bool] = None,
    limit: int = Query(default=DEFAULT_PAGE_SIZE, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    ctx: UserContext = Depends(get_user_context),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    params = ConversationSearchParams(
        phone_number=phone_number,
        tenant_id=ctx.tenant_id,
        user_id=user_id,
        start_date=start_date,
        end_date=end_date,
        message_type=message_type,
        intent_detected=intent_detected,
        is_from_user=is_from_user,
        limit=limit,
        offset=offset,
    )
    return services.conversations.search_conversations(params).model_dump()


@app.get("/conversations/stats", tags=["Conversations"])
def conversation_stats(
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    ctx: UserContext = Depends(get_user_context),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    return services.conversations.get_conversation_stats(ctx.tenant_id, start_date, end_date)


@app.get("/conversations/export", tags=["Conversations"])
def export_conversations(
    format: str = Query(default="json", pattern="^(json|csv)$"),
    phone_number: Optional[str] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    ctx: UserContext = Depends(require_role("owner_admin")),
    services: Services = Depends(get_services),
):
    params = ConversationSearchParams(
        tenant_id=ctx.tenant_id, phone_number=phone_number, start_date=start_date, end_date=end_date
    )
    exported = services.conversations.export_conversation_history(params, fmt=format)
    if format == "csv":
        return Response(
            render_csv(exported["data"]),
            media_type="text/csv",
            headers={"Content-Disposition": 'attachment; filename="conversations.csv"'},
        )
    return exported


@app.post("/conversations/cleanup", tags=["Conversations"])
def cleanup_conversations(
    req: CleanupRequest,
    ctx: UserContext = Depends(require_role("owner_admin")),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    logger.info("manual_cleanup_requested", extra={"user_id": ctx.user_id, "retention_days": req.retention_days})
    return services.conversations.cleanup_old_conversations(req.retention_days)


@app.get("/conversations/{phone_number}/summary", tags=["Conversations"])
def conversation_summary(
    phone_number: str,
    ctx: UserContext = Depends(get_user_context),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    return services.conversations.get_conversation_summary(phone_number, ctx.tenant_id)


@app.get("/conversations/{phone_number}", tags=["Conversations"])
def conversation_by_phone(
    phone_number: str,
    limit: int = Query(default=DEFAULT_PAGE_SIZE, ge=1, le=1000),
    before: Optional[str] = None,
    ctx: UserContext = Depends(get_user_context),
    services: Services = Depends(get_services),
) -> Dict[str, List[Dict[str, Any]]]:
    messages = services.conversations.get_conversation_by_phone(phone_number, ctx.tenant_id, limit, before)
    return {"messages": messages}


# ------------------------------ Billing ------------------------------
def _tenant_row(store: DataStore, tenant_id: str) -> Dict[str, Any]:
    rows = store.select("tenants", [eq("id", tenant_id)], limit=1).rows
    if not rows:
        raise HTTPException(status_code=404, detail="tenant_not_found")
    return rows[0]


def _require_own_subscription(services: Services, tenant_id: str, subscription_id: str) -> None:
    rows = services.store.select(
        "subscriptions",
        [eq("tenant_id", tenant_id), eq("stripe_subscription_id", subscription_id)],
        limit=1,
    ).rows
    if not rows:
        raise HTTPException(status_code=404, detail="subscription_not_found")


@app.get("/billing/plans", tags=["Billing"])
def billing_plans(services: Services = Depends(get_services)) -> Dict[str, Any]:
    return {"plans": [p.to_dict() for p in services.billing.get_plans()]}


@app.post("/billing/checkout", tags=["Billing"])
def billing_checkout(
    req: CheckoutRequest,
    ctx: UserContext = Depends(require_role("owner_admin")),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    session = services.billing.create_checkout_session(
        req.plan_id,
        req.customer_email,
        tenant_id=ctx.tenant_id,
        success_url=req.success_url,
        cancel_url=req.cancel_url,
    )
    return {"session_id": session["id"], "url": session["url"]}


@app.post("/billing/portal", tags=["Billing"])
def billing_portal(
    req: PortalRequest,
    ctx: UserContext = Depends(require_role("owner_admin")),
    services: Services = Depends(get_services),
) -> Dict[str, str]:
    customer_id = _tenant_row(services.store, ctx.tenant_id).get("stripe_customer_id")
    if not customer_id:
        raise HTTPException(status_code=404, detail="no_customer")
    portal = services.billing.create_billing_portal_session(customer_id, req.return_url)
    return {"url": portal["url"]}


@app.post("/billing/cancel", tags=["Billing"])
def billing_cancel(
    req: CancelRequest,
    ctx: UserContext = Depends(require_role("owner_admin")),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    _require_own_subscription(services, ctx.tenant_id, req.subscription_id)
    if req.immediately:
        sub = services.billing.cancel_subscription_immediately(req.subscription_id, req.reason)
    else:
        sub = services.billing.cancel_subscription(req.subscription_id, req.reason)
    return {
        "subscription_id": req.subscription_id,
        "status": sub["status"],
        "cancel_at_period_end": bool(sub["cancel_at_period_end"]),
    }


@app.post("/billing/change-plan", tags=["Billing"])
def billing_change_plan(
    req: ChangePlanRequest,
    ctx: UserContext = Depends(require_role("owner_admin")),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    _require_own_subscription(services, ctx.tenant_id, req.subscription_id)
    sub = services.billing.change_subscription_plan(req.subscription_id, req.plan_id)
    return {"subscription_id": req.subscription_id, "plan_id": req.plan_id, "status": sub["status"]}


@app.post("/billing/reactivate", tags=["Billing"])
def billing_reactivate(
    req: ReactivateRequest,
    ctx: UserContext = Depends(require_role("owner_admin")),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    _require_own_subscription(services, ctx.tenant_id, req.subscription_id)
    sub = services.billing.reactivate_subscription(req.subscription_id)
    return {"subscription_id": req.subscription_id, "status": sub["status"]}


@app.get("/billing/subscription", tags=["Billing"])
def billing_subscription(
    ctx: UserContext = Depends(get_user_context),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    return {"subscription": services.billing.get_tenant_subscription(ctx.tenant_id)}


@app.post("/billing/webhook", tags=["Billing"])
async def stripe_webhook(request: Request, services: Services = Depends(get_services)):
    payload = await request.body()
    sig = request.headers.get("Stripe-Signature", "")
    result = services.billing.handle_webhook(payload, sig)
    return result.to_dict()


# ------------------------------ Admin ------------------------------
@app.get("/admin/dashboard", tags=["Admin"])
def admin_dashboard(
    ctx: UserContext = Depends(require_role("owner_admin")),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    tenant = _tenant_row(services.store, ctx.tenant_id)
    return {
        "tenant": {
            "id": tenant["id"],
            "business_name": tenant.get("business_name"),
            "plan_id": tenant.get("plan_id"),
            "subscription_status": tenant.get("subscription_status"),
            "trial_ends_at": tenant.get("trial_ends_at"),
        },
        "subscription": services.billing.get_tenant_subscription(ctx.tenant_id),
        "conversations": services.conversations.get_conversation_stats(ctx.tenant_id),
    }
