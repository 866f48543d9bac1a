from dataclasses import replace
from unittest import mock

import pytest
import stripe

from src.backend.app.billing import BillingService
from src.backend.app.errors import BillingError, PlanNotFoundError
from src.backend.app.plans import PLANS, UNLIMITED, get_plan, get_plans

CATALOG = {pid: replace(plan, price_id=f"price_{pid}") for pid, plan in PLANS.items()}


@pytest.fixture
def stripe_api():
    return mock.MagicMock()


@pytest.fixture
def billing(store, stripe_api):
    return BillingService(
        store,
        stripe_api=stripe_api,
        webhook_secret="whsec_test",
        frontend_url="https://app.example.com/",
        plans=CATALOG,
    )


def test_plan_catalog():
    plans = {p.id: p for p in get_plans()}
    assert set(plans) == {"starter", "professional", "enterprise"}
    assert plans["starter"].price == 9700
    assert plans["professional"].price == 19700
    assert plans["enterprise"].price == 39700
    assert all(p.currency == "brl" and p.interval == "month" for p in plans.values())
    assert plans["enterprise"].max_messages == UNLIMITED
    assert get_plan("platinum") is None
    assert plans["starter"].to_dict()["features"][0].startswith("Up to 1,000")


def test_checkout_session_parameters(billing, stripe_api):
    stripe_api.checkout.Session.create.return_value = {"id": "cs_1", "url": "https://checkout"}
    session = billing.create_checkout_session("professional", "owner@studio.com", tenant_id="t1")
    assert session["id"] == "cs_1"
    kwargs = stripe_api.checkout.Session.create.call_args.kwargs
    assert kwargs["mode"] == "subscription"
    assert kwargs["payment_method_types"] == ["card", "boleto"]
    assert kwargs["line_items"] == [{"price": "price_professional", "quantity": 1}]
    assert kwargs["subscription_data"]["trial_period_days"] == 7
    assert kwargs["metadata"] == {"plan_id": "professional", "tenant_id": "t1"}
    assert kwargs["subscription_data"]["metadata"] == kwargs["metadata"]
    assert kwargs["success_url"] == "https://app.example.com/success?session_id={CHECKOUT_SESSION_ID}"
    assert kwargs["cancel_url"] == "https://app.example.com/pricing"
    assert kwargs["locale"] == "pt-BR"
    assert kwargs["billing_address_collection"] == "required"
    assert kwargs["allow_promotion_codes"] is True


def test_checkout_unknown_plan_never_calls_processor(billing, stripe_api):
    with pytest.raises(PlanNotFoundError):
        billing.create_checkout_session("platinum", "owner@studio.com", tenant_id="t1")
    stripe_api.checkout.Session.create.assert_not_called()


def test_checkout_processor_failure(billing, stripe_api):
    stripe_api.checkout.Session.create.side_effect = stripe.StripeError("card network down")
    with pytest.raises(BillingError) as exc:
        billing.create_checkout_session("starter", "owner@studio.com", tenant_id="t1")
    assert exc.value.context["plan_id"] == "starter"


def test_create_customer_tags_source(billing, stripe_api):
    stripe_api.Customer.create.return_value = {"id": "cus_1"}
    billing.create_customer("owner@studio.com", "Studio", {"tenant_id": "t1"})
    kwargs = stripe_api.Customer.create.call_args.kwargs
    assert kwargs["metadata"] == {"source": "booking_registration", "tenant_id": "t1"}


def test_portal_session_default_return_url(billing, stripe_api):
    stripe_api.billing_portal.Session.create.return_value = {"id": "bps_1", "url": "https://portal"}
    billing.create_billing_portal_session("cus_1")
    stripe_api.billing_portal.Session.create.assert_called_once_with(
        customer="cus_1", return_url="https://app.example.com/settings"
    )


def test_cancel_at_period_end(billing, stripe_api):
    billing.cancel_subscription("sub_1", "too expensive")
    args, kwargs = stripe_api.Subscription.modify.call_args
    assert args == ("sub_1",)
    assert kwargs["cancel_at_period_end"] is True
    assert kwargs["metadata"]["cancellation_reason"] == "too expensive"
    stripe_api.Subscription.cancel.assert_not_called()


def test_cancel_immediately_prorates_without_invoice(billing, stripe_api):
    billing.cancel_subscription_immediately("sub_1")
    stripe_api.Subscription.cancel.assert_called_once_with("sub_1", invoice_now=False, prorate=True)
    stripe_api.Subscription.modify.assert_not_called()


def test_reactivate_clears_pending_cancellation(billing, stripe_api):
    billing.reactivate_subscription("sub_1")
    stripe_api.Subscription.modify.assert_called_once_with("sub_1", cancel_at_period_end=False)


def test_change_plan_reprices_single_item(billing, stripe_api):
    stripe_api.Subscription.retrieve.return_value = {
        "id": "sub_1",
        "items": {"data": [{"id": "si_1", "price": {"id": "price_starter"}}]},
        "metadata": {"tenant_id": "t1", "plan_id": "starter"},
    }
    billing.change_subscription_plan("sub_1", "enterprise")
    args, kwargs = stripe_api.Subscription.modify.call_args
    assert args == ("sub_1",)
    assert kwargs["items"] == [{"id": "si_1", "price": "price_enterprise"}]
    assert kwargs["proration_behavior"] == "always_invoice"
    assert kwargs["metadata"]["plan_id"] == "enterprise"
    assert kwargs["metadata"]["tenant_id"] == "t1"
    assert "plan_changed_at" in kwargs["metadata"]


def test_change_plan_unknown_plan(billing, stripe_api):
    with pytest.raises(PlanNotFoundError):
        billing.change_subscription_plan("sub_1", "platinum")
    stripe_api.Subscription.retrieve.assert_not_called()


def test_change_plan_without_items(billing, stripe_api):
    stripe_api.Subscription.retrieve.return_value = {"id": "sub_1", "items": {"data": []}}
    with pytest.raises(BillingError):
        billing.change_subscription_plan("sub_1", "starter")
    stripe_api.Subscription.modify.assert_not_called()


def test_customer_subscriptions_list(billing, stripe_api):
    stripe_api.Subscription.list.return_value = {"data": [{"id": "sub_1"}, {"id": "sub_2"}]}
    subs = billing.get_customer_subscriptions("cus_1")
    assert [s["id"] for s in subs] == ["sub_1", "sub_2"]


def test_tenant_subscription_latest_row(billing, store):
    store.insert("subscriptions", {"tenant_id": "t1", "plan_id": "starter", "status": "canceled", "created_at": "2026-01-01T00:00:00.000000+00:00"})
    store.insert("subscriptions", {"tenant_id": "t1", "plan_id": "professional", "status": "active", "created_at": "2026-02-01T00:00:00.000000+00:00"})
    assert billing.get_tenant_subscription("t1")["plan_id"] == "professional"
    assert billing.get_tenant_subscription("t2") is None
