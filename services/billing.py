"""Stripe subscription billing: webhook reconciliation and customer actions."""

from __future__ import annotations

import datetime
import json
import logging
from datetime import timedelta
from typing import Callable, Dict, Optional

import stripe
from flask import current_app

from config_models import StripeConfig
from errors import ApiError, NotFound, SignatureInvalid, UpstreamUnavailable, ValidationError
from extensions import db
from models import (
    ACTIVE_SUBSCRIPTION_STATUSES,
    VALID_SUBSCRIPTION_STATUSES,
    Subscription,
    User,
)
from utils import from_timestamp, utc_now

logger = logging.getLogger(__name__)

DEFAULT_PERIOD = timedelta(days=30)


def _stripe_config() -> StripeConfig:
    return current_app.config["STRIPE_CONFIG"]


def _configure() -> StripeConfig:
    """Point the SDK at the configured secret key and return the config."""
    cfg = _stripe_config()
    stripe.api_key = cfg.secret_key
    return cfg


def _as_plain(obj) -> dict:
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return obj or {}


def _first_item(obj: dict) -> dict:
    items = (obj.get("items") or {}).get("data") or []
    return items[0] if items else {}


# ---------------------------------------------------------------------------
# Webhook verification
# ---------------------------------------------------------------------------

def construct_event(payload, sig_header: Optional[str]) -> dict:
    """Verify the Stripe signature over the raw *payload* and decode it.

    Raises:
        SignatureInvalid: If the header is missing or does not match.
    """
    if not sig_header:
        raise SignatureInvalid("Missing stripe-signature header")
    secret = _stripe_config().webhook_secret
    if not secret:
        logger.error("STRIPE_WEBHOOK_SECRET not configured")
        raise ApiError("Webhook secret not configured")
    try:
        if isinstance(payload, bytes):
            payload = payload.decode("utf-8")
        stripe.Webhook.construct_event(payload, sig_header, secret)
    except stripe.SignatureVerificationError as e:
        logger.warning("Stripe webhook signature verification failed: %s", e)
        raise SignatureInvalid("Invalid signature")
    except ValueError as e:
        logger.warning("Stripe webhook payload is not valid UTF-8 JSON: %s", e)
        raise SignatureInvalid("Invalid payload")

    return json.loads(payload)


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------

def _period_bounds(obj: dict):
    item = _first_item(obj)
    start = from_timestamp(obj.get("current_period_start") or item.get("current_period_start"))
    end = from_timestamp(obj.get("current_period_end") or item.get("current_period_end"))
    start = start or utc_now()
    end = end or start + DEFAULT_PERIOD
    return start, end


def reconcile_subscription(obj: dict) -> Optional[Subscription]:
    """Upsert the local mirror of a Stripe subscription object.

    Returns ``None`` when no local user owns the subscription's customer.
    """
    customer_id = obj.get("customer")
    stripe_sub_id = obj.get("id")
    user = User.query.filter_by(stripe_customer_id=customer_id).first() if customer_id else None
    if user is None:
        logger.warning(
            "No user found for Stripe customer %s (subscription %s)", customer_id, stripe_sub_id
        )
        return None

    status = (obj.get("status") or "incomplete").lower()
    if status not in VALID_SUBSCRIPTION_STATUSES:
        logger.warning("Unknown Stripe subscription status %r for %s", status, stripe_sub_id)
    start, end = _period_bounds(obj)
    price_id = (_first_item(obj).get("price") or {}).get("id")

    sub = Subscription.query.filter_by(stripe_subscription_id=stripe_sub_id).first()
    created = sub is None
    if created:
        sub = Subscription(stripe_subscription_id=stripe_sub_id)
        db.session.add(sub)
    sub.user_id = user.id
    sub.stripe_customer_id = customer_id
    sub.stripe_price_id = price_id or sub.stripe_price_id
    sub.status = status
    sub.current_period_start = start
    sub.current_period_end = end
    sub.cancel_at_period_end = bool(obj.get("cancel_at_period_end"))
    db.session.commit()
    logger.info(
        "%s subscription %s for user %s -> %s",
        "Created" if created else "Updated", stripe_sub_id, user.id, status,
    )
    return sub


def mark_subscription_canceled(obj: dict) -> Optional[Subscription]:
    """Flip a deleted subscription to ``canceled``; the row is kept."""
    stripe_sub_id = obj.get("id")
    sub = Subscription.query.filter_by(stripe_subscription_id=stripe_sub_id).first()
    if sub is None:
        logger.warning("Deleted Stripe subscription %s has no local row", stripe_sub_id)
        return None
    sub.status = "canceled"
    db.session.commit()
    logger.info("Subscription %s canceled for user %s", stripe_sub_id, sub.user_id)
    return sub


def _reconcile_by_id(stripe_sub_id: str) -> Optional[Subscription]:
    _configure()
    return reconcile_subscription(_as_plain(stripe.Subscription.retrieve(stripe_sub_id)))


def _on_subscription_changed(obj: dict):
    return reconcile_subscription(obj)


def _on_checkout_completed(session: dict):
    stripe_sub_id = session.get("subscription")
    if not stripe_sub_id:
        logger.info("Checkout session %s has no subscription", session.get("id"))
        return None

    # Link the customer to the user who started checkout if not already linked
    customer_id = session.get("customer")
    user_id = (session.get("metadata") or {}).get("user_id") or session.get("client_reference_id")
    if customer_id and user_id and str(user_id).isdigit():
        user = db.session.get(User, int(user_id))
        if user and not user.stripe_customer_id:
            user.stripe_customer_id = customer_id
            db.session.commit()
            logger.info("Linked Stripe customer %s to user %s", customer_id, user.id)

    return _reconcile_by_id(stripe_sub_id)


def _invoice_subscription_id(invoice: dict) -> Optional[str]:
    if invoice.get("subscription"):
        return invoice["subscription"]
    details = (invoice.get("parent") or {}).get("subscription_details") or {}
    return details.get("subscription")


def _on_invoice(invoice: dict):
    stripe_sub_id = _invoice_subscription_id(invoice)
    if not stripe_sub_id:
        logger.info("Invoice %s is not tied to a subscription", invoice.get("id"))
        return None
    return _reconcile_by_id(stripe_sub_id)


EVENT_HANDLERS: Dict[str, Callable[[dict], object]] = {
    "checkout.session.completed": _on_checkout_completed,
    "customer.subscription.created": _on_subscription_changed,
    "customer.subscription.updated": _on_subscription_changed,
    "customer.subscription.deleted": mark_subscription_canceled,
    "invoice.payment_succeeded": _on_invoice,
    "invoice.payment_failed": _on_invoice,
}


def handle_event(event: dict) -> bool:
    """Dispatch a verified event.  Returns False for ignored event types."""
    event_type = event.get("type", "")
    handler = EVENT_HANDLERS.get(event_type)
    if handler is None:
        logger.info("Ignoring Stripe event %s", event_type)
        return False
    obj = (event.get("data") or {}).get("object") or {}
    handler(obj)
    return True


# ---------------------------------------------------------------------------
# Customer-facing actions
# ---------------------------------------------------------------------------

def active_subscription(user: User) -> Optional[Subscription]:
    return (
        Subscription.query
        .filter(
            Subscription.user_id == user.id,
            Subscription.status.in_(ACTIVE_SUBSCRIPTION_STATUSES),
        )
        .order_by(Subscription.created_at.desc(), Subscription.id.desc())
        .first()
    )


def subscription_status(user: User) -> dict:
    sub = active_subscription(user)
    return {
        "hasActiveSubscription": sub is not None,
        "subscription": sub.to_dict() if sub else None,
        "daysLeft": period_days_left(sub),
    }


def create_checkout_session(user: User, public_url: str) -> dict:
    """Start a hosted checkout for the monthly plan; returns ``{sessionId, url}``."""
    if active_subscription(user):
        raise ValidationError("You already have an active subscription")
    cfg = _configure()
    try:
        if not user.stripe_customer_id:
            name = " ".join(p for p in (user.first_name, user.last_name) if p) or None
            customer = stripe.Customer.create(
                email=user.email,
                name=name,
                metadata={"user_id": str(user.id)},
            )
            user.stripe_customer_id = customer.id
            db.session.commit()
            logger.info("Created Stripe customer %s for user %s", customer.id, user.id)

        session = stripe.checkout.Session.create(
            customer=user.stripe_customer_id,
            payment_method_types=["card"],
            line_items=[{
                "price_data": {
                    "currency": cfg.currency,
                    "product_data": {"name": cfg.product_name},
                    "unit_amount": cfg.price_amount,
                    "recurring": {"interval": cfg.interval},
                },
                "quantity": 1,
            }],
            mode="subscription",
            success_url=f"{public_url}/dashboard?success=true",
            cancel_url=f"{public_url}/subscription?canceled=true",
            metadata={"user_id": str(user.id)},
        )
    except stripe.StripeError as e:
        logger.error("Stripe checkout failed for user %s: %s", user.id, e)
        raise UpstreamUnavailable("Failed to create checkout session", details=str(e))
    return {"sessionId": session.id, "url": session.url}


def create_portal_session(user: User, public_url: str) -> dict:
    if not user.stripe_customer_id:
        raise NotFound("No billing account found")
    _configure()
    try:
        session = stripe.billing_portal.Session.create(
            customer=user.stripe_customer_id,
            return_url=f"{public_url}/subscription",
        )
    except stripe.StripeError as e:
        logger.error("Stripe portal failed for user %s: %s", user.id, e)
        raise UpstreamUnavailable("Failed to create portal session", details=str(e))
    return {"url": session.url}


def cancel_subscription(user: User) -> Subscription:
    """Cancel the active subscription at the end of the current period."""
    sub = active_subscription(user)
    if sub is None:
        raise NotFound("No active subscription found")
    _configure()
    try:
        stripe.Subscription.modify(sub.stripe_subscription_id, cancel_at_period_end=True)
    except stripe.StripeError as e:
        logger.error("Failed to cancel Stripe subscription %s: %s", sub.stripe_subscription_id, e)
        raise UpstreamUnavailable("Failed to cancel subscription", details=str(e))
    sub.cancel_at_period_end = True
    db.session.commit()
    logger.info("Subscription %s set to cancel at period end", sub.stripe_subscription_id)
    return sub


def has_active_subscription(user: Optional[User]) -> bool:
    return bool(user) and active_subscription(user) is not None


def period_days_left(sub: Subscription) -> Optional[int]:
    if not sub or not sub.current_period_end:
        return None
    end = sub.current_period_end
    if end.tzinfo is None:
        end = end.replace(tzinfo=datetime.timezone.utc)
    return max(0, (end - utc_now()).days)
