"""Stripe checkout, customer portal, subscription status and webhook routes."""

import logging

from flask import Blueprint, current_app, jsonify, request

from errors import ApiError
from extensions import csrf, db
from services.auth import get_current_user, login_required
from services.billing import (
    cancel_subscription,
    construct_event,
    create_checkout_session,
    create_portal_session,
    handle_event,
    subscription_status,
)

logger = logging.getLogger(__name__)

billing_bp = Blueprint("billing", __name__, url_prefix="/api")


def _public_url() -> str:
    return current_app.config["APP_CONFIG"].public_url


@billing_bp.route("/stripe/create-checkout-session", methods=["POST"])
@login_required
def checkout_session():
    return jsonify(create_checkout_session(get_current_user(), _public_url()))


@billing_bp.route("/stripe/create-portal-session", methods=["POST"])
@login_required
def portal_session():
    return jsonify(create_portal_session(get_current_user(), _public_url()))


@billing_bp.route("/subscription/status", methods=["GET"])
@login_required
def status():
    return jsonify(subscription_status(get_current_user()))


@billing_bp.route("/subscription/cancel", methods=["POST"])
@login_required
def cancel():
    sub = cancel_subscription(get_current_user())
    return jsonify({
        "success": True,
        "message": "Subscription will be canceled at the end of the billing period",
        "subscription": sub.to_dict(),
    })


# ---------------------------------------------------------------------------
# Webhook (no login, no CSRF; authenticated by signature)
# ---------------------------------------------------------------------------

@billing_bp.route("/stripe/webhook", methods=["POST"])
@csrf.exempt
def webhook_stripe():
    """Stripe webhook receiver.  Non-2xx answers make Stripe retry."""
    event = construct_event(request.get_data(), request.headers.get("Stripe-Signature"))
    try:
        handle_event(event)
    except ApiError:
        raise
    except Exception:
        db.session.rollback()
        logger.exception("Stripe webhook handler failed for %s", event.get("type"))
        return jsonify({"error": "Webhook handler failed"}), 500
    return jsonify({"received": True})
