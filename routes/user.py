"""User setup status, CSRF token and service health."""

from flask import Blueprint, current_app, jsonify
from flask_wtf.csrf import generate_csrf

from services.auth import get_current_user, login_required

user_bp = Blueprint("user", __name__)


@user_bp.route("/api/user/setup-status", methods=["GET"])
@login_required
def setup_status():
    user = get_current_user()
    return jsonify({
        "hasCompletedSetup": user.has_completed_setup,
        "companyId": user.company_id,
        "isCompanyAdmin": user.is_company_admin,
    })


@user_bp.route("/api/csrf-token", methods=["GET"])
def csrf_token():
    """Token for browser clients to send back in the ``X-CSRFToken`` header."""
    return jsonify({"csrfToken": generate_csrf()})


@user_bp.route("/health", methods=["GET"])
def health():
    backend = current_app.config["ANALYSIS_CLIENT"].check_health()
    return jsonify({"status": "ok", "backend": backend})
