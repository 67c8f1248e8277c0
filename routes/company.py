"""Company setup, branch management and company analytics."""

import datetime

from flask import Blueprint, current_app, jsonify, request

from errors import NotFound
from services.analytics import aggregate_branch_metrics, consolidate
from services.auth import company_admin_required, get_current_user, login_required
from services.company import (
    active_branches,
    create_branch,
    create_company,
    deactivate_branch,
    update_branch,
    update_company,
)
from utils import safe_int

company_bp = Blueprint("company", __name__, url_prefix="/api/company")


@company_bp.route("", methods=["GET"])
@login_required
def get_company():
    user = get_current_user()
    if not user.company:
        return jsonify({"company": None})
    return jsonify({
        "company": user.company.to_dict(include_branches=True),
        "isCompanyAdmin": user.is_company_admin,
    })


@company_bp.route("", methods=["POST"])
@login_required
def post_company():
    company = create_company(get_current_user(), request.get_json(silent=True) or {})
    return jsonify({"success": True, "company": company.to_dict(include_branches=True)})


@company_bp.route("", methods=["PUT"])
@company_admin_required
def put_company():
    company = update_company(get_current_user(), request.get_json(silent=True) or {})
    return jsonify({"success": True, "company": company.to_dict(include_branches=True)})


# ---------------------------------------------------------------------------
# Branches
# ---------------------------------------------------------------------------

@company_bp.route("/branches", methods=["GET"])
@login_required
def list_branches():
    user = get_current_user()
    if not user.company_id:
        raise NotFound("No company found")
    return jsonify({"branches": [b.to_dict() for b in active_branches(user.company_id)]})


@company_bp.route("/branches", methods=["POST"])
@company_admin_required
def post_branch():
    branch = create_branch(get_current_user(), request.get_json(silent=True) or {})
    return jsonify({"success": True, "branch": branch.to_dict()})


@company_bp.route("/branches/<int:branch_id>", methods=["PUT"])
@company_admin_required
def put_branch(branch_id):
    branch = update_branch(get_current_user(), branch_id, request.get_json(silent=True) or {})
    return jsonify({"success": True, "branch": branch.to_dict()})


@company_bp.route("/branches/<int:branch_id>", methods=["DELETE"])
@company_admin_required
def delete_branch(branch_id):
    deactivate_branch(get_current_user(), branch_id)
    return jsonify({"success": True})


# ---------------------------------------------------------------------------
# Analytics
# ---------------------------------------------------------------------------

@company_bp.route("/analytics", methods=["GET"])
@login_required
def analytics():
    """Per-branch metrics plus a consolidated company view."""
    user = get_current_user()
    if not user.company_id:
        raise NotFound("No company found")

    raw_ids = request.args.get("branchIds", "")
    branch_ids = [b.strip() for b in raw_ids.split(",") if b.strip()]
    year = safe_int(request.args.get("year")) or None
    month = safe_int(request.args.get("month")) or None
    if month and not 1 <= month <= 12:
        month = None

    branches = aggregate_branch_metrics(
        user.company_id,
        current_app.config["ANALYSIS_CLIENT"],
        branch_ids=branch_ids or None,
        year=year,
        month=month if year else None,
    )
    return jsonify({
        "success": True,
        "data": {
            "branches": [b.to_dict() for b in branches],
            "consolidated": consolidate(branches),
            "period": {
                "year": year or datetime.date.today().year,
                "month": month,
            },
        },
    })
