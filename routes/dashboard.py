"""Dashboard route."""

from flask import Blueprint, jsonify, request

from errors import ValidationError
from services.auth import get_current_user, login_required
from services.dashboard import EMPTY_DASHBOARD, build_dashboard, summarize
from services.reports import get_report, list_reports

dashboard_bp = Blueprint("dashboard", __name__, url_prefix="/api")


@dashboard_bp.route("/dashboard", methods=["GET"])
@login_required
def index():
    reports = list_reports(get_current_user())
    if not reports:
        return jsonify({"message": "No financial data available", "data": EMPTY_DASHBOARD})
    return jsonify({"success": True, "data": build_dashboard(reports)})


@dashboard_bp.route("/dashboard", methods=["POST"])
@login_required
def analyze_report():
    report_id = (request.get_json(silent=True) or {}).get("reportId")
    if not report_id:
        raise ValidationError("Report ID is required")
    report = get_report(get_current_user(), report_id)
    return jsonify({"success": True, "data": summarize(report.parsed_data)})
