"""Legacy report upload: local parsing into line items."""

from flask import Blueprint, current_app, jsonify, request

from errors import ValidationError
from extensions import limiter
from services.auth import get_current_user, login_required
from services.reports import create_report, delete_report, get_report, list_reports, store_in_vector_db

reports_bp = Blueprint("reports", __name__, url_prefix="/api")


@reports_bp.route("/upload", methods=["POST"])
@login_required
@limiter.limit("20 per minute")
def upload_report():
    user = get_current_user()
    upload = request.files.get("file")
    if upload is None or not upload.filename:
        raise ValidationError("Missing required fields: file, reportType, year, month")

    content = upload.read()
    report = create_report(
        user,
        upload.filename,
        content,
        request.form.get("reportType", ""),
        request.form.get("year"),
        request.form.get("month"),
    )
    vector_storage = store_in_vector_db(
        current_app.config["ANALYSIS_CLIENT"], user, upload.filename, content, upload.mimetype
    )

    count = len(report.parsed_data)
    message = f"Successfully processed {upload.filename}. Found {count} financial records."
    if vector_storage.get("stored"):
        message += " Data also stored for AI chatbot."
    return jsonify({
        "success": True,
        "report": report.to_dict(),
        "vectorStorage": vector_storage,
        "message": message,
    })


@reports_bp.route("/upload", methods=["GET"])
@login_required
def get_reports():
    user = get_current_user()
    report_id = request.args.get("reportId")
    if report_id:
        return jsonify({"report": get_report(user, report_id).to_dict()})
    return jsonify({"reports": [r.to_dict() for r in list_reports(user)]})


@reports_bp.route("/upload", methods=["DELETE"])
@login_required
def remove_report():
    report_id = (request.get_json(silent=True) or {}).get("reportId")
    if not report_id:
        raise ValidationError("Report ID is required")
    delete_report(get_current_user(), report_id)
    return jsonify({"success": True, "message": "Report deleted successfully"})
