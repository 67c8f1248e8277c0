"""Financial analysis uploads, listings and duplicate checks."""

from flask import Blueprint, current_app, jsonify, request

from analysis_client import AnalysisBackendError
from errors import NotFound, UpstreamUnavailable, ValidationError
from extensions import limiter
from services import analyses as analysis_service
from services.auth import get_current_user, login_required
from services.duplicates import check_duplicates
from utils import isoformat

analyses_bp = Blueprint("analyses", __name__, url_prefix="/api")


def _flag(name: str) -> bool:
    return request.args.get(name, "").lower() == "true"


# ---------------------------------------------------------------------------
# Duplicate detection
# ---------------------------------------------------------------------------

@analyses_bp.route("/check-duplicate-file", methods=["POST"])
@login_required
def check_duplicate_file():
    data = request.get_json(silent=True) or {}
    if isinstance(data.get("files"), list):
        files = [f for f in data["files"] if isinstance(f, dict)]
    elif data.get("fileName"):
        files = [{"name": data["fileName"], "size": data.get("fileSize")}]
    else:
        raise ValidationError("fileName or files is required")

    duplicates = check_duplicates(get_current_user().id, files)
    message = (
        f"File(s) already uploaded: {', '.join(duplicates)}"
        if duplicates
        else "No duplicates found"
    )
    return jsonify({
        "hasDuplicates": bool(duplicates),
        "duplicates": duplicates,
        "message": message,
    })


# ---------------------------------------------------------------------------
# Company-scoped analyses
# ---------------------------------------------------------------------------

@analyses_bp.route("/financial-analyses", methods=["GET"])
@login_required
def list_company_analyses():
    user = get_current_user()
    analysis_id = request.args.get("analysisId")
    if analysis_id:
        analysis = analysis_service.company_analysis(user, analysis_id)
        return jsonify({"success": True, "analysis": analysis.summary_dict()})

    latest = _flag("latest")
    records = analysis_service.company_analyses(user, request.args.get("branchId"), latest)
    if latest and records:
        return jsonify({"success": True, "analysis": records[0].summary_dict()})
    return jsonify({"success": True, "analyses": [a.summary_dict() for a in records]})


@analyses_bp.route("/financial-analyses", methods=["POST"])
@login_required
@limiter.limit("20 per minute")
def upload_company_analysis():
    upload = request.files.get("file")
    if upload is None or not upload.filename:
        raise ValidationError("File is required")

    try:
        analysis = analysis_service.analyze_upload(
            current_app.config["ANALYSIS_CLIENT"],
            get_current_user(),
            upload.filename,
            upload.read(),
            upload.mimetype,
            request.form.get("branchId"),
        )
    except AnalysisBackendError as e:
        raise UpstreamUnavailable("Failed to process file with AI backend", details=e.body or str(e))

    return jsonify({
        "success": True,
        "analysis": {
            "id": analysis.id,
            "fileName": analysis.file_name,
            "createdAt": isoformat(analysis.created_at),
        },
    })


# ---------------------------------------------------------------------------
# User-scoped analyses
# ---------------------------------------------------------------------------

@analyses_bp.route("/upload-financial-analysis", methods=["POST"])
@login_required
def upload_financial_analysis():
    analysis = analysis_service.store_payload(
        get_current_user(), request.get_json(silent=True) or {}
    )
    return jsonify({"success": True, "id": analysis.id})


@analyses_bp.route("/multi-file-analysis", methods=["POST"])
@login_required
def store_multi_file_analysis():
    data = request.get_json(silent=True) or {}
    analysis = analysis_service.store_multi_file(get_current_user(), data)
    return jsonify({
        "success": True,
        "analysis": {
            **analysis.summary_dict(),
            "companyId": analysis.company_id,
            "originalFiles": data["fileNames"],
        },
        "message": "Combined analysis stored successfully",
    })


@analyses_bp.route("/financial-analysis", methods=["GET"])
@login_required
def get_financial_analysis():
    user = get_current_user()
    analysis_id = request.args.get("id")
    if analysis_id:
        return jsonify(analysis_service.get_owned(user, analysis_id).to_dict())
    if _flag("latest"):
        latest = analysis_service.latest_for_user(user)
        if latest is None:
            return jsonify({"success": True, "data": None})
        return jsonify(latest.analysis_data)
    if _flag("all"):
        return jsonify([a.summary_dict() for a in analysis_service.all_for_user(user)])
    return jsonify(analysis_service.paginate_for_user(
        user, request.args.get("page"), request.args.get("limit")
    ))


@analyses_bp.route("/financial-analysis/<int:analysis_id>", methods=["DELETE"])
@login_required
def delete_financial_analysis(analysis_id):
    analysis_service.delete_analysis(get_current_user(), analysis_id)
    return jsonify({"success": True})


@analyses_bp.route("/user-files", methods=["GET"])
@login_required
def user_files():
    records = analysis_service.all_for_user(get_current_user())
    return jsonify({"success": True, "data": [a.summary_dict() for a in records]})


@analyses_bp.route("/set-active-file", methods=["POST"])
@login_required
def set_active_file():
    file_id = (request.get_json(silent=True) or {}).get("fileId")
    if not file_id:
        raise ValidationError("File ID is required")
    try:
        analysis = analysis_service.get_owned(get_current_user(), file_id)
    except NotFound:
        raise NotFound("File not found or unauthorized")
    return jsonify({
        "success": True,
        "data": analysis.analysis_data,
        "fileInfo": {
            "id": analysis.id,
            "fileName": analysis.file_name,
            "fileType": analysis.file_type,
            "uploadDate": isoformat(analysis.upload_date),
        },
    })


@analyses_bp.route("/analysis-data", methods=["GET"])
@login_required
def analysis_data():
    analysis_id = request.args.get("analysisId")
    if not analysis_id:
        raise ValidationError("Analysis ID is required")
    try:
        analysis = analysis_service.get_owned(get_current_user(), analysis_id)
    except NotFound:
        raise NotFound("Analysis not found or access denied")
    if not analysis.analysis_data:
        raise NotFound("No analysis data found in database")

    return jsonify({
        "success": True,
        "analysisData": {
            "file_info": {
                "filename": analysis.file_name,
                "file_type": analysis.file_type,
                "file_size_mb": analysis.file_size_mb,
            },
            "analysis": analysis.analysis_data,
        },
        "metadata": {
            **analysis.summary_dict(),
            "companyId": analysis.company_id,
            "companyName": analysis.company.name if analysis.company else "Unknown",
        },
    })
