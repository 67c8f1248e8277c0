"""Chatbot relay and document management."""

from flask import Blueprint, current_app, jsonify, request

from errors import ValidationError
from extensions import limiter
from services.auth import get_current_user, login_required
from services.chat import (
    delete_document,
    document_summary,
    list_documents,
    relay_chat,
    suggested_questions,
)

chatbot_bp = Blueprint("chatbot", __name__, url_prefix="/api/chatbot")


@chatbot_bp.route("/chat", methods=["POST"])
@login_required
@limiter.limit("30 per minute")
def chat():
    data = request.get_json(silent=True) or {}
    message = (data.get("message") or "").strip()
    if not message:
        raise ValidationError("Message is required")
    history = data.get("conversation_history")
    reply = relay_chat(
        current_app.config["ANALYSIS_CLIENT"],
        get_current_user(),
        message,
        history if isinstance(history, list) else [],
    )
    return jsonify(reply)


@chatbot_bp.route("/documents", methods=["GET"])
@login_required
def documents():
    user = get_current_user()
    docs = list_documents(user)
    return jsonify({
        "user_id": user.external_id,
        "documents": docs,
        "total_documents": len(docs),
    })


@chatbot_bp.route("/documents", methods=["DELETE"])
@login_required
def remove_document():
    document_id = request.args.get("document_id")
    if not document_id:
        raise ValidationError("Document ID is required")
    source = request.args.get("source")
    if source not in (None, "analysis", "report"):
        raise ValidationError("source must be 'analysis' or 'report'")
    delete_document(current_app.config["ANALYSIS_CLIENT"], get_current_user(), document_id, source)
    return jsonify({
        "message": f"Document {document_id} deleted successfully",
        "document_id": document_id,
    })


@chatbot_bp.route("/suggested-questions", methods=["GET"])
@login_required
def suggestions():
    user = get_current_user()
    return jsonify({
        "user_id": user.external_id,
        "suggested_questions": suggested_questions(user),
    })


@chatbot_bp.route("/document-summary", methods=["GET"])
@login_required
def summary():
    filename = (request.args.get("filename") or "").strip() or None
    return jsonify(document_summary(get_current_user(), filename))
