"""Chatbot relay with a database-backed fallback, plus document management."""

from __future__ import annotations

import logging
from typing import List, Optional

from analysis_client import AnalysisBackendError
from errors import NotFound
from extensions import db
from models import FinancialAnalysis, FinancialReport, ParsedFinancialData, User
from utils import isoformat, safe_int

logger = logging.getLogger(__name__)

CONTEXT_LIMIT = 5

NO_DATA_REPLY = (
    "I'd love to help you with your financial questions! However, I notice that "
    "either you haven't uploaded any financial documents yet, or the AI backend "
    "service is currently unavailable. Please upload some financial documents "
    "first, and make sure the analysis backend is running for full AI analysis."
)


def _recent(user: User):
    analyses = (
        FinancialAnalysis.query.filter_by(user_id=user.id)
        .order_by(FinancialAnalysis.created_at.desc())
        .limit(CONTEXT_LIMIT)
        .all()
    )
    reports = (
        FinancialReport.query.filter_by(user_id=user.id)
        .order_by(FinancialReport.upload_date.desc())
        .limit(CONTEXT_LIMIT)
        .all()
    )
    return analyses, reports


def fallback_reply(user: User) -> dict:
    """Reply assembled from stored documents when the backend cannot answer."""
    analyses, reports = _recent(user)
    if not analyses and not reports:
        return {
            "response": NO_DATA_REPLY,
            "sources_used": 0,
            "relevant_documents": [],
            "context_chunks": [],
            "fallback_mode": True,
        }

    total = len(analyses) + len(reports)
    parts = [f"I can see you have {total} financial document(s) uploaded. "]
    if any(a.analysis_data for a in analyses):
        parts.append(
            "Your documents include comprehensive AI analysis with profit & loss "
            "statements, balance sheets, and financial insights. "
        )
    if reports:
        types = sorted({r.report_type for r in reports})
        parts.append(f"You have {', '.join(types).lower()} reports available. ")
    parts.append(
        "\n\nFor more detailed AI-powered conversation about your financial data, "
        "please make sure the analysis backend is running. Meanwhile you can review "
        "your analysis on the Dashboard, Reports and Analytics pages."
    )

    names = [a.file_name for a in analyses] + [r.file_name for r in reports]
    return {
        "response": "".join(parts),
        "sources_used": total,
        "relevant_documents": names[:CONTEXT_LIMIT],
        "context_chunks": [{
            "filename": "Database Summary",
            "chunk_type": "metadata",
            "relevance_score": 1.0,
        }],
        "fallback_mode": True,
    }


def relay_chat(client, user: User, message: str, history=None) -> dict:
    try:
        return client.chat(message, user.external_id, history)
    except AnalysisBackendError as e:
        logger.warning("Chat backend unavailable, using fallback for user %s: %s", user.id, e)
        return fallback_reply(user)


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------

def list_documents(user: User) -> List[dict]:
    """Analyses then reports, newest first, one entry per file name."""
    analyses = (
        FinancialAnalysis.query.filter_by(user_id=user.id)
        .order_by(FinancialAnalysis.created_at.desc())
        .all()
    )
    reports = (
        FinancialReport.query.filter_by(user_id=user.id)
        .order_by(FinancialReport.upload_date.desc())
        .all()
    )
    documents = [
        {
            "document_id": a.id,
            "filename": a.file_name,
            "file_type": a.file_type,
            "timestamp": isoformat(a.upload_date),
            "chunks": 4,
            "source": "analysis",
        }
        for a in analyses
    ] + [
        {
            "document_id": r.id,
            "filename": r.file_name,
            "file_type": r.file_type,
            "timestamp": isoformat(r.upload_date),
            "chunks": 1,
            "source": "report",
        }
        for r in reports
    ]

    seen = set()
    unique = []
    for doc in documents:
        if doc["filename"] in seen:
            continue
        seen.add(doc["filename"])
        unique.append(doc)
    return unique


def delete_document(client, user: User, document_id, source: Optional[str] = None) -> str:
    """Delete an owned analysis (or, failing that, report) and its vector copy.

    Returns which kind of document was removed.
    """
    doc_id = safe_int(document_id)
    deleted_from = None

    if source in (None, "analysis"):
        analysis = FinancialAnalysis.query.filter_by(id=doc_id, user_id=user.id).first()
        if analysis:
            db.session.delete(analysis)
            deleted_from = "analysis"

    if deleted_from is None and source in (None, "report"):
        report = FinancialReport.query.filter_by(id=doc_id, user_id=user.id).first()
        if report:
            ParsedFinancialData.query.filter_by(report_id=report.id).delete(
                synchronize_session=False
            )
            db.session.delete(report)
            deleted_from = "report"

    if deleted_from is None:
        raise NotFound(f"Document {document_id} not found")

    db.session.commit()
    logger.info("Deleted %s %s for user %s", deleted_from, doc_id, user.id)
    client.delete_document(doc_id, user.external_id)
    return deleted_from


# ---------------------------------------------------------------------------
# Suggestions and document summary
# ---------------------------------------------------------------------------

MAX_SUGGESTIONS = 8

STARTER_QUESTIONS = (
    "How do I upload my financial documents?",
    "What file formats are supported?",
    "What can I ask about my financial data?",
    "How does the AI analysis work?",
)
GENERAL_QUESTIONS = (
    "What is my total revenue for this period?",
    "How is my cash flow looking?",
    "What are my biggest expenses?",
    "Show me my profit margins",
)
TOPIC_QUESTIONS = {
    "BALANCE_SHEET": (
        "What is my current asset position?",
        "How much debt do I have?",
        "What is my equity ratio?",
    ),
    "PROFIT_LOSS": (
        "What is my gross profit margin?",
        "Which revenue streams are performing best?",
        "How can I reduce my operating expenses?",
    ),
    "CASH_FLOW": (
        "What is my operating cash flow?",
        "How many months of cash runway do I have?",
        "What are my cash flow trends?",
    ),
}
# Top-level analysis payload sections that imply a report type
PAYLOAD_TOPICS = {
    "BALANCE_SHEET": "balance_sheet",
    "PROFIT_LOSS": "profit_and_loss",
    "CASH_FLOW": "cash_flow",
}
COMPARISON_QUESTIONS = (
    "Compare my financial performance across periods",
    "What trends do you see in my financial data?",
    "Which document shows the best performance?",
)
ADVISORY_QUESTIONS = (
    "What financial risks should I be aware of?",
    "What are your key recommendations for my business?",
    "What growth opportunities do you see?",
    "How does my business compare to industry standards?",
)

ANALYSIS_CHUNK_TYPES = ["profit_and_loss", "balance_sheet", "financial_ratios", "ai_insights"]


def _payload_mentions(payload, section: str) -> bool:
    return isinstance(payload, dict) and any(section in key for key in payload)


def suggested_questions(user: User) -> List[str]:
    """Up to eight distinct questions matching the documents *user* uploaded."""
    analyses = FinancialAnalysis.query.filter_by(user_id=user.id).all()
    reports = FinancialReport.query.filter_by(user_id=user.id).all()
    if not analyses and not reports:
        return list(STARTER_QUESTIONS)

    questions = list(GENERAL_QUESTIONS)
    report_types = {r.report_type for r in reports}
    for report_type, questions_for_type in TOPIC_QUESTIONS.items():
        section = PAYLOAD_TOPICS[report_type]
        if report_type in report_types or any(
            _payload_mentions(a.analysis_data, section) for a in analyses
        ):
            questions.extend(questions_for_type)
    if len(analyses) > 1 or len(reports) > 1:
        questions.extend(COMPARISON_QUESTIONS)
    if any(a.analysis_data for a in analyses):
        questions.extend(ADVISORY_QUESTIONS)

    unique = list(dict.fromkeys(questions))
    return unique[:MAX_SUGGESTIONS]


def document_summary(user: User, filename: Optional[str] = None) -> dict:
    """Documents with their data sections, optionally filtered by file name.

    The *filename* match is a case-insensitive substring match.
    """
    analyses = FinancialAnalysis.query.filter_by(user_id=user.id)
    reports = FinancialReport.query.filter_by(user_id=user.id)
    if filename:
        analyses = analyses.filter(FinancialAnalysis.file_name.ilike(f"%{filename}%"))
        reports = reports.filter(FinancialReport.file_name.ilike(f"%{filename}%"))

    documents = [
        {
            "id": a.id,
            "filename": a.file_name,
            "file_type": a.file_type,
            "timestamp": isoformat(a.upload_date),
            "chunk_types": list(ANALYSIS_CHUNK_TYPES) if a.analysis_data else ["financial_data"],
            "source": "analysis",
        }
        for a in analyses.order_by(FinancialAnalysis.created_at.desc()).all()
    ] + [
        {
            "id": r.id,
            "filename": r.file_name,
            "file_type": r.file_type,
            "timestamp": isoformat(r.upload_date),
            "chunk_types": [r.report_type.lower().replace("_", "-")],
            "source": "report",
        }
        for r in reports.order_by(FinancialReport.upload_date.desc()).all()
    ]

    seen = set()
    unique = []
    for doc in documents:
        if doc["filename"] not in seen:
            seen.add(doc["filename"])
            unique.append(doc)

    total_chunks = sum(len(doc["chunk_types"]) for doc in unique)
    if filename:
        summary = (
            f'Found {len(unique)} document(s) matching "{filename}" '
            f"with {total_chunks} data sections."
        )
    elif not unique:
        summary = (
            "No financial documents uploaded yet. Upload documents to start "
            "chatting with AI about your financial data."
        )
    else:
        summary = (
            f"Found {len(unique)} financial document(s) with {total_chunks} "
            "data sections available for AI analysis."
        )
    return {"summary": summary, "documents": unique, "total_chunks": total_chunks}
