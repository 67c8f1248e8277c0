"""Stored financial analyses produced by the AI backend."""

from __future__ import annotations

import logging
import math
import uuid
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from errors import NotFound, PersistenceError, ValidationError
from extensions import db
from models import SUPPORTED_FILE_TYPES, Branch, FinancialAnalysis, User
from utils import bytes_to_mb, file_extension, safe_float, safe_int

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 10
MAX_PAGE_SIZE = 100


def _save(analysis: FinancialAnalysis) -> FinancialAnalysis:
    db.session.add(analysis)
    try:
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error("Failed to store analysis %s: %s", analysis.file_name, e)
        raise PersistenceError("Failed to store financial analysis", details=str(e))
    return analysis


def resolve_branch(user: User, branch_id) -> Optional[Branch]:
    """Return the caller's company branch for *branch_id*, ``None`` when unset."""
    if branch_id in (None, "", "null", "unassigned"):
        return None
    branch = Branch.query.filter_by(id=safe_int(branch_id), company_id=user.company_id).first()
    if branch is None:
        raise ValidationError("Branch not found for your company")
    return branch


def analyze_upload(client, user: User, file_name: str, content: bytes,
                   content_type: Optional[str] = None, branch_id=None) -> FinancialAnalysis:
    """Send a document to the backend and store the returned analysis payload.

    Raises:
        AnalysisBackendError: If the backend rejects or cannot process the file.
    """
    if not user.company_id:
        raise NotFound("No company found")
    file_type = file_extension(file_name)
    if file_type not in SUPPORTED_FILE_TYPES:
        raise ValidationError("Invalid file type. Please upload PDF, Excel, or CSV files.")
    branch = resolve_branch(user, branch_id)

    result = client.upload_document(file_name, content, user.external_id, content_type)
    analysis = _save(FinancialAnalysis(
        user_id=user.id,
        company_id=user.company_id,
        branch_id=branch.id if branch else None,
        file_name=file_name,
        file_type=file_type.upper(),
        file_size_mb=round(bytes_to_mb(len(content)), 2),
        analysis_data=result,
    ))
    logger.info("Stored analysis %s (%s) for user %s", analysis.id, file_name, user.id)
    return analysis


def store_payload(user: User, data: dict) -> FinancialAnalysis:
    """Store an analysis payload the client already obtained from the backend."""
    required = ("fileName", "fileType", "fileSizeMb", "analysisData")
    if not isinstance(data, dict) or any(not data.get(k) for k in required):
        raise ValidationError("Missing required fields")
    branch = resolve_branch(user, data.get("branchId")) if user.company_id else None
    analysis = _save(FinancialAnalysis(
        user_id=user.id,
        company_id=user.company_id,
        branch_id=branch.id if branch else None,
        file_name=data["fileName"],
        file_type=str(data["fileType"]),
        file_size_mb=safe_float(data["fileSizeMb"]),
        analysis_data=data["analysisData"],
        is_multi_file_analysis=bool(data.get("isMultiFileAnalysis")),
        multi_file_analysis_group_id=data.get("multiFileAnalysisGroupId"),
    ))
    logger.info("Stored client-supplied analysis %s for user %s", analysis.id, user.id)
    return analysis


def store_multi_file(user: User, data: dict) -> FinancialAnalysis:
    """Store one combined analysis produced from several uploaded files.

    The stored payload gains a ``multiFileMetadata`` block listing the
    original file names, and the record gets a fresh group id.
    """
    if not isinstance(data, dict):
        raise ValidationError("Missing required combined analysis data")
    file_names = data.get("fileNames")
    analysis_data = data.get("analysisData")
    if (
        not data.get("fileName")
        or not isinstance(file_names, list)
        or not file_names
        or not isinstance(analysis_data, dict)
        or not analysis_data
    ):
        raise ValidationError("Missing required combined analysis data")

    file_info = analysis_data.get("file_info") or {}
    branch = resolve_branch(user, data.get("branchId")) if user.company_id else None
    payload = dict(analysis_data)
    payload["multiFileMetadata"] = {
        "originalFiles": file_names,
        "analysisType": "combined_multi_file",
        "filesCount": len(file_names),
    }
    analysis = _save(FinancialAnalysis(
        user_id=user.id,
        company_id=user.company_id,
        branch_id=branch.id if branch else None,
        file_name=data["fileName"],
        file_type=str(file_info.get("file_type") or "combined"),
        file_size_mb=safe_float(file_info.get("file_size_mb")),
        analysis_data=payload,
        is_multi_file_analysis=True,
        multi_file_analysis_group_id=uuid.uuid4().hex,
    ))
    logger.info(
        "Stored combined analysis %s of %d files for user %s",
        analysis.id, len(file_names), user.id,
    )
    return analysis


def _user_query(user: User):
    return FinancialAnalysis.query.filter_by(user_id=user.id)


def _newest_first(query):
    return query.order_by(FinancialAnalysis.upload_date.desc(), FinancialAnalysis.id.desc())


def get_owned(user: User, analysis_id) -> FinancialAnalysis:
    analysis = _user_query(user).filter_by(id=safe_int(analysis_id)).first()
    if analysis is None:
        raise NotFound("Financial analysis not found")
    return analysis


def latest_for_user(user: User) -> Optional[FinancialAnalysis]:
    return _newest_first(_user_query(user)).first()


def all_for_user(user: User):
    return _newest_first(_user_query(user)).all()


def paginate_for_user(user: User, page, limit) -> dict:
    page = max(1, safe_int(page, 1))
    limit = min(MAX_PAGE_SIZE, max(1, safe_int(limit, DEFAULT_PAGE_SIZE)))
    query = _user_query(user)
    total = query.count()
    items = _newest_first(query).offset((page - 1) * limit).limit(limit).all()
    return {
        "data": [a.summary_dict() for a in items],
        "pagination": {
            "total": total,
            "page": page,
            "limit": limit,
            "totalPages": math.ceil(total / limit),
        },
    }


def company_analyses(user: User, branch_id=None, latest: bool = False):
    if not user.company_id:
        raise NotFound("No company found")
    query = FinancialAnalysis.query.filter_by(company_id=user.company_id)
    if branch_id == "unassigned":
        query = query.filter(FinancialAnalysis.branch_id.is_(None))
    elif branch_id and branch_id != "all":
        query = query.filter_by(branch_id=safe_int(branch_id))
    query = query.order_by(FinancialAnalysis.created_at.desc(), FinancialAnalysis.id.desc())
    if latest:
        query = query.limit(1)
    return query.all()


def company_analysis(user: User, analysis_id) -> FinancialAnalysis:
    if not user.company_id:
        raise NotFound("No company found")
    analysis = FinancialAnalysis.query.filter_by(
        id=safe_int(analysis_id), company_id=user.company_id
    ).first()
    if analysis is None:
        raise NotFound("Analysis not found")
    return analysis


def delete_analysis(user: User, analysis_id) -> None:
    analysis = get_owned(user, analysis_id)
    db.session.delete(analysis)
    db.session.commit()
    logger.info("Deleted analysis %s for user %s", analysis_id, user.id)
