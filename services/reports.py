"""Locally parsed financial reports (header + line items)."""

from __future__ import annotations

import logging
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError

from analysis_client import AnalysisBackendError
from errors import NotFound, PersistenceError, ValidationError
from extensions import db
from models import REPORT_TYPES, FinancialReport, ParsedFinancialData, User
from services.parsers import parse_report
from utils import file_extension, safe_int

logger = logging.getLogger(__name__)

REPORT_FILE_TYPES = ("csv", "pdf", "xlsx", "xls")


def validate_upload(file_name: str, report_type: str, year, month):
    """Return ``(file_type, year, month)`` or raise :class:`ValidationError`."""
    year, month = safe_int(year), safe_int(month)
    if not file_name or not report_type or not year or not month:
        raise ValidationError("Missing required fields: file, reportType, year, month")
    file_type = file_extension(file_name)
    if file_type not in REPORT_FILE_TYPES:
        raise ValidationError("Only CSV, PDF, and Excel files (.xlsx, .xls) are supported")
    if report_type not in REPORT_TYPES:
        raise ValidationError("Invalid report type")
    if not 1 <= month <= 12:
        raise ValidationError("Month must be between 1 and 12")
    return file_type, year, month


def create_report(
    user: User,
    file_name: str,
    content: bytes,
    report_type: str,
    year,
    month,
) -> FinancialReport:
    """Parse *content* and store the report with its line items in one commit."""
    file_type, year, month = validate_upload(file_name, report_type, year, month)
    records = parse_report(content, file_type, report_type)

    report = FinancialReport(
        user_id=user.id,
        file_name=file_name,
        file_type=file_type.upper(),
        file_size=len(content),
        report_type=report_type,
        year=year,
        month=month,
        status="COMPLETED",
    )
    db.session.add(report)
    try:
        db.session.flush()
        for record in records:
            db.session.add(ParsedFinancialData(
                report_id=report.id,
                user_id=user.id,
                account_name=record.account_name,
                account_category=record.account_category,
                amount=record.amount,
                data_type=record.data_type,
                period=record.period,
                notes=record.notes,
            ))
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error("Failed to store report %s for user %s: %s", file_name, user.id, e)
        raise PersistenceError("Failed to store financial report", details=str(e))

    logger.info(
        "Stored %s report %s (%d line items) for user %s",
        report_type, report.id, len(records), user.id,
    )
    return report


def store_in_vector_db(client, user: User, file_name: str, content: bytes,
                       content_type: Optional[str] = None) -> dict:
    """Best-effort forward of a report to the backend's document store."""
    try:
        result = client.upload_document(file_name, content, user.external_id, content_type)
    except AnalysisBackendError as e:
        logger.warning("Vector storage failed for %s: %s", file_name, e)
        return {"stored": False, "document_id": None}
    return result.get("vector_storage") or {"stored": False, "document_id": None}


def list_reports(user: User) -> List[FinancialReport]:
    return (
        FinancialReport.query
        .filter_by(user_id=user.id)
        .order_by(FinancialReport.upload_date.desc(), FinancialReport.id.desc())
        .all()
    )


def get_report(user: User, report_id) -> FinancialReport:
    report = FinancialReport.query.filter_by(id=safe_int(report_id), user_id=user.id).first()
    if report is None:
        raise NotFound("Report not found")
    return report


def delete_report(user: User, report_id) -> None:
    """Delete a report owned by *user*: line items first, then the header."""
    report = get_report(user, report_id)
    try:
        ParsedFinancialData.query.filter_by(report_id=report.id).delete(
            synchronize_session=False
        )
        db.session.delete(report)
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error("Failed to delete report %s: %s", report_id, e)
        raise PersistenceError("Failed to delete report", details=str(e))
    logger.info("Deleted report %s for user %s", report_id, user.id)
