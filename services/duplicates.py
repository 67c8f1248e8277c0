"""Duplicate upload detection.

A file counts as already uploaded when the same user has a stored analysis
with the exact same file name and a size within tolerance of the candidate.
The tolerance is 10% of the candidate size with a 0.01 MB floor, so tiny
files are not compared with a zero-width window.
"""

from __future__ import annotations

import logging
from typing import Iterable, List, Optional

from models import FinancialAnalysis
from utils import bytes_to_mb

logger = logging.getLogger(__name__)

MIN_TOLERANCE_MB = 0.01
RELATIVE_TOLERANCE = 0.1


def size_tolerance_mb(size_mb: float) -> float:
    return max(MIN_TOLERANCE_MB, size_mb * RELATIVE_TOLERANCE)


def is_same_size(stored_mb: float, candidate_mb: float) -> bool:
    return abs((stored_mb or 0.0) - candidate_mb) <= size_tolerance_mb(candidate_mb)


def find_duplicate(user_id: int, file_name: str, size_bytes) -> Optional[FinancialAnalysis]:
    """Return the stored analysis *file_name* duplicates, or ``None``.

    Only the first record with a matching name is compared.
    """
    existing = (
        FinancialAnalysis.query
        .filter_by(user_id=user_id, file_name=file_name)
        .order_by(FinancialAnalysis.id)
        .first()
    )
    if existing is None:
        return None
    if is_same_size(existing.file_size_mb, bytes_to_mb(size_bytes)):
        return existing
    return None


def check_duplicates(user_id: int, files: Iterable[dict]) -> List[str]:
    """Return the names of *files* (``{"name", "size"}``) already uploaded."""
    duplicates = []
    for entry in files:
        name = entry.get("name")
        if not name:
            continue
        if find_duplicate(user_id, name, entry.get("size")):
            duplicates.append(name)
    if duplicates:
        logger.info("User %s re-uploading %d known file(s)", user_id, len(duplicates))
    return duplicates
