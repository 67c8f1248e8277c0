"""Company analytics: per-branch aggregation and company-wide consolidation."""

from __future__ import annotations

import datetime
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import timezone
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import or_

from analysis_client import AnalysisBackendError
from models import FinancialAnalysis
from services.analysis_payload import AnalysisMetrics

logger = logging.getLogger(__name__)

UNASSIGNED_KEY = "unassigned"
UNASSIGNED_NAME = "Unassigned"
MAX_FETCH_WORKERS = 16


@dataclass
class BranchMetrics:
    branch_id: str
    branch_name: str
    total_revenue: float = 0.0
    total_expenses: float = 0.0
    net_profit: float = 0.0
    ebitda: float = 0.0
    gross_margin: float = 0.0
    health_score: float = 0.0
    cash_flow: float = 0.0
    current_ratio: float = 0.0
    debt_to_equity: float = 0.0
    working_capital: float = 0.0
    critical_alerts: List[Any] = field(default_factory=list)
    profit_margin: float = 0.0
    analysis_count: int = 0
    processed_count: int = 0

    def add(self, metrics: AnalysisMetrics) -> None:
        self.total_revenue += metrics.revenue
        self.total_expenses += metrics.expenses
        self.net_profit += metrics.net_income
        self.ebitda += metrics.ebitda
        self.cash_flow += metrics.free_cash_flow
        self.working_capital += metrics.working_capital
        # ratios and scores are not additive; the newest record wins
        self.gross_margin = metrics.gross_margin
        self.health_score = metrics.health_score
        self.current_ratio = metrics.current_ratio
        self.debt_to_equity = metrics.debt_to_equity
        self.critical_alerts = metrics.critical_alerts
        self.processed_count += 1

    def finalize(self) -> None:
        if self.processed_count:
            self.ebitda /= self.processed_count
            self.cash_flow /= self.processed_count
            self.working_capital /= self.processed_count
        self.profit_margin = (
            self.net_profit / self.total_revenue * 100 if self.total_revenue else 0.0
        )

    def to_dict(self) -> dict:
        return {
            "branchId": self.branch_id,
            "branchName": self.branch_name,
            "totalRevenue": self.total_revenue,
            "totalExpenses": self.total_expenses,
            "netProfit": self.net_profit,
            "profitMargin": self.profit_margin,
            "ebitda": self.ebitda,
            "grossMargin": self.gross_margin,
            "businessHealthScore": self.health_score,
            "cashFlow": self.cash_flow,
            "currentRatio": self.current_ratio,
            "debtToEquity": self.debt_to_equity,
            "workingCapital": self.working_capital,
            "criticalAlerts": self.critical_alerts,
            "analysisCount": self.analysis_count,
            "processedCount": self.processed_count,
        }


def _period_bounds(year: int, month: Optional[int]):
    if month:
        start = datetime.datetime(year, month, 1, tzinfo=timezone.utc)
        end = (
            datetime.datetime(year + 1, 1, 1, tzinfo=timezone.utc)
            if month == 12
            else datetime.datetime(year, month + 1, 1, tzinfo=timezone.utc)
        )
    else:
        start = datetime.datetime(year, 1, 1, tzinfo=timezone.utc)
        end = datetime.datetime(year + 1, 1, 1, tzinfo=timezone.utc)
    return start, end


def analyses_in_scope(
    company_id: int,
    branch_ids: Optional[Sequence[str]] = None,
    year: Optional[int] = None,
    month: Optional[int] = None,
) -> List[FinancialAnalysis]:
    """Return the company's analyses, oldest first, limited by branch and period."""
    query = FinancialAnalysis.query.filter_by(company_id=company_id)

    if branch_ids:
        wanted = [int(b) for b in branch_ids if str(b).isdigit()]
        clauses = [FinancialAnalysis.branch_id.in_(wanted)] if wanted else []
        if UNASSIGNED_KEY in branch_ids:
            clauses.append(FinancialAnalysis.branch_id.is_(None))
        if not clauses:
            return []
        query = query.filter(or_(*clauses))

    if year:
        start, end = _period_bounds(year, month)
        query = query.filter(
            FinancialAnalysis.created_at >= start, FinancialAnalysis.created_at < end
        )

    return query.order_by(FinancialAnalysis.created_at, FinancialAnalysis.id).all()


def _fetch_metrics(client, analysis_id) -> Optional[AnalysisMetrics]:
    try:
        payload = client.get_analysis(analysis_id)
    except AnalysisBackendError as e:
        logger.warning("Skipping analysis %s: %s", analysis_id, e)
        return None
    try:
        return AnalysisMetrics.from_payload(payload)
    except (TypeError, ValueError, OverflowError) as e:
        logger.warning("Skipping analysis %s, undecodable payload: %s", analysis_id, e)
        return None


def aggregate_branch_metrics(
    company_id: int,
    client,
    branch_ids: Optional[Sequence[str]] = None,
    year: Optional[int] = None,
    month: Optional[int] = None,
) -> List[BranchMetrics]:
    """Fetch each in-scope analysis from the backend and accumulate per branch.

    Fetches run concurrently; results are folded in creation order so the
    newest successfully fetched record supplies the ratio metrics.  A failed
    fetch counts towards ``analysis_count`` only.
    """
    records = analyses_in_scope(company_id, branch_ids, year, month)
    if not records:
        return []

    # Materialise plain values before leaving the request thread
    rows = [
        (
            record.id,
            str(record.branch_id) if record.branch_id else UNASSIGNED_KEY,
            record.branch.name if record.branch else UNASSIGNED_NAME,
        )
        for record in records
    ]

    workers = min(len(rows), MAX_FETCH_WORKERS)
    with ThreadPoolExecutor(max_workers=workers) as pool:
        fetched = list(pool.map(lambda row: _fetch_metrics(client, row[0]), rows))

    branches: Dict[str, BranchMetrics] = {}
    for (_, key, name), metrics in zip(rows, fetched):
        branch = branches.setdefault(key, BranchMetrics(branch_id=key, branch_name=name))
        branch.analysis_count += 1
        if metrics is not None:
            branch.add(metrics)

    for branch in branches.values():
        branch.finalize()

    failed = sum(1 for m in fetched if m is None)
    if failed:
        logger.warning(
            "Company %s analytics: %d of %d analyses could not be fetched",
            company_id, failed, len(rows),
        )
    return list(branches.values())


def _mean(values: List[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def consolidate(branches: Sequence[BranchMetrics]) -> dict:
    """Reduce per-branch metrics to company-wide totals and branch averages."""
    return {
        "totalRevenue": sum(b.total_revenue for b in branches),
        "totalExpenses": sum(b.total_expenses for b in branches),
        "netProfit": sum(b.net_profit for b in branches),
        "totalCashFlow": sum(b.cash_flow for b in branches),
        "totalWorkingCapital": sum(b.working_capital for b in branches),
        "totalBranches": len(branches),
        "totalAnalyses": sum(b.analysis_count for b in branches),
        "averageEbitda": _mean([b.ebitda for b in branches]),
        "averageGrossMargin": _mean([b.gross_margin for b in branches]),
        "averageHealthScore": _mean([b.health_score for b in branches]),
        "averageCurrentRatio": _mean([b.current_ratio for b in branches]),
        "averageProfitMargin": _mean([b.profit_margin for b in branches]),
    }
