"""Typed view over the nested analysis payload returned by the AI backend."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, List, Sequence

from utils import safe_float


def _dig(payload: Any, path: Sequence[str]) -> Any:
    node = payload
    for key in path:
        if not isinstance(node, dict):
            return None
        node = node.get(key)
    return node


def _number(payload: Any, *path: str) -> float:
    return safe_float(_dig(payload, path))


@dataclass
class AnalysisMetrics:
    revenue: float = 0.0
    expenses: float = 0.0
    net_income: float = 0.0
    ebitda: float = 0.0
    gross_margin: float = 0.0
    health_score: float = 0.0
    free_cash_flow: float = 0.0
    current_ratio: float = 0.0
    debt_to_equity: float = 0.0
    working_capital: float = 0.0
    critical_alerts: List[Any] = field(default_factory=list)

    @classmethod
    def from_payload(cls, payload: Any) -> "AnalysisMetrics":
        """Decode *payload*; absent or non-numeric fields fall back to zero."""
        alerts = _dig(payload, ("executive_summary", "critical_alerts"))
        return cls(
            revenue=_number(payload, "profit_and_loss", "revenue_analysis", "total_revenue"),
            expenses=_number(payload, "profit_and_loss", "cost_structure", "total_expenses"),
            net_income=_number(payload, "profit_and_loss", "profitability_metrics", "net_income"),
            ebitda=_number(payload, "profit_and_loss", "profitability_metrics", "ebitda"),
            gross_margin=_number(
                payload, "profit_and_loss", "profitability_metrics", "margins", "gross_margin"
            ),
            health_score=_number(payload, "executive_summary", "business_health_score"),
            free_cash_flow=_number(
                payload, "cash_flow_analysis", "cash_position", "free_cash_flow"
            ),
            current_ratio=_number(
                payload, "financial_ratios", "liquidity_ratios", "current_ratio"
            ),
            debt_to_equity=_number(
                payload, "financial_ratios", "leverage_ratios", "debt_to_equity"
            ),
            working_capital=_number(payload, "key_kpis", "working_capital"),
            critical_alerts=list(alerts) if isinstance(alerts, list) else [],
        )
