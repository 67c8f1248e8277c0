"""Dashboard summaries computed from locally parsed report line items."""

from __future__ import annotations

import logging
from typing import Dict, List, Sequence

from models import FinancialReport, ParsedFinancialData
from utils import isoformat, utc_now

logger = logging.getLogger(__name__)

TREND_REPORTS = 6
TOP_ACCOUNTS = 5

EMPTY_DASHBOARD = {
    "metrics": {},
    "insights": [],
    "trends": {"revenue": [], "expenses": [], "profit": [], "months": []},
    "topAccounts": {"revenue": [], "expenses": [], "assets": [], "liabilities": []},
}


def _total(items: Sequence[ParsedFinancialData], data_type: str, absolute: bool = False) -> float:
    values = [float(i.amount or 0) for i in items if i.data_type == data_type]
    return sum(abs(v) for v in values) if absolute else sum(values)


def summarize(items: Sequence[ParsedFinancialData]) -> dict:
    """Deterministic statement summary of a report's line items."""
    revenue = _total(items, "REVENUE")
    expenses = _total(items, "EXPENSE", absolute=True)
    net_profit = revenue - expenses
    ranked = sorted(items, key=lambda i: abs(float(i.amount or 0)), reverse=True)

    accounts = []
    for item in items:
        amount = float(item.amount or 0)
        accounts.append({
            "name": item.account_name,
            "category": item.data_type,
            "debit": amount if amount > 0 else None,
            "credit": abs(amount) if amount <= 0 else None,
            "amount": abs(amount),
            "balance": amount,
        })

    return {
        "sheetType": "Financial Statement",
        "summary": {
            "totalRevenue": revenue,
            "totalExpenses": expenses,
            "netProfit": net_profit,
            "netMargin": net_profit / revenue * 100 if revenue > 0 else 0.0,
            "totalAssets": _total(items, "ASSET"),
            "totalLiabilities": _total(items, "LIABILITY", absolute=True),
            "totalEquity": _total(items, "EQUITY"),
            "topAccounts": [
                {
                    "name": i.account_name,
                    "amount": abs(float(i.amount or 0)),
                    "category": i.data_type,
                }
                for i in ranked[:TOP_ACCOUNTS]
            ],
        },
        "accounts": accounts,
        "insights": [{
            "type": "summary",
            "title": "Financial Data Processed",
            "description": f"Successfully analyzed {len(items)} financial records",
            "severity": "low",
        }],
    }


def _trends(reports: List[FinancialReport]) -> dict:
    trends: Dict[str, list] = {"revenue": [], "expenses": [], "profit": [], "months": []}
    if len(reports) < 2:
        return trends
    for report in reversed(reports[:TREND_REPORTS]):
        revenue = _total(report.parsed_data, "REVENUE")
        expenses = _total(report.parsed_data, "EXPENSE", absolute=True)
        trends["revenue"].append(revenue)
        trends["expenses"].append(expenses)
        trends["profit"].append(revenue - expenses)
        trends["months"].append(report.upload_date.strftime("%b %Y") if report.upload_date else "")
    return trends


def _top(items: Sequence[ParsedFinancialData], data_type: str) -> list:
    matching = [i for i in items if i.data_type == data_type]
    matching.sort(key=lambda i: float(i.amount or 0), reverse=True)
    return [
        {"accountName": i.account_name, "amount": i.amount, "dataType": i.data_type}
        for i in matching[:TOP_ACCOUNTS]
    ]


def build_dashboard(reports: List[FinancialReport]) -> dict:
    """Dashboard for *reports* ordered newest first; the first one is summarised."""
    latest = reports[0]
    items = latest.parsed_data
    data = summarize(items)
    data["trends"] = _trends(reports)
    data["topAccounts"] = {
        "revenue": _top(items, "REVENUE"),
        "expenses": _top(items, "EXPENSE"),
        "assets": _top(items, "ASSET"),
        "liabilities": _top(items, "LIABILITY"),
    }
    data["reportInfo"] = {
        "latestReport": {
            "id": latest.id,
            "fileName": latest.file_name,
            "reportType": latest.report_type,
            "year": latest.year,
            "month": latest.month,
            "uploadDate": isoformat(latest.upload_date),
            "totalRecords": len(items),
        },
        "totalReports": len(reports),
        "totalRecords": sum(len(r.parsed_data) for r in reports),
        "analysisDate": isoformat(utc_now()),
    }
    return data
