"""SQLAlchemy models and the enumerations they store."""

from __future__ import annotations

from extensions import db
from utils import isoformat, utc_now

# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

SUPPORTED_FILE_TYPES = ("pdf", "xlsx", "xls", "csv")

REPORT_TYPES = ("PROFIT_LOSS", "BALANCE_SHEET", "CASH_FLOW", "TRIAL_BALANCE")
DATA_TYPES = (
    "REVENUE",
    "EXPENSE",
    "ASSET",
    "LIABILITY",
    "EQUITY",
    "CASH_FLOW_IN",
    "CASH_FLOW_OUT",
)

VALID_SUBSCRIPTION_STATUSES = {
    "active",
    "trialing",
    "past_due",
    "canceled",
    "incomplete",
    "incomplete_expired",
    "unpaid",
    "paused",
}
ACTIVE_SUBSCRIPTION_STATUSES = ("active", "trialing")


# ---------------------------------------------------------------------------
# Company & branches
# ---------------------------------------------------------------------------

class Company(db.Model):
    """A customer organisation; owns branches and is administered by one user."""
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(160), nullable=False)
    description = db.Column(db.Text)
    industry = db.Column(db.String(120))
    website = db.Column(db.String(255))
    phone = db.Column(db.String(60))
    address = db.Column(db.String(255))
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    branches = db.relationship(
        "Branch",
        backref="company",
        order_by="Branch.created_at",
        cascade="all, delete-orphan",
    )

    def to_dict(self, include_branches: bool = False) -> dict:
        data = {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "industry": self.industry,
            "website": self.website,
            "phone": self.phone,
            "address": self.address,
            "createdAt": isoformat(self.created_at),
            "updatedAt": isoformat(self.updated_at),
        }
        if include_branches:
            data["branches"] = [b.to_dict() for b in self.branches if b.is_active]
        return data


class Branch(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    company_id = db.Column(db.Integer, db.ForeignKey("company.id"), nullable=False, index=True)
    name = db.Column(db.String(160), nullable=False)
    location = db.Column(db.String(160))
    address = db.Column(db.String(255))
    phone = db.Column(db.String(60))
    description = db.Column(db.Text)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "companyId": self.company_id,
            "name": self.name,
            "location": self.location,
            "address": self.address,
            "phone": self.phone,
            "description": self.description,
            "isActive": self.is_active,
            "createdAt": isoformat(self.created_at),
            "updatedAt": isoformat(self.updated_at),
        }


# ---------------------------------------------------------------------------
# User
# ---------------------------------------------------------------------------

class User(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    external_id = db.Column(db.String(120), unique=True, nullable=False)
    email = db.Column(db.String(255), nullable=False, default="")
    first_name = db.Column(db.String(120))
    last_name = db.Column(db.String(120))
    company_id = db.Column(db.Integer, db.ForeignKey("company.id"), index=True)
    is_company_admin = db.Column(db.Boolean, default=False, nullable=False)
    has_completed_setup = db.Column(db.Boolean, default=False, nullable=False)
    stripe_customer_id = db.Column(db.String(120), index=True)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    company = db.relationship("Company", backref="users")


# ---------------------------------------------------------------------------
# Financial analyses (AI backend payloads)
# ---------------------------------------------------------------------------

class FinancialAnalysis(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False, index=True)
    company_id = db.Column(db.Integer, db.ForeignKey("company.id"), index=True)
    branch_id = db.Column(db.Integer, db.ForeignKey("branch.id"), index=True)
    file_name = db.Column(db.String(255), nullable=False)
    file_type = db.Column(db.String(20), nullable=False)
    file_size_mb = db.Column(db.Float, nullable=False, default=0.0)
    analysis_data = db.Column(db.JSON)
    is_multi_file_analysis = db.Column(db.Boolean, default=False, nullable=False)
    multi_file_analysis_group_id = db.Column(db.String(64), index=True)
    upload_date = db.Column(db.DateTime, default=utc_now)
    created_at = db.Column(db.DateTime, default=utc_now)

    user = db.relationship("User")
    company = db.relationship("Company")
    branch = db.relationship("Branch")

    __table_args__ = (
        db.Index("ix_financial_analysis_user_file", "user_id", "file_name"),
    )

    def summary_dict(self) -> dict:
        """File metadata without the (potentially large) analysis payload."""
        return {
            "id": self.id,
            "fileName": self.file_name,
            "fileType": self.file_type,
            "fileSizeMb": self.file_size_mb,
            "uploadDate": isoformat(self.upload_date),
            "createdAt": isoformat(self.created_at),
            "isMultiFileAnalysis": self.is_multi_file_analysis,
            "multiFileAnalysisGroupId": self.multi_file_analysis_group_id,
            "branchId": self.branch_id,
            "branchName": self.branch.name if self.branch else "Unassigned",
        }

    def to_dict(self) -> dict:
        data = self.summary_dict()
        data["companyId"] = self.company_id
        data["analysisData"] = self.analysis_data
        return data


# ---------------------------------------------------------------------------
# Legacy reports (locally parsed line items)
# ---------------------------------------------------------------------------

class FinancialReport(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False, index=True)
    file_name = db.Column(db.String(255), nullable=False)
    file_type = db.Column(db.String(20), nullable=False)
    file_size = db.Column(db.Integer, default=0)
    report_type = db.Column(db.String(30), nullable=False)
    year = db.Column(db.Integer, nullable=False)
    month = db.Column(db.Integer, nullable=False)
    status = db.Column(db.String(30), default="COMPLETED")
    upload_date = db.Column(db.DateTime, default=utc_now)

    parsed_data = db.relationship(
        "ParsedFinancialData",
        backref="report",
        order_by="ParsedFinancialData.id",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def to_dict(self, include_items: bool = True) -> dict:
        data = {
            "id": self.id,
            "fileName": self.file_name,
            "fileType": self.file_type,
            "fileSize": self.file_size,
            "reportType": self.report_type,
            "year": self.year,
            "month": self.month,
            "status": self.status,
            "uploadDate": isoformat(self.upload_date),
        }
        if include_items:
            data["parsedData"] = [item.to_dict() for item in self.parsed_data]
        return data


class ParsedFinancialData(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    report_id = db.Column(
        db.Integer,
        db.ForeignKey("financial_report.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False, index=True)
    account_name = db.Column(db.String(255), nullable=False)
    account_category = db.Column(db.String(120))
    amount = db.Column(db.Numeric(16, 2, asdecimal=False), nullable=False)
    data_type = db.Column(db.String(20), nullable=False)
    period = db.Column(db.String(60))
    notes = db.Column(db.Text)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "accountName": self.account_name,
            "accountCategory": self.account_category,
            "amount": self.amount,
            "dataType": self.data_type,
            "period": self.period,
            "notes": self.notes,
        }


# ---------------------------------------------------------------------------
# Subscription billing
# ---------------------------------------------------------------------------

class Subscription(db.Model):
    """Local mirror of a Stripe subscription; rows are never deleted."""
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False, index=True)
    stripe_customer_id = db.Column(db.String(120))
    stripe_subscription_id = db.Column(db.String(120), unique=True, nullable=False)
    stripe_price_id = db.Column(db.String(120))
    status = db.Column(db.String(30), nullable=False, default="incomplete")
    current_period_start = db.Column(db.DateTime)
    current_period_end = db.Column(db.DateTime)
    cancel_at_period_end = db.Column(db.Boolean, default=False, nullable=False)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    user = db.relationship("User", backref="subscriptions")

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_SUBSCRIPTION_STATUSES

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "status": self.status,
            "currentPeriodStart": isoformat(self.current_period_start),
            "currentPeriodEnd": isoformat(self.current_period_end),
            "cancelAtPeriodEnd": self.cancel_at_period_end,
        }
