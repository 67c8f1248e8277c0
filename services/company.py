"""Company setup and branch management."""

from __future__ import annotations

import logging
from typing import List

from errors import NotFound, ValidationError
from extensions import db
from models import Branch, Company, User
from utils import safe_int

logger = logging.getLogger(__name__)

COMPANY_FIELDS = ("name", "description", "industry", "website", "phone", "address")
BRANCH_FIELDS = ("name", "location", "address", "phone", "description")


def _clean(value):
    if isinstance(value, str):
        value = value.strip()
    return value or None


def create_company(user: User, data: dict) -> Company:
    """Create a company and make *user* its administrator."""
    name = _clean(data.get("name"))
    if not name:
        raise ValidationError("Company name is required")
    if user.company_id:
        raise ValidationError("You already belong to a company")

    company = Company(**{f: _clean(data.get(f)) for f in COMPANY_FIELDS})
    company.name = name
    db.session.add(company)
    db.session.flush()

    user.company_id = company.id
    user.is_company_admin = True
    user.has_completed_setup = True
    db.session.commit()
    logger.info("User %s created company %s", user.id, company.id)
    return company


def update_company(user: User, data: dict) -> Company:
    company = db.session.get(Company, user.company_id)
    if company is None:
        raise NotFound("Company not found")
    for field in COMPANY_FIELDS:
        if field in data:
            setattr(company, field, _clean(data[field]))
    if not company.name:
        raise ValidationError("Company name is required")
    db.session.commit()
    logger.info("Company %s updated by user %s", company.id, user.id)
    return company


def active_branches(company_id: int) -> List[Branch]:
    return (
        Branch.query.filter_by(company_id=company_id, is_active=True)
        .order_by(Branch.created_at, Branch.id)
        .all()
    )


def create_branch(user: User, data: dict) -> Branch:
    name = _clean(data.get("name"))
    if not name:
        raise ValidationError("Branch name is required")
    branch = Branch(company_id=user.company_id, **{f: _clean(data.get(f)) for f in BRANCH_FIELDS})
    branch.name = name
    db.session.add(branch)
    db.session.commit()
    logger.info("Created branch %s in company %s", branch.id, user.company_id)
    return branch


def _company_branch(user: User, branch_id) -> Branch:
    branch = Branch.query.filter_by(id=safe_int(branch_id), company_id=user.company_id).first()
    if branch is None:
        raise NotFound("Branch not found")
    return branch


def update_branch(user: User, branch_id, data: dict) -> Branch:
    branch = _company_branch(user, branch_id)
    for field in BRANCH_FIELDS:
        if field in data:
            setattr(branch, field, _clean(data[field]))
    if "isActive" in data:
        branch.is_active = bool(data["isActive"])
    if not branch.name:
        raise ValidationError("Branch name is required")
    db.session.commit()
    return branch


def deactivate_branch(user: User, branch_id) -> Branch:
    """Soft delete: the branch keeps its historical analyses."""
    branch = _company_branch(user, branch_id)
    branch.is_active = False
    db.session.commit()
    logger.info("Deactivated branch %s in company %s", branch.id, user.company_id)
    return branch
