"""Identity resolution and authorization decorators."""

from __future__ import annotations

import logging
from functools import wraps
from typing import Optional

from flask import g, session
from sqlalchemy.exc import IntegrityError

from errors import Forbidden, Unauthorized
from extensions import db
from models import User

logger = logging.getLogger(__name__)


def get_current_user() -> Optional[User]:
    """Return the currently signed-in user from ``flask.g``."""
    return getattr(g, "current_user", None)


def session_identity() -> Optional[dict]:
    """Return the identity-provider claims stored in the session, if any."""
    identity = session.get("identity")
    if not isinstance(identity, dict) or not identity.get("id"):
        return None
    return identity


def get_or_create_user(identity: dict) -> User:
    """Upsert the local user keyed by the identity provider's id.

    Profile fields are refreshed from the identity on every call.
    """
    external_id = str(identity["id"])
    user = User.query.filter_by(external_id=external_id).first()
    if user is None:
        user = User(
            external_id=external_id,
            email=identity.get("email") or "",
            first_name=identity.get("first_name"),
            last_name=identity.get("last_name"),
        )
        db.session.add(user)
        try:
            db.session.commit()
        except IntegrityError:
            # Concurrent first request for the same identity created it first.
            db.session.rollback()
            user = User.query.filter_by(external_id=external_id).one()
        else:
            logger.info("Created local user for identity %s", external_id)
        return user

    changed = False
    for attr in ("email", "first_name", "last_name"):
        value = identity.get(attr)
        if value is not None and getattr(user, attr) != value:
            setattr(user, attr, value)
            changed = True
    if changed:
        db.session.commit()
    return user


def login_required(f):
    """Decorator that raises :class:`Unauthorized` without a signed-in user."""

    @wraps(f)
    def decorated(*args, **kwargs):
        if not get_current_user():
            raise Unauthorized()
        return f(*args, **kwargs)

    return decorated


def company_admin_required(f):
    """Decorator that requires the caller to administer their company."""

    @wraps(f)
    def decorated(*args, **kwargs):
        user = get_current_user()
        if not user:
            raise Unauthorized()
        if not user.company_id or not user.is_company_admin:
            raise Forbidden("Only company admins can perform this action")
        return f(*args, **kwargs)

    return decorated
