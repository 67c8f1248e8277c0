"""Flask extensions shared by the app factory, routes and services."""

from flask import session
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_sqlalchemy import SQLAlchemy
from flask_wtf.csrf import CSRFProtect


def identity_or_remote_address() -> str:
    """Rate-limit per signed-in identity, falling back to the client address."""
    identity = session.get("identity") or {}
    identity_id = identity.get("id") if isinstance(identity, dict) else None
    return f"identity:{identity_id}" if identity_id else get_remote_address()


db = SQLAlchemy()
csrf = CSRFProtect()
limiter = Limiter(identity_or_remote_address, storage_uri="memory://")
