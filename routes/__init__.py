"""Blueprint registration."""

from routes.analyses import analyses_bp
from routes.billing import billing_bp
from routes.chatbot import chatbot_bp
from routes.company import company_bp
from routes.dashboard import dashboard_bp
from routes.reports import reports_bp
from routes.user import user_bp

ALL_BLUEPRINTS = [
    user_bp,
    company_bp,
    analyses_bp,
    reports_bp,
    dashboard_bp,
    chatbot_bp,
    billing_bp,
]

# Blueprints (and single endpoints) that need an active or trialing subscription
PAYWALLED_BLUEPRINTS = {"analyses", "reports", "dashboard", "chatbot"}
PAYWALLED_ENDPOINTS = {"company.analytics"}


def register_blueprints(app):
    """Register all application blueprints on *app*."""
    for bp in ALL_BLUEPRINTS:
        app.register_blueprint(bp)
