"""Route-level test suite for the AI CFO Assistant API.

Tests cover: app creation, identity handling, company & branches, duplicate
detection, company analytics, financial analyses, report upload, dashboard,
chatbot, Stripe billing & webhook reconciliation, paywall and error handlers.
"""

import datetime
import hashlib
import hmac
import io
import json
import os
import time
from datetime import timezone
from unittest.mock import MagicMock, Mock, patch

import pytest

os.environ["DATABASE_URI"] = "sqlite://"  # In-memory database for tests
os.environ["APP_SECRET_KEY"] = "test-secret-key"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_dummy"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["APP_PUBLIC_URL"] = "http://testserver"
os.environ.setdefault("FLASK_ENV", "development")

from analysis_client import AnalysisBackendClient, AnalysisBackendError
from app import create_app
from extensions import db
from models import (
    Branch,
    Company,
    FinancialAnalysis,
    FinancialReport,
    ParsedFinancialData,
    Subscription,
    User,
)

WEBHOOK_SECRET = "whsec_test_secret"
MB = 1024 * 1024

IDENTITY = {
    "id": "user_2abc",
    "email": "owner@acme.test",
    "first_name": "Ada",
    "last_name": "Owner",
}


@pytest.fixture
def app():
    """Create application for testing with the analysis backend mocked out."""
    application = create_app()
    application.config["TESTING"] = True
    application.config["WTF_CSRF_ENABLED"] = False
    application.config["RATELIMIT_ENABLED"] = False
    application.config["ENFORCE_PAYWALL"] = False

    backend = MagicMock(spec=AnalysisBackendClient)
    backend.upload_document.side_effect = AnalysisBackendError("backend offline")
    backend.get_analysis.side_effect = AnalysisBackendError("backend offline")
    backend.chat.side_effect = AnalysisBackendError("backend offline")
    backend.delete_document.return_value = False
    backend.check_health.return_value = {
        "isHealthy": False, "responseTime": 3, "error": "connection refused",
    }
    application.config["ANALYSIS_CLIENT"] = backend
    yield application


@pytest.fixture
def backend(app):
    return app.config["ANALYSIS_CLIENT"]


@pytest.fixture
def client(app):
    """Create test client."""
    return app.test_client()


def _login(client, identity=None):
    with client.session_transaction() as sess:
        sess["identity"] = dict(identity or IDENTITY)
    return client


@pytest.fixture
def logged_in_client(client):
    """Test client whose session carries the identity provider's claims."""
    return _login(client)


@pytest.fixture
def company_data(app):
    """Admin user with a company, two branches and a Stripe customer. Returns IDs."""
    with app.app_context():
        company = Company(name="Acme Ltd", industry="Retail")
        db.session.add(company)
        db.session.flush()
        branch_a = Branch(company_id=company.id, name="Downtown")
        branch_b = Branch(company_id=company.id, name="Airport")
        db.session.add_all([branch_a, branch_b])
        user = User(
            external_id=IDENTITY["id"],
            email=IDENTITY["email"],
            company_id=company.id,
            is_company_admin=True,
            has_completed_setup=True,
            stripe_customer_id="cus_123",
        )
        db.session.add(user)
        db.session.commit()
        return {
            "user_id": user.id,
            "company_id": company.id,
            "branch_a": branch_a.id,
            "branch_b": branch_b.id,
        }


def _payload(revenue=0, expenses=0, net=0, ebitda=0, gross_margin=0, health=0,
             fcf=0, current_ratio=0, dte=0, working_capital=0, alerts=None):
    return {
        "profit_and_loss": {
            "revenue_analysis": {"total_revenue": revenue},
            "cost_structure": {"total_expenses": expenses},
            "profitability_metrics": {
                "net_income": net,
                "ebitda": ebitda,
                "margins": {"gross_margin": gross_margin},
            },
        },
        "executive_summary": {
            "business_health_score": health,
            "critical_alerts": alerts or [],
        },
        "cash_flow_analysis": {"cash_position": {"free_cash_flow": fcf}},
        "financial_ratios": {
            "liquidity_ratios": {"current_ratio": current_ratio},
            "leverage_ratios": {"debt_to_equity": dte},
        },
        "key_kpis": {"working_capital": working_capital},
    }


def _add_analysis(user_id, file_name="report.pdf", size_mb=1.0, company_id=None,
                  branch_id=None, created_at=None, data=None):
    analysis = FinancialAnalysis(
        user_id=user_id,
        company_id=company_id,
        branch_id=branch_id,
        file_name=file_name,
        file_type="PDF",
        file_size_mb=size_mb,
        analysis_data=data if data is not None else {"summary": "ok"},
    )
    if created_at:
        analysis.created_at = created_at
        analysis.upload_date = created_at
    db.session.add(analysis)
    db.session.commit()
    return analysis.id


def _activate_subscription(user_id, status="active", stripe_id="sub_active"):
    now = datetime.datetime.now(timezone.utc)
    sub = Subscription(
        user_id=user_id,
        stripe_customer_id="cus_123",
        stripe_subscription_id=stripe_id,
        status=status,
        current_period_start=now,
        current_period_end=now + datetime.timedelta(days=30),
    )
    db.session.add(sub)
    db.session.commit()
    return sub.id


def _sign(payload: str, secret: str = WEBHOOK_SECRET, timestamp=None) -> str:
    timestamp = timestamp or int(time.time())
    signature = hmac.new(
        secret.encode("utf-8"),
        f"{timestamp}.{payload}".encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    return f"t={timestamp},v1={signature}"


def _subscription_event(event_type, status="active", cancel_at_period_end=False,
                        customer="cus_123", sub_id="sub_1"):
    return {
        "id": f"evt_{event_type}_{status}",
        "object": "event",
        "type": event_type,
        "data": {
            "object": {
                "id": sub_id,
                "object": "subscription",
                "customer": customer,
                "status": status,
                "cancel_at_period_end": cancel_at_period_end,
                "current_period_start": 1700000000,
                "current_period_end": 1702592000,
                "items": {"data": [{"price": {"id": "price_pro"}}]},
            }
        },
    }


def _post_webhook(client, event, signature=None, body=None):
    payload = body if body is not None else json.dumps(event)
    headers = {}
    sig = signature if signature is not None else _sign(json.dumps(event))
    if sig:
        headers["Stripe-Signature"] = sig
    return client.post(
        "/api/stripe/webhook",
        data=payload,
        content_type="application/json",
        headers=headers,
    )


# ============================================================================
# App creation
# ============================================================================


class TestAppCreation:
    def test_app_creates(self, app):
        assert app is not None
        assert app.config["SQLALCHEMY_DATABASE_URI"] == "sqlite://"
        assert app.config["TESTING"] is True

    def test_configs_attached(self, app):
        assert app.config["STRIPE_CONFIG"].webhook_secret == WEBHOOK_SECRET
        assert app.config["STRIPE_CONFIG"].price_amount == 2900
        assert app.config["APP_CONFIG"].public_url == "http://testserver"

    def test_session_config(self, app):
        assert app.config["SESSION_COOKIE_HTTPONLY"] is True
        assert app.config["SESSION_COOKIE_SAMESITE"] == "Lax"

    def test_security_headers(self, client):
        resp = client.get("/api/csrf-token")
        assert resp.headers["X-Content-Type-Options"] == "nosniff"
        assert resp.headers["X-Frame-Options"] == "DENY"


# ============================================================================
# Identity
# ============================================================================


class TestIdentity:
    def test_unauthenticated_gets_401(self, client):
        resp = client.get("/api/company")
        assert resp.status_code == 401
        assert resp.get_json() == {"error": "Unauthorized"}

    def test_user_created_lazily_once(self, app, logged_in_client):
        logged_in_client.get("/api/user/setup-status")
        logged_in_client.get("/api/user/setup-status")
        with app.app_context():
            users = User.query.filter_by(external_id=IDENTITY["id"]).all()
            assert len(users) == 1
            assert users[0].email == IDENTITY["email"]

    def test_profile_refreshed_from_identity(self, app, client):
        _login(client)
        client.get("/api/user/setup-status")
        _login(client, {**IDENTITY, "email": "new@acme.test"})
        client.get("/api/user/setup-status")
        with app.app_context():
            assert User.query.filter_by(external_id=IDENTITY["id"]).one().email == "new@acme.test"

    def test_setup_status_new_user(self, logged_in_client):
        resp = logged_in_client.get("/api/user/setup-status")
        assert resp.status_code == 200
        assert resp.get_json() == {
            "hasCompletedSetup": False,
            "companyId": None,
            "isCompanyAdmin": False,
        }


# ============================================================================
# Company & branches
# ============================================================================


class TestCompanyRoutes:
    def test_no_company(self, logged_in_client):
        resp = logged_in_client.get("/api/company")
        assert resp.get_json() == {"company": None}

    def test_create_company_makes_admin(self, app, logged_in_client):
        resp = logged_in_client.post("/api/company", json={"name": "Acme", "industry": "Retail"})
        assert resp.status_code == 200
        body = resp.get_json()
        assert body["success"] is True
        assert body["company"]["name"] == "Acme"
        with app.app_context():
            user = User.query.filter_by(external_id=IDENTITY["id"]).one()
            assert user.is_company_admin is True
            assert user.has_completed_setup is True
            assert user.company_id == body["company"]["id"]

    def test_create_company_requires_name(self, logged_in_client):
        resp = logged_in_client.post("/api/company", json={"industry": "Retail"})
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "Company name is required"

    def test_update_company(self, company_data, logged_in_client):
        resp = logged_in_client.put("/api/company", json={"name": "Acme Group", "phone": "123"})
        assert resp.status_code == 200
        assert resp.get_json()["company"]["name"] == "Acme Group"

    def test_non_admin_cannot_update(self, app, company_data, client):
        with app.app_context():
            db.session.add(User(
                external_id="user_member",
                email="member@acme.test",
                company_id=company_data["company_id"],
            ))
            db.session.commit()
        _login(client, {"id": "user_member", "email": "member@acme.test"})
        resp = client.put("/api/company", json={"name": "Hijacked"})
        assert resp.status_code == 403

    def test_branch_lifecycle(self, app, company_data, logged_in_client):
        resp = logged_in_client.post("/api/company/branches", json={"name": "Harbour"})
        assert resp.status_code == 200
        branch_id = resp.get_json()["branch"]["id"]

        names = [b["name"] for b in logged_in_client.get("/api/company/branches").get_json()["branches"]]
        assert names == ["Downtown", "Airport", "Harbour"]

        resp = logged_in_client.put(f"/api/company/branches/{branch_id}", json={"location": "Pier 1"})
        assert resp.get_json()["branch"]["location"] == "Pier 1"

        resp = logged_in_client.delete(f"/api/company/branches/{branch_id}")
        assert resp.status_code == 200
        names = [b["name"] for b in logged_in_client.get("/api/company/branches").get_json()["branches"]]
        assert "Harbour" not in names
        with app.app_context():
            assert db.session.get(Branch, branch_id).is_active is False

    def test_branch_of_other_company_not_found(self, app, company_data, logged_in_client):
        with app.app_context():
            other = Company(name="Other")
            db.session.add(other)
            db.session.flush()
            foreign = Branch(company_id=other.id, name="Elsewhere")
            db.session.add(foreign)
            db.session.commit()
            foreign_id = foreign.id
        resp = logged_in_client.delete(f"/api/company/branches/{foreign_id}")
        assert resp.status_code == 404


# ============================================================================
# Duplicate detection
# ============================================================================


class TestDuplicateCheck:
    @pytest.fixture
    def stored(self, app, company_data):
        with app.app_context():
            _add_analysis(company_data["user_id"], file_name="q1.pdf", size_mb=5.0)

    def test_within_tolerance_is_duplicate(self, stored, logged_in_client):
        resp = logged_in_client.post(
            "/api/check-duplicate-file", json={"fileName": "q1.pdf", "fileSize": int(5.4 * MB)}
        )
        body = resp.get_json()
        assert body["hasDuplicates"] is True
        assert body["duplicates"] == ["q1.pdf"]
        assert body["message"] == "File(s) already uploaded: q1.pdf"

    def test_outside_tolerance_is_not_duplicate(self, stored, logged_in_client):
        resp = logged_in_client.post(
            "/api/check-duplicate-file", json={"fileName": "q1.pdf", "fileSize": int(5.6 * MB)}
        )
        body = resp.get_json()
        assert body["hasDuplicates"] is False
        assert body["message"] == "No duplicates found"

    def test_name_is_case_sensitive(self, stored, logged_in_client):
        resp = logged_in_client.post(
            "/api/check-duplicate-file", json={"fileName": "Q1.pdf", "fileSize": int(5.0 * MB)}
        )
        assert resp.get_json()["hasDuplicates"] is False

    def test_batch_form(self, stored, logged_in_client):
        resp = logged_in_client.post("/api/check-duplicate-file", json={
            "files": [
                {"name": "q1.pdf", "size": int(5.0 * MB)},
                {"name": "q2.pdf", "size": int(5.0 * MB)},
            ]
        })
        assert resp.get_json()["duplicates"] == ["q1.pdf"]

    def test_other_users_files_ignored(self, app, stored, client):
        _login(client, {"id": "user_other", "email": "other@x.test"})
        resp = client.post(
            "/api/check-duplicate-file", json={"fileName": "q1.pdf", "fileSize": int(5.0 * MB)}
        )
        assert resp.get_json()["hasDuplicates"] is False

    def test_missing_fields(self, logged_in_client):
        resp = logged_in_client.post("/api/check-duplicate-file", json={})
        assert resp.status_code == 400


# ============================================================================
# Company analytics
# ============================================================================


class TestCompanyAnalytics:
    @pytest.fixture
    def analytics_data(self, app, company_data):
        jan = datetime.datetime(2024, 1, 15, tzinfo=timezone.utc)
        feb = datetime.datetime(2024, 2, 15, tzinfo=timezone.utc)
        uid, cid = company_data["user_id"], company_data["company_id"]
        with app.app_context():
            ids = {
                "a1": _add_analysis(uid, "jan.pdf", company_id=cid,
                                    branch_id=company_data["branch_a"], created_at=jan),
                "a2": _add_analysis(uid, "feb.pdf", company_id=cid,
                                    branch_id=company_data["branch_a"], created_at=feb),
                "a3": _add_analysis(uid, "hq.pdf", company_id=cid, created_at=jan),
                "a4": _add_analysis(uid, "air.pdf", company_id=cid,
                                    branch_id=company_data["branch_b"], created_at=feb),
            }
        return {**company_data, **ids}

    @pytest.fixture
    def payloads(self, backend, analytics_data):
        by_id = {
            analytics_data["a1"]: _payload(
                revenue=1000, expenses=600, net=400, ebitda=200, gross_margin=30,
                health=70, fcf=100, current_ratio=1.5, dte=0.5, working_capital=300,
            ),
            analytics_data["a2"]: _payload(
                revenue=2000, expenses=1500, net=500, ebitda=400, gross_margin=25,
                health=80, fcf=300, current_ratio=2.0, dte=0.4, working_capital=500,
                alerts=["Low cash"],
            ),
            analytics_data["a3"]: _payload(revenue=500, expenses=400, net=100),
        }

        def fake_get_analysis(analysis_id):
            if analysis_id not in by_id:
                raise AnalysisBackendError("404 from backend")
            return by_id[analysis_id]

        backend.get_analysis.side_effect = fake_get_analysis
        return by_id

    def test_per_branch_and_consolidated(self, payloads, analytics_data, logged_in_client):
        resp = logged_in_client.get("/api/company/analytics")
        assert resp.status_code == 200
        data = resp.get_json()["data"]
        branches = {b["branchId"]: b for b in data["branches"]}

        downtown = branches[str(analytics_data["branch_a"])]
        assert downtown["branchName"] == "Downtown"
        assert downtown["totalRevenue"] == 3000
        assert downtown["totalExpenses"] == 2100
        assert downtown["netProfit"] == 900
        assert downtown["ebitda"] == pytest.approx(300)
        assert downtown["cashFlow"] == pytest.approx(200)
        assert downtown["workingCapital"] == pytest.approx(400)
        assert downtown["grossMargin"] == 25
        assert downtown["businessHealthScore"] == 80
        assert downtown["criticalAlerts"] == ["Low cash"]
        assert downtown["profitMargin"] == pytest.approx(30.0)
        assert downtown["analysisCount"] == 2

        airport = branches[str(analytics_data["branch_b"])]
        assert airport["totalRevenue"] == 0
        assert airport["profitMargin"] == 0
        assert airport["analysisCount"] == 1
        assert airport["processedCount"] == 0

        unassigned = branches["unassigned"]
        assert unassigned["branchName"] == "Unassigned"
        assert unassigned["profitMargin"] == pytest.approx(20.0)

        consolidated = data["consolidated"]
        assert consolidated["totalRevenue"] == 3500
        assert consolidated["netProfit"] == 1000
        assert consolidated["totalBranches"] == 3
        assert consolidated["totalAnalyses"] == 4
        assert consolidated["averageProfitMargin"] == pytest.approx(50.0 / 3)

    def test_branch_filter(self, payloads, analytics_data, logged_in_client):
        resp = logged_in_client.get(
            f"/api/company/analytics?branchIds={analytics_data['branch_a']}"
        )
        data = resp.get_json()["data"]
        assert [b["branchId"] for b in data["branches"]] == [str(analytics_data["branch_a"])]

    def test_period_filter(self, payloads, analytics_data, logged_in_client):
        resp = logged_in_client.get("/api/company/analytics?year=2024&month=1")
        data = resp.get_json()["data"]
        assert data["period"] == {"year": 2024, "month": 1}
        assert data["consolidated"]["totalAnalyses"] == 2

        resp = logged_in_client.get("/api/company/analytics?year=2023")
        data = resp.get_json()["data"]
        assert data["branches"] == []
        assert data["consolidated"]["totalBranches"] == 0
        assert data["consolidated"]["averageProfitMargin"] == 0

    def test_averages_use_processed_count(self, app, payloads, analytics_data, logged_in_client):
        with app.app_context():
            good_id = _add_analysis(
                analytics_data["user_id"], "air-ok.pdf",
                company_id=analytics_data["company_id"], branch_id=analytics_data["branch_b"],
                created_at=datetime.datetime(2024, 3, 1, tzinfo=timezone.utc),
            )
        payloads[good_id] = _payload(revenue=800, net=200, ebitda=120, fcf=60, working_capital=90)

        resp = logged_in_client.get(
            f"/api/company/analytics?branchIds={analytics_data['branch_b']}"
        )
        airport = resp.get_json()["data"]["branches"][0]
        assert airport["analysisCount"] == 2
        assert airport["processedCount"] == 1
        assert airport["ebitda"] == pytest.approx(120)
        assert airport["cashFlow"] == pytest.approx(60)
        assert airport["workingCapital"] == pytest.approx(90)
        assert airport["profitMargin"] == pytest.approx(25.0)

    def test_oversized_number_skips_only_that_record(self, app, payloads, analytics_data,
                                                     logged_in_client):
        with app.app_context():
            huge_id = _add_analysis(
                analytics_data["user_id"], "huge.pdf",
                company_id=analytics_data["company_id"], branch_id=analytics_data["branch_b"],
                created_at=datetime.datetime(2024, 3, 1, tzinfo=timezone.utc),
            )
        payloads[huge_id] = {"key_kpis": {"working_capital": 10 ** 400}}

        resp = logged_in_client.get("/api/company/analytics")
        assert resp.status_code == 200
        branches = {b["branchId"]: b for b in resp.get_json()["data"]["branches"]}
        airport = branches[str(analytics_data["branch_b"])]
        assert airport["analysisCount"] == 2
        assert airport["workingCapital"] == 0
        assert branches[str(analytics_data["branch_a"])]["totalRevenue"] == 3000

    def test_requires_company(self, logged_in_client):
        resp = logged_in_client.get("/api/company/analytics")
        assert resp.status_code == 404


# ============================================================================
# Financial analyses
# ============================================================================


class TestFinancialAnalyses:
    def test_upload_stores_backend_payload(self, app, backend, company_data, logged_in_client):
        backend.upload_document.side_effect = None
        backend.upload_document.return_value = _payload(revenue=42)
        resp = logged_in_client.post(
            "/api/financial-analyses",
            data={
                "file": (io.BytesIO(b"%PDF-1.4 fake"), "q3.pdf"),
                "branchId": str(company_data["branch_a"]),
            },
            content_type="multipart/form-data",
        )
        assert resp.status_code == 200
        analysis_id = resp.get_json()["analysis"]["id"]
        with app.app_context():
            stored = db.session.get(FinancialAnalysis, analysis_id)
            assert stored.file_type == "PDF"
            assert stored.branch_id == company_data["branch_a"]
            assert stored.analysis_data["profit_and_loss"]["revenue_analysis"]["total_revenue"] == 42

    def test_upload_rejects_unsupported_type(self, company_data, logged_in_client):
        resp = logged_in_client.post(
            "/api/financial-analyses",
            data={"file": (io.BytesIO(b"hello"), "notes.txt")},
            content_type="multipart/form-data",
        )
        assert resp.status_code == 400

    def test_upload_backend_failure(self, company_data, logged_in_client):
        resp = logged_in_client.post(
            "/api/financial-analyses",
            data={"file": (io.BytesIO(b"a,b\n1,2"), "q3.csv")},
            content_type="multipart/form-data",
        )
        assert resp.status_code == 502

    def test_store_client_payload(self, logged_in_client):
        resp = logged_in_client.post("/api/upload-financial-analysis", json={
            "fileName": "x.pdf", "fileType": "PDF", "fileSizeMb": 1.2, "analysisData": {"a": 1},
        })
        assert resp.status_code == 200
        analysis_id = resp.get_json()["id"]

        resp = logged_in_client.get(f"/api/financial-analysis?id={analysis_id}")
        assert resp.get_json()["analysisData"] == {"a": 1}

        resp = logged_in_client.get("/api/financial-analysis?latest=true")
        assert resp.get_json() == {"a": 1}

    def test_store_client_payload_missing_fields(self, logged_in_client):
        resp = logged_in_client.post("/api/upload-financial-analysis", json={"fileName": "x.pdf"})
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "Missing required fields"

    def test_pagination(self, app, company_data, logged_in_client):
        with app.app_context():
            for i in range(3):
                _add_analysis(company_data["user_id"], file_name=f"f{i}.pdf")
        resp = logged_in_client.get("/api/financial-analysis?page=1&limit=2")
        body = resp.get_json()
        assert len(body["data"]) == 2
        assert body["pagination"] == {"total": 3, "page": 1, "limit": 2, "totalPages": 2}

    def test_delete_and_ownership(self, app, company_data, client):
        with app.app_context():
            analysis_id = _add_analysis(company_data["user_id"])
        _login(client, {"id": "user_intruder", "email": "x@y.test"})
        assert client.delete(f"/api/financial-analysis/{analysis_id}").status_code == 404
        _login(client)
        assert client.delete(f"/api/financial-analysis/{analysis_id}").status_code == 200
        with app.app_context():
            assert db.session.get(FinancialAnalysis, analysis_id) is None

    def test_multi_file_analysis_stored_as_group(self, app, company_data, logged_in_client):
        resp = logged_in_client.post("/api/multi-file-analysis", json={
            "fileName": "q1_q2_combined",
            "fileNames": ["q1.pdf", "q2.xlsx"],
            "analysisData": {
                "file_info": {"file_type": "combined", "file_size_mb": 2.5},
                "executive_summary": {"business_health_score": 72},
            },
            "branchId": str(company_data["branch_a"]),
        })
        assert resp.status_code == 200
        body = resp.get_json()["analysis"]
        assert body["isMultiFileAnalysis"] is True
        assert body["originalFiles"] == ["q1.pdf", "q2.xlsx"]
        assert body["multiFileAnalysisGroupId"]
        assert body["branchName"] == "Downtown"
        with app.app_context():
            stored = db.session.get(FinancialAnalysis, body["id"])
            assert stored.file_size_mb == 2.5
            assert stored.company_id == company_data["company_id"]
            assert stored.analysis_data["multiFileMetadata"] == {
                "originalFiles": ["q1.pdf", "q2.xlsx"],
                "analysisType": "combined_multi_file",
                "filesCount": 2,
            }
            assert stored.analysis_data["executive_summary"]["business_health_score"] == 72

    def test_multi_file_groups_are_distinct(self, company_data, logged_in_client):
        payload = {"fileName": "c", "fileNames": ["a.pdf"], "analysisData": {"x": 1}}
        first = logged_in_client.post("/api/multi-file-analysis", json=payload).get_json()
        second = logged_in_client.post("/api/multi-file-analysis", json=payload).get_json()
        assert (first["analysis"]["multiFileAnalysisGroupId"]
                != second["analysis"]["multiFileAnalysisGroupId"])
        assert first["analysis"]["fileType"] == "combined"

    @pytest.mark.parametrize("payload", [
        {"fileNames": ["a.pdf"], "analysisData": {"x": 1}},
        {"fileName": "c", "fileNames": [], "analysisData": {"x": 1}},
        {"fileName": "c", "fileNames": "a.pdf", "analysisData": {"x": 1}},
        {"fileName": "c", "fileNames": ["a.pdf"]},
    ])
    def test_multi_file_validation(self, logged_in_client, payload):
        resp = logged_in_client.post("/api/multi-file-analysis", json=payload)
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "Missing required combined analysis data"

    def test_user_files(self, app, company_data, logged_in_client):
        with app.app_context():
            _add_analysis(company_data["user_id"], file_name="a.pdf")
        body = logged_in_client.get("/api/user-files").get_json()
        assert [f["fileName"] for f in body["data"]] == ["a.pdf"]
        assert "analysisData" not in body["data"][0]

    def test_set_active_file_and_analysis_data(self, app, company_data, logged_in_client):
        with app.app_context():
            analysis_id = _add_analysis(
                company_data["user_id"], company_id=company_data["company_id"],
                data={"summary": "fine"},
            )
        resp = logged_in_client.post("/api/set-active-file", json={"fileId": analysis_id})
        assert resp.get_json()["data"] == {"summary": "fine"}

        resp = logged_in_client.get(f"/api/analysis-data?analysisId={analysis_id}")
        body = resp.get_json()
        assert body["analysisData"]["analysis"] == {"summary": "fine"}
        assert body["metadata"]["companyName"] == "Acme Ltd"
        assert body["metadata"]["branchName"] == "Unassigned"

    def test_company_listing(self, app, company_data, logged_in_client):
        with app.app_context():
            _add_analysis(company_data["user_id"], company_id=company_data["company_id"],
                          branch_id=company_data["branch_a"])
        resp = logged_in_client.get("/api/financial-analyses?latest=true")
        assert resp.get_json()["analysis"]["branchName"] == "Downtown"


# ============================================================================
# Reports (local parsing)
# ============================================================================

CSV_REPORT = (
    b"account_name,amount,category\n"
    b"Sales Revenue,\"$10,000\",Operating\n"
    b"Rent Expense,2500,Facilities\n"
    b"Placeholder,0,None\n"
)


def _upload_csv(client, content=CSV_REPORT, report_type="PROFIT_LOSS", name="pl.csv"):
    return client.post(
        "/api/upload",
        data={
            "file": (io.BytesIO(content), name),
            "reportType": report_type,
            "year": "2024",
            "month": "3",
        },
        content_type="multipart/form-data",
    )


class TestReports:
    def test_upload_parses_line_items(self, logged_in_client):
        resp = _upload_csv(logged_in_client)
        assert resp.status_code == 200
        body = resp.get_json()
        items = body["report"]["parsedData"]
        assert [(i["accountName"], i["amount"], i["dataType"]) for i in items] == [
            ("Sales Revenue", 10000.0, "REVENUE"),
            ("Rent Expense", 2500.0, "EXPENSE"),
        ]
        assert body["vectorStorage"] == {"stored": False, "document_id": None}
        assert "Found 2 financial records" in body["message"]

    def test_upload_validation(self, logged_in_client):
        assert _upload_csv(logged_in_client, report_type="BOGUS").status_code == 400
        assert _upload_csv(logged_in_client, name="pl.docx").status_code == 400

    def test_delete_removes_line_items(self, app, logged_in_client):
        report_id = _upload_csv(logged_in_client).get_json()["report"]["id"]
        resp = logged_in_client.delete("/api/upload", json={"reportId": report_id})
        assert resp.status_code == 200
        with app.app_context():
            assert db.session.get(FinancialReport, report_id) is None
            assert ParsedFinancialData.query.filter_by(report_id=report_id).count() == 0

    def test_get_single_report(self, logged_in_client):
        report_id = _upload_csv(logged_in_client).get_json()["report"]["id"]
        resp = logged_in_client.get(f"/api/upload?reportId={report_id}")
        assert resp.get_json()["report"]["reportType"] == "PROFIT_LOSS"
        assert logged_in_client.get("/api/upload?reportId=9999").status_code == 404


# ============================================================================
# Dashboard
# ============================================================================


class TestDashboard:
    def test_empty_dashboard(self, logged_in_client):
        body = logged_in_client.get("/api/dashboard").get_json()
        assert body["message"] == "No financial data available"
        assert body["data"]["insights"] == []

    def test_dashboard_summarises_latest_report(self, logged_in_client):
        _upload_csv(logged_in_client)
        body = logged_in_client.get("/api/dashboard").get_json()
        summary = body["data"]["summary"]
        assert summary["totalRevenue"] == 10000
        assert summary["totalExpenses"] == 2500
        assert summary["netProfit"] == 7500
        assert summary["netMargin"] == pytest.approx(75.0)
        assert body["data"]["topAccounts"]["revenue"][0]["accountName"] == "Sales Revenue"
        assert body["data"]["reportInfo"]["totalReports"] == 1

    def test_trends_over_reports(self, logged_in_client):
        _upload_csv(logged_in_client)
        _upload_csv(logged_in_client, name="pl2.csv")
        trends = logged_in_client.get("/api/dashboard").get_json()["data"]["trends"]
        assert trends["revenue"] == [10000, 10000]
        assert trends["profit"] == [7500, 7500]

    def test_trends_match_summary_for_negative_expenses(self, logged_in_client):
        signed = b"account_name,amount\nSales Revenue,10000\nRent Expense,-2500\n"
        _upload_csv(logged_in_client, content=signed)
        _upload_csv(logged_in_client, content=signed, name="pl2.csv")
        data = logged_in_client.get("/api/dashboard").get_json()["data"]
        assert data["summary"]["netProfit"] == 7500
        assert data["trends"]["expenses"] == [2500, 2500]
        assert data["trends"]["profit"] == [7500, 7500]

    def test_post_summarises_single_report(self, logged_in_client):
        report_id = _upload_csv(logged_in_client).get_json()["report"]["id"]
        body = logged_in_client.post("/api/dashboard", json={"reportId": report_id}).get_json()
        assert body["data"]["insights"][0]["title"] == "Financial Data Processed"


# ============================================================================
# Chatbot
# ============================================================================


class TestChatbot:
    def test_relays_backend_reply(self, backend, logged_in_client):
        backend.chat.side_effect = None
        backend.chat.return_value = {"response": "Revenue grew 10%", "sources_used": 2}
        resp = logged_in_client.post("/api/chatbot/chat", json={"message": "How is revenue?"})
        assert resp.get_json()["response"] == "Revenue grew 10%"
        backend.chat.assert_called_once_with("How is revenue?", IDENTITY["id"], [])

    def test_fallback_without_data(self, logged_in_client):
        body = logged_in_client.post("/api/chatbot/chat", json={"message": "hi"}).get_json()
        assert body["fallback_mode"] is True
        assert body["sources_used"] == 0

    def test_fallback_with_data(self, logged_in_client):
        _upload_csv(logged_in_client)
        body = logged_in_client.post("/api/chatbot/chat", json={"message": "hi"}).get_json()
        assert body["fallback_mode"] is True
        assert body["sources_used"] == 1
        assert "profit_loss" in body["response"]
        assert body["relevant_documents"] == ["pl.csv"]

    def test_message_required(self, logged_in_client):
        resp = logged_in_client.post("/api/chatbot/chat", json={"message": "   "})
        assert resp.status_code == 400

    def test_documents_deduplicated_by_name(self, app, company_data, logged_in_client):
        with app.app_context():
            _add_analysis(company_data["user_id"], file_name="pl.csv")
        _upload_csv(logged_in_client)
        body = logged_in_client.get("/api/chatbot/documents").get_json()
        assert body["total_documents"] == 1
        assert body["documents"][0]["source"] == "analysis"

    def test_delete_document(self, app, backend, logged_in_client):
        report_id = _upload_csv(logged_in_client).get_json()["report"]["id"]
        resp = logged_in_client.delete(
            f"/api/chatbot/documents?document_id={report_id}&source=report"
        )
        assert resp.status_code == 200
        backend.delete_document.assert_called_once_with(report_id, IDENTITY["id"])
        with app.app_context():
            assert db.session.get(FinancialReport, report_id) is None

    def test_starter_suggestions_without_documents(self, logged_in_client):
        body = logged_in_client.get("/api/chatbot/suggested-questions").get_json()
        assert body["user_id"] == IDENTITY["id"]
        assert body["suggested_questions"][0] == "How do I upload my financial documents?"
        assert len(body["suggested_questions"]) == 4

    def test_suggestions_follow_document_types(self, app, company_data, logged_in_client):
        _upload_csv(logged_in_client, report_type="BALANCE_SHEET", name="bs.csv")
        questions = logged_in_client.get(
            "/api/chatbot/suggested-questions"
        ).get_json()["suggested_questions"]
        assert "What is my current asset position?" in questions
        assert "What is my gross profit margin?" not in questions
        assert len(questions) == len(set(questions)) <= 8

    def test_suggestions_from_analysis_payload(self, app, company_data, logged_in_client):
        with app.app_context():
            _add_analysis(company_data["user_id"], data=_payload(revenue=10))
        questions = logged_in_client.get(
            "/api/chatbot/suggested-questions"
        ).get_json()["suggested_questions"]
        assert "What is my gross profit margin?" in questions
        assert len(questions) == 8

    def test_document_summary(self, app, company_data, logged_in_client):
        with app.app_context():
            _add_analysis(company_data["user_id"], file_name="Q1-Report.pdf")
        _upload_csv(logged_in_client)
        body = logged_in_client.get("/api/chatbot/document-summary").get_json()
        assert [d["filename"] for d in body["documents"]] == ["Q1-Report.pdf", "pl.csv"]
        assert body["documents"][1]["chunk_types"] == ["profit-loss"]
        assert body["total_chunks"] == 5
        assert body["summary"].startswith("Found 2 financial document(s)")

    def test_document_summary_filename_filter(self, app, company_data, logged_in_client):
        with app.app_context():
            _add_analysis(company_data["user_id"], file_name="Q1-Report.pdf")
        _upload_csv(logged_in_client)
        body = logged_in_client.get("/api/chatbot/document-summary?filename=q1-rep").get_json()
        assert [d["filename"] for d in body["documents"]] == ["Q1-Report.pdf"]
        assert body["summary"] == 'Found 1 document(s) matching "q1-rep" with 4 data sections.'

    def test_document_summary_empty(self, logged_in_client):
        body = logged_in_client.get("/api/chatbot/document-summary").get_json()
        assert body["documents"] == []
        assert body["summary"].startswith("No financial documents uploaded yet")

    def test_delete_unknown_document(self, logged_in_client):
        resp = logged_in_client.delete("/api/chatbot/documents?document_id=404")
        assert resp.status_code == 404


# ============================================================================
# Stripe webhook
# ============================================================================


class TestStripeWebhook:
    def test_upsert_is_idempotent(self, app, company_data, client):
        first = _subscription_event("customer.subscription.updated", status="active")
        second = _subscription_event(
            "customer.subscription.updated", status="past_due", cancel_at_period_end=True
        )
        assert _post_webhook(client, first).get_json() == {"received": True}
        assert _post_webhook(client, second).status_code == 200
        with app.app_context():
            rows = Subscription.query.filter_by(stripe_subscription_id="sub_1").all()
            assert len(rows) == 1
            assert rows[0].status == "past_due"
            assert rows[0].cancel_at_period_end is True
            assert rows[0].stripe_price_id == "price_pro"
            assert rows[0].user_id == company_data["user_id"]

    def test_deleted_marks_canceled_and_keeps_row(self, app, company_data, client):
        _post_webhook(client, _subscription_event("customer.subscription.created"))
        resp = _post_webhook(client, _subscription_event("customer.subscription.deleted"))
        assert resp.status_code == 200
        with app.app_context():
            sub = Subscription.query.filter_by(stripe_subscription_id="sub_1").one()
            assert sub.status == "canceled"
            assert sub.current_period_end is not None

    def test_tampered_body_rejected_without_writes(self, app, company_data, client):
        event = _subscription_event("customer.subscription.created")
        tampered = json.dumps(_subscription_event("customer.subscription.created", status="trialing"))
        resp = _post_webhook(client, event, body=tampered)
        assert resp.status_code == 400
        with app.app_context():
            assert Subscription.query.count() == 0

    def test_non_utf8_body_rejected(self, app, company_data, client):
        resp = client.post(
            "/api/stripe/webhook",
            data=b"\xff\xfe{}",
            content_type="application/json",
            headers={"Stripe-Signature": "t=1,v1=deadbeef"},
        )
        assert resp.status_code == 400
        with app.app_context():
            assert Subscription.query.count() == 0

    def test_missing_signature(self, company_data, client):
        resp = _post_webhook(client, _subscription_event("customer.subscription.created"), signature="")
        assert resp.status_code == 400

    def test_wrong_secret(self, app, company_data, client):
        event = _subscription_event("customer.subscription.created")
        resp = _post_webhook(client, event, signature=_sign(json.dumps(event), secret="whsec_other"))
        assert resp.status_code == 400
        with app.app_context():
            assert Subscription.query.count() == 0

    def test_unmatched_customer_is_noop(self, app, company_data, client):
        event = _subscription_event("customer.subscription.created", customer="cus_unknown")
        assert _post_webhook(client, event).status_code == 200
        with app.app_context():
            assert Subscription.query.count() == 0

    def test_unhandled_event_type_acknowledged(self, client):
        event = {"id": "evt_x", "type": "customer.created", "data": {"object": {}}}
        assert _post_webhook(client, event).get_json() == {"received": True}

    def test_handler_failure_returns_500(self, company_data, client):
        with patch("services.billing.reconcile_subscription", side_effect=RuntimeError("db down")):
            resp = _post_webhook(client, _subscription_event("customer.subscription.updated"))
        assert resp.status_code == 500

    def test_checkout_completed_retrieves_subscription(self, app, company_data, client):
        subscription = _subscription_event("customer.subscription.created", status="trialing")
        event = {
            "id": "evt_checkout",
            "type": "checkout.session.completed",
            "data": {"object": {
                "id": "cs_1", "customer": "cus_123", "subscription": "sub_1",
                "metadata": {"user_id": str(company_data["user_id"])},
            }},
        }
        with patch("stripe.Subscription.retrieve",
                   return_value=subscription["data"]["object"]) as retrieve:
            assert _post_webhook(client, event).status_code == 200
        retrieve.assert_called_once_with("sub_1")
        with app.app_context():
            assert Subscription.query.filter_by(stripe_subscription_id="sub_1").one().status == "trialing"

    def test_invoice_event_reconciles(self, app, company_data, client):
        subscription = _subscription_event("customer.subscription.updated", status="past_due")
        event = {
            "id": "evt_inv",
            "type": "invoice.payment_failed",
            "data": {"object": {"id": "in_1", "customer": "cus_123", "subscription": "sub_1"}},
        }
        with patch("stripe.Subscription.retrieve", return_value=subscription["data"]["object"]):
            assert _post_webhook(client, event).status_code == 200
        with app.app_context():
            assert Subscription.query.one().status == "past_due"


# ============================================================================
# Billing surface
# ============================================================================


class TestBillingRoutes:
    def test_status_without_subscription(self, logged_in_client):
        body = logged_in_client.get("/api/subscription/status").get_json()
        assert body["hasActiveSubscription"] is False
        assert body["subscription"] is None

    def test_status_with_subscription(self, app, company_data, logged_in_client):
        with app.app_context():
            _activate_subscription(company_data["user_id"], status="trialing")
        body = logged_in_client.get("/api/subscription/status").get_json()
        assert body["hasActiveSubscription"] is True
        assert body["subscription"]["status"] == "trialing"
        assert body["daysLeft"] in (29, 30)

    def test_checkout_creates_customer(self, app, logged_in_client):
        with patch("stripe.Customer.create", return_value=Mock(id="cus_new")) as create_customer, \
                patch("stripe.checkout.Session.create",
                      return_value=Mock(id="cs_1", url="https://checkout.test/cs_1")) as create_session:
            resp = logged_in_client.post("/api/stripe/create-checkout-session")
        assert resp.status_code == 200
        assert resp.get_json() == {"sessionId": "cs_1", "url": "https://checkout.test/cs_1"}
        create_customer.assert_called_once()
        kwargs = create_session.call_args.kwargs
        assert kwargs["customer"] == "cus_new"
        assert kwargs["mode"] == "subscription"
        assert kwargs["line_items"][0]["price_data"]["unit_amount"] == 2900
        assert kwargs["success_url"] == "http://testserver/dashboard?success=true"
        with app.app_context():
            assert User.query.filter_by(external_id=IDENTITY["id"]).one().stripe_customer_id == "cus_new"

    def test_checkout_refused_with_active_subscription(self, app, company_data, logged_in_client):
        with app.app_context():
            _activate_subscription(company_data["user_id"])
        resp = logged_in_client.post("/api/stripe/create-checkout-session")
        assert resp.status_code == 400

    def test_portal_requires_customer(self, logged_in_client):
        assert logged_in_client.post("/api/stripe/create-portal-session").status_code == 404

    def test_portal_session(self, company_data, logged_in_client):
        with patch("stripe.billing_portal.Session.create",
                   return_value=Mock(url="https://billing.test/p")):
            resp = logged_in_client.post("/api/stripe/create-portal-session")
        assert resp.get_json() == {"url": "https://billing.test/p"}

    def test_cancel_at_period_end(self, app, company_data, logged_in_client):
        with app.app_context():
            _activate_subscription(company_data["user_id"])
        with patch("stripe.Subscription.modify") as modify:
            resp = logged_in_client.post("/api/subscription/cancel")
        assert resp.status_code == 200
        modify.assert_called_once_with("sub_active", cancel_at_period_end=True)
        with app.app_context():
            assert Subscription.query.one().cancel_at_period_end is True

    def test_cancel_without_subscription(self, logged_in_client):
        assert logged_in_client.post("/api/subscription/cancel").status_code == 404


# ============================================================================
# Paywall
# ============================================================================


class TestPaywall:
    def test_blocks_without_subscription(self, app, logged_in_client):
        app.config["ENFORCE_PAYWALL"] = True
        resp = logged_in_client.get("/api/dashboard")
        assert resp.status_code == 402

    def test_allows_active_subscription(self, app, company_data, logged_in_client):
        app.config["ENFORCE_PAYWALL"] = True
        with app.app_context():
            _activate_subscription(company_data["user_id"])
        assert logged_in_client.get("/api/dashboard").status_code == 200

    def test_billing_and_company_stay_open(self, app, logged_in_client):
        app.config["ENFORCE_PAYWALL"] = True
        assert logged_in_client.get("/api/subscription/status").status_code == 200
        assert logged_in_client.get("/api/company").status_code == 200

    def test_unauthenticated_still_401(self, app, client):
        app.config["ENFORCE_PAYWALL"] = True
        assert client.get("/api/dashboard").status_code == 401


# ============================================================================
# Health & error handlers
# ============================================================================


class TestHealthAndErrors:
    def test_health_reports_backend(self, client):
        body = client.get("/health").get_json()
        assert body["status"] == "ok"
        assert body["backend"]["isHealthy"] is False

    def test_404_is_json(self, client):
        resp = client.get("/nonexistent-page")
        assert resp.status_code == 404
        assert "error" in resp.get_json()

    def test_unexpected_error_is_json_500(self, company_data, logged_in_client):
        with patch("routes.dashboard.list_reports", side_effect=RuntimeError("kaboom")):
            resp = logged_in_client.get("/api/dashboard")
        assert resp.status_code == 500
        assert resp.get_json() == {"error": "Internal server error", "details": "kaboom"}
