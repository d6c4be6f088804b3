"""
API tests for /api/trials: public intake and access endpoints, admin lifecycle
endpoints, the error envelope and the admin guard.
"""
import pytest
import sys
from pathlib import Path
from datetime import datetime, timezone, timedelta
from unittest.mock import AsyncMock, patch

backend_root = Path(__file__).resolve().parent.parent
if str(backend_root) not in sys.path:
    sys.path.insert(0, str(backend_root))

from conftest import make_trial

UTC = timezone.utc
TRIAL_ID = "TRIAL-20240101000000-AAAAAA"

VALID_TRIAL = {
    "company_name": "Acme Water",
    "contact_name": "Li Lei",
    "phone": "13800138000",
    "email": "ops@example.com",
}


def _current_trial(**kwargs):
    start = datetime.now(UTC) - timedelta(days=2)
    return make_trial(start=start, **kwargs)


class TestRequestTrial:

    def test_creates_trial(self, client, services, trial_store, notifier):
        response = client.post("/api/trials", json=VALID_TRIAL)

        assert response.status_code == 201
        body = response.json()
        assert body["success"] is True
        data = body["data"]
        assert set(data) == {"trial_id", "company_name", "contact_name", "trial_end_date", "access_url"}
        assert data["access_url"].startswith("https://trial.example.com/login?user=trial_Acme_")
        assert len(trial_store.trials) == 1
        notifier.send_trial_account_email.assert_awaited_once()

    def test_duplicate_identity_returns_400(self, client, services, trial_store):
        client.post("/api/trials", json=VALID_TRIAL)

        response = client.post("/api/trials", json={**VALID_TRIAL, "email": "other@example.com"})

        assert response.status_code == 400
        assert response.json()["success"] is False
        assert len(trial_store.trials) == 1

    def test_validation_errors_return_field_details(self, client, services):
        response = client.post("/api/trials", json={**VALID_TRIAL, "phone": "12345", "email": "nope"})

        assert response.status_code == 400
        body = response.json()
        assert body["success"] is False
        fields = {d["field"] for d in body["details"]}
        assert {"phone", "email"} <= fields

    def test_rate_limited_per_client(self, client, services):
        from utils.rate_limiter import rate_limiter
        denied = AsyncMock(return_value=(False, "Too many requests. Try again in 60 seconds"))
        with patch.object(rate_limiter, "check_rate_limit", denied):
            response = client.post("/api/trials", json=VALID_TRIAL)

        assert response.status_code == 429
        assert response.json() == {"success": False, "error": "Too many requests. Try again in 60 seconds"}


class TestPublicAccess:

    def test_access_valid_never_returns_password(self, client, services, trial_store):
        trial_store.add(_current_trial())

        response = client.get("/api/trials/access/trial_Acme_1234")

        assert response.status_code == 200
        body = response.json()
        assert body["valid"] is True
        assert "password" not in response.text

    def test_access_unknown_username(self, client, services):
        body = client.get("/api/trials/access/nobody").json()
        assert body == {"success": True, "valid": False, "message": "Trial account does not exist"}

    def test_login_recorded(self, client, services, trial_store):
        trial_store.add(_current_trial(login_count=1))

        response = client.post(f"/api/trials/{TRIAL_ID}/login")

        assert response.status_code == 200
        assert response.json()["data"]["login_count"] == 2

    def test_login_on_expired_trial_forbidden(self, client, services, trial_store):
        trial_store.add(_current_trial(status="expired"))

        response = client.post(f"/api/trials/{TRIAL_ID}/login")

        assert response.status_code == 403
        assert response.json() == {"success": False, "error": "Trial period has expired"}
        assert trial_store.trials[TRIAL_ID]["login_count"] == 0


class TestAdminGuard:

    def test_list_requires_token(self, client, services):
        response = client.get("/api/trials")
        assert response.status_code == 401
        assert response.json()["success"] is False

    def test_admin_token_accepted(self, client, services):
        from auth import create_access_token
        token = create_access_token({"sub": "admin@example.com", "email": "admin@example.com", "role": "ROLE_ADMIN"})

        response = client.get("/api/trials", headers={"Authorization": f"Bearer {token}"})

        assert response.status_code == 200

    def test_non_admin_token_forbidden(self, client, services):
        from auth import create_access_token
        token = create_access_token({"sub": "someone@example.com", "role": "ROLE_VIEWER"})

        response = client.get("/api/trials", headers={"Authorization": f"Bearer {token}"})

        assert response.status_code == 403


class TestAdminEndpoints:

    def test_list_with_pagination(self, admin_client, trial_store):
        for n in range(3):
            trial_store.add(_current_trial(
                trial_id=f"TRIAL-{n}", email=f"{n}@example.com", phone=f"1380013800{n}", username=f"trial_A_{n}",
            ))

        body = admin_client.get("/api/trials", params={"page": 1, "limit": 2}).json()

        assert body["data"]["pagination"] == {"current": 1, "total": 2, "count": 2, "total_records": 3}
        assert all("password" not in t["trial_account"] for t in body["data"]["trials"])

    def test_limit_above_100_rejected(self, admin_client):
        response = admin_client.get("/api/trials", params={"limit": 500})
        assert response.status_code == 400

    def test_get_missing_trial_404(self, admin_client):
        response = admin_client.get("/api/trials/TRIAL-MISSING")
        assert response.status_code == 404
        assert response.json() == {"success": False, "error": "Trial not found"}

    def test_get_trial_hides_password(self, admin_client, trial_store):
        trial_store.add(_current_trial())

        data = admin_client.get(f"/api/trials/{TRIAL_ID}").json()["data"]

        assert data["trial_account"]["username"] == "trial_Acme_1234"
        assert "password" not in data["trial_account"]
        assert data["is_active"] is True

    def test_extend(self, admin_client, trial_store):
        trial = trial_store.add(_current_trial())

        response = admin_client.post(f"/api/trials/{TRIAL_ID}/extend", json={"days": 10})

        assert response.status_code == 200
        assert trial_store.trials[TRIAL_ID]["trial_end_date"] == trial["trial_end_date"] + timedelta(days=10)

    def test_extend_rejects_zero_days(self, admin_client, trial_store):
        trial_store.add(_current_trial())
        response = admin_client.post(f"/api/trials/{TRIAL_ID}/extend", json={"days": 0})
        assert response.status_code == 400

    def test_convert_then_cancel_conflicts(self, admin_client, trial_store):
        trial_store.add(_current_trial())

        converted = admin_client.post(f"/api/trials/{TRIAL_ID}/convert", json={})
        cancelled = admin_client.post(f"/api/trials/{TRIAL_ID}/cancel")

        assert converted.status_code == 200
        assert converted.json()["data"]["status"] == "converted"
        assert cancelled.status_code == 409
        assert trial_store.trials[TRIAL_ID]["status"] == "converted"

    def test_convert_with_unknown_quote_404(self, admin_client, trial_store):
        trial_store.add(_current_trial())

        response = admin_client.post(f"/api/trials/{TRIAL_ID}/convert", json={"quote_id": "QUOTE-404"})

        assert response.status_code == 404
        assert response.json()["error"] == "Quote not found"

    def test_update_status_and_feedback(self, admin_client, trial_store):
        trial_store.add(_current_trial())

        response = admin_client.put(f"/api/trials/{TRIAL_ID}", json={
            "status": "cancelled",
            "feedback": {"rating": 5, "comments": "Great"},
        })

        assert response.status_code == 200
        stored = trial_store.trials[TRIAL_ID]
        assert stored["status"] == "cancelled"
        assert stored["feedback"]["rating"] == 5

    def test_add_follow_up(self, admin_client, trial_store):
        trial_store.add(_current_trial())

        response = admin_client.post(f"/api/trials/{TRIAL_ID}/followups", json={
            "type": "meeting",
            "content": "Demo for the environmental bureau",
            "contacted_by": "sales@example.com",
        })

        assert response.status_code == 200
        assert response.json()["data"]["type"] == "meeting"
        assert len(trial_store.trials[TRIAL_ID]["follow_ups"]) == 1

    def test_usage(self, admin_client, trial_store):
        trial_store.add(_current_trial(login_count=4))

        data = admin_client.get(f"/api/trials/{TRIAL_ID}/usage").json()["data"]

        assert data["total_days"] == 30
        assert data["login_count"] == 4

    def test_stats_overview_not_shadowed_by_trial_id_route(self, admin_client, trial_store):
        trial_store.add(_current_trial())

        response = admin_client.get("/api/trials/stats/overview")

        assert response.status_code == 200
        assert response.json()["data"]["overview"]["total_trials"] == 1

    def test_expiring_and_maintenance(self, admin_client, trial_store, notifier):
        now = datetime.now(UTC)
        trial_store.add(make_trial(trial_id="TRIAL-OLD", start=now - timedelta(days=31), end=now - timedelta(days=1),
                                   email="old@example.com", phone="13900139000", username="trial_O_1"))
        trial_store.add(make_trial(trial_id="TRIAL-SOON", start=now - timedelta(days=27), end=now + timedelta(days=3),
                                   email="soon@example.com", phone="13900139001", username="trial_S_1"))

        expiring = admin_client.get("/api/trials/expiring", params={"days": 7}).json()["data"]
        sweep = admin_client.post("/api/trials/maintenance/sweep").json()
        reminders = admin_client.post("/api/trials/maintenance/reminders").json()

        assert [t["trial_id"] for t in expiring["trials"]] == ["TRIAL-SOON"]
        assert sweep["count"] == 1
        assert trial_store.trials["TRIAL-OLD"]["status"] == "expired"
        assert reminders["data"]["notified"] == 1
        notifier.send_trial_expiry_reminder.assert_awaited_once()
