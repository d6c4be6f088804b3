"""
Pytest configuration and shared test helpers for backend tests.
"""
import pytest
from copy import deepcopy
from datetime import datetime, timezone, timedelta
from unittest.mock import AsyncMock, MagicMock

from pymongo.errors import DuplicateKeyError

# Shared TestClient fixture so tests can use in-process requests without a running server.
from fastapi.testclient import TestClient
from server import app
from dependencies import ServiceContainer
from middleware import admin_route_guard
from services.expiry_sweeper import ExpirySweeper
from services.trial_accounts import TrialAccountGenerator
from services.trial_lifecycle import TrialLifecycleService, extend_end_date
from utils.rate_limiter import rate_limiter

UTC = timezone.utc
ADMIN_USER = {"sub": "admin@example.com", "email": "admin@example.com", "role": "ROLE_ADMIN"}


class Clock:
    """Settable clock passed to services in place of datetime.now."""
    def __init__(self, now):
        self.now = now
    def __call__(self):
        return self.now
    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


def _compare(value, condition):
    if isinstance(condition, dict):
        ops = {
            "$gte": lambda v, c: v is not None and v >= c,
            "$gt": lambda v, c: v is not None and v > c,
            "$lte": lambda v, c: v is not None and v <= c,
            "$lt": lambda v, c: v is not None and v < c,
        }
        return all(ops[op](value, c) for op, c in condition.items())
    return value == condition


def _matches(doc, query):
    return all(_compare(doc.get(key), condition) for key, condition in (query or {}).items())


class FakeTrialStore:
    """In-memory TrialStore with the same unique keys as the Mongo indexes."""

    UNIQUE_KEYS = ("email", "phone")

    def __init__(self, trials=None):
        self.trials = {}
        for trial in trials or []:
            self.trials[trial["trial_id"]] = deepcopy(trial)

    def add(self, trial):
        self.trials[trial["trial_id"]] = deepcopy(trial)
        return trial

    async def get(self, trial_id):
        trial = self.trials.get(trial_id)
        return deepcopy(trial) if trial else None

    async def get_by_username(self, username):
        for trial in self.trials.values():
            if (trial.get("trial_account") or {}).get("username") == username:
                return deepcopy(trial)
        return None

    async def username_exists(self, username):
        return await self.get_by_username(username) is not None

    async def find_by_identity(self, email, phone):
        for trial in self.trials.values():
            if trial["email"] == email.lower() or trial["phone"] == phone:
                return deepcopy(trial)
        return None

    async def find_expiring(self, now, until):
        found = [
            t for t in self.trials.values()
            if t["status"] == "active" and now <= t["trial_end_date"] <= until
        ]
        return deepcopy(sorted(found, key=lambda t: t["trial_end_date"]))

    async def list(self, filter_query, page=1, limit=20):
        query = {k: v for k, v in filter_query.items() if k != "$or"}
        items = sorted(
            (t for t in self.trials.values() if _matches(t, query)),
            key=lambda t: t["created_at"],
            reverse=True,
        )
        start = (page - 1) * limit
        return deepcopy(items[start:start + limit]), len(items)

    async def count(self, filter_query=None):
        return sum(1 for t in self.trials.values() if _matches(t, filter_query))

    async def aggregate_active_usage(self):
        active = [t for t in self.trials.values() if t["status"] == "active"]
        if not active:
            return None
        logins = [t.get("login_count", 0) for t in active]
        return {
            "avg_login_count": sum(logins) / len(logins),
            "total_logins": sum(logins),
            "total_documents": sum(t.get("usage_stats", {}).get("documents_processed", 0) for t in active),
            "total_approvals": sum(t.get("usage_stats", {}).get("approval_requests", 0) for t in active),
        }

    async def insert(self, trial_doc):
        for key in self.UNIQUE_KEYS:
            if any(t[key] == trial_doc[key] for t in self.trials.values()):
                raise DuplicateKeyError(
                    f"E11000 duplicate key error collection: trials index: {key}_1",
                    11000,
                    {"keyPattern": {key: 1}, "keyValue": {key: trial_doc[key]}},
                )
        self.trials[trial_doc["trial_id"]] = deepcopy(trial_doc)
        return trial_doc

    async def update_fields(self, trial_id, fields):
        trial = self.trials.get(trial_id)
        if not trial:
            return None
        trial.update(deepcopy(fields))
        return deepcopy(trial)

    async def add_days_to_end(self, trial_id, days, now):
        trial = self.trials.get(trial_id)
        if not trial:
            return None
        trial["trial_end_date"] = extend_end_date(trial["trial_end_date"], days)
        trial["updated_at"] = now
        return deepcopy(trial)

    async def increment_login(self, trial_id, now):
        trial = self.trials.get(trial_id)
        if not trial or trial["status"] != "active" or trial["trial_end_date"] < now:
            return None
        trial["login_count"] = trial.get("login_count", 0) + 1
        trial["last_login_at"] = now
        trial["updated_at"] = now
        return deepcopy(trial)

    async def push_follow_up(self, trial_id, entry, now):
        trial = self.trials.get(trial_id)
        if not trial:
            return False
        trial.setdefault("follow_ups", []).append(deepcopy(entry))
        trial["updated_at"] = now
        return True

    async def expire_overdue(self, now):
        count = 0
        for trial in self.trials.values():
            if trial["status"] == "active" and trial["trial_end_date"] < now:
                trial["status"] = "expired"
                trial["updated_at"] = now
                count += 1
        return count


def make_trial(
    trial_id="TRIAL-20240101000000-AAAAAA",
    status="active",
    start=None,
    end=None,
    email="ops@example.com",
    phone="13800138000",
    username="trial_Acme_1234",
    login_count=0,
    **extra,
):
    start = start or datetime(2024, 1, 1, tzinfo=UTC)
    end = end or start + timedelta(days=30)
    trial = {
        "trial_id": trial_id,
        "company_name": "Acme Water",
        "contact_name": "Li Lei",
        "phone": phone,
        "email": email,
        "trial_account": {
            "username": username,
            "password": "Abc23456",
            "access_url": f"https://trial.example.com/login?user={username}",
        },
        "trial_start_date": start,
        "trial_end_date": end,
        "status": status,
        "login_count": login_count,
        "last_login_at": None,
        "usage_stats": {"documents_processed": 0, "approval_requests": 0, "report_generated": 0},
        "feedback": None,
        "source": "website",
        "converted_to_quote": None,
        "converted_at": None,
        "follow_ups": [],
        "created_at": start,
        "updated_at": start,
    }
    trial.update(extra)
    return trial


def make_notifier():
    notifier = MagicMock()
    notifier.send_trial_account_email = AsyncMock(return_value=None)
    notifier.send_trial_expiry_reminder = AsyncMock(return_value=None)
    notifier.send_quote_notification = AsyncMock(return_value=None)
    return notifier


@pytest.fixture
def clock():
    return Clock(datetime(2024, 1, 1, 0, 0, 0, tzinfo=UTC))


@pytest.fixture
def trial_store():
    return FakeTrialStore()


@pytest.fixture
def notifier():
    return make_notifier()


@pytest.fixture
def client():
    """Return a TestClient for the main FastAPI app (server:app). Use for unit-style API tests."""
    rate_limiter.reset()
    return TestClient(app)


@pytest.fixture
def services(trial_store, notifier):
    """Service container over the in-memory store, installed on app.state for API tests."""
    quotes = MagicMock()
    quotes.get_quote = AsyncMock(return_value=None)
    trials = TrialLifecycleService(
        store=trial_store,
        accounts=TrialAccountGenerator(trial_store, base_url="https://trial.example.com"),
        notifier=notifier,
        quotes=quotes,
    )
    container = ServiceContainer(
        trials=trials,
        sweeper=ExpirySweeper(trial_store, notifier=notifier),
        quotes=quotes,
        notifier=notifier,
    )
    app.state.services = container
    yield container
    app.state.services = None


@pytest.fixture
def admin_client(client, services):
    app.dependency_overrides[admin_route_guard] = lambda: ADMIN_USER
    yield client
    app.dependency_overrides.pop(admin_route_guard, None)
