"""
Trial Lifecycle Service

Core business logic for trial records:
- Trial creation (duplicate identity check, credential generation)
- Status transitions (convert, cancel, admin status update)
- Trial extension
- Login recording and access validation
- Follow-up tracking
- Usage statistics

Date math and transition rules are plain functions taking `now`, so they can
be reasoned about without a database; TrialLifecycleService wires them to the
store, the account generator and the notifier it is constructed with.
"""
import logging
import math
import os
import uuid
from datetime import datetime, timezone, timedelta
from typing import Optional, List, Dict, Any, Callable, Tuple

from pymongo.errors import DuplicateKeyError

from models import TrialStatus, FollowUpType, TrialCreateRequest
from services.errors import (
    TrialValidationError,
    DuplicateIdentityError,
    RecordNotFoundError,
    TrialAccessDeniedError,
    InvalidStatusTransitionError,
)
from services.trial_store import build_list_filter

logger = logging.getLogger(__name__)

TRIAL_DURATION_DAYS = int(os.getenv("TRIAL_DURATION_DAYS", "30"))
TRIAL_REMINDER_WINDOW_DAYS = int(os.getenv("TRIAL_REMINDER_WINDOW_DAYS", "7"))
# true: enforce ALLOWED_TRANSITIONS on admin status updates; false: legacy any-to-any
STRICT_STATUS_TRANSITIONS = os.getenv("TRIAL_STRICT_STATUS_TRANSITIONS", "true").strip().lower() == "true"

ONE_DAY = timedelta(days=1)

# Admin-reachable transitions. active -> expired is left to the sweeper (expire_overdue),
# which never goes through check_transition.
ALLOWED_TRANSITIONS = {
    TrialStatus.PENDING: {TrialStatus.ACTIVE, TrialStatus.CANCELLED},
    TrialStatus.ACTIVE: {TrialStatus.CONVERTED, TrialStatus.CANCELLED},
    TrialStatus.EXPIRED: set(),
    TrialStatus.CONVERTED: set(),
    TrialStatus.CANCELLED: set(),
}

ACCESS_MESSAGES = {
    "missing": "Trial account does not exist",
    "disabled": "Trial account has been disabled",
    "expired": "Trial period has expired",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def generate_trial_id(now: Optional[datetime] = None) -> str:
    """Generate unique trial ID in format TRIAL-<timestamp>-XXXXXX."""
    timestamp = (now or _utcnow()).strftime("%Y%m%d%H%M%S")
    unique = uuid.uuid4().hex[:6].upper()
    return f"TRIAL-{timestamp}-{unique}"


# ============================================================================
# RULES
# ============================================================================

def days_until(end: datetime, now: datetime) -> int:
    """Whole days from now to end, rounded up (negative once end has passed)."""
    return math.ceil((as_utc(end) - as_utc(now)) / ONE_DAY)


def remaining_days(trial: Dict[str, Any], now: datetime) -> int:
    if trial.get("status") != TrialStatus.ACTIVE.value:
        return 0
    return max(0, days_until(trial["trial_end_date"], now))


def is_active(trial: Dict[str, Any], now: datetime) -> bool:
    return (
        trial.get("status") == TrialStatus.ACTIVE.value
        and as_utc(trial["trial_end_date"]) > as_utc(now)
    )


def can_login(trial: Dict[str, Any], now: datetime) -> bool:
    return (
        trial.get("status") == TrialStatus.ACTIVE.value
        and as_utc(trial["trial_end_date"]) >= as_utc(now)
    )


def extend_end_date(end: datetime, days: int) -> datetime:
    """Extension compounds from the current end date, not from now.

    TrialStore.add_days_to_end applies the same rule inside MongoDB.
    """
    return end + timedelta(days=days)


def check_transition(current: str, target: str, strict: bool = True) -> None:
    """Raise InvalidStatusTransitionError if current → target is not allowed."""
    try:
        target_status = TrialStatus(target)
    except ValueError:
        raise TrialValidationError(f"Unknown trial status: {target}")

    if not strict or current == target_status.value:
        return

    try:
        current_status = TrialStatus(current)
    except ValueError:
        # Legacy documents with an unknown status can only be closed out
        current_status = None

    allowed = ALLOWED_TRANSITIONS.get(current_status, {TrialStatus.CANCELLED})
    if target_status not in allowed:
        raise InvalidStatusTransitionError(current, target_status.value)


def compute_usage_stats(trial: Dict[str, Any], now: datetime) -> Dict[str, Any]:
    start = as_utc(trial["trial_start_date"])
    end = as_utc(trial["trial_end_date"])
    total_days = math.ceil((end - start) / ONE_DAY)
    used_days = math.ceil((as_utc(now) - start) / ONE_DAY)
    login_count = trial.get("login_count", 0)

    return {
        "total_days": total_days,
        "used_days": used_days,
        "remaining_days": max(0, total_days - used_days),
        "usage_rate": round(used_days / total_days * 100, 2) if total_days > 0 else 0,
        "login_count": login_count,
        "last_login_at": trial.get("last_login_at"),
        "avg_logins_per_day": round(login_count / used_days, 2) if used_days > 0 else 0,
    }


def with_derived_fields(trial: Dict[str, Any], now: datetime) -> Dict[str, Any]:
    """Attach the read-only fields clients display alongside a record."""
    return {
        **trial,
        "is_active": is_active(trial, now),
        "remaining_days": remaining_days(trial, now),
    }


def build_trial_document(
    request: TrialCreateRequest,
    trial_account: Dict[str, str],
    now: datetime,
    duration_days: int = TRIAL_DURATION_DAYS,
    client_info: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    client_info = client_info or {}
    return {
        "trial_id": generate_trial_id(now),
        "company_name": request.company_name,
        "contact_name": request.contact_name,
        "phone": request.phone,
        "email": request.email.lower(),

        "trial_account": trial_account,

        "trial_start_date": now,
        "trial_end_date": now + timedelta(days=duration_days),
        "status": TrialStatus.ACTIVE.value,

        "login_count": 0,
        "last_login_at": None,
        "usage_stats": {
            "documents_processed": 0,
            "approval_requests": 0,
            "report_generated": 0,
        },
        "feedback": None,

        # Marketing / tracking
        "source": request.source or "website",
        "referrer": client_info.get("referrer"),
        "ip_address": client_info.get("ip_address"),
        "user_agent": client_info.get("user_agent"),

        # Conversion
        "converted_to_quote": None,
        "converted_at": None,

        "follow_ups": [],

        "created_at": now,
        "updated_at": now,
    }


def _is_identity_conflict(error: DuplicateKeyError) -> bool:
    key_pattern = (error.details or {}).get("keyPattern") or {}
    return "email" in key_pattern or "phone" in key_pattern


# ============================================================================
# SERVICE
# ============================================================================

class TrialLifecycleService:
    """Creates trial records and applies every status/field mutation to them."""

    def __init__(
        self,
        store,
        accounts,
        notifier=None,
        quotes=None,
        clock: Optional[Callable[[], datetime]] = None,
        trial_duration_days: int = TRIAL_DURATION_DAYS,
        reminder_window_days: int = TRIAL_REMINDER_WINDOW_DAYS,
        strict_transitions: bool = STRICT_STATUS_TRANSITIONS,
    ):
        self.store = store
        self.accounts = accounts
        self.notifier = notifier
        self.quotes = quotes
        self._now = clock or _utcnow
        self.trial_duration_days = trial_duration_days
        self.reminder_window_days = reminder_window_days
        self.strict_transitions = strict_transitions

    async def _require(self, trial_id: str) -> Dict[str, Any]:
        trial = await self.store.get(trial_id)
        if not trial:
            raise RecordNotFoundError("Trial", trial_id)
        return trial

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def generate_trial_account(self, company_name: str) -> Dict[str, str]:
        return await self.accounts.generate_trial_account(company_name)

    async def create_trial(
        self,
        request: TrialCreateRequest,
        client_info: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Create an active trial with generated credentials and email them.
        Raises DuplicateIdentityError if the email or phone already has a trial.
        """
        existing = await self.store.find_by_identity(request.email, request.phone)
        if existing:
            logger.info(f"Duplicate trial request rejected: existing {existing.get('trial_id')} for email={request.email}")
            raise DuplicateIdentityError()

        trial_account = await self.generate_trial_account(request.company_name)
        now = self._now()
        trial_doc = build_trial_document(
            request,
            trial_account,
            now,
            duration_days=self.trial_duration_days,
            client_info=client_info,
        )

        try:
            trial = await self.store.insert(trial_doc)
        except DuplicateKeyError as e:
            if _is_identity_conflict(e):
                logger.info(f"Duplicate trial identity caught by unique index for email={request.email}")
                raise DuplicateIdentityError() from e
            raise

        logger.info(f"Trial created: {trial['trial_id']} for {trial['company_name']} (username={trial_account['username']})")

        if self.notifier:
            try:
                await self.notifier.send_trial_account_email(trial)
            except Exception as e:
                logger.error(f"Failed to send trial account email for {trial['trial_id']}: {e}")

        return trial

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_trial(self, trial_id: str) -> Dict[str, Any]:
        """Trial with the converted quote (if any) resolved by lookup."""
        trial = await self._require(trial_id)
        quote_id = trial.get("converted_to_quote")
        if quote_id and self.quotes:
            quote = await self.quotes.get_quote(quote_id)
            if quote:
                trial["converted_to_quote"] = {
                    "quote_id": quote["quote_id"],
                    "company_name": quote.get("company_name"),
                    "status": quote.get("status"),
                    "quoted_price": quote.get("quoted_price"),
                }
        return with_derived_fields(trial, self._now())

    async def list_trials(
        self,
        status: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        search: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Tuple[List[Dict[str, Any]], int]:
        filter_query = build_list_filter(status, start_date, end_date, search)
        return await self.store.list(filter_query, page=page, limit=limit)

    async def validate_trial_access(self, username: str) -> Dict[str, Any]:
        trial = await self.store.get_by_username(username)
        if not trial:
            return {"valid": False, "message": ACCESS_MESSAGES["missing"]}
        if trial.get("status") != TrialStatus.ACTIVE.value:
            return {"valid": False, "message": ACCESS_MESSAGES["disabled"]}
        if as_utc(trial["trial_end_date"]) < as_utc(self._now()):
            return {"valid": False, "message": ACCESS_MESSAGES["expired"]}
        return {"valid": True, "trial": trial}

    async def get_trial_usage_stats(self, trial_id: str) -> Dict[str, Any]:
        trial = await self._require(trial_id)
        return compute_usage_stats(trial, self._now())

    async def get_overview_stats(self) -> Dict[str, Any]:
        now = self._now()
        today_start = now.replace(hour=0, minute=0, second=0, microsecond=0)

        total = await self.store.count()
        active = await self.store.count({"status": TrialStatus.ACTIVE.value})
        expired = await self.store.count({"status": TrialStatus.EXPIRED.value})
        converted = await self.store.count({"status": TrialStatus.CONVERTED.value})
        today = await self.store.count({"created_at": {"$gte": today_start}})
        expiring = await self.store.count({
            "status": TrialStatus.ACTIVE.value,
            "trial_end_date": {"$lte": now + timedelta(days=self.reminder_window_days)},
        })
        usage = await self.store.aggregate_active_usage()

        return {
            "overview": {
                "total_trials": total,
                "active_trials": active,
                "expired_trials": expired,
                "converted_trials": converted,
                "today_trials": today,
                "expiring_trials": expiring,
                "conversion_rate": round(converted / total * 100, 2) if total > 0 else 0,
            },
            "usage": usage or {
                "avg_login_count": 0,
                "total_logins": 0,
                "total_documents": 0,
                "total_approvals": 0,
            },
        }

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def record_login(self, trial_id: str) -> Dict[str, Any]:
        trial = await self._require(trial_id)
        now = self._now()
        if not can_login(trial, now):
            raise TrialAccessDeniedError()

        updated = await self.store.increment_login(trial_id, now)
        if not updated:
            # Swept or cancelled between the read and the update
            raise TrialAccessDeniedError()

        logger.info(f"Trial login recorded: {trial_id} (count={updated.get('login_count')})")
        return with_derived_fields(updated, now)

    async def extend_trial(self, trial_id: str, days: int) -> Dict[str, Any]:
        if not isinstance(days, int) or days < 1:
            raise TrialValidationError("Extension days must be a positive integer")

        now = self._now()
        updated = await self.store.add_days_to_end(trial_id, days, now)
        if not updated:
            raise RecordNotFoundError("Trial", trial_id)

        new_end = as_utc(updated["trial_end_date"])
        logger.info(f"Trial {trial_id} extended by {days} days to {new_end.isoformat()}")
        return with_derived_fields(updated, now)

    async def append_follow_up(self, trial_id: str, entry: Dict[str, Any]) -> Dict[str, Any]:
        missing = [f for f in ("type", "content", "contacted_by") if not entry.get(f)]
        if missing:
            raise TrialValidationError(f"Missing follow-up fields: {', '.join(missing)}")
        try:
            follow_up_type = FollowUpType(entry["type"])
        except ValueError:
            raise TrialValidationError(f"Invalid follow-up type: {entry['type']}")

        now = self._now()
        follow_up = {
            "follow_up_id": uuid.uuid4().hex,
            "type": follow_up_type.value,
            "content": entry["content"],
            "contacted_by": entry["contacted_by"],
            "scheduled_at": entry.get("scheduled_at"),
            "completed_at": entry.get("completed_at"),
            "created_at": now,
        }

        if not await self.store.push_follow_up(trial_id, follow_up, now):
            raise RecordNotFoundError("Trial", trial_id)

        logger.info(f"Follow-up ({follow_up['type']}) added to trial {trial_id} by {follow_up['contacted_by']}")
        return follow_up

    async def update_trial(
        self,
        trial_id: str,
        status: Optional[str] = None,
        feedback: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Admin update of status and/or feedback."""
        trial = await self._require(trial_id)
        now = self._now()
        update_data: Dict[str, Any] = {"updated_at": now}

        if status:
            check_transition(trial.get("status"), status, strict=self.strict_transitions)
            update_data["status"] = TrialStatus(status).value

        if feedback:
            update_data["feedback"] = {
                "rating": feedback.get("rating"),
                "comments": feedback.get("comments"),
                "submitted_at": feedback.get("submitted_at") or now,
            }

        updated = await self.store.update_fields(trial_id, update_data)
        if not updated:
            raise RecordNotFoundError("Trial", trial_id)

        if status and status != trial.get("status"):
            logger.info(f"Trial {trial_id} status changed: {trial.get('status')} -> {status}")
        return with_derived_fields(updated, now)

    async def convert_trial(self, trial_id: str, quote_id: Optional[str] = None) -> Dict[str, Any]:
        trial = await self._require(trial_id)
        check_transition(trial.get("status"), TrialStatus.CONVERTED.value, strict=True)

        if quote_id:
            if not self.quotes or not await self.quotes.get_quote(quote_id):
                raise RecordNotFoundError("Quote", quote_id)

        now = self._now()
        updated = await self.store.update_fields(trial_id, {
            "status": TrialStatus.CONVERTED.value,
            "converted_to_quote": quote_id,
            "converted_at": now,
            "updated_at": now,
        })
        if not updated:
            raise RecordNotFoundError("Trial", trial_id)

        logger.info(f"Trial converted: {trial_id} (quote={quote_id})")
        return with_derived_fields(updated, now)

    async def cancel_trial(self, trial_id: str) -> Dict[str, Any]:
        trial = await self._require(trial_id)
        check_transition(trial.get("status"), TrialStatus.CANCELLED.value, strict=True)

        now = self._now()
        updated = await self.store.update_fields(trial_id, {
            "status": TrialStatus.CANCELLED.value,
            "updated_at": now,
        })
        if not updated:
            raise RecordNotFoundError("Trial", trial_id)

        logger.info(f"Trial cancelled: {trial_id}")
        return with_derived_fields(updated, now)
