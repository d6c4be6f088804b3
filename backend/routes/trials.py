"""
Trial API Routes

Public endpoints for trial requests, access checks and login tracking.
Admin endpoints for listing, lifecycle changes, follow-ups and statistics.
"""
import math
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, status

from dependencies import get_trial_service, get_expiry_sweeper
from middleware import admin_route_guard, get_client_info, intake_rate_limit
from models import (
    TrialStatus,
    TrialCreateRequest,
    TrialUpdateRequest,
    TrialExtendRequest,
    TrialConvertRequest,
    FollowUpCreateRequest,
)
from services.expiry_sweeper import ExpirySweeper
from services.trial_lifecycle import TrialLifecycleService

router = APIRouter(prefix="/api/trials", tags=["trials"])


def _public_trial(trial: dict) -> dict:
    """Trial without the stored credential secret."""
    account = {k: v for k, v in (trial.get("trial_account") or {}).items() if k != "password"}
    return {**trial, "trial_account": account}


# ============================================================================
# PUBLIC ENDPOINTS
# ============================================================================

@router.post("", status_code=status.HTTP_201_CREATED, dependencies=[Depends(intake_rate_limit)])
async def request_trial(
    body: TrialCreateRequest,
    request: Request,
    trials: TrialLifecycleService = Depends(get_trial_service),
):
    """Request a free trial. Credentials are emailed to the contact."""
    trial = await trials.create_trial(body, client_info=get_client_info(request))

    return {
        "success": True,
        "message": "Trial request received. Your trial account details have been sent to your email.",
        "data": {
            "trial_id": trial["trial_id"],
            "company_name": trial["company_name"],
            "contact_name": trial["contact_name"],
            "trial_end_date": trial["trial_end_date"],
            "access_url": trial["trial_account"]["access_url"],
        },
    }


@router.get("/access/{username}")
async def validate_access(
    username: str,
    trials: TrialLifecycleService = Depends(get_trial_service),
):
    """Check whether a trial username may currently sign in."""
    result = await trials.validate_trial_access(username)
    if result["valid"]:
        trial = result["trial"]
        return {
            "success": True,
            "valid": True,
            "data": {
                "trial_id": trial["trial_id"],
                "company_name": trial["company_name"],
                "trial_end_date": trial["trial_end_date"],
            },
        }
    return {"success": True, "valid": False, "message": result["message"]}


# ============================================================================
# ADMIN ENDPOINTS - listing & statistics
# ============================================================================

@router.get("")
async def list_trials(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    status: Optional[TrialStatus] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    search: Optional[str] = Query(None, max_length=100),
    current_user: dict = Depends(admin_route_guard),
    trials: TrialLifecycleService = Depends(get_trial_service),
):
    """List trial requests with filters and pagination."""
    items, total = await trials.list_trials(
        status=status.value if status else None,
        start_date=start_date,
        end_date=end_date,
        search=search,
        page=page,
        limit=limit,
    )
    return {
        "success": True,
        "data": {
            "trials": [_public_trial(t) for t in items],
            "pagination": {
                "current": page,
                "total": math.ceil(total / limit),
                "count": len(items),
                "total_records": total,
            },
        },
    }


@router.get("/stats/overview")
async def get_trial_stats(
    current_user: dict = Depends(admin_route_guard),
    trials: TrialLifecycleService = Depends(get_trial_service),
):
    return {"success": True, "data": await trials.get_overview_stats()}


@router.get("/expiring")
async def list_expiring_trials(
    days: Optional[int] = Query(None, ge=1, le=90),
    current_user: dict = Depends(admin_route_guard),
    sweeper: ExpirySweeper = Depends(get_expiry_sweeper),
):
    """Active trials ending within the reminder window (default 7 days)."""
    items = await sweeper.find_expiring_soon(days)
    return {"success": True, "data": {"trials": [_public_trial(t) for t in items], "count": len(items)}}


@router.post("/maintenance/sweep")
async def run_expiry_sweep(
    current_user: dict = Depends(admin_route_guard),
    sweeper: ExpirySweeper = Depends(get_expiry_sweeper),
):
    """Run the expiry sweep now (same work as the scheduled job)."""
    count = await sweeper.sweep_expired()
    return {"success": True, "message": f"Expired trials: {count}", "count": count}


@router.post("/maintenance/reminders")
async def run_expiry_reminders(
    current_user: dict = Depends(admin_route_guard),
    sweeper: ExpirySweeper = Depends(get_expiry_sweeper),
):
    result = await sweeper.send_expiry_reminders()
    return {"success": True, "message": f"Expiry reminders sent: {result['notified']}", "data": result}


# ============================================================================
# SINGLE TRIAL
# ============================================================================

@router.get("/{trial_id}")
async def get_trial(
    trial_id: str,
    current_user: dict = Depends(admin_route_guard),
    trials: TrialLifecycleService = Depends(get_trial_service),
):
    trial = await trials.get_trial(trial_id)
    return {"success": True, "data": _public_trial(trial)}


@router.put("/{trial_id}")
async def update_trial(
    trial_id: str,
    body: TrialUpdateRequest,
    current_user: dict = Depends(admin_route_guard),
    trials: TrialLifecycleService = Depends(get_trial_service),
):
    """Update trial status and/or feedback."""
    trial = await trials.update_trial(
        trial_id,
        status=body.status.value if body.status else None,
        feedback=body.feedback.model_dump() if body.feedback else None,
    )
    return {"success": True, "message": "Trial updated", "data": _public_trial(trial)}


@router.post("/{trial_id}/extend")
async def extend_trial(
    trial_id: str,
    body: TrialExtendRequest,
    current_user: dict = Depends(admin_route_guard),
    trials: TrialLifecycleService = Depends(get_trial_service),
):
    trial = await trials.extend_trial(trial_id, body.days)
    return {
        "success": True,
        "message": f"Trial extended by {body.days} days",
        "data": {
            "new_end_date": trial["trial_end_date"],
            "remaining_days": trial["remaining_days"],
        },
    }


@router.post("/{trial_id}/convert")
async def convert_trial(
    trial_id: str,
    body: TrialConvertRequest,
    current_user: dict = Depends(admin_route_guard),
    trials: TrialLifecycleService = Depends(get_trial_service),
):
    trial = await trials.convert_trial(trial_id, quote_id=body.quote_id)
    return {"success": True, "message": "Trial converted", "data": _public_trial(trial)}


@router.post("/{trial_id}/cancel")
async def cancel_trial(
    trial_id: str,
    current_user: dict = Depends(admin_route_guard),
    trials: TrialLifecycleService = Depends(get_trial_service),
):
    trial = await trials.cancel_trial(trial_id)
    return {"success": True, "message": "Trial cancelled", "data": _public_trial(trial)}


@router.post("/{trial_id}/login")
async def record_trial_login(
    trial_id: str,
    trials: TrialLifecycleService = Depends(get_trial_service),
):
    """Called by the trial system each time a trial user signs in."""
    trial = await trials.record_login(trial_id)
    return {
        "success": True,
        "message": "Login recorded",
        "data": {
            "login_count": trial["login_count"],
            "remaining_days": trial["remaining_days"],
        },
    }


@router.post("/{trial_id}/followups")
async def add_follow_up(
    trial_id: str,
    body: FollowUpCreateRequest,
    current_user: dict = Depends(admin_route_guard),
    trials: TrialLifecycleService = Depends(get_trial_service),
):
    follow_up = await trials.append_follow_up(trial_id, {
        "type": body.type.value,
        "content": body.content,
        "contacted_by": body.contacted_by,
        "scheduled_at": body.scheduled_at,
    })
    return {"success": True, "message": "Follow-up added", "data": follow_up}


@router.get("/{trial_id}/usage")
async def get_trial_usage(
    trial_id: str,
    current_user: dict = Depends(admin_route_guard),
    trials: TrialLifecycleService = Depends(get_trial_service),
):
    return {"success": True, "data": await trials.get_trial_usage_stats(trial_id)}
