"""
Shared job runner for scheduled background jobs.
Used by server (scheduler), the maintenance script and admin (manual run).
Each run_* returns a dict with "message" and "count".
"""
import logging

logger = logging.getLogger(__name__)


def _services(db=None):
    from database import database
    from dependencies import build_services
    return build_services(db if db is not None else database.get_db())


async def run_trial_expiry_sweep(db=None):
    try:
        count = await _services(db).sweeper.sweep_expired()
        logger.info(f"Trial expiry sweep job completed: {count} trials expired")
        return {"message": f"Expired trials: {count}", "count": count}
    except Exception as e:
        logger.error(f"Trial expiry sweep job failed: {e}")
        raise


async def run_trial_expiry_reminders(db=None):
    try:
        result = await _services(db).sweeper.send_expiry_reminders()
        count = result["notified"]
        logger.info(
            f"Trial expiry reminder job completed: {count} sent, "
            f"{result['failed']} failed of {result['candidates']} candidates"
        )
        return {"message": f"Expiry reminders sent: {count}", "count": count}
    except Exception as e:
        logger.error(f"Trial expiry reminder job failed: {e}")
        raise
