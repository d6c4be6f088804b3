"""
Trial Expiry Sweeper

Periodic batch work over the trial store:
- demote active trials past their end date to "expired" (one bulk update)
- find trials ending within the reminder window and email reminders

Run from the APScheduler jobs in job_runner.py, the admin run-now endpoints,
or scripts/run_trial_maintenance.py.
"""
import logging
from datetime import datetime, timezone, timedelta
from typing import Optional, List, Dict, Any, Callable

from services.trial_lifecycle import days_until, TRIAL_REMINDER_WINDOW_DAYS

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def should_remind(trial: Dict[str, Any], now: datetime, window_days: int) -> bool:
    """Re-check at send time: only trials with 1..window whole days left."""
    remaining = days_until(trial["trial_end_date"], now)
    return 0 < remaining <= window_days


class ExpirySweeper:
    def __init__(
        self,
        store,
        notifier=None,
        clock: Optional[Callable[[], datetime]] = None,
        window_days: int = TRIAL_REMINDER_WINDOW_DAYS,
    ):
        self.store = store
        self.notifier = notifier
        self._now = clock or _utcnow
        self.window_days = window_days

    async def sweep_expired(self) -> int:
        """Mark overdue active trials as expired. Returns the number modified."""
        try:
            count = await self.store.expire_overdue(self._now())
        except Exception as e:
            logger.error(f"Failed to expire overdue trials: {e}")
            raise

        logger.info(f"Expired {count} overdue trial(s)")
        return count

    async def find_expiring_soon(self, window_days: Optional[int] = None) -> List[Dict[str, Any]]:
        window = self.window_days if window_days is None else window_days
        now = self._now()
        return await self.store.find_expiring(now, now + timedelta(days=window))

    async def send_expiry_reminders(self, window_days: Optional[int] = None) -> Dict[str, int]:
        """
        Email every trial ending within the window. A failed email is logged
        and counted; it never aborts the batch.
        """
        window = self.window_days if window_days is None else window_days
        try:
            candidates = await self.find_expiring_soon(window)
        except Exception as e:
            logger.error(f"Failed to load expiring trials: {e}")
            raise

        now = self._now()
        notified = 0
        failed = 0

        for trial in candidates:
            if not should_remind(trial, now, window):
                continue
            remaining = days_until(trial["trial_end_date"], now)
            if not self.notifier:
                logger.info(f"[NO NOTIFIER] Expiry reminder skipped for {trial.get('email')} ({remaining} days left)")
                continue
            try:
                await self.notifier.send_trial_expiry_reminder(trial, remaining)
                notified += 1
                logger.info(f"Expiry reminder sent to {trial.get('email')} ({remaining} days left)")
            except Exception as e:
                failed += 1
                logger.error(f"Failed to send expiry reminder to {trial.get('email')}: {e}")

        return {
            "candidates": len(candidates),
            "notified": notified,
            "failed": failed,
        }
