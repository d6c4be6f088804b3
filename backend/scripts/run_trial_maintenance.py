"""
Run the trial maintenance jobs once: expire overdue trials and/or send expiry reminders.

The API process schedules the same jobs with APScheduler; this script is for
deployments that run background work from cron instead.

Usage (from backend/):
  python -m scripts.run_trial_maintenance              # sweep + reminders
  python -m scripts.run_trial_maintenance --sweep      # expiry sweep only
  python -m scripts.run_trial_maintenance --reminders  # reminders only

Production (cron example):
  5 0 * * * cd /app/backend && python -m scripts.run_trial_maintenance --sweep
"""
import asyncio
import argparse
import logging
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from database import get_db_context
from job_runner import run_trial_expiry_sweep, run_trial_expiry_reminders


async def run_maintenance(sweep: bool, reminders: bool) -> int:
    async with get_db_context() as db:
        if sweep:
            result = await run_trial_expiry_sweep(db)
            print(result["message"])
        if reminders:
            result = await run_trial_expiry_reminders(db)
            print(result["message"])
    return 0


def main():
    parser = argparse.ArgumentParser(description="Run trial expiry sweep and expiry reminders")
    parser.add_argument("--sweep", action="store_true", help="Expire overdue active trials")
    parser.add_argument("--reminders", action="store_true", help="Email trials nearing their end date")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    run_all = not args.sweep and not args.reminders
    return asyncio.run(run_maintenance(
        sweep=args.sweep or run_all,
        reminders=args.reminders or run_all,
    ))


if __name__ == "__main__":
    sys.exit(main())
