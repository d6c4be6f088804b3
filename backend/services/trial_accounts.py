"""
Trial Account Generation

Derives the username / password / access URL handed to a company when it
requests a trial, and resolves username collisions against the trial store.

The password path is the legacy credential scheme: generated passwords are
stored in plaintext and emailed to the contact. It is kept behind
generate_legacy_password() so it can be replaced without touching callers.
"""
import logging
import os
import re
import secrets
from datetime import datetime, timezone, timedelta
from typing import Callable, Dict, Optional

from services.errors import AccountGenerationError

logger = logging.getLogger(__name__)

TRIAL_SYSTEM_URL = os.getenv("TRIAL_SYSTEM_URL", "https://trial.wastewater-ai.com")
USERNAME_MAX_ATTEMPTS = int(os.getenv("USERNAME_MAX_ATTEMPTS", "5"))

USERNAME_TAG = "trial_"
USERNAME_PREFIX_LENGTH = 4
# Everything except CJK ideographs and ASCII letters/digits
_NAME_STRIP_RE = re.compile(r"[^一-龥a-zA-Z0-9]")

# No 0/O, 1/l/I
PASSWORD_CHARSET = "ABCDEFGHJKMNPQRSTUVWXYZabcdefghijkmnpqrstuvwxyz23456789"
PASSWORD_LENGTH = 8

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def company_prefix(company_name: str) -> str:
    """Sanitized, truncated company name used inside usernames."""
    return _NAME_STRIP_RE.sub("", company_name or "")[:USERNAME_PREFIX_LENGTH]


def generate_username(company_name: str, now: Optional[datetime] = None) -> str:
    """trial_<prefix>_<last 4 digits of the epoch-millisecond timestamp>."""
    now = now or _utcnow()
    epoch_ms = (now - _EPOCH) // timedelta(milliseconds=1)
    timestamp = str(epoch_ms)[-4:]
    return f"{USERNAME_TAG}{company_prefix(company_name)}_{timestamp}"


def generate_legacy_password(length: int = PASSWORD_LENGTH) -> str:
    """Legacy credential scheme: plaintext, stored and emailed as-is. Not secure."""
    return "".join(secrets.choice(PASSWORD_CHARSET) for _ in range(length))


def generate_access_url(username: str, base_url: Optional[str] = None) -> str:
    base = (base_url or TRIAL_SYSTEM_URL).rstrip("/")
    return f"{base}/login?user={username}"


class TrialAccountGenerator:
    """Builds trial credentials with a username that is unique at check time.

    `store` only needs an async `username_exists(username) -> bool`.
    """

    def __init__(
        self,
        store,
        base_url: Optional[str] = None,
        max_attempts: int = USERNAME_MAX_ATTEMPTS,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.base_url = base_url or TRIAL_SYSTEM_URL
        self.max_attempts = max_attempts
        self._now = clock or _utcnow

    async def ensure_unique_username(self, company_name: str) -> str:
        """
        Re-derive the username until it does not collide (the timestamp part
        changes between calls). After max_attempts collisions a random hex
        suffix is appended and returned without another check; the unique
        index on trial_account.username stays the final guard.
        """
        for attempt in range(1, self.max_attempts + 1):
            username = generate_username(company_name, self._now())
            if not await self.store.username_exists(username):
                return username
            logger.debug(f"Trial username collision on attempt {attempt}: {username}")

        username = f"{generate_username(company_name, self._now())}_{secrets.token_hex(3)}"
        logger.warning(
            f"Trial username still colliding after {self.max_attempts} attempts, using random suffix: {username}"
        )
        return username

    async def generate_trial_account(self, company_name: str) -> Dict[str, str]:
        """Return {username, password, access_url} for a new trial."""
        try:
            username = await self.ensure_unique_username(company_name)
            password = generate_legacy_password()
            access_url = generate_access_url(username, self.base_url)
        except Exception as e:
            logger.error(f"Failed to generate trial account for {company_name!r}: {e}")
            raise AccountGenerationError() from e

        return {
            "username": username,
            "password": password,
            "access_url": access_url,
        }
