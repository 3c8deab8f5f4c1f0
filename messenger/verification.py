"""
One-time code issuer for phone-number verification.

There is no SMS gateway: issued codes are written to the operational log.
This is a development stand-in for OTP delivery, not a security boundary.
"""

import asyncio
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from messenger.metrics import record_verification_outcome
from messenger.utils import codes_match, format_timestamp, generate_code, utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VerificationChallenge:
    phone_number: str
    code: str
    issued_at: datetime
    expires_at: datetime


class VerificationIssuer:
    def __init__(self, ttl_seconds: int = 300, clock: Callable[[], datetime] = utc_now):
        self._ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock
        self._lock = threading.Lock()
        self._challenges: dict[str, VerificationChallenge] = {}

    def issue(self, phone_number: str) -> str:
        """Issue a fresh code for the number, replacing any live challenge."""
        now = self._clock()
        challenge = VerificationChallenge(
            phone_number=phone_number,
            code=generate_code(),
            issued_at=now,
            expires_at=now + self._ttl,
        )
        with self._lock:
            self._challenges[phone_number] = challenge

        record_verification_outcome("issued")
        logger.info(
            "Verification code issued",
            extra={
                "phone_number": phone_number,
                "code": challenge.code,
                "expires_at": format_timestamp(challenge.expires_at),
            },
        )
        return challenge.code

    def verify(self, phone_number: str, code: str) -> bool:
        """
        Check a submitted code and consume the challenge on success.

        A missing, expired or mismatching challenge is rejected. Expiry is
        checked here even if the sweep has not run yet.
        """
        now = self._clock()
        with self._lock:
            challenge = self._challenges.get(phone_number)
            if challenge is not None and challenge.expires_at <= now:
                del self._challenges[phone_number]
                challenge = None

            valid = challenge is not None and codes_match(challenge.code, code or "")
            if valid:
                del self._challenges[phone_number]

        record_verification_outcome("verified" if valid else "rejected")
        if not valid:
            logger.warning("Verification code rejected", extra={"phone_number": phone_number})
        return valid

    def sweep(self) -> int:
        """Drop expired challenges. Returns how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [p for p, c in self._challenges.items() if c.expires_at <= now]
            for phone_number in expired:
                del self._challenges[phone_number]
        if expired:
            logger.debug(f"Expired {len(expired)} verification challenges")
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._challenges)


async def sweep_periodically(issuer: VerificationIssuer, interval_seconds: float) -> None:
    """Background task: purge expired challenges until cancelled."""
    while True:
        await asyncio.sleep(interval_seconds)
        issuer.sweep()
