"""Email registration and verification codes with brute-force protection."""

import math
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.models import Profile
from app.services.profile_service import get_profile_by_email, get_profile_by_telegram_id
from app.services.result import Result
from app.services.time_utils import as_utc, utc_now

logger = get_logger("auth_service")

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
CODE_TTL = timedelta(minutes=15)
MAX_VERIFICATION_ATTEMPTS = 5
LOCKOUT_DURATION = timedelta(minutes=15)


@dataclass
class PendingVerification:
    profile: Profile
    code: str


def is_valid_email(text: str) -> bool:
    return bool(EMAIL_PATTERN.match(text.strip()))


def generate_verification_code() -> str:
    return f"{secrets.randbelow(1_000_000):06d}"


def _minutes_until(moment: datetime, now: datetime) -> int:
    return max(1, math.ceil((moment - now).total_seconds() / 60))


def _issue_code(profile: Profile, now: datetime) -> str:
    code = generate_verification_code()
    profile.verification_code = code
    profile.verification_code_expires_at = now + CODE_TTL
    profile.updated_at = now
    return code


def start_email_verification(
    db: Session,
    telegram_id: int,
    first_name: Optional[str],
    email: str,
    now: Optional[datetime] = None,
) -> Result[PendingVerification]:
    """Attach ``email`` to the Telegram user and issue a fresh code.

    An email already linked to another Telegram account is refused. An
    existing web account with that email gets linked to this Telegram user.
    """
    now = now or utc_now()
    email = email.strip().lower()

    by_email = get_profile_by_email(db, email)
    by_telegram = get_profile_by_telegram_id(db, telegram_id)

    if by_email and by_email.telegram_id not in (None, telegram_id):
        return Result.failure("Email is linked to another Telegram account", "email_taken")

    if by_email and by_telegram and by_email.id != by_telegram.id:
        if by_telegram.email_verified:
            return Result.failure("Telegram account already has a verified email", "email_taken")
        # Unverified stray profile from an earlier attempt; the email owner wins.
        by_telegram.telegram_id = None
        db.flush()

    profile = by_email or by_telegram
    if profile is None:
        profile = Profile(telegram_id=telegram_id, first_name=first_name, email=email, email_verified=False)
        db.add(profile)

    profile.telegram_id = telegram_id
    if not profile.email_verified:
        profile.email = email
    if first_name and not profile.first_name:
        profile.first_name = first_name

    code = _issue_code(profile, now)
    db.commit()

    logger.info(f"Verification code issued for telegram user {telegram_id}")
    return Result.success(PendingVerification(profile=profile, code=code))


def reissue_code(db: Session, telegram_id: int, now: Optional[datetime] = None) -> Result[PendingVerification]:
    """New code for /resend; keeps the lockout in force."""
    now = now or utc_now()
    profile = get_profile_by_telegram_id(db, telegram_id)
    if profile is None or not profile.email:
        return Result.failure("No pending registration", "no_profile")

    locked_until = as_utc(profile.verification_locked_until)
    if locked_until and locked_until > now:
        return Result.failure(str(_minutes_until(locked_until, now)), "locked")

    code = _issue_code(profile, now)
    db.commit()
    return Result.success(PendingVerification(profile=profile, code=code))


def verify_code(db: Session, telegram_id: int, code: str, now: Optional[datetime] = None) -> Result[Profile]:
    """Check a code typed by the user.

    Failure codes: ``no_profile``, ``locked`` (error holds minutes left),
    ``expired``, ``invalid_code`` (error holds attempts left).
    """
    now = now or utc_now()
    profile = get_profile_by_telegram_id(db, telegram_id)
    if profile is None or not profile.verification_code:
        return Result.failure("No pending verification", "no_profile")

    locked_until = as_utc(profile.verification_locked_until)
    if locked_until and locked_until > now:
        return Result.failure(str(_minutes_until(locked_until, now)), "locked")
    if locked_until:
        profile.verification_attempts = 0
        profile.verification_locked_until = None

    expires_at = as_utc(profile.verification_code_expires_at)
    if expires_at is None or expires_at < now:
        db.commit()
        return Result.failure("Verification code expired", "expired")

    if not secrets.compare_digest(code.strip(), profile.verification_code):
        attempts = (profile.verification_attempts or 0) + 1
        profile.verification_attempts = attempts
        if attempts >= MAX_VERIFICATION_ATTEMPTS:
            profile.verification_locked_until = now + LOCKOUT_DURATION
            db.commit()
            logger.warning(
                "Verification locked after too many failed attempts",
                extra={"context": {"telegram_id": telegram_id, "attempts": attempts}},
            )
            return Result.failure(str(_minutes_until(now + LOCKOUT_DURATION, now)), "locked")
        db.commit()
        return Result.failure(str(MAX_VERIFICATION_ATTEMPTS - attempts), "invalid_code")

    profile.email_verified = True
    profile.verification_code = None
    profile.verification_code_expires_at = None
    profile.verification_attempts = 0
    profile.verification_locked_until = None
    profile.updated_at = now
    db.commit()

    logger.info(f"Telegram user {telegram_id} verified email")
    return Result.success(profile)
