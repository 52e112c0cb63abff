from dataclasses import dataclass
from typing import Optional
from uuid import UUID

from sqlalchemy.orm import Session

from app.models import Profile
from app.services.cache import EphemeralCache
from app.services.time_utils import utc_now

PROFILE_CACHE_TTL_SECONDS = 300


@dataclass(frozen=True)
class ProfileSummary:
    """Detached snapshot of the fields the flows check on every update."""

    id: UUID
    telegram_id: int
    email: Optional[str]
    email_verified: bool
    search_radius_km: float


def _cache_key(telegram_id: int) -> str:
    return f"profile:telegram:{telegram_id}"


def _summarize(profile: Profile) -> ProfileSummary:
    return ProfileSummary(
        id=profile.id,
        telegram_id=profile.telegram_id,
        email=profile.email,
        email_verified=bool(profile.email_verified),
        search_radius_km=profile.search_radius_km,
    )


def get_profile_by_telegram_id(db: Session, telegram_id: int) -> Optional[Profile]:
    return db.query(Profile).filter(Profile.telegram_id == telegram_id).first()


def get_profile_by_email(db: Session, email: str) -> Optional[Profile]:
    return db.query(Profile).filter(Profile.email == email.lower()).first()


def get_profile_summary(db: Session, telegram_id: int, cache: EphemeralCache) -> Optional[ProfileSummary]:
    """Cached lookup. Misses fall through to the row store; absent profiles are not cached."""
    cached = cache.get(_cache_key(telegram_id))
    if cached is not None:
        return cached

    profile = get_profile_by_telegram_id(db, telegram_id)
    if profile is None:
        return None
    return warm_profile_cache(cache, profile)


def warm_profile_cache(cache: EphemeralCache, profile: Profile) -> ProfileSummary:
    summary = _summarize(profile)
    cache.set(_cache_key(profile.telegram_id), summary, PROFILE_CACHE_TTL_SECONDS)
    return summary


def invalidate_profile_cache(cache: EphemeralCache, telegram_id: int) -> None:
    cache.delete(_cache_key(telegram_id))


def update_profile(db: Session, profile: Profile, cache: EphemeralCache, **fields) -> Profile:
    for name, value in fields.items():
        setattr(profile, name, value)
    profile.updated_at = utc_now()
    db.commit()
    if profile.telegram_id is not None:
        warm_profile_cache(cache, profile)
    return profile
