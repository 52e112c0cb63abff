from app.models import Profile
from app.services.cache import EphemeralCache
from app.services.profile_service import (
    get_profile_summary,
    invalidate_profile_cache,
    update_profile,
)


def _add_profile(db, telegram_id=100, verified=True):
    profile = Profile(telegram_id=telegram_id, email=f"{telegram_id}@example.com", email_verified=verified)
    db.add(profile)
    db.commit()
    return profile


class TestProfileSummaryCache:
    def test_second_lookup_served_from_cache(self, db_session, clock):
        cache = EphemeralCache(clock=clock)
        _add_profile(db_session)

        first = get_profile_summary(db_session, 100, cache)
        second = get_profile_summary(db_session, 100, cache)

        assert first == second
        assert first.email_verified is True
        assert cache.stats()["hits"] == 1

    def test_missing_profile_not_cached(self, db_session, clock):
        cache = EphemeralCache(clock=clock)

        assert get_profile_summary(db_session, 100, cache) is None
        assert cache.stats()["size"] == 0

    def test_update_refreshes_cached_summary(self, db_session, clock):
        cache = EphemeralCache(clock=clock)
        profile = _add_profile(db_session)
        get_profile_summary(db_session, 100, cache)

        update_profile(db_session, profile, cache, search_radius_km=25.0)

        assert get_profile_summary(db_session, 100, cache).search_radius_km == 25.0

    def test_invalidate_forces_reload(self, db_session, clock):
        cache = EphemeralCache(clock=clock)
        profile = _add_profile(db_session, verified=False)
        get_profile_summary(db_session, 100, cache)

        profile.email_verified = True
        db_session.commit()
        invalidate_profile_cache(cache, 100)

        assert get_profile_summary(db_session, 100, cache).email_verified is True
