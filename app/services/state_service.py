"""Per-user conversation state with action-dependent TTL.

Each user has at most one live state row. An expired row is deleted on the
next read and reported as absent, so an abandoned flow never keeps a user
stuck; the periodic purge only bounds table size.
"""

from datetime import datetime, timedelta
from typing import Optional

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.models import ConversationStateRecord
from app.schemas.conversation_state import ConversationStatePayload, conversation_state_adapter
from app.services.errors import StorageError
from app.services.state_machine import ConversationAction
from app.services.time_utils import as_utc, utc_now

logger = get_logger("state_service")

DEFAULT_STATE_TTL = timedelta(minutes=30)

STATE_TTLS = {
    ConversationAction.AWAITING_EMAIL: timedelta(minutes=15),
    ConversationAction.AWAITING_VERIFICATION: timedelta(minutes=15),
    ConversationAction.AWAITING_VERIFICATION_LINK: timedelta(minutes=15),
    ConversationAction.SHARING_FOOD: timedelta(minutes=60),
    ConversationAction.SETTING_RADIUS: timedelta(minutes=10),
    ConversationAction.UPDATING_PROFILE_LOCATION: timedelta(minutes=10),
}


def ttl_for(action: str) -> timedelta:
    """Short prompts expire fast, multi-step flows get more slack."""
    try:
        return STATE_TTLS.get(ConversationAction(action), DEFAULT_STATE_TTL)
    except ValueError:
        return DEFAULT_STATE_TTL


def _delete_quietly(db: Session, record: ConversationStateRecord, reason: str) -> None:
    try:
        db.delete(record)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.warning(
            "Failed to delete conversation state",
            extra={"context": {"user_id": record.user_id, "reason": reason, "error": str(e)}},
        )


def get_state(db: Session, user_id: int, now: Optional[datetime] = None) -> Optional[ConversationStatePayload]:
    """Return the live state for ``user_id`` or None.

    Lookup failures are logged and reported as "no state" so the bot keeps
    answering while the store is degraded.
    """
    now = now or utc_now()

    try:
        record = db.get(ConversationStateRecord, user_id)
    except SQLAlchemyError as e:
        db.rollback()
        logger.warning(
            "Conversation state lookup failed, treating as empty",
            extra={"context": {"user_id": user_id, "error": str(e)}},
        )
        return None

    if record is None:
        return None

    if as_utc(record.expires_at) < now:
        logger.info(
            "Conversation state expired",
            extra={"context": {"user_id": user_id, "action": (record.state or {}).get("action")}},
        )
        _delete_quietly(db, record, "expired")
        return None

    try:
        return conversation_state_adapter.validate_python(record.state)
    except PydanticValidationError as e:
        logger.warning(
            "Discarding unreadable conversation state",
            extra={"context": {"user_id": user_id, "error": str(e)}},
        )
        _delete_quietly(db, record, "unreadable")
        return None


def set_state(
    db: Session,
    user_id: int,
    state: Optional[ConversationStatePayload],
    now: Optional[datetime] = None,
) -> None:
    """Replace the user's state, or clear it when ``state`` is None.

    Write failures raise StorageError: silently losing a step would corrupt
    the flow.
    """
    now = now or utc_now()

    try:
        record = db.get(ConversationStateRecord, user_id)

        if state is None:
            if record is not None:
                db.delete(record)
                db.commit()
            return

        expires_at = now + ttl_for(state.action)
        payload = state.model_dump(mode="json")

        if record is None:
            record = ConversationStateRecord(user_id=user_id)
            db.add(record)
        record.state = payload
        record.expires_at = expires_at
        record.updated_at = now
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise StorageError(f"Failed to write conversation state for user {user_id}: {e}") from e

    logger.debug(
        "Conversation state saved",
        extra={"context": {"user_id": user_id, "action": state.action, "expires_at": expires_at.isoformat()}},
    )


def purge_expired_states(db: Session, now: Optional[datetime] = None) -> int:
    """Bulk delete expired rows. Not needed for correctness, only for table size."""
    now = now or utc_now()
    deleted = (
        db.query(ConversationStateRecord)
        .filter(ConversationStateRecord.expires_at < now)
        .delete(synchronize_session=False)
    )
    db.commit()
    if deleted:
        logger.info(f"Purged {deleted} expired conversation states")
    return deleted
