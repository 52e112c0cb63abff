from typing import Optional
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.models import Listing
from app.services.result import Result

logger = get_logger("listing_service")

TITLE_MAX_LENGTH = 100


def listing_title(description: str) -> str:
    first_line = description.strip().split("\n")[0]
    return first_line[:TITLE_MAX_LENGTH]


def create_listing(
    db: Session,
    profile_id: UUID,
    description: str,
    *,
    latitude: Optional[float] = None,
    longitude: Optional[float] = None,
    address: Optional[str] = None,
    images: Optional[list[str]] = None,
) -> Result[Listing]:
    """Publish a food listing shared through the bot."""
    if not description or not description.strip():
        return Result.failure("Listing description is empty", "invalid_listing")

    try:
        listing = Listing(
            profile_id=profile_id,
            title=listing_title(description),
            description=description.strip(),
            address=address,
            latitude=latitude,
            longitude=longitude,
            images=images or [],
            is_active=True,
        )
        db.add(listing)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Listing creation failed: {e}")
        return Result.failure(str(e), "db_error")

    logger.info(
        f"Listing {listing.id} created",
        extra={"context": {"profile_id": str(profile_id), "images": len(listing.images)}},
    )
    return Result.success(listing)
