import uuid

from sqlalchemy import BigInteger, Boolean, Column, DateTime, Float, Integer, String, Text, Uuid
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from app.database import Base


class Profile(Base):
    __tablename__ = "profiles"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    telegram_id = Column(BigInteger, unique=True, index=True)
    first_name = Column(Text)
    email = Column(Text, unique=True, index=True)
    email_verified = Column(Boolean, nullable=False, default=False)
    verification_code = Column(String(6))
    verification_code_expires_at = Column(DateTime(timezone=True))
    verification_attempts = Column(Integer, nullable=False, default=0)
    verification_locked_until = Column(DateTime(timezone=True))
    search_radius_km = Column(Float, nullable=False, default=5.0)
    latitude = Column(Float)
    longitude = Column(Float)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    listings = relationship("Listing", back_populates="profile")
