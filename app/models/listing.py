import uuid

from sqlalchemy import JSON, Boolean, Column, DateTime, Float, ForeignKey, Text, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from app.database import Base


class Listing(Base):
    __tablename__ = "listings"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    profile_id = Column(Uuid(as_uuid=True), ForeignKey("profiles.id"), nullable=False)
    title = Column(Text, nullable=False)
    description = Column(Text, nullable=False)
    address = Column(Text)
    latitude = Column(Float)
    longitude = Column(Float)
    images = Column(JSON().with_variant(JSONB(), "postgresql"), nullable=False, default=list)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    profile = relationship("Profile", back_populates="listings")
