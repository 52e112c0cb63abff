from sqlalchemy import BigInteger, Column, DateTime, Integer
from sqlalchemy.sql import func

from app.database import Base


class RateLimit(Base):
    __tablename__ = "rate_limits"

    user_id = Column(BigInteger, primary_key=True, autoincrement=False)  # Telegram user id
    request_count = Column(Integer, nullable=False, default=0)
    window_start = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), index=True)
