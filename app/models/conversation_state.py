from sqlalchemy import JSON, BigInteger, Column, DateTime
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func

from app.database import Base


class ConversationStateRecord(Base):
    __tablename__ = "conversation_states"

    user_id = Column(BigInteger, primary_key=True, autoincrement=False)  # Telegram user id
    state = Column(JSON().with_variant(JSONB(), "postgresql"), nullable=False)  # action + step fields
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
