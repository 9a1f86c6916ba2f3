from sqlalchemy import Column, Integer, String, DateTime, CheckConstraint, Index
from sqlalchemy.sql import func

from livemap.core.db import Base


class Friendship(Base):
    __tablename__ = "friendships"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, nullable=False, index=True)
    friend_id = Column(String, nullable=False, index=True)
    status = Column(
        String,
        CheckConstraint(
            "status IN ('pending','accepted','rejected')",
            name="friendships_status_check",
        ),
        nullable=False,
        default="pending",
    )
    created_at = Column(DateTime, server_default=func.now())

    __table_args__ = (
        Index("idx_friendships_status", "status"),
    )
