"""Persistent snapshot of a user's owned and favorited documents."""

from sqlalchemy import Column, Integer, String, Float, DateTime, JSON
from sqlalchemy.sql import func
from noteshelf.database import Base


class LibrarySnapshot(Base):
    """Last successful remote fetch for one user."""
    __tablename__ = "library_snapshots"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(200), unique=True, nullable=False, index=True)
    owned = Column(JSON, nullable=False, default=list)
    favorited = Column(JSON, nullable=False, default=list)
    captured_at = Column(Float, nullable=False)  # epoch seconds
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())
