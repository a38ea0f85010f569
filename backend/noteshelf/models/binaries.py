from sqlalchemy import Column, Integer, String, DateTime, UniqueConstraint
from sqlalchemy.sql import func
from noteshelf.database import Base


class CachedBinary(Base):
    """Local file path of a fully downloaded document."""
    __tablename__ = "cached_binaries"
    __table_args__ = (UniqueConstraint("user_id", "document_id"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(200), nullable=False, index=True)
    document_id = Column(String(200), nullable=False)
    local_path = Column(String(1000), nullable=False)
    created_at = Column(DateTime, server_default=func.now())
