from sqlalchemy import Column, Integer, String, Float
from noteshelf.database import Base


class OpenedDocument(Base):
    """Entry in a user's previously-opened list."""
    __tablename__ = "opened_documents"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(200), nullable=False, index=True)
    document_id = Column(String(200), nullable=False)
    title = Column(String(500), default="")
    binary_ref = Column(String(1000), default="")
    last_opened_at = Column(Float, nullable=False)  # epoch seconds
