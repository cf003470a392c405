"""
SQLAlchemy Database Models

Stores:
- Contacts (address book entries with an optional inline image)
"""
from sqlalchemy import Column, String, Text, DateTime
from sqlalchemy.orm import declarative_base
from datetime import datetime
import uuid

Base = declarative_base()


class Contact(Base):
    """
    Address book entry.

    The image is stored inline as base64 text, so a contact record is
    self-contained and can be returned to the client as-is.
    """
    __tablename__ = "contacts"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String(255), nullable=False)
    email = Column(String(320), nullable=False, index=True)
    image = Column(Text, nullable=True)  # base64, no data: prefix

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<Contact(id={self.id}, email={self.email})>"
