"""
Contact store: address book CRUD on top of SQLAlchemy.

Independent of the mail gateway; the HTTP layer is the only caller.
"""
import base64
import logging
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from mailbag.core.database.models import Contact

logger = logging.getLogger(__name__)

# Reject absurd uploads before base64 inflates them by a third
MAX_IMAGE_BYTES = 2 * 1024 * 1024


class ContactNotFoundError(LookupError):
    """No contact with the given id"""

    def __init__(self, contact_id: str):
        super().__init__(f"Contact {contact_id} not found")
        self.contact_id = contact_id


class ContactStore:
    """CRUD operations for contacts, bound to one database session"""

    def __init__(self, db: Session):
        self.db = db

    def _get(self, contact_id: str) -> Contact:
        contact = self.db.get(Contact, contact_id)
        if contact is None:
            raise ContactNotFoundError(contact_id)
        return contact

    def list(self) -> List[Contact]:
        return list(self.db.scalars(select(Contact).order_by(Contact.name, Contact.email)))

    def add(self, name: str, email: str, image: Optional[str] = None) -> Contact:
        contact = Contact(name=name, email=email, image=image)
        self.db.add(contact)
        self.db.commit()
        self.db.refresh(contact)
        logger.info(f"Added contact {contact.id}")
        return contact

    def update(self, contact_id: str, name: Optional[str] = None,
               email: Optional[str] = None, image: Optional[str] = None) -> Contact:
        """
        Update the given fields of a contact; None leaves a field unchanged.

        Raises:
            ContactNotFoundError: unknown id
        """
        contact = self._get(contact_id)
        if name is not None:
            contact.name = name
        if email is not None:
            contact.email = email
        if image is not None:
            contact.image = image
        self.db.commit()
        self.db.refresh(contact)
        logger.info(f"Updated contact {contact_id}")
        return contact

    def delete(self, contact_id: str) -> None:
        contact = self._get(contact_id)
        self.db.delete(contact)
        self.db.commit()
        logger.info(f"Deleted contact {contact_id}")

    def attach_image(self, contact_id: str, data: bytes) -> Contact:
        """
        Store an image inline in the contact record (base64).

        Raises:
            ContactNotFoundError: unknown id
            ValueError: empty or oversized image
        """
        if not data:
            raise ValueError("Image is empty")
        if len(data) > MAX_IMAGE_BYTES:
            raise ValueError(f"Image exceeds {MAX_IMAGE_BYTES} bytes")
        contact = self._get(contact_id)
        contact.image = base64.b64encode(data).decode("ascii")
        self.db.commit()
        self.db.refresh(contact)
        logger.info(f"Attached {len(data)} byte image to contact {contact_id}")
        return contact
