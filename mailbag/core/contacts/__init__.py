"""Contact address book"""
from mailbag.core.database.models import Contact
from .store import ContactStore, ContactNotFoundError

__all__ = ["Contact", "ContactStore", "ContactNotFoundError"]
