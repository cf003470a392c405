"""
API Routes
"""
from mailbag.api.routes import mailboxes, messages, contacts

__all__ = ["mailboxes", "messages", "contacts"]
