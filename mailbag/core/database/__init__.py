"""Database module (contact store)"""
from .models import Base, Contact
from .connection import get_db, init_db, close_db

__all__ = [
    'Base',
    'Contact',
    'get_db',
    'init_db',
    'close_db',
]
