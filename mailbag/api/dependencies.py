"""
Shared FastAPI dependencies
"""
from fastapi import Depends, HTTPException, Request
from sqlalchemy.orm import Session

from mailbag.core.contacts import ContactStore
from mailbag.core.database import get_db
from mailbag.core.email.gateway import MailGateway


def get_gateway(request: Request) -> MailGateway:
    """The process-wide gateway created in the app lifespan."""
    gateway = getattr(request.app.state, "gateway", None)
    if gateway is None:
        raise HTTPException(status_code=503, detail="Mail gateway is not running")
    return gateway


def get_contact_store(db: Session = Depends(get_db)) -> ContactStore:
    return ContactStore(db)
