"""
Mailbox endpoints

- GET /mailboxes - List folders with message counts
- GET /mailboxes/{mailbox} - List message envelopes in a folder
"""
from typing import List
from fastapi import APIRouter, Depends
import logging

from mailbag.api.auth import verify_api_key
from mailbag.api.dependencies import get_gateway
from mailbag.api.schemas import ErrorResponse
from mailbag.core.email.gateway import MailGateway
from mailbag.core.email.models import Mailbox, MessageEnvelope

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/mailboxes",
    tags=["mailboxes"],
    dependencies=[Depends(verify_api_key)],
    responses={400: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
)


@router.get("", response_model=List[Mailbox])
async def list_mailboxes(gateway: MailGateway = Depends(get_gateway)):
    """List all folders in server order."""
    result = await gateway.list_mailboxes()
    return result.unwrap()


@router.get("/{mailbox:path}", response_model=List[MessageEnvelope])
async def list_messages(mailbox: str, gateway: MailGateway = Depends(get_gateway)):
    """
    List message envelopes (no bodies) in a folder.

    Nested folders are addressed with their full name, e.g. /mailboxes/Archive/2024.
    """
    result = await gateway.list_messages(mailbox)
    return result.unwrap()
