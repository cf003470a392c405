"""
Message endpoints

- GET /messages/{mailbox}/{id} - Decoded, sanitized body
- DELETE /messages/{mailbox}/{id} - Delete (mark + expunge)
- POST /messages/{mailbox}/{id}/purge - Retry the expunge after a partial failure
- POST /messages - Send a message
"""
from fastapi import APIRouter, Depends, status
import logging

from mailbag.api.auth import verify_api_key
from mailbag.api.dependencies import get_gateway
from mailbag.api.schemas import ErrorResponse, OperationResponse, SendResponse
from mailbag.core.email.gateway import MailGateway
from mailbag.core.email.models import MessageBody, OutboundMessage

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/messages",
    tags=["messages"],
    dependencies=[Depends(verify_api_key)],
    responses={400: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
)


@router.post("", response_model=SendResponse, status_code=status.HTTP_201_CREATED)
async def send_message(outbound: OutboundMessage, gateway: MailGateway = Depends(get_gateway)):
    """
    Send a message.

    A 500 with outcome "unknown" means the connection dropped after the
    message data was handed over; check the Sent folder before resending.
    """
    result = await gateway.send_message(outbound)
    message_id = result.unwrap()
    return SendResponse(message_id=message_id, warnings=result.warnings)


@router.get("/{mailbox:path}/{message_id}", response_model=MessageBody)
async def get_message(mailbox: str, message_id: int, gateway: MailGateway = Depends(get_gateway)):
    """Fetch one message body. Reading does not mark the message \\Seen."""
    result = await gateway.get_message_body(mailbox, message_id)
    return result.unwrap()


@router.delete("/{mailbox:path}/{message_id}", response_model=OperationResponse)
async def delete_message(mailbox: str, message_id: int, gateway: MailGateway = Depends(get_gateway)):
    """
    Delete a message.

    Responds 500 with outcome "partial_failure" when the message was marked
    deleted but not expunged; POST .../purge retries only the expunge.
    """
    result = await gateway.delete_message(mailbox, message_id)
    result.unwrap()
    return OperationResponse(outcome=result.outcome.value, warnings=result.warnings)


@router.post("/{mailbox:path}/{message_id}/purge", response_model=OperationResponse)
async def purge_message(mailbox: str, message_id: int, gateway: MailGateway = Depends(get_gateway)):
    """Expunge a message already marked deleted."""
    result = await gateway.purge_message(mailbox, message_id)
    result.unwrap()
    return OperationResponse(outcome=result.outcome.value, warnings=result.warnings)
