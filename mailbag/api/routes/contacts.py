"""
Contact endpoints

- GET /contacts - List contacts
- POST /contacts - Add a contact
- PUT /contacts/{id} - Update a contact
- DELETE /contacts/{id} - Delete a contact
- POST /contacts/{id}/image - Attach an image (raw bytes in the request body)
"""
from typing import List
from fastapi import APIRouter, Depends, HTTPException, Request, status
import logging

from mailbag.api.auth import verify_api_key
from mailbag.api.dependencies import get_contact_store
from mailbag.api.schemas import ContactCreate, ContactResponse, ContactUpdate, OperationResponse
from mailbag.core.contacts import ContactNotFoundError, ContactStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/contacts", tags=["contacts"], dependencies=[Depends(verify_api_key)])


@router.get("", response_model=List[ContactResponse])
def list_contacts(store: ContactStore = Depends(get_contact_store)):
    return store.list()


@router.post("", response_model=ContactResponse, status_code=status.HTTP_201_CREATED)
def add_contact(contact: ContactCreate, store: ContactStore = Depends(get_contact_store)):
    return store.add(contact.name, contact.email, contact.image)


@router.put("/{contact_id}", response_model=ContactResponse)
def update_contact(contact_id: str, update: ContactUpdate,
                   store: ContactStore = Depends(get_contact_store)):
    try:
        return store.update(contact_id, name=update.name, email=update.email, image=update.image)
    except ContactNotFoundError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.delete("/{contact_id}", response_model=OperationResponse)
def delete_contact(contact_id: str, store: ContactStore = Depends(get_contact_store)):
    try:
        store.delete(contact_id)
    except ContactNotFoundError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return OperationResponse()


@router.post("/{contact_id}/image", response_model=ContactResponse)
async def attach_image(contact_id: str, request: Request,
                       store: ContactStore = Depends(get_contact_store)):
    """Store the request body (image bytes) inline on the contact."""
    data = await request.body()
    try:
        return store.attach_image(contact_id, data)
    except (ContactNotFoundError, ValueError) as e:
        raise HTTPException(status_code=400, detail=str(e))
