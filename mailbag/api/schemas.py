"""
Pydantic schemas for FastAPI endpoints
"""
from typing import Optional, List, Dict, Any
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field


class OperationResponse(BaseModel):
    """Result of a mutating mail operation"""
    outcome: str = "success"
    warnings: List[str] = Field(default_factory=list)


class SendResponse(BaseModel):
    """Response after a message was handed to the submission server"""
    message_id: str = Field(..., description="Message-ID header of the sent message")
    outcome: str = "success"
    warnings: List[str] = Field(default_factory=list)


class ErrorResponse(BaseModel):
    """Body of every 4xx/5xx produced for a gateway failure"""
    detail: str
    outcome: str
    error_kind: Optional[str] = None
    error_id: Optional[str] = None


class HealthResponse(BaseModel):
    status: str
    version: str
    database: str
    pools: Dict[str, Dict[str, Any]] = Field(default_factory=dict)


# ============================================================
# Contacts
# ============================================================

class ContactCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    email: str = Field(..., min_length=3, max_length=320, pattern=r"^[^@\s]+@[^@\s]+$")
    image: Optional[str] = Field(None, description="Base64-encoded image")


class ContactUpdate(BaseModel):
    """Partial update; omitted fields are left unchanged"""
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    email: Optional[str] = Field(None, min_length=3, max_length=320, pattern=r"^[^@\s]+@[^@\s]+$")
    image: Optional[str] = None


class ContactResponse(BaseModel):
    id: str
    name: str
    email: str
    image: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)
