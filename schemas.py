"""
API Request / Response schemas（Pydantic）
"""
from datetime import datetime
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from models import Role, RoomStatus, EvidenceType, EvidenceStatus, TransactionStatus


# ============ Room ============

class RoomCreate(BaseModel):
    ttl_days: Optional[int] = Field(None, gt=0, description="Room lifetime in days")


class RoomExtend(BaseModel):
    days: int = Field(..., gt=0)


class RoomReset(BaseModel):
    reason: str = Field(..., description="Why the GM is resetting the room")


class OccupantSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    role: Role
    name: str
    is_online: bool
    joined_at: datetime


class RoomResponse(BaseModel):
    room_id: UUID
    room_number: str
    status: RoomStatus
    expires_at: Optional[datetime]
    is_expired: bool
    buyer: Optional[OccupantSummary] = None
    seller: Optional[OccupantSummary] = None


class AvailabilityResponse(BaseModel):
    room_id: UUID
    role: Role
    available: bool


# ============ Occupant ============

class JoinRequest(BaseModel):
    role: Role
    name: str = Field(..., min_length=1, max_length=255)
    contact: str = Field(..., min_length=1, max_length=64)
    identifier: Optional[str] = Field(None, max_length=128)


class JoinResponse(BaseModel):
    occupant_id: UUID
    room_id: UUID
    role: Role
    name: str
    session_token: str


# ============ Transaction ============

class TransactionOpen(BaseModel):
    amount: Decimal = Field(Decimal("0"), ge=0)
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    commission: Optional[Decimal] = Field(None, ge=0)
    fee: Optional[Decimal] = Field(None, ge=0)


class TransactionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    transaction_number: str
    room_id: UUID
    buyer_id: Optional[UUID]
    seller_id: Optional[UUID]
    amount: Decimal
    currency: str
    commission: Decimal
    fee: Decimal
    total_amount: Decimal
    status: TransactionStatus
    payment_rejection_reason: Optional[str]
    shipping_rejection_reason: Optional[str]
    buyer_notes: Optional[str]
    gm_notes: Optional[str]
    status_reason: Optional[str]
    created_at: datetime
    completed_at: Optional[datetime]
    progress: int = 0
    current_action: str = ""


class ConfirmReceipt(BaseModel):
    notes: Optional[str] = None


class EvidenceFileResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    transaction_id: UUID
    room_id: UUID
    file_type: EvidenceType
    file_name: str
    file_size: int
    mime_type: str
    uploaded_by: Role
    status: EvidenceStatus
    rejection_reason: Optional[str]
    created_at: datetime
    verified_at: Optional[datetime]


# ============ GM ============

class ReasonRequest(BaseModel):
    reason: str


class NotesRequest(BaseModel):
    notes: Optional[str] = None


class AuditEntryResponse(BaseModel):
    sequence: int
    action: str
    actor_name: str
    actor_role: str
    description: Optional[str]
    created_at: datetime


class TimelineResponse(BaseModel):
    room_id: UUID
    entries: List[AuditEntryResponse]


class ErrorDetail(BaseModel):
    kind: str
    reason: str


class ErrorResponse(BaseModel):
    detail: ErrorDetail
