"""
Escalation Application DTOs
============================

Data Transfer Objects for the escalation API layer.

These Pydantic models handle serialization/deserialization and validation
for API requests and responses.
"""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from shipwatch.escalation.domain import (
    Acknowledgment,
    EscalationAttempt,
    EscalationChain,
    EscalationContact,
)


# ========== Type Aliases for Literals ==========
ContactTypeStr = Literal["email", "sms", "slack", "phone"]
EscalationStatusStr = Literal["active", "acknowledged", "resolved"]


# ========== Request DTOs ==========

class TriggerEscalationRequest(BaseModel):
    """Request model for opening an escalation chain."""
    shipment_id: str = Field(..., min_length=1, description="Shipment to escalate")
    issue_id: Optional[str] = Field(None, description="Issue that caused the escalation")
    reason: Optional[str] = Field(None, max_length=500, description="Free-text reason")


class AdvanceEscalationRequest(BaseModel):
    """Request model for moving a chain to the next contact."""
    reason: Optional[str] = Field(None, max_length=500, description="Why the chain moves on")


class AcknowledgeEscalationRequest(BaseModel):
    """Request model for closing a chain."""
    method: str = Field(..., min_length=1, max_length=50, description="How the contact responded")
    notes: Optional[str] = Field(None, max_length=2000)


class CreateEscalationContactRequest(BaseModel):
    """Request model for adding a ladder contact."""
    user_id: str = Field(..., min_length=1)
    position: int = Field(..., ge=0, description="Tie-breaker between equal timeouts")
    channel_type: ContactTypeStr
    timeout_seconds: Optional[int] = Field(
        None, ge=1, description="Seconds before moving on; engine default when omitted"
    )
    is_active: bool = True
    label: Optional[str] = Field(None, max_length=100)

    @field_validator("user_id")
    @classmethod
    def validate_user_id(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("user_id cannot be blank")
        return v


# ========== Response DTOs ==========

class EscalationAttemptResponse(BaseModel):
    """Response model for a single attempt."""
    id: str
    shipment_id: str
    issue_id: Optional[str] = None
    contact_id: str
    attempt_number: int
    event_kind: str
    payload: Dict[str, Any]
    acknowledged: bool
    ack_method: Optional[str] = None
    acknowledged_by: Optional[str] = None
    acknowledged_at: Optional[datetime] = None
    superseded_at: Optional[datetime] = None
    created_at: datetime

    @classmethod
    def from_domain(cls, attempt: EscalationAttempt) -> "EscalationAttemptResponse":
        return cls(
            id=attempt.id,
            shipment_id=attempt.shipment_id,
            issue_id=attempt.issue_id,
            contact_id=attempt.contact_id,
            attempt_number=attempt.attempt_number,
            event_kind=attempt.event_kind,
            payload=attempt.payload.model_dump(mode="json"),
            acknowledged=attempt.acknowledged,
            ack_method=attempt.ack_method,
            acknowledged_by=attempt.acknowledged_by,
            acknowledged_at=attempt.acknowledged_at,
            superseded_at=attempt.superseded_at,
            created_at=attempt.created_at,
        )


class EscalationChainResponse(BaseModel):
    """Response model for one shipment's chain in listings."""
    shipment_id: str
    issue_id: Optional[str] = None
    current_status: EscalationStatusStr
    attempt_count: int
    attempts: List[EscalationAttemptResponse] = Field(default_factory=list)

    @classmethod
    def from_domain(cls, chain: EscalationChain) -> "EscalationChainResponse":
        return cls(
            shipment_id=chain.shipment_id,
            issue_id=chain.issue_id,
            current_status=chain.current_status,
            attempt_count=len(chain.attempts),
            attempts=[EscalationAttemptResponse.from_domain(a) for a in chain.attempts],
        )


class EscalationContactResponse(BaseModel):
    """Response model for a ladder contact."""
    id: str
    user_id: str
    position: int
    channel_type: str
    timeout_seconds: Optional[int] = None
    is_active: bool
    label: Optional[str] = None

    @classmethod
    def from_domain(cls, contact: EscalationContact) -> "EscalationContactResponse":
        return cls(
            id=contact.id,
            user_id=contact.user_id,
            position=contact.position,
            channel_type=contact.channel_type,
            timeout_seconds=contact.timeout_seconds,
            is_active=contact.is_active,
            label=contact.label,
        )


class AcknowledgmentResponse(BaseModel):
    """Response model for an acknowledgment record."""
    id: str
    shipment_id: str
    issue_id: Optional[str] = None
    actor: str
    method: str
    notes: Optional[str] = None
    created_at: datetime

    @classmethod
    def from_domain(cls, ack: Acknowledgment) -> "AcknowledgmentResponse":
        return cls(
            id=ack.id,
            shipment_id=ack.shipment_id,
            issue_id=ack.issue_id,
            actor=ack.actor,
            method=ack.method,
            notes=ack.notes,
            created_at=ack.created_at,
        )


class EscalationDetailResponse(EscalationChainResponse):
    """Response model for a single shipment's escalation history."""
    is_active: bool
    current_contact: Optional[EscalationContactResponse] = None
    acknowledgments: List[AcknowledgmentResponse] = Field(default_factory=list)


class TriggerEvaluationResponse(BaseModel):
    """Response model for an issue evaluation."""
    should_trigger: bool
    reason: str
    attempt: Optional[EscalationAttemptResponse] = None


class JobRunResponse(BaseModel):
    """Response model for a manually triggered job run."""
    job: str
    summary: Dict[str, int]
