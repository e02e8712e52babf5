"""
Escalation Infrastructure Models
=================================

SQLAlchemy ORM models for the escalation module.

These are the database representations of our domain entities.
They belong in the infrastructure layer, not the domain layer.
"""

from datetime import datetime, timezone
from typing import Any, Optional
from uuid import uuid4

from sqlalchemy import (
    JSON, Boolean, DateTime, Float, ForeignKey, Index, Integer, String, Text,
    UniqueConstraint, text,
)
from sqlalchemy.orm import Mapped, mapped_column

from shipwatch.infrastructure.database import Base
from shipwatch.config import ShipmentStatus, ServiceLevel, IssueStatus


def _new_id() -> str:
    return str(uuid4())


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ShipmentModel(Base):
    """
    Database model for Shipment entity.

    Maps to the 'shipments' table. Owned by the shipment service; the engine
    only writes ``sla_risk_score``.
    """
    __tablename__ = "shipments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    tracking_number: Mapped[str] = mapped_column(String(100), unique=True, index=True, nullable=False)

    status: Mapped[str] = mapped_column(String(50), nullable=False, default=ShipmentStatus.PENDING, index=True)
    service_level: Mapped[str] = mapped_column(String(50), nullable=False, default=ServiceLevel.STANDARD)
    is_vip: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    promised_delivery_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_scan_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    sla_risk_score: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)


class IssueModel(Base):
    """Database model for delivery issues. Maps to 'delivery_issues'."""
    __tablename__ = "delivery_issues"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    shipment_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("shipments.id", ondelete="CASCADE"), nullable=False, index=True
    )

    issue_type: Mapped[str] = mapped_column(String(50), nullable=False, default="other")
    severity_score: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    status: Mapped[str] = mapped_column(String(50), nullable=False, default=IssueStatus.OPEN)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)


class EscalationContactModel(Base):
    """Database model for ladder contacts. Maps to 'escalation_contacts'."""
    __tablename__ = "escalation_contacts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(100), nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    label: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    channel_type: Mapped[str] = mapped_column(String(20), nullable=False)
    timeout_seconds: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)


class EscalationAttemptModel(Base):
    """
    Database model for the append-only attempt log.

    Maps to the 'escalation_attempts' table. The partial unique index keeps
    at most one open attempt per shipment, even with concurrent writers.
    """
    __tablename__ = "escalation_attempts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    shipment_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("shipments.id", ondelete="CASCADE"), nullable=False, index=True
    )
    issue_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("delivery_issues.id", ondelete="SET NULL"), nullable=True, index=True
    )
    contact_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("escalation_contacts.id"), nullable=False
    )

    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False)
    event_kind: Mapped[str] = mapped_column(String(20), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)

    # Closure
    acknowledged: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    ack_method: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    acknowledged_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    acknowledged_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    superseded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)

    __table_args__ = (
        UniqueConstraint("shipment_id", "attempt_number", name="uq_escalation_attempts_number"),
        Index(
            "uq_escalation_attempts_open_shipment",
            "shipment_id",
            unique=True,
            postgresql_where=text("acknowledged = false AND superseded_at IS NULL"),
            sqlite_where=text("acknowledged = 0 AND superseded_at IS NULL"),
        ),
    )


class AcknowledgmentModel(Base):
    """Database model for acknowledgment records. Maps to 'acknowledgments'."""
    __tablename__ = "acknowledgments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    shipment_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("shipments.id", ondelete="CASCADE"), nullable=False, index=True
    )
    issue_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("delivery_issues.id", ondelete="SET NULL"), nullable=True
    )
    actor: Mapped[str] = mapped_column(String(100), nullable=False)
    method: Mapped[str] = mapped_column(String(50), nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)
