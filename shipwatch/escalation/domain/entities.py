"""
Escalation Domain Entities
===========================

Pure Python domain entities for SLA-risk escalation.

These entities contain the chain and ladder rules and are free of
infrastructure concerns; repositories map ORM rows onto them.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterator, List, Optional, Sequence, Tuple

from shipwatch.config import (
    ShipmentStatus, IssueStatus, EscalationStatus
)
from shipwatch.escalation.domain.value_objects import EscalationPayload


def utcnow() -> datetime:
    """Default clock for services and jobs."""
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive timestamps coming back from the store as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


@dataclass
class Shipment:
    """
    Shipment as seen by the engine.

    The engine only reads shipments, except for ``sla_risk_score`` which it
    owns and keeps in [0, 1].
    """

    id: str
    tracking_number: str
    status: ShipmentStatus
    service_level: str
    is_vip: bool = False
    promised_delivery_at: Optional[datetime] = None
    last_scan_at: Optional[datetime] = None
    sla_risk_score: float = 0.0

    def __post_init__(self):
        if not 0.0 <= self.sla_risk_score <= 1.0:
            raise ValueError("sla_risk_score must be within [0, 1]")
        self.promised_delivery_at = ensure_utc(self.promised_delivery_at)
        self.last_scan_at = ensure_utc(self.last_scan_at)

    def hours_until_delivery(self, now: datetime) -> Optional[float]:
        """Signed hours until the promised time (negative once overdue)."""
        if self.promised_delivery_at is None:
            return None
        return (self.promised_delivery_at - now).total_seconds() / 3600


@dataclass
class Issue:
    """Delivery issue attached to a shipment."""

    id: str
    shipment_id: str
    severity_score: float
    status: str = IssueStatus.OPEN
    issue_type: str = "other"


@dataclass
class EscalationContact:
    """One rung of the escalation ladder."""

    id: str
    user_id: str
    position: int
    channel_type: str
    timeout_seconds: Optional[int] = None
    is_active: bool = True
    label: Optional[str] = None

    def effective_timeout(self, default_seconds: int) -> int:
        """Configured timeout, or the engine default when unset."""
        if self.timeout_seconds is None or self.timeout_seconds <= 0:
            return default_seconds
        return self.timeout_seconds


class ContactLadder:
    """
    Ordered, read-only view of the active escalation contacts.

    Walk order is ascending effective timeout (shorter timeout is contacted
    first), ties broken by position then id.
    """

    def __init__(self, contacts: Sequence[EscalationContact], default_timeout_seconds: int):
        self._default_timeout = default_timeout_seconds
        active = [c for c in contacts if c.is_active]
        self._contacts: Tuple[EscalationContact, ...] = tuple(sorted(
            active,
            key=lambda c: (c.effective_timeout(default_timeout_seconds), c.position, c.id)
        ))

    def __len__(self) -> int:
        return len(self._contacts)

    def __iter__(self) -> Iterator[EscalationContact]:
        return iter(self._contacts)

    @property
    def is_empty(self) -> bool:
        return not self._contacts

    def first(self) -> Optional[EscalationContact]:
        return self._contacts[0] if self._contacts else None

    def index_of(self, contact_id: str) -> Optional[int]:
        for index, contact in enumerate(self._contacts):
            if contact.id == contact_id:
                return index
        return None

    def next_after(self, contact_id: str) -> Optional[EscalationContact]:
        """
        Contact following ``contact_id``.

        Returns None when the contact is last or no longer on the ladder.
        """
        index = self.index_of(contact_id)
        if index is None or index >= len(self._contacts) - 1:
            return None
        return self._contacts[index + 1]

    def timeout_for(self, contact: EscalationContact) -> int:
        return contact.effective_timeout(self._default_timeout)


@dataclass
class EscalationAttempt:
    """
    One notification of one contact about one shipment.

    Append-only: created by open/advance, closed exactly once either by
    acknowledge or by being superseded when the chain advances.
    """

    id: Optional[str]
    shipment_id: str
    contact_id: str
    attempt_number: int
    event_kind: str
    payload: EscalationPayload
    created_at: datetime
    issue_id: Optional[str] = None
    acknowledged: bool = False
    ack_method: Optional[str] = None
    acknowledged_by: Optional[str] = None
    acknowledged_at: Optional[datetime] = None
    superseded_at: Optional[datetime] = None

    def __post_init__(self):
        if self.attempt_number < 1:
            raise ValueError("attempt_number must be positive")
        self.created_at = ensure_utc(self.created_at)
        self.acknowledged_at = ensure_utc(self.acknowledged_at)
        self.superseded_at = ensure_utc(self.superseded_at)

    @property
    def is_open(self) -> bool:
        """Open attempts are the ones still waiting on their contact."""
        return not self.acknowledged and self.superseded_at is None

    def elapsed_seconds(self, now: datetime) -> float:
        return (now - self.created_at).total_seconds()

    def to_dict(self) -> dict:
        """Full attempt record, as carried by notifications."""
        return {
            "id": self.id,
            "shipment_id": self.shipment_id,
            "issue_id": self.issue_id,
            "contact_id": self.contact_id,
            "attempt_number": self.attempt_number,
            "event_kind": self.event_kind,
            "payload": self.payload.model_dump(mode="json"),
            "acknowledged": self.acknowledged,
            "ack_method": self.ack_method,
            "acknowledged_by": self.acknowledged_by,
            "acknowledged_at": self.acknowledged_at.isoformat() if self.acknowledged_at else None,
            "superseded_at": self.superseded_at.isoformat() if self.superseded_at else None,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class Acknowledgment:
    """Side record of who closed a chain, how and when."""

    id: Optional[str]
    shipment_id: str
    actor: str
    method: str
    created_at: datetime
    issue_id: Optional[str] = None
    notes: Optional[str] = None

    def __post_init__(self):
        self.created_at = ensure_utc(self.created_at)


@dataclass
class EscalationChain:
    """
    Derived view of one shipment's escalation attempts.

    Never stored; rebuilt from the attempt log on every read.
    """

    shipment_id: str
    attempts: List[EscalationAttempt] = field(default_factory=list)

    def __post_init__(self):
        self.attempts = sorted(self.attempts, key=lambda a: a.attempt_number)

    @property
    def issue_id(self) -> Optional[str]:
        for attempt in self.attempts:
            if attempt.issue_id:
                return attempt.issue_id
        return None

    @property
    def current_attempt(self) -> Optional[EscalationAttempt]:
        for attempt in reversed(self.attempts):
            if attempt.is_open:
                return attempt
        return None

    @property
    def is_active(self) -> bool:
        return self.current_attempt is not None

    @property
    def current_status(self) -> str:
        """
        Aggregate status for listings.

        Superseded attempts were closed by the ladder moving on, so they do
        not hold a chain back from being resolved.
        """
        if self.is_active:
            return EscalationStatus.ACTIVE
        live = [a for a in self.attempts if a.superseded_at is None]
        if self.attempts and all(a.acknowledged for a in live):
            return EscalationStatus.RESOLVED
        return EscalationStatus.ACKNOWLEDGED
