"""
Escalation Value Objects
=========================

Immutable value objects for the escalation domain.

Value objects are defined by their attributes rather than an identity.
They are immutable and can be freely shared.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator

from shipwatch.config import ShipmentStatus, ServiceLevel

if TYPE_CHECKING:
    from shipwatch.escalation.domain.entities import Shipment


class RiskScoringPolicy(BaseModel):
    """
    Constants of the SLA risk heuristic.

    The defaults are the production policy; overriding them changes scores
    for every shipment on the next scan.
    """
    model_config = ConfigDict(frozen=True)

    # No promised delivery date
    undated_base: float = 0.1
    undated_in_transit_bonus: float = 0.1
    undated_vip_bonus: float = 0.1
    undated_same_day_bonus: float = 0.1

    # Overdue bands
    overdue_under_24h: float = 0.7
    overdue_under_48h: float = 0.85
    overdue_beyond: float = 0.95

    # Not yet due bands
    due_under_12h: float = 0.6
    due_under_24h: float = 0.4
    due_under_48h: float = 0.25
    due_later: float = 0.1

    # Additive adjustments
    in_transit_near_deadline: float = 0.15
    pending_near_deadline: float = 0.2
    near_deadline_hours: float = 24.0
    same_day_bonus: float = 0.15
    express_bonus: float = 0.1
    vip_bonus: float = 0.2


class SLARiskScorer:
    """
    Pure functions for SLA risk scoring.

    Stateless utility class; the clock is passed in so results are
    deterministic.
    """

    @staticmethod
    def score(
        shipment: "Shipment",
        now: datetime,
        policy: Optional[RiskScoringPolicy] = None
    ) -> float:
        """
        Estimate how likely a shipment is to miss its promised delivery.

        Args:
            shipment: Shipment to score
            now: Evaluation time (timezone-aware)
            policy: Scoring constants, defaults to the production policy

        Returns:
            Risk score in [0, 1]
        """
        p = policy or RiskScoringPolicy()

        if shipment.status == ShipmentStatus.DELIVERED:
            return 0.0

        hours_until = shipment.hours_until_delivery(now)

        if hours_until is None:
            risk = p.undated_base
            if shipment.status == ShipmentStatus.IN_TRANSIT:
                risk += p.undated_in_transit_bonus
            if shipment.is_vip:
                risk += p.undated_vip_bonus
            if shipment.service_level == ServiceLevel.SAME_DAY:
                risk += p.undated_same_day_bonus
            return SLARiskScorer.clamp(risk)

        if hours_until < 0:
            hours_overdue = abs(hours_until)
            if hours_overdue < 24:
                risk = p.overdue_under_24h
            elif hours_overdue < 48:
                risk = p.overdue_under_48h
            else:
                risk = p.overdue_beyond
        else:
            if hours_until < 12:
                risk = p.due_under_12h
            elif hours_until < 24:
                risk = p.due_under_24h
            elif hours_until < 48:
                risk = p.due_under_48h
            else:
                risk = p.due_later

        if shipment.status == ShipmentStatus.IN_TRANSIT:
            if hours_until < p.near_deadline_hours:
                risk += p.in_transit_near_deadline
        elif shipment.status == ShipmentStatus.PENDING:
            if hours_until < p.near_deadline_hours:
                risk += p.pending_near_deadline

        if shipment.service_level == ServiceLevel.SAME_DAY:
            risk += p.same_day_bonus
        elif shipment.service_level == ServiceLevel.EXPRESS:
            risk += p.express_bonus

        if shipment.is_vip:
            risk += p.vip_bonus

        return SLARiskScorer.clamp(risk)

    @staticmethod
    def clamp(value: float) -> float:
        return max(0.0, min(value, 1.0))

    @staticmethod
    def exceeds_hysteresis(new_score: float, stored_score: float, band: float) -> bool:
        """True when the change is large enough to be worth a write."""
        return abs(new_score - stored_score) > band


class EngineConfig(BaseModel):
    """
    Escalation policy loaded from YAML.

    Handed to components through a config provider; nothing reads it from
    module globals.
    """
    sla_risk_threshold: float = Field(
        default=0.7, ge=0.0, le=1.0,
        description="Risk score above which a shipment escalates"
    )
    issue_severity_threshold: float = Field(
        default=0.8, ge=0.0, le=1.0,
        description="Issue severity above which a shipment escalates"
    )
    risk_hysteresis: float = Field(
        default=0.05, ge=0.0, le=1.0,
        description="Minimum score change before the stored score is rewritten"
    )
    default_contact_timeout_seconds: int = Field(
        default=3600, ge=1,
        description="Timeout used for contacts without one"
    )
    risk_scoring: RiskScoringPolicy = Field(default_factory=RiskScoringPolicy)

    @field_validator("risk_scoring", mode="before")
    @classmethod
    def validate_risk_scoring(cls, v):
        """An empty ``risk_scoring:`` key in YAML means the defaults."""
        return v if v is not None else RiskScoringPolicy()


# ========== Attempt payloads ==========

class ContactSnapshot(BaseModel):
    """Contact details frozen into the attempt at the time it was sent."""
    id: str
    user_id: str
    position: int
    channel_type: str
    timeout_seconds: int
    label: Optional[str] = None


class TriggeredPayload(BaseModel):
    kind: Literal["triggered"] = "triggered"
    reason: str
    triggered_by: str
    contact: ContactSnapshot


class AdvancedPayload(BaseModel):
    kind: Literal["advanced"] = "advanced"
    reason: str
    advanced_by: str
    previous_contact_id: str
    contact: ContactSnapshot


class AcknowledgedPayload(BaseModel):
    """Closing payload; keeps the payload of the attempt it closed."""
    kind: Literal["acknowledged"] = "acknowledged"
    method: str
    acknowledged_by: str
    acknowledged_at: datetime
    notes: Optional[str] = None
    original: Annotated[
        Union[TriggeredPayload, AdvancedPayload],
        Field(discriminator="kind")
    ]


EscalationPayload = Annotated[
    Union[TriggeredPayload, AdvancedPayload, AcknowledgedPayload],
    Field(discriminator="kind")
]

_payload_adapter: TypeAdapter = TypeAdapter(EscalationPayload)


def parse_payload(data: dict) -> EscalationPayload:
    """Rebuild a typed payload from its stored JSON form."""
    return _payload_adapter.validate_python(data)


@dataclass(frozen=True)
class TriggerDecision:
    """Outcome of the trigger policy."""
    should_trigger: bool
    reason: str
