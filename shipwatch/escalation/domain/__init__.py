"""
Escalation Domain Layer
=======================

Domain layer for the SLA-risk escalation module.

Contains:
- Entities: Shipment, Issue, EscalationContact, EscalationAttempt,
  Acknowledgment, and the derived ContactLadder / EscalationChain views
- Value Objects: EngineConfig, RiskScoringPolicy, typed attempt payloads
- Domain Services: SLARiskScorer

This layer has no dependencies on infrastructure - pure Python business logic.
"""

from shipwatch.escalation.domain.value_objects import (
    SLARiskScorer,
    RiskScoringPolicy,
    EngineConfig,
    ContactSnapshot,
    TriggeredPayload,
    AdvancedPayload,
    AcknowledgedPayload,
    EscalationPayload,
    TriggerDecision,
    parse_payload,
)
from shipwatch.escalation.domain.entities import (
    Shipment,
    Issue,
    EscalationContact,
    ContactLadder,
    EscalationAttempt,
    Acknowledgment,
    EscalationChain,
    utcnow,
    ensure_utc,
)

__all__ = [
    # Entities
    "Shipment",
    "Issue",
    "EscalationContact",
    "ContactLadder",
    "EscalationAttempt",
    "Acknowledgment",
    "EscalationChain",
    "utcnow",
    "ensure_utc",
    # Value Objects & Services
    "SLARiskScorer",
    "RiskScoringPolicy",
    "EngineConfig",
    "ContactSnapshot",
    "TriggeredPayload",
    "AdvancedPayload",
    "AcknowledgedPayload",
    "EscalationPayload",
    "TriggerDecision",
    "parse_payload",
]
