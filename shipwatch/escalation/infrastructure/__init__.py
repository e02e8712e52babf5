"""
Escalation Infrastructure Layer
================================

Infrastructure implementations for the escalation engine:
- Models: SQLAlchemy ORM models
- Repositories: Data access layer
- External: Policy file watcher, notification sinks, scheduler
"""

from shipwatch.escalation.infrastructure.models import (
    ShipmentModel,
    IssueModel,
    EscalationContactModel,
    EscalationAttemptModel,
    AcknowledgmentModel,
)
from shipwatch.escalation.infrastructure.repositories import (
    SQLAlchemyShipmentRepository,
    SQLAlchemyIssueRepository,
    SQLAlchemyEscalationContactRepository,
    SQLAlchemyEscalationAttemptRepository,
    SQLAlchemyAcknowledgmentRepository,
    SQLAlchemyUnitOfWork,
)
from shipwatch.escalation.infrastructure.external import (
    EngineConfigManager,
    CircuitBreaker,
    SlackNotificationSink,
    ChannelBroadcaster,
    FanoutNotificationSink,
    EscalationScheduler,
)

__all__ = [
    "ShipmentModel",
    "IssueModel",
    "EscalationContactModel",
    "EscalationAttemptModel",
    "AcknowledgmentModel",
    "SQLAlchemyShipmentRepository",
    "SQLAlchemyIssueRepository",
    "SQLAlchemyEscalationContactRepository",
    "SQLAlchemyEscalationAttemptRepository",
    "SQLAlchemyAcknowledgmentRepository",
    "SQLAlchemyUnitOfWork",
    "EngineConfigManager",
    "CircuitBreaker",
    "SlackNotificationSink",
    "ChannelBroadcaster",
    "FanoutNotificationSink",
    "EscalationScheduler",
]
