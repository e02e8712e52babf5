"""
Escalation Application Layer
=============================

Contains:
- Services: trigger policy, chain state machine, acknowledgment recorder
- DTOs: Data transfer objects for API serialization

This layer depends on the domain layer and repository interfaces,
but not on concrete infrastructure implementations.
"""

from shipwatch.escalation.application.dto import (
    TriggerEscalationRequest,
    AdvanceEscalationRequest,
    AcknowledgeEscalationRequest,
    CreateEscalationContactRequest,
    EscalationAttemptResponse,
    EscalationChainResponse,
    EscalationContactResponse,
    AcknowledgmentResponse,
    EscalationDetailResponse,
    TriggerEvaluationResponse,
    JobRunResponse,
)
from shipwatch.escalation.application.services import (
    AcknowledgmentRecorder,
    EscalationChainService,
    EscalationContactService,
    EscalationDetail,
    EscalationNotifier,
    EscalationTriggerPolicy,
    LadderExhaustedException,
    StaticConfigProvider,
    IShipmentRepository,
    IIssueRepository,
    IEscalationContactRepository,
    IEscalationAttemptRepository,
    IAcknowledgmentRepository,
    IUnitOfWork,
    INotificationSink,
    IEngineConfigProvider,
)

__all__ = [
    # DTOs
    "TriggerEscalationRequest",
    "AdvanceEscalationRequest",
    "AcknowledgeEscalationRequest",
    "CreateEscalationContactRequest",
    "EscalationAttemptResponse",
    "EscalationChainResponse",
    "EscalationContactResponse",
    "AcknowledgmentResponse",
    "EscalationDetailResponse",
    "TriggerEvaluationResponse",
    "JobRunResponse",
    # Services
    "AcknowledgmentRecorder",
    "EscalationChainService",
    "EscalationContactService",
    "EscalationDetail",
    "EscalationNotifier",
    "EscalationTriggerPolicy",
    "LadderExhaustedException",
    "StaticConfigProvider",
    # Interfaces
    "IShipmentRepository",
    "IIssueRepository",
    "IEscalationContactRepository",
    "IEscalationAttemptRepository",
    "IAcknowledgmentRepository",
    "IUnitOfWork",
    "INotificationSink",
    "IEngineConfigProvider",
]
