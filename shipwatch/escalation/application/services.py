"""
Escalation Application Services
================================

Application services orchestrate the escalation rules and coordinate
between domain entities and repositories.

Following SOLID principles:
- Single Responsibility: policy decides, chain transitions, recorder records
- Dependency Inversion: services depend on the repository interfaces below,
  not on SQLAlchemy
"""

from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Callable, List, Optional, Sequence, Tuple

from shipwatch.config import EscalationEventKind, NotificationChannel
from shipwatch.core import (
    ConfigurationException,
    InvalidStateException,
    ResourceNotFoundException,
)
from shipwatch.escalation.domain import (
    Acknowledgment,
    AcknowledgedPayload,
    AdvancedPayload,
    ContactLadder,
    ContactSnapshot,
    EngineConfig,
    EscalationAttempt,
    EscalationChain,
    EscalationContact,
    Issue,
    Shipment,
    TriggerDecision,
    TriggeredPayload,
    utcnow,
)
from shipwatch.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)

Clock = Callable[[], datetime]


class LadderExhaustedException(InvalidStateException):
    """The current contact is the last rung; there is nobody left to advance to."""


# ========== Repository Interfaces (Dependency Inversion) ==========

class IShipmentRepository(ABC):
    """Interface for shipment data access."""

    @abstractmethod
    async def get_by_id(self, shipment_id: str) -> Optional[Shipment]:
        """Get shipment by ID."""

    @abstractmethod
    async def list_active(self) -> List[Shipment]:
        """List shipments that are not delivered, failed or returned."""

    @abstractmethod
    async def update_risk_score(self, shipment_id: str, score: float) -> None:
        """Persist a new SLA risk score."""


class IIssueRepository(ABC):
    """Interface for delivery issue data access."""

    @abstractmethod
    async def get_by_id(self, issue_id: str) -> Optional[Issue]:
        """Get issue by ID."""

    @abstractmethod
    async def list_for_shipment(self, shipment_id: str) -> List[Issue]:
        """List all issues attached to a shipment."""


class IEscalationContactRepository(ABC):
    """Interface for escalation contact data access."""

    @abstractmethod
    async def list_active(self) -> List[EscalationContact]:
        """List active contacts (unordered; the ladder orders them)."""

    @abstractmethod
    async def list_all(self) -> List[EscalationContact]:
        """List every configured contact."""

    @abstractmethod
    async def create(self, contact: EscalationContact) -> EscalationContact:
        """Create a contact."""


class IEscalationAttemptRepository(ABC):
    """
    Interface for the escalation attempt log.

    ``create``, ``supersede`` and ``acknowledge`` must be atomic against the
    store: a second open attempt for the same shipment, or a reused attempt
    number, is rejected by the store and surfaces as InvalidStateException.
    """

    @abstractmethod
    async def get_open_for_shipment(self, shipment_id: str) -> Optional[EscalationAttempt]:
        """Get the open (unacknowledged, not superseded) attempt, if any."""

    @abstractmethod
    async def list_open(self) -> List[EscalationAttempt]:
        """List all open attempts, oldest first."""

    @abstractmethod
    async def list(
        self,
        shipment_id: Optional[str] = None,
        issue_id: Optional[str] = None
    ) -> List[EscalationAttempt]:
        """List attempts ordered by shipment then attempt number."""

    @abstractmethod
    async def count_for_shipment(self, shipment_id: str) -> int:
        """Count every attempt ever logged for a shipment."""

    @abstractmethod
    async def create(self, attempt: EscalationAttempt) -> EscalationAttempt:
        """Insert a new attempt."""

    @abstractmethod
    async def supersede(self, attempt_id: str, superseded_at: datetime) -> bool:
        """Close an open attempt because the chain moved on. False if it was not open."""

    @abstractmethod
    async def acknowledge(
        self,
        attempt_id: str,
        method: str,
        actor: str,
        acknowledged_at: datetime,
        payload: AcknowledgedPayload
    ) -> bool:
        """Close an open attempt as acknowledged. False if it was not open."""


class IAcknowledgmentRepository(ABC):
    """Interface for acknowledgment side records."""

    @abstractmethod
    async def create(self, acknowledgment: Acknowledgment) -> Acknowledgment:
        """Create an acknowledgment record."""

    @abstractmethod
    async def list_for_shipment(self, shipment_id: str) -> List[Acknowledgment]:
        """List acknowledgments for a shipment, newest first."""


class IUnitOfWork(ABC):
    """Transaction boundary shared by the repositories of one request or item."""

    @abstractmethod
    async def commit(self) -> None:
        """Commit pending changes."""

    @abstractmethod
    async def rollback(self) -> None:
        """Discard pending changes."""


class INotificationSink(ABC):
    """Named-channel publish interface of the real-time fan-out."""

    @abstractmethod
    async def publish(self, channel: str, message: dict) -> None:
        """Publish a message on a channel."""


class IEngineConfigProvider(ABC):
    """Interface for escalation policy access."""

    @abstractmethod
    def get_config(self) -> EngineConfig:
        """Get current engine configuration."""


class StaticConfigProvider(IEngineConfigProvider):
    """Provider for a fixed configuration object."""

    def __init__(self, config: Optional[EngineConfig] = None):
        self._config = config or EngineConfig()

    def get_config(self) -> EngineConfig:
        return self._config


# ========== Application Services ==========

class EscalationNotifier:
    """
    Publishes chain events to the notification sink.

    Events are sent after the transition has committed, so a failing sink is
    logged and never undoes or fails the transition.
    """

    def __init__(self, sink: INotificationSink, clock: Clock = utcnow):
        self._sink = sink
        self._clock = clock

    async def publish(self, channel: str, attempt: EscalationAttempt) -> bool:
        message = {
            "event": channel,
            "timestamp": self._clock().isoformat(),
            "data": attempt.to_dict(),
        }
        try:
            await self._sink.publish(channel, message)
            return True
        except Exception as e:
            logger.error(
                "Failed to publish escalation event",
                extra={
                    "channel": channel,
                    "shipment_id": attempt.shipment_id,
                    "error": str(e),
                }
            )
            return False


class EscalationTriggerPolicy:
    """
    Decides whether a new escalation chain should open.

    Pure decision; callers open the chain when told to.
    """

    def __init__(
        self,
        shipment_repository: IShipmentRepository,
        issue_repository: IIssueRepository,
        attempt_repository: IEscalationAttemptRepository,
        config_provider: IEngineConfigProvider
    ):
        self._shipments = shipment_repository
        self._issues = issue_repository
        self._attempts = attempt_repository
        self._config_provider = config_provider

    @staticmethod
    def decide(
        shipment: Shipment,
        issues: Sequence[Issue],
        has_active_escalation: bool,
        config: EngineConfig
    ) -> TriggerDecision:
        """
        Apply the trigger rules in order; the first match wins.

        Args:
            shipment: Shipment snapshot (its stored risk score is used)
            issues: Issues to consider
            has_active_escalation: Whether an open attempt exists
            config: Thresholds

        Returns:
            TriggerDecision with the matching reason
        """
        if has_active_escalation:
            return TriggerDecision(False, "Active escalation exists for this shipment")

        for issue in issues:
            if issue.severity_score > config.issue_severity_threshold:
                return TriggerDecision(
                    True, f"High severity issue (score: {issue.severity_score})"
                )

        if shipment.is_vip and issues:
            return TriggerDecision(True, "VIP shipment with delivery issues")

        if shipment.sla_risk_score > config.sla_risk_threshold:
            return TriggerDecision(
                True, f"High SLA risk (score: {shipment.sla_risk_score})"
            )

        return TriggerDecision(False, "No escalation criteria met")

    async def evaluate(
        self,
        shipment_id: str,
        issue_id: Optional[str] = None
    ) -> TriggerDecision:
        """
        Load the shipment state and decide.

        When ``issue_id`` is given only that issue is considered.
        """
        shipment = await self._shipments.get_by_id(shipment_id)
        if shipment is None:
            return TriggerDecision(False, "Shipment not found")

        issues = await self._issues.list_for_shipment(shipment_id)
        if issue_id is not None:
            issues = [i for i in issues if i.id == issue_id]

        active = await self._attempts.get_open_for_shipment(shipment_id)
        return self.decide(
            shipment, issues, active is not None, self._config_provider.get_config()
        )


class AcknowledgmentRecorder:
    """
    Writes the acknowledgment side record.

    Best effort: the attempt row already carries the authoritative closure,
    so a failure here is logged and swallowed.
    """

    def __init__(
        self,
        acknowledgment_repository: IAcknowledgmentRepository,
        shipment_repository: IShipmentRepository,
        issue_repository: IIssueRepository,
        unit_of_work: IUnitOfWork,
        clock: Clock = utcnow
    ):
        self._acks = acknowledgment_repository
        self._shipments = shipment_repository
        self._issues = issue_repository
        self._uow = unit_of_work
        self._clock = clock

    async def record(
        self,
        shipment_id: str,
        actor: str,
        method: str,
        notes: Optional[str] = None,
        issue_id: Optional[str] = None
    ) -> Optional[Acknowledgment]:
        try:
            if await self._shipments.get_by_id(shipment_id) is None:
                raise ResourceNotFoundException("Shipment", shipment_id)
            if issue_id and await self._issues.get_by_id(issue_id) is None:
                raise ResourceNotFoundException("Issue", issue_id)

            acknowledgment = await self._acks.create(Acknowledgment(
                id=None,
                shipment_id=shipment_id,
                issue_id=issue_id,
                actor=actor,
                method=method,
                notes=notes,
                created_at=self._clock(),
            ))
            await self._uow.commit()
            return acknowledgment
        except Exception as e:
            await self._uow.rollback()
            logger.error(
                "Failed to create acknowledgment record",
                extra={"shipment_id": shipment_id, "error": str(e)}
            )
            return None


@dataclass
class EscalationDetail:
    """One shipment's chain with its acknowledgments."""
    chain: EscalationChain
    acknowledgments: List[Acknowledgment] = field(default_factory=list)
    current_contact: Optional[EscalationContact] = None


class EscalationChainService:
    """
    State machine for one shipment's ladder walk.

    NoActiveChain --open--> Active(1) --advance--> Active(N+1)
    Active(N) --acknowledge--> Resolved (same as NoActiveChain for open)
    """

    def __init__(
        self,
        shipment_repository: IShipmentRepository,
        issue_repository: IIssueRepository,
        contact_repository: IEscalationContactRepository,
        attempt_repository: IEscalationAttemptRepository,
        acknowledgment_repository: IAcknowledgmentRepository,
        unit_of_work: IUnitOfWork,
        notifier: EscalationNotifier,
        config_provider: IEngineConfigProvider,
        trigger_policy: Optional[EscalationTriggerPolicy] = None,
        clock: Clock = utcnow
    ):
        self._shipments = shipment_repository
        self._issues = issue_repository
        self._contacts = contact_repository
        self._attempts = attempt_repository
        self._acks = acknowledgment_repository
        self._uow = unit_of_work
        self._notifier = notifier
        self._config_provider = config_provider
        self._clock = clock
        self._policy = trigger_policy or EscalationTriggerPolicy(
            shipment_repository, issue_repository, attempt_repository, config_provider
        )
        self._recorder = AcknowledgmentRecorder(
            acknowledgment_repository, shipment_repository, issue_repository,
            unit_of_work, clock
        )

    @property
    def policy(self) -> EscalationTriggerPolicy:
        return self._policy

    async def load_ladder(self) -> ContactLadder:
        config = self._config_provider.get_config()
        contacts = await self._contacts.list_active()
        return ContactLadder(contacts, config.default_contact_timeout_seconds)

    @staticmethod
    def _snapshot(contact: EscalationContact, ladder: ContactLadder) -> ContactSnapshot:
        return ContactSnapshot(
            id=contact.id,
            user_id=contact.user_id,
            position=contact.position,
            channel_type=contact.channel_type,
            timeout_seconds=ladder.timeout_for(contact),
            label=contact.label,
        )

    async def open(
        self,
        shipment_id: str,
        reason: Optional[str],
        triggered_by: str,
        issue_id: Optional[str] = None
    ) -> EscalationAttempt:
        """
        Open a chain addressed to the first ladder contact.

        Raises:
            ResourceNotFoundException: Unknown shipment or issue
            InvalidStateException: A chain is already active
            ConfigurationException: No active contacts
        """
        shipment = await self._shipments.get_by_id(shipment_id)
        if shipment is None:
            raise ResourceNotFoundException("Shipment", shipment_id)

        if issue_id is not None:
            issue = await self._issues.get_by_id(issue_id)
            if issue is None or issue.shipment_id != shipment_id:
                raise ResourceNotFoundException("Issue", issue_id)

        if await self._attempts.get_open_for_shipment(shipment_id) is not None:
            raise InvalidStateException(
                "Active escalation already exists for this shipment", shipment_id
            )

        ladder = await self.load_ladder()
        first_contact = ladder.first()
        if first_contact is None:
            raise ConfigurationException("No active escalation contacts configured")

        attempt_number = await self._attempts.count_for_shipment(shipment_id) + 1
        attempt = await self._attempts.create(EscalationAttempt(
            id=None,
            shipment_id=shipment_id,
            issue_id=issue_id,
            contact_id=first_contact.id,
            attempt_number=attempt_number,
            event_kind=EscalationEventKind.TRIGGERED,
            payload=TriggeredPayload(
                reason=reason or "Manual escalation triggered",
                triggered_by=triggered_by,
                contact=self._snapshot(first_contact, ladder),
            ),
            created_at=self._clock(),
        ))
        await self._uow.commit()

        logger.info(
            "Escalation triggered",
            extra={
                "shipment_id": shipment_id,
                "attempt_number": attempt.attempt_number,
                "contact_id": first_contact.id,
                "triggered_by": triggered_by,
            }
        )
        await self._notifier.publish(NotificationChannel.ESCALATION_TRIGGERED, attempt)
        return attempt

    async def advance(
        self,
        shipment_id: str,
        reason: Optional[str],
        actor: str,
        expected_attempt_id: Optional[str] = None
    ) -> EscalationAttempt:
        """
        Move the active chain to the next ladder contact.

        ``expected_attempt_id`` guards timed advances: if the chain already
        moved past that attempt, nothing happens and InvalidStateException
        is raised.

        Raises:
            InvalidStateException: No active chain, or stale expected attempt
            LadderExhaustedException: Current contact is the last one
        """
        current = await self._attempts.get_open_for_shipment(shipment_id)
        if current is None:
            raise InvalidStateException(
                "No active escalation found for this shipment", shipment_id
            )
        if expected_attempt_id is not None and current.id != expected_attempt_id:
            raise InvalidStateException(
                "Escalation has already moved past this attempt", shipment_id
            )

        ladder = await self.load_ladder()
        next_contact = ladder.next_after(current.contact_id)
        if next_contact is None:
            raise LadderExhaustedException(
                "No more contacts in escalation ladder", shipment_id
            )

        now = self._clock()
        if not await self._attempts.supersede(current.id, now):
            await self._uow.rollback()
            raise InvalidStateException(
                "Escalation was closed by a concurrent update", shipment_id
            )

        attempt_number = await self._attempts.count_for_shipment(shipment_id) + 1
        attempt = await self._attempts.create(EscalationAttempt(
            id=None,
            shipment_id=shipment_id,
            issue_id=current.issue_id,
            contact_id=next_contact.id,
            attempt_number=attempt_number,
            event_kind=EscalationEventKind.ADVANCED,
            payload=AdvancedPayload(
                reason=reason or "Timeout or no response from previous contact",
                advanced_by=actor,
                previous_contact_id=current.contact_id,
                contact=self._snapshot(next_contact, ladder),
            ),
            created_at=now,
        ))
        await self._uow.commit()

        logger.info(
            "Escalation advanced",
            extra={
                "shipment_id": shipment_id,
                "attempt_number": attempt.attempt_number,
                "previous_contact_id": current.contact_id,
                "contact_id": next_contact.id,
                "actor": actor,
            }
        )
        await self._notifier.publish(NotificationChannel.ESCALATION_ADVANCED, attempt)
        return attempt

    async def acknowledge(
        self,
        shipment_id: str,
        method: str,
        notes: Optional[str],
        actor: str
    ) -> EscalationAttempt:
        """
        Close the active chain.

        Raises:
            ResourceNotFoundException: Unknown shipment
            InvalidStateException: No active chain
        """
        if await self._shipments.get_by_id(shipment_id) is None:
            raise ResourceNotFoundException("Shipment", shipment_id)

        current = await self._attempts.get_open_for_shipment(shipment_id)
        if current is None:
            raise InvalidStateException(
                "No active escalation found for this shipment", shipment_id
            )

        now = self._clock()
        payload = AcknowledgedPayload(
            method=method,
            acknowledged_by=actor,
            acknowledged_at=now,
            notes=notes,
            original=current.payload,
        )
        if not await self._attempts.acknowledge(current.id, method, actor, now, payload):
            await self._uow.rollback()
            raise InvalidStateException(
                "Escalation was closed by a concurrent update", shipment_id
            )
        await self._uow.commit()

        acknowledged = replace(
            current,
            acknowledged=True,
            ack_method=method,
            acknowledged_by=actor,
            acknowledged_at=now,
            payload=payload,
        )
        logger.info(
            "Escalation acknowledged",
            extra={
                "shipment_id": shipment_id,
                "attempt_number": acknowledged.attempt_number,
                "method": method,
                "actor": actor,
            }
        )

        await self._recorder.record(
            shipment_id, actor, method, notes=notes, issue_id=current.issue_id
        )
        await self._notifier.publish(NotificationChannel.ESCALATION_ACKNOWLEDGED, acknowledged)
        return acknowledged

    async def escalate_if_needed(
        self,
        shipment_id: str,
        triggered_by: str,
        issue_id: Optional[str] = None
    ) -> Tuple[TriggerDecision, Optional[EscalationAttempt]]:
        """Run the trigger policy and open a chain when it says so."""
        decision = await self._policy.evaluate(shipment_id, issue_id)
        if not decision.should_trigger:
            logger.debug(
                "No escalation needed",
                extra={"shipment_id": shipment_id, "reason": decision.reason}
            )
            return decision, None

        attempt = await self.open(
            shipment_id, reason=decision.reason, triggered_by=triggered_by, issue_id=issue_id
        )
        return decision, attempt

    # ========== Reads ==========

    async def list_escalations(
        self,
        shipment_id: Optional[str] = None,
        issue_id: Optional[str] = None,
        status: Optional[str] = None
    ) -> List[EscalationChain]:
        """Group attempts into chains; ``status`` filters on the derived status."""
        attempts = await self._attempts.list(shipment_id=shipment_id, issue_id=issue_id)

        grouped: "OrderedDict[str, List[EscalationAttempt]]" = OrderedDict()
        for attempt in attempts:
            grouped.setdefault(attempt.shipment_id, []).append(attempt)

        chains = [EscalationChain(sid, items) for sid, items in grouped.items()]
        if status is not None:
            chains = [c for c in chains if c.current_status == status]
        return chains

    async def get_escalation(self, shipment_id: str) -> EscalationDetail:
        """
        Raises:
            ResourceNotFoundException: The shipment was never escalated
        """
        attempts = await self._attempts.list(shipment_id=shipment_id)
        if not attempts:
            raise ResourceNotFoundException("Escalation for shipment", shipment_id)

        chain = EscalationChain(shipment_id, attempts)
        acknowledgments = await self._acks.list_for_shipment(shipment_id)

        current_contact = None
        if chain.current_attempt is not None:
            contacts = {c.id: c for c in await self._contacts.list_all()}
            current_contact = contacts.get(chain.current_attempt.contact_id)

        return EscalationDetail(chain, acknowledgments, current_contact)


class EscalationContactService:
    """Administration of the contact ladder."""

    def __init__(
        self,
        contact_repository: IEscalationContactRepository,
        unit_of_work: IUnitOfWork,
        config_provider: IEngineConfigProvider
    ):
        self._contacts = contact_repository
        self._uow = unit_of_work
        self._config_provider = config_provider

    async def create_contact(
        self,
        user_id: str,
        position: int,
        channel_type: str,
        timeout_seconds: Optional[int] = None,
        is_active: bool = True,
        label: Optional[str] = None
    ) -> EscalationContact:
        contact = await self._contacts.create(EscalationContact(
            id="",
            user_id=user_id,
            position=position,
            channel_type=channel_type,
            timeout_seconds=timeout_seconds,
            is_active=is_active,
            label=label,
        ))
        await self._uow.commit()
        logger.info(
            "Escalation contact created",
            extra={"contact_id": contact.id, "channel_type": channel_type}
        )
        return contact

    async def list_contacts(self) -> List[EscalationContact]:
        """All contacts in ladder order (inactive ones included)."""
        default = self._config_provider.get_config().default_contact_timeout_seconds
        contacts = await self._contacts.list_all()
        return sorted(
            contacts,
            key=lambda c: (c.effective_timeout(default), c.position, c.id)
        )
