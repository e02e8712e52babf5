"""
Escalation Jobs
===============

Periodic jobs of the escalation engine and the wiring that builds the
application services on top of one database session.

Both jobs:
1. Read their work list in a short session
2. Process each item in its own session, so one failing shipment never
   blocks or rolls back the others
3. Return a summary of what happened
"""

from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Callable, Dict, Optional
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shipwatch.config import settings
from shipwatch.core import InvalidStateException, TransientStoreException
from shipwatch.escalation.application.services import (
    EscalationChainService,
    EscalationContactService,
    EscalationNotifier,
    EscalationTriggerPolicy,
    IEngineConfigProvider,
    LadderExhaustedException,
)
from shipwatch.escalation.domain import (
    EngineConfig,
    EscalationAttempt,
    SLARiskScorer,
    Shipment,
    utcnow,
)
from shipwatch.escalation.infrastructure.repositories import (
    SQLAlchemyAcknowledgmentRepository,
    SQLAlchemyEscalationAttemptRepository,
    SQLAlchemyEscalationContactRepository,
    SQLAlchemyIssueRepository,
    SQLAlchemyShipmentRepository,
    SQLAlchemyUnitOfWork,
)
from shipwatch.shared.infrastructure.logging import get_logger, log_latency

logger = get_logger(__name__)

Clock = Callable[[], datetime]


@dataclass
class EscalationServices:
    """Services and repositories bound to one session."""
    shipments: SQLAlchemyShipmentRepository
    issues: SQLAlchemyIssueRepository
    attempts: SQLAlchemyEscalationAttemptRepository
    policy: EscalationTriggerPolicy
    chain: EscalationChainService
    contacts: EscalationContactService


def build_escalation_services(
    session: AsyncSession,
    config_provider: IEngineConfigProvider,
    notifier: EscalationNotifier,
    clock: Clock = utcnow
) -> EscalationServices:
    shipments = SQLAlchemyShipmentRepository(session)
    issues = SQLAlchemyIssueRepository(session)
    contacts = SQLAlchemyEscalationContactRepository(session)
    attempts = SQLAlchemyEscalationAttemptRepository(session)
    acknowledgments = SQLAlchemyAcknowledgmentRepository(session)
    uow = SQLAlchemyUnitOfWork(session)

    policy = EscalationTriggerPolicy(shipments, issues, attempts, config_provider)
    chain = EscalationChainService(
        shipment_repository=shipments,
        issue_repository=issues,
        contact_repository=contacts,
        attempt_repository=attempts,
        acknowledgment_repository=acknowledgments,
        unit_of_work=uow,
        notifier=notifier,
        config_provider=config_provider,
        trigger_policy=policy,
        clock=clock,
    )
    return EscalationServices(
        shipments=shipments,
        issues=issues,
        attempts=attempts,
        policy=policy,
        chain=chain,
        contacts=EscalationContactService(contacts, uow, config_provider),
    )


@dataclass
class RiskScanSummary:
    shipments_scanned: int = 0
    scores_updated: int = 0
    escalations_triggered: int = 0
    failures: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


@dataclass
class LadderAdvanceSummary:
    attempts_checked: int = 0
    advanced: int = 0
    exhausted: int = 0
    failures: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


class PeriodicRiskScanner:
    """
    Rescores active shipments and opens chains for the ones that crossed
    the risk threshold.

    Scores only move when the change exceeds the hysteresis band, so a
    shipment hovering around the threshold is not rewritten (or escalated)
    on every run.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        config_provider: IEngineConfigProvider,
        notifier: EscalationNotifier,
        system_actor: Optional[str] = None,
        clock: Clock = utcnow
    ):
        self._session_factory = session_factory
        self._config_provider = config_provider
        self._notifier = notifier
        self._system_actor = system_actor or settings.system_actor
        self._clock = clock

    async def run(self) -> Dict[str, int]:
        job_run_id = str(uuid4())
        summary = RiskScanSummary()
        now = self._clock()
        config = self._config_provider.get_config()

        with log_latency(logger, "sla_risk_scan", job_run_id=job_run_id):
            try:
                async with self._session_factory() as session:
                    shipments = await SQLAlchemyShipmentRepository(session).list_active()
            except TransientStoreException as e:
                logger.error(
                    "Risk scan could not load shipments",
                    extra={"job_run_id": job_run_id, "error": e.message, "details": e.details}
                )
                return summary.to_dict()

            for shipment in shipments:
                summary.shipments_scanned += 1
                try:
                    async with self._session_factory() as session:
                        await self._scan_one(session, shipment, config, now, summary)
                except Exception as e:
                    summary.failures += 1
                    logger.error(
                        "Risk scan failed for shipment",
                        extra={
                            "job_run_id": job_run_id,
                            "shipment_id": shipment.id,
                            "error": str(e),
                        }
                    )

        logger.info("Risk scan finished", extra={"job_run_id": job_run_id, **summary.to_dict()})
        return summary.to_dict()

    async def _scan_one(
        self,
        session: AsyncSession,
        shipment: Shipment,
        config: EngineConfig,
        now: datetime,
        summary: RiskScanSummary
    ) -> None:
        services = build_escalation_services(session, self._config_provider, self._notifier, self._clock)

        new_score = SLARiskScorer.score(shipment, now, config.risk_scoring)
        if not SLARiskScorer.exceeds_hysteresis(new_score, shipment.sla_risk_score, config.risk_hysteresis):
            return

        await services.shipments.update_risk_score(shipment.id, new_score)
        await session.commit()
        summary.scores_updated += 1
        logger.info(
            "Risk score updated",
            extra={
                "shipment_id": shipment.id,
                "previous_score": shipment.sla_risk_score,
                "score": new_score,
            }
        )

        if new_score <= config.sla_risk_threshold:
            return
        if await services.attempts.get_open_for_shipment(shipment.id) is not None:
            return

        decision = await services.policy.evaluate(shipment.id)
        if not decision.should_trigger:
            return

        await services.chain.open(
            shipment.id,
            reason=f"SLA risk score {new_score:.2f} exceeds threshold {config.sla_risk_threshold}",
            triggered_by=self._system_actor,
        )
        summary.escalations_triggered += 1


class PeriodicLadderAdvancer:
    """
    Moves chains whose current contact timed out to the next contact.

    Each advance names the attempt it expects to replace, so an
    acknowledgment or manual advance that lands first wins and the sweep
    leaves that chain alone.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        config_provider: IEngineConfigProvider,
        notifier: EscalationNotifier,
        system_actor: Optional[str] = None,
        clock: Clock = utcnow
    ):
        self._session_factory = session_factory
        self._config_provider = config_provider
        self._notifier = notifier
        self._system_actor = system_actor or settings.system_actor
        self._clock = clock

    async def run(self) -> Dict[str, int]:
        job_run_id = str(uuid4())
        summary = LadderAdvanceSummary()
        now = self._clock()
        default_timeout = self._config_provider.get_config().default_contact_timeout_seconds

        with log_latency(logger, "ladder_advance", job_run_id=job_run_id):
            try:
                async with self._session_factory() as session:
                    services = build_escalation_services(session, self._config_provider, self._notifier, self._clock)
                    open_attempts = await services.attempts.list_open()
                    contacts = {c.id: c for c in await services.contacts.list_contacts()}
            except TransientStoreException as e:
                logger.error(
                    "Ladder sweep could not load open attempts",
                    extra={"job_run_id": job_run_id, "error": e.message, "details": e.details}
                )
                return summary.to_dict()

            for attempt in open_attempts:
                summary.attempts_checked += 1
                contact = contacts.get(attempt.contact_id)
                timeout = contact.effective_timeout(default_timeout) if contact else default_timeout
                if attempt.elapsed_seconds(now) < timeout:
                    continue

                try:
                    async with self._session_factory() as session:
                        await self._advance_one(session, attempt)
                    summary.advanced += 1
                except LadderExhaustedException:
                    summary.exhausted += 1
                    logger.warning(
                        "Escalation ladder exhausted; chain stays with last contact",
                        extra={
                            "job_run_id": job_run_id,
                            "shipment_id": attempt.shipment_id,
                            "attempt_number": attempt.attempt_number,
                        }
                    )
                except InvalidStateException as e:
                    logger.info(
                        "Chain changed before timed advance; skipping",
                        extra={"shipment_id": attempt.shipment_id, "reason": e.message}
                    )
                except Exception as e:
                    summary.failures += 1
                    logger.error(
                        "Ladder advance failed for shipment",
                        extra={
                            "job_run_id": job_run_id,
                            "shipment_id": attempt.shipment_id,
                            "error": str(e),
                        }
                    )

        logger.info("Ladder sweep finished", extra={"job_run_id": job_run_id, **summary.to_dict()})
        return summary.to_dict()

    async def _advance_one(self, session: AsyncSession, attempt: EscalationAttempt) -> None:
        services = build_escalation_services(session, self._config_provider, self._notifier, self._clock)
        await services.chain.advance(
            attempt.shipment_id,
            reason="timeout expired",
            actor=self._system_actor,
            expected_attempt_id=attempt.id,
        )
