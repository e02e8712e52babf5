"""
Escalation Infrastructure Repositories
=======================================

Concrete implementations of repository interfaces using SQLAlchemy.

This layer contains the data access logic: how we store and retrieve
entities from the database, and how store failures are reported to the
application layer.
"""

from contextlib import contextmanager
from datetime import datetime
from typing import List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from shipwatch.config import TERMINAL_SHIPMENT_STATUSES
from shipwatch.core import InvalidStateException, TransientStoreException
from shipwatch.escalation.application.services import (
    IAcknowledgmentRepository,
    IEscalationAttemptRepository,
    IEscalationContactRepository,
    IIssueRepository,
    IShipmentRepository,
    IUnitOfWork,
)
from shipwatch.escalation.domain import (
    Acknowledgment,
    AcknowledgedPayload,
    EscalationAttempt,
    EscalationContact,
    Issue,
    SLARiskScorer,
    Shipment,
    parse_payload,
)
from shipwatch.escalation.infrastructure.models import (
    AcknowledgmentModel,
    EscalationAttemptModel,
    EscalationContactModel,
    IssueModel,
    ShipmentModel,
)
from shipwatch.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


@contextmanager
def _store_errors(operation: str):
    """Report connectivity failures as retryable."""
    try:
        yield
    except (OperationalError, InterfaceError) as e:
        raise TransientStoreException(
            f"Store unavailable during {operation}",
            details={"error": str(e.orig) if e.orig is not None else str(e)}
        ) from e


# ========== Mappers ==========

def _to_shipment(model: ShipmentModel) -> Shipment:
    score = model.sla_risk_score or 0.0
    if not 0.0 <= score <= 1.0:
        # The shipment service writes this column too
        logger.warning(
            "Stored risk score out of range, clamping",
            extra={"shipment_id": model.id, "sla_risk_score": score}
        )
        score = SLARiskScorer.clamp(score)
    return Shipment(
        id=model.id,
        tracking_number=model.tracking_number,
        status=model.status,
        service_level=model.service_level,
        is_vip=model.is_vip,
        promised_delivery_at=model.promised_delivery_at,
        last_scan_at=model.last_scan_at,
        sla_risk_score=score,
    )


def _to_issue(model: IssueModel) -> Issue:
    return Issue(
        id=model.id,
        shipment_id=model.shipment_id,
        severity_score=model.severity_score,
        status=model.status,
        issue_type=model.issue_type,
    )


def _to_contact(model: EscalationContactModel) -> EscalationContact:
    return EscalationContact(
        id=model.id,
        user_id=model.user_id,
        position=model.position,
        channel_type=model.channel_type,
        timeout_seconds=model.timeout_seconds,
        is_active=model.is_active,
        label=model.label,
    )


def _to_attempt(model: EscalationAttemptModel) -> EscalationAttempt:
    return EscalationAttempt(
        id=model.id,
        shipment_id=model.shipment_id,
        issue_id=model.issue_id,
        contact_id=model.contact_id,
        attempt_number=model.attempt_number,
        event_kind=model.event_kind,
        payload=parse_payload(model.payload),
        created_at=model.created_at,
        acknowledged=model.acknowledged,
        ack_method=model.ack_method,
        acknowledged_by=model.acknowledged_by,
        acknowledged_at=model.acknowledged_at,
        superseded_at=model.superseded_at,
    )


def _to_acknowledgment(model: AcknowledgmentModel) -> Acknowledgment:
    return Acknowledgment(
        id=model.id,
        shipment_id=model.shipment_id,
        issue_id=model.issue_id,
        actor=model.actor,
        method=model.method,
        notes=model.notes,
        created_at=model.created_at,
    )


# ========== Repositories ==========

class SQLAlchemyShipmentRepository(IShipmentRepository):
    """
    SQLAlchemy implementation of shipment repository.

    Read-only apart from the risk score column.
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    async def get_by_id(self, shipment_id: str) -> Optional[Shipment]:
        with _store_errors("get shipment"):
            model = await self._session.get(ShipmentModel, shipment_id)
        return _to_shipment(model) if model else None

    async def list_active(self) -> List[Shipment]:
        stmt = (
            select(ShipmentModel)
            .where(ShipmentModel.status.notin_(TERMINAL_SHIPMENT_STATUSES))
            .order_by(ShipmentModel.created_at.asc(), ShipmentModel.id.asc())
        )
        with _store_errors("list active shipments"):
            result = await self._session.execute(stmt)
        return [_to_shipment(m) for m in result.scalars().all()]

    async def update_risk_score(self, shipment_id: str, score: float) -> None:
        stmt = (
            update(ShipmentModel)
            .where(ShipmentModel.id == shipment_id)
            .values(sla_risk_score=score)
            .execution_options(synchronize_session=False)
        )
        with _store_errors("update risk score"):
            await self._session.execute(stmt)


class SQLAlchemyIssueRepository(IIssueRepository):
    """SQLAlchemy implementation of issue repository."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def get_by_id(self, issue_id: str) -> Optional[Issue]:
        with _store_errors("get issue"):
            model = await self._session.get(IssueModel, issue_id)
        return _to_issue(model) if model else None

    async def list_for_shipment(self, shipment_id: str) -> List[Issue]:
        stmt = (
            select(IssueModel)
            .where(IssueModel.shipment_id == shipment_id)
            .order_by(IssueModel.created_at.asc(), IssueModel.id.asc())
        )
        with _store_errors("list issues"):
            result = await self._session.execute(stmt)
        return [_to_issue(m) for m in result.scalars().all()]


class SQLAlchemyEscalationContactRepository(IEscalationContactRepository):
    """SQLAlchemy implementation of contact repository."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def list_active(self) -> List[EscalationContact]:
        stmt = select(EscalationContactModel).where(EscalationContactModel.is_active.is_(True))
        with _store_errors("list active contacts"):
            result = await self._session.execute(stmt)
        return [_to_contact(m) for m in result.scalars().all()]

    async def list_all(self) -> List[EscalationContact]:
        with _store_errors("list contacts"):
            result = await self._session.execute(select(EscalationContactModel))
        return [_to_contact(m) for m in result.scalars().all()]

    async def create(self, contact: EscalationContact) -> EscalationContact:
        model = EscalationContactModel(
            user_id=contact.user_id,
            position=contact.position,
            label=contact.label,
            channel_type=contact.channel_type,
            timeout_seconds=contact.timeout_seconds,
            is_active=contact.is_active,
        )
        self._session.add(model)
        with _store_errors("create contact"):
            await self._session.flush()
        return _to_contact(model)


class SQLAlchemyEscalationAttemptRepository(IEscalationAttemptRepository):
    """
    SQLAlchemy implementation of the attempt log.

    Closing an attempt is a conditional UPDATE on the open state, so two
    writers racing on the same attempt see exactly one success.
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    @staticmethod
    def _open_conditions():
        return (
            EscalationAttemptModel.acknowledged.is_(False),
            EscalationAttemptModel.superseded_at.is_(None),
        )

    async def get_open_for_shipment(self, shipment_id: str) -> Optional[EscalationAttempt]:
        stmt = (
            select(EscalationAttemptModel)
            .where(EscalationAttemptModel.shipment_id == shipment_id, *self._open_conditions())
            .order_by(EscalationAttemptModel.attempt_number.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        with _store_errors("get open attempt"):
            result = await self._session.execute(stmt)
        model = result.scalar_one_or_none()
        return _to_attempt(model) if model else None

    async def list_open(self) -> List[EscalationAttempt]:
        stmt = (
            select(EscalationAttemptModel)
            .where(*self._open_conditions())
            .order_by(EscalationAttemptModel.created_at.asc(), EscalationAttemptModel.id.asc())
            .execution_options(populate_existing=True)
        )
        with _store_errors("list open attempts"):
            result = await self._session.execute(stmt)
        return [_to_attempt(m) for m in result.scalars().all()]

    async def list(
        self,
        shipment_id: Optional[str] = None,
        issue_id: Optional[str] = None
    ) -> List[EscalationAttempt]:
        stmt = select(EscalationAttemptModel)
        if shipment_id is not None:
            stmt = stmt.where(EscalationAttemptModel.shipment_id == shipment_id)
        if issue_id is not None:
            stmt = stmt.where(EscalationAttemptModel.issue_id == issue_id)
        stmt = stmt.order_by(
            EscalationAttemptModel.shipment_id.asc(),
            EscalationAttemptModel.attempt_number.asc()
        )
        stmt = stmt.execution_options(populate_existing=True)
        with _store_errors("list attempts"):
            result = await self._session.execute(stmt)
        return [_to_attempt(m) for m in result.scalars().all()]

    async def count_for_shipment(self, shipment_id: str) -> int:
        stmt = (
            select(func.count())
            .select_from(EscalationAttemptModel)
            .where(EscalationAttemptModel.shipment_id == shipment_id)
        )
        with _store_errors("count attempts"):
            result = await self._session.execute(stmt)
        return int(result.scalar_one())

    async def create(self, attempt: EscalationAttempt) -> EscalationAttempt:
        model = EscalationAttemptModel(
            shipment_id=attempt.shipment_id,
            issue_id=attempt.issue_id,
            contact_id=attempt.contact_id,
            attempt_number=attempt.attempt_number,
            event_kind=attempt.event_kind,
            payload=attempt.payload.model_dump(mode="json"),
            acknowledged=attempt.acknowledged,
            created_at=attempt.created_at,
        )
        self._session.add(model)
        try:
            with _store_errors("create attempt"):
                await self._session.flush()
        except IntegrityError as e:
            await self._session.rollback()
            raise InvalidStateException(
                "Another escalation attempt was recorded for this shipment concurrently",
                shipment_id=attempt.shipment_id
            ) from e
        return _to_attempt(model)

    async def supersede(self, attempt_id: str, superseded_at: datetime) -> bool:
        stmt = (
            update(EscalationAttemptModel)
            .where(EscalationAttemptModel.id == attempt_id, *self._open_conditions())
            .values(superseded_at=superseded_at)
            .execution_options(synchronize_session=False)
        )
        with _store_errors("supersede attempt"):
            result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def acknowledge(
        self,
        attempt_id: str,
        method: str,
        actor: str,
        acknowledged_at: datetime,
        payload: AcknowledgedPayload
    ) -> bool:
        stmt = (
            update(EscalationAttemptModel)
            .where(EscalationAttemptModel.id == attempt_id, *self._open_conditions())
            .values(
                acknowledged=True,
                ack_method=method,
                acknowledged_by=actor,
                acknowledged_at=acknowledged_at,
                payload=payload.model_dump(mode="json"),
            )
            .execution_options(synchronize_session=False)
        )
        with _store_errors("acknowledge attempt"):
            result = await self._session.execute(stmt)
        return result.rowcount == 1


class SQLAlchemyAcknowledgmentRepository(IAcknowledgmentRepository):
    """SQLAlchemy implementation of acknowledgment repository."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def create(self, acknowledgment: Acknowledgment) -> Acknowledgment:
        model = AcknowledgmentModel(
            shipment_id=acknowledgment.shipment_id,
            issue_id=acknowledgment.issue_id,
            actor=acknowledgment.actor,
            method=acknowledgment.method,
            notes=acknowledgment.notes,
            created_at=acknowledgment.created_at,
        )
        self._session.add(model)
        with _store_errors("create acknowledgment"):
            await self._session.flush()
        return _to_acknowledgment(model)

    async def list_for_shipment(self, shipment_id: str) -> List[Acknowledgment]:
        stmt = (
            select(AcknowledgmentModel)
            .where(AcknowledgmentModel.shipment_id == shipment_id)
            .order_by(AcknowledgmentModel.created_at.desc())
        )
        with _store_errors("list acknowledgments"):
            result = await self._session.execute(stmt)
        return [_to_acknowledgment(m) for m in result.scalars().all()]


class SQLAlchemyUnitOfWork(IUnitOfWork):
    """Commit/rollback on the session shared by the repositories above."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def commit(self) -> None:
        try:
            with _store_errors("commit"):
                await self._session.commit()
        except IntegrityError as e:
            await self._session.rollback()
            raise InvalidStateException(
                "Escalation state changed concurrently; transaction rolled back"
            ) from e

    async def rollback(self) -> None:
        await self._session.rollback()
