"""Tests for the escalation chain state machine against the SQLite store."""

import pytest

from shipwatch.core import (
    ConfigurationException,
    InvalidStateException,
    ResourceNotFoundException,
)
from shipwatch.escalation.application import (
    EscalationChainService,
    LadderExhaustedException,
)
from shipwatch.escalation.domain import EscalationAttempt, TriggeredPayload, ContactSnapshot
from shipwatch.escalation.infrastructure.repositories import (
    SQLAlchemyAcknowledgmentRepository,
    SQLAlchemyEscalationAttemptRepository,
    SQLAlchemyEscalationContactRepository,
    SQLAlchemyIssueRepository,
    SQLAlchemyShipmentRepository,
    SQLAlchemyUnitOfWork,
)


async def attempts_for(open_services, shipment_id):
    async with open_services() as services:
        return await services.attempts.list(shipment_id=shipment_id)


class TestOpen:

    @pytest.mark.asyncio
    async def test_open_addresses_first_contact(self, seed, open_services, clock):
        shipment_id = await seed.shipment()
        first, _, _ = await seed.ladder((300, 900, 1800))

        async with open_services() as services:
            attempt = await services.chain.open(shipment_id, reason="Late truck", triggered_by="ops.alice")

        assert attempt.attempt_number == 1
        assert attempt.contact_id == first
        assert attempt.event_kind == "triggered"
        assert attempt.payload.reason == "Late truck"
        assert attempt.payload.triggered_by == "ops.alice"
        assert attempt.payload.contact.timeout_seconds == 300
        assert attempt.created_at == clock.now
        assert attempt.is_open

    @pytest.mark.asyncio
    async def test_default_reason(self, seed, open_services):
        shipment_id = await seed.shipment()
        await seed.ladder()

        async with open_services() as services:
            attempt = await services.chain.open(shipment_id, reason=None, triggered_by="ops")

        assert attempt.payload.reason == "Manual escalation triggered"

    @pytest.mark.asyncio
    async def test_open_twice_is_rejected(self, seed, open_services):
        shipment_id = await seed.shipment()
        await seed.ladder()

        async with open_services() as services:
            await services.chain.open(shipment_id, reason=None, triggered_by="ops")

        async with open_services() as services:
            with pytest.raises(InvalidStateException):
                await services.chain.open(shipment_id, reason=None, triggered_by="ops")

        assert len(await attempts_for(open_services, shipment_id)) == 1

    @pytest.mark.asyncio
    async def test_unknown_shipment(self, seed, open_services):
        await seed.ladder()

        async with open_services() as services:
            with pytest.raises(ResourceNotFoundException):
                await services.chain.open("missing", reason=None, triggered_by="ops")

    @pytest.mark.asyncio
    async def test_issue_of_other_shipment(self, seed, open_services):
        shipment_id = await seed.shipment()
        other = await seed.shipment()
        issue_id = await seed.issue(other, 0.5)
        await seed.ladder()

        async with open_services() as services:
            with pytest.raises(ResourceNotFoundException):
                await services.chain.open(shipment_id, reason=None, triggered_by="ops", issue_id=issue_id)

    @pytest.mark.asyncio
    async def test_no_active_contacts(self, seed, open_services):
        shipment_id = await seed.shipment()
        await seed.contact("inactive", 300, is_active=False)

        async with open_services() as services:
            with pytest.raises(ConfigurationException):
                await services.chain.open(shipment_id, reason=None, triggered_by="ops")

    @pytest.mark.asyncio
    async def test_store_rejects_second_open_attempt(self, seed, open_services, clock):
        shipment_id = await seed.shipment()
        first, _, _ = await seed.ladder()

        async with open_services() as services:
            await services.chain.open(shipment_id, reason=None, triggered_by="ops")

        duplicate = EscalationAttempt(
            id=None,
            shipment_id=shipment_id,
            contact_id=first,
            attempt_number=2,
            event_kind="triggered",
            payload=TriggeredPayload(
                reason="race",
                triggered_by="other-instance",
                contact=ContactSnapshot(
                    id=first, user_id="user-300", position=2, channel_type="slack", timeout_seconds=300
                ),
            ),
            created_at=clock.now,
        )
        async with open_services() as services:
            with pytest.raises(InvalidStateException):
                await services.attempts.create(duplicate)

        assert len(await attempts_for(open_services, shipment_id)) == 1


class TestAdvance:

    @pytest.mark.asyncio
    async def test_advance_moves_to_next_contact(self, seed, open_services):
        shipment_id = await seed.shipment()
        first, second, _ = await seed.ladder((300, 900, 1800))

        async with open_services() as services:
            opened = await services.chain.open(shipment_id, reason=None, triggered_by="ops")
        async with open_services() as services:
            advanced = await services.chain.advance(shipment_id, reason=None, actor="ops.bob")

        assert advanced.attempt_number == 2
        assert advanced.contact_id == second
        assert advanced.event_kind == "advanced"
        assert advanced.payload.previous_contact_id == first
        assert advanced.payload.advanced_by == "ops.bob"
        assert advanced.payload.reason == "Timeout or no response from previous contact"

        attempts = await attempts_for(open_services, shipment_id)
        assert [a.id for a in attempts if a.is_open] == [advanced.id]
        assert attempts[0].id == opened.id
        assert attempts[0].superseded_at is not None
        assert attempts[0].acknowledged is False

    @pytest.mark.asyncio
    async def test_advance_without_chain(self, seed, open_services):
        shipment_id = await seed.shipment()
        await seed.ladder()

        async with open_services() as services:
            with pytest.raises(InvalidStateException):
                await services.chain.advance(shipment_id, reason=None, actor="ops")

    @pytest.mark.asyncio
    async def test_advance_past_last_contact(self, seed, open_services):
        shipment_id = await seed.shipment()
        await seed.ladder((300, 900))

        async with open_services() as services:
            await services.chain.open(shipment_id, reason=None, triggered_by="ops")
        async with open_services() as services:
            await services.chain.advance(shipment_id, reason=None, actor="ops")

        async with open_services() as services:
            with pytest.raises(LadderExhaustedException) as exc_info:
                await services.chain.advance(shipment_id, reason=None, actor="ops")

        assert isinstance(exc_info.value, InvalidStateException)
        assert exc_info.value.message == "No more contacts in escalation ladder"
        assert len(await attempts_for(open_services, shipment_id)) == 2

    @pytest.mark.asyncio
    async def test_stale_expected_attempt(self, seed, open_services):
        shipment_id = await seed.shipment()
        await seed.ladder()

        async with open_services() as services:
            opened = await services.chain.open(shipment_id, reason=None, triggered_by="ops")
        async with open_services() as services:
            await services.chain.advance(shipment_id, reason=None, actor="ops", expected_attempt_id=opened.id)

        async with open_services() as services:
            with pytest.raises(InvalidStateException):
                await services.chain.advance(
                    shipment_id, reason=None, actor="system", expected_attempt_id=opened.id
                )

        assert len(await attempts_for(open_services, shipment_id)) == 2


class TestAcknowledge:

    @pytest.mark.asyncio
    async def test_acknowledge_closes_chain_and_records(self, seed, open_services, clock):
        shipment_id = await seed.shipment()
        await seed.ladder()

        async with open_services() as services:
            opened = await services.chain.open(shipment_id, reason="Stuck at hub", triggered_by="ops")

        clock.advance(120)
        async with open_services() as services:
            acked = await services.chain.acknowledge(shipment_id, method="phone", notes="on it", actor="ops.carol")

        assert acked.id == opened.id
        assert acked.acknowledged is True
        assert acked.ack_method == "phone"
        assert acked.acknowledged_by == "ops.carol"
        assert acked.acknowledged_at == clock.now
        assert acked.payload.kind == "acknowledged"
        assert acked.payload.original.reason == "Stuck at hub"

        async with open_services() as services:
            detail = await services.chain.get_escalation(shipment_id)

        assert detail.chain.current_status == "resolved"
        assert detail.chain.attempts[0].acknowledged is True
        assert len(detail.acknowledgments) == 1
        ack = detail.acknowledgments[0]
        assert ack.shipment_id == shipment_id
        assert ack.method == "phone"
        assert ack.actor == "ops.carol"
        assert ack.notes == "on it"

    @pytest.mark.asyncio
    async def test_acknowledge_without_chain(self, seed, open_services):
        shipment_id = await seed.shipment()

        async with open_services() as services:
            with pytest.raises(InvalidStateException):
                await services.chain.acknowledge(shipment_id, method="email", notes=None, actor="ops")

    @pytest.mark.asyncio
    async def test_acknowledge_unknown_shipment(self, open_services):
        async with open_services() as services:
            with pytest.raises(ResourceNotFoundException):
                await services.chain.acknowledge("missing", method="email", notes=None, actor="ops")

    @pytest.mark.asyncio
    async def test_acknowledgment_record_failure_is_swallowed(
        self, seed, session_factory, open_services, notifier, config_provider, clock
    ):
        shipment_id = await seed.shipment()
        await seed.ladder()

        async with open_services() as services:
            await services.chain.open(shipment_id, reason=None, triggered_by="ops")

        class BrokenAcknowledgmentRepository(SQLAlchemyAcknowledgmentRepository):
            async def create(self, acknowledgment):
                raise RuntimeError("acknowledgments table is locked")

        async with session_factory() as session:
            chain = EscalationChainService(
                shipment_repository=SQLAlchemyShipmentRepository(session),
                issue_repository=SQLAlchemyIssueRepository(session),
                contact_repository=SQLAlchemyEscalationContactRepository(session),
                attempt_repository=SQLAlchemyEscalationAttemptRepository(session),
                acknowledgment_repository=BrokenAcknowledgmentRepository(session),
                unit_of_work=SQLAlchemyUnitOfWork(session),
                notifier=notifier,
                config_provider=config_provider,
                clock=clock,
            )
            acked = await chain.acknowledge(shipment_id, method="sms", notes=None, actor="ops")

        assert acked.acknowledged is True

        async with open_services() as services:
            detail = await services.chain.get_escalation(shipment_id)

        assert detail.chain.is_active is False
        assert detail.acknowledgments == []


class TestChainLifecycle:

    @pytest.mark.asyncio
    async def test_attempt_numbers_keep_growing_across_cycles(self, seed, open_services):
        shipment_id = await seed.shipment()
        await seed.ladder()

        async with open_services() as services:
            await services.chain.open(shipment_id, reason=None, triggered_by="ops")
        async with open_services() as services:
            await services.chain.advance(shipment_id, reason=None, actor="ops")
        async with open_services() as services:
            await services.chain.acknowledge(shipment_id, method="email", notes=None, actor="ops")
        async with open_services() as services:
            reopened = await services.chain.open(shipment_id, reason="Again", triggered_by="ops")

        assert reopened.attempt_number == 3
        attempts = await attempts_for(open_services, shipment_id)
        assert [a.attempt_number for a in attempts] == [1, 2, 3]
        assert sum(1 for a in attempts if a.is_open) == 1

    @pytest.mark.asyncio
    async def test_events_are_published_in_order(self, seed, open_services, sink):
        shipment_id = await seed.shipment()
        await seed.ladder()

        async with open_services() as services:
            await services.chain.open(shipment_id, reason=None, triggered_by="ops")
            await services.chain.advance(shipment_id, reason=None, actor="ops")
            await services.chain.acknowledge(shipment_id, method="email", notes=None, actor="ops")

        assert sink.channels == [
            "escalation.triggered",
            "escalation.advanced",
            "escalation.acknowledged",
        ]
        channel, message = sink.messages[-1]
        assert message["event"] == channel
        assert message["data"]["shipment_id"] == shipment_id
        assert message["data"]["acknowledged"] is True
        assert "timestamp" in message

    @pytest.mark.asyncio
    async def test_sink_failure_does_not_fail_transition(self, seed, open_services, sink):
        shipment_id = await seed.shipment()
        await seed.ladder()
        sink.fail = True

        async with open_services() as services:
            attempt = await services.chain.open(shipment_id, reason=None, triggered_by="ops")

        assert attempt.is_open
        assert len(await attempts_for(open_services, shipment_id)) == 1

    @pytest.mark.asyncio
    async def test_list_escalations_by_status(self, seed, open_services):
        active = await seed.shipment()
        resolved = await seed.shipment()
        await seed.ladder()

        async with open_services() as services:
            await services.chain.open(active, reason=None, triggered_by="ops")
            await services.chain.open(resolved, reason=None, triggered_by="ops")
            await services.chain.advance(resolved, reason=None, actor="ops")
            await services.chain.acknowledge(resolved, method="email", notes=None, actor="ops")

        async with open_services() as services:
            everything = await services.chain.list_escalations()
            only_active = await services.chain.list_escalations(status="active")
            only_resolved = await services.chain.list_escalations(status="resolved")

        assert {c.shipment_id for c in everything} == {active, resolved}
        assert [c.shipment_id for c in only_active] == [active]
        assert [c.shipment_id for c in only_resolved] == [resolved]

    @pytest.mark.asyncio
    async def test_escalate_if_needed_opens_chain(self, seed, open_services):
        shipment_id = await seed.shipment()
        issue_id = await seed.issue(shipment_id, 0.92)
        await seed.ladder()

        async with open_services() as services:
            decision, attempt = await services.chain.escalate_if_needed(
                shipment_id, triggered_by="ops", issue_id=issue_id
            )

        assert decision.should_trigger is True
        assert attempt.issue_id == issue_id
        assert attempt.payload.reason == "High severity issue (score: 0.92)"

        async with open_services() as services:
            decision, attempt = await services.chain.escalate_if_needed(
                shipment_id, triggered_by="ops", issue_id=issue_id
            )

        assert decision.should_trigger is False
        assert attempt is None


class StaleAttemptRepository(SQLAlchemyEscalationAttemptRepository):
    """Keeps returning the attempt that was open when the caller first looked."""

    def __init__(self, session, stale_attempt):
        super().__init__(session)
        self._stale_attempt = stale_attempt

    async def get_open_for_shipment(self, shipment_id):
        return self._stale_attempt


def chain_seeing(session, stale_attempt, notifier, config_provider, clock):
    return EscalationChainService(
        shipment_repository=SQLAlchemyShipmentRepository(session),
        issue_repository=SQLAlchemyIssueRepository(session),
        contact_repository=SQLAlchemyEscalationContactRepository(session),
        attempt_repository=StaleAttemptRepository(session, stale_attempt),
        acknowledgment_repository=SQLAlchemyAcknowledgmentRepository(session),
        unit_of_work=SQLAlchemyUnitOfWork(session),
        notifier=notifier,
        config_provider=config_provider,
        clock=clock,
    )


class TestConcurrentClosure:

    @pytest.mark.asyncio
    async def test_advance_loses_to_acknowledge(
        self, seed, session_factory, open_services, notifier, config_provider, clock, sink
    ):
        shipment_id = await seed.shipment()
        await seed.ladder()

        async with open_services() as services:
            stale = await services.chain.open(shipment_id, reason=None, triggered_by="ops")
        async with open_services() as services:
            await services.chain.acknowledge(shipment_id, method="phone", notes=None, actor="ops.carol")

        async with session_factory() as session:
            chain = chain_seeing(session, stale, notifier, config_provider, clock)
            with pytest.raises(InvalidStateException, match="closed by a concurrent update"):
                await chain.advance(shipment_id, reason=None, actor="ops.bob")

        attempts = await attempts_for(open_services, shipment_id)
        assert len(attempts) == 1
        assert attempts[0].acknowledged is True
        assert attempts[0].acknowledged_by == "ops.carol"
        assert attempts[0].superseded_at is None
        assert sink.channels == ["escalation.triggered", "escalation.acknowledged"]

    @pytest.mark.asyncio
    async def test_acknowledge_loses_to_advance(
        self, seed, session_factory, open_services, notifier, config_provider, clock, sink
    ):
        shipment_id = await seed.shipment()
        _, second, _ = await seed.ladder()

        async with open_services() as services:
            stale = await services.chain.open(shipment_id, reason=None, triggered_by="ops")
        async with open_services() as services:
            await services.chain.advance(shipment_id, reason=None, actor="ops.bob")

        async with session_factory() as session:
            chain = chain_seeing(session, stale, notifier, config_provider, clock)
            with pytest.raises(InvalidStateException, match="closed by a concurrent update"):
                await chain.acknowledge(shipment_id, method="sms", notes=None, actor="ops.carol")

        attempts = await attempts_for(open_services, shipment_id)
        assert [a.attempt_number for a in attempts] == [1, 2]
        assert attempts[0].acknowledged is False
        assert attempts[0].superseded_at is not None
        assert attempts[1].is_open
        assert attempts[1].contact_id == second

        async with open_services() as services:
            detail = await services.chain.get_escalation(shipment_id)
        assert detail.acknowledgments == []
        assert sink.channels == ["escalation.triggered", "escalation.advanced"]
