"""
Tests for follow-up sequence definitions and the sequence store.
"""
import uuid
from datetime import timedelta

import pytest
from pydantic import ValidationError

from intakewire.models.followup import FollowupSequence
from intakewire.schemas.followup import SequenceCreate, SequenceStep, SequenceUpdate, StopRules
from intakewire.services.followup_sequences import (
    create_sequence,
    find_trigger_sequence,
    get_sequence,
    list_sequences,
    load_stop_rules,
    terminal_statuses,
    update_sequence,
)
from intakewire.utils.timezone import utcnow

STEPS = [
    {"delay_minutes": 0, "channel": "sms", "message_template": "Hi {first_name}"},
    {"delay_minutes": 30, "channel": "email", "message_template": "Following up"},
]


class TestSchemas:
    def test_valid_sequence(self):
        payload = SequenceCreate(name="Nurture", steps=STEPS)
        assert payload.trigger_event == "lead.created"
        assert payload.stop_rules.stop_on_response is True

    def test_rejects_decreasing_delays(self):
        with pytest.raises(ValidationError, match="non-decreasing"):
            SequenceCreate(name="Bad", steps=list(reversed(STEPS)))

    def test_equal_delays_allowed(self):
        steps = [dict(STEPS[0]), dict(STEPS[0])]
        assert len(SequenceCreate(name="Twice", steps=steps).steps) == 2

    def test_rejects_unknown_channel(self):
        with pytest.raises(ValidationError):
            SequenceStep(delay_minutes=0, channel="fax", message_template="x")

    def test_rejects_negative_delay(self):
        with pytest.raises(ValidationError):
            SequenceStep(delay_minutes=-1, channel="sms", message_template="x")

    def test_rejects_empty_steps(self):
        with pytest.raises(ValidationError):
            SequenceCreate(name="Empty", steps=[])

    def test_update_checks_order_only_when_given(self):
        assert SequenceUpdate(name="Renamed").steps is None
        with pytest.raises(ValidationError):
            SequenceUpdate(steps=list(reversed(STEPS)))


class TestStopRules:
    def test_defaults_when_unset(self):
        rules = load_stop_rules(FollowupSequence(name="x", steps=[], stop_rules=None))
        assert rules == StopRules()

    def test_terminal_statuses_include_global_set(self):
        statuses = terminal_statuses(StopRules(stop_on_statuses=["retained"]))
        assert statuses == {"closed", "disqualified", "retained"}


class TestSequenceStore:
    async def test_create_and_list(self, db, org):
        created = await create_sequence(db, org.id, SequenceCreate(name="Nurture", steps=STEPS))
        await db.commit()

        sequences = await list_sequences(db, org.id)
        assert [s.id for s in sequences] == [created.id]
        assert created.steps[1]["channel"] == "email"
        assert created.stop_rules == {"stop_on_statuses": [], "stop_on_response": True}

    async def test_get_is_tenant_scoped(self, db, org, sequence):
        assert await get_sequence(db, org.id, sequence.id) is sequence
        assert await get_sequence(db, uuid.uuid4(), sequence.id) is None

    async def test_update(self, db, org, sequence):
        await update_sequence(db, sequence, SequenceUpdate(is_active=False, name="Paused"))
        await db.commit()
        assert sequence.is_active is False
        assert sequence.name == "Paused"
        assert len(sequence.steps) == 3

    async def test_find_trigger_sequence_picks_oldest_active(self, db, org, sequence):
        newer = FollowupSequence(
            org_id=org.id,
            name="Newer",
            trigger_event="lead.created",
            steps=STEPS,
            created_at=utcnow() + timedelta(minutes=5),
        )
        inactive = FollowupSequence(
            org_id=org.id,
            name="Old but inactive",
            trigger_event="lead.created",
            steps=STEPS,
            is_active=False,
            created_at=utcnow() - timedelta(days=1),
        )
        db.add_all([newer, inactive])
        await db.commit()

        found = await find_trigger_sequence(db, org.id, "lead.created")
        assert found.id == sequence.id

    async def test_find_trigger_sequence_none_for_other_event(self, db, org, sequence):
        assert await find_trigger_sequence(db, org.id, "lead.missed_call") is None
