"""
Tests for intakewire/workers/recovery_sweeper.py - re-arming durable work.
"""
import asyncio
import uuid
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from intakewire.models.followup import FollowupJob
from intakewire.models.webhook import WebhookDelivery
from intakewire.utils.timezone import utcnow
from intakewire.workers import recovery_sweeper
from intakewire.workers.dispatcher import DELIVERY, FOLLOWUP_JOB
from intakewire.workers.recovery_sweeper import recover_due_work, run_recovery_sweeper


def _make_dispatcher(recover_result=True):
    dispatcher = MagicMock()
    dispatcher.is_running = True
    dispatcher.recover = MagicMock(return_value=recover_result)
    return dispatcher


async def _add_delivery(db, endpoint, *, status="pending", next_attempt_at=None):
    delivery = WebhookDelivery(
        id=uuid.uuid4(),
        org_id=endpoint.org_id,
        endpoint_id=endpoint.id,
        event_type="lead.created",
        payload={"event": "lead.created", "timestamp": "t", "data": {}},
        status=status,
        next_attempt_at=next_attempt_at,
    )
    db.add(delivery)
    await db.commit()
    return delivery


async def _add_job(db, lead, sequence, *, step_index=0, status="pending", scheduled_at=None):
    job = FollowupJob(
        id=uuid.uuid4(),
        org_id=lead.org_id,
        sequence_id=sequence.id,
        lead_id=lead.id,
        step_index=step_index,
        channel="sms",
        message_template="Hi",
        scheduled_at=scheduled_at or utcnow(),
        status=status,
    )
    db.add(job)
    await db.commit()
    return job


class TestRecoverDueWork:
    async def test_no_dispatcher_is_noop(self, patched_sessions):
        with patch.object(recovery_sweeper, "get_dispatcher", return_value=None):
            assert await recover_due_work() == {"deliveries": 0, "jobs": 0}

    async def test_rearms_due_deliveries_and_jobs(self, db, endpoint, lead, sequence, patched_sessions):
        now = utcnow()
        due = await _add_delivery(db, endpoint, next_attempt_at=now - timedelta(minutes=5))
        soon = await _add_delivery(db, endpoint, next_attempt_at=now + timedelta(seconds=10))
        await _add_delivery(db, endpoint, next_attempt_at=now + timedelta(hours=1))
        await _add_delivery(db, endpoint, next_attempt_at=None)
        await _add_delivery(db, endpoint, status="delivered", next_attempt_at=now)

        job = await _add_job(db, lead, sequence, scheduled_at=now - timedelta(minutes=1))
        await _add_job(db, lead, sequence, step_index=1, scheduled_at=now + timedelta(days=1))
        await _add_job(db, lead, sequence, step_index=2, status="cancelled", scheduled_at=now)

        dispatcher = _make_dispatcher()
        with patch.object(recovery_sweeper, "get_dispatcher", return_value=dispatcher):
            counts = await recover_due_work(horizon_seconds=30)

        assert counts == {"deliveries": 2, "jobs": 1}
        recovered = {(c.args[0], c.args[1]) for c in dispatcher.recover.call_args_list}
        assert recovered == {
            (DELIVERY, str(due.id)),
            (DELIVERY, str(soon.id)),
            (FOLLOWUP_JOB, str(job.id)),
        }

    async def test_overdue_work_armed_with_zero_delay(self, db, endpoint, patched_sessions):
        await _add_delivery(db, endpoint, next_attempt_at=utcnow() - timedelta(minutes=5))
        dispatcher = _make_dispatcher()
        with patch.object(recovery_sweeper, "get_dispatcher", return_value=dispatcher):
            await recover_due_work()

        assert dispatcher.recover.call_args.args[2] == 0.0

    async def test_future_work_keeps_residual_delay(self, db, endpoint, patched_sessions):
        await _add_delivery(db, endpoint, next_attempt_at=utcnow() + timedelta(seconds=20))
        dispatcher = _make_dispatcher()
        with patch.object(recovery_sweeper, "get_dispatcher", return_value=dispatcher):
            await recover_due_work(horizon_seconds=30)

        delay = dispatcher.recover.call_args.args[2]
        assert 10 < delay <= 20

    async def test_already_armed_work_not_counted(self, db, endpoint, patched_sessions):
        await _add_delivery(db, endpoint, next_attempt_at=utcnow())
        dispatcher = _make_dispatcher(recover_result=False)
        with patch.object(recovery_sweeper, "get_dispatcher", return_value=dispatcher):
            counts = await recover_due_work()
        assert counts["deliveries"] == 0


class TestRunRecoverySweeper:
    async def test_loop_sweeps_heartbeats_and_survives_errors(self):
        sweep = AsyncMock(side_effect=[RuntimeError("db down"), {"deliveries": 1, "jobs": 0}])
        heartbeat = AsyncMock()
        sleep = AsyncMock(side_effect=[None, asyncio.CancelledError()])

        with patch.object(recovery_sweeper, "recover_due_work", sweep), \
             patch.object(recovery_sweeper, "write_heartbeat", heartbeat), \
             patch.object(recovery_sweeper.asyncio, "sleep", sleep):
            with pytest.raises(asyncio.CancelledError):
                await run_recovery_sweeper(interval_seconds=30)

        assert sweep.call_count == 2
        assert heartbeat.call_count == 2
        heartbeat.assert_called_with("recovery_sweeper")
        sleep.assert_called_with(30)
