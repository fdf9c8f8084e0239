"""
Tests for intakewire/api/followups.py and intakewire/api/experiments.py over HTTP.
"""
import uuid
from unittest.mock import patch

import pytest
from sqlalchemy import select

from intakewire.models.followup import FollowupJob
from intakewire.services import followup_scheduler

STEPS = [
    {"delay_minutes": 0, "channel": "sms", "message_template": "Hi {first_name}"},
    {"delay_minutes": 120, "channel": "email", "message_template": "Any questions?"},
]


def _headers(org):
    return {"X-Org-Id": str(org.id)}


class TestSequenceRoutes:
    async def test_create_and_list(self, api_client, org):
        response = await api_client.post(
            "/api/v1/followup-sequences",
            json={"name": "Web form nurture", "steps": STEPS, "stop_rules": {"stop_on_statuses": ["retained"]}},
            headers=_headers(org),
        )
        assert response.status_code == 201
        created = response.json()
        assert created["stop_rules"] == {"stop_on_statuses": ["retained"], "stop_on_response": True}

        listed = await api_client.get("/api/v1/followup-sequences", headers=_headers(org))
        assert [s["id"] for s in listed.json()] == [created["id"]]

    async def test_create_rejects_out_of_order_steps(self, api_client, org):
        response = await api_client.post(
            "/api/v1/followup-sequences",
            json={"name": "Backwards", "steps": list(reversed(STEPS))},
            headers=_headers(org),
        )
        assert response.status_code == 422

    async def test_update(self, api_client, org, sequence):
        response = await api_client.patch(
            f"/api/v1/followup-sequences/{sequence.id}",
            json={"is_active": False},
            headers=_headers(org),
        )
        assert response.status_code == 200
        assert response.json()["is_active"] is False

    async def test_update_other_org_404(self, api_client, sequence):
        response = await api_client.patch(
            f"/api/v1/followup-sequences/{sequence.id}",
            json={"is_active": False},
            headers={"X-Org-Id": str(uuid.uuid4())},
        )
        assert response.status_code == 404


class TestLeadFollowupRoutes:
    async def test_trigger_then_duplicate(self, api_client, org, lead, sequence):
        with patch.object(followup_scheduler, "arm_work"):
            first = await api_client.post(
                f"/api/v1/leads/{lead.id}/followups", json={}, headers=_headers(org),
            )
            second = await api_client.post(
                f"/api/v1/leads/{lead.id}/followups", json={}, headers=_headers(org),
            )

        assert first.status_code == 202
        assert first.json()["status"] == "scheduled"
        assert len(first.json()["job_ids"]) == 3
        assert second.json()["status"] == "duplicate"
        assert second.json()["job_ids"] == first.json()["job_ids"]

    async def test_trigger_unknown_sequence(self, api_client, org, lead):
        response = await api_client.post(
            f"/api/v1/leads/{lead.id}/followups",
            json={"sequence_id": str(uuid.uuid4())},
            headers=_headers(org),
        )
        assert response.status_code == 404

    async def test_trigger_lead_in_other_org(self, api_client, lead, sequence):
        response = await api_client.post(
            f"/api/v1/leads/{lead.id}/followups", json={}, headers={"X-Org-Id": str(uuid.uuid4())},
        )
        assert response.status_code == 404

    async def test_list_jobs(self, api_client, org, lead, sequence):
        with patch.object(followup_scheduler, "arm_work"):
            await api_client.post(f"/api/v1/leads/{lead.id}/followups", json={}, headers=_headers(org))

        response = await api_client.get(f"/api/v1/leads/{lead.id}/followups", headers=_headers(org))
        jobs = response.json()
        assert [j["step_index"] for j in jobs] == [0, 1, 2]
        assert {j["status"] for j in jobs} == {"pending"}

    async def test_cancel(self, api_client, org, lead, sequence, session_factory):
        with patch.object(followup_scheduler, "arm_work"):
            await api_client.post(f"/api/v1/leads/{lead.id}/followups", json={}, headers=_headers(org))

        response = await api_client.post(
            f"/api/v1/leads/{lead.id}/followups/cancel",
            json={"reason": "lead called back"},
            headers=_headers(org),
        )
        assert response.json() == {"status": "cancelled", "cancelled": 3}

        async with session_factory() as session:
            jobs = (await session.execute(select(FollowupJob))).scalars().all()
        assert {j.cancel_reason for j in jobs} == {"lead called back"}


class TestExperimentRoutes:
    async def test_list_with_counts(self, api_client, org, lead):
        await api_client.post(
            "/api/v1/experiments/intake_script_v2/assign",
            json={"lead_id": str(lead.id)},
            headers=_headers(org),
        )
        response = await api_client.get("/api/v1/experiments", headers=_headers(org))
        assert response.status_code == 200
        by_key = {e["key"]: e for e in response.json()}
        assert sum(by_key["intake_script_v2"]["assignments"].values()) == 1
        assert by_key["followup_timing"]["assignments"] == {}

    async def test_list_counts_only_callers_org(self, api_client, org, lead):
        await api_client.post(
            "/api/v1/experiments/intake_script_v2/assign",
            json={"lead_id": str(lead.id)},
            headers=_headers(org),
        )
        response = await api_client.get("/api/v1/experiments", headers={"X-Org-Id": str(uuid.uuid4())})
        assert response.status_code == 200
        by_key = {e["key"]: e for e in response.json()}
        assert by_key["intake_script_v2"]["assignments"] == {}

    async def test_list_requires_org_header(self, api_client):
        response = await api_client.get("/api/v1/experiments")
        assert response.status_code == 422

    async def test_assign_is_stable(self, api_client, org, lead):
        url = "/api/v1/experiments/qualification_threshold/assign"
        first = await api_client.post(url, json={"lead_id": str(lead.id)}, headers=_headers(org))
        second = await api_client.post(url, json={"lead_id": str(lead.id)}, headers=_headers(org))

        assert first.status_code == 200
        assert first.json()["variant"] in {"control", "high_bar", "low_bar"}
        assert second.json()["variant"] == first.json()["variant"]

    async def test_unknown_experiment(self, api_client, org, lead):
        response = await api_client.post(
            "/api/v1/experiments/nope/assign", json={"lead_id": str(lead.id)}, headers=_headers(org),
        )
        assert response.status_code == 404

    async def test_lead_in_other_org(self, api_client, lead):
        response = await api_client.post(
            "/api/v1/experiments/intake_script_v2/assign",
            json={"lead_id": str(lead.id)},
            headers={"X-Org-Id": str(uuid.uuid4())},
        )
        assert response.status_code == 404
