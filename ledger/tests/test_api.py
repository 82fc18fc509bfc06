"""
HTTP Tests for the Points Ledger API

Tests cover:
1. Actor resolution from headers
2. Award and approval endpoints
3. Error mapping to status codes
4. Read endpoints
"""

from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

from ledger import api
from ledger.engine import build_engine
from ledger.storage import (
    DEMO_ADMIN_ID,
    DEMO_STUDENT_IDS,
    DEMO_TEACHER_ID,
    DEMO_TENANT_ID,
    InMemoryStorage,
)


STUDENT_ID, OTHER_STUDENT_ID = DEMO_STUDENT_IDS
TEACHER = {"X-Actor-Id": str(DEMO_TEACHER_ID)}
ADMIN = {"X-Actor-Id": str(DEMO_ADMIN_ID)}


@pytest.fixture
def client(monkeypatch, settings):
    monkeypatch.setattr(api, "engine", build_engine(storage=InMemoryStorage(), settings=settings))
    return TestClient(api.app)


def award(client, points, student_id=STUDENT_ID, coins=0):
    return client.post("/awards", headers=TEACHER, json={
        "student_id": str(student_id), "points": points, "coins": coins, "reason": "Homework",
        "category": "homework",
    })


class TestActors:
    """Tests for header-based actor resolution."""

    def test_health_needs_no_actor(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_missing_actor_header(self, client):
        response = client.post("/awards", json={"student_id": str(STUDENT_ID), "points": 5, "reason": "x"})

        assert response.status_code == 422

    def test_unknown_actor_forbidden(self, client):
        response = client.get("/approvals", headers={"X-Actor-Id": str(uuid4())})

        assert response.status_code == 403

    def test_tenant_header_mismatch_forbidden(self, client):
        response = client.get("/approvals", headers={**TEACHER, "X-Tenant-Id": str(uuid4())})

        assert response.status_code == 403


class TestAwards:
    """Tests for awards and approvals over HTTP."""

    def test_small_award_commits(self, client):
        response = award(client, 10)

        assert response.status_code == 201
        assert response.json()["status"] == "committed"
        ranking = client.get(f"/students/{STUDENT_ID}/ranking", headers=TEACHER).json()
        assert ranking["total_points"] == 10

    def test_large_award_approval_flow(self, client):
        pending = award(client, 60).json()
        assert pending["status"] == "pending"
        approval_id = pending["approval"]["id"]

        queue = client.get("/approvals", headers=ADMIN).json()
        assert [a["id"] for a in queue] == [approval_id]

        forbidden = client.post(f"/approvals/{approval_id}/approve", headers=TEACHER)
        assert forbidden.status_code == 403

        approved = client.post(f"/approvals/{approval_id}/approve", headers=ADMIN)
        assert approved.status_code == 200
        assert approved.json()["transaction"]["points_delta"] == 60

        again = client.post(f"/approvals/{approval_id}/approve", headers=ADMIN)
        assert again.status_code == 409

    def test_reject_without_reason(self, client):
        approval_id = award(client, 60).json()["approval"]["id"]

        response = client.post(f"/approvals/{approval_id}/reject", headers=ADMIN, json={})

        assert response.status_code == 400

    def test_unknown_student_not_found(self, client):
        response = award(client, 5, student_id=uuid4())

        assert response.status_code == 404

    def test_bulk_award(self, client):
        response = client.post("/awards/bulk", headers=TEACHER, json={
            "student_ids": [str(STUDENT_ID), str(OTHER_STUDENT_ID), str(uuid4())],
            "points": 5,
            "reason": "Clean-up day",
        })

        body = response.json()
        assert response.status_code == 200
        assert body["committed"] == 2
        assert body["failed"] == 1


class TestTransactions:
    """Tests for transaction maintenance endpoints."""

    def test_reverse_and_delete(self, client):
        first = award(client, 10).json()["transaction"]["id"]
        second = award(client, 20).json()["transaction"]["id"]

        reversed_ = client.post(f"/transactions/{first}/reverse", headers=ADMIN, json={"reason": "Duplicate"})
        assert reversed_.status_code == 200
        assert reversed_.json()["points_delta"] == -10

        deleted = client.delete(f"/transactions/{second}", headers=ADMIN)
        assert deleted.status_code == 200
        assert deleted.json()["deleted_by"] == str(DEMO_ADMIN_ID)

        ranking = client.get(f"/students/{STUDENT_ID}/ranking", headers=TEACHER).json()
        assert ranking["total_points"] == 0

    def test_get_unknown_transaction(self, client):
        response = client.get(f"/transactions/{uuid4()}", headers=TEACHER)

        assert response.status_code == 404


class TestReads:
    """Tests for read endpoints."""

    def test_leaderboard_and_history(self, client):
        award(client, 10)
        award(client, 30, student_id=OTHER_STUDENT_ID)

        board = client.get(f"/tenants/{DEMO_TENANT_ID}/leaderboard", headers=TEACHER).json()
        history = client.get(f"/students/{STUDENT_ID}/history", headers=TEACHER).json()

        assert [e["student_id"] for e in board["entries"]] == [str(OTHER_STUDENT_ID), str(STUDENT_ID)]
        assert history["total_count"] == 1

    def test_leaderboard_other_tenant_forbidden(self, client):
        response = client.get(f"/tenants/{uuid4()}/leaderboard", headers=TEACHER)

        assert response.status_code == 403

    def test_student_stats(self, client):
        award(client, 10, coins=3)

        stats = client.get(f"/students/{STUDENT_ID}/stats", headers=TEACHER).json()

        assert stats["total_points"] == 10
        assert stats["available_coins"] == 3
        assert stats["rank"] == 1


class TestRedemptionsApi:
    """Tests for the rewards endpoints."""

    def test_redeem_insufficient_balance(self, client):
        award(client, 1, coins=2)
        reward = client.post("/rewards", headers=ADMIN, json={"name": "Sticker", "coin_cost": 5}).json()

        response = client.post("/redemptions", headers=TEACHER, json={
            "student_id": str(STUDENT_ID), "reward_id": reward["id"],
        })

        assert response.status_code == 422
        assert response.json()["error"] == "InsufficientBalanceError"

    def test_redeem_and_cancel(self, client):
        award(client, 1, coins=5)
        reward = client.post("/rewards", headers=ADMIN, json={"name": "Sticker", "coin_cost": 5}).json()
        redemption = client.post("/redemptions", headers=TEACHER, json={
            "student_id": str(STUDENT_ID), "reward_id": reward["id"],
        }).json()

        cancelled = client.post(f"/redemptions/{redemption['id']}/cancel", headers=ADMIN, json={})

        assert cancelled.status_code == 200
        assert cancelled.json()["status"] == "cancelled"

    def test_unknown_redemption_action(self, client):
        response = client.post(f"/redemptions/{uuid4()}/teleport", headers=ADMIN, json={})

        assert response.status_code == 404


class TestReferralsApi:
    """Tests for the referral endpoints."""

    def test_referral_enrollment(self, client):
        record = client.post("/referrals", headers=TEACHER, json={
            "referrer_student_id": str(STUDENT_ID),
            "prospect_name": "Pat Prospect",
            "prospect_phone": "555-0100",
        }).json()

        client.post(f"/referrals/{record['id']}/contact", headers=TEACHER)
        enrolled = client.post(f"/referrals/{record['id']}/enroll", headers=ADMIN)
        twice = client.post(f"/referrals/{record['id']}/enroll", headers=ADMIN)

        assert enrolled.status_code == 200
        assert enrolled.json()["referral"]["status"] == "enrolled"
        assert twice.status_code == 409

        listed = client.get("/referrals", headers=TEACHER, params={"status": "enrolled"}).json()
        assert [r["id"] for r in listed] == [record["id"]]
