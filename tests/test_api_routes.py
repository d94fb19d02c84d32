"""
HTTP API tests
Participant actions and wallet endpoints through FastAPI's TestClient
"""

import pytest
from fastapi.testclient import TestClient

from api_server import app
from config import Config

CREATOR_ID = 100
REVIEWERS = (201, 202, 203)


@pytest.fixture
def client():
    # No context manager: tables and seeds come from the test database fixture
    return TestClient(app)


@pytest.fixture
def activity_id(client, fund):
    fund(CREATOR_ID, 25)
    response = client.post("/activities", json={
        "paper_title": "HTTP paper",
        "creator_id": CREATOR_ID,
        "template": "quick_review_v1",
    })
    assert response.status_code == 200
    return response.json()["activity_id"]


class TestActivityEndpoints:

    def test_submit_and_read_back(self, client, activity_id):
        response = client.get(f"/activities/{activity_id}")

        assert response.status_code == 200
        body = response.json()
        assert body["current_stage"] == "posted"
        assert body["escrow_balance"] == 10

    def test_insufficient_funds_maps_to_conflict(self, client):
        response = client.post("/activities", json={
            "paper_title": "Unfunded", "creator_id": 555, "template": "quick_review_v1",
        })

        assert response.status_code == 409
        error = response.json()["detail"]["error"]
        assert error["code"] == "INSUFFICIENT_FUNDS"
        assert error["details"]["current_balance"] == 0
        assert error["details"]["required_amount"] == 10

    def test_blank_title_is_unprocessable(self, client):
        response = client.post("/activities", json={
            "paper_title": " ", "creator_id": CREATOR_ID, "template": "quick_review_v1",
        })
        assert response.status_code == 422

    def test_team_flow_progresses(self, client, activity_id):
        for reviewer in REVIEWERS:
            assert client.post(f"/activities/{activity_id}/team", json={"user_id": reviewer}).status_code == 200
            response = client.post(f"/activities/{activity_id}/team/lock-in", json={"user_id": reviewer})
            assert response.status_code == 200
            assert response.json()["current_status"] == "locked_in"

        team = client.get(f"/activities/{activity_id}/team").json()
        assert [member["status"] for member in team["members"]] == ["locked_in"] * 3
        assert client.get(f"/activities/{activity_id}").json()["current_stage"] == "review_1"

        timeline = client.get(f"/activities/{activity_id}/timeline").json()["events"]
        assert any(event["event_type"] == "stage_transition" for event in timeline)

    def test_duplicate_join_is_conflict(self, client, activity_id):
        client.post(f"/activities/{activity_id}/team", json={"user_id": REVIEWERS[0]})
        response = client.post(f"/activities/{activity_id}/team", json={"user_id": REVIEWERS[0]})

        assert response.status_code == 409
        assert response.json()["detail"]["error"]["code"] == "ALREADY_MEMBER"

    def test_try_progress_without_change(self, client, activity_id):
        response = client.post(f"/activities/{activity_id}/progress", json={"activity_type": "pr-activity"})

        assert response.status_code == 200
        assert response.json()["progressed"] is False
        assert response.json()["current_stage"] == "posted"

    def test_forced_invalid_transition(self, client, activity_id):
        response = client.post(
            f"/activities/{activity_id}/progress",
            json={"activity_type": "pr-activity", "forced_transition_id": 99999},
        )
        assert response.status_code == 409
        assert response.json()["detail"]["error"]["code"] == "INVALID_TRANSITION"

    def test_self_award_is_rejected(self, client, activity_id):
        response = client.post(f"/activities/{activity_id}/awards", json={
            "giver_id": CREATOR_ID, "receiver_id": CREATOR_ID, "award_type": "helpfulness",
        })

        assert response.status_code == 422
        assert response.json()["detail"]["error"]["code"] == "SELF_AWARD"

    def test_award_and_finalization(self, client, activity_id):
        response = client.post(f"/activities/{activity_id}/awards", json={
            "giver_id": CREATOR_ID, "receiver_id": REVIEWERS[0], "award_type": "clarity",
        })
        assert response.status_code == 200
        assert response.json()["escrow_balance"] == 8

        client.post(f"/activities/{activity_id}/team", json={"user_id": REVIEWERS[0]})
        response = client.post(f"/activities/{activity_id}/finalization", json={
            "reviewer_id": REVIEWERS[0], "finalized": True, "content_hash": "abc",
        })
        assert response.status_code == 200
        assert response.json()["all_finalized"] is True

        response = client.post(f"/activities/{activity_id}/assessment/snapshot", json={"content": "New text"})
        assert response.json() == {"success": True, "content_reset": True}

    def test_unknown_activity_is_not_found(self, client):
        assert client.get("/activities/4040").status_code == 404
        response = client.post("/activities/4040/team", json={"user_id": REVIEWERS[0]})
        assert response.status_code == 404


class TestWalletEndpoints:

    def test_wallet_history(self, client, activity_id):
        body = client.get(f"/wallets/{CREATOR_ID}").json()

        assert body["balance"] == 15
        assert [entry["amount"] for entry in body["entries"]] == [-10, 25]
        assert client.get(f"/wallets/{CREATOR_ID}/balance").json()["balance"] == 15

    def test_admin_grant_and_refusal(self, client):
        response = client.post("/wallets/700/grant", json={"admin_id": Config.ADMIN_ACCOUNT_IDS[0], "amount": 5})
        assert response.status_code == 200
        assert response.json()["new_balance"] == 5

        response = client.post("/wallets/700/deduct", json={"admin_id": 12345, "amount": 1})
        assert response.status_code == 403
        assert response.json()["detail"]["error"]["code"] == "NOT_AUTHORIZED"

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["database"] == "connected"
