"""Tests for the credit API — tenant endpoints and admin operations."""

import uuid

from fastapi.testclient import TestClient

from dojoflow.api.v1.endpoints import credits as credits_endpoints
from dojoflow.models.credit_transaction import CreditTransaction
from dojoflow.services import credits as credits_service
from dojoflow.services.auth import create_access_token
from dojoflow.services.credits import (
    DATABASE_UNAVAILABLE,
    NO_BALANCE_SUPPORT_MESSAGE,
    BalanceCheck,
    LedgerResult,
    create_credit_top_up,
)

CREDITS_URL = "/api/v1/credits"
ADMIN_URL = "/api/v1/admin/credits"


def _headers(user) -> dict:
    return {"Authorization": f"Bearer {create_access_token(user.id)}"}


def _deduct(client, headers, **overrides):
    payload = {"amount": 5, "taskType": "kai_chat", "description": "Kai reply", **overrides}
    return client.post(f"{CREDITS_URL}/deduct", json=payload, headers=headers)


# ===========================================================================
# Auth and tenant scoping
# ===========================================================================


class TestCreditAuth:
    def test_requires_token(self, client: TestClient):
        resp = client.get(f"{CREDITS_URL}/balance")
        assert resp.status_code in (401, 403)

    def test_rejects_invalid_token(self, client: TestClient):
        resp = client.get(
            f"{CREDITS_URL}/balance", headers={"Authorization": "Bearer not-a-jwt"}
        )
        assert resp.status_code == 401

    def test_user_without_organization(self, client: TestClient, make_user):
        orphan = make_user(email="orphan@example.com")
        resp = client.get(f"{CREDITS_URL}/balance", headers=_headers(orphan))
        assert resp.status_code == 400
        assert resp.json()["detail"] == "No organization found for user"

    def test_deactivated_user(self, client: TestClient, make_user, org):
        inactive = make_user(email="gone@example.com", organization_id=org.id, is_active=False)
        resp = client.get(f"{CREDITS_URL}/balance", headers=_headers(inactive))
        assert resp.status_code == 403


# ===========================================================================
# Balance and checks
# ===========================================================================


class TestGetBalance:
    def test_returns_camel_case_balance(self, client: TestClient, auth_headers, balance):
        resp = client.get(f"{CREDITS_URL}/balance", headers=auth_headers)
        assert resp.status_code == 200
        data = resp.json()
        assert data["creditsRemaining"] == 100
        assert data["creditsUsed"] == 0
        assert data["planAllowance"] == 100
        assert data["renewalDate"] is not None
        assert data["warningLevel"] == "none"
        assert data["thresholds"] == {"WARNING": 50, "CRITICAL": 10, "BLOCKING": 0}

    def test_warning_level_follows_balance(self, client: TestClient, auth_headers, balance):
        _deduct(client, auth_headers, amount=95)
        data = client.get(f"{CREDITS_URL}/balance", headers=auth_headers).json()
        assert data["creditsRemaining"] == 5
        assert data["creditsUsed"] == 95
        assert data["warningLevel"] == "critical"

    def test_missing_balance_returns_zeroes(self, client: TestClient, auth_headers):
        data = client.get(f"{CREDITS_URL}/balance", headers=auth_headers).json()
        assert data["creditsRemaining"] == 0
        assert data["planAllowance"] == 0
        assert data["renewalDate"] is None
        assert data["warningLevel"] == "blocking"


class TestCheckBalance:
    def test_sufficient_with_warning(self, client: TestClient, auth_headers, balance):
        resp = client.get(
            f"{CREDITS_URL}/check",
            params={"requiredCredits": 51, "operationType": "kai_chat"},
            headers=auth_headers,
        )
        assert resp.status_code == 200
        data = resp.json()
        assert data["sufficient"] is True
        assert data["currentBalance"] == 100
        assert data["requiredCredits"] == 51
        assert data["remainingAfter"] == 49
        assert data["operationType"] == "kai_chat"
        assert data["message"].startswith("Warning: Low credit balance.")

    def test_insufficient(self, client: TestClient, auth_headers, balance):
        data = client.get(
            f"{CREDITS_URL}/check", params={"requiredCredits": 150}, headers=auth_headers
        ).json()
        assert data["sufficient"] is False
        assert data["remainingAfter"] == -50
        assert "Please top up your credits" in data["message"]

    def test_no_balance(self, client: TestClient, auth_headers):
        data = client.get(
            f"{CREDITS_URL}/check", params={"requiredCredits": 1}, headers=auth_headers
        ).json()
        assert data["sufficient"] is False
        assert data["message"] == NO_BALANCE_SUPPORT_MESSAGE

    def test_required_credits_is_mandatory(self, client: TestClient, auth_headers, balance):
        resp = client.get(f"{CREDITS_URL}/check", headers=auth_headers)
        assert resp.status_code == 422

    def test_rejects_negative_amount(self, client: TestClient, auth_headers, balance):
        resp = client.get(
            f"{CREDITS_URL}/check", params={"requiredCredits": -1}, headers=auth_headers
        )
        assert resp.status_code == 422


# ===========================================================================
# Deduction
# ===========================================================================


class TestDeduct:
    def test_deduct_success(self, client: TestClient, db, user, auth_headers, balance):
        resp = _deduct(client, auth_headers, amount=5, metadata={"conversationId": "c-1"})
        assert resp.status_code == 200
        data = resp.json()
        assert data["success"] is True
        assert data["newBalance"] == 95
        assert data["amountDeducted"] == 5

        tx = db.get(CreditTransaction, uuid.UUID(data["transactionId"]))
        assert tx.amount == -5
        assert tx.user_id == user.id
        assert tx.metadata_json == {"conversationId": "c-1"}

    def test_router_task_names_map_to_ledger_types(
        self, client: TestClient, db, auth_headers, balance
    ):
        expected = {
            "sms": "ai_sms",
            "email": "ai_email",
            "phone_call": "ai_phone_call",
            "voice_synthesis": "other",
            "data_extraction": "data_analysis",
            "automation": "automation",
        }
        for task_type, ledger_type in expected.items():
            data = _deduct(client, auth_headers, amount=1, taskType=task_type).json()
            tx = db.get(CreditTransaction, uuid.UUID(data["transactionId"]))
            assert tx.task_type == ledger_type

    def test_insufficient_is_402(self, client: TestClient, auth_headers, balance):
        resp = _deduct(client, auth_headers, amount=150)
        assert resp.status_code == 402
        assert resp.json()["detail"].startswith(
            "Insufficient credits. Required: 150, Available: 100."
        )

        data = client.get(f"{CREDITS_URL}/balance", headers=auth_headers).json()
        assert data["creditsRemaining"] == 100

    def test_missing_balance_is_404(self, client: TestClient, auth_headers):
        resp = _deduct(client, auth_headers)
        assert resp.status_code == 404
        assert resp.json()["detail"] == NO_BALANCE_SUPPORT_MESSAGE

    def test_validation(self, client: TestClient, auth_headers, balance):
        assert _deduct(client, auth_headers, amount=-1).status_code == 422
        assert _deduct(client, auth_headers, taskType="teleportation").status_code == 422
        resp = client.post(
            f"{CREDITS_URL}/deduct", json={"amount": 1}, headers=auth_headers
        )
        assert resp.status_code == 422

    def test_description_length_matches_column(self, client: TestClient, auth_headers, balance):
        assert _deduct(client, auth_headers, description="x" * 501).status_code == 422
        assert _deduct(client, auth_headers, description="x" * 500).status_code == 200

    def test_lost_race_is_409(self, client: TestClient, auth_headers, balance, monkeypatch):
        monkeypatch.setattr(
            credits_service,
            "_check_balance",
            lambda db, organization_id, required: (BalanceCheck(True, 500), None),
        )
        resp = _deduct(client, auth_headers, amount=150)
        assert resp.status_code == 409
        assert resp.json()["detail"] == "Failed to update credit balance"

    def test_database_unavailable_is_503(self, client: TestClient, auth_headers, monkeypatch):
        monkeypatch.setattr(
            credits_endpoints,
            "deduct_credits",
            lambda db, **kwargs: LedgerResult.failure(
                0, DATABASE_UNAVAILABLE, "database_unavailable"
            ),
        )
        resp = _deduct(client, auth_headers)
        assert resp.status_code == 503
        assert resp.json()["detail"] == DATABASE_UNAVAILABLE

    def test_unexpected_error_is_500(self, client: TestClient, auth_headers, monkeypatch):
        monkeypatch.setattr(
            credits_endpoints,
            "deduct_credits",
            lambda db, **kwargs: LedgerResult.failure(0, "ledger exploded", "unexpected"),
        )
        resp = _deduct(client, auth_headers)
        assert resp.status_code == 500
        assert resp.json()["detail"] == "ledger exploded"


# ===========================================================================
# Costs
# ===========================================================================


class TestCosts:
    def test_costs(self, client: TestClient, auth_headers):
        resp = client.get(f"{CREDITS_URL}/costs", headers=auth_headers)
        assert resp.status_code == 200
        data = resp.json()
        assert data["costs"] == {"KAI_CHAT": 1, "SMS": 1, "EMAIL": 2, "CALL_PER_MINUTE": 10}
        assert data["thresholds"]["WARNING"] == 50

    def test_task_costs(self, client: TestClient, auth_headers):
        data = client.get(f"{CREDITS_URL}/task-costs", headers=auth_headers).json()
        by_type = {item["taskType"]: item["description"] for item in data}
        assert by_type["kai_chat"] == "1 credit per response"
        assert by_type["ai_phone_call"] == "8-15 credits per call"
        assert by_type["other"] == "Variable cost"
        assert len(by_type) == 7


# ===========================================================================
# History and audit
# ===========================================================================


class TestTransactionsEndpoint:
    def test_lists_history(self, client: TestClient, auth_headers, balance):
        _deduct(client, auth_headers, amount=2, taskType="sms")
        _deduct(client, auth_headers, amount=1)

        resp = client.get(f"{CREDITS_URL}/transactions", headers=auth_headers)
        assert resp.status_code == 200
        data = resp.json()
        assert data["total"] == 3
        assert data["page"] == 1
        assert data["pageSize"] == 20

        latest = data["items"][0]
        assert latest["type"] == "deduction"
        assert latest["amount"] == -1
        assert latest["taskType"] == "kai_chat"
        assert latest["balanceAfter"] == 97
        assert "createdAt" in latest
        assert "metadata" in latest

    def test_filters_and_pages(self, client: TestClient, auth_headers, balance):
        for _ in range(3):
            _deduct(client, auth_headers, amount=1, taskType="sms")
        _deduct(client, auth_headers, amount=1)

        data = client.get(
            f"{CREDITS_URL}/transactions",
            params={"type": "deduction", "taskType": "ai_sms", "pageSize": 2, "page": 2},
            headers=auth_headers,
        ).json()
        assert data["total"] == 3
        assert len(data["items"]) == 1

    def test_rejects_unknown_type(self, client: TestClient, auth_headers, balance):
        resp = client.get(
            f"{CREDITS_URL}/transactions", params={"type": "theft"}, headers=auth_headers
        )
        assert resp.status_code == 422


class TestAuditEndpoint:
    def test_audit(self, client: TestClient, org, auth_headers, balance):
        _deduct(client, auth_headers, amount=10)
        data = client.get(f"{CREDITS_URL}/audit", headers=auth_headers).json()
        assert data["organizationId"] == str(org.id)
        assert data["consistent"] is True
        assert data["transactionCount"] == 2
        assert data["replayedBalance"] == 90
        assert data["storedBalance"] == 90


# ===========================================================================
# Top-ups
# ===========================================================================


class TestTopUps:
    def test_create_top_up(self, client: TestClient, org, auth_headers, balance):
        resp = client.post(
            f"{CREDITS_URL}/top-ups",
            json={"credits": 50, "amountPaidCents": 1500, "currency": "USD"},
            headers=auth_headers,
        )
        assert resp.status_code == 201
        data = resp.json()
        assert data["status"] == "pending"
        assert data["credits"] == 50
        assert data["currency"] == "usd"
        assert data["organizationId"] == str(org.id)
        assert data["completedAt"] is None

    def test_create_rejects_empty_pack(self, client: TestClient, auth_headers, balance):
        resp = client.post(f"{CREDITS_URL}/top-ups", json={"credits": 0}, headers=auth_headers)
        assert resp.status_code == 422

    def test_admin_completes_top_up_once(
        self, client: TestClient, db, org, admin_headers, auth_headers, balance
    ):
        top_up = create_credit_top_up(db, organization_id=org.id, credits=50)
        url = f"{ADMIN_URL}/top-ups/{top_up.id}/complete"

        first = client.post(url, headers=admin_headers)
        assert first.status_code == 200
        assert first.json()["status"] == "completed"
        second = client.post(url, headers=admin_headers)
        assert second.status_code == 200

        data = client.get(f"{CREDITS_URL}/balance", headers=auth_headers).json()
        assert data["creditsRemaining"] == 150

    def test_complete_requires_admin(self, client: TestClient, db, org, auth_headers, balance):
        top_up = create_credit_top_up(db, organization_id=org.id, credits=50)
        resp = client.post(f"{ADMIN_URL}/top-ups/{top_up.id}/complete", headers=auth_headers)
        assert resp.status_code == 403

    def test_complete_unknown(self, client: TestClient, admin_headers):
        resp = client.post(f"{ADMIN_URL}/top-ups/{uuid.uuid4()}/complete", headers=admin_headers)
        assert resp.status_code == 404

    def test_complete_without_balance(self, client: TestClient, db, org, admin_headers):
        top_up = create_credit_top_up(db, organization_id=org.id, credits=50)
        resp = client.post(f"{ADMIN_URL}/top-ups/{top_up.id}/complete", headers=admin_headers)
        assert resp.status_code == 409


# ===========================================================================
# Admin
# ===========================================================================


class TestAdminCredits:
    def test_initialize_with_default_allowance(self, client: TestClient, org, admin_headers):
        resp = client.post(f"{ADMIN_URL}/{org.id}/initialize", json={}, headers=admin_headers)
        assert resp.status_code == 201
        data = resp.json()
        assert data["balance"] == 100
        assert data["periodAllowance"] == 100
        assert data["nextResetAt"] is not None

    def test_initialize_with_custom_allowance(self, client: TestClient, org, admin_headers):
        resp = client.post(
            f"{ADMIN_URL}/{org.id}/initialize",
            json={"initialCredits": 250},
            headers=admin_headers,
        )
        assert resp.json()["balance"] == 250

    def test_initialize_twice_conflicts(self, client: TestClient, org, admin_headers):
        client.post(f"{ADMIN_URL}/{org.id}/initialize", json={}, headers=admin_headers)
        resp = client.post(f"{ADMIN_URL}/{org.id}/initialize", json={}, headers=admin_headers)
        assert resp.status_code == 409

    def test_initialize_unknown_org(self, client: TestClient, admin_headers):
        resp = client.post(f"{ADMIN_URL}/{uuid.uuid4()}/initialize", json={}, headers=admin_headers)
        assert resp.status_code == 404

    def test_non_admin_forbidden(self, client: TestClient, org, auth_headers):
        resp = client.post(f"{ADMIN_URL}/{org.id}/initialize", json={}, headers=auth_headers)
        assert resp.status_code == 403
        assert resp.json()["detail"] == "Admin access required"

    def test_get_balance_row(self, client: TestClient, org, admin_headers, auth_headers, balance):
        _deduct(client, auth_headers, amount=10)
        data = client.get(f"{ADMIN_URL}/{org.id}", headers=admin_headers).json()
        assert data["balance"] == 90
        assert data["periodUsed"] == 10
        assert data["totalUsed"] == 10
        assert data["totalPurchased"] == 0

    def test_get_missing_balance(self, client: TestClient, org, admin_headers):
        resp = client.get(f"{ADMIN_URL}/{org.id}", headers=admin_headers)
        assert resp.status_code == 404

    def test_grant_top_up(self, client: TestClient, org, admin_headers, balance):
        resp = client.post(
            f"{ADMIN_URL}/{org.id}/grant",
            json={"amount": 50, "source": "top_up", "description": "Manual pack"},
            headers=admin_headers,
        )
        assert resp.status_code == 200
        assert resp.json()["newBalance"] == 150

        data = client.get(f"{ADMIN_URL}/{org.id}", headers=admin_headers).json()
        assert data["totalPurchased"] == 50

    def test_grant_without_balance(self, client: TestClient, org, admin_headers):
        resp = client.post(
            f"{ADMIN_URL}/{org.id}/grant",
            json={"amount": 50, "source": "bonus", "description": "Welcome"},
            headers=admin_headers,
        )
        assert resp.status_code == 404

    def test_reset_period(self, client: TestClient, org, admin_headers, auth_headers, balance):
        _deduct(client, auth_headers, amount=30)
        resp = client.post(
            f"{ADMIN_URL}/{org.id}/reset", json={"newAllowance": 100}, headers=admin_headers
        )
        assert resp.status_code == 200
        tx = resp.json()
        assert tx["type"] == "allocation"
        assert tx["amount"] == 100
        assert tx["balanceAfter"] == 170

        data = client.get(f"{CREDITS_URL}/balance", headers=auth_headers).json()
        assert data["creditsUsed"] == 0
        assert data["creditsRemaining"] == 170

    def test_reset_missing_balance(self, client: TestClient, org, admin_headers):
        resp = client.post(
            f"{ADMIN_URL}/{org.id}/reset", json={"newAllowance": 100}, headers=admin_headers
        )
        assert resp.status_code == 404
