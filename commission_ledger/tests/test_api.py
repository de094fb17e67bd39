"""
HTTP API tests for the commission ledger.
"""

import pytest
from decimal import Decimal
from fastapi.testclient import TestClient

from commission_ledger.api import create_app
from commission_ledger.config import Settings
from commission_ledger.notifications import InMemoryDispatcher
from commission_ledger.service import LedgerService


AFFILIATE_ID = "aff-001"
MISSING_ID = "00000000-0000-0000-0000-000000000000"


@pytest.fixture
def client():
    settings = Settings(CONFLICT_BACKOFF_SECONDS=0)
    service = LedgerService(notifier=InMemoryDispatcher(), settings=settings)
    return TestClient(create_app(service=service, settings=settings))


def earn(client, order_id, amount, **extra):
    response = client.post("/commissions", json={
        "affiliate_id": AFFILIATE_ID,
        "order_id": order_id,
        "amount": amount,
        **extra,
    })
    assert response.status_code == 201
    return response.json()["commission"]


def balance(client) -> Decimal:
    response = client.get(f"/affiliates/{AFFILIATE_ID}/balance")
    assert response.status_code == 200
    return Decimal(str(response.json()["available_balance"]))


class TestCommissionEndpoints:
    def test_health(self, client):
        assert client.get("/health").json()["status"] == "healthy"

    def test_create_and_fetch_commission(self, client):
        commission = earn(client, "ORD-1", 100, product_name="Serum")

        response = client.get(f"/commissions/{commission['id']}")

        assert response.status_code == 200
        assert response.json()["status"] == "paid"
        assert response.json()["product_name"] == "Serum"
        assert balance(client) == Decimal("100")

    def test_invalid_amount_is_bad_request(self, client):
        response = client.post("/commissions", json={
            "affiliate_id": AFFILIATE_ID, "order_id": "ORD-1", "amount": 0,
        })

        assert response.status_code == 400

    def test_list_filters_by_status(self, client):
        earn(client, "ORD-1", 100)
        earn(client, "ORD-2", 50, status="pending")

        response = client.get("/commissions", params={"affiliate_id": AFFILIATE_ID, "status": "pending"})

        assert [c["order_id"] for c in response.json()] == ["ORD-2"]

    def test_update_status(self, client):
        commission = earn(client, "ORD-1", 50, status="pending")

        approved = client.put(f"/commissions/{commission['id']}/status", json={"status": "approved"})
        skipped = client.put(f"/commissions/{commission['id']}/status", json={"status": "withdrawn"})

        assert approved.status_code == 200
        assert approved.json()["commission"]["status"] == "approved"
        assert skipped.status_code == 400

    def test_unknown_commission(self, client):
        assert client.get(f"/commissions/{MISSING_ID}").status_code == 404


class TestWithdrawalEndpoints:
    def test_reserve_and_reject_round_trip(self, client):
        earn(client, "ORD-1", 100)
        earn(client, "ORD-2", 80)

        created = client.post("/withdrawals", json={
            "affiliate_id": AFFILIATE_ID,
            "amount": 120,
            "bank_details": {"bank_name": "BCA", "account_number": "123", "account_holder": "Siti"},
        })

        assert created.status_code == 201
        body = created.json()
        assert body["withdrawal"]["status"] == "pending"
        assert [Decimal(str(c["amount"])) for c in body["reserved_commissions"]] == [Decimal("100"), Decimal("20")]
        assert balance(client) == Decimal("60")

        rejected = client.put(f"/withdrawals/{body['withdrawal']['id']}", json={
            "status": "rejected", "rejection_reason": "Account name mismatch",
        })

        assert rejected.status_code == 200
        assert rejected.json()["withdrawal"]["rejection_reason"] == "Account name mismatch"
        assert balance(client) == Decimal("180")

    def test_insufficient_funds_is_conflict(self, client):
        earn(client, "ORD-1", 100)

        response = client.post("/withdrawals", json={"affiliate_id": AFFILIATE_ID, "amount": 101})

        assert response.status_code == 409
        assert balance(client) == Decimal("100")

    def test_second_approval_is_conflict(self, client):
        earn(client, "ORD-1", 100)
        withdrawal_id = client.post(
            "/withdrawals", json={"affiliate_id": AFFILIATE_ID, "amount": 40}
        ).json()["withdrawal"]["id"]

        first = client.put(f"/withdrawals/{withdrawal_id}", json={"status": "approved"})
        second = client.put(f"/withdrawals/{withdrawal_id}", json={"status": "approved"})

        assert first.status_code == 200
        assert second.status_code == 409
        assert balance(client) == Decimal("60")

    def test_history_and_lookup(self, client):
        earn(client, "ORD-1", 100)
        withdrawal_id = client.post(
            "/withdrawals", json={"affiliate_id": AFFILIATE_ID, "amount": 40}
        ).json()["withdrawal"]["id"]

        history = client.get("/withdrawals", params={"affiliate_id": AFFILIATE_ID})
        fetched = client.get(f"/withdrawals/{withdrawal_id}")

        assert [w["id"] for w in history.json()] == [withdrawal_id]
        assert Decimal(str(fetched.json()["amount"])) == Decimal("40")
        assert client.get(f"/withdrawals/{MISSING_ID}").status_code == 404

    def test_summary(self, client):
        earn(client, "ORD-1", 100)
        client.post("/withdrawals", json={"affiliate_id": AFFILIATE_ID, "amount": 40})

        summary = client.get(f"/affiliates/{AFFILIATE_ID}/summary").json()

        assert Decimal(str(summary["available"])) == Decimal("60")
        assert Decimal(str(summary["reserved"])) == Decimal("40")
        assert Decimal(str(summary["total_earned"])) == Decimal("100")


class TestAppFactory:
    def test_import_builds_no_application(self):
        import commission_ledger.api as api_module

        assert not hasattr(api_module, "app")

    def test_injected_service_is_used(self):
        settings = Settings(CONFLICT_BACKOFF_SECONDS=0)
        service = LedgerService(notifier=InMemoryDispatcher(), settings=settings)
        service.commission_earned(AFFILIATE_ID, "ORD-1", Decimal("75"))

        app = create_app(service=service, settings=settings)

        assert app.state.ledger_service is service
        assert balance(TestClient(app)) == Decimal("75")

    def test_each_app_gets_its_own_ledger(self):
        settings = Settings(CONFLICT_BACKOFF_SECONDS=0)

        first = create_app(settings=settings)
        second = create_app(settings=settings)

        assert first.state.ledger_service is not second.state.ledger_service
        earn(TestClient(first), "ORD-1", 100)
        assert balance(TestClient(second)) == Decimal("0")
