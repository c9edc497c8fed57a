"""
Integration tests for the Simply Core API
Tests end-to-end workflows using FastAPI TestClient
"""

import pytest
from fastapi.testclient import TestClient

from simply_core.api import create_app, status_code_for
from simply_core.config import SimplyConfig
from simply_core.errors import (
    ConflictError, DailyLimitExceededError, InsufficientFundsError, NotFoundError,
    ProvisioningError, SelfTransferError
)
from simply_core.storage import InMemoryStorage
from simply_core.system import SimplySystem

EXTERNAL_CVU = "0170099220000067797370"


def headers(user_id):
    return {"X-User-Id": user_id}


@pytest.fixture
def system():
    return SimplySystem(storage=InMemoryStorage(), config=SimplyConfig())


@pytest.fixture
def client(system):
    return TestClient(create_app(system))


def open_funded_account(client, user_id, amount="20000.00"):
    r = client.post("/wallet/account", json={"holder_name": user_id.title()}, headers=headers(user_id))
    assert r.status_code == 201
    account = r.json()
    r = client.post("/admin/transfers/incoming", json={
        "destination": account["cvu"],
        "amount": amount,
        "source_cvu": EXTERNAL_CVU
    })
    assert r.status_code == 201
    return account


class TestHealthEndpoints:
    """Basic health and root endpoints"""
    
    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json()["status"] == "healthy"
    
    def test_root(self, client):
        r = client.get("/")
        assert r.status_code == 200
        assert "wallet" in r.json()["endpoints"]


class TestErrorMapping:
    """Domain errors to HTTP status codes"""
    
    def test_status_codes(self):
        assert status_code_for(SelfTransferError("x")) == 400
        assert status_code_for(NotFoundError("x")) == 404
        assert status_code_for(ConflictError("x")) == 409
        assert status_code_for(InsufficientFundsError("x", required=2, available=1)) == 422
        assert status_code_for(DailyLimitExceededError("x")) == 422
        assert status_code_for(ProvisioningError("x")) == 503
    
    def test_missing_user_header(self, client):
        r = client.get("/wallet/balance")
        assert r.status_code == 422
    
    def test_error_body(self, client):
        r = client.get("/wallet/balance", headers=headers("ghost"))
        assert r.status_code == 404
        assert r.json()["error"] == "not_found"


class TestWalletFlow:
    """Account, balance, movements and alias"""
    
    def test_account_balance_and_movements(self, client):
        account = open_funded_account(client, "ana", "1500.50")
        assert len(account["cvu"]) == 22
        
        r = client.get("/wallet/balance", headers=headers("ana"))
        assert r.status_code == 200
        balance = r.json()
        assert balance["available"] == "1500.50"
        assert balance["currency"] == "ARS"
        
        r = client.get("/wallet/movements", params={"limit": 10}, headers=headers("ana"))
        assert r.status_code == 200
        data = r.json()
        assert data["pagination"]["total"] == 1
        assert data["transactions"][0]["type"] == "transfer_in"
        assert data["transactions"][0]["amount"] == "1500.50"
    
    def test_movements_unknown_type(self, client):
        open_funded_account(client, "ana")
        r = client.get("/wallet/movements", params={"type": "bogus"}, headers=headers("ana"))
        assert r.status_code == 400
    
    def test_alias(self, client):
        open_funded_account(client, "ana")
        open_funded_account(client, "luis")
        
        r = client.put("/wallet/alias", json={"alias": "casa.azul.sol"}, headers=headers("ana"))
        assert r.status_code == 200
        assert r.json() == {"alias": "casa.azul.sol", "changes_remaining": 2}
        
        r = client.put("/wallet/alias", json={"alias": "casa.azul.sol"}, headers=headers("luis"))
        assert r.status_code == 409
        
        r = client.put("/wallet/alias", json={"alias": "bad alias"}, headers=headers("luis"))
        assert r.status_code == 400


class TestInvestmentFlow:
    """Invest, accrue, liquidate"""
    
    def test_full_cycle(self, client):
        open_funded_account(client, "ana")
        
        r = client.post("/investments", json={"amount": "10000"}, headers=headers("ana"))
        assert r.status_code == 201
        investment = r.json()
        assert investment["status"] == "active"
        assert investment["credit_limit"] == "1500.0000"
        
        r = client.post("/admin/jobs/daily-returns", json={"as_of": "2025-01-13"})
        assert r.status_code == 200
        assert r.json()["processed"] == 1
        
        r = client.get(f"/investments/{investment['id']}/returns", headers=headers("ana"))
        assert r.status_code == 200
        assert r.json()["returns"][0]["return_amount"] == "6.0493"
        
        r = client.get("/investments", headers=headers("ana"))
        assert r.json()["summary"]["active_count"] == 1
        
        r = client.post(f"/investments/{investment['id']}/liquidate", headers=headers("ana"))
        assert r.status_code == 200
        assert r.json()["credited"] == "10006.05"
        
        r = client.get("/admin/accounts/ana/reconciliation")
        assert r.json()["balanced"] is True
    
    def test_below_minimum(self, client):
        open_funded_account(client, "ana")
        r = client.post("/investments", json={"amount": "500"}, headers=headers("ana"))
        assert r.status_code == 400
        assert r.json()["error"] == "below_minimum"
    
    def test_float_amount_rejected(self, client):
        open_funded_account(client, "ana")
        r = client.post("/investments", json={"amount": "1000.005"}, headers=headers("ana"))
        assert r.status_code == 400
    
    def test_oversized_amount_rejected(self, client):
        open_funded_account(client, "ana")
        r = client.post("/investments", json={"amount": "1" + "0" * 27}, headers=headers("ana"))
        assert r.status_code == 400
        assert r.json()["error"] == "invalid_amount"
    
    def test_simulate_months_capped(self, client):
        r = client.post("/investments/simulate", json={"amount": "10000", "months": 1000000})
        assert r.status_code == 400
        assert r.json()["error"] == "invalid_range"
    
    def test_simulate(self, client):
        r = client.post("/investments/simulate", json={"amount": "10000", "months": 1})
        assert r.status_code == 200
        assert r.json()["days"] == 30


class TestFinancingFlow:
    """Originate, pay, drop"""
    
    def setup_investment(self, client):
        open_funded_account(client, "ana")
        r = client.post("/investments", json={"amount": "10000"}, headers=headers("ana"))
        return r.json()["id"]
    
    def test_create_and_pay(self, client):
        investment_id = self.setup_investment(client)
        
        r = client.post("/financing", json={
            "investment_id": investment_id,
            "amount": "1200",
            "installments": 2,
            "destination_type": "merchant",
            "destination_ref": "order-77"
        }, headers=headers("ana"))
        assert r.status_code == 201
        detail = r.json()
        assert detail["financing"]["remaining"] == "1200.00"
        assert len(detail["installments"]) == 2
        
        installment_id = detail["installments"][0]["id"]
        r = client.post(f"/financing/installments/{installment_id}/pay", headers=headers("ana"))
        assert r.status_code == 200
        assert r.json()["financing"]["remaining"] == "600.00"
        
        r = client.post(f"/financing/installments/{installment_id}/pay", headers=headers("ana"))
        assert r.status_code == 409
        assert r.json()["error"] == "already_paid"
        
        r = client.post(f"/financing/installments/{installment_id}/pay", headers=headers("luis"))
        assert r.status_code == 403
        
        r = client.post(f"/investments/{investment_id}/liquidate", headers=headers("ana"))
        assert r.status_code == 409
        
        r = client.post(f"/financing/{detail['financing']['id']}/drop", headers=headers("ana"))
        assert r.status_code == 200
        assert r.json()["penalty_charged"] == "18.00"
        assert r.json()["returned_to_user"] == "9382.00"
    
    def test_credit_exceeded(self, client):
        investment_id = self.setup_investment(client)
        r = client.post("/financing", json={
            "investment_id": investment_id, "amount": "2000", "installments": 3
        }, headers=headers("ana"))
        assert r.status_code == 422
        assert r.json()["error"] == "insufficient_credit"
    
    def test_simulate(self, client):
        r = client.post("/financing/simulate", json={"amount": "1000", "installments": 3})
        assert r.status_code == 200
        assert r.json()["installment_amount"] == "333.33"
        assert r.json()["schedule"][2]["amount"] == "333.34"
    
    def test_overdue_job(self, client, system):
        from datetime import date
        investment_id = self.setup_investment(client)
        system.financing.create("ana", investment_id, "1000", 2, as_of=date(2025, 1, 15))
        
        r = client.post("/admin/jobs/overdue-installments", json={"as_of": "2025-02-11"})
        assert r.status_code == 200
        assert r.json()["processed"] == 1


class TestTransferFlow:
    """Transfers, settlement and contacts"""
    
    def test_internal_transfer(self, client):
        open_funded_account(client, "ana")
        open_funded_account(client, "luis", "0.01")
        client.put("/wallet/alias", json={"alias": "luis.perez.ok"}, headers=headers("luis"))
        
        r = client.post("/transfers/validate", json={"identifier": "luis.perez.ok"}, headers=headers("ana"))
        assert r.json()["found"] is True
        
        r = client.post("/transfers", json={
            "amount": "1000", "motive": "VAR", "destination_alias": "luis.perez.ok"
        }, headers=headers("ana"))
        assert r.status_code == 201
        data = r.json()
        assert data["fee"] == "5.00"
        assert data["total"] == "1005.00"
        assert data["transaction"]["status"] == "completed"
        
        r = client.get("/wallet/balance", headers=headers("luis"))
        assert r.json()["available"] == "1000.01"
        
        r = client.get("/contacts", headers=headers("ana"))
        assert len(r.json()["contacts"]) == 1
    
    def test_external_transfer_failure_refund(self, client):
        open_funded_account(client, "ana")
        r = client.post("/transfers", json={
            "amount": "1000", "motive": "FAC", "destination_cvu": EXTERNAL_CVU
        }, headers=headers("ana"))
        transaction = r.json()["transaction"]
        assert transaction["status"] == "processing"
        
        r = client.post(f"/admin/transfers/{transaction['id']}/settle", json={
            "success": False, "reason": "Rejected"
        })
        assert r.status_code == 200
        assert r.json()["refund"]["balance_delta"] == "1005.00"
        
        r = client.get("/wallet/balance", headers=headers("ana"))
        assert r.json()["available"] == "20000.00"
    
    def test_validation_errors(self, client):
        open_funded_account(client, "ana")
        r = client.post("/transfers", json={"amount": "10", "motive": "VAR"}, headers=headers("ana"))
        assert r.status_code == 400
        assert r.json()["error"] == "missing_destination"
        
        r = client.post("/transfers", json={
            "amount": "50000", "motive": "VAR", "destination_cvu": EXTERNAL_CVU
        }, headers=headers("ana"))
        assert r.status_code == 422
        assert r.json()["details"]["shortfall"] == "30250.00"
        
        r = client.post("/transfers", json={
            "amount": "1" + "0" * 27, "motive": "VAR", "destination_cvu": EXTERNAL_CVU
        }, headers=headers("ana"))
        assert r.status_code == 400
        assert r.json()["error"] == "invalid_amount"
    
    def test_motives(self, client):
        r = client.get("/transfers/motives")
        assert r.status_code == 200
        assert len(r.json()["motives"]) == 10
    
    def test_contacts_crud(self, client):
        open_funded_account(client, "ana")
        r = client.post("/contacts", json={"cvu": EXTERNAL_CVU, "name": "Marta"}, headers=headers("ana"))
        assert r.status_code == 201
        contact_id = r.json()["id"]
        
        r = client.post(f"/contacts/{contact_id}/favorite", headers=headers("ana"))
        assert r.json()["is_favorite"] is True
        
        r = client.get("/contacts", params={"favorites_only": True}, headers=headers("ana"))
        assert len(r.json()["contacts"]) == 1
        
        r = client.delete(f"/contacts/{contact_id}", headers=headers("luis"))
        assert r.status_code == 404
        r = client.delete(f"/contacts/{contact_id}", headers=headers("ana"))
        assert r.json() == {"deleted": True}


class TestAdmin:
    """Back-office operations"""
    
    def test_block_account(self, client):
        account = open_funded_account(client, "ana")
        
        r = client.put("/admin/accounts/ana/status", json={"status": "blocked", "reason": "compliance"})
        assert r.status_code == 200
        assert r.json()["status"] == "blocked"
        
        r = client.post("/admin/transfers/incoming", json={
            "destination": account["cvu"], "amount": "10", "source_cvu": EXTERNAL_CVU
        })
        assert r.status_code == 409
        assert r.json()["error"] == "inactive_account"
    
    def test_unknown_status(self, client):
        open_funded_account(client, "ana")
        r = client.put("/admin/accounts/ana/status", json={"status": "frozen", "reason": "x"})
        assert r.status_code == 400
    
    def test_weekend_sweep(self, client):
        r = client.post("/admin/jobs/daily-returns", json={"as_of": "2025-01-11"})
        assert r.json()["skipped_reason"] == "weekend"
