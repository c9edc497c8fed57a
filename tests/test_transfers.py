"""
Test suite for transfers and the contact book
"""

import pytest
from decimal import Decimal

from simply_core.config import SimplyConfig
from simply_core.errors import (
    DailyLimitExceededError, InactiveAccountError, InsufficientFundsError, InvalidAmountError,
    InvalidCVUError, InvalidFormatError, InvalidMotiveError, LimitExceededError,
    MissingDestinationError, NotFoundError, SelfTransferError, StateError
)
from simply_core.ledger import TransactionStatus, TransactionType
from simply_core.storage import InMemoryStorage
from simply_core.system import SimplySystem
from simply_core.transfers import EXTERNAL_ACCOUNT_NAME
from simply_core.wallet import AccountStatus

EXTERNAL_CVU = "0170099220000067797370"


def fund(system, user_id, amount):
    account = system.wallet.require_account(user_id)
    return system.transfers.receive_external_transfer(account.cvu, amount, source_cvu=EXTERNAL_CVU)


class TransferTestBase:
    """Two accounts; user-1 funded with 10000"""
    
    config = None
    
    def setup_method(self):
        self.system = SimplySystem(storage=InMemoryStorage(), config=self.config or SimplyConfig())
        self.sender = self.system.wallet.create_account("user-1", holder_name="Ana Gomez")
        self.receiver = self.system.wallet.create_account("user-2", holder_name="Luis Perez")
        self.system.wallet.update_alias("user-2", "sol.luna.mar")
        fund(self.system, "user-1", "10000.00")
    
    def balance(self, user_id):
        return self.system.wallet.get_account(user_id).balance


class TestValidation(TransferTestBase):
    """Request checks before any state is touched"""
    
    def test_missing_destination(self):
        with pytest.raises(MissingDestinationError):
            self.system.transfers.transfer("user-1", "100", "VAR")
    
    def test_invalid_motive(self):
        with pytest.raises(InvalidMotiveError):
            self.system.transfers.transfer("user-1", "100", "XYZ", destination_alias="sol.luna.mar")
    
    @pytest.mark.parametrize("amount", ["0", "-5", "10.001", "abc"])
    def test_invalid_amount(self, amount):
        with pytest.raises(InvalidAmountError):
            self.system.transfers.transfer("user-1", amount, "VAR", destination_alias="sol.luna.mar")
    
    def test_invalid_cvu(self):
        with pytest.raises(InvalidCVUError):
            self.system.transfers.transfer("user-1", "100", "VAR", destination_cvu="12345")
    
    def test_self_transfer(self):
        with pytest.raises(SelfTransferError):
            self.system.transfers.transfer("user-1", "100", "VAR", destination_cvu=self.sender.cvu)
    
    def test_insufficient_funds_counts_fee(self):
        with pytest.raises(InsufficientFundsError) as exc_info:
            self.system.transfers.transfer("user-1", "10000", "VAR", destination_alias="sol.luna.mar")
        assert exc_info.value.required == Decimal("10050.00")
        assert self.balance("user-1") == Decimal("10000.00")
    
    def test_unknown_sender(self):
        with pytest.raises(NotFoundError):
            self.system.transfers.transfer("nobody", "100", "VAR", destination_alias="sol.luna.mar")
    
    def test_suspended_sender(self):
        self.system.wallet.set_status("user-1", AccountStatus.SUSPENDED, "review")
        with pytest.raises(InactiveAccountError):
            self.system.transfers.transfer("user-1", "100", "VAR", destination_alias="sol.luna.mar")
    
    def test_suspended_destination(self):
        self.system.wallet.set_status("user-2", AccountStatus.SUSPENDED, "review")
        with pytest.raises(InactiveAccountError):
            self.system.transfers.transfer("user-1", "100", "VAR", destination_alias="sol.luna.mar")
        assert self.balance("user-1") == Decimal("10000.00")


class TestInternalTransfer(TransferTestBase):
    """Destination inside Simply"""
    
    def test_transfer_by_alias(self):
        result = self.system.transfers.transfer(
            "user-1", "1000", "ALQ", destination_alias="SOL.LUNA.MAR", reference="rent"
        )
        
        assert result["amount"] == Decimal("1000.00")
        assert result["fee"] == Decimal("5.00")
        assert result["total"] == Decimal("1005.00")
        assert result["destination"] == {
            "cvu": self.receiver.cvu,
            "alias": "sol.luna.mar",
            "name": "Luis Perez",
            "external": False
        }
        assert result["transaction"].status == TransactionStatus.COMPLETED
        
        assert self.balance("user-1") == Decimal("8995.00")
        assert self.balance("user-2") == Decimal("1000.00")
        assert self.system.wallet.reconcile("user-1").balanced
        assert self.system.wallet.reconcile("user-2").balanced
    
    def test_incoming_leg_links_outgoing(self):
        result = self.system.transfers.transfer("user-1", "250", "VAR", destination_cvu=self.receiver.cvu)
        
        incoming = self.system.ledger.list_transactions("user-2", tx_type=TransactionType.TRANSFER_IN)
        assert len(incoming) == 1
        assert incoming[0].amount == Decimal("250.00")
        assert incoming[0].fee == Decimal("0")
        assert incoming[0].metadata["transfer_out_id"] == result["transaction"].id


class TestLimits(TransferTestBase):
    """Daily and monthly caps on completed outgoing amounts"""
    
    config = SimplyConfig(default_daily_limit="1000", default_monthly_limit="1500")
    
    def test_daily_limit(self):
        self.system.transfers.transfer("user-1", "800", "VAR", destination_alias="sol.luna.mar")
        
        with pytest.raises(DailyLimitExceededError):
            self.system.transfers.transfer("user-1", "300", "VAR", destination_alias="sol.luna.mar")
        self.system.transfers.transfer("user-1", "200", "VAR", destination_alias="sol.luna.mar")
    
    def test_processing_transfers_do_not_count(self):
        self.system.transfers.transfer("user-1", "900", "VAR", destination_cvu=EXTERNAL_CVU)
        self.system.transfers.transfer("user-1", "900", "VAR", destination_alias="sol.luna.mar")
    
    def test_monthly_limit(self):
        self.system.storage.save(
            "accounts", "user-1",
            {**self.system.storage.load("accounts", "user-1"), "daily_limit": "5000"}
        )
        self.system.transfers.transfer("user-1", "1000", "VAR", destination_alias="sol.luna.mar")
        
        with pytest.raises(LimitExceededError) as exc_info:
            self.system.transfers.transfer("user-1", "600", "VAR", destination_alias="sol.luna.mar")
        assert not isinstance(exc_info.value, DailyLimitExceededError)


class TestExternalTransfer(TransferTestBase):
    """Destination at another institution"""
    
    def setup_method(self):
        super().setup_method()
        self.result = self.system.transfers.transfer("user-1", "2000", "FAC", destination_cvu=EXTERNAL_CVU)
        self.transaction = self.result["transaction"]
    
    def test_left_processing(self):
        assert self.transaction.status == TransactionStatus.PROCESSING
        assert self.transaction.metadata == {"destination_name": EXTERNAL_ACCOUNT_NAME, "external": True}
        assert self.result["destination"]["external"] is True
        assert self.balance("user-1") == Decimal("7990.00")
    
    def test_settle_success(self):
        result = self.system.transfers.settle_external_transfer(self.transaction.id, True)
        
        assert result["transaction"].status == TransactionStatus.COMPLETED
        assert result["refund"] is None
        assert self.balance("user-1") == Decimal("7990.00")
    
    def test_settle_failure_refunds_amount_and_fee(self):
        result = self.system.transfers.settle_external_transfer(self.transaction.id, False, "Account closed")
        
        assert result["transaction"].status == TransactionStatus.FAILED
        assert result["transaction"].metadata["failure_reason"] == "Account closed"
        assert result["refund"].type == TransactionType.TRANSFER_REFUND
        assert result["refund"].balance_delta == Decimal("2010.00")
        assert self.balance("user-1") == Decimal("10000.00")
        assert self.system.wallet.reconcile("user-1").balanced
    
    def test_settle_only_once(self):
        self.system.transfers.settle_external_transfer(self.transaction.id, False)
        with pytest.raises(StateError):
            self.system.transfers.settle_external_transfer(self.transaction.id, True)
        assert self.balance("user-1") == Decimal("10000.00")
    
    def test_settle_rejects_other_entries(self):
        incoming = self.system.ledger.list_transactions("user-1", tx_type=TransactionType.TRANSFER_IN)[0]
        with pytest.raises(StateError):
            self.system.transfers.settle_external_transfer(incoming.id, True)


class TestIncomingTransfer(TransferTestBase):
    """Credits from other institutions"""
    
    def test_receive_by_alias(self):
        result = fund(self.system, "user-2", "150.25")
        
        assert result["transaction"].type == TransactionType.TRANSFER_IN
        assert result["transaction"].metadata["source_name"] == EXTERNAL_ACCOUNT_NAME
        assert self.balance("user-2") == Decimal("150.25")
    
    def test_blocked_account_rejects_credit(self):
        self.system.wallet.set_status("user-2", AccountStatus.BLOCKED, "compliance")
        with pytest.raises(InactiveAccountError):
            fund(self.system, "user-2", "10.00")
    
    def test_suspended_account_still_receives(self):
        self.system.wallet.set_status("user-2", AccountStatus.SUSPENDED, "review")
        fund(self.system, "user-2", "10.00")
        assert self.balance("user-2") == Decimal("10.00")
    
    def test_unknown_destination(self):
        with pytest.raises(NotFoundError):
            self.system.transfers.receive_external_transfer("no.such.alias", "10", source_cvu=EXTERNAL_CVU)


class TestValidateDestination(TransferTestBase):
    """Destination lookup before sending"""
    
    def test_internal(self):
        result = self.system.transfers.validate_destination("sol.luna.mar")
        assert result["found"] is True
        assert result["cvu"] == self.receiver.cvu
        assert result["name"] == "Luis Perez"
    
    def test_external_cvu(self):
        result = self.system.transfers.validate_destination(EXTERNAL_CVU)
        assert result["found"] is False
        assert result["external"] is True
        assert result["cvu"] == EXTERNAL_CVU
    
    def test_invalid_identifier(self):
        with pytest.raises(InvalidFormatError):
            self.system.transfers.validate_destination("12345")
    
    def test_motives(self):
        codes = [m["code"] for m in self.system.transfers.motives()]
        assert "VAR" in codes
        assert len(codes) == 10


class TestContacts(TransferTestBase):
    """Contact book"""
    
    def test_transfer_records_contact(self):
        self.system.transfers.transfer("user-1", "100", "VAR", destination_alias="sol.luna.mar")
        self.system.transfers.transfer("user-1", "100", "VAR", destination_cvu=self.receiver.cvu)
        
        contacts = self.system.transfers.get_contacts("user-1")
        assert len(contacts) == 1
        assert contacts[0].cvu == self.receiver.cvu
        assert contacts[0].name == "Luis Perez"
        assert contacts[0].last_used is not None
    
    def test_alias_only_external_contact(self):
        self.system.transfers.transfer("user-1", "100", "VAR", destination_alias="pago.mis.cuentas")
        self.system.transfers.transfer("user-1", "100", "VAR", destination_alias="pago.mis.cuentas")
        
        contacts = self.system.transfers.get_contacts("user-1")
        assert len(contacts) == 1
        assert contacts[0].cvu is None
        assert contacts[0].alias == "pago.mis.cuentas"
    
    def test_save_toggle_search_delete(self):
        saved = self.system.transfers.save_contact("user-1", EXTERNAL_CVU, "Marta Banco")
        self.system.transfers.save_contact("user-1", self.receiver.cvu, "Luis Perez")
        
        assert self.system.transfers.toggle_favorite("user-1", saved.id).is_favorite
        contacts = self.system.transfers.get_contacts("user-1")
        assert contacts[0].id == saved.id
        assert len(self.system.transfers.get_contacts("user-1", favorites_only=True)) == 1
        assert [c.name for c in self.system.transfers.get_contacts("user-1", search="luis")] == ["Luis Perez"]
        
        with pytest.raises(NotFoundError):
            self.system.transfers.delete_contact("user-2", saved.id)
        assert self.system.transfers.delete_contact("user-1", saved.id) == {"deleted": True}
        assert len(self.system.transfers.get_contacts("user-1")) == 1
    
    def test_save_contact_updates_existing(self):
        first = self.system.transfers.save_contact("user-1", EXTERNAL_CVU, "Marta")
        second = self.system.transfers.save_contact("user-1", EXTERNAL_CVU, "Marta Banco", is_favorite=True)
        
        assert first.id == second.id
        assert second.name == "Marta Banco"
        assert second.is_favorite
    
    def test_save_contact_invalid_cvu(self):
        with pytest.raises(InvalidCVUError):
            self.system.transfers.save_contact("user-1", "123", "Nadie")
