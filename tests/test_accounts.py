"""
Test suite for cash accounts
"""

import threading
import pytest
from decimal import Decimal

from loan_portfolio.currency import Money, Currency
from loan_portfolio.storage import InMemoryStorage
from loan_portfolio.audit import AuditTrail, AuditEventType
from loan_portfolio.accounts import CashAccount, CashAccountManager, CashAccountType
from loan_portfolio.exceptions import AccountNotFoundError


class TestCashAccountManager:
    """Test cash account creation and balance changes"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)
        self.manager = CashAccountManager(self.storage, self.audit_trail)

    def test_create_account(self):
        account = self.manager.create_account(
            "Bank of Brazil", CashAccountType.BANK, Money(Decimal('150.00'), Currency.BRL)
        )

        assert account.balance == Money(Decimal('150.00'), Currency.BRL)
        assert account.is_active
        assert self.manager.get_account(account.id).to_dict() == account.to_dict()
        events = self.audit_trail.get_events_for_entity("cash_account", account.id)
        assert events[0].event_type == AuditEventType.CASH_ACCOUNT_CREATED

    def test_default_balance_is_zero_in_currency(self):
        account = self.manager.create_account("Dollar box", currency=Currency.USD)

        assert account.balance == Money.zero(Currency.USD)
        assert account.currency == Currency.USD

    def test_require_missing_account(self):
        assert self.manager.get_account("missing") is None
        with pytest.raises(AccountNotFoundError):
            self.manager.require_account("missing")

    def test_credit(self):
        account = self.manager.create_account("Till")

        balance = self.manager.credit(account.id, Money(Decimal('424.00')))
        balance = self.manager.credit(account.id, Money(Decimal('0.50')))

        assert balance == Money(Decimal('424.50'))
        assert self.manager.get_balance(account.id) == Money(Decimal('424.50'))

    @pytest.mark.parametrize("amount", ["0", "-5.00"])
    def test_credit_rejects_non_positive(self, amount):
        account = self.manager.create_account("Till")

        with pytest.raises(ValueError, match="positive"):
            self.manager.credit(account.id, Money(Decimal(amount)))

    def test_credit_rejects_other_currency(self):
        account = self.manager.create_account("Dollar box", currency=Currency.USD)

        with pytest.raises(ValueError):
            self.manager.credit(account.id, Money(Decimal('10.00'), Currency.BRL))

        assert self.manager.get_balance(account.id).is_zero()

    def test_credit_missing_account(self):
        with pytest.raises(AccountNotFoundError):
            self.manager.credit("missing", Money(Decimal('1.00')))

    def test_concurrent_credits_are_not_lost(self):
        account = self.manager.create_account("Till")

        def worker():
            for _ in range(25):
                self.manager.credit(account.id, Money(Decimal('1.00')))

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert self.manager.get_balance(account.id) == Money(Decimal('100.00'))

    def test_list_active_accounts(self):
        bank = self.manager.create_account("Bank", CashAccountType.BANK)
        till = self.manager.create_account("Till")
        closed = self.manager.create_account("Archive")
        self.manager.deactivate_account(closed.id)

        assert [a.id for a in self.manager.list_active_accounts()] == [bank.id, till.id]

    def test_round_trip(self):
        account = CashAccount("Savings", CashAccountType.INVESTMENT, Money(Decimal('9.99'), Currency.EUR))

        assert CashAccount.from_dict(account.to_dict()) == account
