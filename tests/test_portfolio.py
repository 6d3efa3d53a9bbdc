"""
End-to-end tests through the LoanPortfolio facade

A client borrows, pays, the cash account is credited, caches are
synchronized and the dashboard reflects the ledger.
"""

import pytest
from decimal import Decimal
from datetime import date
from unittest.mock import Mock

from loan_portfolio.portfolio import LoanPortfolio
from loan_portfolio.config import PortfolioConfig
from loan_portfolio.currency import Money, Currency
from loan_portfolio.events import DomainEvent
from loan_portfolio.schedule import LoanTerms
from loan_portfolio.reconciliation import LoanStatus
from loan_portfolio.payments import PaymentData
from loan_portfolio.accounts import CashAccountType
from loan_portfolio.exceptions import ClientNotFoundError, InvalidTermsError


def money(value: str) -> Money:
    return Money(Decimal(value), Currency.BRL)


TERMS = LoanTerms(Decimal('1200.00'), Decimal('2'), 3, date(2024, 1, 15))


class TestLoanPortfolio:
    """Test the wired engine"""

    def setup_method(self):
        self.portfolio = LoanPortfolio(PortfolioConfig(storage_backend="memory"))
        self.client = self.portfolio.client_manager.create_client("Ana", "123", "555")
        self.account = self.portfolio.account_manager.create_account("Till", CashAccountType.CASH)

    def teardown_method(self):
        self.portfolio.close()

    def pay(self, loan_id, sequence, today):
        installment = self.portfolio.loan_manager.get_installment(loan_id, sequence)
        data = PaymentData.for_installment(installment, installment.due_date)
        return self.portfolio.payment_processor.record_payment(
            loan_id, sequence, data, cash_account_id=self.account.id, today=today
        )

    def test_loan_lifecycle(self):
        observer = Mock()
        loan = self.portfolio.create_loan(self.client.id, TERMS, observers=[observer])

        for sequence in (1, 2, 3):
            receipt = self.pay(loan.id, sequence, date(2024, 5, 1))
            assert receipt.balance_updated

        stored = self.portfolio.loan_manager.get_loan(loan.id)
        assert stored.status == LoanStatus.COMPLETED
        assert stored.paid_installments == 3
        assert self.portfolio.account_manager.get_balance(self.account.id) == money('1248.00')
        assert self.portfolio.audit_trail.verify_integrity()['valid']
        assert observer.call_args_list[0].args[0].event_type == DomainEvent.LOAN_CREATED

    def test_create_loan_requires_client(self):
        with pytest.raises(ClientNotFoundError):
            self.portfolio.create_loan("nobody", TERMS)

        assert self.portfolio.loan_manager.list_loans() == []

    def test_loans_must_use_portfolio_currency(self):
        dollar_terms = LoanTerms(Decimal('1200.00'), Decimal('2'), 3, date(2024, 1, 15), Currency.USD)

        with pytest.raises(InvalidTermsError):
            self.portfolio.create_loan(self.client.id, dollar_terms)

        assert self.portfolio.dashboard("all", today=date(2024, 6, 1)).total_loans == 0

    def test_financial_reports_through_facade(self):
        loan = self.portfolio.create_loan(self.client.id, TERMS)
        self.pay(loan.id, 1, date(2024, 2, 20))

        overview = self.portfolio.kpi_service.financial_overview(as_of=date(2024, 2, 20))
        projection = self.portfolio.kpi_service.cash_flow_projection(2, today=date(2024, 2, 20))

        assert overview.total_balance == money('424.00')
        assert overview.total_receivable == money('824.00')
        assert [m.paid_revenue for m in projection] == [money('424.00'), money('0.00')]

    def test_record_payment_through_facade(self):
        loan = self.portfolio.create_loan(self.client.id, TERMS)
        installment = self.portfolio.loan_manager.get_installment(loan.id, 1)
        data = PaymentData.for_installment(installment, date(2024, 2, 15))

        receipt = self.portfolio.record_payment(loan.id, 1, data, cash_account_id=self.account.id)

        assert receipt.balance_updated
        assert receipt.paid_installments == 1

    def test_sync_all_and_dashboard(self):
        loan = self.portfolio.create_loan(self.client.id, TERMS)
        self.pay(loan.id, 1, date(2024, 2, 20))
        self.portfolio.loan_manager.delete_installments(
            self.portfolio.create_loan(self.client.id, TERMS).id
        )

        report = self.portfolio.sync_all(as_of=date(2024, 2, 20))
        kpis = self.portfolio.dashboard("all", today=date(2024, 2, 20))

        assert report.total == 2
        assert report.failure_count == 0
        assert report.schedules_created == 1
        assert kpis.total_loans == 2
        assert kpis.total_lent == money('2400.00')
        assert kpis.total_received == money('424.00')
        assert kpis.pending_amount == money('2072.00')
        assert kpis.total_clients == 1

    def test_configured_penalty_rates(self):
        portfolio = LoanPortfolio(PortfolioConfig(late_penalty_rate="0.10", daily_penalty_rate="0"))
        client = portfolio.client_manager.create_client("Bia", "456", "556")
        loan = portfolio.create_loan(client.id, TERMS)

        assert portfolio.payment_processor.penalty_for(loan.id, 1, as_of=date(2024, 3, 1)) == money('42.40')

    def test_sqlite_backend(self, tmp_path):
        config = PortfolioConfig(storage_backend="sqlite", database_path=str(tmp_path / "p.db"))
        portfolio = LoanPortfolio(config)
        client = portfolio.client_manager.create_client("Bia", "456", "556")
        loan = portfolio.create_loan(client.id, TERMS)
        portfolio.close()

        reopened = LoanPortfolio(config)
        assert len(reopened.loan_manager.get_installments(loan.id)) == 3
        assert reopened.audit_trail.verify_integrity()['valid']
        reopened.close()
