"""
Test suite for loans module

Tests loan creation, cached fields, CRUD operations, and the installment and
payment ledger tables owned by the loan manager.
"""

import pytest
from decimal import Decimal
from datetime import datetime, timezone, date, timedelta
from unittest.mock import Mock

from loan_portfolio.currency import Money, Currency
from loan_portfolio.storage import InMemoryStorage
from loan_portfolio.audit import AuditTrail, AuditEventType
from loan_portfolio.events import EventDispatcher, DomainEvent
from loan_portfolio.schedule import LoanTerms, InstallmentStatus
from loan_portfolio.reconciliation import PaymentRecord, LoanStatus
from loan_portfolio.loans import Loan, LoanManager
from loan_portfolio.synchronizer import ScheduleSynchronizer
from loan_portfolio.exceptions import (
    InvalidTermsError, ScheduleCreationError, LoanNotFoundError,
    InstallmentNotFoundError, LoanStateError, DuplicateRecordError
)


def money(value: str) -> Money:
    return Money(Decimal(value), Currency.BRL)


REFERENCE_TERMS = LoanTerms(Decimal('1200.00'), Decimal('2'), 3, date(2024, 1, 15))


def payment_for(installment, record_id=None):
    kwargs = {'id': record_id} if record_id else {}
    return PaymentRecord(
        loan_id=installment.loan_id,
        installment_sequence=installment.sequence,
        payment_date=installment.due_date,
        amount=installment.total,
        principal=installment.principal,
        interest=installment.interest,
        penalty=money('0'),
        **kwargs
    )


class TestLoanCreation:
    """Test loan creation and schedule persistence"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)
        self.dispatcher = EventDispatcher()
        self.loan_manager = LoanManager(self.storage, self.audit_trail, self.dispatcher)

    def test_create_loan_sets_cached_fields(self):
        loan = self.loan_manager.create_loan("client-1", REFERENCE_TERMS, notes="first loan")

        assert loan.client_id == "client-1"
        assert loan.principal == money('1200.00')
        assert loan.installment_value == money('424.00')
        assert loan.total_amount == money('1248.00')
        assert loan.remaining_balance == money('1248.00')
        assert loan.end_date == date(2024, 4, 15)
        assert loan.paid_installments == 0
        assert loan.status == LoanStatus.ACTIVE
        assert loan.notes == "first loan"

        stored = self.loan_manager.get_loan(loan.id)
        assert stored.to_dict() == loan.to_dict()

    def test_create_loan_persists_schedule(self):
        loan = self.loan_manager.create_loan("client-1", REFERENCE_TERMS)
        installments = self.loan_manager.get_installments(loan.id)

        assert [i.sequence for i in installments] == [1, 2, 3]
        assert [i.total for i in installments] == [money('424.00'), money('416.00'), money('408.00')]
        assert all(i.status == InstallmentStatus.PENDING for i in installments)
        assert all(i.loan_id == loan.id for i in installments)

    def test_invalid_terms_persist_nothing(self):
        bad_terms = LoanTerms(Decimal('0'), Decimal('2'), 3, date(2024, 1, 15))

        with pytest.raises(InvalidTermsError):
            self.loan_manager.create_loan("client-1", bad_terms)

        assert self.storage.count("loans") == 0
        assert self.storage.count("installments") == 0

    def test_foreign_currency_rejected(self):
        loan_manager = LoanManager(self.storage, self.audit_trail, currency=Currency.BRL)
        dollar_terms = LoanTerms(Decimal('1200.00'), Decimal('2'), 3, date(2024, 1, 15), Currency.USD)

        with pytest.raises(InvalidTermsError, match="USD"):
            loan_manager.create_loan("client-1", dollar_terms)

        assert self.storage.count("loans") == 0
        assert self.storage.count("installments") == 0

    def test_foreign_currency_rejected_on_regeneration(self):
        loan_manager = LoanManager(self.storage, self.audit_trail, currency=Currency.BRL)
        loan = loan_manager.create_loan("client-1", REFERENCE_TERMS)
        dollar_terms = LoanTerms(Decimal('1200.00'), Decimal('2'), 3, date(2024, 1, 15), Currency.USD)

        with pytest.raises(InvalidTermsError):
            loan_manager.synchronizer.regenerate_schedule(loan.id, dollar_terms)

        assert loan_manager.get_loan(loan.id).terms == REFERENCE_TERMS

    def test_schedule_failure_keeps_loan(self):
        """Loan persisted, schedule not: typed error naming the loan"""
        self.loan_manager.synchronizer = Mock(
            ensure_schedule=Mock(side_effect=RuntimeError("connection lost"))
        )

        with pytest.raises(ScheduleCreationError) as exc_info:
            self.loan_manager.create_loan("client-1", REFERENCE_TERMS)

        loan_id = exc_info.value.loan_id
        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert self.loan_manager.get_loan(loan_id) is not None
        assert self.loan_manager.get_installments(loan_id) == []

        # A later ensure_schedule repairs it
        synchronizer = ScheduleSynchronizer(self.loan_manager, self.audit_trail, self.dispatcher)
        assert synchronizer.ensure_schedule(loan_id) == 3

    def test_create_loan_notifies_observers(self):
        observer = Mock()
        subscriber = Mock()
        self.dispatcher.subscribe(DomainEvent.LOAN_CREATED, subscriber)

        loan = self.loan_manager.create_loan("client-1", REFERENCE_TERMS, observers=[observer])

        event_types = [call.args[0].event_type for call in observer.call_args_list]
        assert event_types == [DomainEvent.LOAN_CREATED, DomainEvent.SCHEDULE_CREATED]
        subscriber.assert_called_once()
        assert subscriber.call_args.args[0].entity_id == loan.id

    def test_create_loan_is_audited(self):
        loan = self.loan_manager.create_loan("client-1", REFERENCE_TERMS)
        events = self.audit_trail.get_events_for_entity("loan", loan.id)

        assert [e.event_type for e in events] == [
            AuditEventType.LOAN_CREATED, AuditEventType.SCHEDULE_CREATED
        ]
        assert events[0].metadata["installments"] == 3


class TestLoanQueries:
    """Test loan lookup and updates"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)
        self.loan_manager = LoanManager(self.storage, self.audit_trail)

    def test_get_missing_loan(self):
        assert self.loan_manager.get_loan("missing") is None
        with pytest.raises(LoanNotFoundError):
            self.loan_manager.require_loan("missing")

    def test_list_loans_newest_first(self):
        older = self.loan_manager.create_loan("client-1", REFERENCE_TERMS)
        newer = self.loan_manager.create_loan("client-2", REFERENCE_TERMS)
        older.created_at = datetime.now(timezone.utc) - timedelta(days=3)
        self.loan_manager.save_loan(older)

        assert [loan.id for loan in self.loan_manager.list_loans()] == [newer.id, older.id]

    def test_list_client_loans(self):
        mine = self.loan_manager.create_loan("client-1", REFERENCE_TERMS)
        self.loan_manager.create_loan("client-2", REFERENCE_TERMS)

        assert [loan.id for loan in self.loan_manager.list_client_loans("client-1")] == [mine.id]
        assert self.loan_manager.list_client_loans("nobody") == []

    def test_update_notes(self):
        loan = self.loan_manager.create_loan("client-1", REFERENCE_TERMS)

        self.loan_manager.update_loan_notes(loan.id, "renegotiation requested")

        assert self.loan_manager.get_loan(loan.id).notes == "renegotiation requested"

    def test_get_installment(self):
        loan = self.loan_manager.create_loan("client-1", REFERENCE_TERMS)

        installment = self.loan_manager.get_installment(loan.id, 2)

        assert installment.total == money('416.00')
        with pytest.raises(InstallmentNotFoundError):
            self.loan_manager.get_installment(loan.id, 4)

    def test_loan_round_trip(self):
        loan = self.loan_manager.create_loan("client-1", REFERENCE_TERMS, notes="x")

        assert Loan.from_dict(loan.to_dict()) == loan


class TestLoanLifecycle:
    """Test default flag and deletion rules"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)
        self.dispatcher = EventDispatcher()
        self.loan_manager = LoanManager(self.storage, self.audit_trail, self.dispatcher)
        self.loan = self.loan_manager.create_loan("client-1", REFERENCE_TERMS)

    def test_flag_defaulted(self):
        loan = self.loan_manager.flag_defaulted(self.loan.id, reason="90 days overdue")

        assert loan.status == LoanStatus.DEFAULTED
        assert self.loan_manager.get_loan(self.loan.id).status == LoanStatus.DEFAULTED
        events = self.audit_trail.get_events_by_type(AuditEventType.LOAN_DEFAULTED)
        assert events[0].metadata["reason"] == "90 days overdue"

    def test_flag_defaulted_twice_is_noop(self):
        self.loan_manager.flag_defaulted(self.loan.id)
        self.loan_manager.flag_defaulted(self.loan.id)

        assert len(self.audit_trail.get_events_by_type(AuditEventType.LOAN_DEFAULTED)) == 1

    def test_completed_loan_cannot_default(self):
        self.loan.status = LoanStatus.COMPLETED
        self.loan_manager.save_loan(self.loan)

        with pytest.raises(LoanStateError):
            self.loan_manager.flag_defaulted(self.loan.id)

    def test_delete_loan_without_payments(self):
        observer = Mock()

        self.loan_manager.delete_loan(self.loan.id, observers=[observer])

        assert self.loan_manager.get_loan(self.loan.id) is None
        assert self.loan_manager.get_installments(self.loan.id) == []
        assert observer.call_args.args[0].event_type == DomainEvent.LOAN_DELETED

    def test_delete_loan_with_payments_is_refused(self):
        installment = self.loan_manager.get_installment(self.loan.id, 1)
        self.loan_manager.append_payment_record(payment_for(installment))

        with pytest.raises(LoanStateError) as exc_info:
            self.loan_manager.delete_loan(self.loan.id)

        assert exc_info.value.loan_id == self.loan.id
        assert self.loan_manager.get_loan(self.loan.id) is not None
        assert len(self.loan_manager.get_installments(self.loan.id)) == 3


class TestPaymentLedger:
    """Test the append-only payment record table"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.loan_manager = LoanManager(self.storage, AuditTrail(self.storage))
        self.loan = self.loan_manager.create_loan("client-1", REFERENCE_TERMS)
        self.installments = self.loan_manager.get_installments(self.loan.id)

    def test_records_are_ordered_by_payment_date(self):
        second = payment_for(self.installments[1])
        first = payment_for(self.installments[0])
        self.loan_manager.append_payment_record(second)
        self.loan_manager.append_payment_record(first)

        records = self.loan_manager.get_payment_records(self.loan.id)

        assert [r.id for r in records] == [first.id, second.id]
        assert self.loan_manager.count_payment_records(self.loan.id) == 2

    def test_records_cannot_be_overwritten(self):
        record = payment_for(self.installments[0], record_id="payment-1")
        self.loan_manager.append_payment_record(record)

        with pytest.raises(DuplicateRecordError):
            self.loan_manager.append_payment_record(payment_for(self.installments[1], record_id="payment-1"))

        assert self.loan_manager.get_payment_records(self.loan.id)[0].installment_sequence == 1
