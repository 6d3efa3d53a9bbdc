"""
Loan Module

The Loan aggregate and the manager that owns the loans, installments and
payment_records tables. A loan's paid count, remaining balance and status are
caches of facts derivable from its payment records; only the schedule
synchronizer rewrites them.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence
import uuid

from .currency import Money, Currency
from .storage import StorageInterface
from .audit import AuditTrail, AuditEventType
from .events import EventDispatcher, DomainEvent, EventHandler
from .schedule import LoanTerms, Installment, generate_schedule, installment_id
from .reconciliation import LoanStatus, PaymentRecord
from .exceptions import (
    LoanNotFoundError, InstallmentNotFoundError, ScheduleCreationError, LoanStateError,
    InvalidTermsError
)
from .logging_config import get_logger, log_action


@dataclass
class Loan:
    """Loan aggregate with its cached progress fields"""
    client_id: str
    terms: LoanTerms
    installment_value: Money          # first (largest) installment total
    total_amount: Money               # sum of all installment totals
    end_date: date                    # last installment due date
    remaining_balance: Money
    paid_installments: int = 0
    status: LoanStatus = LoanStatus.ACTIVE
    notes: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def currency(self) -> Currency:
        return self.terms.currency

    @property
    def principal(self) -> Money:
        return Money(self.terms.principal, self.terms.currency)

    @property
    def installment_count(self) -> int:
        return self.terms.installment_count

    @property
    def is_active(self) -> bool:
        return self.status == LoanStatus.ACTIVE

    @property
    def start_date(self) -> date:
        return self.terms.start_date

    @classmethod
    def from_schedule(cls, client_id: str, terms: LoanTerms, schedule: Sequence[Installment],
                      **kwargs) -> 'Loan':
        """Build a fresh loan whose caches describe an unpaid schedule"""
        total = Money.sum((i.total for i in schedule), terms.currency)
        return cls(
            client_id=client_id,
            terms=terms,
            installment_value=schedule[0].total,
            total_amount=total,
            end_date=schedule[-1].due_date,
            remaining_balance=total,
            **kwargs
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'client_id': self.client_id,
            'terms': self.terms.to_dict(),
            'installment_value': str(self.installment_value.amount),
            'total_amount': str(self.total_amount.amount),
            'end_date': self.end_date.isoformat(),
            'remaining_balance': str(self.remaining_balance.amount),
            'paid_installments': self.paid_installments,
            'status': self.status.value,
            'notes': self.notes,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat()
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Loan':
        terms = LoanTerms.from_dict(data['terms'])

        def money(key: str) -> Money:
            return Money(Decimal(data[key]), terms.currency)

        return cls(
            id=data['id'],
            client_id=data['client_id'],
            terms=terms,
            installment_value=money('installment_value'),
            total_amount=money('total_amount'),
            end_date=date.fromisoformat(data['end_date']),
            remaining_balance=money('remaining_balance'),
            paid_installments=int(data.get('paid_installments', 0)),
            status=LoanStatus(data.get('status', 'active')),
            notes=data.get('notes'),
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at'])
        )


class LoanManager:
    """
    Manages loans and their persisted schedules and payment ledger
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        dispatcher: Optional[EventDispatcher] = None,
        currency: Optional[Currency] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.dispatcher = dispatcher or EventDispatcher()
        # Portfolio currency; None accepts loans in any currency
        self.currency = currency
        self.logger = get_logger("loan_portfolio.loans")
        self._synchronizer = None

        self.loans_table = "loans"
        self.installments_table = "installments"
        self.payments_table = "payment_records"

    @property
    def synchronizer(self):
        """Schedule synchronizer used by create_loan (built on first use)"""
        if self._synchronizer is None:
            from .synchronizer import ScheduleSynchronizer
            self._synchronizer = ScheduleSynchronizer(self, self.audit_trail, self.dispatcher)
        return self._synchronizer

    @synchronizer.setter
    def synchronizer(self, value) -> None:
        self._synchronizer = value

    # Loans

    def check_currency(self, terms: LoanTerms) -> None:
        """
        Raises:
            InvalidTermsError: if the terms are not in the portfolio currency
        """
        if self.currency is not None and terms.currency != self.currency:
            raise InvalidTermsError(
                f"Loan currency {terms.currency.code} does not match portfolio currency {self.currency.code}"
            )

    def create_loan(
        self,
        client_id: str,
        terms: LoanTerms,
        notes: Optional[str] = None,
        observers: Optional[List[EventHandler]] = None
    ) -> Loan:
        """
        Create a loan and persist its schedule

        Args:
            client_id: Borrower client ID
            terms: Loan terms
            notes: Free-form notes
            observers: Per-call event observers

        Returns:
            Created Loan

        Raises:
            InvalidTermsError: if the terms are invalid or in another currency
                (nothing is persisted)
            ScheduleCreationError: if the loan was saved but its schedule was not
        """
        self.check_currency(terms)
        preview = generate_schedule(terms)
        loan = Loan.from_schedule(client_id, terms, preview, notes=notes)
        self.storage.save(self.loans_table, loan.id, loan.to_dict())

        self.audit_trail.log_event(
            event_type=AuditEventType.LOAN_CREATED,
            entity_type="loan",
            entity_id=loan.id,
            metadata={
                "client_id": client_id,
                "principal": loan.principal.to_string(),
                "monthly_rate": str(terms.monthly_rate),
                "installments": terms.installment_count,
                "start_date": terms.start_date.isoformat()
            }
        )
        self.dispatcher.emit(DomainEvent.LOAN_CREATED, "loan", loan.id, {
            "client_id": client_id,
            "principal": str(terms.principal),
            "installments": terms.installment_count
        }, observers)

        try:
            self.synchronizer.ensure_schedule(loan.id, observers=observers)
        except Exception as e:
            log_action(self.logger, "error", f"Schedule creation failed for loan {loan.id}: {e}",
                       action="schedule_creation_failed", resource=f"loan:{loan.id}")
            raise ScheduleCreationError(
                loan.id, f"Loan {loan.id} was created but its schedule could not be persisted: {e}"
            ) from e

        log_action(self.logger, "info", f"Created loan {loan.id} for client {client_id}",
                   action="loan_created", resource=f"loan:{loan.id}")
        return loan

    def get_loan(self, loan_id: str) -> Optional[Loan]:
        """Get loan by ID"""
        loan_dict = self.storage.load(self.loans_table, loan_id)
        if loan_dict:
            return Loan.from_dict(loan_dict)
        return None

    def require_loan(self, loan_id: str) -> Loan:
        loan = self.get_loan(loan_id)
        if loan is None:
            raise LoanNotFoundError(f"Loan {loan_id} not found")
        return loan

    def list_loans(self) -> List[Loan]:
        """All loans, newest first"""
        loans = [Loan.from_dict(data) for data in self.storage.load_all(self.loans_table)]
        loans.sort(key=lambda loan: (loan.created_at, loan.id), reverse=True)
        return loans

    def list_client_loans(self, client_id: str) -> List[Loan]:
        """Get all loans for a client, newest first"""
        loans = [Loan.from_dict(data)
                 for data in self.storage.find(self.loans_table, {"client_id": client_id})]
        loans.sort(key=lambda loan: (loan.created_at, loan.id), reverse=True)
        return loans

    def save_loan(self, loan: Loan) -> Loan:
        """Persist a loan, stamping updated_at"""
        loan.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.loans_table, loan.id, loan.to_dict())
        return loan

    def update_loan_notes(self, loan_id: str, notes: Optional[str]) -> Loan:
        loan = self.require_loan(loan_id)
        loan.notes = notes
        return self.save_loan(loan)

    def flag_defaulted(self, loan_id: str, reason: Optional[str] = None) -> Loan:
        """
        Mark a loan as defaulted. This is the hook for an external delinquency
        policy; resync keeps the flag until the loan is fully paid.

        Raises:
            LoanStateError: if the loan is already completed
        """
        loan = self.require_loan(loan_id)
        if loan.status == LoanStatus.COMPLETED:
            raise LoanStateError(loan_id, f"Loan {loan_id} is completed and cannot default")
        if loan.status == LoanStatus.DEFAULTED:
            return loan

        loan.status = LoanStatus.DEFAULTED
        self.save_loan(loan)
        self.audit_trail.log_event(
            event_type=AuditEventType.LOAN_DEFAULTED,
            entity_type="loan",
            entity_id=loan_id,
            metadata={"reason": reason, "remaining_balance": loan.remaining_balance.to_string()}
        )
        log_action(self.logger, "warning", f"Loan {loan_id} flagged as defaulted",
                   action="loan_defaulted", resource=f"loan:{loan_id}",
                   extra={"reason": reason})
        return loan

    def delete_loan(self, loan_id: str, observers: Optional[List[EventHandler]] = None) -> None:
        """
        Delete a loan and its schedule

        Raises:
            LoanStateError: if any payment has been recorded for the loan
        """
        loan = self.require_loan(loan_id)
        payment_count = self.count_payment_records(loan_id)
        if payment_count:
            raise LoanStateError(
                loan_id, f"Loan {loan_id} has {payment_count} recorded payments and cannot be deleted"
            )

        with self.storage.atomic():
            removed = self.delete_installments(loan_id)
            self.storage.delete(self.loans_table, loan_id)

        self.audit_trail.log_event(
            event_type=AuditEventType.LOAN_DELETED,
            entity_type="loan",
            entity_id=loan_id,
            metadata={"client_id": loan.client_id, "installments_removed": removed}
        )
        self.dispatcher.emit(DomainEvent.LOAN_DELETED, "loan", loan_id,
                             {"client_id": loan.client_id}, observers)
        log_action(self.logger, "info", f"Deleted loan {loan_id}",
                   action="loan_deleted", resource=f"loan:{loan_id}")

    # Installments

    def get_installments(self, loan_id: str) -> List[Installment]:
        """Persisted installments of a loan ordered by sequence"""
        installments = [Installment.from_dict(data)
                        for data in self.storage.find(self.installments_table, {"loan_id": loan_id})]
        installments.sort(key=lambda i: i.sequence)
        return installments

    def get_installment(self, loan_id: str, sequence: int) -> Installment:
        data = self.storage.load(self.installments_table, installment_id(loan_id, sequence))
        if data is None:
            raise InstallmentNotFoundError(f"Installment {sequence} of loan {loan_id} not found")
        return Installment.from_dict(data)

    def list_all_installments(self) -> List[Installment]:
        return [Installment.from_dict(data) for data in self.storage.load_all(self.installments_table)]

    def insert_installments(self, installments: Sequence[Installment]) -> None:
        """
        Insert a schedule all-or-none

        Raises:
            DuplicateRecordError: if any installment id already exists
        """
        self.storage.insert_many(
            self.installments_table,
            {installment.id: installment.to_dict() for installment in installments}
        )

    def save_installment(self, installment: Installment) -> None:
        self.storage.save(self.installments_table, installment.id, installment.to_dict())

    def delete_installments(self, loan_id: str) -> int:
        """Remove a loan's whole schedule, returning how many rows went"""
        removed = 0
        for data in self.storage.find(self.installments_table, {"loan_id": loan_id}):
            if self.storage.delete(self.installments_table, data['id']):
                removed += 1
        return removed

    # Payment ledger

    def append_payment_record(self, record: PaymentRecord) -> None:
        """Append a payment record; existing records are never overwritten"""
        self.storage.insert_many(self.payments_table, {record.id: record.to_dict()})

    def get_payment_records(self, loan_id: str) -> List[PaymentRecord]:
        """Payment history for a loan, oldest first"""
        records = [PaymentRecord.from_dict(data)
                   for data in self.storage.find(self.payments_table, {"loan_id": loan_id})]
        records.sort(key=lambda r: (r.payment_date, r.recorded_at, r.id))
        return records

    def count_payment_records(self, loan_id: str) -> int:
        return len(self.storage.find(self.payments_table, {"loan_id": loan_id}))

    def list_all_payment_records(self) -> List[PaymentRecord]:
        return [PaymentRecord.from_dict(data) for data in self.storage.load_all(self.payments_table)]
