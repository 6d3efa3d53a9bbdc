"""
Payment Reconciliation Module

Derives installment statuses and loan-level aggregates from the authoritative
set of payment records. Recorded payments are the source of truth; paid
counts, remaining balances and loan status are always recomputable from them.
"""

from decimal import Decimal
from datetime import date, datetime, timezone
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple
import uuid

from .currency import Money, Currency
from .schedule import Installment, InstallmentStatus, installment_id


class LoanStatus(Enum):
    """Loan statuses"""
    ACTIVE = "active"
    COMPLETED = "completed"
    DEFAULTED = "defaulted"     # set only by an external delinquency policy


class AnomalyKind(Enum):
    """Ledger conditions surfaced for manual review"""
    EXCESS_PAYMENTS = "excess_payments"   # more payment records than installments
    ORPHAN_PAYMENT = "orphan_payment"     # payment for a sequence not in the schedule


@dataclass(frozen=True)
class PaymentRecord:
    """
    Immutable ledger fact: installment `installment_sequence` of `loan_id`
    was paid on `payment_date`. Corrections are new records, never edits.
    """
    loan_id: str
    installment_sequence: int
    payment_date: date
    amount: Money
    principal: Money
    interest: Money
    penalty: Money
    cash_account_id: Optional[str] = None
    notes: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    recorded_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def installment_id(self) -> str:
        return installment_id(self.loan_id, self.installment_sequence)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'loan_id': self.loan_id,
            'installment_sequence': self.installment_sequence,
            'payment_date': self.payment_date.isoformat(),
            'amount': str(self.amount.amount),
            'principal': str(self.principal.amount),
            'interest': str(self.interest.amount),
            'penalty': str(self.penalty.amount),
            'currency': self.amount.currency.code,
            'cash_account_id': self.cash_account_id,
            'notes': self.notes,
            'recorded_at': self.recorded_at.isoformat()
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PaymentRecord':
        currency = Currency.from_code(data.get('currency', 'BRL'))
        return cls(
            id=data['id'],
            loan_id=data['loan_id'],
            installment_sequence=int(data['installment_sequence']),
            payment_date=date.fromisoformat(data['payment_date']),
            amount=Money(Decimal(data['amount']), currency),
            principal=Money(Decimal(data['principal']), currency),
            interest=Money(Decimal(data['interest']), currency),
            penalty=Money(Decimal(data['penalty']), currency),
            cash_account_id=data.get('cash_account_id'),
            notes=data.get('notes'),
            recorded_at=datetime.fromisoformat(data['recorded_at'])
        )


@dataclass(frozen=True)
class IntegrityAnomaly:
    """A ledger inconsistency reported for review. Never raised."""
    loan_id: str
    kind: AnomalyKind
    installment_count: int
    payment_count: int
    sequences: Tuple[int, ...] = ()
    detail: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            'loan_id': self.loan_id,
            'kind': self.kind.value,
            'installment_count': self.installment_count,
            'payment_count': self.payment_count,
            'sequences': list(self.sequences),
            'detail': self.detail
        }


@dataclass(frozen=True)
class ReconciliationResult:
    """Installments with derived statuses plus the loan-level aggregates"""
    installments: Tuple[Installment, ...]
    paid_count: int
    overdue_count: int
    remaining_balance: Money
    loan_status: LoanStatus
    anomalies: Tuple[IntegrityAnomaly, ...] = ()

    @property
    def installment_count(self) -> int:
        return len(self.installments)

    @property
    def has_anomaly(self) -> bool:
        return bool(self.anomalies)

    @property
    def is_complete(self) -> bool:
        return self.loan_status == LoanStatus.COMPLETED


def _sort_payments(payments: Iterable[PaymentRecord]) -> List[PaymentRecord]:
    return sorted(payments, key=lambda p: (p.installment_sequence, p.payment_date, p.recorded_at, p.id))


def reconcile(
    installments: Sequence[Installment],
    payments: Iterable[PaymentRecord],
    as_of: Optional[date] = None
) -> ReconciliationResult:
    """
    Recompute installment statuses and loan aggregates from payment records.

    An installment is paid iff at least one payment record references it;
    otherwise it is overdue when its due date is strictly before `as_of`,
    else pending. The result depends only on the inputs (inputs are sorted
    internally), so repeated calls return equal results.

    Args:
        installments: The loan's schedule, any order
        payments: Every payment record of the loan
        as_of: Reference date for overdue detection (defaults to today)

    Returns:
        ReconciliationResult
    """
    as_of = as_of or date.today()
    ordered = sorted(installments, key=lambda i: i.sequence)
    payment_list = _sort_payments(payments)

    currency = ordered[0].currency if ordered else (
        payment_list[0].amount.currency if payment_list else Currency.BRL)
    loan_id = ordered[0].loan_id if ordered else (payment_list[0].loan_id if payment_list else "")

    by_sequence: Dict[int, List[PaymentRecord]] = {}
    for payment in payment_list:
        by_sequence.setdefault(payment.installment_sequence, []).append(payment)

    reconciled = []
    for installment in ordered:
        records = by_sequence.get(installment.sequence)
        if records:
            reconciled.append(replace(
                installment,
                status=InstallmentStatus.PAID,
                payment_date=max(p.payment_date for p in records),
                paid_amount=Money.sum((p.amount for p in records), currency),
                paid_principal=Money.sum((p.principal for p in records), currency),
                paid_interest=Money.sum((p.interest for p in records), currency),
                paid_penalty=Money.sum((p.penalty for p in records), currency)
            ))
        elif installment.due_date < as_of:
            reconciled.append(installment.unpaid(InstallmentStatus.OVERDUE))
        else:
            reconciled.append(installment.unpaid(InstallmentStatus.PENDING))

    paid_count = sum(1 for i in reconciled if i.status == InstallmentStatus.PAID)
    overdue_count = sum(1 for i in reconciled if i.status == InstallmentStatus.OVERDUE)
    remaining = Money.sum((i.total for i in reconciled if i.status != InstallmentStatus.PAID), currency)

    if reconciled and paid_count == len(reconciled):
        status = LoanStatus.COMPLETED
    else:
        status = LoanStatus.ACTIVE

    anomalies = []
    if len(payment_list) > len(reconciled):
        anomalies.append(IntegrityAnomaly(
            loan_id=loan_id,
            kind=AnomalyKind.EXCESS_PAYMENTS,
            installment_count=len(reconciled),
            payment_count=len(payment_list),
            detail=f"{len(payment_list)} payment records for {len(reconciled)} installments"
        ))

    known = {i.sequence for i in reconciled}
    orphans = tuple(sorted(seq for seq in by_sequence if seq not in known))
    if orphans:
        anomalies.append(IntegrityAnomaly(
            loan_id=loan_id,
            kind=AnomalyKind.ORPHAN_PAYMENT,
            installment_count=len(reconciled),
            payment_count=len(payment_list),
            sequences=orphans,
            detail=f"Payments reference unknown installments {list(orphans)}"
        ))

    return ReconciliationResult(
        installments=tuple(reconciled),
        paid_count=paid_count,
        overdue_count=overdue_count,
        remaining_balance=remaining,
        loan_status=status,
        anomalies=tuple(anomalies)
    )


def late_penalty(
    installment: Installment,
    as_of: date,
    rate: Decimal = Decimal('0.02'),
    daily_rate: Decimal = Decimal('0.001')
) -> Money:
    """
    Informative late penalty for an unpaid installment: a flat `rate` of the
    installment total plus `daily_rate` of it per day past due.
    """
    if installment.is_paid or installment.due_date >= as_of:
        return Money.zero(installment.currency)
    days_overdue = (as_of - installment.due_date).days
    base = installment.total.amount
    return Money(base * rate + base * daily_rate * days_overdue, installment.currency)
