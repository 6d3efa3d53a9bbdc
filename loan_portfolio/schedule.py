"""
Schedule Generator Module

Builds a loan's installment schedule with constant amortization (SAC): the
principal portion is identical in every period and interest is charged on the
principal still outstanding at the start of the period, so installment totals
decrease over time.

The generator is a pure function of the loan terms. It never touches storage.
"""

from decimal import Decimal
from datetime import date
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Dict, List, Optional
import calendar

from .currency import Money, Currency, to_decimal
from .exceptions import InvalidTermsError


class InstallmentStatus(Enum):
    """Installment statuses"""
    PENDING = "pending"
    PAID = "paid"
    OVERDUE = "overdue"


@dataclass(frozen=True)
class LoanTerms:
    """
    Terms a schedule is generated from. Immutable once the loan exists;
    new terms mean a full schedule regeneration.
    """
    principal: Decimal
    monthly_rate: Decimal        # percentage per month, e.g. 2 for 2%
    installment_count: int
    start_date: date
    currency: Currency = Currency.BRL

    def __post_init__(self):
        object.__setattr__(self, 'principal', to_decimal(self.principal))
        object.__setattr__(self, 'monthly_rate', to_decimal(self.monthly_rate))

    def validate(self) -> None:
        """
        Raises:
            InvalidTermsError: non-positive principal, count below one, or
                negative rate
        """
        if not self.principal.is_finite() or self.principal <= 0:
            raise InvalidTermsError(f"Principal must be positive, got {self.principal}")
        if isinstance(self.installment_count, bool) or not isinstance(self.installment_count, int):
            raise InvalidTermsError(f"Installment count must be an integer, got {self.installment_count!r}")
        if self.installment_count < 1:
            raise InvalidTermsError(f"Installment count must be at least 1, got {self.installment_count}")
        if not self.monthly_rate.is_finite() or self.monthly_rate < 0:
            raise InvalidTermsError(f"Interest rate cannot be negative, got {self.monthly_rate}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            'principal': str(self.principal),
            'monthly_rate': str(self.monthly_rate),
            'installment_count': self.installment_count,
            'start_date': self.start_date.isoformat(),
            'currency': self.currency.code
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LoanTerms':
        return cls(
            principal=Decimal(data['principal']),
            monthly_rate=Decimal(data['monthly_rate']),
            installment_count=int(data['installment_count']),
            start_date=date.fromisoformat(data['start_date']),
            currency=Currency.from_code(data.get('currency', 'BRL'))
        )


@dataclass(frozen=True)
class Installment:
    """One scheduled repayment unit of a loan"""
    loan_id: str
    sequence: int                # 1-based, unique within the loan
    due_date: date
    principal: Money
    interest: Money
    total: Money
    status: InstallmentStatus = InstallmentStatus.PENDING

    # Populated only when paid
    payment_date: Optional[date] = None
    paid_amount: Optional[Money] = None
    paid_principal: Optional[Money] = None
    paid_interest: Optional[Money] = None
    paid_penalty: Optional[Money] = None

    @property
    def id(self) -> str:
        return installment_id(self.loan_id, self.sequence)

    @property
    def currency(self) -> Currency:
        return self.total.currency

    @property
    def is_paid(self) -> bool:
        return self.status == InstallmentStatus.PAID

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        def money(value: Optional[Money]) -> Optional[str]:
            return str(value.amount) if value is not None else None

        return {
            'id': self.id,
            'loan_id': self.loan_id,
            'sequence': self.sequence,
            'due_date': self.due_date.isoformat(),
            'principal': money(self.principal),
            'interest': money(self.interest),
            'total': money(self.total),
            'currency': self.currency.code,
            'status': self.status.value,
            'payment_date': self.payment_date.isoformat() if self.payment_date else None,
            'paid_amount': money(self.paid_amount),
            'paid_principal': money(self.paid_principal),
            'paid_interest': money(self.paid_interest),
            'paid_penalty': money(self.paid_penalty)
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Installment':
        """Create instance from dictionary"""
        currency = Currency.from_code(data.get('currency', 'BRL'))

        def money(key: str) -> Optional[Money]:
            if data.get(key) is None:
                return None
            return Money(Decimal(data[key]), currency)

        return cls(
            loan_id=data['loan_id'],
            sequence=int(data['sequence']),
            due_date=date.fromisoformat(data['due_date']),
            principal=money('principal'),
            interest=money('interest'),
            total=money('total'),
            status=InstallmentStatus(data.get('status', 'pending')),
            payment_date=date.fromisoformat(data['payment_date']) if data.get('payment_date') else None,
            paid_amount=money('paid_amount'),
            paid_principal=money('paid_principal'),
            paid_interest=money('paid_interest'),
            paid_penalty=money('paid_penalty')
        )

    def unpaid(self, status: InstallmentStatus) -> 'Installment':
        """Copy with payment fields cleared and the given open status"""
        return replace(self, status=status, payment_date=None, paid_amount=None,
                       paid_principal=None, paid_interest=None, paid_penalty=None)


def installment_id(loan_id: str, sequence: int) -> str:
    """Deterministic installment id; doubles as the per-loan uniqueness key"""
    return f"{loan_id}:{sequence}"


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, clamping the day to the target month's length"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def generate_schedule(terms: LoanTerms, loan_id: str = "") -> List[Installment]:
    """
    Generate the constant-amortization schedule for a loan.

    Intermediate values stay unrounded; principal, interest and total are
    rounded half-up to currency precision only when each installment is
    emitted, and the outstanding principal is reduced by the unrounded
    principal portion so rounding never compounds across periods.

    Args:
        terms: Loan terms
        loan_id: Owning loan id stamped on every installment

    Returns:
        Installments 1..N ordered by sequence, all pending

    Raises:
        InvalidTermsError: if the terms are invalid
    """
    terms.validate()

    count = terms.installment_count
    principal_per_installment = terms.principal / Decimal(count)
    periodic_rate = terms.monthly_rate / Decimal('100')
    remaining_principal = terms.principal

    schedule = []
    for sequence in range(1, count + 1):
        interest = remaining_principal * periodic_rate
        total = principal_per_installment + interest

        schedule.append(Installment(
            loan_id=loan_id,
            sequence=sequence,
            due_date=add_months(terms.start_date, sequence),
            principal=Money(principal_per_installment, terms.currency),
            interest=Money(interest, terms.currency),
            total=Money(total, terms.currency),
            status=InstallmentStatus.PENDING
        ))

        remaining_principal -= principal_per_installment

    return schedule
