"""Exception hierarchy for the loan portfolio engine."""

from typing import List, Optional


class PortfolioError(Exception):
    """Base exception for all portfolio errors."""


class InvalidTermsError(PortfolioError, ValueError):
    """Raised when loan terms fail validation (principal, count or rate)."""


class ScheduleConflictError(PortfolioError):
    """Raised when a loan's persisted schedule is partial, duplicated, or
    was created concurrently by another caller."""

    def __init__(self, loan_id: str, message: str,
                 expected: Optional[int] = None, found: Optional[int] = None):
        super().__init__(message)
        self.loan_id = loan_id
        self.expected = expected
        self.found = found


class ScheduleCreationError(PortfolioError):
    """Raised when a loan was persisted but its schedule could not be."""

    def __init__(self, loan_id: str, message: str):
        super().__init__(message)
        self.loan_id = loan_id


class LoanNotFoundError(PortfolioError, LookupError):
    """Raised when a referenced loan does not exist."""


class InstallmentNotFoundError(PortfolioError, LookupError):
    """Raised when a referenced installment does not exist."""


class AccountNotFoundError(PortfolioError, LookupError):
    """Raised when a referenced cash account does not exist."""


class ClientNotFoundError(PortfolioError, LookupError):
    """Raised when a referenced client does not exist."""


class PaymentValidationError(PortfolioError, ValueError):
    """Raised when payment data is inconsistent."""

    def __init__(self, errors: List[str]):
        super().__init__("Invalid payment: " + "; ".join(errors))
        self.errors = list(errors)


class DuplicateRecordError(PortfolioError):
    """Raised when an insert collides with an existing record id."""

    def __init__(self, table: str, record_id: str):
        super().__init__(f"Record {record_id} already exists in {table}")
        self.table = table
        self.record_id = record_id


class LoanStateError(PortfolioError, ValueError):
    """Raised when an operation is not allowed in the loan's current state,
    e.g. deleting or regenerating a loan that already has payments."""

    def __init__(self, loan_id: str, message: str):
        super().__init__(message)
        self.loan_id = loan_id
