"""
Payment Recording Module

Records installment payments. Appending the payment record and marking the
installment paid happen in one storage transaction; crediting the linked cash
account is a second step whose failure is persisted as a BalanceUpdateFailure
(the payment itself is kept) and repaired later by repair_balances.
"""

from decimal import Decimal
from datetime import date, datetime, timezone
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import uuid

from .currency import Money, Currency
from .audit import AuditTrail, AuditEventType
from .events import EventDispatcher, DomainEvent, EventHandler
from .schedule import Installment
from .reconciliation import PaymentRecord, LoanStatus, reconcile, late_penalty
from .accounts import CashAccountManager
from .exceptions import PaymentValidationError
from .logging_config import get_logger, log_action


@dataclass(frozen=True)
class PaymentData:
    """Amounts received for one installment"""
    payment_date: date
    total_paid: Money
    principal_paid: Money
    interest_paid: Money
    penalty_paid: Optional[Money] = None

    @property
    def penalty(self) -> Money:
        return self.penalty_paid if self.penalty_paid is not None else Money.zero(self.total_paid.currency)

    @classmethod
    def for_installment(cls, installment: Installment, payment_date: date,
                        penalty: Optional[Money] = None) -> 'PaymentData':
        """Full payment of an installment, plus an optional penalty"""
        penalty = penalty or Money.zero(installment.currency)
        return cls(
            payment_date=payment_date,
            total_paid=installment.total + penalty,
            principal_paid=installment.principal,
            interest_paid=installment.interest,
            penalty_paid=penalty
        )


def validate_payment_data(
    data: PaymentData,
    today: Optional[date] = None,
    tolerance: Decimal = Decimal('0.01'),
    currency: Optional[Currency] = None
) -> List[str]:
    """
    Check a payment for consistency

    Returns:
        List of error messages, empty when the payment is valid
    """
    today = today or date.today()
    errors = []

    if data.payment_date is None:
        errors.append("Payment date is required")
    elif data.payment_date > today:
        errors.append("Payment date cannot be in the future")

    amounts = [data.total_paid, data.principal_paid, data.interest_paid, data.penalty]
    expected_currency = currency or data.total_paid.currency
    if any(m.currency != expected_currency for m in amounts):
        errors.append(f"All amounts must be in {expected_currency.code}")
        return errors

    if not data.total_paid.is_positive():
        errors.append("Total paid must be greater than zero")
    if data.principal_paid.is_negative():
        errors.append("Principal paid cannot be negative")
    if data.interest_paid.is_negative():
        errors.append("Interest paid cannot be negative")
    if data.penalty.is_negative():
        errors.append("Penalty paid cannot be negative")

    parts = data.principal_paid.amount + data.interest_paid.amount + data.penalty.amount
    if abs(parts - data.total_paid.amount) > tolerance:
        errors.append("Total paid must equal principal + interest + penalty")

    return errors


@dataclass
class BalanceUpdateFailure:
    """A payment whose cash account credit did not go through"""
    payment_id: str
    loan_id: str
    cash_account_id: str
    amount: Money
    error: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    attempts: int = 1
    resolved: bool = False
    resolved_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'payment_id': self.payment_id,
            'loan_id': self.loan_id,
            'cash_account_id': self.cash_account_id,
            'amount': str(self.amount.amount),
            'currency': self.amount.currency.code,
            'error': self.error,
            'occurred_at': self.occurred_at.isoformat(),
            'attempts': self.attempts,
            'resolved': self.resolved,
            'resolved_at': self.resolved_at.isoformat() if self.resolved_at else None
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BalanceUpdateFailure':
        return cls(
            id=data['id'],
            payment_id=data['payment_id'],
            loan_id=data['loan_id'],
            cash_account_id=data['cash_account_id'],
            amount=Money(Decimal(data['amount']), Currency.from_code(data.get('currency', 'BRL'))),
            error=data['error'],
            occurred_at=datetime.fromisoformat(data['occurred_at']),
            attempts=int(data.get('attempts', 1)),
            resolved=bool(data.get('resolved', False)),
            resolved_at=datetime.fromisoformat(data['resolved_at']) if data.get('resolved_at') else None
        )


@dataclass
class PaymentReceipt:
    """Outcome of recording a payment, one field per sub-step"""
    record: PaymentRecord
    installment: Installment
    is_partial: bool
    is_overpayment: bool
    excess_amount: Money
    balance_updated: bool = False
    balance_failure: Optional[BalanceUpdateFailure] = None
    paid_installments: Optional[int] = None     # set when resync ran
    loan_status: Optional[LoanStatus] = None
    resync_error: Optional[str] = None


@dataclass
class BalanceRepairReport:
    attempted: int = 0
    repaired: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)


class PaymentProcessor:
    """
    Records installment payments against the loan ledger
    """

    def __init__(
        self,
        loan_manager,
        account_manager: CashAccountManager,
        audit_trail: AuditTrail,
        dispatcher: Optional[EventDispatcher] = None,
        synchronizer=None,
        resync_after_payment: bool = True,
        tolerance: Decimal = Decimal('0.01'),
        late_penalty_rate: Decimal = Decimal('0.02'),
        daily_penalty_rate: Decimal = Decimal('0.001')
    ):
        self.loan_manager = loan_manager
        self.account_manager = account_manager
        self.storage = loan_manager.storage
        self.audit_trail = audit_trail
        self.dispatcher = dispatcher or EventDispatcher()
        self.synchronizer = synchronizer or loan_manager.synchronizer
        self.resync_after_payment = resync_after_payment
        self.tolerance = tolerance
        self.late_penalty_rate = late_penalty_rate
        self.daily_penalty_rate = daily_penalty_rate
        self.logger = get_logger("loan_portfolio.payments")

        self.failures_table = "balance_update_failures"

    def validate_payment(self, data: PaymentData, currency: Optional[Currency] = None,
                         today: Optional[date] = None) -> None:
        """
        Raises:
            PaymentValidationError: listing every problem found
        """
        errors = validate_payment_data(data, today, self.tolerance, currency)
        if errors:
            raise PaymentValidationError(errors)

    def record_payment(
        self,
        loan_id: str,
        installment_sequence: int,
        data: PaymentData,
        cash_account_id: Optional[str] = None,
        notes: Optional[str] = None,
        observers: Optional[List[EventHandler]] = None,
        today: Optional[date] = None
    ) -> PaymentReceipt:
        """
        Record a payment for one installment

        Args:
            loan_id: Loan ID
            installment_sequence: 1-based installment number
            data: Amounts and payment date
            cash_account_id: Cash account to credit with the total paid
            notes: Free-form notes stored on the payment record
            observers: Per-call event observers
            today: Reference date for validation and overdue status

        Returns:
            PaymentReceipt

        Raises:
            PaymentValidationError: if the payment data is inconsistent
            LoanNotFoundError: if the loan does not exist
            InstallmentNotFoundError: if the installment does not exist
            AccountNotFoundError: if the cash account does not exist
        """
        today = today or date.today()
        loan = self.loan_manager.require_loan(loan_id)
        self.validate_payment(data, loan.currency, today)
        installment = self.loan_manager.get_installment(loan_id, installment_sequence)
        if cash_account_id is not None:
            self.account_manager.require_account(cash_account_id)

        record = PaymentRecord(
            loan_id=loan_id,
            installment_sequence=installment_sequence,
            payment_date=data.payment_date,
            amount=data.total_paid,
            principal=data.principal_paid,
            interest=data.interest_paid,
            penalty=data.penalty,
            cash_account_id=cash_account_id,
            notes=notes
        )

        with self.storage.atomic():
            prior = [r for r in self.loan_manager.get_payment_records(loan_id)
                     if r.installment_sequence == installment_sequence]
            self.loan_manager.append_payment_record(record)
            paid = reconcile([installment], prior + [record], today).installments[0]
            self.loan_manager.save_installment(paid)

        already_paid = Money.sum((r.amount for r in prior), loan.currency)
        outstanding = installment.total - already_paid
        if outstanding.is_negative():
            outstanding = Money.zero(loan.currency)
        is_partial = data.total_paid < outstanding
        is_overpayment = data.total_paid > outstanding
        excess = data.total_paid - outstanding if is_overpayment else Money.zero(loan.currency)

        receipt = PaymentReceipt(
            record=record,
            installment=paid,
            is_partial=is_partial,
            is_overpayment=is_overpayment,
            excess_amount=excess
        )

        self.audit_trail.log_event(
            event_type=AuditEventType.PAYMENT_RECORDED,
            entity_type="loan",
            entity_id=loan_id,
            metadata={
                "payment_id": record.id,
                "installment": installment_sequence,
                "amount": data.total_paid.to_string(),
                "payment_date": data.payment_date.isoformat(),
                "cash_account_id": cash_account_id
            }
        )
        log_action(self.logger, "info",
                   f"Recorded payment {record.id} for installment {installment_sequence} of loan {loan_id}",
                   action="payment_recorded", resource=f"loan:{loan_id}",
                   extra={"amount": str(data.total_paid.amount), "partial": is_partial,
                          "overpayment": is_overpayment})

        if cash_account_id is not None:
            self._credit_account(receipt, observers)

        self.dispatcher.emit(DomainEvent.PAYMENT_RECORDED, "loan", loan_id, {
            "payment_id": record.id,
            "installment": installment_sequence,
            "amount": str(data.total_paid.amount),
            "balance_updated": receipt.balance_updated
        }, observers)

        if self.resync_after_payment:
            try:
                receipt.paid_installments = self.synchronizer.resync(loan_id, today, observers)
                receipt.loan_status = self.loan_manager.require_loan(loan_id).status
            except Exception as e:
                # The payment stands; sync_all will repair the cache later
                receipt.resync_error = f"{type(e).__name__}: {e}"
                log_action(self.logger, "error", f"Resync after payment failed for loan {loan_id}: {e}",
                           action="resync_failed", resource=f"loan:{loan_id}")

        return receipt

    def _credit_account(self, receipt: PaymentReceipt,
                        observers: Optional[List[EventHandler]]) -> None:
        record = receipt.record
        try:
            self.account_manager.credit(record.cash_account_id, record.amount)
        except Exception as e:
            failure = BalanceUpdateFailure(
                payment_id=record.id,
                loan_id=record.loan_id,
                cash_account_id=record.cash_account_id,
                amount=record.amount,
                error=f"{type(e).__name__}: {e}"
            )
            self.storage.save(self.failures_table, failure.id, failure.to_dict())
            receipt.balance_failure = failure

            log_action(self.logger, "error",
                       f"Balance update failed for payment {record.id} on cash account {record.cash_account_id}: {e}",
                       action="balance_update_failed", resource=f"cash_account:{record.cash_account_id}",
                       extra=failure.to_dict())
            self.audit_trail.log_event(
                event_type=AuditEventType.BALANCE_UPDATE_FAILED,
                entity_type="cash_account",
                entity_id=record.cash_account_id,
                metadata=failure.to_dict()
            )
            self.dispatcher.emit(DomainEvent.BALANCE_UPDATE_FAILED, "cash_account",
                                 record.cash_account_id, failure.to_dict(), observers)
            return

        receipt.balance_updated = True

    def list_balance_failures(self, unresolved_only: bool = True) -> List[BalanceUpdateFailure]:
        failures = [BalanceUpdateFailure.from_dict(data)
                    for data in self.storage.load_all(self.failures_table)]
        if unresolved_only:
            failures = [f for f in failures if not f.resolved]
        failures.sort(key=lambda f: (f.occurred_at, f.id))
        return failures

    def repair_balances(self) -> BalanceRepairReport:
        """
        Re-apply every unresolved cash account credit

        Each credit and its resolved flag are written in one storage unit, and
        the failure row is re-read inside it, so concurrent passes never
        credit the same payment twice. Failures are counted and left
        unresolved; the pass never stops early.
        """
        report = BalanceRepairReport()
        for pending in self.list_balance_failures():
            try:
                failure = self._repair_failure(pending.id)
            except Exception as e:
                failure = self._record_repair_attempt(pending.id, e)
                report.attempted += 1
                report.failed[failure.id] = failure.error
                log_action(self.logger, "error", f"Balance repair failed for payment {failure.payment_id}: {e}",
                           action="balance_repair_failed",
                           resource=f"cash_account:{failure.cash_account_id}")
                continue

            if failure is None:
                # Resolved by a concurrent pass
                continue
            report.attempted += 1
            report.repaired.append(failure.id)

            self.audit_trail.log_event(
                event_type=AuditEventType.BALANCE_REPAIRED,
                entity_type="cash_account",
                entity_id=failure.cash_account_id,
                metadata={"payment_id": failure.payment_id, "amount": failure.amount.to_string()}
            )
            self.dispatcher.emit(DomainEvent.BALANCE_REPAIRED, "cash_account", failure.cash_account_id,
                                 {"payment_id": failure.payment_id, "amount": str(failure.amount.amount)})
            log_action(self.logger, "info", f"Repaired balance for payment {failure.payment_id}",
                       action="balance_repaired", resource=f"cash_account:{failure.cash_account_id}")

        return report

    def _load_failure(self, failure_id: str) -> Optional[BalanceUpdateFailure]:
        data = self.storage.load(self.failures_table, failure_id)
        return BalanceUpdateFailure.from_dict(data) if data else None

    def _repair_failure(self, failure_id: str) -> Optional[BalanceUpdateFailure]:
        """Credit and resolve one failure; None when it is already resolved"""
        with self.storage.atomic():
            failure = self._load_failure(failure_id)
            if failure is None or failure.resolved:
                return None
            self.account_manager.credit(failure.cash_account_id, failure.amount)
            failure.resolved = True
            failure.resolved_at = datetime.now(timezone.utc)
            self.storage.save(self.failures_table, failure.id, failure.to_dict())
        return failure

    def _record_repair_attempt(self, failure_id: str, error: Exception) -> BalanceUpdateFailure:
        with self.storage.atomic():
            failure = self._load_failure(failure_id)
            failure.attempts += 1
            failure.error = f"{type(error).__name__}: {error}"
            self.storage.save(self.failures_table, failure.id, failure.to_dict())
        return failure

    def penalty_for(self, loan_id: str, installment_sequence: int,
                    as_of: Optional[date] = None) -> Money:
        """Informative late penalty currently owed on an installment"""
        as_of = as_of or date.today()
        installment = self.loan_manager.get_installment(loan_id, installment_sequence)
        return late_penalty(installment, as_of, self.late_penalty_rate, self.daily_penalty_rate)
