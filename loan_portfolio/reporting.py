"""
Reporting Module

Portfolio KPIs over a date window, plus per-loan and per-client breakdowns.

aggregate_kpis is a pure reduction: it reconciles every included loan
against the payment ledger it is given and never reads or writes storage.
KPIService loads the data and resolves date filters for callers.
"""

from decimal import Decimal, ROUND_HALF_UP
from datetime import date, timedelta
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple
from enum import Enum

from .currency import Money, Currency
from .schedule import Installment, InstallmentStatus, add_months
from .reconciliation import LoanStatus, PaymentRecord, ReconciliationResult, reconcile
from .loans import Loan
from .logging_config import get_logger


class DateFilter(Enum):
    """Named reporting periods, all ending with today"""
    DAY = "day"
    WEEK = "week"            # weeks start on Sunday
    MONTH = "month"
    QUARTER = "quarter"
    SEMESTER = "semester"
    YEAR = "year"
    ALL = "all"
    CUSTOM = "custom"


@dataclass(frozen=True)
class DateWindow:
    """Half-open date range [start, end); a missing bound is unbounded"""
    start: Optional[date] = None
    end: Optional[date] = None

    def __post_init__(self):
        if self.start and self.end and self.start > self.end:
            raise ValueError(f"Window start {self.start} is after end {self.end}")

    @classmethod
    def unbounded(cls) -> 'DateWindow':
        return cls()

    @property
    def is_unbounded(self) -> bool:
        return self.start is None and self.end is None

    def contains(self, day: date) -> bool:
        if self.start is not None and day < self.start:
            return False
        if self.end is not None and day >= self.end:
            return False
        return True

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            'start': self.start.isoformat() if self.start else None,
            'end': self.end.isoformat() if self.end else None
        }


def resolve_window(
    date_filter: Any,
    today: Optional[date] = None,
    custom_start: Optional[date] = None,
    custom_end: Optional[date] = None
) -> DateWindow:
    """
    Turn a named filter into a concrete window ending after today

    Args:
        date_filter: DateFilter or its string value
        today: Reference date (defaults to the current date)
        custom_start: First day of a custom range
        custom_end: Last day (inclusive) of a custom range

    Returns:
        DateWindow
    """
    date_filter = DateFilter(date_filter) if not isinstance(date_filter, DateFilter) else date_filter
    today = today or date.today()
    tomorrow = today + timedelta(days=1)

    if date_filter == DateFilter.ALL:
        return DateWindow.unbounded()

    if date_filter == DateFilter.CUSTOM:
        if custom_start is None or custom_end is None:
            # Incomplete custom range falls back to today only
            return DateWindow(today, tomorrow)
        return DateWindow(custom_start, custom_end + timedelta(days=1))

    if date_filter == DateFilter.DAY:
        start = today
    elif date_filter == DateFilter.WEEK:
        start = today - timedelta(days=(today.weekday() + 1) % 7)
    elif date_filter == DateFilter.MONTH:
        start = today.replace(day=1)
    elif date_filter == DateFilter.QUARTER:
        start = date(today.year, (today.month - 1) // 3 * 3 + 1, 1)
    elif date_filter == DateFilter.SEMESTER:
        start = date(today.year, 1 if today.month <= 6 else 7, 1)
    else:
        start = date(today.year, 1, 1)

    return DateWindow(start, tomorrow)


@dataclass(frozen=True)
class PortfolioKPIs:
    """
    Dashboard KPI record.

    monthly_revenue is total_received divided by the number of loans in the
    window (minimum one). Despite the name it is not a per-calendar-month
    figure; it is kept for compatibility with existing dashboards.
    """
    window: DateWindow
    total_loans: int
    active_loans: int
    completed_loans: int
    defaulted_loans: int
    total_clients: int
    total_lent: Money
    total_received: Money
    pending_amount: Money
    overdue_amount: Money
    default_rate: Decimal       # fraction of total_loans, 4 decimal places
    monthly_revenue: Money

    def to_dict(self) -> Dict[str, Any]:
        return {
            'window': self.window.to_dict(),
            'total_loans': self.total_loans,
            'active_loans': self.active_loans,
            'completed_loans': self.completed_loans,
            'defaulted_loans': self.defaulted_loans,
            'total_clients': self.total_clients,
            'total_lent': str(self.total_lent.amount),
            'total_received': str(self.total_received.amount),
            'pending_amount': str(self.pending_amount.amount),
            'overdue_amount': str(self.overdue_amount.amount),
            'default_rate': str(self.default_rate),
            'monthly_revenue': str(self.monthly_revenue.amount)
        }


def _group(items: Iterable, key: str) -> Dict[str, List]:
    grouped: Dict[str, List] = {}
    for item in items:
        grouped.setdefault(getattr(item, key), []).append(item)
    return grouped


@dataclass(frozen=True)
class _LoanState:
    status: LoanStatus
    remaining: Money
    overdue: Money


def _loan_state(loan: Loan, result: Optional[ReconciliationResult]) -> _LoanState:
    """Effective status and balances of a loan, from its ledger when available"""
    if result is None or not result.installments:
        return _LoanState(loan.status, loan.remaining_balance, Money.zero(loan.currency))

    status = result.loan_status
    if loan.status == LoanStatus.DEFAULTED and status != LoanStatus.COMPLETED:
        status = LoanStatus.DEFAULTED
    overdue = Money.sum((i.total for i in result.installments
                         if i.status == InstallmentStatus.OVERDUE), loan.currency)
    return _LoanState(status, result.remaining_balance, overdue)


def aggregate_kpis(
    window: DateWindow,
    loans: Sequence[Loan],
    installments: Sequence[Installment],
    payments: Sequence[PaymentRecord],
    clients: Sequence[Any],
    today: Optional[date] = None,
    currency: Currency = Currency.BRL
) -> PortfolioKPIs:
    """
    Reduce portfolio data to the KPI record for a window

    Loans are included when their creation date falls in the window; payments
    count toward total_received when their payment date does. Loans and
    payments in a currency other than the reporting currency are left out.
    Pending and overdue amounts come from reconciling each included loan
    against the full ledger, with overdue measured against today regardless
    of the window.

    Args:
        window: Half-open reporting window
        loans: All loans
        installments: Persisted installments of those loans
        payments: The complete payment ledger
        clients: All clients (only counted)
        today: Reference date for overdue detection
        currency: Reporting currency

    Returns:
        PortfolioKPIs
    """
    today = today or date.today()
    included = sorted((loan for loan in loans
                       if loan.currency == currency and window.contains(loan.created_at.date())),
                      key=lambda loan: loan.id)
    installments_by_loan = _group(installments, 'loan_id')
    payments_by_loan = _group(payments, 'loan_id')

    states = []
    for loan in included:
        schedule = installments_by_loan.get(loan.id)
        result = reconcile(schedule, payments_by_loan.get(loan.id, []), today) if schedule else None
        states.append(_loan_state(loan, result))

    total_loans = len(included)
    active = [s for s in states if s.status == LoanStatus.ACTIVE]
    completed = sum(1 for s in states if s.status == LoanStatus.COMPLETED)
    defaulted = sum(1 for s in states if s.status == LoanStatus.DEFAULTED)

    total_lent = Money.sum((loan.principal for loan in included), currency)
    total_received = Money.sum((p.amount for p in payments
                                if p.amount.currency == currency and window.contains(p.payment_date)),
                               currency)
    pending = Money.sum((s.remaining for s in active), currency)
    overdue = Money.sum((s.overdue for s in states), currency)

    if total_loans:
        default_rate = (Decimal(defaulted) / Decimal(total_loans)).quantize(
            Decimal('0.0001'), rounding=ROUND_HALF_UP)
    else:
        default_rate = Decimal('0')

    return PortfolioKPIs(
        window=window,
        total_loans=total_loans,
        active_loans=len(active),
        completed_loans=completed,
        defaulted_loans=defaulted,
        total_clients=len(clients),
        total_lent=total_lent,
        total_received=total_received,
        pending_amount=pending,
        overdue_amount=overdue,
        default_rate=default_rate,
        monthly_revenue=total_received / Decimal(max(total_loans, 1))
    )


@dataclass(frozen=True)
class LoanBreakdown:
    """Capital versus interest split of one loan, scheduled and paid"""
    loan_id: str
    total_capital: Money
    total_interest: Money
    paid_capital: Money
    paid_interest: Money
    pending_capital: Money
    pending_interest: Money
    capital_return_rate: Decimal     # percentage
    interest_earn_rate: Decimal      # percentage


@dataclass(frozen=True)
class ClientMetrics:
    client_id: str
    total_loans: int
    active_loans: int
    completed_loans: int
    defaulted_loans: int
    total_borrowed: Money
    total_paid: Money
    on_time_payments: int
    late_payments: int
    average_payment_delay: int       # days, over late payments only


@dataclass(frozen=True)
class ActivityEntry:
    kind: str                        # "loan" or "payment"
    entity_id: str
    loan_id: str
    client_id: str
    amount: Money
    occurred_at: Any

    def to_dict(self) -> Dict[str, Any]:
        return {
            'kind': self.kind,
            'entity_id': self.entity_id,
            'loan_id': self.loan_id,
            'client_id': self.client_id,
            'amount': str(self.amount.amount),
            'occurred_at': self.occurred_at.isoformat()
        }


@dataclass(frozen=True)
class FinancialOverview:
    """Cash position and receivables of the whole portfolio on a given day"""
    as_of: date
    total_balance: Money             # active cash accounts
    total_loans_value: Money         # principal of active loans
    total_receivable: Money          # pending and overdue installments
    total_received: Money            # every recorded payment
    monthly_received: Money          # payments dated in the month of as_of

    def to_dict(self) -> Dict[str, Any]:
        return {
            'as_of': self.as_of.isoformat(),
            'total_balance': str(self.total_balance.amount),
            'total_loans_value': str(self.total_loans_value.amount),
            'total_receivable': str(self.total_receivable.amount),
            'total_received': str(self.total_received.amount),
            'monthly_received': str(self.monthly_received.amount)
        }


@dataclass(frozen=True)
class CashFlowMonth:
    month: str                       # YYYY-MM
    expected_revenue: Money          # installments due in the month
    paid_revenue: Money              # the part of expected_revenue already paid

    @property
    def outstanding(self) -> Money:
        return self.expected_revenue - self.paid_revenue

    def to_dict(self) -> Dict[str, Any]:
        return {
            'month': self.month,
            'expected_revenue': str(self.expected_revenue.amount),
            'paid_revenue': str(self.paid_revenue.amount)
        }


def _percentage(part: Money, whole: Money) -> Decimal:
    if whole.is_zero():
        return Decimal('0')
    return (part.amount / whole.amount * Decimal('100')).quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)


class KPIService:
    """
    Loads portfolio data and produces reports
    """

    def __init__(self, loan_manager, client_manager, default_filter: str = "month",
                 currency: Currency = Currency.BRL, account_manager=None):
        self.loan_manager = loan_manager
        self.client_manager = client_manager
        self.account_manager = account_manager
        self.default_filter = DateFilter(default_filter)
        self.currency = currency
        self.logger = get_logger("loan_portfolio.reporting")

    def dashboard_kpis(
        self,
        date_filter: Optional[Any] = None,
        today: Optional[date] = None,
        custom_start: Optional[date] = None,
        custom_end: Optional[date] = None
    ) -> PortfolioKPIs:
        """KPIs for a named filter (the configured default when omitted)"""
        today = today or date.today()
        window = resolve_window(date_filter or self.default_filter, today, custom_start, custom_end)
        kpis = aggregate_kpis(
            window,
            self.loan_manager.list_loans(),
            self.loan_manager.list_all_installments(),
            self.loan_manager.list_all_payment_records(),
            self.client_manager.list_clients(),
            today=today,
            currency=self.currency
        )
        self.logger.debug(f"Computed KPIs for window {window.to_dict()}: {kpis.total_loans} loans")
        return kpis

    def loan_breakdown(self, loan_id: str, as_of: Optional[date] = None) -> LoanBreakdown:
        """Scheduled and paid capital/interest of a loan"""
        loan = self.loan_manager.require_loan(loan_id)
        result = reconcile(self.loan_manager.get_installments(loan_id),
                           self.loan_manager.get_payment_records(loan_id), as_of)
        currency = loan.currency

        total_capital = Money.sum((i.principal for i in result.installments), currency)
        total_interest = Money.sum((i.interest for i in result.installments), currency)
        paid = [i for i in result.installments if i.is_paid]
        paid_capital = Money.sum((i.principal for i in paid), currency)
        paid_interest = Money.sum((i.interest for i in paid), currency)

        return LoanBreakdown(
            loan_id=loan_id,
            total_capital=total_capital,
            total_interest=total_interest,
            paid_capital=paid_capital,
            paid_interest=paid_interest,
            pending_capital=total_capital - paid_capital,
            pending_interest=total_interest - paid_interest,
            capital_return_rate=_percentage(paid_capital, total_capital),
            interest_earn_rate=_percentage(paid_interest, total_interest)
        )

    def client_metrics(self, client_id: str, as_of: Optional[date] = None) -> ClientMetrics:
        """Borrowing and punctuality figures for one client, in the reporting currency"""
        self.client_manager.require_client(client_id)
        loans = [loan for loan in self.loan_manager.list_client_loans(client_id)
                 if loan.currency == self.currency]

        total_paid = Money.zero(self.currency)
        on_time = late = delay_days = 0
        statuses = []
        for loan in loans:
            result = reconcile(self.loan_manager.get_installments(loan.id),
                               self.loan_manager.get_payment_records(loan.id), as_of)
            statuses.append(_loan_state(loan, result).status)
            for installment in result.installments:
                if not installment.is_paid:
                    continue
                total_paid = total_paid + installment.paid_amount
                delay = (installment.payment_date - installment.due_date).days
                if delay <= 0:
                    on_time += 1
                else:
                    late += 1
                    delay_days += delay

        average_delay = 0
        if late:
            average_delay = int((Decimal(delay_days) / Decimal(late)).quantize(
                Decimal('1'), rounding=ROUND_HALF_UP))

        return ClientMetrics(
            client_id=client_id,
            total_loans=len(loans),
            active_loans=statuses.count(LoanStatus.ACTIVE),
            completed_loans=statuses.count(LoanStatus.COMPLETED),
            defaulted_loans=statuses.count(LoanStatus.DEFAULTED),
            total_borrowed=Money.sum((loan.principal for loan in loans), self.currency),
            total_paid=total_paid,
            on_time_payments=on_time,
            late_payments=late,
            average_payment_delay=average_delay
        )

    def recent_activity(self, limit: int = 10) -> List[ActivityEntry]:
        """Latest loan creations and recorded payments, newest first"""
        loans = {loan.id: loan for loan in self.loan_manager.list_loans()}
        entries = [
            ActivityEntry("loan", loan.id, loan.id, loan.client_id, loan.principal, loan.created_at)
            for loan in loans.values()
        ]
        for record in self.loan_manager.list_all_payment_records():
            loan = loans.get(record.loan_id)
            entries.append(ActivityEntry(
                "payment", record.id, record.loan_id,
                loan.client_id if loan else "", record.amount, record.recorded_at
            ))
        entries.sort(key=lambda e: (e.occurred_at, e.entity_id), reverse=True)
        return entries[:limit]

    def _reconciled_loans(self, as_of: date) -> List[Tuple[Loan, Optional[ReconciliationResult]]]:
        """Loans in the reporting currency with their reconciled schedules"""
        installments_by_loan = _group(self.loan_manager.list_all_installments(), 'loan_id')
        payments_by_loan = _group(self.loan_manager.list_all_payment_records(), 'loan_id')
        reconciled = []
        for loan in self.loan_manager.list_loans():
            if loan.currency != self.currency:
                continue
            schedule = installments_by_loan.get(loan.id)
            result = reconcile(schedule, payments_by_loan.get(loan.id, []), as_of) if schedule else None
            reconciled.append((loan, result))
        return reconciled

    def financial_overview(self, as_of: Optional[date] = None) -> FinancialOverview:
        """
        Cash on hand, money lent out, and what is still to be received

        Args:
            as_of: Reference date for overdue detection and the current month

        Returns:
            FinancialOverview
        """
        as_of = as_of or date.today()
        states = [(loan, _loan_state(loan, result)) for loan, result in self._reconciled_loans(as_of)]

        total_balance = Money.zero(self.currency)
        if self.account_manager is not None:
            total_balance = Money.sum((account.balance for account in self.account_manager.list_active_accounts()
                                       if account.currency == self.currency), self.currency)

        payments = [p for p in self.loan_manager.list_all_payment_records()
                    if p.amount.currency == self.currency]
        month_start = as_of.replace(day=1)
        month = DateWindow(month_start, add_months(month_start, 1))

        overview = FinancialOverview(
            as_of=as_of,
            total_balance=total_balance,
            total_loans_value=Money.sum((loan.principal for loan, state in states
                                         if state.status == LoanStatus.ACTIVE), self.currency),
            total_receivable=Money.sum((state.remaining for _, state in states), self.currency),
            total_received=Money.sum((p.amount for p in payments), self.currency),
            monthly_received=Money.sum((p.amount for p in payments if month.contains(p.payment_date)),
                                       self.currency)
        )
        self.logger.debug(f"Computed financial overview as of {as_of}: {overview.to_dict()}")
        return overview

    def cash_flow_projection(self, months: int = 6, today: Optional[date] = None) -> List[CashFlowMonth]:
        """
        Expected versus paid installment revenue per due month

        Covers the current month and the months after it.

        Raises:
            ValueError: if months is less than one
        """
        if months < 1:
            raise ValueError(f"Projection needs at least one month, got {months}")
        today = today or date.today()
        first = today.replace(day=1)

        installments = [installment
                        for _, result in self._reconciled_loans(today) if result is not None
                        for installment in result.installments]

        projection = []
        for offset in range(months):
            start = add_months(first, offset)
            window = DateWindow(start, add_months(first, offset + 1))
            due = [i for i in installments if window.contains(i.due_date)]
            projection.append(CashFlowMonth(
                month=start.strftime("%Y-%m"),
                expected_revenue=Money.sum((i.total for i in due), self.currency),
                paid_revenue=Money.sum((i.total for i in due if i.is_paid), self.currency)
            ))
        return projection
