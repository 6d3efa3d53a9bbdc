"""
Portfolio Module

LoanPortfolio wires every component from a PortfolioConfig and exposes the
operations callers normally need in one place.
"""

from datetime import date
from decimal import Decimal
from typing import List, Optional

from .config import PortfolioConfig, get_config
from .currency import Currency
from .storage import StorageInterface, create_storage
from .audit import AuditTrail
from .events import EventDispatcher, EventHandler
from .schedule import LoanTerms
from .loans import Loan, LoanManager
from .synchronizer import ScheduleSynchronizer, SyncReport
from .accounts import CashAccountManager
from .payments import PaymentProcessor, PaymentData, PaymentReceipt
from .clients import ClientManager
from .reporting import KPIService, PortfolioKPIs
from .logging_config import setup_logging


class LoanPortfolio:
    """Loan portfolio engine with all components initialized"""

    def __init__(
        self,
        config: Optional[PortfolioConfig] = None,
        storage: Optional[StorageInterface] = None,
        dispatcher: Optional[EventDispatcher] = None,
        configure_logging: bool = False
    ):
        self.config = config or get_config()
        if configure_logging:
            setup_logging(self.config.log_level, fmt=self.config.log_format,
                          log_file=self.config.log_file)

        self.storage = storage or create_storage(self.config)
        self.dispatcher = dispatcher or EventDispatcher()
        self.currency = Currency.from_code(self.config.default_currency)

        self.audit_trail = AuditTrail(self.storage, enabled=self.config.enable_audit_logging)
        self.client_manager = ClientManager(self.storage, self.audit_trail)
        self.account_manager = CashAccountManager(self.storage, self.audit_trail)
        self.loan_manager = LoanManager(self.storage, self.audit_trail, self.dispatcher,
                                        currency=self.currency)
        self.synchronizer = ScheduleSynchronizer(
            self.loan_manager, self.audit_trail, self.dispatcher,
            discard_partial=self.config.discard_partial_schedules
        )
        self.loan_manager.synchronizer = self.synchronizer
        self.payment_processor = PaymentProcessor(
            self.loan_manager, self.account_manager, self.audit_trail, self.dispatcher,
            synchronizer=self.synchronizer,
            resync_after_payment=self.config.resync_after_payment,
            tolerance=Decimal(self.config.payment_tolerance),
            late_penalty_rate=Decimal(self.config.late_penalty_rate),
            daily_penalty_rate=Decimal(self.config.daily_penalty_rate)
        )
        self.kpi_service = KPIService(
            self.loan_manager, self.client_manager,
            default_filter=self.config.kpi_default_filter,
            currency=self.currency,
            account_manager=self.account_manager
        )

    def create_loan(self, client_id: str, terms: LoanTerms, notes: Optional[str] = None,
                    observers: Optional[List[EventHandler]] = None) -> Loan:
        """Create a loan for an existing client"""
        self.client_manager.require_client(client_id)
        return self.loan_manager.create_loan(client_id, terms, notes, observers)

    def record_payment(self, loan_id: str, installment_sequence: int, data: PaymentData,
                       cash_account_id: Optional[str] = None,
                       observers: Optional[List[EventHandler]] = None) -> PaymentReceipt:
        return self.payment_processor.record_payment(
            loan_id, installment_sequence, data,
            cash_account_id=cash_account_id, observers=observers
        )

    def sync_all(self, as_of: Optional[date] = None) -> SyncReport:
        return self.synchronizer.sync_all(as_of)

    def dashboard(self, date_filter: Optional[str] = None, today: Optional[date] = None,
                  custom_start: Optional[date] = None,
                  custom_end: Optional[date] = None) -> PortfolioKPIs:
        return self.kpi_service.dashboard_kpis(date_filter, today, custom_start, custom_end)

    def close(self) -> None:
        self.storage.close()
