"""
Cash Account Module

Cash and bank accounts that receive loan repayments. In this engine the only
balance mutation is crediting an account when a payment is recorded.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from enum import Enum
import threading
import uuid

from .currency import Money, Currency
from .storage import StorageInterface
from .audit import AuditTrail, AuditEventType
from .exceptions import AccountNotFoundError
from .logging_config import get_logger, log_action


class CashAccountType(Enum):
    """Kinds of cash accounts"""
    CASH = "cash"
    BANK = "bank"
    INVESTMENT = "investment"


@dataclass
class CashAccount:
    """Account whose running balance is credited by loan repayments"""
    name: str
    account_type: CashAccountType
    balance: Money
    is_active: bool = True
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def currency(self) -> Currency:
        return self.balance.currency

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'account_type': self.account_type.value,
            'balance': str(self.balance.amount),
            'currency': self.currency.code,
            'is_active': self.is_active,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat()
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CashAccount':
        return cls(
            id=data['id'],
            name=data['name'],
            account_type=CashAccountType(data['account_type']),
            balance=Money(Decimal(data['balance']), Currency.from_code(data.get('currency', 'BRL'))),
            is_active=bool(data.get('is_active', True)),
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at'])
        )


class CashAccountManager:
    """
    Manages cash accounts and their balances
    """

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail):
        self.storage = storage
        self.audit_trail = audit_trail
        self.logger = get_logger("loan_portfolio.accounts")
        self.table_name = "cash_accounts"
        # Serialises balance read-modify-write across threads; always taken
        # after the storage transaction lock
        self._balance_lock = threading.Lock()

    def create_account(
        self,
        name: str,
        account_type: CashAccountType = CashAccountType.CASH,
        initial_balance: Optional[Money] = None,
        currency: Currency = Currency.BRL
    ) -> CashAccount:
        """
        Create a cash account

        Args:
            name: Display name
            account_type: Cash, bank or investment
            initial_balance: Opening balance (zero when omitted)
            currency: Account currency when no opening balance is given

        Returns:
            Created CashAccount
        """
        balance = initial_balance if initial_balance is not None else Money.zero(currency)
        account = CashAccount(name=name, account_type=account_type, balance=balance)
        self.storage.save(self.table_name, account.id, account.to_dict())

        self.audit_trail.log_event(
            event_type=AuditEventType.CASH_ACCOUNT_CREATED,
            entity_type="cash_account",
            entity_id=account.id,
            metadata={
                "name": name,
                "account_type": account_type.value,
                "initial_balance": balance.to_string()
            }
        )
        log_action(self.logger, "info", f"Created cash account {account.id} ({name})",
                   action="cash_account_created", resource=f"cash_account:{account.id}")
        return account

    def get_account(self, account_id: str) -> Optional[CashAccount]:
        """Get account by ID"""
        data = self.storage.load(self.table_name, account_id)
        if data:
            return CashAccount.from_dict(data)
        return None

    def require_account(self, account_id: str) -> CashAccount:
        account = self.get_account(account_id)
        if account is None:
            raise AccountNotFoundError(f"Cash account {account_id} not found")
        return account

    def list_active_accounts(self) -> List[CashAccount]:
        """Active accounts ordered by name"""
        accounts = [CashAccount.from_dict(data)
                    for data in self.storage.find(self.table_name, {"is_active": True})]
        accounts.sort(key=lambda a: a.name)
        return accounts

    def deactivate_account(self, account_id: str) -> CashAccount:
        account = self.require_account(account_id)
        account.is_active = False
        account.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.table_name, account.id, account.to_dict())
        return account

    def get_balance(self, account_id: str) -> Money:
        return self.require_account(account_id).balance

    def credit(self, account_id: str, amount: Money) -> Money:
        """
        Increase an account balance

        Args:
            account_id: Cash account ID
            amount: Positive amount in the account currency

        Returns:
            New balance

        Raises:
            AccountNotFoundError: if the account does not exist
            ValueError: if the amount is not positive or the currency differs
        """
        if not amount.is_positive():
            raise ValueError(f"Credit amount must be positive, got {amount.to_string()}")

        with self.storage.atomic(), self._balance_lock:
            account = self.require_account(account_id)
            account.balance = account.balance + amount
            account.updated_at = datetime.now(timezone.utc)
            self.storage.save(self.table_name, account.id, account.to_dict())

        log_action(self.logger, "info", f"Credited {amount.to_string()} to cash account {account_id}",
                   action="cash_account_credited", resource=f"cash_account:{account_id}",
                   extra={"new_balance": str(account.balance.amount)})
        return account.balance
