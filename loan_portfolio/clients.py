"""
Client Module

Borrowers. Addresses and documents are explicit structured fields, one per
kind, so every kind is handled by name rather than through an open key/value bag.
"""

from datetime import datetime, timezone
from dataclasses import dataclass, field, asdict, fields
from typing import Any, Dict, List, Optional
from enum import Enum
import uuid

from .storage import StorageInterface
from .audit import AuditTrail, AuditEventType
from .exceptions import ClientNotFoundError
from .logging_config import get_logger, log_action


class ClientStatus(Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    BLOCKED = "blocked"


@dataclass(frozen=True)
class Address:
    street: str
    number: str
    neighborhood: str
    city: str
    state: str
    zip_code: str
    complement: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional['Address']:
        if not data:
            return None
        return cls(**{f.name: data.get(f.name) for f in fields(cls)})


@dataclass(frozen=True)
class WorkAddress(Address):
    company: Optional[str] = None


@dataclass(frozen=True)
class ClientDocuments:
    """References (paths or storage keys) to each supporting document"""
    selfie: Optional[str] = None
    driver_license: Optional[str] = None
    proof_of_residence: Optional[str] = None
    pay_stub: Optional[str] = None
    work_card: Optional[str] = None

    @property
    def missing(self) -> List[str]:
        """Names of the documents not provided yet"""
        return [f.name for f in fields(self) if getattr(self, f.name) is None]

    @property
    def is_complete(self) -> bool:
        return not self.missing

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'ClientDocuments':
        data = data or {}
        return cls(**{f.name: data.get(f.name) for f in fields(cls)})


@dataclass
class Client:
    name: str
    tax_id: str
    phone: str
    email: Optional[str] = None
    status: ClientStatus = ClientStatus.ACTIVE
    residential_address: Optional[Address] = None
    work_address: Optional[WorkAddress] = None
    documents: ClientDocuments = field(default_factory=ClientDocuments)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'tax_id': self.tax_id,
            'phone': self.phone,
            'email': self.email,
            'status': self.status.value,
            'residential_address': asdict(self.residential_address) if self.residential_address else None,
            'work_address': asdict(self.work_address) if self.work_address else None,
            'documents': asdict(self.documents),
            'created_at': self.created_at.isoformat()
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Client':
        return cls(
            id=data['id'],
            name=data['name'],
            tax_id=data['tax_id'],
            phone=data['phone'],
            email=data.get('email'),
            status=ClientStatus(data.get('status', 'active')),
            residential_address=Address.from_dict(data.get('residential_address')),
            work_address=WorkAddress.from_dict(data.get('work_address')),
            documents=ClientDocuments.from_dict(data.get('documents')),
            created_at=datetime.fromisoformat(data['created_at'])
        )


class ClientManager:
    """
    Manages borrower records
    """

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail):
        self.storage = storage
        self.audit_trail = audit_trail
        self.logger = get_logger("loan_portfolio.clients")
        self.table_name = "clients"

    def create_client(
        self,
        name: str,
        tax_id: str,
        phone: str,
        email: Optional[str] = None,
        residential_address: Optional[Address] = None,
        work_address: Optional[WorkAddress] = None,
        documents: Optional[ClientDocuments] = None
    ) -> Client:
        """
        Create a client

        Raises:
            ValueError: if name, tax ID or phone is blank
        """
        for label, value in (("name", name), ("tax_id", tax_id), ("phone", phone)):
            if not value or not value.strip():
                raise ValueError(f"Client {label} is required")

        client = Client(
            name=name.strip(),
            tax_id=tax_id.strip(),
            phone=phone.strip(),
            email=email,
            residential_address=residential_address,
            work_address=work_address,
            documents=documents or ClientDocuments()
        )
        self.storage.save(self.table_name, client.id, client.to_dict())

        self.audit_trail.log_event(
            event_type=AuditEventType.CLIENT_CREATED,
            entity_type="client",
            entity_id=client.id,
            metadata={"name": client.name, "missing_documents": client.documents.missing}
        )
        log_action(self.logger, "info", f"Created client {client.id}",
                   action="client_created", resource=f"client:{client.id}")
        return client

    def get_client(self, client_id: str) -> Optional[Client]:
        data = self.storage.load(self.table_name, client_id)
        if data:
            return Client.from_dict(data)
        return None

    def require_client(self, client_id: str) -> Client:
        client = self.get_client(client_id)
        if client is None:
            raise ClientNotFoundError(f"Client {client_id} not found")
        return client

    def list_clients(self) -> List[Client]:
        """All clients, newest first"""
        clients = [Client.from_dict(data) for data in self.storage.load_all(self.table_name)]
        clients.sort(key=lambda c: (c.created_at, c.id), reverse=True)
        return clients

    def update_status(self, client_id: str, status: ClientStatus) -> Client:
        client = self.require_client(client_id)
        client.status = status
        self.storage.save(self.table_name, client.id, client.to_dict())
        return client
