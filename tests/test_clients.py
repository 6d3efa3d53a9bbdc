"""
Test suite for client records
"""

import pytest
from datetime import datetime, timezone, timedelta

from loan_portfolio.storage import InMemoryStorage
from loan_portfolio.audit import AuditTrail, AuditEventType
from loan_portfolio.clients import (
    Client, ClientManager, ClientStatus, Address, WorkAddress, ClientDocuments
)
from loan_portfolio.exceptions import ClientNotFoundError


HOME = Address("Rua das Flores", "120", "Centro", "Curitiba", "PR", "80010-000")
WORK = WorkAddress("Av. Brasil", "900", "Industrial", "Curitiba", "PR", "80020-000",
                   complement="Sala 3", company="Acme Ltda")


class TestClientManager:
    """Test client creation and lookup"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)
        self.manager = ClientManager(self.storage, self.audit_trail)

    def test_create_client(self):
        client = self.manager.create_client(
            "  Maria Souza ", "123.456.789-00", "41 99999-0000",
            email="maria@example.com", residential_address=HOME, work_address=WORK
        )

        assert client.name == "Maria Souza"
        assert client.status == ClientStatus.ACTIVE
        stored = self.manager.get_client(client.id)
        assert stored.residential_address == HOME
        assert stored.work_address.company == "Acme Ltda"

    @pytest.mark.parametrize("name,tax_id,phone", [
        ("", "123", "555"),
        ("Ana", "   ", "555"),
        ("Ana", "123", None),
    ])
    def test_required_fields(self, name, tax_id, phone):
        with pytest.raises(ValueError, match="required"):
            self.manager.create_client(name, tax_id, phone)

        assert self.storage.count("clients") == 0

    def test_missing_documents_are_audited(self):
        documents = ClientDocuments(selfie="s3://docs/selfie.jpg", pay_stub="s3://docs/stub.pdf")

        client = self.manager.create_client("Ana", "123", "555", documents=documents)

        event = self.audit_trail.get_events_for_entity("client", client.id)[0]
        assert event.event_type == AuditEventType.CLIENT_CREATED
        assert event.metadata["missing_documents"] == [
            "driver_license", "proof_of_residence", "work_card"
        ]

    def test_require_missing_client(self):
        with pytest.raises(ClientNotFoundError):
            self.manager.require_client("missing")

    def test_list_clients_newest_first(self):
        first = self.manager.create_client("Ana", "1", "555")
        second = self.manager.create_client("Bia", "2", "556")
        first.created_at = datetime.now(timezone.utc) - timedelta(days=1)
        self.storage.save("clients", first.id, first.to_dict())

        assert [c.id for c in self.manager.list_clients()] == [second.id, first.id]

    def test_update_status(self):
        client = self.manager.create_client("Ana", "1", "555")

        self.manager.update_status(client.id, ClientStatus.BLOCKED)

        assert self.manager.get_client(client.id).status == ClientStatus.BLOCKED


class TestClientDocuments:
    """Test document completeness"""

    def test_empty_documents(self):
        documents = ClientDocuments()

        assert not documents.is_complete
        assert len(documents.missing) == 5

    def test_complete_documents(self):
        documents = ClientDocuments("a", "b", "c", "d", "e")

        assert documents.is_complete
        assert documents.missing == []


class TestClientSerialization:
    """Test dict conversion"""

    def test_round_trip(self):
        client = Client(
            name="Ana", tax_id="1", phone="555",
            residential_address=HOME, work_address=WORK,
            documents=ClientDocuments(selfie="x")
        )

        assert Client.from_dict(client.to_dict()) == client

    def test_missing_addresses(self):
        client = Client.from_dict(Client(name="Ana", tax_id="1", phone="555").to_dict())

        assert client.residential_address is None
        assert client.work_address is None
