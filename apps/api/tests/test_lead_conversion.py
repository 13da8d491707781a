from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from decimal import Decimal
from pathlib import Path
from typing import Any

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import Engine, create_engine, event, func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("SIDE_EFFECTS_BACKEND", "memory")

from app import audit
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.api import get_current_user, side_effect_dispatcher
from app.crm.errors import ConflictError, NotFoundError, ValidationError
from app.crm.models import CRMActivity, CRMContact, CRMCustomer, CRMInvoice, CRMLead
from app.crm.schemas import LeadBulkRow, LeadConvertRequest
from app.crm.service import ActorUser, LeadConversionService
from app.crm.side_effects import InMemorySideEffectDispatcher
from app.main import app
from app.middleware.rate_limit import reset_rate_limiter


ACTOR = ActorUser(
    user_id="user-1",
    organization_id="org-1",
    permissions={"crm.leads.read", "crm.leads.create", "crm.leads.import", "crm.leads.convert"},
    correlation_id="corr-convert",
)


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    get_settings.cache_clear()
    reset_rate_limiter()
    audit.audit_entries.clear()
    side_effect_dispatcher.clear()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = lambda: ACTOR
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _create_lead(client: TestClient, **overrides: object) -> dict:
    payload: dict[str, object] = {
        "name": "Jamie Smith",
        "email": "jamie@example.com",
        "phone": "+1-555-0100",
        "company": "Acme",
        "value": 1200,
        "notes": "met at expo",
    }
    payload.update(overrides)
    response = client.post("/api/crm/leads", json=payload)
    assert response.status_code == 201
    return response.json()


def test_convert_creates_customer_and_marks_lead_won(client: TestClient, db_session: Session) -> None:
    lead = _create_lead(client)
    side_effect_dispatcher.clear()

    response = client.post(f"/api/crm/leads/{lead['id']}/convert", json={"plan": "pro"})
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["customer"]["name"] == "Jamie Smith"
    assert body["customer"]["plan"] == "PRO"
    assert body["customer"]["status"] == "ACTIVE"
    assert body["customer"]["notes"] == "met at expo"

    converted = client.get(f"/api/crm/leads/{lead['id']}").json()
    assert converted["status"] == "WON"
    assert converted["converted_to_id"] == body["customer_id"]
    assert converted["converted_at"] is not None

    contact = db_session.scalar(select(CRMContact))
    assert contact is not None
    assert contact.type == "PHONE"
    assert contact.value == "+1-555-0100"
    assert contact.is_primary is True

    trail = db_session.scalar(select(CRMActivity).where(CRMActivity.type == "CONVERSION"))
    assert trail is not None
    assert str(trail.customer_id) == body["customer_id"]

    syncs = side_effect_dispatcher.calls_for("sync_external")
    assert len(syncs) == 1
    assert syncs[0]["organization_id"] == "org-1"
    events = [item["event"] for item in side_effect_dispatcher.calls_for("broadcast")]
    assert "lead_converted" in events
    assert "client_created" in events
    notifications = side_effect_dispatcher.calls_for("notify")
    assert notifications and notifications[0]["user_id"] == "user-1"
    assert notifications[0]["type"] == "SYSTEM"
    assert any(entry["action"] == "convert" for entry in audit.audit_entries)


def test_convert_without_body_defaults_to_free_plan(client: TestClient) -> None:
    lead = _create_lead(client)
    response = client.post(f"/api/crm/leads/{lead['id']}/convert")
    assert response.status_code == 200
    assert response.json()["customer"]["plan"] == "FREE"


def test_second_convert_is_rejected_with_existing_customer(client: TestClient, db_session: Session) -> None:
    lead = _create_lead(client)
    first = client.post(f"/api/crm/leads/{lead['id']}/convert", json={})
    assert first.status_code == 200
    side_effect_dispatcher.clear()

    second = client.post(f"/api/crm/leads/{lead['id']}/convert", json={})
    assert second.status_code == 400
    body = second.json()
    assert body["code"] == "already_converted"
    assert body["details"]["customer_id"] == first.json()["customer_id"]

    assert db_session.scalar(select(func.count()).select_from(CRMCustomer)) == 1
    assert db_session.scalar(select(func.count()).select_from(CRMContact)) == 1
    assert not side_effect_dispatcher.calls


def test_convert_merges_into_existing_customer_with_same_email(client: TestClient, db_session: Session) -> None:
    existing = CRMCustomer(organization_id="org-1", name="Existing Co", email="jamie@example.com", plan="BASIC")
    other_org = CRMCustomer(organization_id="org-2", name="Other Org", email="jamie@example.com")
    db_session.add_all([existing, other_org])
    db_session.commit()
    existing_id = existing.id

    lead = _create_lead(client)
    side_effect_dispatcher.clear()
    response = client.post(f"/api/crm/leads/{lead['id']}/convert", json={"plan": "ENTERPRISE"})
    assert response.status_code == 200
    body = response.json()
    assert body["customer_id"] == str(existing_id)
    assert body["customer"]["plan"] == "BASIC"

    assert db_session.scalar(select(func.count()).select_from(CRMCustomer)) == 2
    assert side_effect_dispatcher.calls_for("sync_external") == []
    events = [item["event"] for item in side_effect_dispatcher.calls_for("broadcast")]
    assert "client_created" not in events
    assert "lead_converted" in events


def test_convert_lead_without_email_always_creates_customer(client: TestClient, db_session: Session) -> None:
    db_session.add(CRMCustomer(organization_id="org-1", name="No Email Co", email=None))
    db_session.commit()

    lead = _create_lead(client, email=None, phone=None)
    response = client.post(f"/api/crm/leads/{lead['id']}/convert", json={})
    assert response.status_code == 200
    assert response.json()["customer"]["name"] == "Jamie Smith"
    assert db_session.scalar(select(func.count()).select_from(CRMCustomer)) == 2
    # Neither phone nor email: no contact is bootstrapped.
    assert db_session.scalar(select(func.count()).select_from(CRMContact)) == 0


def test_convert_uses_email_contact_when_lead_has_no_phone(client: TestClient, db_session: Session) -> None:
    lead = _create_lead(client, phone=None)
    assert client.post(f"/api/crm/leads/{lead['id']}/convert", json={}).status_code == 200

    contact = db_session.scalar(select(CRMContact))
    assert contact is not None
    assert contact.type == "EMAIL"
    assert contact.value == "jamie@example.com"


def test_convert_relinks_invoices_and_activities(client: TestClient, db_session: Session) -> None:
    lead = _create_lead(client)
    lead_id = uuid.UUID(lead["id"])
    db_session.add_all(
        [
            CRMInvoice(organization_id="org-1", number="QT-00001", type="QUOTE", lead_id=lead_id, amount=Decimal("99")),
            CRMInvoice(organization_id="org-1", number="INV-00001", lead_id=lead_id, amount=Decimal("150")),
            CRMActivity(organization_id="org-1", lead_id=lead_id, type="CALL", description="intro call"),
        ]
    )
    db_session.commit()

    response = client.post(f"/api/crm/leads/{lead['id']}/convert", json={})
    assert response.status_code == 200
    customer_id = uuid.UUID(response.json()["customer_id"])

    invoices = db_session.scalars(select(CRMInvoice).where(CRMInvoice.lead_id == lead_id)).all()
    assert len(invoices) == 2
    assert all(invoice.customer_id == customer_id for invoice in invoices)

    activities = db_session.scalars(select(CRMActivity).where(CRMActivity.lead_id == lead_id)).all()
    assert {activity.type for activity in activities} == {"CALL", "CONVERSION"}
    assert all(activity.customer_id == customer_id for activity in activities)


def test_convert_tolerates_existing_contact(client: TestClient, db_session: Session) -> None:
    customer = CRMCustomer(organization_id="org-1", name="Existing", email="jamie@example.com")
    db_session.add(customer)
    db_session.flush()
    db_session.add(
        CRMContact(organization_id="org-1", customer_id=customer.id, type="PHONE", value="+1-555-0100", is_primary=True)
    )
    db_session.commit()

    lead = _create_lead(client)
    response = client.post(f"/api/crm/leads/{lead['id']}/convert", json={})
    assert response.status_code == 200
    assert db_session.scalar(select(func.count()).select_from(CRMContact)) == 1
    assert db_session.scalar(select(func.count()).select_from(CRMActivity).where(CRMActivity.type == "CONVERSION")) == 1


def test_convert_with_generate_invoice_creates_draft_for_lead_value(client: TestClient, db_session: Session) -> None:
    lead = _create_lead(client, value=1200)
    response = client.post(f"/api/crm/leads/{lead['id']}/convert", json={"generate_invoice": True})
    assert response.status_code == 200

    invoice = db_session.scalar(select(CRMInvoice))
    assert invoice is not None
    assert invoice.status == "DRAFT"
    assert invoice.type == "INVOICE"
    assert invoice.amount == Decimal("1200")
    assert str(invoice.customer_id) == response.json()["customer_id"]
    assert invoice.number == "INV-00001"


def test_convert_with_generate_invoice_skips_zero_value(client: TestClient, db_session: Session) -> None:
    lead = _create_lead(client, value=0)
    assert client.post(f"/api/crm/leads/{lead['id']}/convert", json={"generate_invoice": True}).status_code == 200
    assert db_session.scalar(select(func.count()).select_from(CRMInvoice)) == 0


def test_convert_unknown_or_foreign_lead_is_not_found(client: TestClient) -> None:
    assert client.post(f"/api/crm/leads/{uuid.uuid4()}/convert", json={}).status_code == 404

    lead = _create_lead(client)
    app.dependency_overrides[get_current_user] = lambda: ActorUser(
        user_id="user-2",
        organization_id="org-2",
        permissions={"crm.leads.convert"},
    )
    response = client.post(f"/api/crm/leads/{lead['id']}/convert", json={})
    assert response.status_code == 404


def test_convert_rejects_unknown_plan(client: TestClient) -> None:
    lead = _create_lead(client)
    response = client.post(f"/api/crm/leads/{lead['id']}/convert", json={"plan": "PLATINUM"})
    assert response.status_code == 422


def _seed_lead(db_session: Session, **overrides: object) -> CRMLead:
    values: dict[str, object] = {
        "organization_id": "org-1",
        "name": "Race Lead",
        "email": "race@example.com",
        "phone": "+1-555-0199",
        "value": Decimal("0"),
    }
    values.update(overrides)
    lead = CRMLead(**values)
    db_session.add(lead)
    db_session.commit()
    return lead


def test_concurrent_conversion_loser_gets_winner_customer(
    db_session: Session,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    dispatcher = InMemorySideEffectDispatcher()
    service = LeadConversionService(side_effects=dispatcher)
    lead = _seed_lead(db_session)
    lead_id = lead.id

    winner = service.convert(db_session, ACTOR, lead_id, LeadConvertRequest())
    dispatcher.clear()

    # The loser read the lead before the winner committed.
    stale = CRMLead(
        id=lead_id,
        organization_id="org-1",
        name="Race Lead",
        email="race@example.com",
        phone="+1-555-0199",
        value=Decimal("0"),
        converted_to_id=None,
    )
    monkeypatch.setattr(service, "_load_lead", lambda session, requested_id, organization_id: stale)

    with pytest.raises(ConflictError) as exc_info:
        service.convert(db_session, ACTOR, lead_id, LeadConvertRequest())

    assert exc_info.value.customer_id == winner.customer_id
    assert exc_info.value.details == {"customer_id": str(winner.customer_id)}
    assert db_session.scalar(select(func.count()).select_from(CRMCustomer)) == 1
    assert db_session.scalar(select(func.count()).select_from(CRMContact)) == 1
    assert not dispatcher.calls


def test_concurrent_conversion_loser_discards_its_new_customer(
    db_session: Session,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    service = LeadConversionService(side_effects=InMemorySideEffectDispatcher())
    lead = _seed_lead(db_session, email=None)
    lead_id = lead.id
    winner = service.convert(db_session, ACTOR, lead_id, LeadConvertRequest())

    stale = CRMLead(id=lead_id, organization_id="org-1", name="Race Lead", email=None, phone="+1-555-0199")
    monkeypatch.setattr(service, "_load_lead", lambda session, requested_id, organization_id: stale)

    # Keep the loser's work inside one transaction so the rollback is observable.
    db_session.add(CRMActivity(organization_id="org-1", description="open transaction"))
    db_session.flush()

    with pytest.raises(ConflictError) as exc_info:
        service.convert(db_session, ACTOR, lead_id, LeadConvertRequest())

    assert exc_info.value.customer_id == winner.customer_id
    customer_ids = db_session.scalars(select(CRMCustomer.id)).all()
    assert customer_ids == [winner.customer_id]


def test_relink_converges_after_partial_failure(db_session: Session, monkeypatch: pytest.MonkeyPatch) -> None:
    service = LeadConversionService(side_effects=InMemorySideEffectDispatcher())
    lead = _seed_lead(db_session)
    lead_id = lead.id
    db_session.add(CRMInvoice(organization_id="org-1", number="INV-00001", lead_id=lead_id, amount=Decimal("10")))
    db_session.commit()

    original_relink = service._relink

    def failing_relink(*args: object, **kwargs: object) -> None:
        raise OperationalError("UPDATE crm_invoice", {}, Exception("connection lost"))

    monkeypatch.setattr(service, "_relink", failing_relink)
    response = service.convert(db_session, ACTOR, lead_id, LeadConvertRequest())

    invoice = db_session.scalar(select(CRMInvoice))
    assert invoice is not None and invoice.customer_id is None
    converted = db_session.get(CRMLead, lead_id)
    assert converted is not None and converted.converted_to_id == response.customer_id

    monkeypatch.setattr(service, "_relink", original_relink)
    assert service.relink(db_session, lead_id, "org-1") == response.customer_id

    invoice = db_session.scalar(select(CRMInvoice))
    assert invoice is not None and invoice.customer_id == response.customer_id
    assert db_session.scalar(select(func.count()).select_from(CRMContact)) == 1


def test_relink_rejects_unconverted_or_foreign_lead(db_session: Session) -> None:
    service = LeadConversionService(side_effects=InMemorySideEffectDispatcher())
    lead = _seed_lead(db_session)

    with pytest.raises(NotFoundError):
        service.relink(db_session, lead.id, "org-2")
    with pytest.raises(ValidationError):
        service.relink(db_session, lead.id, "org-1")


def test_leads_sharing_an_email_converge_on_one_customer(client: TestClient, db_session: Session) -> None:
    first = _create_lead(client, name="Jamie (expo)")
    second = _create_lead(client, name="Jamie (web)", phone=None)
    lead_ids = [uuid.UUID(first["id"]), uuid.UUID(second["id"])]
    for index, lead_id in enumerate(lead_ids, start=1):
        db_session.add_all(
            [
                CRMInvoice(
                    organization_id="org-1",
                    number=f"QT-9000{index}",
                    type="QUOTE",
                    lead_id=lead_id,
                    amount=Decimal("10"),
                ),
                CRMActivity(organization_id="org-1", lead_id=lead_id, type="CALL", description=f"call {index}"),
            ]
        )
    db_session.commit()

    responses = [client.post(f"/api/crm/leads/{lead_id}/convert", json={}) for lead_id in lead_ids]
    assert [response.status_code for response in responses] == [200, 200]
    customer_id = uuid.UUID(responses[0].json()["customer_id"])
    assert responses[1].json()["customer_id"] == str(customer_id)

    assert db_session.scalars(select(CRMCustomer.id)).all() == [customer_id]
    invoices = db_session.scalars(select(CRMInvoice)).all()
    assert len(invoices) == 2
    assert all(invoice.customer_id == customer_id for invoice in invoices)
    activities = db_session.scalars(select(CRMActivity)).all()
    assert len(activities) == 4
    assert all(activity.customer_id == customer_id for activity in activities)
    for lead_id in lead_ids:
        assert client.get(f"/api/crm/leads/{lead_id}").json()["converted_to_id"] == str(customer_id)


def test_bulk_imported_lead_merges_with_single_created_lead(client: TestClient, db_session: Session) -> None:
    imported = client.post(
        "/api/crm/leads/bulk",
        json={"leads": [{"name": "Foo Imported", "email": "Foo@EXAMPLE.com"}]},
    )
    assert imported.status_code == 200
    imported_id = imported.json()["ids"][0]
    created = _create_lead(client, name="Foo Manual", email="Foo@example.com")

    first = client.post(f"/api/crm/leads/{imported_id}/convert", json={})
    second = client.post(f"/api/crm/leads/{created['id']}/convert", json={})
    assert first.status_code == 200
    assert second.status_code == 200
    assert first.json()["customer_id"] == second.json()["customer_id"]
    assert db_session.scalar(select(func.count()).select_from(CRMCustomer)) == 1


def test_bulk_row_email_matches_single_create_normalization() -> None:
    assert LeadBulkRow(name="Foo", email="Foo@EXAMPLE.com").email == "Foo@example.com"
    assert LeadBulkRow(name="Foo", email="").email is None


@pytest.fixture()
def file_engine(tmp_path: Path) -> Generator[Engine, None, None]:
    engine = create_engine(f"sqlite+pysqlite:///{tmp_path / 'race.db'}", connect_args={"check_same_thread": False})

    # pysqlite defers BEGIN until the first DML statement; emit it explicitly so savepoints nest.
    @event.listens_for(engine, "connect")
    def _disable_driver_begin(dbapi_connection: Any, connection_record: Any) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(connection: Any) -> None:
        connection.exec_driver_sql("BEGIN")

    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


def test_two_sessions_converting_one_lead_keep_a_single_customer(file_engine: Engine) -> None:
    factory = sessionmaker(bind=file_engine, autocommit=False, autoflush=False, expire_on_commit=False)
    setup = factory()
    lead_id = _seed_lead(setup, email=None, phone=None).id
    setup.close()

    service = LeadConversionService(side_effects=InMemorySideEffectDispatcher())
    winner_session = factory()
    loser_session = factory()
    try:
        # Both sessions read the unconverted lead before either writes.
        for session in (winner_session, loser_session):
            loaded = session.get(CRMLead, lead_id)
            assert loaded is not None and loaded.converted_to_id is None
            session.commit()

        winner = service.convert(winner_session, ACTOR, lead_id, LeadConvertRequest())
        winner_session.close()
        with pytest.raises(ConflictError) as exc_info:
            service.convert(loser_session, ACTOR, lead_id, LeadConvertRequest())
    finally:
        winner_session.close()
        loser_session.close()

    assert exc_info.value.customer_id == winner.customer_id

    check = factory()
    try:
        assert check.scalars(select(CRMCustomer.id)).all() == [winner.customer_id]
        stored = check.get(CRMLead, lead_id)
        assert stored is not None and stored.converted_to_id == winner.customer_id
        trail = check.scalar(
            select(func.count()).select_from(CRMActivity).where(CRMActivity.type == "CONVERSION")
        )
        assert trail == 1
    finally:
        check.close()
