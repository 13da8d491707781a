from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Generator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from opentelemetry import trace
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import and_, delete, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app import audit
from app.core.config import get_settings
from app.crm.errors import ConflictError, CRMError, NotFoundError, StorageError, ValidationError
from app.crm.models import (
    CRMActivity,
    CRMContact,
    CRMCustomer,
    CRMInvoice,
    CRMLead,
    CRMLeadTag,
    CRMUser,
)
from app.crm.repositories import LeadRepository, TagRegistry
from app.crm.schemas import (
    INVOICE_STATUSES,
    CustomerRead,
    InvoiceCreate,
    InvoiceRead,
    InvoiceStatusUpdate,
    LeadBulkCreateResponse,
    LeadBulkRow,
    LeadConvertRequest,
    LeadConvertResponse,
    LeadCreate,
    LeadRead,
    LeadUpdate,
)
from app.crm.side_effects import SideEffectDispatcher, org_channel, user_channel
from app.metrics import observe_bulk_import, observe_lead_conversion


logger = logging.getLogger("app.crm.leads")
tracer = trace.get_tracer("app.crm.leads")

DEFAULT_LEAD_STATUS = "Nuevo"
IMPORT_STATUS_SENTINEL = "NEW"
IMPORT_NOTES_MARKER = "[Bulk Import]"
WON_STATUS = "WON"
INVOICE_NUMBER_ATTEMPTS = 5


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ActorUser:
    user_id: str
    organization_id: str
    permissions: set[str] = field(default_factory=set)
    correlation_id: str | None = None


@contextmanager
def _write_transaction(session: Session, failure_message: str) -> Generator[None, None, None]:
    """Commit on success; roll back and translate storage failures otherwise."""
    try:
        yield
        session.commit()
    except CRMError:
        session.rollback()
        raise
    except SQLAlchemyError as exc:
        session.rollback()
        logger.exception(failure_message, extra={"error": str(exc)[:500]})
        raise StorageError(failure_message) from exc


def _customer_payload(customer: CRMCustomer) -> dict[str, Any]:
    return CustomerRead.model_validate(customer).model_dump(mode="json")


def next_invoice_number(session: Session, organization_id: str, invoice_type: str) -> str:
    """Return the number after the highest one already issued for the type's prefix."""
    prefix = "QT" if invoice_type == "QUOTE" else "INV"
    latest = session.scalar(
        select(CRMInvoice.number)
        .where(and_(CRMInvoice.organization_id == organization_id, CRMInvoice.number.like(f"{prefix}-%")))
        .order_by(func.length(CRMInvoice.number).desc(), CRMInvoice.number.desc())
        .limit(1)
    )
    sequence = latest.removeprefix(f"{prefix}-") if latest else ""
    return f"{prefix}-{(int(sequence) if sequence.isdigit() else 0) + 1:05d}"


def add_numbered_invoice(session: Session, invoice: CRMInvoice) -> CRMInvoice:
    """Flush ``invoice`` under the next free number for its type.

    Numbers are unique per organization (``uq_crm_invoice_organization_number``).
    When a concurrent writer takes the number first, the savepoint is rolled
    back and the following number is tried.
    """
    for _ in range(INVOICE_NUMBER_ATTEMPTS):
        invoice.number = next_invoice_number(session, invoice.organization_id, invoice.type)
        try:
            with session.begin_nested():
                session.add(invoice)
                session.flush()
            return invoice
        except IntegrityError:
            logger.info("invoice.number_taken", extra={"organization_id": invoice.organization_id})
    raise StorageError("could not allocate an invoice number")


class LeadService:
    entity_type = "crm.lead"

    def __init__(self, side_effects: SideEffectDispatcher, tag_registry: TagRegistry | None = None) -> None:
        self.side_effects = side_effects
        self.tag_registry = tag_registry or TagRegistry(get_settings().default_tag_color)
        self.repository = LeadRepository(self.tag_registry)

    def list_leads(self, session: Session, actor_user: ActorUser, tags: list[str] | None = None) -> list[LeadRead]:
        try:
            leads = self.repository.list(session, actor_user.organization_id, tags)
        except SQLAlchemyError as exc:
            logger.exception("lead.list_failed", extra={"organization_id": actor_user.organization_id})
            raise StorageError("error fetching leads") from exc
        return [self._to_read(lead) for lead in leads]

    def get_lead(self, session: Session, actor_user: ActorUser, lead_id: uuid.UUID) -> LeadRead:
        lead = self.repository.get(session, lead_id, actor_user.organization_id)
        if lead is None:
            raise NotFoundError("lead not found")
        return self._to_read(lead)

    def create_lead(self, session: Session, actor_user: ActorUser, dto: LeadCreate) -> LeadRead:
        lead = CRMLead(
            organization_id=actor_user.organization_id,
            name=dto.name,
            email=str(dto.email) if dto.email is not None else None,
            phone=dto.phone,
            company=dto.company,
            value=dto.value,
            status=dto.status or DEFAULT_LEAD_STATUS,
            source=dto.source,
            notes=dto.notes,
            assigned_to_id=dto.assigned_to_id,
            created_by_id=actor_user.user_id,
        )
        with _write_transaction(session, "error creating lead"):
            session.add(lead)
            session.flush()
            self.repository.link_tags(session, lead, dto.tags)

        created = self._to_read_model(session, lead.id, actor_user.organization_id)
        audit.record(
            actor_user_id=actor_user.user_id,
            organization_id=actor_user.organization_id,
            entity_type=self.entity_type,
            entity_id=str(created.id),
            action="create",
            before=None,
            after=created.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )

        self.side_effects.evaluate_automations(created.id, created.status)
        self.side_effects.broadcast(
            org_channel(actor_user.organization_id),
            "lead.created",
            {"lead": created.model_dump(mode="json")},
        )
        if created.assigned_to_id and created.assigned_to_id != actor_user.user_id:
            self._notify_assignee(
                session,
                actor_user,
                created,
                title="New Lead Assigned",
                email_notes=f"Assigned to you. Notes: {created.notes or ''}",
            )
        return created

    def update_lead(self, session: Session, actor_user: ActorUser, lead_id: uuid.UUID, dto: LeadUpdate) -> LeadRead:
        organization_id = actor_user.organization_id
        lead = self.repository.get(session, lead_id, organization_id)
        if lead is None:
            raise NotFoundError("lead not found")

        payload = dto.model_dump(exclude_unset=True)
        tag_names = payload.pop("tags", None)
        if "name" in payload and payload["name"] is None:
            raise ValidationError("name must not be null")
        if "email" in payload:
            payload["email"] = str(payload["email"]) if payload["email"] is not None else None
        if "value" in payload and payload["value"] is None:
            payload["value"] = Decimal("0")
        for column in ("status", "source"):
            if column in payload and not payload[column]:
                payload.pop(column)

        previous_assignee = lead.assigned_to_id
        before = self._to_read(lead).model_dump(mode="json")

        with _write_transaction(session, "error updating lead"):
            if payload:
                payload["updated_at"] = utcnow()
                result = session.execute(
                    update(CRMLead)
                    .where(and_(CRMLead.id == lead.id, CRMLead.organization_id == organization_id))
                    .values(**payload)
                )
                if result.rowcount == 0:
                    raise NotFoundError("lead not found")
            if tag_names is not None:
                self.repository.replace_tags(session, lead, tag_names)

        updated = self._to_read_model(session, lead_id, organization_id)
        audit.record(
            actor_user_id=actor_user.user_id,
            organization_id=organization_id,
            entity_type=self.entity_type,
            entity_id=str(updated.id),
            action="update",
            before=before,
            after=updated.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )

        if payload.get("status"):
            self.side_effects.evaluate_automations(updated.id, updated.status)
        self.side_effects.broadcast(
            org_channel(organization_id),
            "lead.updated",
            {"lead": updated.model_dump(mode="json")},
        )
        new_assignee = payload.get("assigned_to_id")
        if new_assignee and new_assignee != previous_assignee and new_assignee != actor_user.user_id:
            self._notify_assignee(
                session,
                actor_user,
                updated,
                title="Lead Assigned to You",
                email_notes="Re-assigned to you.",
            )
        return updated

    def delete_lead(self, session: Session, actor_user: ActorUser, lead_id: uuid.UUID) -> None:
        organization_id = actor_user.organization_id
        with _write_transaction(session, "error deleting lead"):
            lead = self.repository.get(session, lead_id, organization_id)
            if lead is None:
                raise NotFoundError("lead not found")
            session.execute(delete(CRMLeadTag).where(CRMLeadTag.lead_id == lead.id))
            session.execute(
                update(CRMInvoice)
                .where(and_(CRMInvoice.lead_id == lead.id, CRMInvoice.organization_id == organization_id))
                .values(lead_id=None)
            )
            session.execute(
                update(CRMActivity)
                .where(and_(CRMActivity.lead_id == lead.id, CRMActivity.organization_id == organization_id))
                .values(lead_id=None)
            )
            session.expire(lead, ["tag_links"])
            session.delete(lead)

        audit.record(
            actor_user_id=actor_user.user_id,
            organization_id=organization_id,
            entity_type=self.entity_type,
            entity_id=str(lead_id),
            action="delete",
            before=None,
            after=None,
            correlation_id=actor_user.correlation_id,
        )
        self.side_effects.broadcast(org_channel(organization_id), "lead.deleted", {"lead_id": lead_id})

    def _notify_assignee(
        self,
        session: Session,
        actor_user: ActorUser,
        lead: LeadRead,
        *,
        title: str,
        email_notes: str,
    ) -> None:
        assignee = session.scalar(
            select(CRMUser).where(
                and_(CRMUser.id == lead.assigned_to_id, CRMUser.organization_id == actor_user.organization_id)
            )
        )
        if assignee is None:
            logger.info("lead.assignee_unknown", extra={"lead_id": str(lead.id)})
            return

        body = f"Lead assigned to you: {lead.name}"
        self.side_effects.notify(
            assignee.id,
            actor_user.organization_id,
            "LEAD",
            title,
            body,
            {"lead_id": lead.id},
        )
        self.side_effects.broadcast(
            user_channel(assignee.id),
            "notification",
            {
                "user_id": assignee.id,
                "type": "LEAD",
                "title": title,
                "body": body,
                "read": False,
                "created_at": utcnow().isoformat(),
            },
        )
        if assignee.email:
            self.side_effects.send_email(
                assignee.email,
                "new_lead",
                {"lead_name": lead.name, "lead_email": lead.email, "source": lead.source, "notes": email_notes},
            )

    def _to_read_model(self, session: Session, lead_id: uuid.UUID, organization_id: str) -> LeadRead:
        lead = self.repository.get(session, lead_id, organization_id)
        if lead is None:
            raise NotFoundError("lead not found")
        return self._to_read(lead)

    def _to_read(self, lead: CRMLead) -> LeadRead:
        return LeadRead.model_validate(
            {
                "id": lead.id,
                "organization_id": lead.organization_id,
                "name": lead.name,
                "email": lead.email,
                "phone": lead.phone,
                "company": lead.company,
                "value": lead.value,
                "status": lead.status,
                "source": lead.source,
                "notes": lead.notes,
                "assigned_to_id": lead.assigned_to_id,
                "created_by_id": lead.created_by_id,
                "converted_at": lead.converted_at,
                "converted_to_id": lead.converted_to_id,
                "created_at": lead.created_at,
                "updated_at": lead.updated_at,
                "tags": self.repository.tag_names(lead),
            }
        )


class LeadImportService:
    entity_type = "crm.lead"

    def __init__(self, side_effects: SideEffectDispatcher, max_rows: int | None = None) -> None:
        self.side_effects = side_effects
        self.max_rows = max_rows if max_rows is not None else get_settings().bulk_import_max_rows

    def bulk_create(self, session: Session, actor_user: ActorUser, rows: Any) -> LeadBulkCreateResponse:
        if not isinstance(rows, list):
            raise ValidationError("leads must be an array")
        if len(rows) > self.max_rows:
            raise ValidationError(
                f"batch size limit exceeded (max {self.max_rows})",
                details={"max_rows": self.max_rows, "received": len(rows)},
            )

        organization_id = actor_user.organization_id
        started = time.perf_counter()
        with tracer.start_as_current_span("crm.leads.bulk_create") as span:
            span.set_attribute("organization_id", organization_id)
            span.set_attribute("row_count", len(rows))
            leads: list[CRMLead] = []
            with _write_transaction(session, "error processing bulk import"):
                for index, raw in enumerate(rows):
                    try:
                        row = LeadBulkRow.model_validate(raw)
                    except PydanticValidationError as exc:
                        raise ValidationError(
                            f"invalid lead at index {index}",
                            details={
                                "index": index,
                                "errors": exc.errors(include_url=False, include_context=False, include_input=False),
                            },
                        ) from exc
                    lead = self._lead_from_row(row, actor_user)
                    session.add(lead)
                    leads.append(lead)
                session.flush()
                created = [(lead.id, lead.status) for lead in leads]

        ids = [lead_id for lead_id, _ in created]
        observe_bulk_import(len(ids), time.perf_counter() - started)
        logger.info("lead.bulk_created", extra={"organization_id": organization_id, "count": len(ids)})
        audit.record(
            actor_user_id=actor_user.user_id,
            organization_id=organization_id,
            entity_type=self.entity_type,
            entity_id="bulk",
            action="bulk_create",
            before=None,
            after={"count": len(ids), "ids": [str(item) for item in ids]},
            correlation_id=actor_user.correlation_id,
        )

        if ids:
            self.side_effects.broadcast(org_channel(organization_id), "lead.created", {"count": len(ids), "ids": ids})
            for lead_id, lead_status in created:
                self.side_effects.evaluate_automations(lead_id, lead_status)
        return LeadBulkCreateResponse(count=len(ids), ids=ids)

    def _lead_from_row(self, row: LeadBulkRow, actor_user: ActorUser) -> CRMLead:
        status = row.status.strip() if row.status else ""
        if not status or status == IMPORT_STATUS_SENTINEL:
            status = DEFAULT_LEAD_STATUS
        notes = f"{row.notes} {IMPORT_NOTES_MARKER}" if row.notes else IMPORT_NOTES_MARKER
        return CRMLead(
            id=uuid.uuid4(),
            organization_id=actor_user.organization_id,
            name=row.name,
            email=str(row.email) if row.email is not None else None,
            phone=row.phone,
            company=row.company,
            value=row.value if row.value is not None else Decimal("0"),
            status=status,
            # The source enum has no import value; the notes marker identifies imported rows.
            source="MANUAL",
            notes=notes,
            assigned_to_id=row.assigned_to_id,
            created_by_id=actor_user.user_id,
        )


class LeadConversionService:
    """Converts a lead into a customer and relinks the lead's records.

    The customer lookup/creation and the guarded lead write commit together.
    Relink, contact bootstrap and the conversion trail commit afterwards; a
    failure there is logged and converges on the next ``convert`` or ``relink``
    call because every relink statement is an idempotent update-where.
    """

    entity_type = "crm.lead"

    def __init__(self, side_effects: SideEffectDispatcher) -> None:
        self.side_effects = side_effects

    def convert(
        self,
        session: Session,
        actor_user: ActorUser,
        lead_id: uuid.UUID,
        dto: LeadConvertRequest,
    ) -> LeadConvertResponse:
        organization_id = actor_user.organization_id
        with tracer.start_as_current_span("crm.lead.convert") as span:
            span.set_attribute("lead_id", str(lead_id))
            span.set_attribute("organization_id", organization_id)

            lead = self._load_lead(session, lead_id, organization_id)
            if lead is None:
                observe_lead_conversion("not_found")
                raise NotFoundError("lead not found")
            if lead.converted_to_id is not None:
                self._raise_already_converted(session, lead, lead.converted_to_id, organization_id)

            customer_created = False
            try:
                customer, customer_created = self._resolve_customer(session, lead, organization_id, dto.plan)
                converted_at = utcnow()
                result = session.execute(
                    update(CRMLead)
                    .where(
                        and_(
                            CRMLead.id == lead.id,
                            CRMLead.organization_id == organization_id,
                            CRMLead.converted_to_id.is_(None),
                        )
                    )
                    .values(
                        status=WON_STATUS,
                        converted_at=converted_at,
                        converted_to_id=customer.id,
                        updated_at=converted_at,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 0:
                    session.rollback()
                    winner_id = session.scalar(select(CRMLead.converted_to_id).where(CRMLead.id == lead.id))
                    if winner_id is None:
                        observe_lead_conversion("not_found")
                        raise NotFoundError("lead not found")
                    self._raise_already_converted(session, lead, winner_id, organization_id)
                customer_id = customer.id
                session.commit()
            except CRMError:
                raise
            except SQLAlchemyError as exc:
                session.rollback()
                observe_lead_conversion("failed")
                logger.exception("lead.convert_failed", extra={"lead_id": str(lead_id), "error": str(exc)[:500]})
                raise StorageError("error converting lead") from exc

            span.set_attribute("customer_id", str(customer_id))
            try:
                self._relink(session, lead, customer_id, organization_id)
                if dto.generate_invoice and (lead.value or Decimal("0")) > 0:
                    add_numbered_invoice(
                        session,
                        CRMInvoice(
                            organization_id=organization_id,
                            type="INVOICE",
                            lead_id=lead.id,
                            customer_id=customer_id,
                            amount=lead.value,
                            status="DRAFT",
                        ),
                    )
                session.add(
                    CRMActivity(
                        organization_id=organization_id,
                        lead_id=lead.id,
                        customer_id=customer_id,
                        type="CONVERSION",
                        description=f"Lead {lead.name} converted to customer",
                        created_by_id=actor_user.user_id,
                    )
                )
                session.commit()
            except (SQLAlchemyError, StorageError) as exc:
                session.rollback()
                logger.exception(
                    "lead.relink_failed",
                    extra={"lead_id": str(lead_id), "customer_id": str(customer_id), "error": str(exc)[:500]},
                )

            customer = session.get(CRMCustomer, customer_id)
            if customer is None:
                raise StorageError("error converting lead")
            customer_payload = _customer_payload(customer)

        observe_lead_conversion("converted")
        logger.info(
            "lead.converted",
            extra={"lead_id": str(lead_id), "customer_id": str(customer_id), "organization_id": organization_id},
        )
        audit.record(
            actor_user_id=actor_user.user_id,
            organization_id=organization_id,
            entity_type=self.entity_type,
            entity_id=str(lead_id),
            action="convert",
            before={"converted_to_id": None},
            after={"status": WON_STATUS, "converted_to_id": str(customer_id), "customer_created": customer_created},
            correlation_id=actor_user.correlation_id,
        )

        if customer_created:
            self.side_effects.sync_external(customer_payload, organization_id)
            self.side_effects.broadcast(
                org_channel(organization_id),
                "client_created",
                {"customer": customer_payload, "source": "lead_conversion"},
            )
        self.side_effects.broadcast(
            org_channel(organization_id),
            "lead_converted",
            {"lead_id": lead_id, "customer_id": customer_id, "customer": customer_payload},
        )
        self.side_effects.notify(
            actor_user.user_id,
            organization_id,
            "SYSTEM",
            "Lead Converted",
            f"{customer_payload['name']} is now a customer",
            {"customer_id": customer_id, "lead_id": lead_id},
        )
        return LeadConvertResponse(customer_id=customer_id, customer=CustomerRead.model_validate(customer_payload))

    def relink(self, session: Session, lead_id: uuid.UUID, organization_id: str) -> uuid.UUID:
        """Re-run the relink steps for an already converted lead."""
        lead = self._load_lead(session, lead_id, organization_id)
        if lead is None:
            raise NotFoundError("lead not found")
        if lead.converted_to_id is None:
            raise ValidationError("lead has not been converted")
        customer_id = lead.converted_to_id
        with _write_transaction(session, "error relinking lead"):
            self._relink(session, lead, customer_id, organization_id)
        return customer_id

    def _load_lead(self, session: Session, lead_id: uuid.UUID, organization_id: str) -> CRMLead | None:
        return session.scalar(
            select(CRMLead).where(and_(CRMLead.id == lead_id, CRMLead.organization_id == organization_id))
        )

    def _raise_already_converted(
        self,
        session: Session,
        lead: CRMLead,
        customer_id: uuid.UUID,
        organization_id: str,
    ) -> None:
        # A retry after a partial failure converges the relink before answering.
        try:
            with _write_transaction(session, "error relinking lead"):
                self._relink(session, lead, customer_id, organization_id)
        except StorageError:
            logger.warning("lead.relink_retry_failed", extra={"lead_id": str(lead.id)})
        observe_lead_conversion("conflict")
        raise ConflictError("lead already converted", customer_id=customer_id)

    def _resolve_customer(
        self,
        session: Session,
        lead: CRMLead,
        organization_id: str,
        plan: str,
    ) -> tuple[CRMCustomer, bool]:
        existing = self._find_customer_by_email(session, lead.email, organization_id)
        if existing is not None:
            return existing, False

        try:
            with session.begin_nested():
                customer = CRMCustomer(
                    organization_id=organization_id,
                    name=lead.name,
                    email=lead.email,
                    phone=lead.phone,
                    company=lead.company,
                    notes=lead.notes,
                    plan=plan.upper(),
                    status="ACTIVE",
                )
                session.add(customer)
                session.flush()
            return customer, True
        except IntegrityError:
            # Another conversion created the customer for this email first.
            existing = self._find_customer_by_email(session, lead.email, organization_id)
            if existing is None:
                raise
            return existing, False

    def _find_customer_by_email(self, session: Session, email: str | None, organization_id: str) -> CRMCustomer | None:
        if not email:
            return None
        return session.scalar(
            select(CRMCustomer)
            .where(and_(CRMCustomer.email == email, CRMCustomer.organization_id == organization_id))
            .order_by(CRMCustomer.created_at.asc())
            .limit(1)
        )

    def _relink(self, session: Session, lead: CRMLead, customer_id: uuid.UUID, organization_id: str) -> None:
        session.execute(
            update(CRMInvoice)
            .where(and_(CRMInvoice.lead_id == lead.id, CRMInvoice.organization_id == organization_id))
            .values(customer_id=customer_id, updated_at=utcnow())
        )
        session.execute(
            update(CRMActivity)
            .where(and_(CRMActivity.lead_id == lead.id, CRMActivity.organization_id == organization_id))
            .values(customer_id=customer_id)
        )
        self._bootstrap_contact(session, lead, customer_id, organization_id)

    def _bootstrap_contact(self, session: Session, lead: CRMLead, customer_id: uuid.UUID, organization_id: str) -> None:
        if not lead.phone and not lead.email:
            return
        contact_type, contact_value = ("PHONE", lead.phone) if lead.phone else ("EMAIL", lead.email)
        try:
            with session.begin_nested():
                session.add(
                    CRMContact(
                        organization_id=organization_id,
                        customer_id=customer_id,
                        type=contact_type,
                        value=contact_value,
                        display_name=lead.name,
                        is_primary=True,
                    )
                )
                session.flush()
        except IntegrityError:
            logger.debug("contact.already_exists", extra={"customer_id": str(customer_id)})


class InvoiceService:
    entity_type = "crm.invoice"

    def __init__(self, conversion_service: LeadConversionService) -> None:
        self.conversion_service = conversion_service

    def create_invoice(self, session: Session, actor_user: ActorUser, dto: InvoiceCreate) -> InvoiceRead:
        organization_id = actor_user.organization_id
        if dto.lead_id is None and dto.customer_id is None:
            raise ValidationError("customer_id or lead_id is required")

        customer_id = dto.customer_id
        if dto.lead_id is not None:
            lead = session.scalar(
                select(CRMLead).where(and_(CRMLead.id == dto.lead_id, CRMLead.organization_id == organization_id))
            )
            if lead is None:
                raise NotFoundError("lead not found")
            if customer_id is None:
                customer_id = lead.converted_to_id
        if customer_id is not None:
            customer = session.scalar(
                select(CRMCustomer).where(
                    and_(CRMCustomer.id == customer_id, CRMCustomer.organization_id == organization_id)
                )
            )
            if customer is None:
                raise NotFoundError("customer not found")

        invoice = CRMInvoice(
            organization_id=organization_id,
            type=dto.type,
            lead_id=dto.lead_id,
            customer_id=customer_id,
            amount=dto.amount,
            status="DRAFT",
        )
        with _write_transaction(session, "error creating invoice"):
            add_numbered_invoice(session, invoice)

        created = InvoiceRead.model_validate(invoice)
        audit.record(
            actor_user_id=actor_user.user_id,
            organization_id=organization_id,
            entity_type=self.entity_type,
            entity_id=str(created.id),
            action="create",
            before=None,
            after=created.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        return created

    def update_status(
        self,
        session: Session,
        actor_user: ActorUser,
        invoice_id: uuid.UUID,
        dto: InvoiceStatusUpdate,
    ) -> InvoiceRead:
        status = dto.status.strip().upper()
        if status not in INVOICE_STATUSES:
            raise ValidationError(
                f"invalid invoice status '{dto.status}'",
                details={"allowed": list(INVOICE_STATUSES)},
            )
        organization_id = actor_user.organization_id
        invoice = session.scalar(
            select(CRMInvoice).where(and_(CRMInvoice.id == invoice_id, CRMInvoice.organization_id == organization_id))
        )
        if invoice is None:
            raise NotFoundError("invoice not found")

        before_status = invoice.status
        with _write_transaction(session, "error updating invoice"):
            invoice.status = status
            if status == "PAID":
                invoice.paid_at = dto.paid_at or utcnow()
            invoice.updated_at = utcnow()

        audit.record(
            actor_user_id=actor_user.user_id,
            organization_id=organization_id,
            entity_type=self.entity_type,
            entity_id=str(invoice_id),
            action="status",
            before={"status": before_status},
            after={"status": status},
            correlation_id=actor_user.correlation_id,
        )

        if status == "PAID" and invoice.lead_id is not None and invoice.customer_id is None:
            self._auto_convert(session, actor_user, invoice.lead_id)
        session.refresh(invoice)
        return InvoiceRead.model_validate(invoice)

    def _auto_convert(self, session: Session, actor_user: ActorUser, lead_id: uuid.UUID) -> None:
        try:
            self.conversion_service.convert(session, actor_user, lead_id, LeadConvertRequest())
        except ConflictError:
            # Already converted: the conflict path has relinked this invoice.
            return
        except CRMError:
            logger.exception("invoice.auto_convert_failed", extra={"lead_id": str(lead_id)})
