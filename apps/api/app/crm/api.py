from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.context import get_correlation_id
from app.core.auth import AuthUser, get_current_user as get_auth_user
from app.core.config import get_settings
from app.core.database import get_db
from app.crm.errors import CRMError
from app.crm.schemas import (
    InvoiceCreate,
    InvoiceRead,
    InvoiceStatusUpdate,
    LeadBulkCreateRequest,
    LeadBulkCreateResponse,
    LeadConvertRequest,
    LeadConvertResponse,
    LeadCreate,
    LeadRead,
    LeadUpdate,
)
from app.crm.service import (
    ActorUser,
    InvoiceService,
    LeadConversionService,
    LeadImportService,
    LeadService,
)
from app.crm.side_effects import build_side_effect_dispatcher

leads_router = APIRouter(prefix="/api/crm", tags=["crm.leads"])
invoices_router = APIRouter(prefix="/api/crm", tags=["crm.invoices"])
side_effect_dispatcher = build_side_effect_dispatcher(get_settings())
lead_service = LeadService(side_effects=side_effect_dispatcher)
lead_import_service = LeadImportService(side_effects=side_effect_dispatcher)
lead_conversion_service = LeadConversionService(side_effects=side_effect_dispatcher)
invoice_service = InvoiceService(conversion_service=lead_conversion_service)


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def crm_error_response(request: Request, exc: CRMError, fallback_code: str) -> JSONResponse:
    # Storage failures keep the route-specific code; domain errors carry their own.
    code = fallback_code if exc.status_code >= 500 else exc.code
    return error_response(
        request,
        status_code=exc.status_code,
        code=code,
        message=exc.message,
        details=exc.details,
    )


def _parse_tag_filter(raw: str | None) -> list[str]:
    if not raw:
        return []
    return [item.strip() for item in raw.split(",") if item.strip()]


def get_current_user(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> ActorUser:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    organization_id = auth_user.organization_id or request.headers.get("x-organization-id")
    if not organization_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing organization")

    return ActorUser(
        user_id=auth_user.sub,
        organization_id=organization_id,
        permissions=set(auth_user.roles),
        correlation_id=correlation_id,
    )


def require_permission(user: ActorUser, permission: str) -> None:
    if permission not in user.permissions:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {permission}")


@leads_router.get("/leads", response_model=list[LeadRead])
def list_leads(
    request: Request,
    tags: str | None = Query(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[LeadRead] | JSONResponse:
    try:
        require_permission(user, "crm.leads.read")
        return lead_service.list_leads(db, user, tags=_parse_tag_filter(tags))
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_lead_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )
    except CRMError as exc:
        return crm_error_response(request, exc, "crm_lead_list_failed")


@leads_router.post("/leads/bulk", response_model=LeadBulkCreateResponse)
def bulk_create_leads(
    request: Request,
    dto: LeadBulkCreateRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadBulkCreateResponse | JSONResponse:
    try:
        require_permission(user, "crm.leads.import")
        return lead_import_service.bulk_create(db, user, dto.leads)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_lead_bulk_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )
    except CRMError as exc:
        return crm_error_response(request, exc, "crm_lead_bulk_create_failed")


@leads_router.post("/leads", response_model=LeadRead, status_code=status.HTTP_201_CREATED)
def create_lead(
    request: Request,
    dto: LeadCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        require_permission(user, "crm.leads.create")
        return lead_service.create_lead(db, user, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_lead_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )
    except CRMError as exc:
        return crm_error_response(request, exc, "crm_lead_create_failed")


@leads_router.get("/leads/{lead_id}", response_model=LeadRead)
def get_lead(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        require_permission(user, "crm.leads.read")
        return lead_service.get_lead(db, user, lead_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_lead_get_failed",
            message=str(exc.detail),
            details=exc.detail,
        )
    except CRMError as exc:
        return crm_error_response(request, exc, "crm_lead_get_failed")


@leads_router.put("/leads/{lead_id}", response_model=LeadRead)
def update_lead(
    request: Request,
    lead_id: uuid.UUID,
    dto: LeadUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        require_permission(user, "crm.leads.update")
        return lead_service.update_lead(db, user, lead_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_lead_update_failed",
            message=str(exc.detail),
            details=exc.detail,
        )
    except CRMError as exc:
        return crm_error_response(request, exc, "crm_lead_update_failed")


@leads_router.delete("/leads/{lead_id}", response_model=None)
def delete_lead(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> dict[str, bool] | JSONResponse:
    try:
        require_permission(user, "crm.leads.delete")
        lead_service.delete_lead(db, user, lead_id)
        return {"success": True}
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_lead_delete_failed",
            message=str(exc.detail),
            details=exc.detail,
        )
    except CRMError as exc:
        return crm_error_response(request, exc, "crm_lead_delete_failed")


@leads_router.post("/leads/{lead_id}/convert", response_model=LeadConvertResponse)
def convert_lead(
    request: Request,
    lead_id: uuid.UUID,
    dto: LeadConvertRequest | None = Body(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadConvertResponse | JSONResponse:
    try:
        require_permission(user, "crm.leads.convert")
        return lead_conversion_service.convert(db, user, lead_id, dto or LeadConvertRequest())
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_lead_convert_failed",
            message=str(exc.detail),
            details=exc.detail,
        )
    except CRMError as exc:
        return crm_error_response(request, exc, "crm_lead_convert_failed")


@invoices_router.post("/invoices", response_model=InvoiceRead, status_code=status.HTTP_201_CREATED)
def create_invoice(
    request: Request,
    dto: InvoiceCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> InvoiceRead | JSONResponse:
    try:
        require_permission(user, "crm.invoices.write")
        return invoice_service.create_invoice(db, user, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_invoice_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )
    except CRMError as exc:
        return crm_error_response(request, exc, "crm_invoice_create_failed")


@invoices_router.patch("/invoices/{invoice_id}/status", response_model=InvoiceRead)
def update_invoice_status(
    request: Request,
    invoice_id: uuid.UUID,
    dto: InvoiceStatusUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> InvoiceRead | JSONResponse:
    try:
        require_permission(user, "crm.invoices.write")
        return invoice_service.update_status(db, user, invoice_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_invoice_status_failed",
            message=str(exc.detail),
            details=exc.detail,
        )
    except CRMError as exc:
        return crm_error_response(request, exc, "crm_invoice_status_failed")
