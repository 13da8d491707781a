from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable
from typing import Any

from sqlalchemy import Select, and_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from app.crm.models import CRMLead, CRMLeadTag, CRMTag


logger = logging.getLogger("app.crm.tags")

DEFAULT_TAG_COLOR = "#6B7280"


class TagRegistry:
    """Per-organization tag name registry.

    Uniqueness is enforced by ``uq_crm_tag_name_organization``. Creation is an
    insert attempt inside a savepoint; a uniqueness violation rolls the
    savepoint back and the row that won the race is read instead.
    """

    def __init__(self, default_color: str = DEFAULT_TAG_COLOR) -> None:
        self.default_color = default_color

    def find_or_create(
        self,
        session: Session,
        name: str,
        organization_id: str,
        color: str | None = None,
    ) -> CRMTag:
        normalized = name.strip()
        if not normalized:
            raise ValueError("tag name must not be empty")

        try:
            with session.begin_nested():
                tag = CRMTag(name=normalized, organization_id=organization_id, color=color or self.default_color)
                session.add(tag)
                session.flush()
            return tag
        except IntegrityError:
            existing = self._find(session, normalized, organization_id)
            if existing is None:
                raise
            logger.debug("tag.reused", extra={"organization_id": organization_id})
            return existing

    def _find(self, session: Session, name: str, organization_id: str) -> CRMTag | None:
        return session.scalar(select(CRMTag).where(and_(CRMTag.name == name, CRMTag.organization_id == organization_id)))

    def resolve_many(self, session: Session, names: Iterable[str], organization_id: str) -> list[CRMTag]:
        unique_names = list(dict.fromkeys(item.strip() for item in names if item and item.strip()))
        return [self.find_or_create(session, item, organization_id) for item in unique_names]


class LeadRepository:
    """Organization-scoped lead queries and tag-link maintenance."""

    def __init__(self, tag_registry: TagRegistry) -> None:
        self.tag_registry = tag_registry

    def scoped_query(self, organization_id: str) -> Select[Any]:
        return (
            select(CRMLead)
            .where(CRMLead.organization_id == organization_id)
            .options(selectinload(CRMLead.tag_links).selectinload(CRMLeadTag.tag))
        )

    def get(self, session: Session, lead_id: uuid.UUID, organization_id: str) -> CRMLead | None:
        return session.scalar(self.scoped_query(organization_id).where(CRMLead.id == lead_id))

    def list(self, session: Session, organization_id: str, tag_names: list[str] | None = None) -> list[CRMLead]:
        stmt = self.scoped_query(organization_id)
        if tag_names:
            # ANY-of: one matching tag is enough.
            stmt = stmt.where(
                CRMLead.id.in_(
                    select(CRMLeadTag.lead_id)
                    .join(CRMTag, CRMTag.id == CRMLeadTag.tag_id)
                    .where(and_(CRMTag.organization_id == organization_id, CRMTag.name.in_(tag_names)))
                )
            )
        return list(session.scalars(stmt.order_by(CRMLead.created_at.desc())).all())

    def link_tags(self, session: Session, lead: CRMLead, tag_names: Iterable[str]) -> None:
        for tag in self.tag_registry.resolve_many(session, tag_names, lead.organization_id):
            session.add(CRMLeadTag(lead_id=lead.id, tag_id=tag.id))
        session.flush()

    def replace_tags(self, session: Session, lead: CRMLead, tag_names: Iterable[str]) -> None:
        # Delete-then-insert; concurrent edits on the same lead are last-write-wins.
        lead.tag_links.clear()
        session.flush()
        self.link_tags(session, lead, tag_names)

    @staticmethod
    def tag_names(lead: CRMLead) -> list[str]:
        return sorted(link.tag.name for link in lead.tag_links)
