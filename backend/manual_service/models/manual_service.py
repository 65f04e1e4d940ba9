from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from manual_service.models.base import Base, TimestampMixin, UUIDMixin


class ManualService(Base, UUIDMixin, TimestampMixin):
    """Top-level business process for one service.

    ``edited_bpmn_xml`` is authoritative when present and not corrupted;
    ``original_bpmn_xml`` is the generated baseline it falls back to.
    """

    __tablename__ = "manual_services"

    external_id: Mapped[str] = mapped_column(String(100), unique=True, index=True)
    name: Mapped[str] = mapped_column(String(500))
    performing_team: Mapped[str | None] = mapped_column(String(255))
    performer_org: Mapped[str | None] = mapped_column(String(255))
    original_bpmn_xml: Mapped[str | None] = mapped_column(Text)
    edited_bpmn_xml: Mapped[str | None] = mapped_column(Text)
    last_exported_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_transferred_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    subprocesses = relationship(
        "Subprocess",
        back_populates="service",
        cascade="all, delete-orphan",
        lazy="selectin",
    )
