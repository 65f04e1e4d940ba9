from __future__ import annotations

import uuid

from sqlalchemy import ForeignKey, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from manual_service.models.base import Base, TimestampMixin, UUIDMixin


class Subprocess(Base, UUIDMixin, TimestampMixin):
    """Child process invoked from one call activity of a ManualService."""

    __tablename__ = "subprocesses"

    service_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("manual_services.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(String(500))
    step_external_id: Mapped[str | None] = mapped_column(String(100), index=True)
    original_bpmn_xml: Mapped[str | None] = mapped_column(Text)
    edited_bpmn_xml: Mapped[str | None] = mapped_column(Text)

    service = relationship("ManualService", back_populates="subprocesses")
