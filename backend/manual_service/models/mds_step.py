from __future__ import annotations

from sqlalchemy import Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from manual_service.models.base import Base, TimestampMixin, UUIDMixin


class MdsStep(Base, UUIDMixin, TimestampMixin):
    """One master-data step row, keyed by (service, step) external ids."""

    __tablename__ = "mds_steps"
    __table_args__ = (
        UniqueConstraint("service_external_id", "step_external_id", name="uq_mds_step_key"),
    )

    service_external_id: Mapped[str] = mapped_column(String(100), index=True)
    step_external_id: Mapped[str] = mapped_column(String(100))
    service_name: Mapped[str | None] = mapped_column(String(500))
    step_name: Mapped[str] = mapped_column(String(500))
    step_type: Mapped[str | None] = mapped_column(String(100))
    candidate_group: Mapped[str | None] = mapped_column(String(255))
    process_step: Mapped[int | None] = mapped_column(Integer)
    sop_urls: Mapped[str | None] = mapped_column(Text)
    decision_sheet_urls: Mapped[str | None] = mapped_column(Text)
    document_urls: Mapped[str | None] = mapped_column(Text)
    document_name: Mapped[str | None] = mapped_column(String(500))
    row_hash: Mapped[str] = mapped_column(String(64))
