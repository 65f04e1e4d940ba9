from __future__ import annotations

from sqlalchemy import Index, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from manual_service.models.base import Base, TimestampMixin, UUIDMixin


class StepDescription(Base, UUIDMixin, TimestampMixin):
    """Description text for one step, or for the service when ``node_id`` is NULL."""

    __tablename__ = "step_descriptions"
    __table_args__ = (
        Index(
            "uq_step_description_node",
            "service_key",
            "node_id",
            unique=True,
            postgresql_where=text("node_id IS NOT NULL"),
        ),
        Index(
            "uq_step_description_service",
            "service_key",
            unique=True,
            postgresql_where=text("node_id IS NULL"),
        ),
    )

    service_key: Mapped[str] = mapped_column(String(100), index=True)
    node_id: Mapped[str | None] = mapped_column(String(100))
    description: Mapped[str] = mapped_column(Text, default="")
