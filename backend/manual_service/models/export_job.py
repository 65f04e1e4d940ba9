from __future__ import annotations

from sqlalchemy import String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from manual_service.models.base import Base, TimestampMixin, UUIDMixin


class ExportJob(Base, UUIDMixin, TimestampMixin):
    """Status row for one generation, bundle, transfer or package run."""

    __tablename__ = "export_jobs"

    service_key: Mapped[str] = mapped_column(String(100), index=True)
    kind: Mapped[str] = mapped_column(String(20))  # bundle | transfer | package | generate
    status: Mapped[str] = mapped_column(String(20), default="processing")
    detail: Mapped[dict | None] = mapped_column(JSONB, default=dict)
    download_url: Mapped[str | None] = mapped_column(Text)
    error: Mapped[str | None] = mapped_column(Text)
