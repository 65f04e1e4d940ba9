from __future__ import annotations

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column

from manual_service.models.base import Base, TimestampMixin, UUIDMixin


class FormTemplate(Base, UUIDMixin, TimestampMixin):
    """Maps a named template (START_NODE / TASK_NODE) to a file in the templates bucket."""

    __tablename__ = "form_templates"

    template_name: Mapped[str] = mapped_column(String(50), unique=True)
    file_name: Mapped[str] = mapped_column(String(255))
