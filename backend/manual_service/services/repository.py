"""Typed persistence operations used by the pipeline.

Every operation opens its own session from the factory, so independent
reads can be awaited concurrently with ``asyncio.gather``.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from manual_service.models.export_job import ExportJob
from manual_service.models.form_template import FormTemplate
from manual_service.models.manual_service import ManualService
from manual_service.models.mds_step import MdsStep
from manual_service.models.step_description import StepDescription
from manual_service.models.subprocess import Subprocess


class ServiceRepository:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    # -- services -----------------------------------------------------------

    async def get_service(self, service_key: str) -> ManualService | None:
        async with self._session_factory() as db:
            result = await db.execute(
                select(ManualService).where(ManualService.external_id == service_key)
            )
            return result.scalar_one_or_none()

    async def ensure_service(
        self,
        service_key: str,
        name: str,
        performing_team: str | None = None,
        performer_org: str | None = None,
    ) -> bool:
        """Create the service row when missing; returns True when created."""
        async with self._session_factory() as db:
            result = await db.execute(
                select(ManualService.id).where(ManualService.external_id == service_key)
            )
            if result.scalar_one_or_none() is not None:
                return False
            db.add(
                ManualService(
                    external_id=service_key,
                    name=name or service_key,
                    performing_team=performing_team,
                    performer_org=performer_org,
                )
            )
            await db.commit()
            return True

    async def save_edited_diagram(self, service_key: str, xml: str | None) -> ManualService | None:
        async with self._session_factory() as db:
            result = await db.execute(
                select(ManualService).where(ManualService.external_id == service_key)
            )
            service = result.scalar_one_or_none()
            if service is None:
                return None
            service.edited_bpmn_xml = xml
            await db.commit()
            return service

    async def save_original_diagram(self, service_key: str, xml: str) -> ManualService | None:
        async with self._session_factory() as db:
            result = await db.execute(
                select(ManualService).where(ManualService.external_id == service_key)
            )
            service = result.scalar_one_or_none()
            if service is None:
                return None
            service.original_bpmn_xml = xml
            await db.commit()
            return service

    async def touch_service(
        self, service_key: str, exported: bool = False, transferred: bool = False
    ) -> None:
        async with self._session_factory() as db:
            result = await db.execute(
                select(ManualService).where(ManualService.external_id == service_key)
            )
            service = result.scalar_one_or_none()
            if service is None:
                return
            now = datetime.now(timezone.utc)
            if exported:
                service.last_exported_at = now
            if transferred:
                service.last_transferred_at = now
            await db.commit()

    # -- subprocesses -------------------------------------------------------

    async def list_subprocesses(self, service_id: uuid.UUID) -> list[Subprocess]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(Subprocess)
                .where(Subprocess.service_id == service_id)
                .order_by(Subprocess.created_at, Subprocess.name)
            )
            return list(result.scalars().all())

    async def get_subprocess(
        self, service_id: uuid.UUID, subprocess_id: uuid.UUID
    ) -> Subprocess | None:
        async with self._session_factory() as db:
            result = await db.execute(
                select(Subprocess).where(
                    Subprocess.id == subprocess_id, Subprocess.service_id == service_id
                )
            )
            return result.scalar_one_or_none()

    async def upsert_subprocess(
        self, service_id: uuid.UUID, step_key: str, name: str, original_xml: str
    ) -> bool:
        """Store a generated subprocess keyed by step; returns True when created.

        An existing edited copy is left alone so regeneration never discards
        manual edits.
        """
        async with self._session_factory() as db:
            result = await db.execute(
                select(Subprocess).where(
                    Subprocess.service_id == service_id,
                    Subprocess.step_external_id == step_key,
                )
            )
            row = result.scalar_one_or_none()
            created = row is None
            if created:
                db.add(
                    Subprocess(
                        service_id=service_id,
                        step_external_id=step_key,
                        name=name,
                        original_bpmn_xml=original_xml,
                    )
                )
            else:
                row.name = name
                row.original_bpmn_xml = original_xml
            await db.commit()
            return created

    async def save_edited_subprocess_diagram(
        self, service_id: uuid.UUID, subprocess_id: uuid.UUID, xml: str | None
    ) -> Subprocess | None:
        async with self._session_factory() as db:
            result = await db.execute(
                select(Subprocess).where(
                    Subprocess.id == subprocess_id, Subprocess.service_id == service_id
                )
            )
            row = result.scalar_one_or_none()
            if row is None:
                return None
            row.edited_bpmn_xml = xml
            await db.commit()
            return row

    # -- master data --------------------------------------------------------

    async def list_mds_steps(self, service_key: str) -> list[MdsStep]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(MdsStep)
                .where(MdsStep.service_external_id == service_key)
                .order_by(MdsStep.process_step, MdsStep.step_external_id)
            )
            return list(result.scalars().all())

    async def mds_row_hashes(self, service_keys: set[str]) -> dict[tuple[str, str], str]:
        if not service_keys:
            return {}
        async with self._session_factory() as db:
            result = await db.execute(
                select(
                    MdsStep.service_external_id, MdsStep.step_external_id, MdsStep.row_hash
                ).where(MdsStep.service_external_id.in_(service_keys))
            )
            return {(svc, step): row_hash for svc, step, row_hash in result.all()}

    async def upsert_mds_step(self, values: dict[str, Any]) -> None:
        async with self._session_factory() as db:
            result = await db.execute(
                select(MdsStep).where(
                    MdsStep.service_external_id == values["service_external_id"],
                    MdsStep.step_external_id == values["step_external_id"],
                )
            )
            row = result.scalar_one_or_none()
            if row is None:
                db.add(MdsStep(**values))
            else:
                for key, value in values.items():
                    setattr(row, key, value)
            await db.commit()

    # -- descriptions -------------------------------------------------------

    async def list_descriptions(self, service_key: str) -> list[StepDescription]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(StepDescription)
                .where(StepDescription.service_key == service_key)
                .order_by(StepDescription.updated_at.desc())
            )
            return list(result.scalars().all())

    async def upsert_description(
        self, service_key: str, node_id: str | None, description: str
    ) -> None:
        async with self._session_factory() as db:
            query = select(StepDescription).where(StepDescription.service_key == service_key)
            if node_id is None:
                query = query.where(StepDescription.node_id.is_(None))
            else:
                query = query.where(StepDescription.node_id == node_id)
            row = (await db.execute(query)).scalar_one_or_none()
            if row is None:
                db.add(StepDescription(service_key=service_key, node_id=node_id, description=description))
            else:
                row.description = description
            await db.commit()

    # -- form templates -----------------------------------------------------

    async def get_form_template(self, name: str) -> FormTemplate | None:
        async with self._session_factory() as db:
            result = await db.execute(select(FormTemplate).where(FormTemplate.template_name == name))
            return result.scalar_one_or_none()

    async def upsert_form_template(self, name: str, file_name: str) -> None:
        async with self._session_factory() as db:
            result = await db.execute(select(FormTemplate).where(FormTemplate.template_name == name))
            row = result.scalar_one_or_none()
            if row is None:
                db.add(FormTemplate(template_name=name, file_name=file_name))
            else:
                row.file_name = file_name
            await db.commit()

    async def delete_form_template(self, name: str) -> bool:
        async with self._session_factory() as db:
            result = await db.execute(select(FormTemplate).where(FormTemplate.template_name == name))
            row = result.scalar_one_or_none()
            if row is None:
                return False
            await db.delete(row)
            await db.commit()
            return True

    # -- jobs ---------------------------------------------------------------

    async def create_job(self, service_key: str, kind: str) -> uuid.UUID:
        async with self._session_factory() as db:
            job = ExportJob(service_key=service_key, kind=kind, status="processing", detail={})
            db.add(job)
            await db.commit()
            return job.id

    async def finish_job(
        self,
        job_id: uuid.UUID,
        status: str,
        detail: dict | None = None,
        download_url: str | None = None,
        error: str | None = None,
    ) -> None:
        async with self._session_factory() as db:
            job = await db.get(ExportJob, job_id)
            if job is None:
                return
            job.status = status
            job.detail = detail or {}
            job.download_url = download_url
            job.error = error
            await db.commit()
